#!/usr/bin/env python3
"""
Backend startup wrapper.

Runs the API with uvicorn; HOST and PORT come from the environment.
"""
import os
import sys


def main() -> None:
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print(f"[Backend] Starting fintrack backend on http://{host}:{port}")
    try:
        uvicorn.run(
            "fintrack.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
