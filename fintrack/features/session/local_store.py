"""
Locally persisted session state (the client-side cache).

Keys used by the session controller:
- CACHED_ENTITLEMENT_KEY: last applied Entitlement Record (JSON)
- LAST_RENEWAL_PROMPT_KEY: ISO calendar date the renewal prompt was last dismissed
  (kept in the per-user store when the controller has one)
- LOGIN_NOTICE_KEY: why the last session ended ("expired", ...) for the login screen
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

logger = logging.getLogger(__name__)

CACHED_ENTITLEMENT_KEY = "session.entitlement"
LAST_RENEWAL_PROMPT_KEY = "renewal.last_prompted"
LOGIN_NOTICE_KEY = "login.notice"


class LocalStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryLocalStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class JsonFileLocalStore:
    """Key/value store persisted as a single JSON document."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("[local_store] unreadable state file, starting empty", extra={"path": str(self.path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, default=str), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def clear(self) -> None:
        """Forget everything and remove the state file."""
        self._data = {}
        self.path.unlink(missing_ok=True)
