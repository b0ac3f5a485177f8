"""Tests for fixed-window rate limiting middleware."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from fintrack.core.middleware.request_id import RequestIdMiddleware
from fintrack.core.rate_limit import FixedWindowLimiter, RateLimitMiddleware, build_rate_limit_config


class FakeTime:
    def __init__(self):
        self.current = 0.0

    def advance(self, seconds: float):
        self.current += seconds

    def __call__(self):
        return self.current


def _make_app(fake_time, limits):
    test_app = FastAPI()
    test_app.add_middleware(RateLimitMiddleware, limits=limits, time_fn=fake_time)
    test_app.add_middleware(RequestIdMiddleware)

    @test_app.post("/api/auth/sign-in")
    async def sign_in():
        return {"ok": True}

    @test_app.get("/api/auth/session")
    async def session():
        return {"ok": True}

    return test_app


def test_sign_in_rate_limit_enforced_and_resets():
    fake_time = FakeTime()
    client = TestClient(_make_app(fake_time, {"auth": 2}))

    resp1 = client.post("/api/auth/sign-in")
    resp2 = client.post("/api/auth/sign-in")
    resp3 = client.post("/api/auth/sign-in")

    assert resp1.status_code == 200
    assert resp2.status_code == 200
    assert resp3.status_code == 429

    rid = resp3.headers.get("x-request-id")
    payload = resp3.json()
    assert payload["error"]["code"] == "rate_limited"
    assert payload["error"]["request_id"] == rid
    assert resp3.headers["retry-after"] == "60"

    fake_time.advance(61)
    assert client.post("/api/auth/sign-in").status_code == 200


def test_unlisted_paths_are_not_limited():
    client = TestClient(_make_app(FakeTime(), {"auth": 1}))

    for _ in range(3):
        assert client.get("/api/auth/session").status_code == 200


def test_zero_limit_disables_category():
    client = TestClient(_make_app(FakeTime(), {"auth": None}))

    for _ in range(3):
        assert client.post("/api/auth/sign-in").status_code == 200


def test_limiter_exhausted_does_not_consume():
    fake_time = FakeTime()
    limiter = FixedWindowLimiter(1, fake_time)

    assert limiter.exhausted("k") is False
    assert limiter.allow("k") is True
    assert limiter.exhausted("k") is True
    assert limiter.allow("k") is False
    fake_time.advance(60)
    assert limiter.exhausted("k") is False


def test_build_config_from_env(monkeypatch):
    monkeypatch.setenv("AUTH_RATE_LIMIT", "10")
    monkeypatch.setenv("BILLING_RATE_LIMIT", "nope")

    assert build_rate_limit_config() == {"auth": 10, "billing": None}
