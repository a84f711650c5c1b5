from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest

from topicmirror.config import Endpoints, SyncConfig
from topicmirror.services.client import RateLimitedClient

API_BASE = "https://api.test/api"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class DummyResponse:
    def __init__(self, payload: Any = None, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def json(self) -> Any:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeRemote:
    """Routes GET requests by exact URL; unknown URLs answer 404."""

    def __init__(self) -> None:
        self.routes: dict[str, Any] = {}
        self.calls: list[str] = []
        self.headers: list[Any] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(url)
        self.headers.append(headers)
        if url not in self.routes:
            return DummyResponse(None, status_code=404)
        value = self.routes[url]
        if callable(value):
            value = value()
        if isinstance(value, Exception):
            raise value
        if isinstance(value, DummyResponse):
            return value
        return DummyResponse(value)

    def session(self) -> SimpleNamespace:
        return SimpleNamespace(get=self.get, headers={}, close=lambda: None)

    def count(self, url: str) -> int:
        return self.calls.count(url)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoints() -> Endpoints:
    return Endpoints(API_BASE)


@pytest.fixture
def config(tmp_path) -> SyncConfig:
    return SyncConfig(
        base_url=API_BASE,
        data_root=tmp_path / "data",
        interval_ms=0,
        retries=2,
        concurrency=1,
    )


@pytest.fixture
def client(remote: FakeRemote, clock: FakeClock) -> RateLimitedClient:
    return RateLimitedClient(interval=0, retries=2, session=remote.session(), clock=clock, sleep=clock.sleep)
