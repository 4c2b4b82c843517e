"""Shared test fixtures and fakes for Device Gateway tests."""

from __future__ import annotations

import pathlib
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]


class FakeHandle:
    """In-memory connection handle that records what was sent and closed."""

    def __init__(self, fail_send: bool = False, fail_close: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail_send = fail_send
        self.fail_close = fail_close

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.fail_send:
            raise ConnectionError("socket write failed")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.fail_close:
            raise ConnectionError("socket already gone")
        self.closed = True
        self.close_code = code
        self.close_reason = reason


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
