"""Shared test fixtures for the pipeline service.

Provides:
- MutableClock: injectable clock that tests can move forward or back
- clock: a MutableClock pinned to a fixed instant
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Callable clock for repositories; returns `now` until advanced."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()
