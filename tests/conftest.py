from datetime import datetime, timedelta, timezone

import pytest

from tiergate.service import EntitlementService

# Wednesday; the week started Monday 2026-03-02.
BASE_TIME = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    """In-memory service with reconciliation disabled."""
    return EntitlementService(clock=clock)
