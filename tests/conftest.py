"""
Shared fixtures.
"""
from datetime import datetime, timezone

import pytest

from tests.helpers import FakeClock, FakeProvider


@pytest.fixture
def clock():
    """Clock frozen at 2026-01-15 18:00 UTC."""
    return FakeClock(datetime(2026, 1, 15, 18, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return FakeProvider()
