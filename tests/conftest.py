import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import prtop  # noqa: E402

FIXED_NOW = dt.datetime(2024, 1, 10, 12, 0, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def fixed_now(monkeypatch):
    """Freeze the module clock used for running-check durations and relative times."""
    monkeypatch.setattr(prtop, '_utcnow', lambda: FIXED_NOW)
    return FIXED_NOW


@pytest.fixture(autouse=True)
def _no_mock_fetch(monkeypatch):
    monkeypatch.delenv('MOCK_FETCH', raising=False)
