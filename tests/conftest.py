"""Pytest configuration: make the flat modules at the project root importable,
and provide fresh in-memory stores."""

import os
import sys

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from config import Settings  # noqa: E402
from event_log import EventLog  # noqa: E402
from jobs import JobStore  # noqa: E402
from storage import Storage  # noqa: E402


@pytest.fixture
def storage():
    s = Storage(":memory:")
    yield s
    s.close()


@pytest.fixture
def store(storage):
    return JobStore(storage)


@pytest.fixture
def events(storage):
    return EventLog(storage)


@pytest.fixture
def fast_settings():
    return Settings(
        poll_interval=0.01,
        step_delay=0,
        steps=3,
        stream_maxlen=100,
        error_backoff=0.01,
        relay_poll_interval=0.005,
        relay_batch_size=10,
        relay_grace=0,
        replay_settle=0,
        replay_start_delay=0,
        replay_step_delay=0,
    )
