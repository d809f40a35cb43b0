"""
Shared fixtures: an in-memory store, a manual clock and a recording sender,
wired into a CampaignEngine. No database or broker is needed.
"""
import pytest

from app.core.clock import ManualClock
from app.core.config import EngineConfig
from app.db.memory_store import InMemoryStore
from app.services.engine import CampaignEngine
from factories import START, RecordingSender


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def engine_config():
    return EngineConfig(
        max_send_attempts=5,
        retry_base_delay_seconds=30,
        retry_max_delay_seconds=600,
        event_dedupe_window_seconds=5,
        recent_actions_limit=10,
    )


@pytest.fixture
def engine(store, sender, clock, engine_config):
    return CampaignEngine(store, sender, clock=clock, config=engine_config, worker_id="test-worker")
