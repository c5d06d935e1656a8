"""Shared pytest fixtures for MosaicMatch tests."""
import json
from datetime import datetime, timedelta, timezone

import pytest

from mosaic_match.services.errors import MatchServiceError
from mosaic_match.services.identity import StaticIdentityProvider, UserSession
from mosaic_match.services.simulator import JourneySimulator, SimulatorConfig


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0.0, minutes=0.0):
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class RecordingSleep:
    """Async sleep replacement that only records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeRecordFetcher:
    """In-memory record store keyed by path.

    Errors queued with ``fail`` are raised, one per call, before the stored
    record is returned.  Unknown paths answer with a 404.
    """

    def __init__(self, records=None):
        self.records = dict(records or {})
        self.failures = {}
        self.calls = []

    async def fetch(self, path, record_id):
        self.calls.append(path)
        pending = self.failures.get(path)
        if pending:
            raise pending.pop(0)
        if path not in self.records:
            raise MatchServiceError("Not Found", 404)
        return self.records[path]

    def fail(self, path, *errors):
        self.failures.setdefault(path, []).extend(errors)

    def add_source(self, source_id, roster, payload):
        self.records[f"chat/{source_id}/people.json"] = json.dumps(roster).encode()
        self.records[f"chat/{source_id}/personality-insights.json"] = json.dumps(payload).encode()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def user_session():
    return UserSession(user_id="user-abc", token="token-abc")


@pytest.fixture
def identity(user_session):
    return StaticIdentityProvider(user_session)


@pytest.fixture
def simulator(identity, clock):
    """Simulator with no latency and no random errors."""
    return JourneySimulator(
        SimulatorConfig(simulate_network_delay=False),
        identity=identity,
        clock=clock,
    )


@pytest.fixture
def fetcher():
    return FakeRecordFetcher()
