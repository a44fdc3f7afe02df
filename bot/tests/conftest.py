"""
Pytest configuration and shared fixtures for bot tests.
"""

import sys
from pathlib import Path

import pytest

# Add bot directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import Settings
from state_manager import StateManager
from storage import TournamentStore
from wcl_api import Fight, Report, ReportFights

REPORT_CODE = "aBcD1234EfGh5678"
BACKUP_CODE = "ZyXw9876VuTs5432"

# 2025-10-09T08:53:20Z
REPORT_START_MS = 1760000000000


class FakeApi:
    """Stands in for WclClient: canned reports, deaths and boss kills"""

    def __init__(self, reports=None, deaths=None, boss_kills=None, errors=None):
        self.reports = reports or {}
        self.deaths = deaths or {}
        self.boss_kills = boss_kills or {}
        self.errors = errors or {}
        self.calls = []

    async def fetch_report_fights(self, code):
        self.calls.append(("fights", code))
        if code in self.errors:
            raise self.errors[code]
        return self.reports[code]

    async def count_deaths(self, code, fight_id):
        self.calls.append(("deaths", code, fight_id))
        return self.deaths.get(fight_id, 0)

    async def fetch_boss_kill_times(self, code, fight):
        self.calls.append(("bosses", code, fight.id))
        return self.boss_kills.get(fight.id, [])


class FakeClock:
    """Settable clock in seconds"""

    def __init__(self, now=1760000000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_fight(
    fight_id=1,
    name="Ara-Kara, City of Echoes",
    level=15,
    start=60000,
    duration=1450000,
    keystone_time=0,
    keystone_bonus=None,
    kill=True,
    rating=0,
):
    return Fight(
        id=fight_id,
        name=name,
        start_time=start,
        end_time=start + duration,
        keystone_level=level,
        keystone_time=keystone_time,
        keystone_bonus=keystone_bonus,
        rating=rating,
        kill=kill,
    )


def make_report(fights, code=REPORT_CODE, start=REPORT_START_MS):
    return ReportFights(report=Report(code=code, start_time=start), fights=list(fights))


@pytest.fixture
def store(tmp_path):
    """Empty store in a temporary data directory"""
    store = TournamentStore(tmp_path / "data")
    store.ensure_files()
    return store


@pytest.fixture
def settings():
    return Settings(wcl_client_id="client-id", wcl_client_secret="client-secret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def state(store, clock):
    return StateManager(store, clock=clock)


@pytest.fixture
def recorder():
    """Collects (event, payload) pairs from a state manager or hub"""
    events = []

    def record(event, payload):
        events.append((event, payload))

    record.events = events
    return record
