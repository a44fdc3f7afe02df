"""
Tests for admin commands and the broadcast hub.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add bot directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from collector import Collector
from conftest import REPORT_CODE, FakeApi, make_fight, make_report
from gateway import AdminGateway, BroadcastHub, normalize_report_reference
from errors import ValidationError
from poller import AdaptivePoller

REPORT_URL = f"https://www.warcraftlogs.com/reports/{REPORT_CODE}"


class GatedApi(FakeApi):
    """Holds report fetches until released"""

    async def fetch_report_fights(self, code):
        self.fetching.set()
        await self.release.wait()
        return await super().fetch_report_fights(code)


def handle(gateway, command, payload=None, secret=None):
    return asyncio.run(gateway.handle(command, payload, secret))


@pytest.fixture
def gateway(store, state):
    return AdminGateway(store, state, recap_duration_ms=15000)


class TestAuth:
    """Test the shared-secret check"""

    def test_wrong_secret_rejected(self, store, state):
        gateway = AdminGateway(store, state, secret="hunter2")
        response = handle(gateway, "tournament", {"action": "pause"}, secret="nope")
        assert response.success is False
        assert response.message == "Unauthorized"
        assert state.is_paused() is False

    def test_missing_secret_rejected(self, store, state):
        gateway = AdminGateway(store, state, secret="hunter2")
        assert handle(gateway, "tournament", {"action": "pause"}).success is False

    def test_correct_secret(self, store, state):
        gateway = AdminGateway(store, state, secret="hunter2")
        assert handle(gateway, "tournament", {"action": "pause"}, secret="hunter2").success is True

    def test_unknown_command(self, gateway):
        response = handle(gateway, "drop_tables")
        assert response.success is False
        assert "Unknown command" in response.message


class TestRosterCommands:
    """Test set_report and update_team"""

    def test_normalize_bare_code(self):
        assert normalize_report_reference(REPORT_CODE) == REPORT_URL
        assert normalize_report_reference("") == ""
        with pytest.raises(ValidationError):
            normalize_report_reference("https://example.com/x")

    def test_set_report_creates_team(self, gateway, store):
        response = handle(gateway, "set_report", {"team": "Alpha", "wcl_url": REPORT_CODE})
        assert response.success is True
        assert store.find_team("Alpha")["wcl_url"] == REPORT_URL

    def test_set_report_by_number(self, gateway, store):
        store.upsert_team("Alpha")
        response = handle(gateway, "set_report", {"team_number": 1, "wcl_url": REPORT_URL})
        assert response.success is True
        assert store.find_team("Alpha")["wcl_url"] == REPORT_URL

    def test_set_report_invalid_reference(self, gateway, store):
        store.upsert_team("Alpha")
        response = handle(gateway, "set_report", {"team": "Alpha", "wcl_url": "not-a-report"})
        assert response.success is False
        assert "Invalid" in response.message

    def test_update_unknown_team(self, gateway):
        response = handle(gateway, "update_team", {"team": "Ghost", "leader_name": "x"})
        assert response.success is False
        assert "not found" in response.message

    def test_rename_and_bracket(self, gateway, store, state):
        store.upsert_team("Alpha")
        store.update_leaderboard("Alpha", 12)
        response = handle(gateway, "update_team", {"team": "Alpha", "new_name": "Apex", "bracket": "b"})
        assert response.success is True
        assert store.find_team("Apex")["bracket"] == "B"
        assert state.get_leaderboard()[0]["team_name"] == "Apex"
        assert state.get_leaderboard()[0]["points"] == 12

    def test_invalid_bracket(self, gateway, store):
        store.upsert_team("Alpha")
        response = handle(gateway, "update_team", {"team": "Alpha", "bracket": "Q"})
        assert response.success is False

    def test_slot_conflict_is_success_with_fallback(self, gateway, store):
        store.upsert_team("Alpha")
        store.upsert_team("Bravo")
        response = handle(gateway, "update_team", {"team": "Bravo", "new_team_number": 1})
        assert response.success is True
        assert response.data["fallback"] == 3
        assert response.data["conflict"]["team_name"] == "Alpha"

    def test_nothing_to_update(self, gateway, store):
        store.upsert_team("Alpha")
        assert handle(gateway, "update_team", {"team": "Alpha"}).success is False

    def test_bad_team_number(self, gateway, store):
        store.upsert_team("Alpha")
        response = handle(gateway, "update_team", {"team": "Alpha", "new_team_number": -2})
        assert response.success is False

    def test_rename_waits_for_running_pass(self, store, state, settings):
        """A rename sent mid-pass lands after the pass, and the run is scored once"""
        store.upsert_team("Alpha", wcl_url=REPORT_CODE)
        api = GatedApi(reports={REPORT_CODE: make_report([make_fight()])})
        poller = AdaptivePoller(Collector(store, api, settings), state, 30000, 300000)
        gateway = AdminGateway(store, state, poller)

        async def run():
            api.fetching = asyncio.Event()
            api.release = asyncio.Event()
            first_pass = asyncio.create_task(poller.run_once())
            await api.fetching.wait()
            rename = asyncio.create_task(gateway.handle("update_team", {"team": "Alpha", "new_name": "Omega"}))
            await asyncio.sleep(0.01)
            renamed_mid_pass = store.find_team("Omega") is not None
            api.release.set()
            await first_pass
            response = await rename
            second = await poller.run_once()
            return renamed_mid_pass, response, second

        renamed_mid_pass, response, second = asyncio.run(run())
        assert renamed_mid_pass is False
        assert response.success is True
        assert second.new_count == 0
        assert store.read_leaderboard() == {"Omega": 21}
        assert len(store.read_runs()) == 1


class TestTournamentAndRuns:
    """Test status and run commands"""

    def test_tournament_actions(self, gateway, state):
        assert handle(gateway, "tournament", {"action": "pause"}).data == {"status": "paused"}
        assert handle(gateway, "tournament", {"action": "resume"}).data == {"status": "active"}
        assert handle(gateway, "tournament", {"action": "finish"}).data == {"status": "finished"}
        assert handle(gateway, "tournament", {"action": "explode"}).success is False

    def test_toggle_run(self, gateway, store, state):
        store.upsert_team("Alpha")
        first = handle(gateway, "toggle_run", {"team": "Alpha", "dungeon": "The Dawnbreaker", "level": 14})
        assert first.data["active"] is True
        assert state.get_active_runs()[0]["level"] == 14
        second = handle(gateway, "toggle_run", {"team": "Alpha"})
        assert second.data == {"active": False}
        assert state.get_active_runs() == []

    def test_clear_without_active_run(self, gateway, store):
        store.upsert_team("Alpha")
        assert handle(gateway, "clear_run", {"team": "Alpha"}).success is False

    def test_annotate_requires_note(self, gateway, store):
        store.upsert_team("Alpha")
        assert handle(gateway, "annotate_run", {"team": "Alpha", "note": " "}).success is False

    def test_show_recap(self, gateway, store, state, recorder):
        store.upsert_team("Alpha")
        state.on_run_complete("Alpha", {"dungeon": "The Dawnbreaker", "level": 12, "points": 9})
        state.subscribe(recorder)
        response = handle(gateway, "show_recap", {"team": "Alpha"})
        assert response.success is True
        event, payload = recorder.events[-1]
        assert event.value == "recap:show"
        assert payload["duration"] == 15000
        assert payload["recap"]["points"] == 9

    def test_show_recap_without_runs(self, gateway):
        assert handle(gateway, "show_recap").success is False

    def test_force_refresh_without_poller(self, gateway):
        assert handle(gateway, "force_refresh").success is False

    def test_force_refresh(self, store, state, settings):
        store.upsert_team("Alpha", wcl_url=REPORT_CODE)
        api = FakeApi(reports={REPORT_CODE: make_report([make_fight(duration=1450000)])})
        poller = AdaptivePoller(Collector(store, api, settings), state, 30000, 300000)
        gateway = AdminGateway(store, state, poller)
        response = handle(gateway, "force_refresh", {"team": "alpha"})
        assert response.success is True
        assert response.data["new_count"] == 1


class TestBroadcastHub:
    """Test fan-out to client sinks"""

    def test_connect_sends_snapshot(self, state):
        hub = BroadcastHub(state)
        received = []
        hub.connect(lambda name, payload: received.append(name))
        assert received == ["state:sync"]

    def test_events_forwarded_with_recap(self, state):
        hub = BroadcastHub(state, recap_duration_ms=5000)
        received = []
        hub.connect(lambda name, payload: received.append((name, payload)))
        state.on_run_complete("Alpha", {"dungeon": "The Dawnbreaker", "level": 12})
        names = [name for name, _ in received]
        assert names.index("run:complete") + 1 == names.index("recap:show")
        recap_payload = received[names.index("recap:show")][1]
        assert recap_payload["duration"] == 5000
        assert recap_payload["recap"]["team_name"] == "Alpha"

    def test_failing_sink_dropped(self, state):
        hub = BroadcastHub(state)
        received = []

        def broken(name, payload):
            if name != "state:sync":
                raise ConnectionError("gone")

        hub.connect(broken)
        hub.connect(lambda name, payload: received.append(name))
        state.set_tournament_status("paused")
        assert hub.client_count == 1
        assert received[-1] == "tournament:status"

    def test_disconnect(self, state):
        hub = BroadcastHub(state)
        received = []
        sink = lambda name, payload: received.append(name)
        hub.connect(sink)
        hub.disconnect(sink)
        state.set_tournament_status("paused")
        assert received == ["state:sync"]
