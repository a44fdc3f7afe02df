"""
Tests for the Warcraft Logs client: token cache, retries, schema checks.
No network: a fake session replays canned responses.
"""

import asyncio
import sys
from pathlib import Path

import aiohttp
import pytest

# Add bot directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import AuthError, MalformedResponseError, RequestRejectedError, TransientError
from wcl_api import (
    Fight,
    TokenCache,
    WclClient,
    compute_backoff_delay,
    extract_report_code,
    retry_with_backoff,
)

CODE = "aBcD1234EfGh5678"
TOKEN_OK = {"access_token": "tok-1", "expires_in": 3600}


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self, content_type=None):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Returns queued responses (or raises queued exceptions) for each post"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item
        return FakeResponse(status, body)

    async def close(self):
        self.closed = True


def make_client(session, clock=lambda: 1000.0, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    client = WclClient(
        "client-id",
        "client-secret",
        session=session,
        token_cache=TokenCache(),
        sleep=fake_sleep,
        clock=clock,
        **kwargs,
    )
    client.sleeps = sleeps
    return client


def report_body(fights):
    return {"data": {"reportData": {"report": {"code": CODE, "startTime": 1000, "endTime": 9000, "fights": fights}}}}


class TestExtractReportCode:
    """Test report reference parsing"""

    def test_bare_code(self):
        assert extract_report_code(CODE) == CODE

    def test_report_urls(self):
        assert extract_report_code(f"https://www.warcraftlogs.com/reports/{CODE}") == CODE
        assert extract_report_code(f"https://www.warcraftlogs.com/reports/{CODE}#fight=3") == CODE
        assert extract_report_code(f"https://www.warcraftlogs.com/reports/{CODE}/?fight=last") == CODE

    def test_invalid_references(self):
        assert extract_report_code("") is None
        assert extract_report_code(None) is None
        assert extract_report_code("short") is None
        assert extract_report_code("https://example.com/nothing-here") is None


class TestBackoff:
    """Test the retry schedule"""

    def test_delay_doubles_and_caps(self):
        no_jitter = lambda: 0.0
        assert compute_backoff_delay(0, 1.0, 30.0, rng=no_jitter) == 1.0
        assert compute_backoff_delay(2, 1.0, 30.0, rng=no_jitter) == 4.0
        assert compute_backoff_delay(10, 1.0, 30.0, rng=no_jitter) == 30.0

    def test_jitter_is_at_most_thirty_percent(self):
        assert compute_backoff_delay(1, 1.0, 30.0, rng=lambda: 1.0) == pytest.approx(2.6)

    def test_non_transient_error_is_not_retried(self):
        calls = []

        async def fn():
            calls.append(1)
            raise RequestRejectedError("HTTP 400", 400)

        async def fake_sleep(delay):
            pass

        with pytest.raises(RequestRejectedError):
            asyncio.run(retry_with_backoff(fn, max_retries=3, sleep=fake_sleep))
        assert len(calls) == 1

    def test_exhausted_retries_raise_transient(self):
        calls = []

        async def fn():
            calls.append(1)
            raise TransientError("HTTP 503", 503)

        async def fake_sleep(delay):
            pass

        with pytest.raises(TransientError, match="after 3 attempts"):
            asyncio.run(retry_with_backoff(fn, max_retries=2, sleep=fake_sleep))
        assert len(calls) == 3


class TestToken:
    """Test token exchange and caching"""

    def test_token_is_cached(self):
        session = FakeSession((200, TOKEN_OK))
        client = make_client(session)

        async def run():
            return await client.get_token(), await client.get_token()

        assert asyncio.run(run()) == ("tok-1", "tok-1")
        assert len(session.requests) == 1

    def test_token_refreshed_near_expiry(self):
        now = [1000.0]
        session = FakeSession((200, {"access_token": "tok-1", "expires_in": 60}), (200, {"access_token": "tok-2"}))
        client = make_client(session, clock=lambda: now[0])

        async def run():
            first = await client.get_token()
            now[0] += 31  # less than 30s of validity left
            return first, await client.get_token()

        assert asyncio.run(run()) == ("tok-1", "tok-2")
        assert client.token_cache.expires_at == pytest.approx(1031.0 + 900)

    def test_missing_credentials(self):
        client = WclClient("", "", session=FakeSession(), token_cache=TokenCache())
        with pytest.raises(AuthError):
            asyncio.run(client.get_token())

    def test_rejected_exchange_is_auth_error(self):
        client = make_client(FakeSession((400, {"error": "invalid_client"})))
        with pytest.raises(AuthError):
            asyncio.run(client.get_token())


class TestQuery:
    """Test GraphQL calls, retry and error mapping"""

    def test_retries_server_errors(self):
        session = FakeSession((200, TOKEN_OK), (502, None), (200, {"data": {"ok": True}}))
        client = make_client(session)
        assert asyncio.run(client.query("{ ok }")) == {"ok": True}
        assert len(client.sleeps) == 1

    def test_retries_network_errors(self):
        session = FakeSession((200, TOKEN_OK), aiohttp.ClientConnectionError("reset"), (200, {"data": {}}))
        client = make_client(session)
        assert asyncio.run(client.query("{ ok }")) == {}

    def test_client_error_not_retried(self):
        session = FakeSession((200, TOKEN_OK), (404, {"error": "nope"}))
        client = make_client(session)
        with pytest.raises(RequestRejectedError):
            asyncio.run(client.query("{ ok }"))
        assert client.sleeps == []

    def test_unauthorized_drops_token(self):
        session = FakeSession((200, TOKEN_OK), (401, None))
        client = make_client(session)
        with pytest.raises(AuthError):
            asyncio.run(client.query("{ ok }"))
        assert client.token_cache.token is None

    def test_graphql_errors(self):
        session = FakeSession((200, TOKEN_OK), (200, {"errors": [{"message": "bad"}]}))
        client = make_client(session)
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.query("{ ok }"))

    def test_missing_data(self):
        session = FakeSession((200, TOKEN_OK), (200, {"something": 1}))
        client = make_client(session)
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.query("{ ok }"))

    def test_every_attempt_is_counted(self):
        counted = []
        session = FakeSession((200, TOKEN_OK), (500, None), (200, {"data": {}}))
        client = make_client(session, on_request=lambda: counted.append(1))
        asyncio.run(client.query("{ ok }"))
        assert len(counted) == 3

    def test_bearer_header(self):
        session = FakeSession((200, TOKEN_OK), (200, {"data": {}}))
        client = make_client(session)
        asyncio.run(client.query("{ ok }", {"code": CODE}))
        url, kwargs = session.requests[1]
        assert kwargs["headers"]["Authorization"] == "Bearer tok-1"
        assert kwargs["json"]["variables"] == {"code": CODE}


class TestReportQueries:
    """Test report, boss kill and death count parsing"""

    def test_fetch_report_fights_keeps_keystone_fights(self):
        fights = [
            {"id": 1, "name": "Trash", "startTime": 0, "endTime": 100},
            {"id": 2, "name": "The Dawnbreaker", "startTime": 100, "endTime": 2000,
             "keystoneLevel": 12, "keystoneTime": 1800, "keystoneBonus": 2, "kill": True},
        ]
        client = make_client(FakeSession((200, TOKEN_OK), (200, report_body(fights))))
        result = asyncio.run(client.fetch_report_fights(CODE))
        assert result.report.start_time == 1000
        assert [f.id for f in result.fights] == [2]
        assert result.fights[0].keystone_bonus == 2
        assert result.fights[0].rating == 0

    def test_missing_report(self):
        body = {"data": {"reportData": {"report": None}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.fetch_report_fights(CODE))

    def test_wrong_field_type(self):
        fights = [{"id": 2, "name": "X", "startTime": "soon", "endTime": 10, "keystoneLevel": 10}]
        client = make_client(FakeSession((200, TOKEN_OK), (200, report_body(fights))))
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.fetch_report_fights(CODE))

    def test_fight_defaults(self):
        fight = Fight.from_payload({"id": 4})
        assert fight.keystone_level == 0
        assert fight.keystone_bonus is None
        assert fight.kill is False

    def test_boss_kills_scaled_to_keystone_timer(self):
        body = {"data": {"reportData": {"report": {"fights": [{
            "id": 2, "startTime": 0, "endTime": 2000, "keystoneTime": 1000,
            "dungeonPulls": [
                {"id": 1, "endTime": 1200, "kill": True, "encounterID": 55},
                {"id": 2, "endTime": 400, "kill": True, "encounterID": 54},
                {"id": 3, "endTime": 600, "kill": True, "encounterID": 0},
                {"id": 4, "endTime": 900, "kill": False, "encounterID": 56},
            ],
        }]}}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        fight = Fight(id=2, name="X", start_time=0, end_time=2000, keystone_level=10)
        assert asyncio.run(client.fetch_boss_kill_times(CODE, fight)) == [200, 600]

    def test_boss_kill_failure_returns_empty(self):
        client = make_client(FakeSession((200, TOKEN_OK), (400, None)))
        fight = Fight(id=2, name="X", start_time=0, end_time=2000, keystone_level=10)
        assert asyncio.run(client.fetch_boss_kill_times(CODE, fight)) == []

    def test_deaths_from_events(self):
        body = {"data": {"reportData": {"report": {"events": {"data": [{}, {}, {}]}}}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        assert asyncio.run(client.count_deaths(CODE, 2)) == 3

    def test_deaths_fall_back_to_table(self):
        table = '{"data": {"entries": [{"deaths": [1, 2]}, {"totalDeaths": 3}]}}'
        session = FakeSession(
            (200, TOKEN_OK),
            (400, None),
            (200, {"data": {"reportData": {"report": {"table": table}}}}),
        )
        client = make_client(session)
        assert asyncio.run(client.count_deaths(CODE, 2)) == 5

    def test_deaths_failure_returns_zero(self):
        client = make_client(FakeSession((200, TOKEN_OK), (400, None), (400, None)))
        assert asyncio.run(client.count_deaths(CODE, 2)) == 0


class TestMalformedNesting:
    """Test payloads whose nested levels are not objects"""

    @pytest.mark.parametrize("report_data", ["unexpected", [1, 2], 7])
    def test_report_data_not_an_object(self, report_data):
        body = {"data": {"reportData": report_data}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.fetch_report_fights(CODE))

    def test_report_not_an_object(self):
        body = {"data": {"reportData": {"report": ["fights"]}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.fetch_report_fights(CODE))

    def test_fights_not_a_list(self):
        body = {"data": {"reportData": {"report": {"code": CODE, "startTime": 0, "fights": {"id": 1}}}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        with pytest.raises(MalformedResponseError):
            asyncio.run(client.fetch_report_fights(CODE))

    @pytest.mark.parametrize("report", [["fights"], {"fights": "none"}, {"fights": [{"id": 2, "dungeonPulls": "x"}]}])
    def test_boss_kills_default_to_empty(self, report):
        body = {"data": {"reportData": {"report": report}}}
        client = make_client(FakeSession((200, TOKEN_OK), (200, body)))
        fight = Fight(id=2, name="X", start_time=0, end_time=2000, keystone_level=10)
        assert asyncio.run(client.fetch_boss_kill_times(CODE, fight)) == []

    def test_deaths_default_to_zero(self):
        session = FakeSession(
            (200, TOKEN_OK),
            (200, {"data": {"reportData": {"report": "gone"}}}),
            (200, {"data": {"reportData": [{"table": {}}]}}),
        )
        client = make_client(session)
        assert asyncio.run(client.count_deaths(CODE, 2)) == 0

    def test_events_not_an_object_falls_back_to_table(self):
        session = FakeSession(
            (200, TOKEN_OK),
            (200, {"data": {"reportData": {"report": {"events": ["a", "b"]}}}}),
            (200, {"data": {"reportData": {"report": {"table": {"entries": [{"deaths": 4}]}}}}}),
        )
        client = make_client(session)
        assert asyncio.run(client.count_deaths(CODE, 2)) == 4

    def test_table_entries_not_a_list(self):
        session = FakeSession(
            (200, TOKEN_OK),
            (400, None),
            (200, {"data": {"reportData": {"report": {"table": {"entries": 12}}}}}),
        )
        client = make_client(session)
        assert asyncio.run(client.count_deaths(CODE, 2)) == 0
