"""
Warcraft Logs v2 client.

OAuth2 client-credentials token (cached process-wide), GraphQL queries with
retry/backoff, and typed views of the report payloads the collector needs.
"""

import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from config import (
    API_BASE_DELAY_SECONDS,
    API_JITTER_RATIO,
    API_MAX_DELAY_SECONDS,
    API_MAX_RETRIES,
    API_TIMEOUT_SECONDS,
    BARE_REPORT_CODE_PATTERN,
    DEFAULT_TOKEN_TTL_SECONDS,
    REPORT_CODE_PATTERN,
    TOKEN_REFRESH_MARGIN_SECONDS,
    WCL_GQL_CLIENT,
    WCL_TOKEN_URL,
)
from errors import ApiError, AuthError, MalformedResponseError, RequestRejectedError, TransientError
from log_utils import setup_logging

logger = setup_logging(__name__)

# ==============================
# Queries
# ==============================

REPORT_FIGHTS_QUERY = """
query($code: String!) {
  reportData {
    report(code: $code) {
      code
      startTime
      endTime
      fights {
        id
        name
        startTime
        endTime
        keystoneLevel
        keystoneTime
        keystoneBonus
        rating
        kill
      }
    }
  }
}
"""

DUNGEON_PULLS_QUERY = """
query($code: String!, $fid: [Int!]) {
  reportData {
    report(code: $code) {
      fights(fightIDs: $fid) {
        id
        startTime
        endTime
        keystoneTime
        dungeonPulls {
          id
          name
          startTime
          endTime
          kill
          encounterID
        }
      }
    }
  }
}
"""

DEATH_EVENTS_QUERY = """
query($code: String!, $fid: Int!) {
  reportData {
    report(code: $code) {
      events(dataType: Deaths, fightIDs: [$fid], hostilityType: Friendlies, limit: 10000) { data }
    }
  }
}
"""

DEATH_TABLE_QUERY = """
query($code: String!, $fid: Int!) {
  reportData {
    report(code: $code) {
      table(dataType: Deaths, fightIDs: [$fid], hostilityType: Friendlies)
    }
  }
}
"""


def extract_report_code(value: Optional[str]) -> Optional[str]:
    """Report code from a bare 16-char code or a /reports/<code> URL"""
    raw = str(value or "").strip()
    if not raw:
        return None
    match = REPORT_CODE_PATTERN.search(raw)
    if match:
        return match.group(1)
    if BARE_REPORT_CODE_PATTERN.match(raw):
        return raw
    return None


# ==============================
# Payload schemas
# ==============================

def _int_field(payload: Dict[str, Any], key: str, default: Optional[int] = 0) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedResponseError(f"Field {key!r} should be a number, got {type(value).__name__}")
    return int(value)


def _str_field(payload: Dict[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise MalformedResponseError(f"Field {key!r} should be a string, got {type(value).__name__}")
    return value


def _require_dict(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Expected an object for {what}, got {type(payload).__name__}")
    return payload


def _nested(payload: Any, *keys: str) -> Any:
    """Walk nested objects; a missing level gives None, a level that is not an object is malformed"""
    value = payload
    for depth, key in enumerate(keys):
        if value is None:
            return None
        value = _require_dict(value, ".".join(keys[:depth]) or "response").get(key)
    return value


@dataclass(frozen=True)
class Report:
    code: str
    start_time: int
    end_time: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "Report":
        data = _require_dict(payload, "report")
        return cls(
            code=_str_field(data, "code"),
            start_time=_int_field(data, "startTime"),
            end_time=_int_field(data, "endTime"),
        )


@dataclass(frozen=True)
class Fight:
    """One fight in a report; times are offsets from the report start"""
    id: int
    name: str
    start_time: int
    end_time: int
    keystone_level: int = 0
    keystone_time: int = 0
    keystone_bonus: Optional[int] = None
    rating: int = 0
    kill: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "Fight":
        data = _require_dict(payload, "fight")
        if data.get("id") is None:
            raise MalformedResponseError("Fight without id")
        return cls(
            id=_int_field(data, "id"),
            name=_str_field(data, "name"),
            start_time=_int_field(data, "startTime"),
            end_time=_int_field(data, "endTime"),
            keystone_level=_int_field(data, "keystoneLevel"),
            keystone_time=_int_field(data, "keystoneTime"),
            keystone_bonus=_int_field(data, "keystoneBonus", None),
            rating=_int_field(data, "rating"),
            kill=bool(data.get("kill")),
        )


@dataclass(frozen=True)
class DungeonPull:
    id: int
    name: str = ""
    start_time: int = 0
    end_time: int = 0
    kill: bool = False
    encounter_id: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "DungeonPull":
        data = _require_dict(payload, "dungeon pull")
        return cls(
            id=_int_field(data, "id"),
            name=_str_field(data, "name"),
            start_time=_int_field(data, "startTime"),
            end_time=_int_field(data, "endTime"),
            kill=bool(data.get("kill")),
            encounter_id=_int_field(data, "encounterID"),
        )


@dataclass
class ReportFights:
    report: Report
    fights: List[Fight] = field(default_factory=list)


# ==============================
# Retry policy
# ==============================

def compute_backoff_delay(
    attempt: int,
    base_delay: float = API_BASE_DELAY_SECONDS,
    max_delay: float = API_MAX_DELAY_SECONDS,
    jitter_ratio: float = API_JITTER_RATIO,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number `attempt` (0-based): doubling, capped, plus jitter"""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + rng() * jitter_ratio * delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[Any]],
    max_retries: int = API_MAX_RETRIES,
    base_delay: float = API_BASE_DELAY_SECONDS,
    max_delay: float = API_MAX_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    description: str = "request",
) -> Any:
    """
    Call fn, retrying TransientError with exponential backoff.
    Any other error propagates immediately.
    """
    last_error: Optional[TransientError] = None
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except TransientError as e:
            last_error = e
            if attempt >= max_retries:
                break
            delay = compute_backoff_delay(attempt, base_delay, max_delay)
            logger.warning(f"{description} failed (attempt {attempt + 1}), retrying in {delay:.1f}s: {e}")
            await sleep(delay)

    raise TransientError(
        f"{description} failed after {max_retries + 1} attempts: {last_error}",
        getattr(last_error, "status", None),
    )


# ==============================
# Client
# ==============================

@dataclass
class TokenCache:
    token: Optional[str] = None
    expires_at: float = 0.0

    def get(self, now: float) -> Optional[str]:
        if self.token and now < self.expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self.token
        return None

    def store(self, token: str, ttl_seconds: float, now: float) -> None:
        self.token = token
        self.expires_at = now + ttl_seconds

    def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0


# Shared by every client in the process unless one is injected
DEFAULT_TOKEN_CACHE = TokenCache()


class WclClient:
    """Async Warcraft Logs client; call close() (or use `async with`) when done"""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        session: Optional[aiohttp.ClientSession] = None,
        token_cache: Optional[TokenCache] = None,
        timeout_seconds: float = API_TIMEOUT_SECONDS,
        max_retries: int = API_MAX_RETRIES,
        base_delay: float = API_BASE_DELAY_SECONDS,
        on_request: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_cache = token_cache if token_cache is not None else DEFAULT_TOKEN_CACHE
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.on_request = on_request
        self._sleep = sleep
        self._clock = clock
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "WclClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post(self, url: str, **kwargs) -> Any:
        """One HTTP attempt, with every failure mapped onto the error taxonomy"""
        if self.on_request:
            self.on_request()

        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with session.post(url, timeout=timeout, **kwargs) as response:
                status = response.status
                try:
                    body = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError):
                    body = None
        except asyncio.TimeoutError:
            raise TransientError(f"Request timed out after {self.timeout_seconds}s: {url}")
        except aiohttp.ClientError as e:
            raise TransientError(f"Network error for {url}: {e}")

        if status >= 500:
            raise TransientError(f"HTTP {status} from {url}", status)
        if status == 401:
            raise AuthError(f"HTTP 401 from {url}", status)
        if status >= 400:
            raise RequestRejectedError(f"HTTP {status} from {url}: {body}", status)
        return body

    async def get_token(self) -> str:
        """Cached bearer token; exchanges client credentials when missing or about to expire"""
        now = self._clock()
        cached = self.token_cache.get(now)
        if cached:
            return cached

        if not self.client_id or not self.client_secret:
            raise AuthError("Missing WCL_CLIENT_ID / WCL_CLIENT_SECRET")

        async def exchange():
            return await self._post(
                WCL_TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
            )

        try:
            body = await retry_with_backoff(
                exchange, self.max_retries, self.base_delay, sleep=self._sleep, description="WCL token exchange"
            )
        except RequestRejectedError as e:
            raise AuthError(f"WCL token exchange rejected: {e}", e.status) from e

        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthError("WCL token response did not include an access token")

        try:
            ttl = float(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL_SECONDS
        self.token_cache.store(body["access_token"], ttl, now)
        logger.info(f"WCL token refreshed (valid for {int(ttl)}s)")
        return body["access_token"]

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL query and return its data object"""
        token = await self.get_token()

        async def send():
            return await self._post(
                WCL_GQL_CLIENT,
                json={"query": query, "variables": variables or {}},
                headers={"Authorization": f"Bearer {token}"},
            )

        try:
            body = await retry_with_backoff(
                send, self.max_retries, self.base_delay, sleep=self._sleep, description="WCL query"
            )
        except AuthError:
            self.token_cache.clear()
            raise

        if not isinstance(body, dict):
            raise MalformedResponseError("WCL response was not a JSON object")
        if body.get("errors"):
            raise MalformedResponseError(f"WCL GraphQL errors: {body['errors']}")
        if not isinstance(body.get("data"), dict):
            raise MalformedResponseError("WCL response without data")
        return body["data"]

    # ------------------------------
    # Report queries
    # ------------------------------

    async def fetch_report_fights(self, code: str) -> ReportFights:
        """Report metadata plus the fights that carry a keystone level"""
        data = await self.query(REPORT_FIGHTS_QUERY, {"code": code})
        report_data = _nested(data, "reportData", "report")
        if not report_data:
            raise MalformedResponseError("Report not found or not publicly accessible")

        report = Report.from_payload(report_data)
        raw_fights = _nested(report_data, "fights") or []
        if not isinstance(raw_fights, list):
            raise MalformedResponseError("Report fights should be a list")
        fights = [f for f in (Fight.from_payload(p) for p in raw_fights) if f.keystone_level]
        return ReportFights(report=report, fights=fights)

    async def fetch_boss_kill_times(self, code: str, fight: Fight) -> List[int]:
        """Boss kill times in ms from the fight start, on the keystone timer's scale"""
        try:
            data = await self.query(DUNGEON_PULLS_QUERY, {"code": code, "fid": [fight.id]})
            fights = _nested(data, "reportData", "report", "fights") or []
            if not isinstance(fights, list):
                raise MalformedResponseError("Report fights should be a list")
            if not fights:
                return []
            payload = _require_dict(fights[0], "fight")
            raw_pulls = payload.get("dungeonPulls") or []
            if not isinstance(raw_pulls, list):
                raise MalformedResponseError("Dungeon pulls should be a list")
            pulls = [DungeonPull.from_payload(p) for p in raw_pulls]
            fight_start = _int_field(payload, "startTime", fight.start_time) or fight.start_time
            fight_end = _int_field(payload, "endTime")
            keystone_time = _int_field(payload, "keystoneTime")
        except ApiError as e:
            logger.warning(f"Failed to fetch boss kill times for {code}#{fight.id}: {e}")
            return []

        wall_duration = fight_end - fight_start
        kills = []
        for pull in pulls:
            if not pull.kill or pull.encounter_id <= 0:
                continue
            elapsed = pull.end_time - fight_start
            if keystone_time > 0 and wall_duration > 0:
                elapsed = round(elapsed / wall_duration * keystone_time)
            if elapsed > 0:
                kills.append(elapsed)
        return sorted(kills)

    async def count_deaths(self, code: str, fight_id: int) -> int:
        """Friendly deaths in a fight; the deaths table is the fallback source"""
        try:
            data = await self.query(DEATH_EVENTS_QUERY, {"code": code, "fid": fight_id})
            events = _nested(data, "reportData", "report", "events", "data")
            if isinstance(events, list):
                return len(events)
        except ApiError as e:
            logger.debug(f"Death events query failed for {code}#{fight_id}, trying table: {e}")

        try:
            data = await self.query(DEATH_TABLE_QUERY, {"code": code, "fid": fight_id})
            table = _nested(data, "reportData", "report", "table")
        except ApiError as e:
            logger.warning(f"Failed to count deaths for {code}#{fight_id}: {e}")
            return 0

        if isinstance(table, str):
            try:
                table = json.loads(table)
            except json.JSONDecodeError:
                return 0
        if not isinstance(table, dict):
            return 0
        if isinstance(table.get("data"), dict):
            table = table["data"]

        total = 0
        entries = table.get("entries")
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            deaths = entry.get("deaths")
            if isinstance(deaths, list):
                total += len(deaths)
            elif isinstance(deaths, (int, float)):
                total += int(deaths)
            elif isinstance(entry.get("totalDeaths"), (int, float)):
                total += int(entry["totalDeaths"])
        return total
