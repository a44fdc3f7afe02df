"""
One ingestion pass: fetch every team's reports, filter and score new runs,
commit each run to the store.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from config import DEDUP_BUCKET_SECONDS, DEATH_PENALTY_LEVEL_THRESHOLD, MPLUS_START_OFFSET_MS, Settings
from errors import ApiError, AuthError, NotFoundError
from log_utils import setup_logging
from scoring import DEFAULT_BRACKET, par_time_for, points_for, resolve_upgrades, slugify_dungeon
from storage import RunRecord, TournamentStore
from time_utils import floor_to_bucket, format_timer_ms, ms_to_utc, parse_event_window, to_utc_iso
from wcl_api import Fight, extract_report_code

logger = setup_logging(__name__)


@dataclass
class CollectResult:
    new_count: int = 0
    notices: List[str] = field(default_factory=list)        # operator channel
    announcements: List[str] = field(default_factory=list)  # public channel
    completions: List[Dict[str, Any]] = field(default_factory=list)


def make_dedup_key(team_name: str, dungeon: str, level: int, end_ms: int) -> str:
    """Identity of a run: team, dungeon, level and completion minute (UTC)"""
    bucket = floor_to_bucket(ms_to_utc(end_ms), DEDUP_BUCKET_SECONDS)
    return (
        f"team:{str(team_name).strip().lower()}"
        f"|dungeon:{slugify_dungeon(dungeon)}"
        f"|level:{int(level)}"
        f"|at:{bucket.strftime('%Y-%m-%dT%H:%M')}"
    )


def adjusted_duration_ms(fight: Fight, deaths: int, penalty_lt12_s: int, penalty_ge12_s: int) -> int:
    """Keystone timer when reported, else wall time minus the countdown plus death penalties"""
    if fight.keystone_time > 0:
        return fight.keystone_time
    clear_ms = max(0, fight.end_time - fight.start_time - MPLUS_START_OFFSET_MS)
    penalty_s = penalty_lt12_s if fight.keystone_level < DEATH_PENALTY_LEVEL_THRESHOLD else penalty_ge12_s
    return clear_ms + max(0, deaths) * penalty_s * 1000


def report_codes_for(team: Dict[str, Any]) -> List[str]:
    """Unique report codes from the primary and backup references"""
    codes = []
    for key in ("wcl_url", "wcl_backup_url"):
        code = extract_report_code(team.get(key))
        if code and code not in codes:
            codes.append(code)
    return codes


def team_label(team: Dict[str, Any], index: int) -> str:
    number = team.get("team_number") or index + 1
    return f"{team['team_name']} (Team {number})"


class Collector:
    def __init__(self, store: TournamentStore, api, settings: Settings):
        self.store = store
        self.api = api
        self.settings = settings

    def _window(self):
        if not self.settings.event_enforce_window:
            return None, None
        return parse_event_window(self.settings.event_start, self.settings.event_end, self.settings.realm_tz)

    async def collect_and_sync(self, team_name: Optional[str] = None) -> CollectResult:
        """
        Run one pass over the roster (or a single team). Report and run errors become
        notices; StoreError propagates and ends the pass.
        """
        result = CollectResult()
        teams = self.store.get_teams()
        if team_name:
            teams = [t for t in teams if t["team_name"].lower() == team_name.strip().lower()]
            if not teams:
                result.notices.append(f"[WCL] Unknown team: {team_name}")
                return result
        if not teams:
            return result

        window_start, window_end = self._window()
        seen = self.store.get_seen()
        pass_seen: Set[str] = set()
        all_teams = self.store.get_teams()

        for team in teams:
            name = team["team_name"]
            index = next((i for i, t in enumerate(all_teams) if t["team_name"] == name), 0)
            codes = report_codes_for(team)

            for key in ("wcl_url", "wcl_backup_url"):
                if team.get(key) and not extract_report_code(team[key]):
                    result.notices.append(f"[WCL] {name}: invalid report reference {team[key]!r}")
            if not codes:
                result.notices.append(f"[WCL Info] team={name} has no report codes")
                continue

            for code in codes:
                try:
                    report_fights = await self.api.fetch_report_fights(code)
                except AuthError as e:
                    logger.error(f"WCL authentication failed, stopping pass: {e}")
                    result.notices.append(f"[WCL] Authentication failed: {e}")
                    return result
                except ApiError as e:
                    logger.warning(f"{name}: failed to fetch report {code}: {e}")
                    result.notices.append(f"[WCL] {name}: failed {code}: {e}")
                    continue

                result.notices.append(
                    f"[WCL Info] team={name} code={code} fights={len(report_fights.fights)}"
                )
                report_start = report_fights.report.start_time

                for fight in report_fights.fights:
                    completion = await self._process_fight(
                        team, index, code, report_start, fight, seen, pass_seen, window_start, window_end, result
                    )
                    if completion:
                        result.completions.append(completion)
                        result.new_count += 1

        if result.new_count:
            logger.info(f"Collected {result.new_count} new run(s)")
        return result

    async def _process_fight(
        self,
        team: Dict[str, Any],
        index: int,
        code: str,
        report_start: int,
        fight: Fight,
        seen: Set[str],
        pass_seen: Set[str],
        window_start,
        window_end,
        result: CollectResult,
    ) -> Optional[Dict[str, Any]]:
        name = team["team_name"]
        level = fight.keystone_level
        if not level:
            return None

        if self.settings.wcl_require_kill and not fight.kill:
            result.notices.append(
                f"[WCL Info] cancelled run from team={name} name={fight.name} lvl={level} id={fight.id}"
            )
            return None

        start_ms = report_start + fight.start_time
        end_ms = report_start + fight.end_time
        if end_ms <= start_ms:
            result.notices.append(f"[WCL Info] skip bad times id={fight.id} st={start_ms} en={end_ms}")
            return None

        if window_start and window_end:
            started = ms_to_utc(start_ms)
            if started < window_start or started > window_end:
                result.notices.append(f"[WCL Info] {name} started run outside of event window id={fight.id}")
                return None

        dedup_key = make_dedup_key(name, fight.name, level, end_ms)
        if dedup_key in seen or dedup_key in pass_seen:
            return None
        pass_seen.add(dedup_key)

        try:
            deaths = await self.api.count_deaths(code, fight.id)
        except ApiError as e:
            logger.warning(f"Death count failed for {code}#{fight.id}: {e}")
            deaths = 0
        try:
            boss_kills = await self.api.fetch_boss_kill_times(code, fight)
        except ApiError as e:
            logger.warning(f"Boss kill times failed for {code}#{fight.id}: {e}")
            boss_kills = []

        duration_ms = adjusted_duration_ms(
            fight, deaths, self.settings.death_penalty_lt12, self.settings.death_penalty_ge12
        )
        in_time, upgrades = resolve_upgrades(fight.name, duration_ms, fight.keystone_bonus)
        bracket = team.get("bracket") or DEFAULT_BRACKET
        points = points_for(level, upgrades, in_time, bracket)
        finished_at = to_utc_iso(end_ms)

        record = RunRecord(
            finished_at=finished_at,
            team=name,
            dungeon=fight.name,
            level=level,
            upgrades=upgrades,
            in_time=in_time,
            points=points,
            deaths=deaths,
            duration_ms=duration_ms,
            boss_kills=list(boss_kills),
            blizz_rating=int(round(fight.rating or 0)),
        )
        try:
            committed = self.store.commit_run(record, dedup_key)
        except NotFoundError:
            logger.warning(f"{name} left the roster mid-pass, skipping {fight.name} +{level}")
            result.notices.append(f"[WCL] {name}: team renamed or removed during the pass, run left for the next pass")
            return None
        if not committed:
            return None

        label = team_label(team, index)
        upgrade_label = f"+{upgrades}" if in_time else "depleted"
        result.notices.append(
            f"{label} completed {fight.name} +{level}, {upgrade_label}, "
            f"timer: {format_timer_ms(duration_ms)}, points: {points}"
        )
        result.announcements.append(f"A team completed {fight.name} +{level}")
        logger.info(f"{label}: {fight.name} +{level} {upgrade_label} -> {points} pts")

        return {
            "team_name": name,
            "team_number": team.get("team_number") or index + 1,
            "bracket": bracket,
            "dungeon": fight.name,
            "level": level,
            "upgrades": upgrades,
            "in_time": in_time,
            "duration_ms": duration_ms,
            "par_ms": par_time_for(fight.name),
            "deaths": deaths,
            "points": points,
            "rating": record.blizz_rating,
            "boss_kills": list(boss_kills),
            "finished_at": finished_at,
            "report_code": code,
            "fight_id": fight.id,
        }
