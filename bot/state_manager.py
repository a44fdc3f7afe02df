"""
Live tournament state with a typed publish/subscribe interface.

The snapshot is rebuilt from the store (teams, totals, meta) plus what the
poller and admins feed in (active runs, recaps, quota usage). Every mutation and
read holds one re-entrant lock; listeners receive deep copies, in emission order.
"""

import copy
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from config import (
    API_QUOTA_PER_HOUR,
    DEFAULT_ACTIVE_RUN_PAR_MS,
    DEFAULT_TOTAL_BOSSES,
    QUOTA_THROTTLE_PERCENT,
    RECENT_RUNS_CAPACITY,
    TOURNAMENT_NAME,
)
from errors import NotFoundError, ValidationError
from log_utils import setup_logging
from scoring import par_time_for
from storage import TournamentStore

logger = setup_logging(__name__)

QUOTA_WINDOW_SECONDS = 3600

TOURNAMENT_STATUSES = ("pending", "active", "paused", "finished")


class EventType(Enum):
    """Every event the state manager emits; values are the wire names"""
    STATE_SYNC = "state:sync"
    LEADERBOARD_UPDATE = "scoreboard:update"
    ACTIVE_RUNS_UPDATE = "activeRuns:update"
    RUN_START = "run:start"
    RUN_PROGRESS = "run:progress"
    RUN_COMPLETE = "run:complete"
    RECAP_SHOW = "recap:show"
    QUOTA_UPDATE = "quota:update"
    TEAMS_UPDATE = "teams:update"
    POLL_COMPLETE = "poll:complete"
    TOURNAMENT_STATUS = "tournament:status"


Listener = Callable[[EventType, Any], None]


def rank_sort_key(entry: Dict[str, Any]):
    """Points desc, runs desc, name asc"""
    return (-entry["points"], -entry["runs"], entry["team_name"].lower())


def _previous_rank(prior, rank: int) -> int:
    """prior is the entry's (rank, previous_rank) from the last refresh, or None for a new team"""
    if prior is None:
        return rank
    old_rank, old_previous = prior
    return old_previous if old_rank == rank else old_rank


class StateManager:
    def __init__(
        self,
        store: TournamentStore,
        recent_capacity: int = RECENT_RUNS_CAPACITY,
        quota_limit: int = API_QUOTA_PER_HOUR,
        clock: Callable[[], float] = time.time,
        tournament_name: str = TOURNAMENT_NAME,
        status: str = "active",
    ):
        self.store = store
        self.recent_capacity = recent_capacity
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._quota_requests: Deque[float] = deque()
        self.state: Dict[str, Any] = {
            "tournament": {"name": tournament_name, "status": status, "round": 1},
            "teams": [],
            "leaderboard": [],
            "active_runs": {},
            "recent_runs": [],
            "api_quota": {"used": 0, "limit": quota_limit, "reset_time": None},
            "last_poll_time": None,
            "next_poll_ms": None,
        }

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ==============================
    # Pub/sub
    # ==============================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it"""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: EventType, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(event, copy.deepcopy(payload))
                except Exception:
                    logger.exception(f"Listener failed on {event.value}")

    # ==============================
    # Store-backed views
    # ==============================

    def initialize(self) -> None:
        with self._lock:
            self.refresh_teams()
            self.refresh_leaderboard()
            self._emit(EventType.STATE_SYNC, self.get_full_state())

    def refresh_teams(self) -> List[Dict[str, Any]]:
        with self._lock:
            meta = self.store.read_meta()
            active = self.state["active_runs"]
            self.state["teams"] = [
                {
                    "id": team["team_number"] or 0,
                    "name": team["team_name"],
                    "short_name": team["team_name"][:4].upper(),
                    "leader_name": team["leader_name"],
                    "wcl_url": team["wcl_url"],
                    "wcl_backup_url": team["wcl_backup_url"],
                    "bracket": team["bracket"],
                    "status": "running" if team["team_name"] in active else "idle",
                    "last_run": (meta.get(team["team_name"]) or {}).get("last"),
                    "run_count": (meta.get(team["team_name"]) or {}).get("runs", 0),
                }
                for team in self.store.get_teams()
            ]
            self._emit(EventType.TEAMS_UPDATE, self.state["teams"])
            return copy.deepcopy(self.state["teams"])

    def refresh_leaderboard(self) -> List[Dict[str, Any]]:
        with self._lock:
            totals = self.store.read_leaderboard()
            meta = self.store.read_meta()

            entries = {
                name: {"team_name": name, "points": int(points or 0)}
                for name, points in totals.items()
            }
            for team in self.state["teams"]:
                entries.setdefault(team["name"], {"team_name": team["name"], "points": 0})
            for entry in entries.values():
                team_meta = meta.get(entry["team_name"]) or {}
                entry["runs"] = int(team_meta.get("runs") or 0)
                entry["last_run"] = team_meta.get("last")

            # A team keeps its last movement until its rank changes again
            previous = {
                e["team_name"]: (e["rank"], e["previous_rank"]) for e in self.state["leaderboard"]
            }
            ranked = sorted(entries.values(), key=rank_sort_key)
            self.state["leaderboard"] = [
                {
                    "rank": i + 1,
                    "previous_rank": _previous_rank(previous.get(entry["team_name"]), i + 1),
                    "team_name": entry["team_name"],
                    "points": entry["points"],
                    "runs": entry["runs"],
                    "last_run": entry["last_run"],
                    "status": "running" if entry["team_name"] in self.state["active_runs"] else "idle",
                }
                for i, entry in enumerate(ranked)
            ]
            self._emit(EventType.LEADERBOARD_UPDATE, self.state["leaderboard"])
            return copy.deepcopy(self.state["leaderboard"])

    # ==============================
    # Runs
    # ==============================

    def _set_team_status(self, team_name: str, status: str) -> None:
        for team in self.state["teams"]:
            if team["name"] == team_name:
                team["status"] = status
        for entry in self.state["leaderboard"]:
            if entry["team_name"] == team_name:
                entry["status"] = status

    def on_run_start(self, team_name: str, run_data: Dict[str, Any]) -> Dict[str, Any]:
        """Track a run in progress; replaces any earlier active run of the team"""
        with self._lock:
            dungeon = run_data.get("dungeon") or "Unknown Dungeon"
            fight_id = run_data.get("fight_id") or 0
            run = {
                "id": f"{team_name}-{fight_id}",
                "team_name": team_name,
                "fight_id": fight_id,
                "dungeon": dungeon,
                "level": int(run_data.get("level") or 0),
                "start_time": run_data.get("start_time") or self._now_ms(),
                "progress": {
                    "percentage": 0,
                    "bosses_killed": 0,
                    "total_bosses": run_data.get("total_bosses") or DEFAULT_TOTAL_BOSSES,
                    "elapsed": 0,
                },
                "deaths": 0,
                "par_ms": run_data.get("par_ms") or par_time_for(dungeon) or DEFAULT_ACTIVE_RUN_PAR_MS,
                "note": "",
            }
            self.state["active_runs"][team_name] = run
            self._set_team_status(team_name, "running")
            self._emit(EventType.RUN_START, {"team_name": team_name, "run": run})
            self._emit(EventType.ACTIVE_RUNS_UPDATE, list(self.state["active_runs"].values()))
            return copy.deepcopy(run)

    def on_run_progress(self, team_name: str, progress: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update an active run; ignored when the team has none"""
        with self._lock:
            run = self.state["active_runs"].get(team_name)
            if run is None:
                return None
            current = run["progress"]
            run["progress"] = {
                "percentage": progress.get("percentage", current["percentage"]),
                "bosses_killed": progress.get("bosses_killed", current["bosses_killed"]),
                "total_bosses": progress.get("total_bosses", current["total_bosses"]),
                "elapsed": progress.get("elapsed") or self._now_ms() - int(run["start_time"]),
            }
            run["deaths"] = progress.get("deaths", run["deaths"])
            self._emit(EventType.RUN_PROGRESS, {
                "team_name": team_name,
                "run_id": run["id"],
                "progress": run["progress"],
                "deaths": run["deaths"],
            })
            return copy.deepcopy(run)

    def on_run_complete(self, team_name: str, run_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Close the team's active run (if any), refresh totals and record a recap.
        Works for runs that were never tracked as active.
        """
        with self._lock:
            active = self.state["active_runs"].pop(team_name, None)
            self._set_team_status(team_name, "idle")
            self.refresh_leaderboard()

            par_ms = run_data.get("par_ms") or (active or {}).get("par_ms") or 0
            duration_ms = int(run_data.get("duration_ms") or 0)
            recap = {
                "team_name": team_name,
                "dungeon": run_data.get("dungeon") or (active or {}).get("dungeon", ""),
                "level": int(run_data.get("level") or (active or {}).get("level", 0)),
                "duration_ms": duration_ms,
                "par_ms": par_ms,
                "time_remaining_ms": par_ms - duration_ms if par_ms else 0,
                "in_time": bool(run_data.get("in_time")),
                "upgrades": int(run_data.get("upgrades") or 0),
                "deaths": int(run_data.get("deaths") or 0),
                "points": int(run_data.get("points") or 0),
                "rating": int(run_data.get("rating") or 0),
                "boss_kills": list(run_data.get("boss_kills") or []),
                "completed_at": run_data.get("finished_at") or self._now_ms(),
                "note": (active or {}).get("note", ""),
            }
            self.state["recent_runs"].insert(0, recap)
            del self.state["recent_runs"][self.recent_capacity:]

            self._emit(EventType.RUN_COMPLETE, {"team_name": team_name, "recap": recap})
            self._emit(EventType.ACTIVE_RUNS_UPDATE, list(self.state["active_runs"].values()))
            return copy.deepcopy(recap)

    def on_run_clear(self, team_name: str) -> bool:
        """Drop an active run without a recap"""
        with self._lock:
            if self.state["active_runs"].pop(team_name, None) is None:
                return False
            self._set_team_status(team_name, "idle")
            self._emit(EventType.ACTIVE_RUNS_UPDATE, list(self.state["active_runs"].values()))
            return True

    def on_run_annotate(self, team_name: str, note: str) -> Dict[str, Any]:
        """Attach an operator note to the team's active run, else to its latest recap"""
        with self._lock:
            run = self.state["active_runs"].get(team_name)
            if run is not None:
                run["note"] = note
                self._emit(EventType.ACTIVE_RUNS_UPDATE, list(self.state["active_runs"].values()))
                return copy.deepcopy(run)

            recap = next((r for r in self.state["recent_runs"] if r["team_name"] == team_name), None)
            if recap is None:
                raise NotFoundError(f"No active or recent run for {team_name}")
            recap["note"] = note
            return copy.deepcopy(recap)

    def find_recap(self, team_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Latest recap overall, or the latest for one team"""
        with self._lock:
            for recap in self.state["recent_runs"]:
                if team_name is None or recap["team_name"].lower() == team_name.lower():
                    return copy.deepcopy(recap)
            return None

    def show_recap(self, recap: Dict[str, Any], duration_ms: int) -> None:
        with self._lock:
            self._emit(EventType.RECAP_SHOW, {"recap": recap, "duration": duration_ms})

    # ==============================
    # Quota / poll / tournament
    # ==============================

    def _prune_quota(self, now: float) -> None:
        cutoff = now - QUOTA_WINDOW_SECONDS
        while self._quota_requests and self._quota_requests[0] <= cutoff:
            self._quota_requests.popleft()
        quota = self.state["api_quota"]
        quota["used"] = len(self._quota_requests)
        oldest = self._quota_requests[0] if self._quota_requests else now
        quota["reset_time"] = int((oldest + QUOTA_WINDOW_SECONDS) * 1000)

    def record_api_request(self) -> None:
        """Count one outbound request in the sliding one-hour window"""
        with self._lock:
            now = self._clock()
            self._quota_requests.append(now)
            self._prune_quota(now)
            self._emit(EventType.QUOTA_UPDATE, self.state["api_quota"])

    def get_api_quota(self) -> Dict[str, Any]:
        with self._lock:
            self._prune_quota(self._clock())
            quota = dict(self.state["api_quota"])
            limit = quota["limit"] or 1
            quota["remaining"] = quota["limit"] - quota["used"]
            quota["percentage"] = quota["used"] / limit * 100
            return quota

    def should_throttle(self) -> bool:
        return self.get_api_quota()["percentage"] >= QUOTA_THROTTLE_PERCENT

    def on_poll_complete(self, next_poll_ms: Optional[int] = None) -> None:
        with self._lock:
            self.state["last_poll_time"] = self._now_ms()
            self.state["next_poll_ms"] = next_poll_ms
            self._emit(EventType.POLL_COMPLETE, {
                "time": self.state["last_poll_time"],
                "next_poll_ms": next_poll_ms,
            })

    def set_tournament_status(self, status: str) -> None:
        status = str(status or "").strip().lower()
        if status not in TOURNAMENT_STATUSES:
            raise ValidationError(f"Unknown tournament status: {status}")
        with self._lock:
            self.state["tournament"]["status"] = status
            self._emit(EventType.TOURNAMENT_STATUS, {"status": status})
        logger.info(f"Tournament status -> {status}")

    def is_paused(self) -> bool:
        with self._lock:
            return self.state["tournament"]["status"] == "paused"

    # ==============================
    # Readers
    # ==============================

    def get_full_state(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = copy.deepcopy(self.state)
            snapshot["active_runs"] = list(snapshot["active_runs"].values())
            snapshot["server_time"] = self._now_ms()
            return snapshot

    def get_leaderboard(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.state["leaderboard"])

    def get_active_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(list(self.state["active_runs"].values()))

    def has_active_runs(self) -> bool:
        with self._lock:
            return bool(self.state["active_runs"])

    def get_recent_runs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.state["recent_runs"])
