"""
Durable tournament storage.

Two files under the data directory:
- wcl.json: roster, dedup set, leaderboard totals, per-team meta
- wcl_scores.csv: append-only ledger of scored runs (historical queries only)

All mutations go through a single-writer transaction. A scored run is committed
as one unit: seen key, leaderboard increment, meta and ledger row. The ledger row
is staged in wcl.json (pending_ledger) before the CSV append, so a crash between
the two writes is repaired on the next load.
"""

import copy
import csv
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from config import LEDGER_FILE_NAME, STATE_FILE_NAME
from errors import ConflictError, NotFoundError, ReentrantWriteError, StoreError, ValidationError
from log_utils import setup_logging
from scoring import DEFAULT_BRACKET, normalize_bracket
from time_utils import parse_iso

logger = setup_logging(__name__)

# ==============================
# File layout
# ==============================

SCORE_HEADER = [
    "finished_at",
    "team",
    "dungeon",
    "level",
    "upgrades",
    "blizz_rating",
    "in_time",
    "points",
    "deaths",
    "duration_ms",
    "boss_kills",
    "character",
    "realm",
    "region",
]

DEFAULT_DATA: Dict[str, Any] = {
    "teams": [],
    "seen": [],
    "leaderboard": {},
    "meta": {},
    "pending_ledger": [],
}

# Leading characters a spreadsheet would evaluate as a formula
FORMULA_PREFIXES = ("=", "+", "-", "@")


# ==============================
# Records
# ==============================

@dataclass(frozen=True)
class RunRecord:
    """A scored run as written to the ledger"""
    finished_at: str
    team: str
    dungeon: str
    level: int
    upgrades: int
    in_time: bool
    points: int
    deaths: int = 0
    duration_ms: int = 0
    boss_kills: List[int] = field(default_factory=list)
    blizz_rating: int = 0
    character: str = ""
    realm: str = ""
    region: str = ""

    def to_row(self) -> List[str]:
        values = {
            "finished_at": self.finished_at,
            "team": self.team,
            "dungeon": self.dungeon,
            "level": self.level,
            "upgrades": self.upgrades,
            "blizz_rating": self.blizz_rating,
            "in_time": 1 if self.in_time else 0,
            "points": self.points,
            "deaths": self.deaths,
            "duration_ms": self.duration_ms,
            "boss_kills": json.dumps(list(self.boss_kills), separators=(",", ":")),
            "character": self.character,
            "realm": self.realm,
            "region": self.region,
        }
        return [csv_escape(values[key]) for key in SCORE_HEADER]

    @classmethod
    def from_row(cls, row: List[str]) -> "RunRecord":
        values = {key: csv_unescape(row[i]) if i < len(row) else "" for i, key in enumerate(SCORE_HEADER)}
        try:
            boss_kills = json.loads(values["boss_kills"]) if values["boss_kills"] else []
        except json.JSONDecodeError:
            boss_kills = []
        return cls(
            finished_at=values["finished_at"],
            team=values["team"],
            dungeon=values["dungeon"],
            level=_to_int(values["level"]),
            upgrades=_to_int(values["upgrades"]),
            in_time=values["in_time"] in ("1", "true", "True"),
            points=_to_int(values["points"]),
            deaths=_to_int(values["deaths"]),
            duration_ms=_to_int(values["duration_ms"]),
            boss_kills=[int(v) for v in boss_kills if isinstance(v, (int, float))],
            blizz_rating=_to_int(values["blizz_rating"]),
            character=values["character"],
            realm=values["realm"],
            region=values["region"],
        )


@dataclass
class TeamResult:
    status: str  # created | updated
    team: Dict[str, Any]


@dataclass
class SlotResult:
    status: str  # updated | conflict
    team: Dict[str, Any]
    fallback: Optional[int] = None
    conflict: Optional[Dict[str, Any]] = None


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def csv_escape(value: Any) -> str:
    """Stringify a ledger value, defusing spreadsheet formulas"""
    text = "" if value is None else str(value)
    if text.startswith(FORMULA_PREFIXES):
        text = "'" + text
    return text


def csv_unescape(value: str) -> str:
    if len(value) > 1 and value[0] == "'" and value[1] in FORMULA_PREFIXES:
        return value[1:]
    return value


def ensure_team_defaults(team: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in every roster field with its default"""
    number = team.get("team_number")
    try:
        number = int(number) if number is not None else None
    except (TypeError, ValueError):
        number = None
    if number is not None and number <= 0:
        number = None
    return {
        "team_name": str(team.get("team_name") or "").strip(),
        "leader_name": str(team.get("leader_name") or ""),
        "wcl_url": str(team.get("wcl_url") or ""),
        "wcl_backup_url": str(team.get("wcl_backup_url") or ""),
        "team_number": number,
        "bracket": normalize_bracket(team.get("bracket"), DEFAULT_BRACKET),
    }


def next_team_number(teams: List[Dict[str, Any]]) -> int:
    """Lowest positive slot not held by any team"""
    used = {t.get("team_number") for t in teams if isinstance(t.get("team_number"), int)}
    number = 1
    while number in used:
        number += 1
    return number


def _key(name: Optional[str]) -> str:
    return str(name or "").strip().lower()


# ==============================
# Store
# ==============================

class TournamentStore:
    """
    Single-writer JSON + CSV store.

    Reads return copies; callers never mutate the cached state directly.
    """

    def __init__(self, data_dir: str | Path, state_file: str = STATE_FILE_NAME, ledger_file: str = LEDGER_FILE_NAME):
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / state_file
        self.ledger_path = self.data_dir / ledger_file
        self._lock = threading.RLock()
        self._writer: Optional[int] = None
        self._data: Optional[Dict[str, Any]] = None

    # ------------------------------
    # Load / save
    # ------------------------------

    def ensure_files(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if not self.state_path.exists():
            self._write_state(copy.deepcopy(DEFAULT_DATA))
        if not self.ledger_path.exists():
            with open(self.ledger_path, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(SCORE_HEADER)

    def load(self) -> Dict[str, Any]:
        """Load the state file once; later calls hit the cache"""
        with self._lock:
            return self._load_unlocked()

    def reload(self) -> Dict[str, Any]:
        """Drop the cache and re-read from disk"""
        with self._lock:
            if self._writer is not None:
                raise ReentrantWriteError("Cannot reload during a write")
            self._data = None
            return self._load_unlocked()

    def _load_unlocked(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data

        self.ensure_files()
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {self.state_path}: {e}") from e

        data = {
            "teams": [ensure_team_defaults(t) for t in raw.get("teams", []) if isinstance(t, dict)],
            "seen": sorted(set(raw.get("seen", []))),
            "leaderboard": {str(k): int(v or 0) for k, v in (raw.get("leaderboard") or {}).items()},
            "meta": dict(raw.get("meta") or {}),
            "pending_ledger": list(raw.get("pending_ledger") or []),
        }

        if data["pending_ledger"]:
            self._replay_pending(data["pending_ledger"])
            data["pending_ledger"] = []
            self._write_state(data)

        self._data = data
        return data

    def _write_state(self, data: Dict[str, Any]) -> None:
        """Atomic write: temp file in the same directory, then rename"""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w", delete=False, suffix=".json", dir=self.data_dir, encoding="utf-8"
            ) as tmp:
                tmp_path = Path(tmp.name)
                json.dump(data, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.state_path)
        except OSError as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            raise StoreError(f"Failed to write {self.state_path}: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        """
        Yield a working copy of the state. On normal exit the copy is written to
        disk and becomes the cache; on any exception nothing changes.
        """
        if self._writer == threading.get_ident():
            logger.error("Re-entrant store write rejected")
            raise ReentrantWriteError("Store write started inside another write")

        with self._lock:
            self._writer = threading.get_ident()
            try:
                current = self._load_unlocked()
                working = copy.deepcopy(current)
                yield working
                if working != current:
                    self._write_state(working)
                    self._data = working
            finally:
                self._writer = None

    # ------------------------------
    # Ledger (CSV)
    # ------------------------------

    def _append_rows(self, rows: List[List[str]]) -> None:
        try:
            with open(self.ledger_path, "a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                for row in rows:
                    writer.writerow(row)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreError(f"Failed to append to {self.ledger_path}: {e}") from e

    def _read_rows(self) -> List[List[str]]:
        if not self.ledger_path.exists():
            return []
        with open(self.ledger_path, "r", newline="", encoding="utf-8") as f:
            rows = [row for row in csv.reader(f) if row]
        return rows[1:] if rows and rows[0] == SCORE_HEADER else rows

    def _replay_pending(self, pending: List[List[str]]) -> None:
        """Append staged ledger rows that never reached the CSV"""
        tail = self._read_rows()[-len(pending):]
        missing = [row for row in pending if row not in tail]
        if missing:
            logger.warning(f"Recovering {len(missing)} ledger row(s) staged before an interrupted commit")
            self._append_rows(missing)

    def append_run(self, record: RunRecord) -> None:
        """Append-only ledger write; never touches earlier rows"""
        with self._lock:
            if self._writer is not None:
                raise ReentrantWriteError("Ledger append inside another write")
            self.ensure_files()
            self._append_rows([record.to_row()])

    def read_runs(self) -> List[RunRecord]:
        with self._lock:
            return [RunRecord.from_row(row) for row in self._read_rows()]

    # ------------------------------
    # Roster
    # ------------------------------

    def get_teams(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._load_unlocked()["teams"])

    def find_team(self, team_name: Optional[str]) -> Optional[Dict[str, Any]]:
        key = _key(team_name)
        if not key:
            return None
        return next((t for t in self.get_teams() if _key(t["team_name"]) == key), None)

    def find_team_by_number(self, team_number: Any) -> Optional[Dict[str, Any]]:
        try:
            target = int(team_number)
        except (TypeError, ValueError):
            return None
        return next((t for t in self.get_teams() if t["team_number"] == target), None)

    def upsert_team(
        self,
        team_name: str,
        leader_name: str = "",
        wcl_url: str = "",
        wcl_backup_url: str = "",
        bracket: Optional[str] = None,
    ) -> TeamResult:
        """Create a team, or update the one with the same (case-insensitive) name"""
        name = str(team_name or "").strip()
        if not name:
            raise ValidationError("Team name is required")

        with self._transaction() as data:
            existing = next((t for t in data["teams"] if _key(t["team_name"]) == _key(name)), None)
            if existing:
                # Keeps the stored display name; totals and meta are keyed by it
                existing["leader_name"] = leader_name or existing["leader_name"]
                existing["wcl_url"] = wcl_url or ""
                existing["wcl_backup_url"] = wcl_backup_url or ""
                if bracket is not None:
                    existing["bracket"] = normalize_bracket(bracket, existing["bracket"])
                if existing["team_number"] is None:
                    existing["team_number"] = next_team_number(data["teams"])
                result = TeamResult("updated", copy.deepcopy(existing))
            else:
                team = ensure_team_defaults({
                    "team_name": name,
                    "leader_name": leader_name,
                    "wcl_url": wcl_url,
                    "wcl_backup_url": wcl_backup_url,
                    "bracket": bracket,
                })
                team["team_number"] = next_team_number(data["teams"])
                data["teams"].append(team)
                result = TeamResult("created", copy.deepcopy(team))

        logger.info(f"Team {result.status}: {result.team['team_name']} (Team {result.team['team_number']})")
        return result

    def update_team(
        self,
        team_name: Optional[str] = None,
        team_number: Optional[int] = None,
        leader_name: Optional[str] = None,
        wcl_url: Optional[str] = None,
        wcl_backup_url: Optional[str] = None,
        bracket: Optional[str] = None,
    ) -> TeamResult:
        """Update fields of an existing team, looked up by slot first, then by name"""
        with self._transaction() as data:
            target = None
            if team_number is not None:
                target = next((t for t in data["teams"] if t["team_number"] == team_number), None)
            if target is None and team_name:
                target = next((t for t in data["teams"] if _key(t["team_name"]) == _key(team_name)), None)
            if target is None:
                raise NotFoundError(f"Team not found: {team_name or team_number}")

            if leader_name is not None:
                target["leader_name"] = leader_name
            if wcl_url is not None:
                target["wcl_url"] = wcl_url
            if wcl_backup_url is not None:
                target["wcl_backup_url"] = wcl_backup_url
            if bracket is not None:
                target["bracket"] = normalize_bracket(bracket, target["bracket"])
            result = TeamResult("updated", copy.deepcopy(target))
        return result

    def set_team_number(self, team_name: str, team_number: int) -> SlotResult:
        """
        Reassign a display slot. If another team holds it, this team gets the next
        free slot instead and the conflict is reported.
        """
        try:
            requested = int(team_number)
        except (TypeError, ValueError):
            raise ValidationError("Team number must be a positive number")
        if requested <= 0:
            raise ValidationError("Team number must be a positive number")

        with self._transaction() as data:
            target = next((t for t in data["teams"] if _key(t["team_name"]) == _key(team_name)), None)
            if target is None:
                raise NotFoundError(f"Team not found: {team_name}")

            holder = next(
                (t for t in data["teams"] if t is not target and t["team_number"] == requested),
                None,
            )
            if holder:
                fallback = next_team_number(data["teams"])
                target["team_number"] = fallback
                result = SlotResult("conflict", copy.deepcopy(target), fallback, copy.deepcopy(holder))
            else:
                target["team_number"] = requested
                result = SlotResult("updated", copy.deepcopy(target))

        if result.status == "conflict":
            logger.warning(
                f"Team number {requested} held by {result.conflict['team_name']}; "
                f"assigned {result.fallback} to {team_name}"
            )
        return result

    def rename_team(self, old_name: str, new_name: str) -> Dict[str, Any]:
        """Rename a team, moving its leaderboard total, meta and dedup keys in one write"""
        new_name = str(new_name or "").strip()
        if not new_name:
            raise ValidationError("New team name is required")

        with self._transaction() as data:
            target = next((t for t in data["teams"] if _key(t["team_name"]) == _key(old_name)), None)
            if target is None:
                raise NotFoundError(f"Team not found: {old_name}")
            clash = next(
                (t for t in data["teams"] if t is not target and _key(t["team_name"]) == _key(new_name)),
                None,
            )
            if clash:
                raise ConflictError(f"Team name already in use: {clash['team_name']}")

            old_key = target["team_name"]
            target["team_name"] = new_name
            if old_key != new_name:
                if old_key in data["leaderboard"]:
                    data["leaderboard"][new_name] = data["leaderboard"].pop(old_key)
                if old_key in data["meta"]:
                    data["meta"][new_name] = data["meta"].pop(old_key)
                old_prefix = f"team:{_key(old_key)}|"
                new_prefix = f"team:{_key(new_name)}|"
                if old_prefix != new_prefix:
                    data["seen"] = sorted(
                        new_prefix + k[len(old_prefix):] if k.startswith(old_prefix) else k
                        for k in data["seen"]
                    )
            renamed = copy.deepcopy(target)

        logger.info(f"Renamed team {old_name} -> {new_name}")
        return renamed

    # ------------------------------
    # Dedup / leaderboard / meta
    # ------------------------------

    def get_seen(self) -> Set[str]:
        with self._lock:
            return set(self._load_unlocked()["seen"])

    def save_seen(self, seen: Set[str]) -> None:
        """Persist additions to the dedup set (keys are never removed)"""
        with self._transaction() as data:
            data["seen"] = sorted(set(data["seen"]) | set(seen))

    def read_leaderboard(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._load_unlocked()["leaderboard"])

    def read_meta(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._load_unlocked()["meta"])

    def update_leaderboard(self, team: str, points: int) -> int:
        """Add points to a team's total; totals never go down"""
        points = int(points or 0)
        if points < 0:
            raise ValidationError("Leaderboard updates cannot subtract points")
        with self._transaction() as data:
            _add_points(data, team, points)
            total = data["leaderboard"].get(team, 0)
        return total

    def update_meta(self, team: str, finished_at: str) -> Dict[str, Any]:
        """Count a run and advance last-seen (never moves backwards)"""
        with self._transaction() as data:
            _bump_meta(data, team, finished_at)
            meta = dict(data["meta"][team])
        return meta

    def commit_run(self, record: RunRecord, dedup_key: str) -> bool:
        """
        Commit one scored run atomically. Returns False when the key was already
        committed (nothing is written).

        The team must still be on the roster: a run scored under a name that was
        renamed away mid-pass raises NotFoundError and writes nothing.
        """
        with self._transaction() as data:
            team = next((t for t in data["teams"] if _key(t["team_name"]) == _key(record.team)), None)
            if team is None:
                raise NotFoundError(f"Team not found: {record.team}")
            if team["team_name"] != record.team:
                record = replace(record, team=team["team_name"])
            row = record.to_row()

            if dedup_key in data["seen"]:
                return False
            data["seen"] = sorted(set(data["seen"]) | {dedup_key})
            if record.points > 0:
                _add_points(data, record.team, record.points)
            _bump_meta(data, record.team, record.finished_at)
            data["pending_ledger"].append(row)

        self._append_rows([row])

        with self._transaction() as data:
            data["pending_ledger"] = [r for r in data["pending_ledger"] if r != row]
        return True

    # ------------------------------
    # Historical queries (ledger)
    # ------------------------------

    def best_runs_per_dungeon(self, dungeon: Optional[str] = None) -> Dict[str, List[RunRecord]]:
        """Timed runs per dungeon, highest level first, then fastest"""
        dungeons: Dict[str, List[RunRecord]] = {}
        for run in self.read_runs():
            if not run.dungeon or not run.in_time:
                continue
            if dungeon and run.dungeon != dungeon:
                continue
            dungeons.setdefault(run.dungeon, []).append(run)
        for runs in dungeons.values():
            runs.sort(key=lambda r: (-r.level, r.duration_ms))
        return dungeons

    def dungeon_names(self) -> List[str]:
        return sorted({run.dungeon for run in self.read_runs() if run.dungeon})

    def team_stats(self) -> Dict[str, Dict[str, int]]:
        """Highest key, total deaths and unique dungeons per team"""
        stats: Dict[str, Dict[str, Any]] = {}
        for run in self.read_runs():
            if not run.team:
                continue
            entry = stats.setdefault(run.team, {"highest_key": 0, "total_deaths": 0, "dungeons": set(), "runs": 0})
            entry["highest_key"] = max(entry["highest_key"], run.level)
            entry["total_deaths"] += run.deaths
            entry["runs"] += 1
            if run.dungeon:
                entry["dungeons"].add(run.dungeon)
        return {
            team: {
                "highest_key": entry["highest_key"],
                "total_deaths": entry["total_deaths"],
                "unique_dungeons": len(entry["dungeons"]),
                "runs": entry["runs"],
            }
            for team, entry in stats.items()
        }

    def fold_ledger(self) -> Dict[str, Dict[str, Any]]:
        """Leaderboard totals and meta recomputed from the ledger"""
        folded: Dict[str, Dict[str, Any]] = {}
        for run in self.read_runs():
            entry = folded.setdefault(run.team, {"points": 0, "runs": 0, "last": None})
            entry["points"] += max(0, run.points)
            entry["runs"] += 1
            if _is_later(run.finished_at, entry["last"]):
                entry["last"] = run.finished_at
        return folded


def _add_points(data: Dict[str, Any], team: str, points: int) -> None:
    data["leaderboard"][team] = int(data["leaderboard"].get(team, 0)) + int(points)


def _bump_meta(data: Dict[str, Any], team: str, finished_at: str) -> None:
    current = data["meta"].get(team) or {"runs": 0, "last": None}
    current["runs"] = int(current.get("runs") or 0) + 1
    if _is_later(finished_at, current.get("last")):
        current["last"] = finished_at
    data["meta"][team] = current


def _is_later(candidate: Optional[str], previous: Optional[str]) -> bool:
    """True when candidate is strictly after previous (or previous is unset)"""
    new = parse_iso(candidate or "")
    if new is None:
        return False
    old = parse_iso(previous or "")
    return old is None or new > old
