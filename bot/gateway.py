"""
Boundary used by the outer surfaces (web socket server, chat commands).

BroadcastHub fans state events out to connected client sinks.
AdminGateway validates admin commands and always answers with an AdminResponse.
"""

import hmac
from contextlib import nullcontext
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config import WCL_REPORT_BASE_URL
from errors import NotFoundError, TournamentError, ValidationError
from log_utils import setup_logging
from poller import AdaptivePoller
from scoring import valid_brackets
from state_manager import EventType, StateManager
from storage import TournamentStore
from wcl_api import extract_report_code

logger = setup_logging(__name__)

Sink = Callable[[str, Any], None]


# ==============================
# Broadcast
# ==============================

class BroadcastHub:
    def __init__(self, state: StateManager, recap_duration_ms: int = 15000):
        self.state = state
        self.recap_duration_ms = recap_duration_ms
        self._sinks: List[Sink] = []
        self._unsubscribe = state.subscribe(self._on_event)

    def connect(self, sink: Sink) -> None:
        """Register a client; it first receives the full snapshot"""
        self._sinks.append(sink)
        self._send(sink, EventType.STATE_SYNC.value, self.state.get_full_state())

    def disconnect(self, sink: Sink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def close(self) -> None:
        self._unsubscribe()
        self._sinks.clear()

    @property
    def client_count(self) -> int:
        return len(self._sinks)

    def _send(self, sink: Sink, event_name: str, payload: Any) -> None:
        try:
            sink(event_name, payload)
        except Exception as e:
            logger.warning(f"Dropping client after send failure on {event_name}: {e}")
            self.disconnect(sink)

    def _broadcast(self, event_name: str, payload: Any) -> None:
        for sink in list(self._sinks):
            self._send(sink, event_name, payload)

    def _on_event(self, event: EventType, payload: Any) -> None:
        self._broadcast(event.value, payload)
        if event is EventType.RUN_COMPLETE:
            self._broadcast(
                EventType.RECAP_SHOW.value,
                {"recap": payload["recap"], "duration": self.recap_duration_ms},
            )


# ==============================
# Admin commands
# ==============================

@dataclass
class AdminResponse:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Commands that change the roster; they never run while a poll pass is in flight
ROSTER_COMMANDS = {"set_report", "update_team"}

TOURNAMENT_ACTIONS = {
    "pause": "paused",
    "resume": "active",
    "start": "active",
    "finish": "finished",
}


def normalize_report_reference(value: Optional[str]) -> str:
    """Full report URL for a code or URL; empty stays empty"""
    raw = str(value or "").strip()
    if not raw:
        return ""
    code = extract_report_code(raw)
    if not code:
        raise ValidationError(f"Invalid Warcraft Logs report reference: {raw}")
    if raw == code:
        return f"{WCL_REPORT_BASE_URL}{code}"
    return raw


def _team_number(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Team number must be a positive number: {value}")
    if number <= 0:
        raise ValidationError(f"Team number must be a positive number: {value}")
    return number


class AdminGateway:
    def __init__(
        self,
        store: TournamentStore,
        state: StateManager,
        poller: Optional[AdaptivePoller] = None,
        secret: Optional[str] = None,
        recap_duration_ms: int = 15000,
    ):
        self.store = store
        self.state = state
        self.poller = poller
        self.secret = secret or None
        self.recap_duration_ms = recap_duration_ms
        self._commands = {
            "set_report": self._set_report,
            "update_team": self._update_team,
            "force_refresh": self._force_refresh,
            "tournament": self._tournament,
            "toggle_run": self._toggle_run,
            "annotate_run": self._annotate_run,
            "clear_run": self._clear_run,
            "show_recap": self._show_recap,
        }

    @property
    def commands(self) -> List[str]:
        return list(self._commands)

    def _authorized(self, secret: Optional[str]) -> bool:
        if not self.secret:
            return True
        return bool(secret) and hmac.compare_digest(str(secret).encode(), self.secret.encode())

    async def handle(self, command: str, payload: Optional[Dict[str, Any]] = None, secret: Optional[str] = None) -> AdminResponse:
        """Run an admin command; failures come back as success=False, never as exceptions"""
        if not self._authorized(secret):
            logger.warning(f"Rejected admin command {command!r}: bad secret")
            return AdminResponse(False, "Unauthorized")

        handler = self._commands.get(command)
        if handler is None:
            return AdminResponse(False, f"Unknown command: {command}")

        try:
            async with self._guard(command):
                return await handler(dict(payload or {}))
        except TournamentError as e:
            logger.info(f"Admin command {command} failed: {e}")
            return AdminResponse(False, str(e))
        except Exception as e:
            logger.exception(f"Admin command {command} crashed")
            return AdminResponse(False, f"Internal error: {e}")

    def _guard(self, command: str):
        if self.poller is not None and command in ROSTER_COMMANDS:
            return self.poller.between_passes()
        return nullcontext()

    def _resolve_team(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Team by number first, then by name"""
        number = _team_number(payload.get("team_number"))
        team = self.store.find_team_by_number(number) if number else None
        if team is None and payload.get("team"):
            team = self.store.find_team(payload["team"])
        if team is None:
            raise NotFoundError(f"Team not found: {payload.get('team') or number or '(none)'}")
        return team

    def _sync_roster(self) -> None:
        self.state.refresh_teams()
        self.state.refresh_leaderboard()

    # ------------------------------
    # Roster
    # ------------------------------

    async def _set_report(self, payload: Dict[str, Any]) -> AdminResponse:
        wcl_url = normalize_report_reference(payload.get("wcl_url"))
        if not wcl_url:
            raise ValidationError("A report code or URL is required")
        backup = normalize_report_reference(payload.get("wcl_backup_url"))

        try:
            team = self._resolve_team(payload)
        except NotFoundError:
            name = str(payload.get("team") or "").strip()
            if not name:
                raise
            result = self.store.upsert_team(
                name,
                leader_name=str(payload.get("leader_name") or ""),
                wcl_url=wcl_url,
                wcl_backup_url=backup,
                bracket=payload.get("bracket"),
            )
            self._sync_roster()
            return AdminResponse(True, f"Created {name} (Team {result.team['team_number']})", {"team": result.team})

        result = self.store.update_team(team_name=team["team_name"], wcl_url=wcl_url, wcl_backup_url=backup)
        self._sync_roster()
        return AdminResponse(True, f"Report set for {team['team_name']}", {"team": result.team})

    async def _update_team(self, payload: Dict[str, Any]) -> AdminResponse:
        team = self._resolve_team(payload)
        name = team["team_name"]
        messages = []

        # Validate everything before the first write
        bracket = payload.get("bracket")
        if bracket is not None and str(bracket).strip().upper() not in valid_brackets():
            raise ValidationError(f"Bracket must be one of {', '.join(valid_brackets())}")
        fields = {}
        for key in ("leader_name", "wcl_url", "wcl_backup_url"):
            if key in payload and payload[key] is not None:
                fields[key] = payload[key]
        for key in ("wcl_url", "wcl_backup_url"):
            if key in fields:
                fields[key] = normalize_report_reference(fields[key])
        requested = _team_number(payload.get("new_team_number"))

        new_name = str(payload.get("new_name") or "").strip()
        if new_name and new_name != name:
            self.store.rename_team(name, new_name)
            messages.append(f"Renamed {name} -> {new_name}")
            name = new_name

        if fields or bracket is not None:
            result = self.store.update_team(team_name=name, bracket=bracket, **fields)
            messages.append(f"Updated {name}")
            team = result.team

        data: Dict[str, Any] = {}
        if requested is not None:
            slot = self.store.set_team_number(name, requested)
            team = slot.team
            if slot.status == "conflict":
                messages.append(
                    f"Team {requested} is taken by {slot.conflict['team_name']}; "
                    f"{name} was assigned Team {slot.fallback}"
                )
                data.update({"fallback": slot.fallback, "conflict": slot.conflict})
            else:
                messages.append(f"{name} is now Team {requested}")

        if not messages:
            raise ValidationError("Nothing to update")
        self._sync_roster()
        data["team"] = team
        return AdminResponse(True, "; ".join(messages), data)

    # ------------------------------
    # Polling / tournament
    # ------------------------------

    async def _force_refresh(self, payload: Dict[str, Any]) -> AdminResponse:
        if self.poller is None:
            return AdminResponse(False, "Polling is not running")
        team_name = None
        if payload.get("team") or payload.get("team_number"):
            team_name = self._resolve_team(payload)["team_name"]
        result = await self.poller.force_refresh(team_name)
        return AdminResponse(
            True,
            f"Refresh complete: {result.new_count} new run(s)",
            {"new_count": result.new_count, "notices": result.notices},
        )

    async def _tournament(self, payload: Dict[str, Any]) -> AdminResponse:
        action = str(payload.get("action") or "").strip().lower()
        status = TOURNAMENT_ACTIONS.get(action)
        if status is None:
            raise ValidationError(f"Action must be one of {', '.join(TOURNAMENT_ACTIONS)}")
        self.state.set_tournament_status(status)
        return AdminResponse(True, f"Tournament {status}", {"status": status})

    # ------------------------------
    # Runs
    # ------------------------------

    async def _toggle_run(self, payload: Dict[str, Any]) -> AdminResponse:
        team = self._resolve_team(payload)
        name = team["team_name"]
        if self.state.on_run_clear(name):
            return AdminResponse(True, f"Stopped tracking run for {name}", {"active": False})

        try:
            level = int(payload.get("level") or 0)
        except (TypeError, ValueError):
            raise ValidationError("Level must be a number")
        run = self.state.on_run_start(name, {
            "dungeon": payload.get("dungeon"),
            "level": level,
            "fight_id": payload.get("fight_id"),
            "total_bosses": payload.get("total_bosses"),
        })
        return AdminResponse(True, f"Tracking run for {name}", {"active": True, "run": run})

    async def _annotate_run(self, payload: Dict[str, Any]) -> AdminResponse:
        team = self._resolve_team(payload)
        note = str(payload.get("note") or "").strip()
        if not note:
            raise ValidationError("Note is required")
        target = self.state.on_run_annotate(team["team_name"], note)
        return AdminResponse(True, f"Note added for {team['team_name']}", {"run": target})

    async def _clear_run(self, payload: Dict[str, Any]) -> AdminResponse:
        team = self._resolve_team(payload)
        if not self.state.on_run_clear(team["team_name"]):
            return AdminResponse(False, f"{team['team_name']} has no active run")
        return AdminResponse(True, f"Cleared active run for {team['team_name']}")

    async def _show_recap(self, payload: Dict[str, Any]) -> AdminResponse:
        team_name = None
        if payload.get("team") or payload.get("team_number"):
            team_name = self._resolve_team(payload)["team_name"]
        recap = self.state.find_recap(team_name)
        if recap is None:
            raise NotFoundError("No recent runs to show")
        self.state.show_recap(recap, self.recap_duration_ms)
        return AdminResponse(True, f"Showing recap for {recap['team_name']}", {"recap": recap})
