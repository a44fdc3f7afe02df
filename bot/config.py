"""
Tournament bot configuration.
Defines ingestion rules, polling intervals and API settings.
Environment values (.env) override the defaults through load_settings().
"""

import os
import re
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from log_utils import setup_logging

logger = setup_logging(__name__)

# ==============================
# Warcraft Logs API
# ==============================

# OAuth2 client-credentials token endpoint
WCL_TOKEN_URL = "https://www.warcraftlogs.com/oauth/token"

# GraphQL client endpoint
WCL_GQL_CLIENT = "https://www.warcraftlogs.com/api/v2/client"

# Base URL used when an admin sets a bare report code
WCL_REPORT_BASE_URL = "https://www.warcraftlogs.com/reports/"

# Report codes are 16 alphanumerics, bare or inside a /reports/ URL
REPORT_CODE_PATTERN = re.compile(r"(?:^|/reports/)([A-Za-z0-9]{16})(?:[/?#].*)?$")
BARE_REPORT_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{16}$")

# Timeout for API requests in seconds
API_TIMEOUT_SECONDS = 30

# Retry policy for token exchange and queries
API_MAX_RETRIES = 3
API_BASE_DELAY_SECONDS = 1.0
API_MAX_DELAY_SECONDS = 30.0
API_JITTER_RATIO = 0.3

# Refresh the token when fewer than this many seconds remain
TOKEN_REFRESH_MARGIN_SECONDS = 30

# Token lifetime when the endpoint omits expires_in
DEFAULT_TOKEN_TTL_SECONDS = 900

# Request budget shown in the quota display (per hour)
API_QUOTA_PER_HOUR = 3600

# Quota usage (percent) at which polling backs off
QUOTA_THROTTLE_PERCENT = 80

# ==============================
# Run Rules
# ==============================

# Standard Mythic+ start countdown, removed from wall time
MPLUS_START_OFFSET_MS = 10 * 1000

# Key level at which the larger per-death penalty applies
DEATH_PENALTY_LEVEL_THRESHOLD = 12

# Completion time bucket used for the dedup key (seconds)
DEDUP_BUCKET_SECONDS = 60

# ==============================
# Live State
# ==============================

# Recent runs kept for recaps (newest first)
RECENT_RUNS_CAPACITY = 10

# Default par time for an active run when the dungeon is unknown
DEFAULT_ACTIVE_RUN_PAR_MS = 1800000

# Bosses assumed for an active run when not supplied
DEFAULT_TOTAL_BOSSES = 3

TOURNAMENT_NAME = "M+ Tournament"

# ==============================
# Storage
# ==============================

STATE_FILE_NAME = "wcl.json"
LEDGER_FILE_NAME = "wcl_scores.csv"


# ==============================
# Environment parsing
# ==============================

def parse_int_env(key: str, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Read an integer env var, falling back to default when invalid or out of range"""
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r}, using default: {default}")
        return default
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        logger.warning(f"{key}={raw!r} out of range [{minimum}, {maximum}], using default: {default}")
        return default
    return value


def parse_bool_env(key: str, default: bool) -> bool:
    """Read a boolean env var (true/1/yes)"""
    raw = os.getenv(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the environment"""
    discord_token: str = ""
    announce_channel_id: Optional[int] = None
    commands_channel_id: Optional[int] = None

    wcl_client_id: str = ""
    wcl_client_secret: str = ""
    wcl_require_kill: bool = True

    event_start: str = ""
    event_end: str = ""
    event_enforce_window: bool = False
    realm_tz: str = "Europe/Stockholm"

    death_penalty_lt12: int = 5
    death_penalty_ge12: int = 15

    poll_interval_active_ms: int = 30000
    poll_interval_idle_ms: int = 300000
    recap_duration_ms: int = 15000

    admin_secret: str = ""
    data_dir: str = "data"
    api_timeout_seconds: int = API_TIMEOUT_SECONDS

    @property
    def has_wcl_credentials(self) -> bool:
        return bool(self.wcl_client_id and self.wcl_client_secret)


def _channel_id(key: str) -> Optional[int]:
    raw = os.getenv(key, "").strip()
    return int(raw) if raw.isdigit() else None


def load_settings() -> Settings:
    """Load .env and build Settings"""
    load_dotenv()
    return Settings(
        discord_token=os.getenv("DISCORD_TOKEN", "").strip(),
        announce_channel_id=_channel_id("ANNOUNCE_CHANNEL_ID"),
        commands_channel_id=_channel_id("COMMANDS_CHANNEL_ID"),
        wcl_client_id=os.getenv("WCL_CLIENT_ID", "").strip(),
        wcl_client_secret=os.getenv("WCL_CLIENT_SECRET", "").strip(),
        wcl_require_kill=parse_bool_env("WCL_REQUIRE_KILL", True),
        event_start=os.getenv("EVENT_START_SE", "").strip(),
        event_end=os.getenv("EVENT_END_SE", "").strip(),
        event_enforce_window=parse_bool_env("EVENT_ENFORCE_WINDOW", False),
        realm_tz=os.getenv("REALM_TZ", "Europe/Stockholm").strip() or "Europe/Stockholm",
        death_penalty_lt12=parse_int_env("MPLUS_DEATH_PENALTY_LT12", 5, 0, 300),
        death_penalty_ge12=parse_int_env("MPLUS_DEATH_PENALTY_GE12", 15, 0, 300),
        poll_interval_active_ms=parse_int_env("POLL_INTERVAL_ACTIVE_MS", 30000, 10000, 300000),
        poll_interval_idle_ms=parse_int_env("POLL_INTERVAL_IDLE_MS", 300000, 60000, 600000),
        recap_duration_ms=parse_int_env("RECAP_DURATION_MS", 15000, 1000, 60000),
        admin_secret=os.getenv("ADMIN_SECRET", "").strip(),
        data_dir=os.getenv("DATA_DIR", "data").strip() or "data",
        api_timeout_seconds=parse_int_env("API_TIMEOUT_SECONDS", API_TIMEOUT_SECONDS, 1, 120),
    )
