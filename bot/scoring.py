"""
Scoring rules for tournament runs.
Pure functions: par-time classification and bracket point tables.
Adjust the tables here to tune the ruleset.
"""

import re
from typing import Dict, List, Optional, Tuple

# ==============================
# Dungeon Par Times
# ==============================
# Keyed by slug (see slugify_dungeon). Values in milliseconds.
DUNGEON_PAR_MS: Dict[str, int] = {
    "eco-dome-aldani": 1860000,             # 31:00
    "ara-kara-city-of-echoes": 1800000,     # 30:00
    "the-dawnbreaker": 1860000,             # 31:00
    "priory-of-the-sacred-flame": 1950000,  # 32:30
    "operation-floodgate": 1980000,         # 33:00
    "halls-of-atonement": 1920000,          # 32:00
    "tazavesh-streets-of-wonder": 2100000,  # 35:00
    "tazavesh-soleahs-gambit": 1800000,     # 30:00
}

# Short labels for overlays and operator notices
DUNGEON_SHORT_NAMES: Dict[str, str] = {
    "eco-dome-aldani": "EDA",
    "ara-kara-city-of-echoes": "ARAK",
    "the-dawnbreaker": "DAWN",
    "priory-of-the-sacred-flame": "PSF",
    "operation-floodgate": "FLOOD",
    "halls-of-atonement": "HOA",
    "tazavesh-streets-of-wonder": "STRT",
    "tazavesh-soleahs-gambit": "GMBT",
}

# Slack over par before a run counts as depleted (rounding in the source timer)
EPS_MS = 500

# Ratio of duration to par time for each upgrade tier (inclusive upper bounds)
UPGRADE_THRESHOLDS: List[Tuple[float, int]] = [
    (0.60, 3),
    (0.80, 2),
]

# ==============================
# Bracket Point Tables
# ==============================
# Format: {key level: {upgrades: points}}
# Levels missing from a table score zero (below the floor or above the defined ceiling).
BRACKET_A: Dict[int, Dict[int, int]] = {
    10: {1: 1, 2: 2, 3: 3},
    11: {1: 2, 2: 3, 3: 4},
    12: {1: 8, 2: 9, 3: 10},
    13: {1: 11, 2: 12, 3: 13},
    14: {1: 14, 2: 15, 3: 16},
    15: {1: 20, 2: 21, 3: 22},
    16: {1: 23, 2: 24, 3: 25},
}

BRACKET_B: Dict[int, Dict[int, int]] = {
    10: {1: 0, 2: 0, 3: 0},
    11: {1: 0, 2: 1, 3: 2},
    12: {1: 1, 2: 2, 3: 3},
    13: {1: 2, 2: 3, 3: 4},
    14: {1: 8, 2: 9, 3: 10},
    15: {1: 11, 2: 12, 3: 13},
    16: {1: 14, 2: 15, 3: 16},
    17: {1: 20, 2: 21, 3: 22},
    18: {1: 23, 2: 24, 3: 25},
}

BRACKET_C: Dict[int, Dict[int, int]] = {
    10: {1: 0, 2: 0, 3: 0},
    11: {1: 0, 2: 0, 3: 0},
    12: {1: 0, 2: 0, 3: 0},
    13: {1: 0, 2: 0, 3: 1},
    14: {1: 2, 2: 3, 3: 4},
    15: {1: 5, 2: 6, 3: 7},
    16: {1: 8, 2: 9, 3: 10},
    17: {1: 14, 2: 15, 3: 16},
    18: {1: 17, 2: 18, 3: 19},
    19: {1: 26, 2: 28, 3: 30},
    20: {1: 32, 2: 34, 3: 36},
}

BRACKETS: Dict[str, Dict[int, Dict[int, int]]] = {
    "A": BRACKET_A,
    "B": BRACKET_B,
    "C": BRACKET_C,
}

DEFAULT_BRACKET = "A"


# ==============================
# Name normalization
# ==============================

def slugify_dungeon(name: Optional[str]) -> str:
    """Normalize a dungeon name: 'Ara-Kara, City of Echoes' -> 'ara-kara-city-of-echoes'"""
    slug = str(name or "").lower().strip()
    slug = re.sub(r"[`‘’]", "'", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def par_time_for(dungeon_name: Optional[str]) -> Optional[int]:
    """Par time in ms, or None for an unknown dungeon"""
    return DUNGEON_PAR_MS.get(slugify_dungeon(dungeon_name))


def short_name_for(dungeon_name: Optional[str]) -> str:
    """Short label for a dungeon, falling back to the first four letters of the slug"""
    slug = slugify_dungeon(dungeon_name)
    return DUNGEON_SHORT_NAMES.get(slug, slug.replace("-", "")[:4].upper())


# ==============================
# Classification and points
# ==============================

def classify_by_par_time(dungeon_name: Optional[str], clear_ms: float) -> Tuple[bool, int]:
    """
    Classify a clear against the dungeon's par time.
    Returns (in_time, upgrades). Unknown dungeons and non-positive durations are depleted.
    """
    par = par_time_for(dungeon_name)
    if not par or clear_ms <= 0:
        return False, 0

    if clear_ms > par + EPS_MS:
        return False, 0

    ratio = clear_ms / par
    for threshold, upgrades in UPGRADE_THRESHOLDS:
        if ratio <= threshold:
            return True, upgrades
    return True, 1


def resolve_upgrades(dungeon_name: Optional[str], clear_ms: float, keystone_bonus: Optional[int]) -> Tuple[bool, int]:
    """Authoritative keystone bonus from the source wins over the par-time ratio"""
    if keystone_bonus is not None:
        upgrades = max(0, min(3, int(keystone_bonus)))
        return upgrades > 0, upgrades
    return classify_by_par_time(dungeon_name, clear_ms)


def points_for(level: int, upgrades: int, in_time: bool, bracket: str = DEFAULT_BRACKET) -> int:
    """Points for a run; zero when depleted or when the bracket/level has no table entry"""
    if not in_time:
        return 0

    table = BRACKETS.get(str(bracket or "").upper())
    if table is None:
        return 0

    level_points = table.get(int(level or 0))
    if not level_points:
        return 0
    return int(level_points.get(int(upgrades or 0), 0))


def valid_brackets() -> List[str]:
    """Bracket letters accepted for teams"""
    return list(BRACKETS.keys())


def normalize_bracket(value: Optional[str], fallback: str = DEFAULT_BRACKET) -> str:
    """Upper-case a bracket value, falling back when it is not a known bracket"""
    bracket = str(value or "").strip().upper()
    return bracket if bracket in BRACKETS else fallback
