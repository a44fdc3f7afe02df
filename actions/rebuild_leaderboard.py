"""
Leaderboard Rebuild - Offline Script
Recomputes team totals from the append-only score ledger and compares them
with the stored leaderboard.

USE THIS SCRIPT FOR:
- Auditing totals after a crash or a manual edit of wcl.json
- Restoring totals that fell behind the ledger (--apply)

Totals are never lowered: --apply only adds the missing points.

Usage: python actions/rebuild_leaderboard.py [data_dir] [--apply]
"""

import os
import sys
from typing import Any, Dict, List

# Bot modules live next to this directory
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bot"))

from storage import TournamentStore

DEFAULT_DATA_DIR = os.getenv("DATA_DIR", "data")


# ==============================
# Comparison
# ==============================

def compare_totals(store: TournamentStore) -> List[Dict[str, Any]]:
    """One row per team seen in either source, with stored vs ledger totals"""
    stored = store.read_leaderboard()
    meta = store.read_meta()
    folded = store.fold_ledger()

    rows = []
    for team in sorted(set(stored) | set(folded), key=str.lower):
        ledger = folded.get(team, {"points": 0, "runs": 0})
        rows.append({
            "team": team,
            "stored_points": stored.get(team, 0),
            "ledger_points": ledger["points"],
            "stored_runs": (meta.get(team) or {}).get("runs", 0),
            "ledger_runs": ledger["runs"],
        })
    return rows


def apply_missing_points(store: TournamentStore, rows: List[Dict[str, Any]]) -> int:
    """Raise stored totals that are behind the ledger; returns the number of teams changed"""
    changed = 0
    for row in rows:
        missing = row["ledger_points"] - row["stored_points"]
        if missing > 0:
            store.update_leaderboard(row["team"], missing)
            print(f"  ⬆️ {row['team']}: +{missing} points")
            changed += 1
    return changed


def rebuild_leaderboard(data_dir: str = DEFAULT_DATA_DIR, apply: bool = False) -> List[Dict[str, Any]]:
    store = TournamentStore(data_dir)
    store.load()
    rows = compare_totals(store)

    if not rows:
        print("⚠️ No teams in the leaderboard or the ledger")
        return rows

    print(f"{'Team':24s} {'Stored':>8s} {'Ledger':>8s} {'Runs':>6s} {'Ledger':>7s}")
    print("-" * 58)
    mismatches = 0
    for row in rows:
        flag = ""
        if row["stored_points"] != row["ledger_points"] or row["stored_runs"] != row["ledger_runs"]:
            flag = "  ❗"
            mismatches += 1
        print(
            f"{row['team'][:24]:24s} {row['stored_points']:8d} {row['ledger_points']:8d} "
            f"{row['stored_runs']:6d} {row['ledger_runs']:7d}{flag}"
        )

    print(f"\n📊 {len(rows)} team(s), {mismatches} mismatch(es)")
    if apply and mismatches:
        changed = apply_missing_points(store, rows)
        print(f"✅ Updated {changed} team total(s)")
    return rows


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    try:
        rebuild_leaderboard(args[0] if args else DEFAULT_DATA_DIR, apply="--apply" in sys.argv)
        sys.exit(0)
    except Exception as e:
        print(f"\nRebuild failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
