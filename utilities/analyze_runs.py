"""
Analyze Runs - Local Utility
Best timed runs per dungeon and per-team statistics from the score ledger
"""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "bot"))

from scoring import short_name_for
from storage import TournamentStore
from time_utils import format_local_time, format_timer_ms


def analyze_runs(data_dir: str = "data", top: int = 3, realm_tz: str = "Europe/Stockholm"):
    """Print ledger statistics"""
    store = TournamentStore(data_dir)
    if not store.ledger_path.exists():
        print("⚠️ No score ledger found")
        return

    runs = store.read_runs()
    print(f"📊 Analyzing {len(runs)} runs...\n")

    print("🏆 Best Timed Runs per Dungeon:")
    for dungeon, best in sorted(store.best_runs_per_dungeon().items()):
        print(f"  [{short_name_for(dungeon)}] {dungeon}")
        for run in best[:top]:
            print(f"    +{run.level} {run.team}: {format_timer_ms(run.duration_ms)} (+{run.upgrades}, {run.points} pts)")

    print("\n📈 Team Stats:")
    stats = store.team_stats()
    meta = store.read_meta()
    for team, entry in sorted(stats.items(), key=lambda item: -item[1]["highest_key"]):
        last = format_local_time((meta.get(team) or {}).get("last", ""), realm_tz) or "-"
        print(
            f"  {team}: {entry['runs']} runs, highest +{entry['highest_key']}, "
            f"{entry['unique_dungeons']} dungeons, {entry['total_deaths']} deaths, last run {last}"
        )

    print(f"\n📈 Total teams: {len(stats)}")
    print(f"📈 Dungeons played: {len(store.dungeon_names())}")


if __name__ == "__main__":
    analyze_runs(
        sys.argv[1] if len(sys.argv) > 1 else os.getenv("DATA_DIR", "data"),
        realm_tz=os.getenv("REALM_TZ", "Europe/Stockholm"),
    )
