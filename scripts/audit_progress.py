#!/usr/bin/env python
"""
Recompute every explorer's XP and level from the discovery ledger and report drift.

Usage:
    python scripts/audit_progress.py          # report only
    python scripts/audit_progress.py --fix    # rewrite drifted totals/levels
    python scripts/audit_progress.py --prune-attempts   # also drop stale anti-abuse history

Environment variables (optional – defaults match app.py):
    DATABASE_URL
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from flask import current_app  # noqa: E402
from sqlalchemy import func  # noqa: E402

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from discovery.models import DiscoveryRecord, SubmissionAttempt, UserProgress  # noqa: E402
from discovery.rewards import level_for_xp  # noqa: E402
from discovery.settings import DiscoverySettings  # noqa: E402


def find_drift() -> List[Dict[str, int | str]]:
    """Return one entry per user whose stored progress disagrees with the ledger."""
    ledger_totals = dict(
        db.session.query(DiscoveryRecord.user_id, func.sum(DiscoveryRecord.xp_delta))
        .group_by(DiscoveryRecord.user_id)
        .all()
    )
    drift = []
    for progress in UserProgress.query.order_by(UserProgress.user_id.asc()).all():
        expected_xp = int(ledger_totals.pop(progress.user_id, 0) or 0)
        expected_level = level_for_xp(expected_xp)
        if progress.total_xp != expected_xp or progress.level != expected_level:
            drift.append(
                {
                    "user_id": progress.user_id,
                    "stored_xp": progress.total_xp,
                    "ledger_xp": expected_xp,
                    "stored_level": progress.level,
                    "ledger_level": expected_level,
                }
            )
    for user_id, total in ledger_totals.items():
        drift.append(
            {
                "user_id": user_id,
                "stored_xp": 0,
                "ledger_xp": int(total or 0),
                "stored_level": 0,
                "ledger_level": level_for_xp(int(total or 0)),
            }
        )
    return drift


def audit(fix: bool = False) -> int:
    print("🔍 Comparing user progress against the discovery ledger...")
    drift = find_drift()
    if not drift:
        print("✅ No drift found.")
        return 0

    for entry in drift:
        print(
            f"  • {entry['user_id']}: stored {entry['stored_xp']} XP / L{entry['stored_level']}, "
            f"ledger {entry['ledger_xp']} XP / L{entry['ledger_level']}"
        )

    if fix:
        fixed = 0
        for entry in drift:
            progress = db.session.get(UserProgress, entry["user_id"])
            if progress is None:
                continue
            progress.total_xp = entry["ledger_xp"]
            progress.level = entry["ledger_level"]
            fixed += 1
        db.session.commit()
        print(f"\n✅ Rewrote {fixed} progress rows.")
    else:
        print(f"\n⚠️ {len(drift)} users drifted. Re-run with --fix to rewrite them.")
    return len(drift)


def prune_attempts(now: Optional[datetime] = None) -> int:
    """Delete submission attempts older than both the cooldown and the rate window."""
    settings = DiscoverySettings.from_config(current_app.config)
    horizon = timedelta(seconds=max(settings.cooldown_seconds, settings.rate_window_seconds))
    cutoff = (now or datetime.now(timezone.utc)) - horizon
    removed = SubmissionAttempt.query.filter(SubmissionAttempt.received_at < cutoff).delete(synchronize_session=False)
    db.session.commit()
    print(f"🧹 Pruned {removed} submission attempts older than {cutoff.isoformat()}.")
    return removed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--fix", action="store_true", help="rewrite drifted totals and levels")
    parser.add_argument("--prune-attempts", action="store_true", help="delete anti-abuse history that no rule reads any more")
    args = parser.parse_args()
    try:
        with create_app().app_context():
            audit(fix=args.fix)
            if args.prune_attempts:
                prune_attempts()
    except KeyboardInterrupt:
        sys.exit("\n⚠️ Audit cancelled by user.")
