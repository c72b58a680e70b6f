#!/usr/bin/env python3
"""
Show what the next sync pass would forward, without sending anything.

    scripts/preview_pending_sync.py [LIMIT] [SOURCE]

Settings come from the JOB_INTAKE_* environment (JOB_INTAKE_DB, JOB_INTAKE_CURSOR_KEY).
"""

import os
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from modules.job_intake.lib import db  # noqa: E402
from modules.job_intake.lib.config import Settings  # noqa: E402
from modules.job_intake.lib.sync import SyncCursorManager  # noqa: E402


def _local(ts):
    if not ts:
        return "never"
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00")).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except ValueError:
        return ts


def main(argv):
    settings = Settings.from_env_and_kwargs({})
    if not os.path.exists(settings.sqlite_path):
        print(f"No database at {settings.sqlite_path}", file=sys.stderr)
        return 1

    limit = int(argv[0]) if argv and argv[0].isdigit() else 20
    source = argv[1] if len(argv) > 1 else None

    with SyncCursorManager(settings) as manager:
        status = manager.status()
    pending = db.fetch_since(settings.sqlite_path, status.last_sync_at, source)

    print(f"cursor {settings.cursor_key!r}: last pass {_local(status.last_sync_at)}, "
          f"{status.total_synced} forwarded in total")
    print(f"{len(pending)} pending" + (f" from {source}" if source else "") + "\n")
    for row in pending[:limit]:
        print(f"  {_local(row['scraped_at'])}  {row['source']:<12} {row['title']} @ {row['company']}")
        print(f"  {'':<23}  {row['job_url']}")
    if len(pending) > limit:
        print(f"\n  ... and {len(pending) - limit} more")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
