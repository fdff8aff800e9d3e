from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timedelta


def _bootstrap_app():
    from payrecon import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Report pending payments whose provider callback never arrived.")
    parser.add_argument("--minutes", type=int, default=30, help="Age threshold in minutes.")
    parser.add_argument("--limit", type=int, default=500, help="Maximum rows to report.")
    args = parser.parse_args()

    app = _bootstrap_app()
    from payrecon.services.stale_payments import find_stale_pending, stale_summary

    config = app.extensions["payrecon"]["gateway_config"]
    now = datetime.utcnow()
    rows = find_stale_pending(
        older_than=timedelta(minutes=max(1, int(args.minutes))),
        now=now,
        gateway_id=config.gateway_id,
        limit=max(1, int(args.limit)),
    )
    summary = stale_summary(rows, now=now)
    summary["threshold_minutes"] = int(args.minutes)

    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("stale_count") or 0) == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
