# scripts/disruption_report.py
"""
Print a disruption frequency report (or one client/staff profile) as JSON.

Meant for cron jobs and ad-hoc checks against the configured database:

    python scripts/disruption_report.py --start 2025-01-01 --end 2025-01-31
    python scripts/disruption_report.py --start 2025-01-01 --end 2025-01-31 --client-id C1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime

from fastapi.encoders import jsonable_encoder

from aba_scheduling.db.session import session_scope
from aba_scheduling.errors import SchedulingError
from aba_scheduling.logging_config import setup_logging
from aba_scheduling.services.scheduling_engine import build_engine

logger = logging.getLogger("disruption_report")


def run_once(
    start: datetime,
    end: datetime,
    client_id: str | None = None,
    staff_id: str | None = None,
) -> dict:
    with session_scope() as db:
        engine = build_engine(db)
        if client_id:
            result = engine.generate_client_disruption_profile(client_id, start, end)
        elif staff_id:
            result = engine.generate_staff_disruption_profile(staff_id, start, end)
        else:
            result = engine.generate_disruption_frequency_report(start, end)
        return jsonable_encoder(result)


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--start", type=datetime.fromisoformat, required=True)
    parser.add_argument("--end", type=datetime.fromisoformat, required=True)
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--client-id", help="Report one client's disruption profile")
    scope.add_argument("--staff-id", help="Report one staff member's disruption profile")
    args = parser.parse_args()

    setup_logging()
    try:
        report = run_once(args.start, args.end, args.client_id, args.staff_id)
    except SchedulingError as e:
        logger.error("Report failed: %s", e)
        return 1

    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
