"""
Run one giveaway tick from the command line (cron, manual runs)

Usage:
    python scripts/run_tick.py [--json]
"""

import argparse
import json
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from giveaway_system import config
from giveaway_system.exceptions import GiveawaySystemError, TickAborted
from giveaway_system.service import build_scheduler
from utils.logging_config import setup_service_logging


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run one giveaway settlement tick")
    parser.add_argument("--json", action="store_true", help="Print the tick summary as JSON")
    args = parser.parse_args(argv)

    setup_service_logging(config.LOG_LEVEL, config.LOG_FILE)

    try:
        result = build_scheduler().run_tick()
    except TickAborted as e:
        summary = {"ok": False, "error": "internal_error", "phase": e.phase, **e.result.to_dict()}
        print(json.dumps(summary) if args.json else f"❌ Tick aborted in phase '{e.phase}': {e.cause}")
        return 1
    except GiveawaySystemError as e:
        print(json.dumps({"ok": False, "error": str(e)}) if args.json else f"❌ {e}")
        return 1

    summary = result.to_dict()
    if args.json:
        print(json.dumps({"ok": True, **summary}))
    elif result.skipped:
        print("⏭️ Another tick is running, skipped")
    else:
        print(
            f"✅ Tick done in {summary['duration_ms']}ms\n"
            f"   Ended: {summary['ended_count']}\n"
            f"   Drawn: {summary['drawn_count']}\n"
            f"   Official expired: {summary['official_expired']}\n"
            f"   Retry credits: {summary['retry_issued']} issued, "
            f"{summary['retry_checked']} checked, {summary['retry_expired']} expired"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
