#!/usr/bin/env python3
"""
Run the scheduled message dispatcher from the command line.

Either performs a single dispatch run (for cron) or loops until
interrupted (for a long-running worker container).

Usage:
    python scripts/run_dispatch.py --once
    python scripts/run_dispatch.py --interval 30

Requires:
    - .env file with Snowflake and Twilio credentials
      (or SNOWFLAKE_MOCK_MODE / TWILIO_MOCK_MODE for local runs)
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from src.api.dependencies import ConnectionPerRunDispatcher, build_message_sender
from src.config.settings import get_settings
from src.core.messaging.dispatcher import run_forever

logger = logging.getLogger("run_dispatch")


def main() -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(description='Dispatch due scheduled messages')
    parser.add_argument('--once', action='store_true', help='Run a single dispatch cycle and exit')
    parser.add_argument(
        '--interval',
        type=float,
        default=settings.dispatch_interval_seconds,
        help='Seconds between runs when looping (default: %(default)s)',
    )
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        print(f"ERROR: Missing configuration: {', '.join(missing_fields)}")
        return 1

    if args.interval <= 0:
        print("ERROR: --interval must be positive")
        return 1

    # Each run opens its own connection so the loop survives dropped sessions
    dispatcher = ConnectionPerRunDispatcher(settings, build_message_sender(settings))

    if args.once:
        report = dispatcher.run()
        print(json.dumps(report.to_dict(), indent=2))
        return 1 if report.aborted else 0

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info("Received signal %s, stopping after current run", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    logger.info(
        "Dispatcher loop starting",
        extra={"worker_id": dispatcher.worker_id, "interval_seconds": args.interval}
    )
    runs = run_forever(dispatcher, args.interval, stop_event)
    logger.info("Dispatcher loop stopped", extra={"runs": runs})

    return 0


if __name__ == '__main__':
    sys.exit(main())
