"""Convenience script for running a mirror sync or backfill locally."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure the src directory is on the Python path so the topicmirror package can be imported
SRC_PATH = Path(__file__).resolve().parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from topicmirror.config import SyncConfig  # noqa: E402  (import after path setup)
from topicmirror.errors import MirrorError  # noqa: E402
from topicmirror.services.sync import SyncOrchestrator  # noqa: E402


LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mirror the remote topic lists into local JSON documents.")
    parser.add_argument(
        "--backfill",
        action="store_true",
        help="Walk node listings page by page instead of syncing the latest/hot lists",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO").upper(),
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: INFO or $LOG_LEVEL)",
    )
    args = parser.parse_args(argv)
    if args.log_level not in LOG_LEVELS:
        parser.error(f"invalid LOG_LEVEL {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")
    return args


def main(argv: list[str] | None = None) -> int:
    """Load the configuration from the environment and run the orchestrator once."""

    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(levelname)s: %(message)s")

    try:
        config = SyncConfig.from_env()
    except ValueError as exc:
        logging.error("Could not load configuration: %s", exc)
        return 1

    try:
        with SyncOrchestrator(config) as orchestrator:
            report = orchestrator.run_backfill() if args.backfill else orchestrator.run()
    except MirrorError as exc:
        logging.error("Run aborted: %s", exc)
        return 1

    items = report.items
    print(
        f"{report.kind} done. candidates={items.candidates} refreshed={items.refreshed_count} "
        f"skipped={items.skipped_count} failed={len(items.failed)}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
