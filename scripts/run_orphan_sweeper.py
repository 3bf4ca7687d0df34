#!/usr/bin/env python3
"""Run the orphan sweep on a fixed interval until interrupted."""

import argparse
import logging
import time

from dotenv import load_dotenv

load_dotenv()

from outbound_events.config import settings  # noqa: E402
from outbound_events.db import supabase  # noqa: E402
from outbound_events.observability import configured_export, log_event, persist_metrics_snapshot  # noqa: E402
from outbound_events.services.orphan_queue import build_orphan_queue  # noqa: E402


def run_once() -> dict[str, int]:
    result = build_orphan_queue(supabase).sweep(request_id="orphan-sweeper")
    persist_metrics_snapshot(
        supabase_client=supabase,
        source="orphan_sweeper_script",
        request_id="orphan-sweeper",
        reset_after_persist=True,
        export=configured_export(),
    )
    return result.as_dict()


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.orphan_sweep_interval_seconds,
        help="Seconds between sweeps",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    while True:
        started = time.monotonic()
        try:
            summary = run_once()
            print(f"Sweep: {summary}")
        except Exception as exc:
            log_event("orphan_sweeper_run_failed", level=logging.ERROR, error=str(exc))
            if args.once:
                raise
        if args.once:
            return
        time.sleep(max(0.0, args.interval - (time.monotonic() - started)))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nStopped.")
