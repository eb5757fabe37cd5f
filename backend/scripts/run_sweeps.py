#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from cleanmatch.config import LOG_LEVEL  # noqa: E402
from cleanmatch.models import SweepResult  # noqa: E402
from cleanmatch.services.sweeper import lifecycle_sweeper  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run CleanMatch lifecycle sweeps once.")
    parser.add_argument("schedule", choices=["hourly", "daily", "all"], help="Which sweep group to run.")
    parser.add_argument("--json", action="store_true", help="Print results as JSON.")
    args = parser.parse_args()

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    results: List[SweepResult] = []
    if args.schedule in {"hourly", "all"}:
        results.extend(lifecycle_sweeper.run_hourly())
    if args.schedule in {"daily", "all"}:
        results.extend(lifecycle_sweeper.run_daily())

    if args.json:
        print(json.dumps([result.model_dump() for result in results], indent=2))
    else:
        for result in results:
            print(f"{result.name}: processed={result.processed} failed={result.failed}")
    return 1 if any(result.failed for result in results) else 0


if __name__ == "__main__":
    raise SystemExit(main())
