"""
Location Stats — One-shot Report
==================================
Builds the location directory, computes stats and prints the same JSON the
API would return.

Usage:
    python scripts/location_stats.py --list                            # configured locations
    python scripts/location_stats.py portland                          # one location, last 30 days
    python scripts/location_stats.py portland --start-date 2024-01-01 --end-date 2024-01-31
    python scripts/location_stats.py --locations all                   # every location summed
    python scripts/location_stats.py --locations portland,salem --strategy stage
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import List, Optional

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from integrations.ghl import GHLClient
from scripts.lib.cache import NullCache
from scripts.lib.errors import ConfigError, StatsError
from scripts.lib.logger import setup_logger
from scripts.lib.settings import Settings
from scripts.stats.aggregator import StatsAggregator, parse_selection
from scripts.stats.classifier import build_classifier
from scripts.stats.dates import resolve_date_window
from scripts.stats.directory import LocationDirectory

logger = setup_logger("location_stats")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compute CRM location stats")
    parser.add_argument("location", nargs="?", help="Single location slug")
    parser.add_argument("--locations", help="'all' or comma-separated slugs (summed)")
    parser.add_argument("--start-date", help="YYYY-MM-DD")
    parser.add_argument("--end-date", help="YYYY-MM-DD")
    parser.add_argument("--strategy", choices=("tag", "stage"), help="Override CLASSIFICATION_STRATEGY")
    parser.add_argument("--list", action="store_true", help="List configured locations and exit")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> dict:
    async with GHLClient(settings) as client:
        directory = await LocationDirectory.initialize(client, settings)
        if args.list:
            return {"locations": [loc.public_view() for loc in directory.list_all()]}

        aggregator = StatsAggregator(
            directory,
            client,
            build_classifier(settings.strategy),
            cache=NullCache(),
            location_concurrency=settings.location_concurrency,
            subfetch_concurrency=settings.subfetch_concurrency,
        )
        window = resolve_date_window(
            args.start_date,
            args.end_date,
            default_days=settings.default_window_days,
            require_range=settings.require_date_range,
        )
        if args.location and not args.locations:
            result = await aggregator.compute_one(args.location, window)
        else:
            result = await aggregator.compute_many(parse_selection(args.locations), window)
        return result.to_response()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error("Configuration error: %s", e.message)
        return 2
    if args.strategy:
        settings = dataclasses.replace(settings, strategy=args.strategy)

    try:
        output = asyncio.run(run(args, settings))
    except StatsError as e:
        logger.error("Stats failed: %s", e)
        print(json.dumps({"error": e.message, "details": e.details}, indent=2, default=str))
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
