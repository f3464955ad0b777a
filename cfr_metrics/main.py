"""CFR Metrics command line.

Pipeline: Fetch metadata -> Download snapshots -> Extract chapters -> Compute metrics

Usage:
    python -m cfr_metrics.main --refresh             # Full refresh cycle
    python -m cfr_metrics.main --dry-run             # Show what would be downloaded
    python -m cfr_metrics.main --status              # Last refresh time
    python -m cfr_metrics.main --agencies            # List stored agencies
    python -m cfr_metrics.main --latest word_count   # Latest metric per agency
    python -m cfr_metrics.main --history epa --metric churn --points 30
    python -m cfr_metrics.main --growth              # Largest word-count growth
    python -m cfr_metrics.main --health-check        # Check the eCFR API
"""

import argparse
import asyncio
import json
import logging
import sys

from cfr_metrics.analysis.insights import growth_hotspots
from cfr_metrics.analysis.metrics import MetricsEngine
from cfr_metrics.config import data_dir, load_config
from cfr_metrics.errors import CFRMetricsError
from cfr_metrics.paths import database_path
from cfr_metrics.refresh import LAST_REFRESH_KEY, RefreshOrchestrator
from cfr_metrics.schemas.models import METRIC_NAMES, METRIC_WORD_COUNT
from cfr_metrics.sources.ecfr import ECFRClient
from cfr_metrics.storage.database import Database
from cfr_metrics.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TIMEOUT = 600  # seconds


def build_orchestrator(config: dict, database: Database) -> RefreshOrchestrator:
    """Wire client, snapshot store and metrics engine together."""
    snapshots = SnapshotStore.from_config(database, data_dir(config), config)
    engine = MetricsEngine(database, snapshots)
    return RefreshOrchestrator(ECFRClient(config), database, snapshots, engine, config=config)


async def run_refresh(config: dict, database: Database) -> dict:
    """Run one refresh cycle bounded by the configured timeout."""
    orchestrator = build_orchestrator(config, database)
    timeout = config.get("refresh", {}).get("timeout_seconds", DEFAULT_REFRESH_TIMEOUT)
    result = await asyncio.wait_for(orchestrator.run_cycle(), timeout=timeout)
    return result.model_dump()


async def dry_run(config: dict, database: Database) -> None:
    """Fetch the title list and show which snapshots a refresh would download."""
    client = ECFRClient(config)
    async with client.create_session() as session:
        titles = await client.list_titles(session)
    print(f"\n=== DRY RUN === [{client.base_url}]")
    pending = 0
    for t in titles:
        if t.reserved or not t.up_to_date_as_of:
            status = "reserved"
        elif database.snapshot_exists(t.number, t.up_to_date_as_of):
            status = "stored"
        else:
            status = "download"
            pending += 1
        print(f"  Title {t.number:>2} @ {t.up_to_date_as_of or '-':10s} {status:9s} {t.name}")
    print(f"\n{pending} snapshots would be downloaded.\n")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="CFR Metrics -- eCFR snapshot ingestion and per-agency regulatory metrics"
    )
    parser.add_argument("--refresh", action="store_true", help="Run a full refresh cycle")
    parser.add_argument("--dry-run", action="store_true", help="Show which snapshots would be downloaded")
    parser.add_argument("--status", action="store_true", help="Show last refresh time")
    parser.add_argument("--agencies", action="store_true", help="List stored agencies")
    parser.add_argument("--latest", type=str, metavar="METRIC", help="Latest value of METRIC per agency")
    parser.add_argument("--history", type=str, metavar="SLUG", help="Metric history for one agency")
    parser.add_argument("--metric", type=str, default=METRIC_WORD_COUNT,
                        help="Metric for --history (default: word_count)")
    parser.add_argument("--points", type=int, default=180, help="History points for --history/--growth")
    parser.add_argument("--growth", action="store_true", help="Agencies with the largest word-count growth")
    parser.add_argument("--limit", type=int, default=5, help="Rows for --growth")
    parser.add_argument("--health-check", action="store_true", help="Check eCFR API availability")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = load_config()
    for metric in (args.latest, args.metric):
        if metric and metric not in METRIC_NAMES:
            print(f"Unknown metric: {metric}")
            print(f"Available: {', '.join(sorted(METRIC_NAMES))}")
            sys.exit(1)

    try:
        with Database(database_path(data_dir(config))) as database:
            if args.health_check:
                from cfr_metrics.health import HealthChecker, format_report
                results = asyncio.run(HealthChecker(config, database).check_all())
                print(format_report(results))
            elif args.dry_run:
                asyncio.run(dry_run(config, database))
            elif args.refresh:
                _print_json(asyncio.run(run_refresh(config, database)))
            elif args.status:
                _print_json({LAST_REFRESH_KEY: database.get_state(LAST_REFRESH_KEY)})
            elif args.agencies:
                _print_json(database.list_agencies())
            elif args.latest:
                _print_json(database.latest_metric(args.latest))
            elif args.history:
                _print_json(database.metric_history(args.history, args.metric, args.points))
            elif args.growth:
                _print_json([h.to_dict() for h in growth_hotspots(database, args.points, args.limit)])
            else:
                parser.print_help()
    except asyncio.TimeoutError:
        logger.error("Refresh timed out")
        sys.exit(2)
    except CFRMetricsError as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
