#!/usr/bin/env python3
"""
AccessLens command line interface.
Manage sources, run collection and rollups, and print dashboard metrics.
"""
import argparse
import json
import signal
import sys
import threading
from datetime import datetime, timedelta


def init_db_command(args):
    from accesslens.database import init_db
    init_db()
    print("✅ Database schema is up to date")


def add_source_command(args):
    from accesslens.database import SessionLocal, init_db
    from accesslens.schemas import SourceCreate
    from accesslens.sources import create_source

    init_db()
    db = SessionLocal()
    try:
        source = create_source(db, SourceCreate(
            name=args.name,
            type=args.type,
            log_path=args.path or "",
            log_format=args.format,
            namespace=args.namespace or "",
            ingress_name=args.ingress or "",
            geo_enabled=not args.no_geo,
            collect_interval=args.interval,
            retention_days=args.retention,
        ))
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
    print(f"✅ Created source {source.id} ({source.name})")
    return 0


def collect_command(args):
    from accesslens.collector import Collector
    from accesslens.errors import SourceNotFound

    collector = Collector()
    try:
        result = collector.collect(args.source_id)
    except SourceNotFound as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    print(json.dumps(result.model_dump(), indent=2))
    return 0 if result.status in ("ok", "busy") else 1


def run_command(args):
    from accesslens.collector import Collector, CollectorScheduler

    scheduler = CollectorScheduler(Collector(), workers=args.workers)
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    print("👁️  Collecting active sources, press Ctrl+C to stop")
    scheduler.start()
    stop.wait()
    scheduler.stop()
    print("🛑 Collection stopped")
    return 0


def rollup_command(args):
    from accesslens.aggregator import Aggregator, DAILY, HOURLY, TIER_FACT, TIER_LEGACY
    from accesslens.utils.timeutil import floor_day, now_local

    end = now_local()
    start = floor_day(end) - timedelta(days=args.days - 1)
    tier = TIER_LEGACY if args.legacy else TIER_FACT
    aggregator = Aggregator()
    hours = aggregator.rollup_range(args.source_id, start, end, HOURLY, tier)
    days = aggregator.rollup_range(args.source_id, start, end, DAILY, tier)
    print(f"✅ Rolled up {hours} hourly and {days} daily {tier} buckets")
    return 0


def backfill_command(args):
    from accesslens.backfill import BackfillJob

    result = BackfillJob().run(limit=args.limit)
    print(json.dumps(result.model_dump(), indent=2))
    return 0


def cleanup_command(args):
    from accesslens.aggregator import Aggregator
    from accesslens.database import SessionLocal
    from accesslens.sources import list_active_sources

    db = SessionLocal()
    try:
        sources = list_active_sources(db)
        for source in sources:
            db.expunge(source)
    finally:
        db.close()

    aggregator = Aggregator()
    for source in sources:
        if args.source_id and source.id != args.source_id:
            continue
        removed = aggregator.cleanup_old_data(source)
        print(f"🧹 Source {source.id}: {removed}")
    return 0


def stats_command(args):
    from accesslens.query.engine import QueryEngine

    engine = QueryEngine()
    metrics = engine.core_metrics(args.source_id)
    output = {
        "source_id": args.source_id,
        "generated_at": datetime.now().isoformat(),
        "core_metrics": metrics.model_dump(),
        "top_pages": [p.model_dump() for p in engine.top_pages(args.source_id, limit=args.top)],
        "top_ips": [p.model_dump() for p in engine.top_ips(args.source_id, limit=args.top)],
    }
    print(json.dumps(output, indent=2, default=str))
    return 0


def serve_command(args):
    import uvicorn
    from accesslens.config import settings

    uvicorn.run(
        "accesslens.main:app",
        host=args.host or settings.HOST,
        port=args.port or settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
    return 0


def main():
    parser = argparse.ArgumentParser(description="AccessLens CLI - access log analytics")
    parser.add_argument("--log-level", default=None, help="Override ACCESSLENS_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create missing tables")

    add_parser = subparsers.add_parser("add-source", help="Register a log source")
    add_parser.add_argument("name", help="Source name")
    add_parser.add_argument("--type", default="host", choices=["host", "k8s_ingress"])
    add_parser.add_argument("--path", help="Log file path (host sources)")
    add_parser.add_argument("--format", default="combined", choices=["combined", "json", "custom"])
    add_parser.add_argument("--namespace", help="Kubernetes namespace (k8s_ingress sources)")
    add_parser.add_argument("--ingress", help="Ingress name (k8s_ingress sources)")
    add_parser.add_argument("--interval", type=int, default=None, help="Collect interval in seconds")
    add_parser.add_argument("--retention", type=int, default=None, help="Retention in days")
    add_parser.add_argument("--no-geo", action="store_true", help="Disable geo lookups")

    collect_parser = subparsers.add_parser("collect", help="Run one collection cycle")
    collect_parser.add_argument("source_id", type=int)

    run_parser = subparsers.add_parser("run", help="Collect all active sources until interrupted")
    run_parser.add_argument("--workers", type=int, default=None)

    rollup_parser = subparsers.add_parser("rollup", help="Recompute aggregates")
    rollup_parser.add_argument("source_id", type=int)
    rollup_parser.add_argument("--days", type=int, default=1, help="Days back, including today")
    rollup_parser.add_argument("--legacy", action="store_true", help="Roll up the legacy tables")

    backfill_parser = subparsers.add_parser("backfill", help="Fill in missing geo and user agent data")
    backfill_parser.add_argument("--limit", type=int, default=None)

    cleanup_parser = subparsers.add_parser("cleanup", help="Apply retention to active sources")
    cleanup_parser.add_argument("--source-id", type=int, default=None)

    stats_parser = subparsers.add_parser("stats", help="Print dashboard metrics for a source")
    stats_parser.add_argument("source_id", type=int)
    stats_parser.add_argument("--top", type=int, default=10)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    args = parser.parse_args()

    from accesslens.config import settings
    from accesslens.logging_config import configure_logging
    configure_logging(args.log_level or settings.LOG_LEVEL)

    commands = {
        "init-db": init_db_command,
        "add-source": add_source_command,
        "collect": collect_command,
        "run": run_command,
        "rollup": rollup_command,
        "backfill": backfill_command,
        "cleanup": cleanup_command,
        "stats": stats_command,
        "serve": serve_command,
    }
    if args.command not in commands:
        parser.print_help()
        return 1
    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
