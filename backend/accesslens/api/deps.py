from functools import lru_cache

from accesslens.backfill import BackfillJob
from accesslens.collector import Collector
from accesslens.query.engine import QueryEngine


@lru_cache()
def get_collector() -> Collector:
    return Collector()


@lru_cache()
def get_query_engine() -> QueryEngine:
    return QueryEngine()


def get_backfill_job() -> BackfillJob:
    collector = get_collector()
    return BackfillJob(dimensions=collector.dimensions, geo=collector.geo)
