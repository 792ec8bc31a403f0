from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date, datetime

from accesslens import schemas
from accesslens.aggregator import DAILY, HOURLY, TIER_FACT, TIER_LEGACY
from accesslens.api.deps import get_backfill_job, get_collector, get_query_engine
from accesslens.backfill import BackfillJob
from accesslens.collector import Collector
from accesslens.database import get_db
from accesslens.errors import SourceNotFound
from accesslens.query.engine import QueryEngine
from accesslens.sources import get_source
from accesslens.utils.timeutil import floor_day, now_local, to_local_naive

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def existing_source(source_id: int, db: Session = Depends(get_db)) -> int:
    try:
        get_source(db, source_id)
    except SourceNotFound:
        raise HTTPException(status_code=404, detail="Source not found")
    return source_id


@router.get("/{source_id}/core-metrics", response_model=schemas.CoreMetrics)
def core_metrics(source_id: int = Depends(existing_source), engine: QueryEngine = Depends(get_query_engine)):
    """Today, yesterday, yesterday at this hour, predicted today, realtime and peak OPS."""
    return engine.core_metrics(source_id)


@router.get("/{source_id}/trend", response_model=List[schemas.OverviewTrendPoint])
def overview_trend(
    mode: str = "hour",
    day: Optional[date] = None,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    if mode not in ("hour", "day"):
        raise HTTPException(status_code=400, detail="mode must be 'hour' or 'day'")
    return engine.overview_trend(source_id, mode=mode, day=day)


@router.get("/{source_id}/visitors", response_model=schemas.VisitorComparison)
def new_vs_returning(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.new_vs_returning(source_id, start, end)


@router.get("/{source_id}/active-visitors")
def active_visitors(
    minutes: int = 5,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return {"source_id": source_id, "minutes": minutes, "active_visitors": engine.active_visitors(source_id, minutes)}


@router.get("/{source_id}/top-pages", response_model=List[schemas.PageItem])
def top_pages(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.top_pages(source_id, start, end, limit)


@router.get("/{source_id}/entry-pages", response_model=List[schemas.PageItem])
def entry_pages(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.entry_pages(source_id, start, end, limit)


@router.get("/{source_id}/referers", response_model=List[schemas.RefererItem])
def top_referers(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.top_referers(source_id, start, end, limit)


@router.get("/{source_id}/top-ips", response_model=List[schemas.IPGeoItem])
def top_ips(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.top_ips(source_id, start, end, limit)


@router.get("/{source_id}/timeseries", response_model=List[schemas.TimeSeriesPoint])
def time_series(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    granularity: str = "hour",
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    if granularity not in ("hour", "day"):
        raise HTTPException(status_code=400, detail="granularity must be 'hour' or 'day'")
    return engine.time_series(source_id, start, end, granularity)


@router.get("/{source_id}/geo", response_model=schemas.GeoStats)
def geo_distribution(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.geo_distribution(source_id, start, end)


@router.get("/{source_id}/browsers", response_model=schemas.BrowserStats)
def browser_distribution(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.browser_distribution(source_id, start, end)


@router.get("/{source_id}/devices", response_model=schemas.DeviceStats)
def device_distribution(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    source_id: int = Depends(existing_source),
    engine: QueryEngine = Depends(get_query_engine)
):
    return engine.device_distribution(source_id, start, end)


@router.post("/{source_id}/rollup")
def rollup(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    legacy: bool = False,
    source_id: int = Depends(existing_source),
    collector: Collector = Depends(get_collector)
):
    """Recompute hourly and daily aggregates for a window (default: today)."""
    today = floor_day(now_local())
    start = to_local_naive(start) if start else today
    end = to_local_naive(end) if end else now_local()
    tier = TIER_LEGACY if legacy else TIER_FACT
    aggregator = collector.aggregator
    hours = aggregator.rollup_range(source_id, start, end, HOURLY, tier)
    days = aggregator.rollup_range(source_id, start, end, DAILY, tier)
    return {"source_id": source_id, "tier": tier, "hourly_rows": hours, "daily_rows": days}


@router.post("/backfill", response_model=schemas.BackfillResult)
def backfill(limit: Optional[int] = None, job: BackfillJob = Depends(get_backfill_job)):
    """Fill in missing geo and user-agent attributes on dimension rows."""
    return job.run(limit=limit)
