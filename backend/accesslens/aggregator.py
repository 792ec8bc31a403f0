"""
Hourly and daily rollups.

Every rollup is a full recompute of one (source, bucket) row from raw rows,
written with a single upsert, so re-running it is always safe.
"""
import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from accesslens.config import settings
from accesslens.database import SessionLocal, table_exists, upsert
from accesslens.errors import AggregationError
from accesslens.models import (
    AccessLog, AggDaily, AggHourly, DimIP, DimReferer, DimURL, DimUserAgent,
    FactAccessLog, LegacyDailyStats, LegacyHourlyStats, Source,
)
from accesslens.utils.timeutil import DAY, HOUR, floor_day, floor_hour, now_local

logger = logging.getLogger(__name__)

HOURLY = "hour"
DAILY = "day"

TIER_FACT = "fact"
TIER_LEGACY = "legacy"


class _Accumulator:
    """Running totals for one bucket, fed rows in (timestamp, id) order."""

    def __init__(self):
        self.total = 0
        self.pv = 0
        self.identities = set()
        self.bandwidth = 0
        self.rt_sum = 0.0
        self.rt_min: Optional[float] = None
        self.rt_max = 0.0
        self.status = {"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
        self.methods = Counter()
        self.hours = [0] * 24
        self.top: Dict[str, Counter] = {}

    def add(self, timestamp: datetime, identity, status: int, size: int,
            request_time: float, method: str, is_pv: bool = False):
        self.total += 1
        if is_pv:
            self.pv += 1
        if identity:
            self.identities.add(identity)
        self.bandwidth += size or 0
        rt = request_time or 0.0
        self.rt_sum += rt
        self.rt_min = rt if self.rt_min is None else min(self.rt_min, rt)
        self.rt_max = max(self.rt_max, rt)
        status = status or 0
        if 200 <= status < 300:
            self.status["2xx"] += 1
        elif 300 <= status < 400:
            self.status["3xx"] += 1
        elif 400 <= status < 500:
            self.status["4xx"] += 1
        elif 500 <= status < 600:
            self.status["5xx"] += 1
        if method:
            self.methods[method] += 1
        self.hours[timestamp.hour] += 1

    def count(self, blob: str, name):
        if name:
            self.top.setdefault(blob, Counter())[name] += 1

    def top_json(self, blob: str, n: int) -> str:
        # Counter.most_common keeps first-seen order among equal counts
        counter = self.top.get(blob, Counter())
        return json.dumps([{"name": name, "value": value} for name, value in counter.most_common(n)])

    def common(self) -> Dict:
        avg = round(self.rt_sum / self.total, 6) if self.total else 0.0
        return {
            "total_requests": self.total,
            "total_bandwidth": self.bandwidth,
            "avg_response_time": avg,
            "status_2xx": self.status["2xx"],
            "status_3xx": self.status["3xx"],
            "status_4xx": self.status["4xx"],
            "status_5xx": self.status["5xx"],
        }


class Aggregator:
    def __init__(self, session_factory: sessionmaker = None, top_n: int = None):
        self.session_factory = session_factory or SessionLocal
        self.top_n = top_n or settings.TOP_N

    # ============== Single bucket ==============

    def rollup(self, source_id: int, bucket_start: datetime, granularity: str = HOURLY,
               tier: str = TIER_FACT) -> Dict:
        """Recompute and replace one aggregate row; returns the stored values."""
        if granularity not in (HOURLY, DAILY):
            raise ValueError(f"unknown granularity: {granularity}")
        start = floor_hour(bucket_start) if granularity == HOURLY else floor_day(bucket_start)
        end = start + (HOUR if granularity == HOURLY else DAY)

        db = self.session_factory()
        try:
            if tier == TIER_FACT:
                acc = self._scan_facts(db, source_id, start, end, daily=granularity == DAILY)
                table, values, keys = self._fact_row(source_id, start, granularity, acc)
            elif tier == TIER_LEGACY:
                acc = self._scan_legacy(db, source_id, start, end, daily=granularity == DAILY)
                table, values, keys = self._legacy_row(source_id, start, granularity, acc)
            else:
                raise ValueError(f"unknown tier: {tier}")
            db.execute(upsert(db, table, values, keys))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise AggregationError(
                f"{tier} {granularity} rollup failed for source {source_id} at {start}: {e}"
            ) from e
        finally:
            db.close()
        return values

    def _scan_facts(self, db: Session, source_id: int, start: datetime, end: datetime,
                    daily: bool) -> _Accumulator:
        acc = _Accumulator()
        if daily:
            stmt = (
                select(
                    FactAccessLog.timestamp, FactAccessLog.ip_id, FactAccessLog.status,
                    FactAccessLog.body_bytes_sent, FactAccessLog.request_time,
                    FactAccessLog.method, FactAccessLog.is_pv,
                    DimURL.url_normalized, DimReferer.referer_domain, DimIP.ip_address,
                    DimIP.country, DimUserAgent.browser, DimUserAgent.device_type,
                )
                .outerjoin(DimURL, DimURL.id == FactAccessLog.url_id)
                .outerjoin(DimReferer, DimReferer.id == FactAccessLog.referer_id)
                .outerjoin(DimIP, DimIP.id == FactAccessLog.ip_id)
                .outerjoin(DimUserAgent, DimUserAgent.id == FactAccessLog.ua_id)
            )
        else:
            stmt = select(
                FactAccessLog.timestamp, FactAccessLog.ip_id, FactAccessLog.status,
                FactAccessLog.body_bytes_sent, FactAccessLog.request_time,
                FactAccessLog.method, FactAccessLog.is_pv,
            )
        stmt = (
            stmt.where(
                FactAccessLog.source_id == source_id,
                FactAccessLog.timestamp >= start,
                FactAccessLog.timestamp < end,
            )
            .order_by(FactAccessLog.timestamp, FactAccessLog.id)
        )

        for row in db.execute(stmt):
            acc.add(row[0], row[1], row[2], row[3], row[4], row[5], bool(row[6]))
            if daily:
                acc.count("urls", row[7])
                acc.count("referers", row[8])
                acc.count("ips", row[9])
                acc.count("countries", row[10])
                acc.count("browsers", row[11])
                acc.count("devices", row[12])
        return acc

    def _scan_legacy(self, db: Session, source_id: int, start: datetime, end: datetime,
                     daily: bool) -> _Accumulator:
        acc = _Accumulator()
        stmt = (
            select(
                AccessLog.timestamp, AccessLog.remote_addr, AccessLog.status,
                AccessLog.body_bytes_sent, AccessLog.request_time, AccessLog.method,
                AccessLog.uri, AccessLog.http_referer, AccessLog.http_user_agent,
            )
            .where(
                AccessLog.source_id == source_id,
                AccessLog.timestamp >= start,
                AccessLog.timestamp < end,
            )
            .order_by(AccessLog.timestamp, AccessLog.id)
        )
        for row in db.execute(stmt):
            acc.add(row[0], row[1], row[2], row[3], row[4], row[5])
            if daily:
                acc.count("uris", row[6])
                acc.count("ips", row[1])
                acc.count("referers", row[7])
                acc.count("user_agents", row[8])
        return acc

    def _fact_row(self, source_id: int, start: datetime, granularity: str, acc: _Accumulator):
        values = acc.common()
        values.update({
            "source_id": source_id,
            "pv_count": acc.pv,
            "unique_ips": len(acc.identities),
            "max_response_time": acc.rt_max,
            "min_response_time": acc.rt_min or 0.0,
            "method_distribution": json.dumps(dict(acc.methods), sort_keys=True),
        })
        if granularity == HOURLY:
            values["hour"] = start
            return AggHourly.__table__, values, ["source_id", "hour"]

        values.update({
            "date": start.date(),
            "top_urls": acc.top_json("urls", self.top_n),
            "top_ips": acc.top_json("ips", self.top_n),
            "top_referers": acc.top_json("referers", self.top_n),
            "top_countries": acc.top_json("countries", self.top_n),
            "top_browsers": acc.top_json("browsers", self.top_n),
            "top_devices": acc.top_json("devices", self.top_n),
            "hourly_traffic": json.dumps(acc.hours),
        })
        return AggDaily.__table__, values, ["source_id", "date"]

    def _legacy_row(self, source_id: int, start: datetime, granularity: str, acc: _Accumulator):
        values = acc.common()
        values.update({
            "source_id": source_id,
            "unique_visitors": len(acc.identities),
        })
        if granularity == HOURLY:
            values["hour"] = start
            return LegacyHourlyStats.__table__, values, ["source_id", "hour"]

        values.update({
            "date": start.date(),
            "top_uris": acc.top_json("uris", self.top_n),
            "top_ips": acc.top_json("ips", self.top_n),
            "top_referers": acc.top_json("referers", self.top_n),
            "top_user_agents": acc.top_json("user_agents", self.top_n),
        })
        return LegacyDailyStats.__table__, values, ["source_id", "date"]

    # ============== Bucket sets ==============

    def rollup_touched(self, source_id: int, timestamps: Iterable[datetime],
                       legacy: bool = False) -> int:
        """Re-run every hourly and daily bucket covering the given timestamps."""
        hours = sorted({floor_hour(ts) for ts in timestamps})
        days = sorted({floor_day(h) for h in hours})
        tiers = [TIER_FACT, TIER_LEGACY] if legacy else [TIER_FACT]

        done = 0
        for tier in tiers:
            for hour in hours:
                done += self._safe_rollup(source_id, hour, HOURLY, tier)
            for day in days:
                done += self._safe_rollup(source_id, day, DAILY, tier)
        return done

    def rollup_range(self, source_id: int, start: datetime, end: datetime,
                     granularity: str = HOURLY, tier: str = TIER_FACT) -> int:
        """Roll up every bucket in [start, end)."""
        step = HOUR if granularity == HOURLY else DAY
        bucket = floor_hour(start) if granularity == HOURLY else floor_day(start)
        done = 0
        while bucket < end:
            done += self._safe_rollup(source_id, bucket, granularity, tier)
            bucket += step
        return done

    def rollup_recent(self, source_id: int, legacy: bool = False) -> int:
        """Current and previous hour, today and yesterday."""
        now = now_local()
        stamps = [now, now - HOUR, floor_day(now) - timedelta(seconds=1)]
        return self.rollup_touched(source_id, stamps, legacy=legacy)

    def _safe_rollup(self, source_id: int, bucket: datetime, granularity: str, tier: str) -> int:
        try:
            self.rollup(source_id, bucket, granularity, tier)
            return 1
        except AggregationError as e:
            # previous row stays; the next rollup retries
            logger.error("%s", e)
            return 0

    # ============== Retention ==============

    def cleanup_old_data(self, source: Source, now: datetime = None) -> Dict[str, int]:
        """Drop raw rows past retention and hourly rows past twice retention."""
        retention = source.retention_days if source.retention_days and source.retention_days > 0 else 30
        now = now or now_local()
        cutoff = now - timedelta(days=retention)
        hourly_cutoff = now - timedelta(days=retention * 2)

        plan = [
            (FactAccessLog, FactAccessLog.timestamp, cutoff),
            (AccessLog, AccessLog.timestamp, cutoff),
            (AggHourly, AggHourly.hour, hourly_cutoff),
            (LegacyHourlyStats, LegacyHourlyStats.hour, hourly_cutoff),
        ]
        removed = {}
        db = self.session_factory()
        try:
            for model, column, before in plan:
                if not table_exists(db, model.__tablename__):
                    continue
                result = db.execute(delete(model).where(model.source_id == source.id, column < before))
                removed[model.__tablename__] = result.rowcount or 0
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise AggregationError(f"retention sweep failed for source {source.id}: {e}") from e
        finally:
            db.close()

        if any(removed.values()):
            logger.info("Retention sweep for source %d removed %s", source.id, removed)
        return removed
