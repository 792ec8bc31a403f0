"""
Storage tiers the QueryEngine can read from.

A tier answers queries from one generation of the schema. ``has_data``
reports row existence in a window, so an aggregated zero bucket counts as
data while a missing bucket does not.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.orm import Session, aliased

from accesslens.database import table_exists
from accesslens.ingestion.parser import extract_referer_domain, classify_referer, is_page_view, normalize_url
from accesslens.models import (
    AccessLog, AggDaily, AggHourly, DimIP, DimReferer, DimURL, DimUserAgent,
    FactAccessLog, LegacyDailyStats, LegacyHourlyStats,
)
from accesslens.schemas import MetricSet
from accesslens.utils.timeutil import floor_day, floor_hour

HOUR = "hour"
DAY = "day"


@dataclass
class Totals:
    requests: int = 0
    pv: int = 0
    uv: int = 0
    bandwidth: int = 0
    rt_sum: float = 0.0
    errors: int = 0

    def add(self, other: "Totals") -> None:
        """Sum additive counters; uv is not additive and is left to the caller."""
        self.requests += other.requests
        self.pv += other.pv
        self.bandwidth += other.bandwidth
        self.rt_sum += other.rt_sum
        self.errors += other.errors

    @property
    def avg_response_time(self) -> float:
        return round(self.rt_sum / self.requests, 4) if self.requests else 0.0

    @property
    def error_rate(self) -> float:
        return round(self.errors * 100.0 / self.requests, 2) if self.requests else 0.0

    def to_metrics(self) -> MetricSet:
        return MetricSet(
            pv=self.pv, uv=self.uv, ip_count=self.uv, bandwidth=self.bandwidth,
            avg_response_time=self.avg_response_time, error_rate=self.error_rate,
        )


class QueryTier:
    """One storage generation; subclasses answer what their tables can."""
    name = ""
    tables: Tuple[str, ...] = ()
    raw = False

    def available(self, db: Session) -> bool:
        return all(table_exists(db, t) for t in self.tables)

    def has_data(self, db: Session, source_id: int, start: datetime, end: datetime,
                 granularity: str = HOUR) -> bool:
        raise NotImplementedError

    def totals(self, db: Session, source_id: int, start: datetime, end: datetime) -> Totals:
        raise NotImplementedError

    def series(self, db: Session, source_id: int, start: datetime, end: datetime,
               granularity: str = HOUR) -> Dict[datetime, Totals]:
        raise NotImplementedError


def _bucket(ts: datetime, granularity: str) -> datetime:
    return floor_hour(ts) if granularity == HOUR else floor_day(ts)


def _ranked(counter: Counter, limit: int) -> List[Tuple[str, int]]:
    # Counter.most_common keeps first-seen order among equal counts
    return counter.most_common(limit)


# ============== Aggregate tiers ==============

class DimensionalAggregateTier(QueryTier):
    name = "agg"
    tables = ("agg_hourly", "agg_daily")

    def has_data(self, db, source_id, start, end, granularity=HOUR):
        if granularity == DAY:
            stmt = select(AggDaily.id).where(
                AggDaily.source_id == source_id,
                AggDaily.date >= start.date(), AggDaily.date < _day_end(end),
            )
        else:
            stmt = select(AggHourly.id).where(
                AggHourly.source_id == source_id,
                AggHourly.hour >= start, AggHourly.hour < end,
            )
        return db.execute(stmt.limit(1)).first() is not None

    def _hour_rows(self, db, source_id, start, end):
        return db.query(AggHourly).filter(
            AggHourly.source_id == source_id, AggHourly.hour >= start, AggHourly.hour < end,
        ).order_by(AggHourly.hour).all()

    def _day_rows(self, db, source_id, start, end):
        return db.query(AggDaily).filter(
            AggDaily.source_id == source_id,
            AggDaily.date >= start.date(), AggDaily.date < _day_end(end),
        ).order_by(AggDaily.date).all()

    @staticmethod
    def _row_totals(row) -> Totals:
        total = row.total_requests or 0
        return Totals(
            requests=total,
            pv=row.pv_count or 0,
            uv=row.unique_ips or 0,
            bandwidth=row.total_bandwidth or 0,
            rt_sum=(row.avg_response_time or 0.0) * total,
            errors=(row.status_4xx or 0) + (row.status_5xx or 0),
        )

    def totals(self, db, source_id, start, end):
        result = Totals()
        hours = self._hour_rows(db, source_id, start, end)
        for row in hours:
            result.add(self._row_totals(row))
        days = self._day_rows(db, source_id, start, end) if _whole_days(start, end) else []
        if days:
            result.uv = sum(row.unique_ips or 0 for row in days)
        else:
            # distinct visitors do not add up across hours; the busiest hour is a lower bound
            result.uv = max((row.unique_ips or 0 for row in hours), default=0)
        return result

    def series(self, db, source_id, start, end, granularity=HOUR):
        rows = self._hour_rows(db, source_id, start, end) if granularity == HOUR \
            else self._day_rows(db, source_id, start, end)
        points = {}
        for row in rows:
            key = row.hour if granularity == HOUR else datetime.combine(row.date, datetime.min.time())
            points[key] = self._row_totals(row)
        return points


class LegacyAggregateTier(QueryTier):
    name = "legacy_agg"
    tables = ("legacy_hourly_stats", "legacy_daily_stats")

    def has_data(self, db, source_id, start, end, granularity=HOUR):
        if granularity == DAY:
            stmt = select(LegacyDailyStats.id).where(
                LegacyDailyStats.source_id == source_id,
                LegacyDailyStats.date >= start.date(), LegacyDailyStats.date < _day_end(end),
            )
        else:
            stmt = select(LegacyHourlyStats.id).where(
                LegacyHourlyStats.source_id == source_id,
                LegacyHourlyStats.hour >= start, LegacyHourlyStats.hour < end,
            )
        return db.execute(stmt.limit(1)).first() is not None

    @staticmethod
    def _row_totals(row) -> Totals:
        total = row.total_requests or 0
        # the legacy schema has no page-view count; every request is a view
        return Totals(
            requests=total,
            pv=total,
            uv=row.unique_visitors or 0,
            bandwidth=row.total_bandwidth or 0,
            rt_sum=(row.avg_response_time or 0.0) * total,
            errors=(row.status_4xx or 0) + (row.status_5xx or 0),
        )

    def _hour_rows(self, db, source_id, start, end):
        return db.query(LegacyHourlyStats).filter(
            LegacyHourlyStats.source_id == source_id,
            LegacyHourlyStats.hour >= start, LegacyHourlyStats.hour < end,
        ).order_by(LegacyHourlyStats.hour).all()

    def _day_rows(self, db, source_id, start, end):
        return db.query(LegacyDailyStats).filter(
            LegacyDailyStats.source_id == source_id,
            LegacyDailyStats.date >= start.date(), LegacyDailyStats.date < _day_end(end),
        ).order_by(LegacyDailyStats.date).all()

    def totals(self, db, source_id, start, end):
        result = Totals()
        hours = self._hour_rows(db, source_id, start, end)
        for row in hours:
            result.add(self._row_totals(row))
        days = self._day_rows(db, source_id, start, end) if _whole_days(start, end) else []
        if days:
            result.uv = sum(row.unique_visitors or 0 for row in days)
        else:
            result.uv = max((row.unique_visitors or 0 for row in hours), default=0)
        return result

    def series(self, db, source_id, start, end, granularity=HOUR):
        rows = self._hour_rows(db, source_id, start, end) if granularity == HOUR \
            else self._day_rows(db, source_id, start, end)
        points = {}
        for row in rows:
            key = row.hour if granularity == HOUR else datetime.combine(row.date, datetime.min.time())
            points[key] = self._row_totals(row)
        return points


def _day_end(end: datetime):
    """Exclusive date bound for a datetime end bound."""
    if end == floor_day(end):
        return end.date()
    return end.date() + timedelta(days=1)


def _whole_days(start: datetime, end: datetime) -> bool:
    return start == floor_day(start) and end == floor_day(end)


# ============== Raw tiers ==============

class RawTier(QueryTier):
    """Row-level tiers; the only ones that can answer visitor-level questions."""
    raw = True

    def _rows(self, db, source_id, start, end):
        """Yield (timestamp, identity, is_pv, status, bytes, request_time) in log order."""
        raise NotImplementedError

    def totals(self, db, source_id, start, end):
        result = Totals()
        identities = set()
        for ts, identity, pv, status, size, rt in self._rows(db, source_id, start, end):
            _accumulate(result, pv, status, size, rt)
            if identity:
                identities.add(identity)
        result.uv = len(identities)
        return result

    def series(self, db, source_id, start, end, granularity=HOUR):
        points: Dict[datetime, Totals] = {}
        identities: Dict[datetime, set] = {}
        for ts, identity, pv, status, size, rt in self._rows(db, source_id, start, end):
            key = _bucket(ts, granularity)
            point = points.setdefault(key, Totals())
            _accumulate(point, pv, status, size, rt)
            if identity:
                identities.setdefault(key, set()).add(identity)
        for key, point in points.items():
            point.uv = len(identities.get(key, ()))
        return points

    def entry_pages(self, db, source_id, start, end, limit) -> List[Tuple[str, int]]:
        seen = set()
        entries = Counter()
        for identity, url in self._page_views(db, source_id, start, end):
            if identity in seen:
                continue
            seen.add(identity)
            entries[url] += 1
        return _ranked(entries, limit)

    def top_pages(self, db, source_id, start, end, limit) -> List[Tuple[str, int, int]]:
        views = Counter()
        visitors: Dict[str, set] = {}
        for identity, url in self._page_views(db, source_id, start, end):
            views[url] += 1
            visitors.setdefault(url, set()).add(identity)
        return [(url, pv, len(visitors[url])) for url, pv in _ranked(views, limit)]


def _accumulate(point: Totals, pv: bool, status, size, rt) -> None:
    point.requests += 1
    if pv:
        point.pv += 1
    point.bandwidth += size or 0
    point.rt_sum += rt or 0.0
    if (status or 0) >= 400:
        point.errors += 1


class FactTier(RawTier):
    name = "fact"
    tables = ("fact_access_logs", "dim_ip")

    def _window(self, source_id, start, end):
        return and_(
            FactAccessLog.source_id == source_id,
            FactAccessLog.timestamp >= start,
            FactAccessLog.timestamp < end,
        )

    def has_data(self, db, source_id, start, end, granularity=HOUR):
        stmt = select(FactAccessLog.id).where(self._window(source_id, start, end)).limit(1)
        return db.execute(stmt).first() is not None

    def _rows(self, db, source_id, start, end):
        stmt = (
            select(FactAccessLog.timestamp, FactAccessLog.ip_id, FactAccessLog.is_pv,
                   FactAccessLog.status, FactAccessLog.body_bytes_sent, FactAccessLog.request_time)
            .where(self._window(source_id, start, end))
            .order_by(FactAccessLog.timestamp, FactAccessLog.id)
        )
        for row in db.execute(stmt):
            yield row[0], row[1], bool(row[2]), row[3], row[4], row[5]

    def _page_views(self, db, source_id, start, end):
        stmt = (
            select(FactAccessLog.ip_id, DimURL.url_normalized)
            .join(DimURL, DimURL.id == FactAccessLog.url_id)
            .where(self._window(source_id, start, end), FactAccessLog.is_pv.is_(True))
            .order_by(FactAccessLog.timestamp, FactAccessLog.id)
        )
        for ip_id, url in db.execute(stmt):
            yield ip_id, url or "/"

    def distinct_visitors(self, db, source_id, start, end) -> int:
        stmt = select(func.count(distinct(FactAccessLog.ip_id))).where(self._window(source_id, start, end))
        return db.execute(stmt).scalar() or 0

    def returning_visitors(self, db, source_id, start, end) -> int:
        earlier = aliased(FactAccessLog)
        seen_before = select(earlier.ip_id).where(earlier.source_id == source_id, earlier.timestamp < start)
        stmt = select(func.count(distinct(FactAccessLog.ip_id))).where(
            self._window(source_id, start, end), FactAccessLog.ip_id.in_(seen_before),
        )
        return db.execute(stmt).scalar() or 0

    def top_referers(self, db, source_id, start, end, limit) -> List[Tuple[str, str, int, int]]:
        visitors = func.count(distinct(FactAccessLog.ip_id))
        stmt = (
            select(DimReferer.referer_domain, func.min(DimReferer.referer_type),
                   visitors, func.count(FactAccessLog.id))
            .join(DimReferer, DimReferer.id == FactAccessLog.referer_id)
            .where(self._window(source_id, start, end), DimReferer.referer_domain != "")
            .group_by(DimReferer.referer_domain)
            .order_by(visitors.desc(), func.min(FactAccessLog.id))
            .limit(limit)
        )
        return [tuple(row) for row in db.execute(stmt)]

    def top_ips(self, db, source_id, start, end, limit) -> List[Tuple]:
        requests = func.count(FactAccessLog.id)
        stmt = (
            select(DimIP.ip_address, requests, DimIP.country, DimIP.province, DimIP.city, DimIP.isp)
            .join(DimIP, DimIP.id == FactAccessLog.ip_id)
            .where(self._window(source_id, start, end))
            .group_by(DimIP.id, DimIP.ip_address, DimIP.country, DimIP.province, DimIP.city, DimIP.isp)
            .order_by(requests.desc(), func.min(FactAccessLog.id))
            .limit(limit)
        )
        return [tuple(row) for row in db.execute(stmt)]

    def distribution(self, db, source_id, start, end, column, limit) -> List[Tuple[str, int]]:
        """Request counts grouped by a dimension attribute (e.g. DimIP.country)."""
        model = column.class_
        key = {DimIP: FactAccessLog.ip_id, DimUserAgent: FactAccessLog.ua_id,
               DimURL: FactAccessLog.url_id, DimReferer: FactAccessLog.referer_id}[model]
        count = func.count(FactAccessLog.id)
        stmt = (
            select(column, count)
            .join(model, model.id == key)
            .where(self._window(source_id, start, end), column != "")
            .group_by(column)
            .order_by(count.desc(), func.min(FactAccessLog.id))
            .limit(limit)
        )
        return [(name, value) for name, value in db.execute(stmt)]


class LegacyRawTier(RawTier):
    name = "legacy"
    tables = ("access_logs",)

    COLUMNS = {
        "country": "country", "province": "province", "city": "city",
        "browser": "browser", "os": "os", "device_type": "device_type",
    }

    def _window(self, source_id, start, end):
        return and_(
            AccessLog.source_id == source_id,
            AccessLog.timestamp >= start,
            AccessLog.timestamp < end,
        )

    def has_data(self, db, source_id, start, end, granularity=HOUR):
        stmt = select(AccessLog.id).where(self._window(source_id, start, end)).limit(1)
        return db.execute(stmt).first() is not None

    def _rows(self, db, source_id, start, end):
        stmt = (
            select(AccessLog.timestamp, AccessLog.remote_addr, AccessLog.status,
                   AccessLog.body_bytes_sent, AccessLog.request_time)
            .where(self._window(source_id, start, end))
            .order_by(AccessLog.timestamp, AccessLog.id)
        )
        # legacy rows count every request as a view, matching the legacy rollups
        for ts, addr, status, size, rt in db.execute(stmt):
            yield ts, addr, True, status, size, rt

    def _page_views(self, db, source_id, start, end):
        stmt = (
            select(AccessLog.remote_addr, AccessLog.uri, AccessLog.status)
            .where(self._window(source_id, start, end))
            .order_by(AccessLog.timestamp, AccessLog.id)
        )
        for addr, uri, status in db.execute(stmt):
            if is_page_view(uri or "", status or 0):
                yield addr, normalize_url(uri) or "/"

    def distinct_visitors(self, db, source_id, start, end) -> int:
        stmt = select(func.count(distinct(AccessLog.remote_addr))).where(self._window(source_id, start, end))
        return db.execute(stmt).scalar() or 0

    def returning_visitors(self, db, source_id, start, end) -> int:
        earlier = aliased(AccessLog)
        seen_before = select(earlier.remote_addr).where(earlier.source_id == source_id, earlier.timestamp < start)
        stmt = select(func.count(distinct(AccessLog.remote_addr))).where(
            self._window(source_id, start, end), AccessLog.remote_addr.in_(seen_before),
        )
        return db.execute(stmt).scalar() or 0

    def top_referers(self, db, source_id, start, end, limit):
        visitors: Dict[str, set] = {}
        requests = Counter()
        kinds = {}
        stmt = (
            select(AccessLog.remote_addr, AccessLog.http_referer)
            .where(self._window(source_id, start, end), AccessLog.http_referer != "")
            .order_by(AccessLog.timestamp, AccessLog.id)
        )
        for addr, referer in db.execute(stmt):
            domain = extract_referer_domain(referer)
            if not domain:
                continue
            visitors.setdefault(domain, set()).add(addr)
            requests[domain] += 1
            kinds.setdefault(domain, classify_referer(referer))
        ranked = _ranked(Counter({d: len(v) for d, v in visitors.items()}), limit)
        return [(domain, kinds[domain], count, requests[domain]) for domain, count in ranked]

    def top_ips(self, db, source_id, start, end, limit):
        requests = func.count(AccessLog.id)
        stmt = (
            select(AccessLog.remote_addr, requests, func.max(AccessLog.country), func.max(AccessLog.province),
                   func.max(AccessLog.city), func.max(AccessLog.isp))
            .where(self._window(source_id, start, end))
            .group_by(AccessLog.remote_addr)
            .order_by(requests.desc(), func.min(AccessLog.id))
            .limit(limit)
        )
        return [tuple(row) for row in db.execute(stmt)]

    def distribution(self, db, source_id, start, end, column, limit):
        legacy_column = getattr(AccessLog, self.COLUMNS[column.key])
        count = func.count(AccessLog.id)
        stmt = (
            select(legacy_column, count)
            .where(self._window(source_id, start, end), legacy_column != "")
            .group_by(legacy_column)
            .order_by(count.desc(), func.min(AccessLog.id))
            .limit(limit)
        )
        return [(name, value) for name, value in db.execute(stmt)]


DEFAULT_TIERS = (DimensionalAggregateTier(), LegacyAggregateTier(), FactTier(), LegacyRawTier())