import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from accesslens.config import settings
from accesslens.database import SessionLocal
from accesslens.models import DimIP, DimUserAgent
from accesslens.query.strategies import DAY, DEFAULT_TIERS, HOUR, QueryTier, Totals
from accesslens.schemas import (
    BrowserStats, CoreMetrics, DeviceStats, GeoStats, IPGeoItem, MetricSet, NameValue,
    OverviewTrendPoint, PageItem, RefererItem, TimeSeriesPoint, VisitorComparison,
)
from accesslens.utils.timeutil import floor_day, floor_hour, now_local, to_local_naive

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
ONE_HOUR = timedelta(hours=1)


def _share(items) -> List[NameValue]:
    total = sum(value for _, value in items)
    return [
        NameValue(name=name, value=value, percent=round(value * 100.0 / total, 2) if total else 0.0)
        for name, value in items
    ]


class QueryEngine:
    """
    Dashboard queries over whichever storage tier holds data.

    Tiers are tried in order and the first one reporting data for the
    window answers; a tier that errors is logged and skipped. Callers
    always get a value back, empty when no tier can answer.
    """

    def __init__(self, session_factory: sessionmaker = None, tiers: Sequence[QueryTier] = None,
                 now: Callable[[], datetime] = None, top_n: int = None):
        self.session_factory = session_factory or SessionLocal
        self.tiers = list(tiers or DEFAULT_TIERS)
        self.raw_tiers = [t for t in self.tiers if t.raw]
        self.aggregate_tiers = [t for t in self.tiers if not t.raw]
        self.now = now or now_local
        self.top_n = top_n or settings.TOP_N

    # ============== Tier selection ==============

    def _answer(self, tiers, source_id: int, start: datetime, end: datetime, fn, default,
                granularity: str = HOUR):
        """Return (value, tier name) from the first tier with data, else (default, "")."""
        db = self.session_factory()
        try:
            for tier in tiers:
                try:
                    if not tier.available(db) or not tier.has_data(db, source_id, start, end, granularity):
                        continue
                    return fn(tier, db), tier.name
                except SQLAlchemyError as e:
                    logger.warning("Tier %s failed for source %d: %s", tier.name, source_id, e)
                    db.rollback()
            return default, ""
        finally:
            db.close()

    def _window(self, start: Optional[datetime], end: Optional[datetime]):
        today = floor_day(self.now())
        start = to_local_naive(start) if start else today
        end = to_local_naive(end) if end else today + ONE_DAY
        return start, end

    # ============== Core metrics ==============

    def today_totals(self, source_id: int):
        """Aggregated completed hours plus the raw tail of the current hour."""
        now = self.now()
        day_start = floor_day(now)
        hour_start = floor_hour(now)
        day_end = day_start + ONE_DAY

        history, history_tier = Totals(), ""
        if hour_start > day_start:
            history, history_tier = self._answer(
                self.aggregate_tiers, source_id, day_start, hour_start,
                lambda t, db: t.totals(db, source_id, day_start, hour_start), Totals(),
            )
        if not history_tier:
            return self._answer(
                self.raw_tiers, source_id, day_start, day_end,
                lambda t, db: t.totals(db, source_id, day_start, day_end), Totals(),
            )

        tail, tail_tier = self._answer(
            self.raw_tiers, source_id, hour_start, day_end,
            lambda t, db: t.totals(db, source_id, hour_start, day_end), Totals(),
        )
        result = Totals()
        result.add(history)
        result.add(tail)
        uv, uv_tier = self._answer(
            self.raw_tiers, source_id, day_start, day_end,
            lambda t, db: t.distinct_visitors(db, source_id, day_start, day_end), 0,
        )
        result.uv = uv if uv_tier else max(history.uv, tail.uv)
        return result, "+".join(n for n in (history_tier, tail_tier) if n)

    def core_metrics(self, source_id: int) -> CoreMetrics:
        now = self.now()
        day_start = floor_day(now)
        yesterday_start = day_start - ONE_DAY

        today, tier = self.today_totals(source_id)
        yesterday, _ = self._answer(
            self.tiers, source_id, yesterday_start, day_start,
            lambda t, db: t.totals(db, source_id, yesterday_start, day_start), Totals(),
        )

        # yesterday over the same completed hours as today
        same_time = yesterday_start + timedelta(hours=now.hour)
        yesterday_now = Totals()
        if now.hour > 0:
            yesterday_now, _ = self._answer(
                self.tiers, source_id, yesterday_start, same_time,
                lambda t, db: t.totals(db, source_id, yesterday_start, same_time), Totals(),
            )

        # naive linear extrapolation of the day so far
        factor = 24.0 / max(now.hour, 1)
        predicted = MetricSet(
            pv=int(today.pv * factor),
            uv=int(today.uv * factor),
            ip_count=int(today.uv * factor),
            bandwidth=int(today.bandwidth * factor),
            avg_response_time=today.avg_response_time,
            error_rate=today.error_rate,
        )

        minute_start = now - timedelta(minutes=1)
        last_minute, _ = self._answer(
            self.raw_tiers, source_id, minute_start, now,
            lambda t, db: t.totals(db, source_id, minute_start, now), Totals(),
        )

        hours, _ = self._answer(
            self.tiers, source_id, day_start, day_start + ONE_DAY,
            lambda t, db: t.series(db, source_id, day_start, day_start + ONE_DAY, HOUR), {},
        )
        peak = max((p.requests for p in hours.values()), default=0)

        return CoreMetrics(
            today=today.to_metrics(),
            yesterday=yesterday.to_metrics(),
            yesterday_now=yesterday_now.to_metrics(),
            predicted_today=predicted,
            realtime_ops=round(last_minute.requests / 60.0, 2),
            peak_ops=round(peak / 3600.0, 2),
            tier=tier,
        )

    # ============== Trends ==============

    def overview_trend(self, source_id: int, mode: str = "hour", day: date = None) -> List[OverviewTrendPoint]:
        now = self.now()
        if mode == "day":
            end = floor_day(now) + ONE_DAY
            start = end - timedelta(days=30)
            points, _ = self._answer(
                self.tiers, source_id, start, end,
                lambda t, db: t.series(db, source_id, start, end, DAY), {}, granularity=DAY,
            )
            result = []
            bucket = start
            while bucket < end:
                p = points.get(bucket, Totals())
                result.append(OverviewTrendPoint(time=bucket.strftime("%Y-%m-%d"), pv=p.pv, uv=p.uv))
                bucket += ONE_DAY
            return result

        day = day or now.date()
        start = datetime.combine(day, datetime.min.time())
        end = start + ONE_DAY
        last_hour = now.hour if day == now.date() else 23
        points, _ = self._answer(
            self.tiers, source_id, start, end,
            lambda t, db: t.series(db, source_id, start, end, HOUR), {},
        )
        result = []
        for h in range(last_hour + 1):
            p = points.get(start + timedelta(hours=h), Totals())
            result.append(OverviewTrendPoint(time=f"{h:02d}:00", pv=p.pv, uv=p.uv))
        return result

    def time_series(self, source_id: int, start: datetime = None, end: datetime = None,
                    granularity: str = HOUR) -> List[TimeSeriesPoint]:
        start, end = self._window(start, end)
        step = ONE_HOUR if granularity == HOUR else ONE_DAY
        start = floor_hour(start) if granularity == HOUR else floor_day(start)
        points, _ = self._answer(
            self.tiers, source_id, start, end,
            lambda t, db: t.series(db, source_id, start, end, granularity), {}, granularity=granularity,
        )
        fmt = "%Y-%m-%d %H:00" if granularity == HOUR else "%Y-%m-%d"
        result = []
        bucket = start
        while bucket < end:
            p = points.get(bucket, Totals())
            result.append(TimeSeriesPoint(
                time=bucket.strftime(fmt), requests=p.requests, pv=p.pv, uv=p.uv,
                bandwidth=p.bandwidth, avg_response_time=p.avg_response_time, error_rate=p.error_rate,
            ))
            bucket += step
        return result

    # ============== Visitors ==============

    def new_vs_returning(self, source_id: int, start: datetime = None, end: datetime = None) -> VisitorComparison:
        start, end = self._window(start, end)

        def compare(tier, db):
            return tier.distinct_visitors(db, source_id, start, end), \
                tier.returning_visitors(db, source_id, start, end)

        (uv, returning), _ = self._answer(self.raw_tiers, source_id, start, end, compare, (0, 0))
        new = max(uv - returning, 0)
        return VisitorComparison(
            total_uv=uv,
            new_visitors=new,
            returning_visitors=returning,
            new_percent=round(new * 100.0 / uv, 2) if uv else 0.0,
            returning_percent=round(returning * 100.0 / uv, 2) if uv else 0.0,
        )

    def active_visitors(self, source_id: int, minutes: int = 5) -> int:
        now = self.now()
        start = now - timedelta(minutes=minutes)
        end = now + timedelta(seconds=1)
        count, _ = self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.distinct_visitors(db, source_id, start, end), 0,
        )
        return count

    # ============== Top N ==============

    def top_pages(self, source_id: int, start: datetime = None, end: datetime = None,
                  limit: int = None) -> List[PageItem]:
        start, end = self._window(start, end)
        rows, _ = self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.top_pages(db, source_id, start, end, limit or self.top_n), [],
        )
        return [PageItem(url=url, pv=pv, uv=uv) for url, pv, uv in rows]

    def entry_pages(self, source_id: int, start: datetime = None, end: datetime = None,
                    limit: int = None) -> List[PageItem]:
        start, end = self._window(start, end)
        rows, _ = self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.entry_pages(db, source_id, start, end, limit or self.top_n), [],
        )
        return [PageItem(url=url, pv=count, uv=count) for url, count in rows]

    def top_referers(self, source_id: int, start: datetime = None, end: datetime = None,
                     limit: int = None) -> List[RefererItem]:
        start, end = self._window(start, end)
        rows, _ = self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.top_referers(db, source_id, start, end, limit or self.top_n), [],
        )
        return [
            RefererItem(domain=domain, type=kind or "", visitors=visitors, requests=requests)
            for domain, kind, visitors, requests in rows
        ]

    def top_ips(self, source_id: int, start: datetime = None, end: datetime = None,
                limit: int = None) -> List[IPGeoItem]:
        start, end = self._window(start, end)
        rows, _ = self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.top_ips(db, source_id, start, end, limit or self.top_n), [],
        )
        return [
            IPGeoItem(ip=ip, requests=requests, country=country or "", province=province or "",
                      city=city or "", isp=isp or "")
            for ip, requests, country, province, city, isp in rows
        ]

    # ============== Distributions ==============

    def _distribution(self, source_id, start, end, column, limit):
        return self._answer(
            self.raw_tiers, source_id, start, end,
            lambda t, db: t.distribution(db, source_id, start, end, column, limit), [],
        )[0]

    def geo_distribution(self, source_id: int, start: datetime = None, end: datetime = None,
                         limit: int = 20) -> GeoStats:
        start, end = self._window(start, end)
        return GeoStats(
            countries=_share(self._distribution(source_id, start, end, DimIP.country, limit)),
            provinces=_share(self._distribution(source_id, start, end, DimIP.province, limit)),
            cities=_share(self._distribution(source_id, start, end, DimIP.city, limit)),
        )

    def browser_distribution(self, source_id: int, start: datetime = None, end: datetime = None,
                             limit: int = 10) -> BrowserStats:
        start, end = self._window(start, end)
        return BrowserStats(
            browsers=_share(self._distribution(source_id, start, end, DimUserAgent.browser, limit)),
            operating_systems=_share(self._distribution(source_id, start, end, DimUserAgent.os, limit)),
        )

    def device_distribution(self, source_id: int, start: datetime = None, end: datetime = None) -> DeviceStats:
        start, end = self._window(start, end)
        return DeviceStats(
            devices=_share(self._distribution(source_id, start, end, DimUserAgent.device_type, 10)),
        )
