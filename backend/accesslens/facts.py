import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accesslens.config import settings
from accesslens.database import table_exists
from accesslens.errors import BatchWriteError
from accesslens.ingestion.parser import hash_key, is_page_view
from accesslens.models import AccessLog, DimIP, DimReferer, DimURL, DimUserAgent, FactAccessLog
from accesslens.schemas import AccessLogFilter, AccessLogPage, AccessLogView, GeoInfo, ParsedLogEntry, UAInfo
from accesslens.utils.timeutil import to_local_naive

logger = logging.getLogger(__name__)

SESSION_WINDOW_MINUTES = 30


def session_key(ip: str, user_agent: str, timestamp: datetime) -> str:
    """Visitor session id: same address and agent within a 30 minute slot."""
    slot = timestamp.replace(minute=timestamp.minute - timestamp.minute % SESSION_WINDOW_MINUTES,
                             second=0, microsecond=0)
    return hash_key(f"{ip}|{user_agent}|{slot.isoformat()}")[:32]


class FactStore:
    """Builds and batch-inserts fact rows, and the legacy flat rows when enabled."""

    def __init__(self, write_legacy: Optional[bool] = None):
        self.write_legacy = settings.WRITE_LEGACY_ROWS if write_legacy is None else write_legacy

    def build_fact(self, source_id: int, entry: ParsedLogEntry, ip_id: int, url_id: int,
                   referer_id: int, ua_id: int, with_session: bool = False) -> Dict:
        timestamp = to_local_naive(entry.timestamp)
        return {
            "source_id": source_id,
            "timestamp": timestamp,
            "ip_id": ip_id,
            "url_id": url_id,
            "referer_id": referer_id,
            "ua_id": ua_id,
            "method": entry.method[:20],
            "protocol": entry.protocol[:50],
            "status": entry.status,
            "body_bytes_sent": entry.body_bytes_sent,
            "request_time": entry.request_time,
            "upstream_time": entry.upstream_time,
            "ingress_name": entry.ingress_name[:100],
            "service_name": entry.service_name[:100],
            "pod_name": entry.pod_name[:100],
            "is_pv": is_page_view(entry.uri, entry.status),
            "session_id": session_key(entry.remote_addr, entry.http_user_agent, timestamp) if with_session else "",
            "created_at": datetime.now(),
        }

    def build_legacy(self, source_id: int, entry: ParsedLogEntry, geo: GeoInfo, ua: UAInfo) -> Dict:
        return {
            "source_id": source_id,
            "timestamp": to_local_naive(entry.timestamp),
            "remote_addr": entry.remote_addr[:50],
            "remote_user": entry.remote_user[:100],
            "request": entry.request[:2000],
            "method": entry.method[:20],
            "uri": entry.uri[:1000],
            "protocol": entry.protocol[:50],
            "status": entry.status,
            "body_bytes_sent": entry.body_bytes_sent,
            "http_referer": entry.http_referer[:1000],
            "http_user_agent": entry.http_user_agent[:500],
            "request_time": entry.request_time,
            "upstream_time": entry.upstream_time,
            "host": entry.host[:255],
            "country": geo.country,
            "province": geo.province,
            "city": geo.city,
            "isp": geo.isp,
            "browser": ua.browser,
            "browser_version": ua.browser_version,
            "os": ua.os,
            "os_version": ua.os_version,
            "device_type": ua.device_type,
            "ingress_name": entry.ingress_name[:100],
            "service_name": entry.service_name[:100],
            "created_at": datetime.now(),
        }

    def write_batch(self, db: Session, facts: List[Dict], legacy: List[Dict] = None) -> int:
        """Insert one batch inside the caller's transaction."""
        try:
            if facts:
                db.execute(insert(FactAccessLog), facts)
            if legacy:
                db.execute(insert(AccessLog), legacy)
        except SQLAlchemyError as e:
            raise BatchWriteError(f"failed to write {len(facts)} fact rows: {e}") from e
        return len(facts)


# ============== Listing ==============

def list_access_logs(db: Session, source_id: int, flt: AccessLogFilter = None,
                     page: int = 1, page_size: int = 50) -> AccessLogPage:
    """Paginated raw rows, newest first; legacy rows when no fact rows match."""
    flt = flt or AccessLogFilter()
    page = max(page, 1)
    page_size = min(max(page_size, 1), 1000)

    if table_exists(db, FactAccessLog.__tablename__):
        result = _list_facts(db, source_id, flt, page, page_size)
        if result.total > 0 or not table_exists(db, AccessLog.__tablename__):
            return result
    if table_exists(db, AccessLog.__tablename__):
        return _list_legacy(db, source_id, flt, page, page_size)
    return AccessLogPage(total=0, page=page, page_size=page_size, items=[])


def _time_bounds(flt: AccessLogFilter):
    start = to_local_naive(flt.start_time) if flt.start_time else None
    end = to_local_naive(flt.end_time) if flt.end_time else None
    return start, end


def _list_facts(db: Session, source_id: int, flt: AccessLogFilter, page: int, page_size: int) -> AccessLogPage:
    query = (
        db.query(FactAccessLog, DimIP, DimURL, DimReferer, DimUserAgent)
        .outerjoin(DimIP, DimIP.id == FactAccessLog.ip_id)
        .outerjoin(DimURL, DimURL.id == FactAccessLog.url_id)
        .outerjoin(DimReferer, DimReferer.id == FactAccessLog.referer_id)
        .outerjoin(DimUserAgent, DimUserAgent.id == FactAccessLog.ua_id)
        .filter(FactAccessLog.source_id == source_id)
    )
    start, end = _time_bounds(flt)
    if start:
        query = query.filter(FactAccessLog.timestamp >= start)
    if end:
        query = query.filter(FactAccessLog.timestamp < end)
    if flt.status is not None:
        query = query.filter(FactAccessLog.status == flt.status)
    if flt.method:
        query = query.filter(FactAccessLog.method == flt.method)
    if flt.remote_addr:
        query = query.filter(DimIP.ip_address.like(f"%{flt.remote_addr}%"))
    if flt.uri:
        query = query.filter(DimURL.url_path.like(f"%{flt.uri}%"))
    if flt.host:
        query = query.filter(DimURL.host.like(f"%{flt.host}%"))

    total = query.count()
    rows = (
        query.order_by(FactAccessLog.timestamp.desc(), FactAccessLog.id.desc())
        .offset((page - 1) * page_size).limit(page_size).all()
    )

    items = []
    for fact, ip, url, referer, ua in rows:
        items.append(AccessLogView(
            id=fact.id,
            source_id=fact.source_id,
            timestamp=fact.timestamp,
            remote_addr=ip.ip_address if ip else "",
            method=fact.method or "",
            uri=url.url_path if url else "",
            protocol=fact.protocol or "",
            status=fact.status or 0,
            body_bytes_sent=fact.body_bytes_sent or 0,
            http_referer=referer.referer_url if referer else "",
            http_user_agent=ua.user_agent if ua else "",
            request_time=fact.request_time or 0.0,
            host=url.host if url else "",
            country=ip.country if ip else "",
            province=ip.province if ip else "",
            city=ip.city if ip else "",
            browser=ua.browser if ua else "",
            os=ua.os if ua else "",
            device_type=ua.device_type if ua else "",
        ))
    return AccessLogPage(total=total, page=page, page_size=page_size, items=items)


def _list_legacy(db: Session, source_id: int, flt: AccessLogFilter, page: int, page_size: int) -> AccessLogPage:
    query = db.query(AccessLog).filter(AccessLog.source_id == source_id)
    start, end = _time_bounds(flt)
    if start:
        query = query.filter(AccessLog.timestamp >= start)
    if end:
        query = query.filter(AccessLog.timestamp < end)
    if flt.status is not None:
        query = query.filter(AccessLog.status == flt.status)
    if flt.method:
        query = query.filter(AccessLog.method == flt.method)
    if flt.remote_addr:
        query = query.filter(AccessLog.remote_addr.like(f"%{flt.remote_addr}%"))
    if flt.uri:
        query = query.filter(AccessLog.uri.like(f"%{flt.uri}%"))
    if flt.host:
        query = query.filter(AccessLog.host.like(f"%{flt.host}%"))

    total = query.count()
    rows = (
        query.order_by(AccessLog.timestamp.desc(), AccessLog.id.desc())
        .offset((page - 1) * page_size).limit(page_size).all()
    )
    items = [
        AccessLogView(
            id=row.id, source_id=row.source_id, timestamp=row.timestamp,
            remote_addr=row.remote_addr or "", method=row.method or "", uri=row.uri or "",
            protocol=row.protocol or "", status=row.status or 0,
            body_bytes_sent=row.body_bytes_sent or 0, http_referer=row.http_referer or "",
            http_user_agent=row.http_user_agent or "", request_time=row.request_time or 0.0,
            host=row.host or "", country=row.country or "", province=row.province or "",
            city=row.city or "", browser=row.browser or "", os=row.os or "",
            device_type=row.device_type or "",
        )
        for row in rows
    ]
    return AccessLogPage(total=total, page=page, page_size=page_size, items=items)
