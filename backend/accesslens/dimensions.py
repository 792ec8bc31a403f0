"""
Get-or-create resolution of dimension surrogate keys.

Lookups go cache -> unique-key read -> insert-ignore -> re-read. Ids
resolved inside a transaction are published to the shared cache only
after that transaction commits, so a rolled-back batch never leaves
dangling ids behind.
"""
import logging
import threading
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from accesslens.config import settings
from accesslens.database import insert_ignore
from accesslens.errors import DimensionConflictRetry
from accesslens.ingestion.parser import (
    classify_referer, extract_referer_domain, hash_key, normalize_url,
)
from accesslens.models import DimIP, DimReferer, DimURL, DimUserAgent
from accesslens.schemas import GeoInfo, UAInfo

logger = logging.getLogger(__name__)

# dimension name -> (model, business key column)
DIMENSIONS = {
    "ip": (DimIP, "ip_address"),
    "url": (DimURL, "url_hash"),
    "referer": (DimReferer, "referer_hash"),
    "ua": (DimUserAgent, "ua_hash"),
}


class ShardedCache:
    """Concurrent map split across independently locked shards."""

    def __init__(self, shards: int = 16):
        self._shards: List[Dict] = [{} for _ in range(max(shards, 1))]
        self._locks = [threading.Lock() for _ in self._shards]

    def _index(self, key: Hashable) -> int:
        return hash(key) % len(self._shards)

    def get(self, key: Hashable):
        i = self._index(key)
        with self._locks[i]:
            return self._shards[i].get(key)

    def put(self, key: Hashable, value):
        """Insert unless present; returns the value that ends up stored."""
        i = self._index(key)
        with self._locks[i]:
            return self._shards[i].setdefault(key, value)

    def clear(self):
        for lock, shard in zip(self._locks, self._shards):
            with lock:
                shard.clear()

    def __len__(self):
        return sum(len(s) for s in self._shards)


class DimensionStore:
    """Process-wide dimension id cache shared by all collector workers."""

    def __init__(self, shards: int = None):
        self.cache = ShardedCache(shards or settings.DIM_CACHE_SHARDS)

    def session(self, db: Session) -> "DimensionResolver":
        return DimensionResolver(self, db)

    def clear(self):
        self.cache.clear()

    def cache_size(self) -> int:
        return len(self.cache)

    def stored_geo(self, db: Session, ips: Iterable[str], chunk: int = 500) -> Dict[str, GeoInfo]:
        """Geo attributes already stored for the given addresses."""
        ips = sorted({ip[:50] for ip in ips if ip})
        found: Dict[str, GeoInfo] = {}
        for start in range(0, len(ips), chunk):
            rows = db.execute(
                select(DimIP.ip_address, DimIP.country, DimIP.province, DimIP.city, DimIP.isp)
                .where(DimIP.ip_address.in_(ips[start:start + chunk]))
            )
            for ip, country, province, city, isp in rows:
                found[ip] = GeoInfo(country=country or "", province=province or "",
                                    city=city or "", isp=isp or "")
        return found

    # ---- enrichment updates, keyed by surrogate id ----

    def update_ip_geo(self, db: Session, ip_id: int, geo: GeoInfo) -> None:
        db.execute(
            update(DimIP).where(DimIP.id == ip_id).values(
                country=geo.country, province=geo.province, city=geo.city,
                isp=geo.isp, updated_at=datetime.now(),
            )
        )

    def update_user_agent(self, db: Session, ua_id: int, info: UAInfo) -> None:
        db.execute(
            update(DimUserAgent).where(DimUserAgent.id == ua_id).values(
                browser=info.browser, browser_version=info.browser_version,
                os=info.os, os_version=info.os_version,
                device_type=info.device_type, is_bot=info.is_bot,
            )
        )


class DimensionResolver:
    """Resolves ids within one transaction; call publish() after commit."""

    def __init__(self, store: DimensionStore, db: Session):
        self.store = store
        self.db = db
        self._pending: Dict[tuple, int] = {}

    def ip_id(self, ip: str, geo: Optional[GeoInfo] = None, is_bot: bool = False) -> int:
        if not ip:
            return 0
        geo = geo or GeoInfo()
        return self._get_or_create("ip", ip[:50], {
            "country": geo.country[:50],
            "province": geo.province[:50],
            "city": geo.city[:50],
            "isp": geo.isp[:100],
            "is_bot": is_bot,
            "created_at": datetime.now(),
            "updated_at": datetime.now(),
        })

    def url_id(self, uri: str, host: str) -> int:
        if not uri:
            return 0
        return self._get_or_create("url", hash_key(uri + host), {
            "url_path": uri[:2000],
            "url_normalized": normalize_url(uri)[:500],
            "host": host[:255],
            "created_at": datetime.now(),
        })

    def referer_id(self, referer: str) -> int:
        if not referer:
            return 0
        return self._get_or_create("referer", hash_key(referer), {
            "referer_url": referer[:2000],
            "referer_domain": extract_referer_domain(referer)[:255],
            "referer_type": classify_referer(referer),
            "created_at": datetime.now(),
        })

    def ua_id(self, user_agent: str, info: UAInfo) -> int:
        if not user_agent:
            return 0
        return self._get_or_create("ua", hash_key(user_agent), {
            "user_agent": user_agent[:500],
            "browser": info.browser[:50],
            "browser_version": info.browser_version[:20],
            "os": info.os[:50],
            "os_version": info.os_version[:20],
            "device_type": info.device_type,
            "is_bot": info.is_bot,
            "created_at": datetime.now(),
        })

    def publish(self) -> None:
        for key, value in self._pending.items():
            self.store.cache.put(key, value)
        self._pending.clear()

    def discard(self) -> None:
        self._pending.clear()

    def _get_or_create(self, dimension: str, business_key: str, attrs: Dict) -> int:
        cache_key = (dimension, business_key)
        cached = self.store.cache.get(cache_key)
        if cached is not None:
            return cached
        if cache_key in self._pending:
            return self._pending[cache_key]

        model, key_column = DIMENSIONS[dimension]
        row_id = self._read(model, key_column, business_key)
        if row_id is None:
            values = dict(attrs)
            values[key_column] = business_key
            result = self.db.execute(insert_ignore(self.db, model.__table__, values, [key_column]))
            row_id = self._read(model, key_column, business_key)
            if row_id is None:
                # lost the race and the winner is not visible yet
                logger.debug("%s conflict on %s (rowcount=%s), re-reading",
                             dimension, business_key[:64], result.rowcount)
                row_id = self._read(model, key_column, business_key)
                if row_id is None:
                    raise DimensionConflictRetry(dimension, business_key)

        self._pending[cache_key] = row_id
        return row_id

    def _read(self, model, key_column: str, business_key: str) -> Optional[int]:
        column = getattr(model, key_column)
        return self.db.execute(select(model.id).where(column == business_key)).scalar()
