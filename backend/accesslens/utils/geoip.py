import logging
import threading
import time
from functools import lru_cache

import requests

from accesslens.config import settings
from accesslens.errors import EnrichmentError
from accesslens.ingestion.parser import is_private_ip
from accesslens.schemas import GeoInfo

logger = logging.getLogger(__name__)

INTRANET = "Intranet"


class GeoIPLocator:
    """
    IP geolocation through the ip-api.com JSON endpoint.

    Private, loopback and link-local addresses are answered locally.
    Results, including "unknown" answers, are kept in an LRU cache;
    transport failures are not cached and raise EnrichmentError.
    """

    def __init__(self, api_url: str = None, timeout: float = None,
                 rate_limit: float = None, cache_size: int = None,
                 session: requests.Session = None):
        self.api_url = api_url or settings.GEO_API_URL
        self.timeout = timeout if timeout is not None else settings.GEO_TIMEOUT
        rate = rate_limit if rate_limit is not None else settings.GEO_RATE_LIMIT_PER_SEC
        self._min_interval = 1.0 / rate if rate > 0 else 0.0
        self._last_request = 0.0
        self._rate_lock = threading.Lock()
        self.http = session or requests.Session()
        self._cached = lru_cache(maxsize=cache_size or settings.GEO_CACHE_SIZE)(self._locate)

    def lookup(self, ip: str) -> GeoInfo:
        if not ip:
            return GeoInfo()
        if is_private_ip(ip):
            return GeoInfo(country=INTRANET, isp=INTRANET)
        return self._cached(ip).model_copy()

    def clear_cache(self):
        self._cached.cache_clear()

    def cache_size(self) -> int:
        return self._cached.cache_info().currsize

    def _throttle(self):
        if not self._min_interval:
            return
        with self._rate_lock:
            wait = self._last_request + self._min_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _locate(self, ip: str) -> GeoInfo:
        self._throttle()
        try:
            response = self.http.get(self.api_url.format(ip=ip), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise EnrichmentError(f"geo lookup failed for {ip}: {e}")

        if data.get("status") != "success":
            logger.debug("Geo lookup for %s returned %s", ip, data.get("message"))
            return GeoInfo()

        return GeoInfo(
            country=data.get("country") or "",
            province=data.get("regionName") or "",
            city=data.get("city") or "",
            isp=data.get("isp") or "",
        )
