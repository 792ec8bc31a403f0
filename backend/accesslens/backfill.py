import logging
import threading

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from accesslens.config import settings
from accesslens.database import SessionLocal
from accesslens.dimensions import DimensionStore
from accesslens.errors import EnrichmentError
from accesslens.ingestion.useragent import UserAgentParser
from accesslens.models import DimIP, DimUserAgent
from accesslens.schemas import BackfillResult
from accesslens.utils.geoip import GeoIPLocator

logger = logging.getLogger(__name__)


class BackfillJob:
    """Fills in geo and user-agent attributes on dimension rows collected without them."""

    def __init__(self, session_factory: sessionmaker = None, geo=None, ua_parser=None,
                 dimensions: DimensionStore = None, batch_size: int = 500):
        self.session_factory = session_factory or SessionLocal
        if geo is None and settings.GEO_LOOKUP_ENABLED:
            geo = GeoIPLocator()
        self.geo = geo
        self.ua_parser = ua_parser or UserAgentParser()
        self.dimensions = dimensions or DimensionStore()
        self.batch_size = batch_size

    def run(self, limit: int = None, cancel: threading.Event = None) -> BackfillResult:
        cancel = cancel or threading.Event()
        result = BackfillResult()
        self._backfill_ips(result, limit, cancel)
        self._backfill_user_agents(result, limit, cancel)
        logger.info("Backfill done: %d addresses, %d user agents, %d errors",
                    result.ips_updated, result.user_agents_updated, result.errors)
        return result

    def _backfill_ips(self, result: BackfillResult, limit, cancel):
        if self.geo is None:
            logger.info("Geo lookups are disabled, address backfill skipped")
            result.details["ip_candidates"] = 0
            return
        db = self.session_factory()
        candidates = 0
        try:
            query = db.query(DimIP.id, DimIP.ip_address).filter(
                or_(DimIP.country == "", DimIP.country.is_(None))
            ).order_by(DimIP.id)
            if limit:
                query = query.limit(limit)
            pending = query.all()
            candidates = len(pending)

            for i, (ip_id, ip) in enumerate(pending, 1):
                if cancel.is_set():
                    break
                try:
                    geo = self.geo.lookup(ip)
                except EnrichmentError as e:
                    logger.warning("%s", e)
                    result.errors += 1
                    continue
                if not geo.country:
                    continue
                self.dimensions.update_ip_geo(db, ip_id, geo)
                result.ips_updated += 1
                if i % self.batch_size == 0:
                    db.commit()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Geo backfill failed: %s", e)
            result.errors += 1
        finally:
            db.close()
        result.details["ip_candidates"] = candidates

    def _backfill_user_agents(self, result: BackfillResult, limit, cancel):
        db = self.session_factory()
        candidates = 0
        try:
            query = db.query(DimUserAgent.id, DimUserAgent.user_agent).filter(
                or_(DimUserAgent.browser == "", DimUserAgent.browser.is_(None),
                    DimUserAgent.browser == "Unknown")
            ).order_by(DimUserAgent.id)
            if limit:
                query = query.limit(limit)
            pending = query.all()
            candidates = len(pending)

            for i, (ua_id, user_agent) in enumerate(pending, 1):
                if cancel.is_set():
                    break
                info = self.ua_parser.parse(user_agent or "")
                if info.browser == "Unknown" and info.os == "Unknown" and not info.is_bot:
                    continue
                self.dimensions.update_user_agent(db, ua_id, info)
                result.user_agents_updated += 1
                if i % self.batch_size == 0:
                    db.commit()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("User agent backfill failed: %s", e)
            result.errors += 1
        finally:
            db.close()
        result.details["ua_candidates"] = candidates
