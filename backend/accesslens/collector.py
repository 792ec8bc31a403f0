"""
Incremental log collection.

A cycle reads a source file from its stored watermark, parses and enriches
the complete lines, writes fact rows in batches and only then advances the
watermark. A crash or cancellation therefore re-reads at most the batches
written since the last watermark (at-least-once).
"""
import enum
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from accesslens.aggregator import Aggregator
from accesslens.config import settings
from accesslens.database import SessionLocal
from accesslens.dimensions import DimensionStore
from accesslens.errors import (
    AccessLensError, BatchWriteError, EnrichmentError, SourceNotFound, WatermarkIOError,
)
from accesslens.facts import FactStore
from accesslens.ingestion.parser import LineParser
from accesslens.ingestion.useragent import UserAgentParser
from accesslens.models import Source, SOURCE_TYPE_HOST
from accesslens.schemas import CollectResult, GeoInfo
from accesslens.sources import get_source, list_active_sources
from accesslens.utils.geoip import GeoIPLocator

logger = logging.getLogger(__name__)


class CollectorState(str, enum.Enum):
    IDLE = "idle"
    READING = "reading"
    PARSING = "parsing"
    ENRICHING = "enriching"
    WRITING = "writing"


class FileStat(NamedTuple):
    size: int
    inode: int


class LocalFileReader:
    """Reads host log files from the local filesystem."""

    def stat(self, path: str) -> FileStat:
        try:
            st = os.stat(path)
        except OSError as e:
            raise WatermarkIOError(f"cannot stat {path}: {e.strerror or e}", path)
        return FileStat(st.st_size, st.st_ino)

    def read(self, path: str, offset: int, length: int) -> bytes:
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                return f.read(length)
        except OSError as e:
            raise WatermarkIOError(f"cannot read {path}: {e.strerror or e}", path)


class _CycleOutcome(NamedTuple):
    written: int
    dropped: int
    timestamps: List[datetime]
    cancelled: bool


class Collector:
    def __init__(self, session_factory: sessionmaker = None, dimensions: DimensionStore = None,
                 geo=None, ua_parser=None, parser: LineParser = None, fact_store: FactStore = None,
                 aggregator: Aggregator = None, reader=None, batch_size: int = None,
                 max_read_bytes: int = None):
        self.session_factory = session_factory or SessionLocal
        self.dimensions = dimensions or DimensionStore()
        if geo is None and settings.GEO_LOOKUP_ENABLED:
            geo = GeoIPLocator()
        self.geo = geo
        self.ua_parser = ua_parser or UserAgentParser()
        self.parser = parser or LineParser()
        self.fact_store = fact_store or FactStore()
        self.aggregator = aggregator or Aggregator(self.session_factory)
        self.reader = reader or LocalFileReader()
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.max_read_bytes = max_read_bytes or settings.MAX_READ_BYTES

        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._states: Dict[int, CollectorState] = {}

    def state(self, source_id: int) -> CollectorState:
        return self._states.get(source_id, CollectorState.IDLE)

    def _lock_for(self, source_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(source_id, threading.Lock())

    # ============== Entry points ==============

    def collect(self, source_id: int, cancel: threading.Event = None) -> CollectResult:
        """Run one collection cycle; a cycle already in flight yields status 'busy'."""
        lock = self._lock_for(source_id)
        if not lock.acquire(blocking=False):
            logger.info("Source %d is already collecting, skipped", source_id)
            return CollectResult(source_id=source_id, status="busy")
        try:
            return self._collect(source_id, cancel or threading.Event())
        finally:
            self._states[source_id] = CollectorState.IDLE
            lock.release()

    def ingest_lines(self, source_id: int, lines: List[str]) -> CollectResult:
        """Process pushed log content; the file watermark is not touched."""
        source = self._load_source(source_id)
        with self._lock_for(source_id):
            try:
                outcome = self._process(source, lines, threading.Event())
                self._finish(source, outcome, watermark=None)
            except (AccessLensError, SQLAlchemyError) as e:
                logger.error("Source %d: ingest failed: %s", source_id, e)
                self._record_error(source_id, str(e))
                return CollectResult(source_id=source_id, status="error", lines_read=len(lines), error=str(e))
            finally:
                self._states[source_id] = CollectorState.IDLE

        return CollectResult(
            source_id=source_id, status="ok", lines_read=len(lines),
            entries_written=outcome.written, dropped=outcome.dropped,
        )

    # ============== Cycle ==============

    def _load_source(self, source_id: int) -> Source:
        db = self.session_factory()
        try:
            source = get_source(db, source_id)
            db.expunge(source)
            return source
        finally:
            db.close()

    def _collect(self, source_id: int, cancel: threading.Event) -> CollectResult:
        source = self._load_source(source_id)
        result = CollectResult(source_id=source_id, status="ok", offset=source.last_file_offset or 0)
        try:
            if source.type != SOURCE_TYPE_HOST:
                raise WatermarkIOError(f"no reader for {source.type} sources")

            self._states[source_id] = CollectorState.READING
            stat = self.reader.stat(source.log_path)
            offset = source.last_file_offset or 0
            stored_inode = source.last_file_inode or 0
            if stored_inode and stat.inode != stored_inode:
                logger.info("Source %d: %s rotated (inode %d -> %d)",
                            source_id, source.log_path, stored_inode, stat.inode)
                offset = 0
                result.rotated = True
            elif stat.size < offset:
                logger.info("Source %d: %s truncated (size %d < offset %d)",
                            source_id, source.log_path, stat.size, offset)
                offset = 0
                result.rotated = True

            if stat.size <= offset:
                self._finish(source, _CycleOutcome(0, 0, [], False), watermark=(stat.size, offset, stat.inode))
                result.offset = offset
                return result

            length = min(stat.size - offset, self.max_read_bytes)
            data = self.reader.read(source.log_path, offset, length)
            # only complete lines are consumed, a trailing fragment waits for the next cycle
            end = data.rfind(b"\n")
            if end < 0 and len(data) >= self.max_read_bytes:
                # one line fills the whole read span; skip it so the source cannot stall
                new_offset = offset + len(data)
                message = f"line longer than {self.max_read_bytes} bytes at offset {offset} skipped"
                logger.warning("Source %d: %s", source_id, message)
                self._finish(source, _CycleOutcome(0, 1, [], False), watermark=(stat.size, new_offset, stat.inode))
                self._record_error(source_id, message)
                result.offset = new_offset
                result.dropped = 1
                result.error = message
                return result
            if end < 0:
                logger.debug("Source %d: no complete line after offset %d", source_id, offset)
                self._finish(source, _CycleOutcome(0, 0, [], False), watermark=(stat.size, offset, stat.inode))
                result.offset = offset
                return result
            consumed = data[:end + 1]
            lines = consumed.decode("utf-8", errors="replace").splitlines()
            result.lines_read = len(lines)

            outcome = self._process(source, lines, cancel)
            result.entries_written = outcome.written
            result.dropped = outcome.dropped
            if outcome.cancelled:
                logger.info("Source %d: cycle cancelled, watermark kept at %d",
                            source_id, source.last_file_offset or 0)
                result.status = "cancelled"
                return result

            new_offset = offset + len(consumed)
            self._finish(source, outcome, watermark=(stat.size, new_offset, stat.inode))
            result.offset = new_offset
            return result

        except (AccessLensError, SQLAlchemyError) as e:
            logger.error("Source %d: collection failed: %s", source_id, e)
            self._record_error(source_id, str(e))
            result.status = "error"
            result.error = str(e)
            return result

    def _process(self, source: Source, lines: List[str], cancel: threading.Event) -> _CycleOutcome:
        """Parse, enrich and write lines in batches; one transaction per batch."""
        written = 0
        dropped = 0
        timestamps: List[datetime] = []

        for start in range(0, len(lines), self.batch_size):
            if cancel.is_set():
                return _CycleOutcome(written, dropped, timestamps, True)

            self._states[source.id] = CollectorState.PARSING
            parsed = self.parser.parse_lines(lines[start:start + self.batch_size], source.log_format)
            dropped += parsed.dropped
            if not parsed.entries:
                continue

            db = self.session_factory()
            resolver = self.dimensions.session(db)
            try:
                # enrichment runs before the first write so no write lock is held across geo lookups
                self._states[source.id] = CollectorState.ENRICHING
                user_agents = [self.ua_parser.parse(entry.http_user_agent) for entry in parsed.entries]
                geos = self._resolve_geo(db, source, {entry.remote_addr for entry in parsed.entries}, cancel)
                if cancel.is_set():
                    return _CycleOutcome(written, dropped, timestamps, True)

                self._states[source.id] = CollectorState.WRITING
                facts = []
                legacy = []
                for entry, ua in zip(parsed.entries, user_agents):
                    geo = geos.get(entry.remote_addr) or GeoInfo()
                    fact = self.fact_store.build_fact(
                        source.id, entry,
                        ip_id=resolver.ip_id(entry.remote_addr, geo, ua.is_bot),
                        url_id=resolver.url_id(entry.uri, entry.host),
                        referer_id=resolver.referer_id(entry.http_referer),
                        ua_id=resolver.ua_id(entry.http_user_agent, ua),
                        with_session=bool(source.session_enabled),
                    )
                    facts.append(fact)
                    if self.fact_store.write_legacy:
                        legacy.append(self.fact_store.build_legacy(source.id, entry, geo, ua))

                written += self.fact_store.write_batch(db, facts, legacy)
                db.commit()
                resolver.publish()
                timestamps.extend(f["timestamp"] for f in facts)
            except AccessLensError:
                db.rollback()
                resolver.discard()
                raise
            except SQLAlchemyError as e:
                db.rollback()
                resolver.discard()
                raise BatchWriteError(f"batch for source {source.id} failed: {e}") from e
            finally:
                db.close()

        return _CycleOutcome(written, dropped, timestamps, False)

    def _resolve_geo(self, db, source: Source, ips, cancel: threading.Event) -> Dict[str, GeoInfo]:
        """Stored geo for known addresses, one lookup for each new one."""
        if not source.geo_enabled:
            return {}
        # known addresses keep their stored geo; backfill refreshes empty rows
        geos = self.dimensions.stored_geo(db, ips)
        if self.geo is None:
            return geos
        for ip in sorted(ip for ip in ips if ip and ip not in geos):
            if cancel.is_set():
                break
            try:
                geos[ip] = self.geo.lookup(ip)
            except EnrichmentError as e:
                logger.warning("Source %d: %s", source.id, e)
        return geos

    def _finish(self, source: Source, outcome: _CycleOutcome, watermark=None) -> None:
        """Persist the watermark and collect status, then refresh touched rollups."""
        values = {
            "last_collect_at": datetime.now(),
            "last_collect_logs": outcome.written,
            "last_error": "",
        }
        if watermark is not None:
            size, offset, inode = watermark
            values.update(last_file_size=size, last_file_offset=offset, last_file_inode=inode)

        db = self.session_factory()
        try:
            db.execute(update(Source).where(Source.id == source.id).values(**values))
            db.commit()
        finally:
            db.close()

        if outcome.written or outcome.dropped:
            logger.info("Source %d: wrote %d rows, dropped %d lines",
                        source.id, outcome.written, outcome.dropped)
        if outcome.timestamps:
            self.aggregator.rollup_touched(source.id, outcome.timestamps,
                                           legacy=self.fact_store.write_legacy)

    def _record_error(self, source_id: int, message: str) -> None:
        db = self.session_factory()
        try:
            db.execute(
                update(Source).where(Source.id == source_id)
                .values(last_error=message[:500], last_collect_at=datetime.now())
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Source %d: could not record error: %s", source_id, e)
        finally:
            db.close()


class CollectorScheduler:
    """
    Dispatches collection cycles for every active source on its own interval,
    plus periodic rollups and retention sweeps.
    """

    def __init__(self, collector: Collector, session_factory: sessionmaker = None,
                 workers: int = None, rollup_interval: int = None, refresh_interval: float = 30.0,
                 tick: float = 1.0):
        self.collector = collector
        self.session_factory = session_factory or collector.session_factory
        self.executor = ThreadPoolExecutor(max_workers=workers or settings.SCHEDULER_WORKERS,
                                           thread_name_prefix="collector")
        self.rollup_interval = rollup_interval or settings.ROLLUP_INTERVAL
        self.refresh_interval = refresh_interval
        self.tick = tick

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sources: Dict[int, int] = {}  # source id -> interval seconds
        self._next_due: Dict[int, float] = {}
        self._inflight: Dict[int, Future] = {}
        self._last_refresh = 0.0
        self._last_rollup = 0.0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="collector-scheduler", daemon=True)
        self._thread.start()
        logger.info("Collector scheduler started")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=30 if wait else 0)
        self.executor.shutdown(wait=wait)
        logger.info("Collector scheduler stopped")

    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def refresh_sources(self) -> None:
        db = self.session_factory()
        try:
            active = {s.id: s.collect_interval or settings.DEFAULT_COLLECT_INTERVAL
                      for s in list_active_sources(db)}
        finally:
            db.close()
        for source_id in set(self._sources) - set(active):
            self._next_due.pop(source_id, None)
        self._sources = active
        now = time.monotonic()
        for source_id in active:
            self._next_due.setdefault(source_id, now)

    def run_once(self) -> List[Future]:
        """Submit every source that is due and not already in flight."""
        now = time.monotonic()
        if now - self._last_refresh >= self.refresh_interval:
            self.refresh_sources()
            self._last_refresh = now

        submitted = []
        for source_id, interval in self._sources.items():
            if self._next_due.get(source_id, now) > now:
                continue
            running = self._inflight.get(source_id)
            if running is not None and not running.done():
                continue
            self._next_due[source_id] = now + interval
            future = self.executor.submit(self._collect_one, source_id)
            future.add_done_callback(self._report_failure)
            self._inflight[source_id] = future
            submitted.append(future)

        if now - self._last_rollup >= self.rollup_interval:
            self._last_rollup = now
            submitted.append(self.executor.submit(self._maintain))
        return submitted

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except SQLAlchemyError as e:
                logger.error("Scheduler could not refresh sources: %s", e)
            self._stop.wait(self.tick)

    def _collect_one(self, source_id: int) -> Optional[CollectResult]:
        try:
            return self.collector.collect(source_id, cancel=self._stop)
        except SourceNotFound:
            self._sources.pop(source_id, None)
            return None
        except AccessLensError as e:
            logger.error("Source %d: %s", source_id, e)
            return None

    @staticmethod
    def _report_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error("Collection worker failed", exc_info=future.exception())

    def _maintain(self) -> None:
        db = self.session_factory()
        try:
            sources = list_active_sources(db)
            for source in sources:
                db.expunge(source)
        finally:
            db.close()

        aggregator = self.collector.aggregator
        for source in sources:
            if self._stop.is_set():
                return
            try:
                aggregator.rollup_recent(source.id, legacy=self.collector.fact_store.write_legacy)
                aggregator.cleanup_old_data(source)
            except AccessLensError as e:
                logger.error("Maintenance for source %d failed: %s", source.id, e)
