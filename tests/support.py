"""Shared helpers for the test suites: throwaway SQLite databases and fakes."""
import shutil
import tempfile
import threading

from sqlalchemy.orm import sessionmaker

from accesslens.config import settings
from accesslens.database import init_db, make_engine
from accesslens.schemas import GeoInfo


class DatabaseTestCase:
    """Gives every test a fresh file-backed SQLite database in UTC."""

    def setup_method(self):
        settings.REPORT_TIMEZONE = "UTC"
        self.tmpdir = tempfile.mkdtemp(prefix="accesslens-test-")
        self.db_engine = make_engine(f"sqlite:///{self.tmpdir}/test.db")
        init_db(self.db_engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.db_engine)
        self.db = self.Session()

    def teardown_method(self):
        self.db.close()
        self.db_engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)


class FakeGeo:
    """Deterministic geo resolver that records its lookups."""

    def __init__(self, country="Testland", fail_for=()):
        self.country = country
        self.fail_for = set(fail_for)
        self.calls = []
        self._lock = threading.Lock()

    def lookup(self, ip):
        from accesslens.errors import EnrichmentError

        with self._lock:
            self.calls.append(ip)
        if ip in self.fail_for:
            raise EnrichmentError(f"lookup failed for {ip}")
        return GeoInfo(country=self.country, province="North", city="Capital", isp="TestNet")


def combined_line(ip, ts, uri="/index.html", status=200, size=512, referer="-",
                  ua=("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                      "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"),
                  method="GET", request_time=None):
    """Build an nginx combined log line; ts is a naive UTC datetime."""
    stamp = ts.strftime("%d/%b/%Y:%H:%M:%S +0000")
    line = f'{ip} - - [{stamp}] "{method} {uri} HTTP/1.1" {status} {size} "{referer}" "{ua}"'
    if request_time is not None:
        line += f" {request_time}"
    return line
