import threading

from accesslens.backfill import BackfillJob
from accesslens.config import settings
from accesslens.dimensions import DimensionStore
from accesslens.models import DimIP, DimUserAgent
from accesslens.schemas import GeoInfo, UAInfo

from support import DatabaseTestCase, FakeGeo

CHROME_UA = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
             "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36")


class TestBackfill(DatabaseTestCase):
    """Late geo and user-agent enrichment of dimension rows"""

    def setup_method(self):
        super().setup_method()
        self.store = DimensionStore()
        dims = self.store.session(self.db)
        self.bare_ip = dims.ip_id("8.8.8.8")
        self.failing_ip = dims.ip_id("9.9.9.9")
        self.located_ip = dims.ip_id("1.1.1.1", GeoInfo(country="AU"))
        self.bare_ua = dims.ua_id(CHROME_UA, UAInfo(browser="", os="", device_type=""))
        self.parsed_ua = dims.ua_id("curl/8.0", UAInfo(browser="curl", device_type="bot", is_bot=True))
        self.db.commit()
        dims.publish()
        self.geo = FakeGeo(country="Germany", fail_for={"9.9.9.9"})

    def test_fills_missing_attributes(self):
        job = BackfillJob(self.Session, geo=self.geo, dimensions=self.store)
        result = job.run()

        assert result.ips_updated == 1
        assert result.errors == 1
        assert result.user_agents_updated == 1
        assert result.details == {"ip_candidates": 2, "ua_candidates": 1}
        assert sorted(self.geo.calls) == ["8.8.8.8", "9.9.9.9"]

        self.db.expire_all()
        assert self.db.get(DimIP, self.bare_ip).country == "Germany"
        assert self.db.get(DimIP, self.bare_ip).isp == "TestNet"
        assert self.db.get(DimIP, self.failing_ip).country == ""
        assert self.db.get(DimIP, self.located_ip).country == "AU"

        ua = self.db.get(DimUserAgent, self.bare_ua)
        assert (ua.browser, ua.os, ua.device_type) == ("Chrome", "Windows", "desktop")
        assert self.db.get(DimUserAgent, self.parsed_ua).browser == "curl"

    def test_second_run_finds_nothing_new(self):
        job = BackfillJob(self.Session, geo=FakeGeo(), dimensions=self.store)
        job.run()
        again = job.run()
        assert again.ips_updated == 0
        assert again.user_agents_updated == 0

    def test_limit_and_cancel(self):
        job = BackfillJob(self.Session, geo=self.geo, dimensions=self.store)
        assert job.run(limit=1).details["ip_candidates"] == 1

        cancel = threading.Event()
        cancel.set()
        result = BackfillJob(self.Session, geo=FakeGeo(), dimensions=self.store).run(cancel=cancel)
        assert result.ips_updated == 0
        assert result.user_agents_updated == 0

    def test_disabled_geo_lookups_are_respected(self, monkeypatch):
        monkeypatch.setattr(settings, "GEO_LOOKUP_ENABLED", False)
        job = BackfillJob(self.Session, dimensions=self.store)
        assert job.geo is None

        result = job.run()
        assert result.ips_updated == 0
        assert result.details["ip_candidates"] == 0
        assert result.user_agents_updated == 1
        self.db.expire_all()
        assert self.db.get(DimIP, self.bare_ip).country == ""
