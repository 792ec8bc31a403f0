import threading

from sqlalchemy import func

from accesslens.dimensions import DimensionStore, ShardedCache
from accesslens.models import DimIP, DimReferer, DimURL, DimUserAgent
from accesslens.schemas import GeoInfo, UAInfo

from support import DatabaseTestCase


class TestShardedCache:
    def test_put_keeps_first_value(self):
        cache = ShardedCache(shards=4)
        assert cache.put(("ip", "1.1.1.1"), 7) == 7
        assert cache.put(("ip", "1.1.1.1"), 9) == 7
        assert cache.get(("ip", "1.1.1.1")) == 7
        assert len(cache) == 1
        cache.clear()
        assert cache.get(("ip", "1.1.1.1")) is None


class TestDimensionStore(DatabaseTestCase):
    """Get-or-create resolution of dimension keys"""

    def setup_method(self):
        super().setup_method()
        self.store = DimensionStore(shards=8)

    def test_get_or_create_is_stable(self):
        dims = self.store.session(self.db)
        first = dims.ip_id("8.8.8.8", GeoInfo(country="US"))
        again = dims.ip_id("8.8.8.8")
        self.db.commit()
        dims.publish()

        assert first == again
        assert self.db.query(DimIP).count() == 1
        row = self.db.get(DimIP, first)
        assert row.country == "US"

        # a fresh store resolves the same id from the database
        other = DimensionStore().session(self.db)
        assert other.ip_id("8.8.8.8") == first

    def test_absent_dimensions_map_to_zero(self):
        dims = self.store.session(self.db)
        assert dims.ip_id("") == 0
        assert dims.url_id("", "example.com") == 0
        assert dims.referer_id("") == 0
        assert dims.ua_id("", UAInfo()) == 0

    def test_derived_attributes(self):
        dims = self.store.session(self.db)
        url_id = dims.url_id("/shop/cart?item=3", "shop.example.com")
        ref_id = dims.referer_id("https://www.bing.com/search?q=cart")
        ua_id = dims.ua_id("curl/8.0", UAInfo(browser="Unknown", device_type="bot", is_bot=True))
        self.db.commit()

        url = self.db.get(DimURL, url_id)
        assert url.url_normalized == "/shop/cart"
        assert url.host == "shop.example.com"
        assert len(url.url_hash) == 64

        ref = self.db.get(DimReferer, ref_id)
        assert ref.referer_domain == "www.bing.com"
        assert ref.referer_type == "search"

        ua = self.db.get(DimUserAgent, ua_id)
        assert ua.is_bot
        assert ua.device_type == "bot"

    def test_same_path_on_different_hosts_is_distinct(self):
        dims = self.store.session(self.db)
        assert dims.url_id("/", "a.example.com") != dims.url_id("/", "b.example.com")

    def test_rolled_back_ids_are_not_cached(self):
        dims = self.store.session(self.db)
        dims.ip_id("9.9.9.9")
        self.db.rollback()
        dims.discard()

        assert self.store.cache_size() == 0
        assert self.db.query(DimIP).count() == 0

    def test_published_ids_skip_the_database(self):
        dims = self.store.session(self.db)
        ip_id = dims.ip_id("1.0.0.1")
        self.db.commit()
        dims.publish()
        assert self.store.cache_size() == 1

        later = self.store.session(self.db)
        assert later.ip_id("1.0.0.1") == ip_id

    def test_stored_geo_reads_existing_rows(self):
        dims = self.store.session(self.db)
        dims.ip_id("5.5.5.5", GeoInfo(country="NL", city="Amsterdam", isp="KPN"))
        dims.ip_id("6.6.6.6")
        self.db.commit()

        stored = self.store.stored_geo(self.db, ["5.5.5.5", "6.6.6.6", "7.7.7.7", ""])
        assert set(stored) == {"5.5.5.5", "6.6.6.6"}
        located = stored["5.5.5.5"]
        assert (located.country, located.city, located.isp) == ("NL", "Amsterdam", "KPN")
        assert stored["6.6.6.6"].country == ""

    def test_geo_update_keeps_identity(self):
        dims = self.store.session(self.db)
        ip_id = dims.ip_id("4.4.4.4")
        self.db.commit()

        self.store.update_ip_geo(self.db, ip_id, GeoInfo(country="DE", city="Berlin"))
        self.db.commit()
        self.db.expire_all()

        row = self.db.get(DimIP, ip_id)
        assert row.ip_address == "4.4.4.4"
        assert row.country == "DE"
        assert row.city == "Berlin"

    def test_concurrent_workers_create_one_row_per_key(self):
        addresses = [f"100.64.0.{i}" for i in range(25)]
        workers = 8
        results = [None] * workers
        errors = []
        start = threading.Barrier(workers)

        def work(index):
            db = self.Session()
            try:
                start.wait()
                dims = self.store.session(db)
                ids = {}
                # each worker walks the keys in a different order
                for ip in addresses[index:] + addresses[:index]:
                    ids[ip] = dims.ip_id(ip)
                    db.commit()
                    dims.publish()
                results[index] = ids
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=work, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert self.db.query(func.count(DimIP.id)).scalar() == len(addresses)
        for ids in results[1:]:
            assert ids == results[0]
