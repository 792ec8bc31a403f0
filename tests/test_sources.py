from datetime import datetime

import pytest

from accesslens.collector import Collector
from accesslens.errors import SourceNotFound
from accesslens.facts import FactStore
from accesslens.models import AccessLog, AggDaily, AggHourly, FactAccessLog, LegacyHourlyStats
from accesslens.schemas import SourceCreate, SourceUpdate
from accesslens.sources import (
    create_source, delete_source, get_source, list_active_sources, list_sources, update_source,
)

from support import DatabaseTestCase, FakeGeo, combined_line


class TestSources(DatabaseTestCase):
    """Source registry and delete cascade"""

    def test_create_applies_defaults(self):
        source = create_source(self.db, SourceCreate(name="edge"))
        assert source.type == "host"
        assert source.log_path == "/var/log/nginx/access.log"
        assert source.collect_interval == 60
        assert source.retention_days == 30
        assert source.last_file_offset == 0

    def test_validation(self):
        with pytest.raises(ValueError):
            create_source(self.db, SourceCreate(name="x", type="ftp"))
        with pytest.raises(ValueError):
            create_source(self.db, SourceCreate(name="x", log_format="xml"))
        with pytest.raises(ValueError):
            create_source(self.db, SourceCreate(name="x", type="k8s_ingress", log_format="json"))

        k8s = create_source(self.db, SourceCreate(name="ingress", type="k8s_ingress", namespace="web",
                                                  log_format="json"))
        assert k8s.log_path == ""

    def test_list_and_filter(self):
        for i in range(5):
            create_source(self.db, SourceCreate(name=f"s{i}", log_path=f"/tmp/{i}.log", status=i % 2))

        total, items = list_sources(self.db, page=1, page_size=2)
        assert total == 5
        assert [s.name for s in items] == ["s0", "s1"]

        total, items = list_sources(self.db, page=3, page_size=2)
        assert [s.name for s in items] == ["s4"]

        total, _ = list_sources(self.db, status=1)
        assert total == 2
        assert [s.name for s in list_active_sources(self.db)] == ["s1", "s3"]

    def test_update(self):
        source = create_source(self.db, SourceCreate(name="web", log_path="/tmp/a.log"))
        updated = update_source(self.db, source.id, SourceUpdate(name="web2", collect_interval=15))
        assert updated.name == "web2"
        assert updated.collect_interval == 15
        assert updated.log_path == "/tmp/a.log"

        with pytest.raises(ValueError):
            update_source(self.db, source.id, SourceUpdate(log_format="xml"))

    def test_missing_source(self):
        with pytest.raises(SourceNotFound):
            get_source(self.db, 404)

    def test_delete_cascades_to_dependent_rows(self):
        keep = create_source(self.db, SourceCreate(name="keep", log_path="/dev/null"))
        drop = create_source(self.db, SourceCreate(name="drop", log_path="/dev/null"))
        collector = Collector(session_factory=self.Session, geo=FakeGeo(),
                              fact_store=FactStore(write_legacy=True))
        ts = datetime(2025, 1, 15, 10, 0, 0)
        for source in (keep, drop):
            collector.ingest_lines(source.id, [combined_line("8.8.8.8", ts)])

        delete_source(self.db, drop.id)

        for model in (FactAccessLog, AccessLog, AggHourly, AggDaily, LegacyHourlyStats):
            assert self.db.query(model).filter(model.source_id == drop.id).count() == 0
            assert self.db.query(model).filter(model.source_id == keep.id).count() == 1
        with pytest.raises(SourceNotFound):
            get_source(self.db, drop.id)
        total, _ = list_sources(self.db)
        assert total == 1
