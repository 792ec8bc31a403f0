from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from accesslens.api.deps import get_collector, get_query_engine
from accesslens.collector import Collector
from accesslens.database import get_db
from accesslens.main import app
from accesslens.query.engine import QueryEngine

from support import DatabaseTestCase, FakeGeo, combined_line

NOW = datetime(2025, 1, 15, 12, 30, 0)
TODAY = datetime(2025, 1, 15)


class TestAPI(DatabaseTestCase):
    """HTTP surface over the source registry, ingestion and analytics"""

    def setup_method(self):
        super().setup_method()
        collector = Collector(session_factory=self.Session, geo=FakeGeo())
        engine = QueryEngine(self.Session, now=lambda: NOW)

        def override_db():
            db = self.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_collector] = lambda: collector
        app.dependency_overrides[get_query_engine] = lambda: engine
        # lifespan is not entered, so no scheduler starts
        self.client = TestClient(app)

    def teardown_method(self):
        app.dependency_overrides.clear()
        super().teardown_method()

    def create(self, **fields):
        payload = {"name": "web", "log_path": f"{self.tmpdir}/access.log"}
        payload.update(fields)
        response = self.client.post("/api/sources/", json=payload)
        assert response.status_code == 200, response.text
        return response.json()

    def upload(self, source_id, lines):
        content = ("\n".join(lines) + "\n").encode()
        return self.client.post(f"/api/sources/{source_id}/ingest",
                                files={"file": ("access.log", content, "text/plain")})

    def test_root_and_health(self):
        assert "endpoints" in self.client.get("/").json()
        health = self.client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["scheduler"] == "stopped"

    def test_source_crud(self):
        created = self.create()
        assert created["type"] == "host"
        assert created["collect_interval"] == 60

        listing = self.client.get("/api/sources/").json()
        assert listing["total"] == 1
        assert listing["items"][0]["name"] == "web"

        updated = self.client.put(f"/api/sources/{created['id']}", json={"name": "renamed"})
        assert updated.status_code == 200
        assert updated.json()["name"] == "renamed"

        assert self.client.delete(f"/api/sources/{created['id']}").status_code == 200
        assert self.client.get(f"/api/sources/{created['id']}").status_code == 404
        assert self.client.get("/api/sources/").json()["total"] == 0

    def test_invalid_source(self):
        response = self.client.post("/api/sources/", json={"name": "x", "type": "ftp"})
        assert response.status_code == 400
        assert "unknown source type" in response.json()["detail"]

    def test_missing_source_is_404(self):
        assert self.client.get("/api/sources/99").status_code == 404
        assert self.client.put("/api/sources/99", json={"name": "x"}).status_code == 404
        assert self.client.delete("/api/sources/99").status_code == 404
        assert self.client.post("/api/sources/99/collect").status_code == 404
        assert self.client.get("/api/sources/99/logs").status_code == 404
        assert self.client.get("/api/analytics/99/core-metrics").status_code == 404

    def test_ingest_and_list_logs(self):
        source = self.create()
        response = self.upload(source["id"], [
            combined_line("8.8.8.8", TODAY + timedelta(hours=9), uri="/a"),
            combined_line("1.1.1.1", TODAY + timedelta(hours=10), uri="/b", status=404),
            "not a log line",
        ])
        assert response.status_code == 200
        result = response.json()
        assert result["entries_written"] == 2
        assert result["dropped"] == 1

        page = self.client.get(f"/api/sources/{source['id']}/logs").json()
        assert page["total"] == 2
        assert [item["uri"] for item in page["items"]] == ["/b", "/a"]  # newest first
        assert page["items"][0]["country"] == "Testland"
        assert page["items"][0]["browser"] == "Chrome"

        filtered = self.client.get(f"/api/sources/{source['id']}/logs", params={"status": 404}).json()
        assert filtered["total"] == 1
        assert filtered["items"][0]["remote_addr"] == "1.1.1.1"

    def test_collect_reports_errors_in_result(self):
        source = self.create(log_path=f"{self.tmpdir}/missing.log")
        response = self.client.post(f"/api/sources/{source['id']}/collect")
        assert response.status_code == 200
        assert response.json()["status"] == "error"

    def test_collect_reads_file(self):
        source = self.create()
        with open(f"{self.tmpdir}/access.log", "w") as f:
            f.write(combined_line("8.8.8.8", TODAY + timedelta(hours=11)) + "\n")

        result = self.client.post(f"/api/sources/{source['id']}/collect").json()
        assert result["status"] == "ok"
        assert result["entries_written"] == 1
        assert self.client.get(f"/api/sources/{source['id']}").json()["last_file_offset"] > 0

    def test_analytics_endpoints(self):
        source = self.create()
        sid = source["id"]
        self.upload(sid, [
            combined_line("8.8.8.8", TODAY + timedelta(hours=9), uri="/pricing"),
            combined_line("1.1.1.1", TODAY + timedelta(hours=12, minutes=10), uri="/pricing",
                          referer="https://www.google.com/"),
        ])

        metrics = self.client.get(f"/api/analytics/{sid}/core-metrics").json()
        assert metrics["today"]["pv"] == 2
        assert metrics["today"]["uv"] == 2
        assert metrics["tier"] == "agg+fact"

        trend = self.client.get(f"/api/analytics/{sid}/trend").json()
        assert len(trend) == 13
        assert trend[9]["pv"] == 1
        assert self.client.get(f"/api/analytics/{sid}/trend", params={"mode": "week"}).status_code == 400

        pages = self.client.get(f"/api/analytics/{sid}/top-pages").json()
        assert pages == [{"url": "/pricing", "pv": 2, "uv": 2}]

        referers = self.client.get(f"/api/analytics/{sid}/referers").json()
        assert referers[0]["domain"] == "www.google.com"

        ips = self.client.get(f"/api/analytics/{sid}/top-ips").json()
        assert {item["ip"] for item in ips} == {"8.8.8.8", "1.1.1.1"}

        series = self.client.get(f"/api/analytics/{sid}/timeseries", params={"granularity": "hour"}).json()
        assert len(series) == 24
        assert self.client.get(f"/api/analytics/{sid}/timeseries",
                               params={"granularity": "minute"}).status_code == 400

        visitors = self.client.get(f"/api/analytics/{sid}/visitors").json()
        assert visitors["total_uv"] == 2
        assert visitors["new_visitors"] == 2

        active = self.client.get(f"/api/analytics/{sid}/active-visitors", params={"minutes": 30}).json()
        assert active["active_visitors"] == 1

        geo = self.client.get(f"/api/analytics/{sid}/geo").json()
        assert geo["countries"][0]["name"] == "Testland"
        browsers = self.client.get(f"/api/analytics/{sid}/browsers").json()
        assert browsers["browsers"][0]["name"] == "Chrome"
        devices = self.client.get(f"/api/analytics/{sid}/devices").json()
        assert devices["devices"][0]["name"] == "desktop"
        entries = self.client.get(f"/api/analytics/{sid}/entry-pages").json()
        assert entries[0]["url"] == "/pricing"

    def test_rollup_endpoint(self):
        source = self.create()
        sid = source["id"]
        self.upload(sid, [combined_line("8.8.8.8", TODAY + timedelta(hours=3))])

        response = self.client.post(f"/api/analytics/{sid}/rollup", params={
            "start": TODAY.isoformat(), "end": (TODAY + timedelta(hours=6)).isoformat(),
        })
        assert response.status_code == 200
        body = response.json()
        assert body["hourly_rows"] == 6
        assert body["daily_rows"] == 1
        assert body["tier"] == "fact"
