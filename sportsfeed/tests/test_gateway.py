"""Tests for the FastAPI gateway routes (engine injected, lifespan not run)."""
import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import ConsoleSpanExporter

from sportsfeed.engine.endpoint_engine import EndpointEngine
from sportsfeed.errors import TransportError
from sportsfeed.gateway import main

_LEAGUES = {"errors": [], "results": 1, "response": [{"league": {"id": 39, "name": "Premier League"}}]}


@pytest.fixture
def client_for(monkeypatch, make_executor, football_catalog):
    """Factory: TestClient whose engine answers with the given scripted outcomes."""

    def _make(*outcomes):
        engine = EndpointEngine(football_catalog, make_executor(*outcomes))
        monkeypatch.setattr(main, "_engine", engine)
        return TestClient(main.app)

    return _make


# ---------------------------------------------------------------------------
# Catalog browsing
# ---------------------------------------------------------------------------

class TestCatalogRoutes:
    def test_list_all(self, client_for):
        body = client_for().get("/v1/endpoints").json()
        assert len(body["endpoints"]) == 10
        assert body["categories"][0] == "Account"

    def test_search(self, client_for):
        body = client_for().get("/v1/endpoints", params={"q": "lineup"}).json()
        assert [e["id"] for e in body["endpoints"]] == ["fixture-lineups"]

    def test_category_filter(self, client_for):
        body = client_for().get("/v1/endpoints", params={"category": "Fixtures"}).json()
        assert len(body["endpoints"]) == 4

    def test_describe(self, client_for):
        resp = client_for().get("/v1/endpoints/fixtures-by-league")
        assert resp.status_code == 200
        body = resp.json()
        assert body["display_name"] == "Fixtures > By league > fixtures-by-league"
        assert body["descriptor"]["validation"]["requiredParams"] == ["league", "season"]

    def test_describe_unknown(self, client_for):
        assert client_for().get("/v1/endpoints/transfers").status_code == 404

    def test_reload(self, client_for):
        resp = client_for().post("/v1/catalog/reload")
        assert resp.status_code == 200
        assert resp.json() == {"endpoints": 10, "version": "1.0"}


# ---------------------------------------------------------------------------
# Row requests and error mapping
# ---------------------------------------------------------------------------

class TestRowsRoute:
    def test_rows(self, client_for):
        resp = client_for(_LEAGUES).post(
            "/v1/endpoints/leagues/rows",
            json={"params": {"id": 39}, "metadata": {"trace_id": "abc"}},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["columns"] == ["league_id", "league_name", "seasons"]
        assert body["rows"] == [{"league_id": 39, "league_name": "Premier League", "seasons": None}]
        assert body["trace_id"] == "abc"
        assert body["skipped"] == 0

    def test_invalid_param(self, client_for):
        resp = client_for().post(
            "/v1/endpoints/fixtures-by-league/rows", json={"params": {"season": "2024"}}
        )
        assert resp.status_code == 400
        assert resp.json()["param"] == "league"
        assert resp.json()["error"] == "INVALID_PARAMETER"

    def test_unknown_endpoint(self, client_for):
        resp = client_for().post("/v1/endpoints/transfers/rows", json={})
        assert resp.status_code == 404

    def test_rate_limited(self, client_for):
        resp = client_for(429).post("/v1/endpoints/leagues/rows", json={})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.json()["retry_after_seconds"] == 60

    def test_upstream_error(self, client_for):
        resp = client_for(500).post("/v1/endpoints/leagues/rows", json={})
        assert resp.status_code == 502
        assert resp.json()["upstream_status"] == 500

    def test_transport_error(self, client_for):
        resp = client_for(TransportError("connection refused")).post("/v1/endpoints/leagues/rows", json={})
        assert resp.status_code == 504


# ---------------------------------------------------------------------------
# Health, stats and metrics
# ---------------------------------------------------------------------------

class TestOperationalRoutes:
    def test_health(self, client_for):
        resp = client_for().get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_health_without_engine(self, monkeypatch):
        monkeypatch.setattr(main, "_engine", None)
        resp = TestClient(main.app).get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"

    def test_stats(self, client_for):
        client = client_for(_LEAGUES)
        client.post("/v1/endpoints/leagues/rows", json={})
        client.post("/v1/endpoints/leagues/rows", json={})
        calls = client.get("/v1/stats").json()["calls"]
        assert calls["network_calls"] == 1
        assert calls["cache_hits"] == 1

    def test_stats_without_engine(self, monkeypatch):
        monkeypatch.setattr(main, "_engine", None)
        assert TestClient(main.app).get("/v1/stats").status_code == 503

    def test_metrics(self, client_for):
        client = client_for(_LEAGUES)
        client.post("/v1/endpoints/leagues/rows", json={})
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "sportsfeed_gateway_requests_total" in resp.text
        assert "sportsfeed_network_calls_total" in resp.text

    def test_console_exporter_without_endpoint(self):
        assert isinstance(main._span_exporter(""), ConsoleSpanExporter)
