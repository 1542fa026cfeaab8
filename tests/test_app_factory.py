"""Tests for app factory, lifespan and health endpoint."""

from fastapi.testclient import TestClient

from wabridge.api.factory import create_app


class TestHealth:
    def test_health_reports_media_dirs(self, media_root):
        with TestClient(create_app()) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["directories"] == {"uploads": True, "images": True, "audio": True, "documents": True}
        assert body["uptime_seconds"] >= 0
        assert "timestamp" in body

    def test_health_without_startup_reports_missing_dirs(self, media_root):
        client = TestClient(create_app())
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["directories"]["uploads"] is False

    def test_environment_from_env(self, media_root, monkeypatch):
        monkeypatch.setenv("APP_ENV", "staging")
        response = TestClient(create_app()).get("/health")
        assert response.json()["environment"] == "staging"


class TestLifespan:
    def test_startup_creates_media_dirs(self, media_root):
        with TestClient(create_app()):
            pass
        assert (media_root / "images").is_dir()
        assert (media_root / "audio").is_dir()
        assert (media_root / "documents").is_dir()


class TestRoutes:
    def test_docs_not_exposed(self, media_root):
        client = TestClient(create_app())
        assert client.get("/docs").status_code == 404

    def test_correlation_id_generated(self, media_root):
        response = TestClient(create_app()).get("/health")
        assert response.headers.get("X-Correlation-ID")

    def test_malformed_correlation_header_replaced(self, media_root):
        response = TestClient(create_app()).get("/health", headers={"X-Correlation-ID": "a b c"})
        assert response.headers["X-Correlation-ID"] != "a b c"
