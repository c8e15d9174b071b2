import asyncio
import logging
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import app as app_module
from app import app
from collectors.anthropic_admin import AnthropicAdminCollector
from collectors.base import UpstreamError
from conftest import FakeCollector
from models import RefreshInterval, ServiceKind, UsageLimit, UsageMetrics

RESET = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


def usage(kind, weekly, reset=None):
    return UsageMetrics(service=kind, weekly_limit=UsageLimit(used=weekly, total=100, reset_time=reset))


class RescanCollector(FakeCollector):
    """Only found by the recursive search."""

    supports_deep_scan = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scans = []

    def check_access(self, deep_scan=False):
        self.scans.append(deep_scan)
        self.has_access = deep_scan
        return self.has_access


@pytest.fixture
def manager(make_manager):
    manager = make_manager(
        FakeCollector(ServiceKind.CURSOR, usage(ServiceKind.CURSOR, 95, RESET)),
        FakeCollector(ServiceKind.CODEX_CLI, UpstreamError("HTTP 500: oops", status=500)),
    )
    manager.collectors[ServiceKind.CLAUDE_API] = AnthropicAdminCollector(manager.store)
    return manager


@pytest.fixture
def client(manager):
    # Not entered as a context manager, so startup does not build a real manager.
    app.state.manager = manager
    yield TestClient(app)
    app.state.manager = None


class TestUsage:
    def test_empty_summary(self, client):
        body = client.get("/api/usage").json()
        assert body == {"services": [], "next_reset": None, "last_refreshed": None, "last_error": None}

    def test_refresh_all(self, client):
        resp = client.post("/api/refresh")

        assert resp.status_code == 200
        body = resp.json()
        assert [s["service"] for s in body["services"]] == ["cursor"]
        cursor = body["services"][0]
        assert cursor["display_name"] == "Cursor"
        assert cursor["weekly_limit"]["percentage"] == 95.0
        assert cursor["weekly_limit"]["status"] == "warning"
        assert cursor["overall_status"] == "warning"
        assert body["next_reset"] == "2026-03-01T12:00:00Z"
        assert body["last_refreshed"] is not None
        assert body["last_error"] == "Codex CLI: HTTP 500: oops"

    def test_single_service(self, client):
        client.post("/api/refresh")
        assert client.get("/api/usage/cursor").json()["weekly_limit"]["used"] == 95.0
        assert client.get("/api/usage/Cursor").status_code == 200

    def test_service_without_data(self, client):
        assert client.get("/api/usage/codex_cli").status_code == 404

    def test_unknown_service(self, client):
        resp = client.get("/api/usage/gemini")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Unknown service: gemini"


class TestRefreshOne:
    def test_success(self, client):
        resp = client.post("/api/refresh/cursor")
        assert resp.status_code == 200
        assert resp.json()["service"] == "cursor"

    def test_display_name_path(self, client):
        assert client.post("/api/refresh/Codex%20CLI").json()["detail"] == "HTTP 500: oops"

    def test_unconfigured(self, client):
        resp = client.post("/api/refresh/claude_api")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Not authenticated"


class TestProviders:
    def test_list(self, client):
        body = client.get("/api/providers").json()
        assert [p["service"] for p in body] == ["claude_code", "codex_cli", "cursor", "claude_api"]
        by_service = {p["service"]: p for p in body}
        assert by_service["claude_code"]["configured"] is False
        assert by_service["cursor"]["has_access"] is True
        assert by_service["claude_api"]["has_access"] is False

    def test_check(self, client):
        resp = client.post("/api/providers/check")
        assert resp.status_code == 200
        assert len(resp.json()) == 4

    def test_check_with_rescan(self, client, manager):
        cursor = RescanCollector(ServiceKind.CURSOR, usage(ServiceKind.CURSOR, 1), has_access=False)
        manager.collectors[ServiceKind.CURSOR] = cursor

        client.post("/api/providers/check")
        resp = client.post("/api/providers/check", params={"deep_scan": "true"})

        assert cursor.scans == [False, True]
        by_service = {p["service"]: p for p in resp.json()}
        assert by_service["cursor"]["has_access"] is True


class TestCredentials:
    def test_store_admin_key(self, client, security):
        resp = client.put("/api/credentials/claude_api", json={"value": "sk-ant-admin01-key"})

        assert resp.status_code == 200
        assert resp.json()["has_access"] is True
        assert security.items[("ai-quota-monitor", "claude_api")] == "sk-ant-admin01-key"

    def test_blank_value(self, client):
        resp = client.put("/api/credentials/claude_api", json={"value": "  "})
        assert resp.status_code == 400

    def test_keychain_failure(self, client, manager):
        def runner(*args, **kwargs):
            raise FileNotFoundError("security")

        manager.store.runner = runner
        resp = client.put("/api/credentials/claude_api", json={"value": "sk"})
        assert resp.status_code == 503

    def test_remove(self, client, security):
        client.put("/api/credentials/claude_api", json={"value": "sk-ant-admin01-key"})

        resp = client.delete("/api/credentials/claude_api")

        assert resp.status_code == 204
        assert security.items == {}
        claude_api = client.get("/api/providers").json()[3]
        assert claude_api["has_access"] is False


class TestRefreshIntervalSetting:
    def test_get_default(self, client):
        assert client.get("/api/settings/refresh-interval").json() == {
            "seconds": 900,
            "display_name": "15 minutes",
            "scheduled": False,
        }

    def test_update(self, client, manager):
        resp = client.put("/api/settings/refresh-interval", json={"seconds": 0})
        assert resp.json()["display_name"] == "Manual only"
        assert manager.refresh_interval is RefreshInterval.MANUAL

    def test_rejects_unlisted_interval(self, client):
        resp = client.put("/api/settings/refresh-interval", json={"seconds": 42})
        assert resp.status_code == 422


class TestAlerts:
    def test_after_refresh(self, client):
        assert client.get("/api/alerts").json() == []
        client.post("/api/refresh")

        alerts = client.get("/api/alerts").json()

        assert len(alerts) == 1
        assert alerts[0]["service"] == "cursor"
        assert alerts[0]["level"] == "warning"
        assert alerts[0]["title"] == "Cursor Usage Warning"


@pytest.mark.asyncio
class TestLifecycle:
    async def test_startup_and_shutdown(self, manager):
        app.state.manager = manager
        try:
            await app_module.startup()
            assert manager.is_scheduled
            await app_module.shutdown()
        finally:
            app.state.manager = None

        assert app.state.initial_refresh is None
        assert not manager.is_scheduled

    async def test_shutdown_cancels_pending_refresh(self, manager):
        started = asyncio.Event()

        async def slow_refresh(scheduled=False):
            started.set()
            await asyncio.sleep(60)

        manager.refresh_all = slow_refresh
        app.state.manager = manager
        try:
            await app_module.startup()
            task = app.state.initial_refresh
            await started.wait()
            await app_module.shutdown()
        finally:
            app.state.manager = None

        assert task.cancelled()

    async def test_shutdown_reports_failed_refresh(self, manager, caplog):
        async def broken_refresh(scheduled=False):
            raise RuntimeError("boom")

        manager.refresh_all = broken_refresh
        app.state.manager = manager
        try:
            await app_module.startup()
            await asyncio.sleep(0)
            with caplog.at_level(logging.ERROR, logger="app"):
                await app_module.shutdown()
        finally:
            app.state.manager = None

        assert "Initial refresh failed" in caplog.text
