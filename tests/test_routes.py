"""
HTTP surface tests.

Tests for:
1. Health / root endpoints and auth requirements
2. Auth routes surface provider messages
3. Dashboard, command, settings and export routes
4. SSE patch stream

Run with: pytest tests/test_routes.py -v
"""
import json
import time
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from tracker.main import app
from tracker.routes import auth as auth_routes
from tracker.routes.stream import heartbeat_event, patch_generator
from tracker.services.auth import AuthError, User
from tracker.services.session import get_dashboard_session


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def client():
    """Test client for sync tests."""
    return TestClient(app)


@pytest.fixture
def dashboard_client(session):
    """Client whose requests run against the fake-store session."""
    async def override():
        return session

    app.dependency_overrides[get_dashboard_session] = override
    yield TestClient(app)
    app.dependency_overrides.clear()
    session.commands.cancel_all()


# ============================================
# Test: Basic endpoints
# ============================================

class TestBasicEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert response_json(client.get("/"))["device_id"] == "vehicle_001"

    def test_dashboard_requires_session(self, client):
        response = client.get("/api/v1/dashboard/snapshot")
        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication required"

    def test_export_rejects_bad_token(self, client):
        response = client.get("/api/v1/export/today", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired session"


def response_json(response):
    assert response.status_code == 200
    return response.json()


# ============================================
# Test: Auth routes
# ============================================

class TestAuthRoutes:

    def test_register_error_is_400_with_message(self, client):
        with patch.object(auth_routes, "auth_provider") as provider:
            provider.sign_up = AsyncMock(side_effect=AuthError("Passwords do not match"))
            response = client.post("/api/v1/auth/register", json={
                "email": "driver@example.com", "password": "secret1", "confirm_password": "secret2",
            })

        assert response.status_code == 400
        assert response.json()["detail"] == "Passwords do not match"

    def test_login_failure_is_401(self, client):
        with patch.object(auth_routes, "auth_provider") as provider:
            provider.sign_in = AsyncMock(side_effect=AuthError("Invalid email or password."))
            response = client.post("/api/v1/auth/login", json={"email": "driver@example.com", "password": "x"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password."

    def test_login_sets_cookie(self, client):
        with patch.object(auth_routes, "auth_provider") as provider:
            provider.sign_in = AsyncMock(return_value=(User("u1", "driver@example.com"), "token-abc"))
            response = client.post("/api/v1/auth/login", json={"email": "driver@example.com", "password": "secret1"})

        assert response.status_code == 200
        body = response.json()
        assert body["access_token"] == "token-abc"
        assert body["email"] == "driver@example.com"
        assert response.cookies.get("tracker_session") == "token-abc"

    def test_logout_signs_out(self, client):
        with patch.object(auth_routes, "auth_provider") as provider:
            provider.sign_out = AsyncMock(return_value=None)
            response = client.post("/api/v1/auth/logout", headers={"Authorization": "Bearer token-abc"})

        assert response.status_code == 200
        provider.sign_out.assert_awaited_once_with("token-abc")


# ============================================
# Test: Dashboard routes
# ============================================

class TestDashboardRoutes:

    def test_snapshot(self, dashboard_client, session):
        session.sync.on_location({"latitude": 14.6, "longitude": 121.0, "speed": 95})

        body = response_json(dashboard_client.get("/api/v1/dashboard/snapshot"))

        assert body["values"]["current-speed"]["text"] == "95"
        assert body["values"]["current-speed"]["state"] == "over-limit"
        assert body["viewports"]["map"]["marker"]["lat"] == 14.6

    def test_layout_report(self, dashboard_client, session):
        body = response_json(dashboard_client.post("/api/v1/dashboard/layout", json={
            "containers": ["map", "map-full"], "width_px": 375, "active_tab": "overview",
        }))

        assert body["missing"] == []
        assert body["constrained"] is True
        assert session.page.width_px == 375

    def test_unknown_tab_404(self, dashboard_client):
        response = dashboard_client.post("/api/v1/dashboard/tabs/garage")
        assert response.status_code == 404

    def test_switch_to_map_recentres_full_map(self, dashboard_client, session, fake_store):
        fake_store.records["devices/vehicle_001/location"] = {"latitude": 14.7, "longitude": 121.1}

        body = response_json(dashboard_client.post("/api/v1/dashboard/tabs/map"))

        assert body["active_tab"] == "map"
        full = session.registry.get("map-full")
        assert full.center == (14.7, 121.1)
        assert full.zoom == 16

    def test_constrained_switch_zooms_to_street_level(self, dashboard_client, session, fake_store):
        fake_store.records["devices/vehicle_001/location"] = {"latitude": 14.7, "longitude": 121.1}
        session.page.width_px = 400

        response_json(dashboard_client.post("/api/v1/dashboard/tabs/map"))

        assert session.registry.get("map-full").zoom == 18

    def test_history_tab_mirrors_timelines(self, dashboard_client, session):
        session.sync.on_timeline_batch("events", [{"title": "Parked"}])

        response_json(dashboard_client.post("/api/v1/dashboard/tabs/history"))

        assert session.board.region("events-log-history") == session.board.region("events-log")

    def test_center_without_fix_409(self, dashboard_client):
        assert dashboard_client.post("/api/v1/dashboard/center").status_code == 409

    def test_center_map(self, dashboard_client, session, fake_store):
        fake_store.records["devices/vehicle_001/location"] = {"latitude": 14.7, "longitude": 121.1}

        response_json(dashboard_client.post("/api/v1/dashboard/center"))

        assert session.registry.get("map").center == (14.7, 121.1)
        assert session.registry.get("map").zoom == 15
        assert session.registry.get("map-full").zoom == 16

    def test_route_empty(self, dashboard_client):
        body = response_json(dashboard_client.post("/api/v1/dashboard/route"))
        assert body == {"points": 0, "message": "No route history for today"}

    def test_route_loaded(self, dashboard_client, session, fake_store):
        now_ms = int(datetime.now().timestamp() * 1000)
        fake_store.logs["devices/vehicle_001/history"] = [
            {"timestamp": now_ms - 1000, "latitude": 14.6, "longitude": 121.0},
            {"timestamp": now_ms, "latitude": 14.7, "longitude": 121.1},
        ]

        body = response_json(dashboard_client.post("/api/v1/dashboard/route"))

        assert body["points"] == 2
        assert session.registry.get("map").path == [(14.6, 121.0), (14.7, 121.1)]

    def test_diagnostics(self, dashboard_client):
        body = response_json(dashboard_client.get("/api/v1/dashboard/diagnostics"))

        assert body["maps"]["overview_map"] is True
        assert body["maps"]["full_marker"] is True
        assert body["gps"]["has_fix"] is False
        assert body["session"]["authenticated"] is True


# ============================================
# Test: Commands and settings
# ============================================

class TestCommandRoutes:

    def test_unconfirmed_command_asks(self, dashboard_client, fake_store):
        response = dashboard_client.post("/api/v1/commands/REBOOT", json={})

        assert response.status_code == 428
        assert response.json()["detail"]["confirm"] == "Are you sure you want to reboot the device?"
        assert fake_store.writes == []

    def test_confirmed_command_written(self, dashboard_client, fake_store):
        body = response_json(dashboard_client.post("/api/v1/commands/REBOOT", json={"confirmed": True}))

        assert body == {"command": "REBOOT", "status": "sent"}
        assert fake_store.writes == [("devices/vehicle_001/commands/pending", "REBOOT")]

    def test_unknown_command_422(self, dashboard_client):
        response = dashboard_client.post("/api/v1/commands/SELF_DESTRUCT", json={"confirmed": True})
        assert response.status_code == 422

    def test_toggle_arm_prompt(self, dashboard_client, fake_store):
        fake_store.records["devices/vehicle_001/status"] = {"systemArmed": True}

        response = dashboard_client.post("/api/v1/commands/toggle-arm", json={})

        assert response.status_code == 428
        assert response.json()["detail"]["confirm"] == "Are you sure you want to disarm the system?"

    def test_toggle_arm_confirmed(self, dashboard_client, fake_store):
        body = response_json(dashboard_client.post("/api/v1/commands/toggle-arm", json={"confirmed": True}))
        assert body["command"] == "ARM"

    def test_store_failure_502(self, dashboard_client, fake_store):
        fake_store.fail_writes = True

        response = dashboard_client.post("/api/v1/commands/ARM", json={"confirmed": True})

        assert response.status_code == 502
        assert "PERMISSION_DENIED" in response.json()["detail"]

    def test_speed_limit_out_of_range(self, dashboard_client):
        response = dashboard_client.put("/api/v1/settings/speed-limit", json={"limit": 250})

        assert response.status_code == 422
        assert response.json()["detail"] == "Please enter a speed limit between 10 and 200 km/h"

    def test_speed_limit_saved(self, dashboard_client, session):
        body = response_json(dashboard_client.put("/api/v1/settings/speed-limit", json={"limit": 100}))

        assert body == {"speed_limit": 100}
        assert session.speed_limit.value == 100

    def test_geofence_saved_then_reboot(self, dashboard_client, fake_store):
        response_json(dashboard_client.put("/api/v1/settings/geofence", json={
            "centerLat": 14.6, "centerLng": 121.0, "radiusMeters": 300, "name": "Depot",
        }))

        assert [path for path, _ in fake_store.writes] == [
            "devices/vehicle_001/geofence/config",
            "devices/vehicle_001/commands/pending",
        ]

    def test_geofence_saved_but_reboot_failed(self, dashboard_client, fake_store):
        fake_store.fail_paths.add("devices/vehicle_001/commands/pending")

        body = response_json(dashboard_client.put("/api/v1/settings/geofence", json={
            "centerLat": 14.6, "centerLng": 121.0, "radiusMeters": 300, "name": "Depot",
        }))

        assert body["saved"] is True
        assert body["rebooted"] is False
        assert "reboot command failed" in body["message"]
        assert [path for path, _ in fake_store.writes] == ["devices/vehicle_001/geofence/config"]

    def test_geofence_write_failure_502(self, dashboard_client, fake_store):
        fake_store.fail_writes = True

        response = dashboard_client.put("/api/v1/settings/geofence", json={
            "centerLat": 14.6, "centerLng": 121.0, "radiusMeters": 300, "name": "Depot",
        })

        assert response.status_code == 502


# ============================================
# Test: Export
# ============================================

class TestExportRoute:

    def test_csv_download(self, dashboard_client):
        response = dashboard_client.get("/api/v1/export/today")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert 'filename="vehicle_data_' in response.headers["content-disposition"]
        assert response.text.splitlines() == ["Timestamp,Latitude,Longitude,Speed,Altitude,Satellites"]


# ============================================
# Test: SSE stream
# ============================================

class TestPatchStream:

    @pytest.mark.asyncio
    async def test_connected_snapshot_then_patches(self, session):
        request = MagicMock()
        request.is_disconnected = AsyncMock(side_effect=[False, True])
        stream = patch_generator(request, session)

        connected = await stream.__anext__()
        snapshot = await stream.__anext__()
        session.board.set_text("speed-limit", "90")
        patch_event = await stream.__anext__()

        assert connected["event"] == "connected"
        assert json.loads(connected["data"])["device_id"] == "vehicle_001"
        assert snapshot["event"] == "snapshot"
        assert patch_event["event"] == "display"
        assert json.loads(patch_event["data"])["text"] == "90"
        assert session.board.listener_count == 1

        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert session.board.listener_count == 0

    def test_heartbeat_is_current_utc(self):
        event = heartbeat_event()
        data = json.loads(event["data"])

        assert event["event"] == "heartbeat"
        assert abs(data["ts_ms"] - time.time() * 1000) < 2000
        assert data["server_ts"].endswith("+00:00")
