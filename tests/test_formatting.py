"""
Display formatting tests.

Run with: pytest tests/test_formatting.py -v
"""
from datetime import datetime, timezone

import pytest

from tracker.schemas import DeviceStatus, GeofenceState
from tracker.services.formatting import (
    connection_color,
    epoch_to_datetime,
    format_timestamp,
    format_uptime,
    geofence_text,
    status_label,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestEpochHeuristic:

    def test_milliseconds(self):
        assert epoch_to_datetime(1706000000000) == datetime(2024, 1, 23, 8, 53, 20, tzinfo=timezone.utc)

    def test_seconds(self):
        assert epoch_to_datetime(1706000000) == datetime(2024, 1, 23, 8, 53, 20, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [123456, 1_000_000_000])
    def test_small_values_mean_now(self, value):
        assert epoch_to_datetime(value, now=NOW) == NOW


class TestFormatTimestamp:

    @pytest.mark.parametrize("value", [None, "", 0])
    def test_missing_is_unknown(self, value):
        assert format_timestamp(value) == "Unknown"

    def test_string_passes_through(self):
        assert format_timestamp("Yesterday 10:00") == "Yesterday 10:00"

    def test_epoch_rendered_in_local_time(self):
        expected = datetime.fromtimestamp(1706000000).strftime("%m/%d/%Y, %I:%M:%S %p")
        assert format_timestamp(1706000000000) == expected


def test_uptime():
    assert format_uptime(0) == "0h 0m"
    assert format_uptime(90061) == "25h 1m"


def test_status_label_and_colour():
    assert status_label("offline", "WiFi") == "Offline (WiFi)"
    assert connection_color("GSM") == "#f59e0b"
    assert connection_color("WiFi") == "#10b981"


def test_geofence_rounds_distance():
    assert geofence_text("Depot", 449.5, False) == "Outside Depot (450m)"


class TestPayloadDefaults:

    def test_status_nulls_use_defaults(self):
        status = DeviceStatus.model_validate({"status": None, "connection": None, "systemArmed": None})
        assert (status.oper_state, status.connection_type, status.system_armed) == ("unknown", "WiFi", False)

    @pytest.mark.parametrize("distance", ["far", -5, float("nan"), None])
    def test_unusable_distance_is_zero(self, distance):
        assert GeofenceState.model_validate({"distance": distance}).distance_meters == 0.0

    def test_geofence_name_aliases(self):
        assert GeofenceState.model_validate({"name": "Office"}).zone_name == "Office"
        assert GeofenceState.model_validate({"fence": ""}).zone_name == "Home Zone"
