"""Tests for the parsed status model and its derived fields."""
from __future__ import annotations

import pytest

from tasmota_plug_exporter import (
    DeviceInfo,
    DeviceStatus,
    StateInfo,
    TasmotaDataError,
)


def _status(friendly=(), device_name="Tasmota", identity_power="", runtime_power=""):
    return DeviceStatus(
        info=DeviceInfo(device_name=device_name, friendly_names=tuple(friendly), power=identity_power),
        state=StateInfo(power=runtime_power),
    )


class TestDisplayName:
    def test_prefers_friendly_name(self):
        assert _status(friendly=["Living Room Plug"]).display_name() == "Living Room Plug"

    def test_empty_friendly_name_falls_back(self):
        assert _status(friendly=[""]).display_name() == "Tasmota"

    def test_missing_friendly_names_falls_back(self):
        assert _status(friendly=[]).display_name() == "Tasmota"

    def test_first_entry_wins(self):
        assert _status(friendly=["Desk", "Other"]).display_name() == "Desk"

    def test_skips_empty_entries(self):
        assert _status(friendly=["", "Kitchen"]).display_name() == "Kitchen"

    def test_all_entries_empty_falls_back(self):
        assert _status(friendly=["", ""]).display_name() == "Tasmota"


class TestRelayState:
    @pytest.mark.parametrize(
        "runtime,identity,expected",
        [
            ("ON", "1", 1.0),
            ("ON", "0", 1.0),
            ("ON", "", 1.0),
            ("OFF", "1", 1.0),
            ("", "1", 1.0),
            ("OFF", "0", 0.0),
            ("", "", 0.0),
        ],
    )
    def test_either_flag_turns_relay_on(self, runtime, identity, expected):
        assert _status(identity_power=identity, runtime_power=runtime).relay_state() == expected


class TestFromDict:
    def test_full_document(self, status_response):
        status = DeviceStatus.from_dict(status_response)

        assert status.info.friendly_names == ("Test Plug",)
        assert status.info.power == "1"
        assert status.energy.factor == 0.91
        assert status.energy.current == 0.213
        assert status.state.power == "ON"
        assert status.state.wifi.rssi == 80

    def test_missing_sections_are_zero(self):
        status = DeviceStatus.from_dict({})

        assert status.display_name() == ""
        assert status.energy.total == 0.0
        assert status.state.uptime_sec == 0
        assert status.relay_state() == 0.0

    def test_status_is_frozen(self, status_response):
        status = DeviceStatus.from_dict(status_response)

        with pytest.raises(AttributeError):
            status.time = "later"

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            "Status",
            {"Status": []},
            {"Status": {"FriendlyName": "Plug"}},
            {"Status": {"Power": 1}},
            {"StatusSNS": {"ENERGY": {"Total": "1.0"}}},
            {"StatusSNS": {"ENERGY": {"Power": True}}},
            {"StatusSTS": {"UptimeSec": 12.5}},
            {"StatusSTS": {"Wifi": "strong"}},
        ],
    )
    def test_wrong_types_fail(self, payload):
        with pytest.raises(TasmotaDataError):
            DeviceStatus.from_dict(payload)
