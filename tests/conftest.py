"""
Pytest configuration and shared fixtures for ESPEasy Provisioner tests.
"""

import json
import os

import httpx
import pytest

from espeasy_provisioner.core.config import Settings
from espeasy_provisioner.core.gateway import pack_gateway
from espeasy_provisioner.core.wifi import (
    JoinEvent,
    LinkStateHub,
    LinkStateSubscription,
    SavedProfile,
    WiFiBackend,
)


# ============================================================================
# Fake WiFi Backend
# ============================================================================


class FakeWiFiBackend(WiFiBackend):
    """Scripted WiFi collaborator.

    select_and_connect() publishes a disconnect followed by a connect to
    `connect_to` (reported quoted, the way some platforms do).
    """

    def __init__(
        self,
        current_ssid: str | None = "HomeNetwork",
        connect_to: str | None = "ESP_Easy_0",
        gateway: str | None = "10.0.0.5",
        add_result: str | None = "profile-1",
        saved_profiles: list[SavedProfile] | None = None,
    ):
        self.current_ssid = current_ssid
        self.connect_to = connect_to
        self.gateway = gateway
        self.add_result = add_result
        self.saved_profiles = saved_profiles or []
        self.calls: list[tuple] = []
        self.hub = LinkStateHub(snapshot=self._snapshot)

    async def _snapshot(self) -> JoinEvent:
        return JoinEvent(
            ssid_observed=self.current_ssid, connected=self.current_ssid is not None
        )

    async def add_network_profile(self, ssid: str, psk: str) -> str | None:
        self.calls.append(("add_network_profile", ssid, psk))
        return self.add_result

    async def list_saved_profiles(self) -> list[SavedProfile]:
        self.calls.append(("list_saved_profiles",))
        return self.saved_profiles

    async def select_and_connect(self, profile_id: str) -> None:
        self.calls.append(("select_and_connect", profile_id))
        if self.connect_to is None:
            return
        self.current_ssid = self.connect_to
        self.hub.publish(JoinEvent(ssid_observed=f'"{self.connect_to}"', connected=True))

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.current_ssid = None
        self.hub.publish(JoinEvent(connected=False))

    async def subscribe_link_state_changes(self) -> LinkStateSubscription:
        return await self.hub.subscribe()

    async def current_gateway_address(self) -> int | None:
        if self.gateway is None:
            return None
        return pack_gateway(self.gateway)


@pytest.fixture
def wifi_backend() -> FakeWiFiBackend:
    return FakeWiFiBackend()


# ============================================================================
# Fake ESPEasy Device (HTTP)
# ============================================================================


class FakeDevice:
    """httpx.MockTransport handler emulating the ESPEasy web server."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.setup_status = 200
        self.setup_check_body = "<html>ESP is connected to HomeNetwork</html>"
        self.upload_status = 200
        self.upload_body = "Upload OK! Restarting."
        self.json_body: str = json.dumps(
            {"System": {"Build": 20000, "Unit": 1}, "WiFi": {"RSSI": -60}}
        )
        self.errors: dict[str, Exception] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.errors:
            raise self.errors[path]

        if path == "/setup":
            if request.content:
                return httpx.Response(self.setup_status, text="<html>Connecting...</html>")
            return httpx.Response(200, text=self.setup_check_body)
        if path == "/upload":
            return httpx.Response(self.upload_status, text=self.upload_body)
        if path == "/json":
            return httpx.Response(200, text=self.json_body)
        return httpx.Response(404, text="Not found")

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def http_client(device: FakeDevice) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(device))


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with a short, instant setup window."""
    return Settings(
        _env_file=None,
        setup_window_ticks=3,
        setup_tick_interval=0.0,
        join_timeout=1.0,
        log_dir=tmp_path / "log",
    )


# ============================================================================
# Clean Environment Fixture
# ============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Ensure clean environment for each test."""
    for key in list(os.environ.keys()):
        if key.startswith("ESPEASY_"):
            monkeypatch.delenv(key, raising=False)
