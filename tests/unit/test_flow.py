"""
Tests for espeasy_provisioner.core.flow module.
"""

import asyncio
from unittest.mock import MagicMock
from urllib.parse import parse_qsl

import httpx
import pytest

from espeasy_provisioner.core.errors import ErrorCategory
from espeasy_provisioner.core.flow import ProvisioningFlow
from espeasy_provisioner.core.state import ProvisioningState
from espeasy_provisioner.core.transfer import FileTransferClient
from espeasy_provisioner.core.wifi import SavedProfile


@pytest.fixture
def flow(wifi_backend, settings, http_client) -> ProvisioningFlow:
    return ProvisioningFlow(wifi_backend, settings=settings, client=http_client)


class TestProvisioningFlow:
    """Tests for ProvisioningFlow class."""

    def test_initial_state(self, flow):
        """Test a new flow starts disconnected at the AP address."""
        assert flow.state == ProvisioningState.DISCONNECTED
        assert flow.address_state.address == "192.168.4.1"
        assert flow.error is None

    @pytest.mark.asyncio
    async def test_happy_path(self, flow, wifi_backend, device):
        """Test full provisioning re-addresses the device to the gateway."""
        states = []
        flow.on_state_change(lambda old, new: states.append(new))

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.success
        assert result.state == ProvisioningState.PROVISIONED
        assert result.address == "10.0.0.5"
        assert flow.address_state.address == "10.0.0.5"
        assert states == [
            ProvisioningState.JOINING,
            ProvisioningState.JOINED,
            ProvisioningState.SETTING_UP,
            ProvisioningState.POLLING,
            ProvisioningState.RESOLVING,
            ProvisioningState.PROVISIONED,
        ]
        assert wifi_backend.calls == [
            ("add_network_profile", "ESP_Easy_0", "configesp"),
            ("disconnect",),
            ("select_and_connect", "profile-1"),
        ]

    @pytest.mark.asyncio
    async def test_setup_requests(self, flow, device):
        """Test the credential POST and the status POST hit the AP address."""
        await flow.run("HomeNetwork", "hunter22")

        setup_requests = device.requests_to("/setup")
        assert len(setup_requests) == 2

        credentials, check = setup_requests
        assert credentials.url.host == "192.168.4.1"
        assert credentials.headers["content-type"].startswith(
            "application/x-www-form-urlencoded"
        )
        assert parse_qsl(credentials.content.decode()) == [
            ("ssid", "other"),
            ("other", "HomeNetwork"),
            ("pass", "hunter22"),
        ]
        assert check.url.host == "192.168.4.1"
        assert check.content == b""

    @pytest.mark.asyncio
    async def test_ticks(self, flow):
        """Test one tick per window interval before the status check."""
        ticks = []
        flow.on_tick(lambda tick, remaining: ticks.append((tick, remaining)))

        await flow.run("HomeNetwork", "hunter22")

        assert ticks == [(1, 2), (2, 1), (3, 0)]

    @pytest.mark.asyncio
    async def test_status_check_waits_for_window(self, wifi_backend, settings, http_client, device):
        """Test no status POST is sent before the window has elapsed."""
        seen = []

        async def sleep(_):
            seen.append(len(device.requests_to("/setup")))

        flow = ProvisioningFlow(wifi_backend, settings=settings, client=http_client, sleep=sleep)
        await flow.run("HomeNetwork", "hunter22")

        assert seen == [1, 1, 1]
        assert len(device.requests_to("/setup")) == 2

    @pytest.mark.asyncio
    async def test_wrong_credentials(self, flow, device):
        """Test a status body without the marker fails and keeps the address."""
        device.setup_check_body = "<html>Failed to connect</html>"

        result = await flow.run("HomeNetwork", "wrong-pass")

        assert result.state == ProvisioningState.FAILED
        assert result.error.category == ErrorCategory.JOIN_FAILED
        assert result.error.message == "Wrong SSID or password!"
        assert flow.address_state.address == "192.168.4.1"

    @pytest.mark.asyncio
    async def test_setup_timeout(self, flow, device):
        """Test a timed out credential POST fails the flow."""
        device.errors["/setup"] = httpx.ConnectTimeout("timed out")

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.state == ProvisioningState.FAILED
        assert result.error.message == "Connection time out"
        assert len(device.requests_to("/setup")) == 1

    @pytest.mark.asyncio
    async def test_setup_http_error(self, flow, device):
        """Test a non-2xx credential POST fails with the status code."""
        device.setup_status = 500

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.error.category == ErrorCategory.HTTP_STATUS
        assert result.error.message == "HTTP code is 500"
        assert len(device.requests_to("/setup")) == 1

    @pytest.mark.asyncio
    async def test_status_check_transport_error(self, wifi_backend, settings, device):
        """Test a transport failure during the status check is classified."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 2:
                raise httpx.RemoteProtocolError("Server disconnected", request=request)
            return device(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        flow = ProvisioningFlow(wifi_backend, settings=settings, client=client)

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.error.category == ErrorCategory.SERVER_ERROR
        assert result.error.message == "Server error"

    @pytest.mark.asyncio
    async def test_profile_fallback(self, wifi_backend, flow):
        """Test an existing profile is used when a new one cannot be added."""
        wifi_backend.add_result = None
        wifi_backend.saved_profiles = [
            SavedProfile(ssid="HomeNetwork", profile_id="home"),
            SavedProfile(ssid='"ESP_Easy_0"', profile_id="esp-saved"),
        ]

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.success
        assert ("select_and_connect", "esp-saved") in wifi_backend.calls

    @pytest.mark.asyncio
    async def test_profile_creation_failed(self, wifi_backend, flow, device):
        """Test the flow fails when no profile can be obtained."""
        wifi_backend.add_result = None

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.error.category == ErrorCategory.PROFILE_CREATION_FAILED
        assert device.requests == []
        assert not any(call[0] == "select_and_connect" for call in wifi_backend.calls)

    @pytest.mark.asyncio
    async def test_joined_wrong_network(self, wifi_backend, flow, device):
        """Test joining another network than the device AP fails the flow."""
        wifi_backend.connect_to = "NeighbourWiFi"

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.error.category == ErrorCategory.AP_JOIN_FAILED
        assert device.requests == []
        assert wifi_backend.hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_join_timeout(self, wifi_backend, settings, http_client):
        """Test an AP that never shows up fails after the join timeout."""
        wifi_backend.connect_to = None
        settings.join_timeout = 0.05
        flow = ProvisioningFlow(wifi_backend, settings=settings, client=http_client)

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.error.category == ErrorCategory.AP_JOIN_FAILED
        assert wifi_backend.hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_gateway_unresolved(self, wifi_backend, flow):
        """Test an unreadable gateway fails instead of storing a bogus address."""
        wifi_backend.gateway = None

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.state == ProvisioningState.FAILED
        assert result.error.category == ErrorCategory.GATEWAY_UNRESOLVED
        assert flow.address_state.address == "192.168.4.1"

    @pytest.mark.asyncio
    async def test_connect_then_setup(self, flow):
        """Test the two phases can be driven separately."""
        joined = await flow.connect_to_device()

        assert joined.state == ProvisioningState.JOINED
        assert not joined.success

        result = await flow.setup_device("HomeNetwork", "hunter22")

        assert result.success
        assert result.address == "10.0.0.5"

    @pytest.mark.asyncio
    async def test_setup_without_join(self, flow, wifi_backend):
        """Test setup_device works when the host is already on the AP."""
        result = await flow.setup_device("HomeNetwork", "hunter22")

        assert result.success
        assert wifi_backend.calls == []

    @pytest.mark.asyncio
    async def test_terminal_flow_cannot_rerun(self, flow):
        """Test a finished flow rejects another run."""
        await flow.run("HomeNetwork", "hunter22")

        with pytest.raises(RuntimeError):
            await flow.run("HomeNetwork", "hunter22")

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, wifi_backend, settings, http_client):
        """Test a second run while one is in progress is rejected."""
        gate = asyncio.Event()

        async def sleep(_):
            await gate.wait()

        flow = ProvisioningFlow(wifi_backend, settings=settings, client=http_client, sleep=sleep)
        first = asyncio.create_task(flow.run("HomeNetwork", "hunter22"))
        while flow.state != ProvisioningState.POLLING:
            await asyncio.sleep(0)

        with pytest.raises(RuntimeError):
            await flow.run("OtherNetwork", "password1")

        gate.set()
        result = await first
        assert result.success

    @pytest.mark.asyncio
    async def test_abandon_releases_watcher(self, wifi_backend, settings, http_client):
        """Test cancelling the flow while joining leaves no subscription behind."""
        wifi_backend.connect_to = None
        settings.join_timeout = None
        flow = ProvisioningFlow(wifi_backend, settings=settings, client=http_client)

        task = asyncio.create_task(flow.run("HomeNetwork", "hunter22"))
        while wifi_backend.hub.subscriber_count == 0:
            await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert wifi_backend.hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_empty_ssid_rejected(self, flow):
        """Test an empty target SSID is a programming error."""
        with pytest.raises(ValueError):
            await flow.run("", "hunter22")

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_flow(self, flow):
        """Test observer errors are logged, not propagated."""
        flow.on_state_change(MagicMock(side_effect=Exception("boom")))

        result = await flow.run("HomeNetwork", "hunter22")

        assert result.success

    @pytest.mark.asyncio
    async def test_transfer_follows_new_address(self, flow, settings, http_client, device):
        """Test uploads after provisioning target the resolved gateway."""
        await flow.run("HomeNetwork", "hunter22")
        client = FileTransferClient(flow.address_state, settings=settings, client=http_client)

        assert await client.upload_config(b"\x01\x02") is None
        assert device.requests_to("/upload")[0].url.host == "10.0.0.5"

    def test_transfer_client_cannot_write_address(self, flow):
        """Test only the flow may write the shared address."""
        with pytest.raises(RuntimeError):
            flow.address_state.update("10.0.0.9", object())
