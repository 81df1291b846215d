"""
Provisioning state machine.

DISCONNECTED -> JOINING -> JOINED -> SETTING_UP -> POLLING -> RESOLVING -> PROVISIONED
with FAILED reachable from every non-terminal state.

Each state has one handler that awaits a single suspension point (WiFi join,
HTTP response or the setup window) and returns the next state. The device
is never asked directly whether the target network accepted it while the
host is switching networks; instead it is asked through /setup once the
fixed settle window has elapsed.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from .config import Settings, get_settings
from .device_http import DeviceHttp
from .errors import (
    MESSAGE_AP_JOIN_FAILED,
    MESSAGE_GATEWAY_UNRESOLVED,
    MESSAGE_WRONG_CREDENTIALS,
    ErrorCategory,
    ErrorReport,
)
from .gateway import GatewayResolutionError, GatewayResolver
from .join_watcher import NetworkJoinWatcher
from .state import (
    AddressState,
    DeviceEndpoint,
    ProvisioningResult,
    ProvisioningState,
    SetupAttempt,
)
from .wifi import WiFiBackend

logger = logging.getLogger(__name__)

SETUP_PATH = "/setup"
SETUP_SUCCESS_MARKER = "ESP is connected"


class ProvisioningFlow:
    """Drives one device from its setup Access Point onto the target network."""

    def __init__(
        self,
        backend: WiFiBackend,
        settings: Settings | None = None,
        address_state: AddressState | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.backend = backend
        self.address_state = address_state or AddressState(
            DeviceEndpoint.from_settings(self.settings)
        )
        self.address_state.claim(self)
        self.http = DeviceHttp(self.address_state, client, timeout=self.settings.http_timeout)
        self.resolver = GatewayResolver(backend)
        self._sleep = sleep

        self._state = ProvisioningState.DISCONNECTED
        self.error: ErrorReport | None = None
        self._profile_id: str | None = None
        self._attempt: SetupAttempt | None = None
        self._watcher: NetworkJoinWatcher | None = None
        self._lock = asyncio.Lock()
        self._callbacks: dict[str, list[Any]] = {}

        self._handlers: dict[ProvisioningState, Callable[[], Awaitable[ProvisioningState]]] = {
            ProvisioningState.DISCONNECTED: self._select_profile,
            ProvisioningState.JOINING: self._join_access_point,
            ProvisioningState.JOINED: self._submit_credentials,
            ProvisioningState.SETTING_UP: self._start_window,
            ProvisioningState.POLLING: self._run_window,
            ProvisioningState.RESOLVING: self._check_setup,
        }

    @property
    def state(self) -> ProvisioningState:
        return self._state

    @property
    def endpoint(self) -> DeviceEndpoint:
        return self.address_state.endpoint

    def on_state_change(self, callback: Any) -> None:
        """Register a callback(old_state, new_state)."""
        self._callbacks.setdefault("state_change", []).append(callback)

    def on_tick(self, callback: Any) -> None:
        """Register a callback(tick, remaining) fired once per setup window tick."""
        self._callbacks.setdefault("tick", []).append(callback)

    async def _trigger_callbacks(self, event: str, *args) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(*args)
                else:
                    callback(*args)
            except Exception as e:
                logger.error(f"Callback error for {event}: {e}")

    async def _transition(self, new_state: ProvisioningState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Provisioning: {old_state.value} -> {new_state.value}")
        await self._trigger_callbacks("state_change", old_state, new_state)

    def _fail(self, report: ErrorReport) -> ProvisioningState:
        self.error = report
        logger.error(f"Provisioning failed in {self._state.value}: {report.message}")
        return ProvisioningState.FAILED

    def _result(self) -> ProvisioningResult:
        return ProvisioningResult(
            state=self._state, address=self.address_state.address, error=self.error
        )

    async def _drive(self, stop_at: ProvisioningState | None = None) -> ProvisioningResult:
        try:
            while not self._state.is_terminal and self._state != stop_at:
                next_state = await self._handlers[self._state]()
                await self._transition(next_state)
        finally:
            # Abandoned or finished, no watcher may outlive the run
            if self._watcher is not None:
                self._watcher.cancel()
        return self._result()

    async def connect_to_device(self) -> ProvisioningResult:
        """Join the device's setup Access Point."""
        self._ensure_idle()
        async with self._lock:
            self._require_state(ProvisioningState.DISCONNECTED)
            return await self._drive(stop_at=ProvisioningState.JOINED)

    async def setup_device(self, ssid: str, password: str) -> ProvisioningResult:
        """Send target network credentials and confirm the device joined it.

        Expects the host to be on the device Access Point already, either via
        connect_to_device() or by other means.
        """
        attempt = self._new_attempt(ssid, password)
        self._ensure_idle()
        async with self._lock:
            self._require_state(ProvisioningState.DISCONNECTED, ProvisioningState.JOINED)
            self._attempt = attempt
            if self._state == ProvisioningState.DISCONNECTED:
                logger.info("Assuming host is already on the device Access Point")
                await self._transition(ProvisioningState.JOINED)
            return await self._drive()

    async def run(self, ssid: str, password: str) -> ProvisioningResult:
        """Full provisioning: join the Access Point, set up, confirm, re-address."""
        attempt = self._new_attempt(ssid, password)
        self._ensure_idle()
        async with self._lock:
            self._require_state(ProvisioningState.DISCONNECTED)
            self._attempt = attempt
            return await self._drive()

    def _ensure_idle(self) -> None:
        if self._lock.locked():
            raise RuntimeError("Provisioning already in progress")

    def _require_state(self, *allowed: ProvisioningState) -> None:
        if self._state not in allowed:
            raise RuntimeError(f"Operation not allowed in state {self._state.value}")

    def _new_attempt(self, ssid: str, password: str) -> SetupAttempt:
        if not ssid:
            raise ValueError("Target SSID must not be empty")
        return SetupAttempt(
            ssid=ssid,
            password=password,
            deadline_ticks=self.settings.setup_window_ticks,
            tick_interval=self.settings.setup_tick_interval,
        )

    async def _select_profile(self) -> ProvisioningState:
        ap_ssid = self.endpoint.ap_ssid
        profile_id = await self.backend.add_network_profile(ap_ssid, self.endpoint.ap_passphrase)
        if profile_id is None:
            logger.info(f"Could not add profile for {ap_ssid}, looking for a saved one")
            profile_id = await self.backend.find_saved_profile(ap_ssid)

        if profile_id is None:
            return self._fail(
                ErrorReport(
                    category=ErrorCategory.PROFILE_CREATION_FAILED,
                    message=f"No usable WiFi profile for {ap_ssid}",
                )
            )

        self._profile_id = profile_id
        logger.info(f"Using WiFi profile '{profile_id}' for {ap_ssid}")
        return ProvisioningState.JOINING

    async def _join_access_point(self) -> ProvisioningState:
        self._watcher = NetworkJoinWatcher(self.backend, timeout=self.settings.join_timeout)
        try:
            # Arm before switching networks so the association event cannot be missed
            await self._watcher.arm(self.endpoint.ap_ssid)
            await self.backend.disconnect()
            await self.backend.select_and_connect(self._profile_id)
            joined = await self._watcher.wait()
        finally:
            self._watcher.cancel()

        if not joined:
            return self._fail(
                ErrorReport(category=ErrorCategory.AP_JOIN_FAILED, message=MESSAGE_AP_JOIN_FAILED)
            )
        return ProvisioningState.JOINED

    async def _submit_credentials(self) -> ProvisioningState:
        attempt = self._attempt
        if attempt is None:
            raise RuntimeError("No setup attempt configured")

        logger.info(f"Sending credentials for '{attempt.ssid}' to {self.address_state.address}")
        _, report = await self.http.post(
            SETUP_PATH,
            data={"ssid": "other", "other": attempt.ssid, "pass": attempt.password},
        )
        if report is not None:
            return self._fail(report)
        return ProvisioningState.SETTING_UP

    async def _start_window(self) -> ProvisioningState:
        attempt = self._attempt
        logger.info(
            f"Device accepted credentials, checking again in "
            f"{attempt.deadline_ticks * attempt.tick_interval:.0f}s"
        )
        return ProvisioningState.POLLING

    async def _run_window(self) -> ProvisioningState:
        attempt = self._attempt
        for tick in range(1, attempt.deadline_ticks + 1):
            await self._sleep(attempt.tick_interval)
            await self._trigger_callbacks("tick", tick, attempt.deadline_ticks - tick)
        return ProvisioningState.RESOLVING

    async def _check_setup(self) -> ProvisioningState:
        response, report = await self.http.post(SETUP_PATH)
        if report is not None:
            return self._fail(report)

        if SETUP_SUCCESS_MARKER not in response.text:
            logger.debug(f"Setup status body: {response.text[:200]!r}")
            return self._fail(
                ErrorReport(category=ErrorCategory.JOIN_FAILED, message=MESSAGE_WRONG_CREDENTIALS)
            )

        try:
            gateway = await self.resolver.resolve_gateway()
        except GatewayResolutionError as e:
            logger.error(f"Device joined but its address is unknown: {e}")
            return self._fail(
                ErrorReport(
                    category=ErrorCategory.GATEWAY_UNRESOLVED, message=MESSAGE_GATEWAY_UNRESOLVED
                )
            )

        self.address_state.update(gateway, self)
        return ProvisioningState.PROVISIONED
