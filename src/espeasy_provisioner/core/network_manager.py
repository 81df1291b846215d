"""NetworkManager (nmcli) implementation of the WiFi backend."""

import asyncio
import contextlib
import logging
import re
import time

from .gateway import pack_gateway
from .wifi import JoinEvent, LinkStateHub, LinkStateSubscription, SavedProfile, WiFiBackend

logger = logging.getLogger(__name__)

_UUID_PATTERN = re.compile(r"\(([0-9a-fA-F-]{36})\)")


class NmcliWiFiBackend(WiFiBackend):
    def __init__(self, wifi_device: str | None = None):
        self.wifi_device: str | None = wifi_device
        self._device_cache_time = time.time() if wifi_device else 0.0
        self._device_cache_timeout = 300
        self._hub = LinkStateHub(snapshot=self._snapshot, on_idle=self._stop_monitor)
        self._monitor_task: asyncio.Task | None = None
        self._monitor_process: asyncio.subprocess.Process | None = None

    async def _run_command(self, cmd: list[str]) -> tuple[int | None, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await process.communicate()

            return (
                process.returncode,
                stdout.decode("utf-8").strip(),
                stderr.decode("utf-8").strip(),
            )
        except Exception as e:
            logger.error(f"Command execution failed: {e}")
            return (1, "", str(e))

    async def _detect_wifi_device(self) -> None:
        current_time = time.time()
        if (
            self.wifi_device
            and (current_time - self._device_cache_time) < self._device_cache_timeout
        ):
            return

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"]
        )

        if returncode != 0:
            logger.error("Failed to get network devices")
            return

        wifi_devices = []
        for line in stdout.split("\n"):
            if not line:
                continue
            parts = line.split(":")
            if len(parts) >= 3:
                device, dev_type, state = parts[0], parts[1], parts[2]
                if dev_type == "wifi":
                    wifi_devices.append((device, state))

        # Priority: connected > disconnected > unavailable
        for device, state in wifi_devices:
            if state == "connected":
                self.wifi_device = device
                break
        else:
            for device, state in wifi_devices:
                if state == "disconnected":
                    self.wifi_device = device
                    break
            else:
                if wifi_devices:
                    self.wifi_device = wifi_devices[0][0]

        self._device_cache_time = current_time

    def _validate_ssid(self, ssid: str) -> bool:
        """Validate SSID to prevent injection attacks."""

        # Check length (WiFi spec: 1-32 chars)
        if not ssid or len(ssid) > 32:
            logger.error(f"Invalid SSID length: {len(ssid)}")
            return False

        # Allow only safe characters: alphanumeric, spaces, hyphens, underscores, dots
        safe_ssid_pattern = re.compile(r"^[a-zA-Z0-9\s\-_.]+$")
        if not safe_ssid_pattern.match(ssid):
            logger.error(f"SSID contains invalid characters: {ssid}")
            return False

        return True

    async def _device_field(self, field: str) -> str | None:
        """Read one `nmcli device show` field for the WiFi device."""
        await self._detect_wifi_device()
        if not self.wifi_device:
            return None

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", field, "device", "show", self.wifi_device]
        )
        if returncode != 0:
            return None

        for line in stdout.split("\n"):
            # Multi-valued fields are suffixed, e.g. IP4.ADDRESS[1]
            if line.startswith(f"{field}:") or line.startswith(f"{field}["):
                value = line.split(":", 1)[1].strip()
                if value and value != "--":
                    return value
        return None

    async def add_network_profile(self, ssid: str, psk: str) -> str | None:
        if not self._validate_ssid(ssid):
            return None

        if len(psk) < 8 or len(psk) > 63:
            logger.error(f"Invalid WPA password length: {len(psk)}")
            return None

        await self._detect_wifi_device()
        if not self.wifi_device:
            logger.error("No WiFi device available")
            return None

        for profile in await self.list_saved_profiles():
            if profile.ssid != ssid:
                continue
            returncode, _, stderr = await self._run_command(
                [
                    "nmcli",
                    "connection",
                    "modify",
                    profile.profile_id,
                    "802-11-wireless-security.key-mgmt",
                    "wpa-psk",
                    "802-11-wireless-security.psk",
                    psk,
                ]
            )
            if returncode == 0:
                logger.info(f"Reusing connection profile for {ssid}: {profile.profile_id}")
                return profile.profile_id
            logger.warning(f"Could not update profile {profile.profile_id}: {stderr}")

        returncode, stdout, stderr = await self._run_command(
            [
                "nmcli",
                "connection",
                "add",
                "type",
                "wifi",
                "con-name",
                ssid,
                "ifname",
                self.wifi_device,
                "ssid",
                ssid,
                "802-11-wireless-security.key-mgmt",
                "wpa-psk",
                "802-11-wireless-security.psk",
                psk,
            ]
        )
        if returncode != 0:
            logger.error(f"Failed to create connection profile: {stderr}")
            return None

        match = _UUID_PATTERN.search(stdout)
        profile_id = match.group(1) if match else ssid
        logger.info(f"Created connection profile for {ssid}: {profile_id}")
        return profile_id

    async def list_saved_profiles(self) -> list[SavedProfile]:
        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", "NAME,UUID,TYPE", "connection", "show"]
        )
        if returncode != 0:
            logger.error("Failed to list network connections")
            return []

        profiles = []
        for line in stdout.split("\n"):
            parts = line.rsplit(":", 2)
            if len(parts) != 3 or "wireless" not in parts[2]:
                continue
            name, uuid = parts[0], parts[1]

            returncode, ssid_out, _ = await self._run_command(
                ["nmcli", "-t", "-f", "802-11-wireless.ssid", "connection", "show", uuid]
            )
            ssid = name
            if returncode == 0:
                for ssid_line in ssid_out.split("\n"):
                    if ssid_line.startswith("802-11-wireless.ssid:"):
                        ssid = ssid_line.split(":", 1)[1].strip() or name
                        break
            profiles.append(SavedProfile(ssid=ssid, profile_id=uuid))

        return profiles

    async def select_and_connect(self, profile_id: str) -> None:
        logger.info(f"Activating connection profile {profile_id}")
        returncode, _, stderr = await self._run_command(["nmcli", "connection", "up", profile_id])
        if returncode != 0:
            # The join watcher decides; this only explains the outcome in the log
            logger.error(f"Failed to activate {profile_id}: {stderr[:100]}")

    async def disconnect(self) -> None:
        connection = await self._device_field("GENERAL.CONNECTION")
        if connection:
            await self._run_command(["nmcli", "connection", "down", connection])
            logger.info(f"Disconnected from: {connection}")

    async def current_ssid(self) -> str | None:
        connection = await self._device_field("GENERAL.CONNECTION")
        if not connection:
            return None

        returncode, stdout, _ = await self._run_command(
            ["nmcli", "-t", "-f", "802-11-wireless.ssid", "connection", "show", connection]
        )
        if returncode == 0:
            for line in stdout.split("\n"):
                if line.startswith("802-11-wireless.ssid:"):
                    ssid = line.split(":", 1)[1].strip()
                    if ssid:
                        return ssid
        return None

    async def current_gateway_address(self) -> int | None:
        gateway = await self._device_field("IP4.GATEWAY")
        if not gateway:
            return None
        try:
            return pack_gateway(gateway)
        except ValueError:
            logger.error(f"Unparseable gateway from nmcli: {gateway}")
            return None

    async def _snapshot(self) -> JoinEvent:
        state = await self._device_field("GENERAL.STATE") or ""
        connected = "(connected)" in state
        return JoinEvent(
            ssid_observed=await self.current_ssid() if connected else None,
            connected=connected,
        )

    async def subscribe_link_state_changes(self) -> LinkStateSubscription:
        await self._detect_wifi_device()
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor_events())
        return await self._hub.subscribe()

    def _stop_monitor(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        self._monitor_task = None

    async def _handle_monitor_line(self, event: str) -> None:
        if not self.wifi_device or not event.startswith(f"{self.wifi_device}:"):
            return

        status = event.split(":", 1)[1].strip().lower()
        if status == "connected":
            ssid = await self.current_ssid()
            logger.info(f"WiFi device {self.wifi_device} connected to {ssid}")
            self._hub.publish(JoinEvent(ssid_observed=ssid, connected=True))
        elif status in ("disconnected", "unavailable"):
            logger.info(f"WiFi device {self.wifi_device} {status}")
            self._hub.publish(JoinEvent(connected=False))

    async def _monitor_events(self) -> None:
        """Translate `nmcli monitor` device lines into link-state events."""
        logger.debug("Starting NetworkManager event monitor")

        try:
            while self._hub.subscriber_count:
                try:
                    self._monitor_process = await asyncio.create_subprocess_exec(
                        "nmcli",
                        "monitor",
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                    )

                    while True:
                        line = await self._monitor_process.stdout.readline()
                        if not line:
                            logger.warning("NetworkManager monitor process ended, restarting...")
                            await self._reap_monitor_process()
                            break

                        event = line.decode("utf-8").strip()
                        if event:
                            logger.debug(f"NetworkManager event: {event}")
                            await self._handle_monitor_line(event)

                except Exception as e:
                    logger.error(f"NetworkManager monitor error: {e}", exc_info=True)
                    await self._reap_monitor_process()

                await asyncio.sleep(1)
        finally:
            await self._reap_monitor_process()
            logger.debug("NetworkManager event monitor stopped")

    async def _reap_monitor_process(self) -> None:
        process, self._monitor_process = self._monitor_process, None
        if process is None:
            return
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
        # Wait even when the monitor task is being cancelled, or the child is left a zombie
        await asyncio.shield(process.wait())
