"""
Provisioning states and the device address holder.
"""

import ipaddress
import logging
import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import DEFAULT_AP_PASSWORD, DEFAULT_AP_SSID, DEFAULT_DEVICE_ADDRESS, Settings
from .errors import ErrorReport

logger = logging.getLogger(__name__)

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def is_valid_address(address: str) -> bool:
    """Check that address is a dotted quad or a hostname usable as an HTTP authority."""
    if not address or len(address) > 253:
        return False

    try:
        ipaddress.IPv4Address(address)
        return True
    except ValueError:
        pass

    # All-numeric dotted strings that failed above are malformed IPs, not hostnames
    if re.fullmatch(r"[0-9.]+", address):
        return False

    return all(_HOSTNAME_LABEL.match(label) for label in address.rstrip(".").split("."))


class ProvisioningState(str, Enum):
    """Provisioning flow states."""

    DISCONNECTED = "DISCONNECTED"
    JOINING = "JOINING"
    JOINED = "JOINED"
    SETTING_UP = "SETTING_UP"
    POLLING = "POLLING"
    RESOLVING = "RESOLVING"
    PROVISIONED = "PROVISIONED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProvisioningState.PROVISIONED, ProvisioningState.FAILED)


class DeviceEndpoint(BaseModel):
    """Where the device lives and how to reach its setup Access Point."""

    model_config = ConfigDict(validate_assignment=True)

    address: str = DEFAULT_DEVICE_ADDRESS
    ap_ssid: str = DEFAULT_AP_SSID
    ap_passphrase: str = DEFAULT_AP_PASSWORD

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not is_valid_address(value):
            raise ValueError(f"Not a usable device address: {value!r}")
        return value

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeviceEndpoint":
        return cls(
            address=settings.device_address,
            ap_ssid=settings.ap_ssid,
            ap_passphrase=settings.ap_password,
        )


class AddressState:
    """
    Holds the address used for every device request.

    Single writer: the first object to claim() the state is the only one
    allowed to update() it, and it may do so once. Everyone else only reads.
    """

    def __init__(self, endpoint: DeviceEndpoint | None = None):
        self.endpoint = endpoint or DeviceEndpoint()
        self._writer: object | None = None
        self._updated = False

    @property
    def address(self) -> str:
        return self.endpoint.address

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    @property
    def updated(self) -> bool:
        return self._updated

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def claim(self, writer: object) -> None:
        if self._writer is not None and self._writer is not writer:
            raise RuntimeError("Device address already has a writer")
        self._writer = writer

    def update(self, address: str, writer: object) -> None:
        if writer is not self._writer:
            raise RuntimeError("Only the claiming writer may update the device address")
        if self._updated:
            raise RuntimeError("Device address was already updated")

        old_address = self.endpoint.address
        # validate_assignment rejects malformed addresses before anything changes
        self.endpoint.address = address
        self._updated = True
        logger.info(f"Device address changed: {old_address} -> {address}")


class SetupAttempt(BaseModel):
    """One setup confirmation window."""

    ssid: str
    password: str = Field(repr=False)
    deadline_ticks: int = Field(default=30, ge=1)
    tick_interval: float = Field(default=1.0, ge=0.0)


class ProvisioningResult(BaseModel):
    """Outcome of a provisioning run."""

    state: ProvisioningState
    address: str
    error: ErrorReport | None = None

    @property
    def success(self) -> bool:
        return self.state == ProvisioningState.PROVISIONED
