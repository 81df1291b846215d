"""
Gateway address lookup for the network the host is currently on.
"""

import ipaddress
import logging
import sys

from .wifi import WiFiBackend

logger = logging.getLogger(__name__)


class GatewayResolutionError(Exception):
    """The active network has no usable gateway address."""


def render_gateway(value: int | None, byteorder: str = sys.byteorder) -> str:
    """Render a 32-bit gateway value in host byte order as a dotted quad.

    On little-endian hosts the first octet sits in the lowest byte, so the
    value is byte-swapped into network order before rendering.
    """
    if value is None:
        raise GatewayResolutionError("No gateway reported")
    if not 0 < value <= 0xFFFFFFFF:
        raise GatewayResolutionError(f"Invalid gateway value: {value}")

    if byteorder == "little":
        value = int.from_bytes(value.to_bytes(4, "little"), "big")

    return str(ipaddress.IPv4Address(value))


def pack_gateway(address: str, byteorder: str = sys.byteorder) -> int:
    """Inverse of render_gateway, used by backends that read a dotted quad."""
    return int.from_bytes(ipaddress.IPv4Address(address).packed, byteorder)


class GatewayResolver:
    def __init__(self, backend: WiFiBackend, byteorder: str = sys.byteorder):
        self.backend = backend
        self.byteorder = byteorder

    async def resolve_gateway(self) -> str:
        """Dotted-quad gateway of the active network.

        Raises:
            GatewayResolutionError: if the backend reports nothing usable
        """
        value = await self.backend.current_gateway_address()
        gateway = render_gateway(value, self.byteorder)
        logger.info(f"Active network gateway: {gateway}")
        return gateway
