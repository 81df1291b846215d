"""ESPEasy Provisioner.

Async WiFi provisioning and file transfer client for ESPEasy devices.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("espeasy-provisioner")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
