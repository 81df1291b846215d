"""
Core modules for ESPEasy device provisioning.
"""

from .config import Settings, get_settings
from .errors import ErrorCategory, ErrorReport
from .flow import ProvisioningFlow
from .network_manager import NmcliWiFiBackend
from .state import AddressState, DeviceEndpoint, ProvisioningResult, ProvisioningState
from .transfer import FileTransferClient, UploadJob

__all__ = [
    "Settings",
    "get_settings",
    "ErrorCategory",
    "ErrorReport",
    "ProvisioningFlow",
    "NmcliWiFiBackend",
    "AddressState",
    "DeviceEndpoint",
    "ProvisioningResult",
    "ProvisioningState",
    "FileTransferClient",
    "UploadJob",
]
