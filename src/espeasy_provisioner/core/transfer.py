"""
Configuration, rules and firmware uploads plus the JSON status query.
"""

import json
import logging
from pathlib import Path
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict

from .config import Settings, get_settings
from .device_http import DeviceHttp
from .errors import (
    MESSAGE_UPLOAD_REJECTED,
    ErrorCategory,
    ErrorReport,
    HttpOutcome,
    classify,
)
from .multipart import MultipartEncoder
from .state import AddressState

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/upload"
STATUS_PATH = "/json"
UPLOAD_SUCCESS_MARKER = "Upload OK!"

CONFIG_FILE = "config.dat"
RULES_FILE = "rules1.txt"
FIRMWARE_FILE = "firmware.bin"

UploadFileName = Literal["config.dat", "rules1.txt", "firmware.bin"]


class UploadJob(BaseModel):
    """One file destined for the device's /upload endpoint."""

    model_config = ConfigDict(frozen=True)

    file_name: UploadFileName
    payload: bytes

    def __repr__(self) -> str:
        return f"UploadJob(file_name={self.file_name!r}, size={len(self.payload)})"


class FileTransferClient:
    """
    Talks to a provisioned device.

    The device address is only read from AddressState, never written, so
    uploads automatically follow the address the provisioning flow settled on.
    """

    def __init__(
        self,
        address_state: AddressState,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        encoder: MultipartEncoder | None = None,
    ):
        self.settings = settings or get_settings()
        self.address_state = address_state
        self.http = DeviceHttp(address_state, client, timeout=self.settings.http_timeout)
        self.encoder = encoder or MultipartEncoder()

    async def upload_config(self, payload: bytes) -> ErrorReport | None:
        return await self.upload(UploadJob(file_name=CONFIG_FILE, payload=payload))

    async def upload_rules(self, payload: bytes) -> ErrorReport | None:
        return await self.upload(UploadJob(file_name=RULES_FILE, payload=payload))

    async def upload_firmware(self, payload: bytes) -> ErrorReport | None:
        return await self.upload(UploadJob(file_name=FIRMWARE_FILE, payload=payload))

    async def upload(self, job: UploadJob) -> ErrorReport | None:
        """Upload one file.

        Returns:
            None on success, otherwise the ErrorReport describing the failure
        """
        multipart = self.encoder.encode(job.file_name, job.payload)
        logger.info(
            f"Uploading {job.file_name} ({len(job.payload)} bytes) to {self.address_state.address}"
        )

        response, report = await self.http.post(
            UPLOAD_PATH,
            content=multipart.body,
            headers=multipart.headers,
            timeout=self.settings.upload_timeout,
        )
        if report is not None:
            return report

        body_error = None if UPLOAD_SUCCESS_MARKER in response.text else MESSAGE_UPLOAD_REJECTED
        report = classify(HttpOutcome.from_response(response, body_error=body_error))
        if report is not None:
            logger.warning(f"Device rejected {job.file_name}: {response.text[:200]!r}")
            return report

        logger.info(f"Uploaded {job.file_name}")
        return None

    async def upload_file(self, path: Path | str) -> ErrorReport | None:
        """Upload a file from disk; its name selects config, rules or firmware."""
        path = Path(path)
        if path.name not in (CONFIG_FILE, RULES_FILE, FIRMWARE_FILE):
            raise ValueError(
                f"Unsupported file name {path.name!r}, "
                f"expected one of {CONFIG_FILE}, {RULES_FILE}, {FIRMWARE_FILE}"
            )

        try:
            payload = path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            return ErrorReport(category=ErrorCategory.TRANSPORT, message=str(e))

        return await self.upload(UploadJob(file_name=path.name, payload=payload))

    async def query_status(self) -> tuple[dict[str, Any] | None, ErrorReport | None]:
        """Fetch the device's JSON status document.

        Returns:
            (status, None) on success, (None, report) otherwise
        """
        response, report = await self.http.post(STATUS_PATH)
        if report is not None:
            return None, report

        try:
            status = json.loads(response.text)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid status JSON from {self.address_state.address}: {e}")
            return None, classify(HttpOutcome.from_response(response, body_error=str(e)))

        if not isinstance(status, dict):
            message = f"Expected a JSON object, got {type(status).__name__}"
            return None, classify(HttpOutcome.from_response(response, body_error=message))

        return status, None
