"""
Error reports and HTTP outcome classification.

Every device request ends in either a success or exactly one ErrorReport.
The same classifier is used for every endpoint; call sites only differ in
the body check they apply to a 2xx response.
"""

import logging
from enum import Enum

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Stable error categories surfaced to callers."""

    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    HTTP_STATUS = "HTTP_STATUS"
    TRANSPORT = "TRANSPORT"
    PROTOCOL_MISMATCH = "PROTOCOL_MISMATCH"
    JOIN_FAILED = "JOIN_FAILED"
    PROFILE_CREATION_FAILED = "PROFILE_CREATION_FAILED"
    AP_JOIN_FAILED = "AP_JOIN_FAILED"
    GATEWAY_UNRESOLVED = "GATEWAY_UNRESOLVED"


MESSAGE_TIMEOUT = "Connection time out"
MESSAGE_SERVER_ERROR = "Server error"
MESSAGE_UNKNOWN = "Unknown error"
MESSAGE_UPLOAD_REJECTED = "Error loading config"
MESSAGE_WRONG_CREDENTIALS = "Wrong SSID or password!"
MESSAGE_AP_JOIN_FAILED = "Could not connect to ESP access point"
MESSAGE_GATEWAY_UNRESOLVED = "Could not resolve device address"


class ErrorReport(BaseModel):
    """Terminal error value returned to the caller."""

    category: ErrorCategory
    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        return self.message

    @classmethod
    def http_status(cls, status_code: int) -> "ErrorReport":
        return cls(
            category=ErrorCategory.HTTP_STATUS,
            message=f"HTTP code is {status_code}",
            status_code=status_code,
        )

    @classmethod
    def protocol_mismatch(cls, message: str) -> "ErrorReport":
        return cls(category=ErrorCategory.PROTOCOL_MISMATCH, message=message)


class HttpOutcome(BaseModel):
    """What happened during one HTTP exchange.

    status_code is None when no response was received at all.
    """

    status_code: int | None = None
    timed_out: bool = False
    server_fault: bool = False
    body_error: str | None = None

    @property
    def has_response(self) -> bool:
        return self.status_code is not None

    @classmethod
    def from_exception(cls, exc: Exception) -> "HttpOutcome":
        """Build an outcome from an exception raised by the HTTP client."""
        # DeviceHttp never calls raise_for_status(); only injected clients with
        # a raising response hook end up here
        if isinstance(exc, httpx.HTTPStatusError):
            return cls(status_code=exc.response.status_code)
        if isinstance(exc, httpx.TimeoutException):
            return cls(timed_out=True)
        # The server accepted the connection but broke the exchange
        if isinstance(exc, httpx.RemoteProtocolError):
            return cls(server_fault=True)
        return cls()

    @classmethod
    def from_response(cls, response: httpx.Response, body_error: str | None = None) -> "HttpOutcome":
        return cls(status_code=response.status_code, body_error=body_error)


def classify(outcome: HttpOutcome) -> ErrorReport | None:
    """Turn an HTTP outcome into an ErrorReport, or None if nothing failed.

    Priority, first match wins:
    1. no response, timed out -> TIMEOUT
    2. no response, server fault -> SERVER_ERROR
    3. no response -> TRANSPORT
    4. non-2xx status -> HTTP_STATUS
    5. body check failed -> PROTOCOL_MISMATCH
    """
    if not outcome.has_response:
        if outcome.timed_out:
            return ErrorReport(category=ErrorCategory.TIMEOUT, message=MESSAGE_TIMEOUT)
        if outcome.server_fault:
            return ErrorReport(category=ErrorCategory.SERVER_ERROR, message=MESSAGE_SERVER_ERROR)
        return ErrorReport(category=ErrorCategory.TRANSPORT, message=MESSAGE_UNKNOWN)

    if not 200 <= outcome.status_code < 300:
        return ErrorReport.http_status(outcome.status_code)

    if outcome.body_error is not None:
        return ErrorReport.protocol_mismatch(outcome.body_error)

    return None
