"""
Single-file multipart/form-data encoder.

The device firmware parses uploads with a minimal boundary-matching parser,
so the layout below must be reproduced byte for byte: one part named
"uploaded_file", a single Content-Disposition header, CRLF line endings and
the payload copied verbatim.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

FIELD_NAME = "uploaded_file"
BOUNDARY_PREFIX = "apiclient-"

_CRLF = b"\r\n"
_DASHES = b"--"


def _monotonic_millis() -> int:
    return time.monotonic_ns() // 1_000_000


@dataclass(frozen=True)
class MultipartBody:
    boundary: str
    body: bytes

    @property
    def content_type(self) -> str:
        return f"multipart/form-data;boundary={self.boundary}"

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": self.content_type}


class MultipartEncoder:
    def __init__(self, clock: Callable[[], int] = _monotonic_millis):
        self._clock = clock

    def new_boundary(self) -> str:
        return f"{BOUNDARY_PREFIX}{self._clock()}"

    def encode(self, file_name: str, payload: bytes) -> MultipartBody:
        if not file_name:
            raise ValueError("file_name must not be empty")

        boundary = self.new_boundary()
        marker = boundary.encode("ascii")
        disposition = (
            f'Content-Disposition: form-data; name="{FIELD_NAME}"; filename="{file_name}"'
        ).encode()

        body = b"".join(
            [
                _DASHES + marker + _CRLF,
                disposition + _CRLF,
                _CRLF,
                bytes(payload),
                _CRLF,
                _DASHES + marker + _DASHES + _CRLF,
            ]
        )
        return MultipartBody(boundary=boundary, body=body)


def encode(file_name: str, payload: bytes) -> MultipartBody:
    """Encode with a fresh time based boundary."""
    return MultipartEncoder().encode(file_name, payload)
