"""
One HTTP exchange with the device, classified.
"""

import logging

import httpx

from .errors import ErrorReport, HttpOutcome, classify
from .state import AddressState

logger = logging.getLogger(__name__)


class DeviceHttp:
    """Issues POST requests against the current device address.

    The address is read from AddressState on every request, so a change made
    by the provisioning flow is picked up by the next call.
    """

    def __init__(
        self,
        address_state: AddressState,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.address_state = address_state
        self.timeout = timeout
        self._client = client

    async def post(
        self,
        path: str,
        *,
        data: dict[str, str] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[httpx.Response | None, ErrorReport | None]:
        """POST to a device path.

        Returns:
            (response, None) for a 2xx response, otherwise (response or None, report)
        """
        url = self.address_state.url_for(path)
        request_timeout = timeout if timeout is not None else self.timeout
        if data is None and content is None:
            content = b""

        logger.debug(f"POST {url}")
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, data=data, content=content, headers=headers, timeout=request_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=request_timeout) as client:
                    response = await client.post(url, data=data, content=content, headers=headers)
        except httpx.HTTPError as e:
            report = classify(HttpOutcome.from_exception(e))
            logger.warning(f"POST {url} failed: {report} ({type(e).__name__}: {e})")
            return None, report

        report = classify(HttpOutcome.from_response(response))
        if report is not None:
            logger.warning(f"POST {url} failed: {report}")
            return response, report

        logger.debug(f"POST {url} -> {response.status_code}")
        return response, None
