"""
Upstream HTTP client for the proxy.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx

from shared.errors import UpstreamFetchError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class UpstreamResponse:
    """Fully buffered upstream response."""

    status: int
    headers: Dict[str, str]
    text: str
    content_type: Optional[str]


def _collect_headers(raw: List[Tuple[bytes, bytes]]) -> Dict[str, str]:
    """Decode raw header pairs as latin-1 so they re-encode to the same bytes.

    Repeated header names are merged into one comma-joined value.
    """
    headers: Dict[str, str] = {}
    for raw_name, raw_value in raw:
        name = raw_name.decode("latin-1").lower()
        value = raw_value.decode("latin-1")
        headers[name] = f"{headers[name]}, {value}" if name in headers else value
    return headers


class UpstreamClient:
    """Issues GET requests against the upstream service.

    No retries: a transport failure is reported once, as UpstreamFetchError.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        metrics: Optional[MetricsCollector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("proxy.upstream_client")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def get(self, url: str) -> UpstreamResponse:
        client = self._get_client()
        start_time = time.time()
        try:
            response = await client.get(url)
            # Buffers the body; text decoding uses the declared charset
            text = response.text
        except httpx.HTTPError as exc:
            self.logger.error("Upstream request failed", url=url, error=str(exc), error_type=type(exc).__name__)
            self._record(start_time, "error")
            raise UpstreamFetchError(url, str(exc) or type(exc).__name__) from exc

        self._record(start_time, str(response.status_code))
        self.logger.debug("Upstream response received", url=url, status_code=response.status_code)

        headers = _collect_headers(response.headers.raw)
        return UpstreamResponse(
            status=response.status_code,
            headers=headers,
            text=text,
            content_type=headers.get("content-type"),
        )

    def _record(self, start_time: float, status: str) -> None:
        if self.metrics is None:
            return
        self.metrics.observe_histogram("upstream_request_duration_seconds", time.time() - start_time)
        self.metrics.increment_counter("upstream_requests_total", status=status)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
