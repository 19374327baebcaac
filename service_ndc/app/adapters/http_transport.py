"""
HTTP transport for provider calls.

One ``send`` is one unconditional request/response exchange: no retry and
no breaker logic lives here.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Union
from urllib.parse import urlsplit

import httpx

from ndc_shared.errors import HttpStatusError, NetworkError, RequestTimeoutError
from ndc_shared.logging import correlation_id_var, get_logger, transaction_id_var
from ndc_shared.metrics import MetricsCollector


CORRELATION_HEADER = "X-Correlation-ID"
TRANSACTION_HEADER = "X-Request-ID"


@dataclass(frozen=True)
class RawResponse:
    status_code: int
    body: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")


class HttpTransport:
    """Async HTTP exchange with a hard per-attempt timeout and a connection cap."""

    def __init__(self,
                 default_timeout: float = 45.0,
                 max_connections: int = 50,
                 client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.default_timeout = default_timeout
        self.max_connections = max_connections
        self.logger = get_logger("ndc.transport")
        self._metrics = metrics
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(default_timeout, pool=None),
            limits=httpx.Limits(max_connections=max_connections,
                                max_keepalive_connections=max_connections)
        )

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self,
                   endpoint: str,
                   payload: Union[str, bytes],
                   headers: Optional[Dict[str, str]] = None,
                   timeout: Optional[float] = None,
                   correlation_id: Optional[str] = None,
                   transaction_id: Optional[str] = None) -> RawResponse:
        """POST ``payload`` to ``endpoint`` and return the raw answer.

        Raises ``RequestTimeoutError`` when the exchange exceeds ``timeout``,
        ``NetworkError`` when no response arrives, and ``HttpStatusError`` for
        any status >= 400.
        """
        timeout = self.default_timeout if timeout is None else timeout
        request_headers = {"Content-Type": "application/xml", "Accept": "application/xml"}
        request_headers.update(headers or {})

        correlation_id = correlation_id or correlation_id_var.get()
        transaction_id = transaction_id or transaction_id_var.get()
        if correlation_id:
            request_headers[CORRELATION_HEADER] = correlation_id
        if transaction_id:
            request_headers[TRANSACTION_HEADER] = transaction_id

        path = urlsplit(endpoint).path or endpoint
        self.logger.debug("HTTP request starting", method="POST", url=endpoint)
        start_time = time.perf_counter()
        status_code = 0

        try:
            response = await asyncio.wait_for(
                self._client.post(
                    endpoint,
                    content=payload,
                    headers=request_headers,
                    timeout=httpx.Timeout(timeout, pool=None)
                ),
                timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            self.logger.error("HTTP request timed out", url=endpoint, timeout=timeout)
            raise RequestTimeoutError(endpoint, timeout) from e
        except httpx.HTTPError as e:
            self.logger.error("HTTP connection error", url=endpoint, error=str(e),
                              error_type=type(e).__name__)
            raise NetworkError(
                f"Connection to provider failed: {e}",
                details={"url": endpoint, "error_type": type(e).__name__}
            ) from e
        else:
            status_code = response.status_code
        finally:
            duration = time.perf_counter() - start_time
            if self._metrics:
                self._metrics.record_http_request("POST", path, status_code, duration)

        raw = RawResponse(
            status_code=response.status_code,
            body=response.text,
            headers={k.lower(): v for k, v in response.headers.items()},
            elapsed=duration
        )

        self.logger.debug("HTTP response received", status=raw.status_code,
                          duration_ms=round(duration * 1000, 2))

        if raw.status_code >= 400:
            self.logger.warning("HTTP request failed", status=raw.status_code, url=endpoint)
            raise HttpStatusError(raw.status_code, body=raw.body, details={"url": endpoint})

        return raw
