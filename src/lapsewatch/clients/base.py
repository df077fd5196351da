from __future__ import annotations

from typing import Any

import httpx
import structlog
from circuitbreaker import CircuitBreaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class HTTPFailure(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableHTTPError(HTTPFailure):
    """Throttling, server errors and network faults."""


class PermanentHTTPError(HTTPFailure):
    """Client errors such as an expired session; retrying will not help."""


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUSES


class BaseHTTPClient:
    """Read-only JSON client with bounded retries behind a per-instance circuit breaker.

    Retries run inside the breaker, so one exhausted retry sequence counts
    as a single failure toward opening the circuit.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        circuit_failure_threshold: int = 5,
        circuit_recovery_timeout: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._backoff_factor = backoff_factor
        self._transport = transport
        self._breaker = CircuitBreaker(
            failure_threshold=circuit_failure_threshold,
            recovery_timeout=circuit_recovery_timeout,
            expected_exception=RetryableHTTPError,
        )
        self._guarded_get = self._breaker(self._get_with_retry)

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}{path}"

    async def _get_with_retry(
        self, path: str, params: dict[str, Any] | None
    ) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RetryableHTTPError),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._backoff_factor, max=30),
            reraise=True,
        ):
            with attempt:
                return await self._get_once(path, params)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _get_once(self, path: str, params: dict[str, Any] | None) -> dict[str, Any]:
        url = self._url(path)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url, params=params, headers=self._headers())
        except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as exc:
            logger.warning("http_network_error", url=url, error=str(exc))
            raise RetryableHTTPError(str(exc)) from exc

        if is_retryable_status(response.status_code):
            logger.warning("http_retryable_error", status=response.status_code, url=url)
            raise RetryableHTTPError(
                f"HTTP {response.status_code}: {response.text}", response.status_code
            )
        if response.is_error:
            logger.error("http_permanent_error", status=response.status_code, url=url)
            raise PermanentHTTPError(
                f"HTTP {response.status_code}: {response.text}", response.status_code
            )
        return response.json() if response.content else {}

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET ``path`` (relative to the base URL, or absolute) and decode the JSON body."""
        return await self._guarded_get(path, params)
