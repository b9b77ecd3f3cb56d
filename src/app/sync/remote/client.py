"""Async client for the remote CRM REST webhook.

RemoteApiClient exposes a single call(method, params) -> dict and maps
every failure onto the sync error taxonomy:
- Timeouts, transport errors and 5xx -> RemoteApiError(retryable=True)
- HTTP 429 or a throttling error code -> RemoteRateLimitError
- Other 4xx or an error body -> RemoteApiError(retryable=False)

Throttled calls are additionally retried in-call with tenacity
exponential back-off before the error reaches the supervisor.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.config import Settings
from src.app.core.monitoring import track_remote_call
from src.app.sync.exceptions import RemoteApiError, RemoteRateLimitError

logger = structlog.get_logger(__name__)

# Error codes the CRM uses for throttling instead of (or alongside) HTTP 429
THROTTLING_ERROR_CODES = frozenset({"QUERY_LIMIT_EXCEEDED", "OPERATION_TIME_LIMIT"})


class RemoteApi(Protocol):
    """Narrow interface the pipelines depend on."""

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        ...


class RemoteApiClient:
    """httpx-based implementation of RemoteApi.

    Args:
        webhook_url: Base webhook URL; the method name is appended.
        timeout: Per-request timeout in seconds.
        rate_limit_attempts: Total attempts for throttled calls.
        retry_wait: tenacity wait strategy between throttled attempts.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 30.0,
        rate_limit_attempts: int = 3,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("Remote webhook URL is not configured")
        self._base_url = webhook_url.rstrip("/")
        self._timeout = timeout
        self._rate_limit_attempts = max(1, rate_limit_attempts)
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> RemoteApiClient:
        return cls(
            settings.REMOTE_WEBHOOK_URL,
            timeout=settings.REMOTE_TIMEOUT,
            rate_limit_attempts=settings.REMOTE_RATE_LIMIT_ATTEMPTS,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> RemoteApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Invoke one REST method.

        Args:
            method: CRM method name, e.g. "crm.item.list".
            params: JSON body.

        Returns:
            The decoded response body (always contains "result").

        Raises:
            RemoteRateLimitError: Still throttled after all in-call attempts.
            RemoteApiError: Any other failure, flagged retryable or not.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._rate_limit_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(RemoteRateLimitError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "remote.throttled_retry",
                        method=method,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._call_once(method, params or {})
        raise RemoteApiError(f"{method}: no attempt made", retryable=True)

    async def _call_once(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/{method}.json"
        async with track_remote_call(method):
            try:
                response = await self._client().post(url, json=params)
            except httpx.TimeoutException as exc:
                raise RemoteApiError(f"{method}: timeout ({exc})", retryable=True) from exc
            except httpx.TransportError as exc:
                raise RemoteApiError(
                    f"{method}: transport error ({exc})", retryable=True
                ) from exc

            body = self._decode(response)
            error_code = body.get("error") if isinstance(body, dict) else None

            if response.status_code == 429 or error_code in THROTTLING_ERROR_CODES:
                raise RemoteRateLimitError(
                    f"{method}: throttled ({error_code or response.status_code})",
                    status_code=response.status_code,
                    error_code=error_code,
                )
            if response.status_code >= 500:
                raise RemoteApiError(
                    f"{method}: server error {response.status_code}",
                    retryable=True,
                    status_code=response.status_code,
                    error_code=error_code,
                )
            if response.status_code >= 400 or error_code:
                description = body.get("error_description", "") if isinstance(body, dict) else ""
                raise RemoteApiError(
                    f"{method}: rejected {error_code or response.status_code} {description}".strip(),
                    retryable=False,
                    status_code=response.status_code,
                    error_code=error_code,
                )

        logger.debug("remote.call_ok", method=method)
        return body

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}
