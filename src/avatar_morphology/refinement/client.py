"""Refinement client: the single asynchronous suspension point of a resolution."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol

import httpx
import structlog

from avatar_morphology.refinement.contract import (
    RefinementRequest,
    RefinementResponse,
    parse_refinement_response,
)
from avatar_morphology.refinement.errors import (
    BackoffConfig,
    RefinementRateLimitError,
    RefinementServiceError,
    RefinementTimeoutError,
    RefinementUnavailableError,
    SchemaIssue,
    SchemaValidationError,
    SleepFn,
    run_with_retries,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from avatar_morphology.utils.concurrency import CancellationToken

DEFAULT_ENDPOINT: Final[str] = "/morphology/refine"
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0


class RefinementTransport(Protocol):
    """Sends one request payload and returns the decoded JSON body."""

    async def send(self, payload: Mapping[str, object]) -> object:
        """Deliver ``payload`` and return the decoded response body."""


class HttpRefinementTransport:
    """JSON-over-HTTP transport backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url must be a non-empty string")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._url = base_url.rstrip("/") + "/" + endpoint.lstrip("/")
        self._timeout = timeout_seconds
        self._headers = dict(headers or {})
        self._client = client

    @property
    def url(self) -> str:
        return self._url

    async def send(self, payload: Mapping[str, object]) -> object:
        if self._client is not None:
            response = await self._client.post(self._url, json=dict(payload), headers=self._headers)
            return _decode(response)

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=dict(payload), headers=self._headers)
            return _decode(response)


def _decode(response: httpx.Response) -> object:
    response.raise_for_status()
    try:
        return response.json()
    except ValueError as exc:
        # JSONDecodeError and UnicodeDecodeError both land here.
        reason = exc.msg if isinstance(exc, json.JSONDecodeError) else type(exc).__name__
        raise SchemaValidationError([SchemaIssue("$", f"body is not valid JSON ({reason})")]) from exc


def map_transport_exception(exc: Exception) -> RefinementServiceError | None:
    """Normalize httpx exceptions into the refinement error taxonomy.

    Anything that is not an httpx error returns ``None`` and propagates unchanged.
    """

    if isinstance(exc, httpx.TimeoutException):
        return RefinementTimeoutError(str(exc) or "refinement request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = f"refinement service returned HTTP {status}"
        if status == 429:
            return RefinementRateLimitError(detail, http_status=status)
        if status >= 500:
            return RefinementServiceError(detail, retryable=True, http_status=status)
        return RefinementUnavailableError(detail, http_status=status)
    if isinstance(exc, httpx.RequestError):
        return RefinementServiceError(str(exc) or type(exc).__name__, code="transport", retryable=True)
    return None


@dataclass(frozen=True, slots=True)
class RefinementOutcome:
    """Result of one refinement attempt: a schema-valid response or a service failure."""

    response: RefinementResponse | None = None
    failure: RefinementServiceError | None = None
    retries: int = 0

    @property
    def refined(self) -> bool:
        return self.response is not None and self.response.refined


class RefinementClient:
    """Call the refinement service, retrying transient failures.

    Service-level failures never escape ``refine``; they come back as an outcome
    with ``failure`` set so the caller can fall back to the validated blend. Schema
    violations raise ``SchemaValidationError``.
    """

    def __init__(
        self,
        transport: RefinementTransport,
        *,
        backoff: BackoffConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        self._transport = transport
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def refine(
        self,
        request: RefinementRequest,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> RefinementOutcome:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        payload = request.to_payload()
        retries = 0

        def _on_retry(retry_number: int, error: RefinementServiceError, delay: float) -> None:
            nonlocal retries
            retries = retry_number
            self._logger.info(
                "refinement_retry_scheduled",
                request_id=request.request_id,
                retry=retry_number,
                code=error.code,
                http_status=error.http_status,
                delay_seconds=delay,
            )

        try:
            raw = await run_with_retries(
                lambda: self._transport.send(payload),
                map_exception=map_transport_exception,
                backoff=self._backoff,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
        except RefinementServiceError as exc:
            self._logger.warning(
                "refinement_fallback",
                request_id=request.request_id,
                code=exc.code,
                retryable=exc.retryable,
                http_status=exc.http_status,
                detail=exc.detail,
                retries=retries,
            )
            return RefinementOutcome(failure=exc, retries=retries)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            response = parse_refinement_response(raw)
        except SchemaValidationError as exc:
            self._logger.error(
                "refinement_schema_rejected",
                request_id=request.request_id,
                issues=[f"{issue.path}: {issue.message}" for issue in exc.issues],
            )
            raise

        self._logger.info(
            "refinement_received",
            request_id=request.request_id,
            refined=response.refined,
            shape_keys=len(response.final_shape_values),
            limb_keys=len(response.final_limb_masses),
            clamped=len(response.clamped_keys),
            out_of_range_count=response.out_of_range_count,
            mapping_version=response.mapping_version,
            retries=retries,
        )
        return RefinementOutcome(response=response, retries=retries)


__all__ = [
    "DEFAULT_ENDPOINT",
    "DEFAULT_TIMEOUT_SECONDS",
    "HttpRefinementTransport",
    "RefinementClient",
    "RefinementOutcome",
    "RefinementTransport",
    "map_transport_exception",
]
