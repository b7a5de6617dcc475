"""Normalized refinement-service errors and bounded retry helpers."""

from __future__ import annotations

import asyncio
import random as random_module
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeAlias, TypeVar

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]


@dataclass(frozen=True, slots=True)
class SchemaIssue:
    """One contract violation found in a refinement response."""

    path: str
    message: str


class SchemaValidationError(ValueError):
    """Raised when a refinement response violates the wire contract.

    Fatal: the response is discarded in full and the resolution is aborted.
    """

    def __init__(self, issues: Sequence[SchemaIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown schema violation"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid refinement response:\n{rendered}")


class RefinementServiceError(RuntimeError):
    """Transport or service-level refinement failure; recoverable by falling back."""

    def __init__(
        self,
        detail: str,
        *,
        code: str = "service",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        self.code = code
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [f"code={self.code}", f"retryable={str(self.retryable).lower()}"]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class RefinementTimeoutError(RefinementServiceError):
    """Refinement round trip exceeded its deadline (retryable)."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="timeout", retryable=True)


class RefinementRateLimitError(RefinementServiceError):
    """Refinement service asked the caller to slow down (retryable)."""

    def __init__(self, detail: str, *, http_status: int | None = 429) -> None:
        super().__init__(detail, code="rate_limit", retryable=True, http_status=http_status)


class RefinementUnavailableError(RefinementServiceError):
    """Refinement service unreachable or rejecting the request outright."""

    def __init__(self, detail: str, *, http_status: int | None = None) -> None:
        super().__init__(detail, code="unavailable", retryable=False, http_status=http_status)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, RefinementServiceError) and error.retryable


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.25
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Delay before retry ``retry_number`` (1-based), capped at ``max_delay_seconds``."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    delay = min(
        config.initial_delay_seconds * (config.multiplier ** (retry_number - 1)),
        config.max_delay_seconds,
    )
    if config.jitter_ratio == 0.0:
        return delay

    spread = delay * config.jitter_ratio
    jitter = ((random_fn() * 2.0) - 1.0) * spread
    return max(0.0, min(config.max_delay_seconds, delay + jitter))


_ResultT = TypeVar("_ResultT")
RetryCallback: TypeAlias = Callable[[int, RefinementServiceError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_ResultT]],
    *,
    map_exception: Callable[[Exception], RefinementServiceError | None],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _ResultT:
    """Run ``operation``, retrying retryable service errors with bounded backoff.

    Exceptions that are not service errors are passed through ``map_exception``;
    those it maps to ``None`` propagate unchanged, as does ``SchemaValidationError``.
    """

    retry_count = 0
    while True:
        try:
            return await operation()
        except SchemaValidationError:
            raise
        except Exception as exc:  # noqa: BLE001
            mapped = exc if isinstance(exc, RefinementServiceError) else map_exception(exc)
            if mapped is None:
                raise
            if not is_retryable_error(mapped) or retry_count >= backoff.max_retries:
                if mapped is exc:
                    raise
                raise mapped from exc

            retry_count += 1
            delay_seconds = compute_backoff_delay(
                retry_number=retry_count,
                config=backoff,
                random_fn=random_fn,
            )
            if on_retry is not None:
                on_retry(retry_count, mapped, delay_seconds)
            await sleep(delay_seconds)


def _normalize_detail(value: object) -> str:
    text = " ".join(str(value).split())
    return text or "unknown error"


__all__ = [
    "BackoffConfig",
    "RefinementRateLimitError",
    "RefinementServiceError",
    "RefinementTimeoutError",
    "RefinementUnavailableError",
    "SchemaIssue",
    "SchemaValidationError",
    "compute_backoff_delay",
    "is_retryable_error",
    "run_with_retries",
]
