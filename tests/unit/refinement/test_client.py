"""Unit tests for the refinement client and its HTTP transport."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from avatar_morphology.domain.models import Gender
from avatar_morphology.refinement.client import (
    HttpRefinementTransport,
    RefinementClient,
    map_transport_exception,
)
from avatar_morphology.refinement.contract import RefinementRequest
from avatar_morphology.refinement.errors import BackoffConfig, SchemaValidationError
from avatar_morphology.utils.concurrency import CancellationToken

_VALID_BODY: dict[str, object] = {
    "ai_refine": True,
    "final_shape_params": {"bigHips": 0.3},
    "final_limb_masses": {"armMass": 1.05},
    "clamped_keys": [],
    "out_of_range_count": 0,
    "active_keys_count": 1,
    "mapping_version": "v1.0",
}


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _ScriptedTransport:
    def __init__(self, *results: object) -> None:
        self._results = list(results)
        self.payloads: list[dict[str, object]] = []

    async def send(self, payload: Any) -> object:
        self.payloads.append(dict(payload))
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _request() -> RefinementRequest:
    return RefinementRequest(
        request_id="req-1",
        gender=Gender.MASCULINE,
        shape_values={"bigHips": 0.4},
        limb_masses={"armMass": 1.1},
        mapping_version="v1.0",
    )


def _http_transport(handler: Any) -> HttpRefinementTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpRefinementTransport(
        "https://refine.test/api/",
        headers={"Authorization": "Bearer token"},
        client=client,
    )


async def test_successful_refinement_returns_parsed_response() -> None:
    transport = _ScriptedTransport(_VALID_BODY)
    outcome = await RefinementClient(transport, sleep=_RecordingSleep()).refine(_request())

    assert outcome.refined
    assert outcome.failure is None
    assert outcome.response is not None
    assert dict(outcome.response.final_shape_values) == {"bigHips": 0.3}
    assert transport.payloads[0]["request_id"] == "req-1"


async def test_transient_failures_are_retried_then_succeed() -> None:
    sleep = _RecordingSleep()
    transport = _ScriptedTransport(httpx.ConnectError("refused"), _VALID_BODY)

    outcome = await RefinementClient(transport, sleep=sleep).refine(_request())

    assert outcome.refined
    assert outcome.retries == 1
    assert sleep.delays == [0.25]


async def test_exhausted_retries_fall_back_without_raising() -> None:
    transport = _ScriptedTransport(
        httpx.ReadTimeout("slow"),
        httpx.ReadTimeout("slow"),
        httpx.ReadTimeout("slow"),
    )

    outcome = await RefinementClient(
        transport,
        backoff=BackoffConfig(max_retries=2),
        sleep=_RecordingSleep(),
    ).refine(_request())

    assert outcome.response is None
    assert not outcome.refined
    assert outcome.failure is not None
    assert outcome.failure.code == "timeout"
    assert outcome.retries == 2


async def test_schema_violation_raises() -> None:
    transport = _ScriptedTransport({**_VALID_BODY, "ai_refine": "maybe"})

    with pytest.raises(SchemaValidationError, match="ai_refine"):
        await RefinementClient(transport, sleep=_RecordingSleep()).refine(_request())


async def test_cancelled_token_stops_before_sending() -> None:
    transport = _ScriptedTransport(_VALID_BODY)
    token = CancellationToken()
    token.cancel("superseded")

    with pytest.raises(asyncio.CancelledError):
        await RefinementClient(transport).refine(_request(), cancel_token=token)

    assert transport.payloads == []


async def test_http_transport_posts_json_with_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_VALID_BODY)

    transport = _http_transport(handler)
    outcome = await RefinementClient(transport).refine(_request())

    assert transport.url == "https://refine.test/api/morphology/refine"
    assert outcome.refined
    assert seen[0].headers["Authorization"] == "Bearer token"
    assert json.loads(seen[0].content)["resolved_gender"] == "masculine"


async def test_http_rate_limit_is_retried() -> None:
    statuses = [429, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status == 200:
            return httpx.Response(200, json=_VALID_BODY)
        return httpx.Response(status, json={"error": "slow down"})

    sleep = _RecordingSleep()
    outcome = await RefinementClient(_http_transport(handler), sleep=sleep).refine(_request())

    assert outcome.refined
    assert outcome.retries == 1


async def test_http_client_error_is_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(403, json={"error": "forbidden"})

    outcome = await RefinementClient(_http_transport(handler), sleep=_RecordingSleep()).refine(
        _request()
    )

    assert calls == 1
    assert outcome.failure is not None
    assert outcome.failure.code == "unavailable"
    assert outcome.failure.http_status == 403


async def test_non_json_body_is_a_schema_violation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    with pytest.raises(SchemaValidationError, match="not valid JSON"):
        await RefinementClient(_http_transport(handler)).refine(_request())


async def test_undecodable_body_is_a_schema_violation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=b"{\"ai_refine\": true, \"note\": \"\xff\"}",
            headers={"content-type": "application/json"},
        )

    with pytest.raises(SchemaValidationError, match="not valid JSON"):
        await RefinementClient(_http_transport(handler), sleep=_RecordingSleep()).refine(_request())


async def test_non_transport_errors_propagate_instead_of_falling_back() -> None:
    transport = _ScriptedTransport(RuntimeError("encoder bug"))
    sleep = _RecordingSleep()

    with pytest.raises(RuntimeError, match="encoder bug"):
        await RefinementClient(transport, sleep=sleep).refine(_request())

    assert sleep.delays == []


def test_transport_exception_mapping() -> None:
    request = httpx.Request("POST", "https://refine.test")

    server_error = httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(503, request=request)
    )

    assert map_transport_exception(server_error).retryable
    assert map_transport_exception(server_error).http_status == 503
    assert map_transport_exception(httpx.ConnectError("x")).code == "transport"
    assert map_transport_exception(RuntimeError("x")) is None


def test_transport_rejects_bad_settings() -> None:
    with pytest.raises(ValueError, match="base_url"):
        HttpRefinementTransport("  ")
    with pytest.raises(ValueError, match="timeout"):
        HttpRefinementTransport("https://x", timeout_seconds=0)
