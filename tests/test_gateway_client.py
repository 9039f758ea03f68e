"""Gateway client composition and HTTP failure classification."""

import httpx
import pytest

from paysync.common.circuit_breaker import CircuitState
from paysync.common.errors import (
    AuthError,
    CircuitOpenError,
    RateLimitedError,
    TransientGatewayError,
    ValidationError,
)
from paysync.common.retry import RetryPolicy
from paysync.services.gateway.client import Capability, GatewayClient
from paysync.services.gateway.http import HttpGatewayTransport
from paysync.services.gateway.schemas import ChargeRequest


def _client(transport, clock, fake_sleep, **overrides):
    options = dict(
        failure_threshold=3,
        reset_timeout=30.0,
        max_requests=100,
        window=60.0,
        retry_policy=RetryPolicy(max_attempts=5, base_delay=1, jitter=False),
        clock=clock,
        sleep=fake_sleep,
        listeners=[],
    )
    options.update(overrides)
    return GatewayClient(transport, **options)


@pytest.mark.asyncio
async def test_open_circuit_stops_the_retry_loop(transport, clock, fake_sleep):
    """Retries stop at the breaker: three real calls, then one fast rejection."""

    transport.statuses["ref-9"] = [TransientGatewayError("503")]
    client = _client(transport, clock, fake_sleep)

    with pytest.raises(CircuitOpenError):
        await client.query_status("ref-9")

    assert transport.calls.count(("query_status", "ref-9")) == 3
    assert client.capabilities[Capability.QUERY_STATUS].breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_capabilities_fail_independently(transport, clock, fake_sleep):
    transport.statuses["ref-9"] = [TransientGatewayError("503")]
    client = _client(transport, clock, fake_sleep)
    with pytest.raises(CircuitOpenError):
        await client.query_status("ref-9")

    result = await client.charge(ChargeRequest(idempotency_key="order-42", amount_minor=500, currency="NGN"))

    assert result.reference == "gw-order-42"
    health = client.health()
    assert not health["healthy"]
    assert health["per_dependency"]["gateway.query_status"]["state"] == "OPEN"
    assert health["per_dependency"]["gateway.charge"]["state"] == "CLOSED"


@pytest.mark.asyncio
async def test_local_rate_limit_surfaces_after_retries(transport, clock, fake_sleep):
    client = _client(
        transport,
        clock,
        fake_sleep,
        max_requests=2,
        retry_policy=RetryPolicy(max_attempts=1, jitter=False),
    )
    await client.query_status("a")
    await client.query_status("b")

    with pytest.raises(RateLimitedError):
        await client.query_status("c")
    assert ("query_status", "c") not in transport.calls


@pytest.mark.asyncio
async def test_transient_failure_then_success(transport, clock, fake_sleep):
    transport.statuses["ref-1"] = [TransientGatewayError("blip"), transport.result("success")]
    client = _client(transport, clock, fake_sleep)

    result = await client.query_status("ref-1")

    assert result.status == "SUCCEEDED"
    assert fake_sleep.delays == [2]


def _http_transport(handler):
    client = httpx.AsyncClient(base_url="https://gateway.test", transport=httpx.MockTransport(handler))
    return HttpGatewayTransport("https://gateway.test", "sk_test_123", client=client)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,error",
    [
        (401, AuthError),
        (403, AuthError),
        (400, ValidationError),
        (404, ValidationError),
        (500, TransientGatewayError),
        (503, TransientGatewayError),
    ],
)
async def test_http_errors_are_classified(status_code, error):
    transport = _http_transport(lambda request: httpx.Response(status_code, json={"message": "nope"}))

    with pytest.raises(error):
        await transport.query_status("ref-1")


@pytest.mark.asyncio
async def test_http_429_carries_retry_after():
    transport = _http_transport(lambda request: httpx.Response(429, headers={"Retry-After": "7"}))

    with pytest.raises(RateLimitedError) as info:
        await transport.query_status("ref-1")
    assert info.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_http_charge_sends_auth_and_idempotency_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["key"] = request.headers.get("Idempotency-Key")
        seen["path"] = request.url.path
        return httpx.Response(200, json={"status": True, "data": {"status": "success", "reference": 12345}})

    transport = _http_transport(handler)
    result = await transport.charge(ChargeRequest(idempotency_key="order-77", amount_minor=900, currency="NGN"))

    assert seen == {"auth": "Bearer sk_test_123", "key": "order-77", "path": "/charges"}
    assert result.status == "SUCCEEDED"
    assert result.reference == "12345"


@pytest.mark.asyncio
async def test_http_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    transport = _http_transport(handler)
    with pytest.raises(TransientGatewayError):
        await transport.query_status("ref-1")
