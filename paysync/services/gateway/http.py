"""httpx-backed gateway transport.

Only this module knows HTTP. Every failure leaves here already classified
into the shared error taxonomy so the retry layer can act on it.
"""

from typing import Any

import httpx

from paysync.common.errors import (
    AuthError,
    GatewayTimeoutError,
    RateLimitedError,
    TransientGatewayError,
    ValidationError,
)
from paysync.services.gateway.schemas import ChargeRequest, GatewayResult, RefundRequest, map_gateway_status


DEFAULT_RETRY_AFTER_SECONDS = 1.0


def _retry_after(response: httpx.Response) -> float:
    raw = response.headers.get("Retry-After")
    try:
        return max(0.0, float(raw)) if raw is not None else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


def classify_response(capability: str, response: httpx.Response) -> None:
    """Raise the taxonomy error matching a non-2xx gateway answer."""

    status = response.status_code
    if status < 400:
        return
    detail = f"{capability} failed status={status} body={response.text[:200]}"
    if status in (401, 403):
        raise AuthError(detail)
    if status == 429:
        raise RateLimitedError(f"gateway.{capability}", _retry_after(response))
    if status in (408, 504):
        raise GatewayTimeoutError(detail)
    if status >= 500:
        raise TransientGatewayError(detail)
    raise ValidationError(detail)


def _result_from_body(body: dict[str, Any]) -> GatewayResult:
    """Accept both `{status, data:{...}}` envelopes and flat objects."""

    data = body.get("data") if isinstance(body.get("data"), dict) else body
    # Envelope-style gateways report call success as a boolean top-level status.
    success = body["status"] if isinstance(body.get("status"), bool) else True
    raw_status = data.get("status") if isinstance(data.get("status"), str) else None
    reference = data.get("reference") or data.get("id")
    return GatewayResult(
        success=success,
        reference=str(reference) if reference is not None else None,
        status=map_gateway_status(raw_status).value,
        raw_payload=data,
    )


class HttpGatewayTransport:
    """Raw charge/refund/query calls against a JSON payment gateway."""

    def __init__(self, base_url: str, secret_key: str, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(30.0))
        self._headers = {"Authorization": f"Bearer {secret_key}"}

    async def _request(
        self,
        capability: str,
        method: str,
        url: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        headers = dict(self._headers)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            response = await self._client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(f"{capability} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"{capability} transport error: {exc}") from exc
        classify_response(capability, response)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientGatewayError(f"{capability} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise TransientGatewayError(f"{capability} returned unexpected body type")
        return _result_from_body(body)

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        payload = {
            "reference": request.idempotency_key,
            "amount": request.amount_minor,
            "currency": request.currency,
            "email": request.customer_email,
            "metadata": request.metadata,
        }
        return await self._request(
            "charge",
            "POST",
            "/charges",
            json=payload,
            idempotency_key=request.idempotency_key,
        )

    async def refund(self, request: RefundRequest) -> GatewayResult:
        payload = {
            "transaction": request.payment_reference,
            "amount": request.amount_minor,
            "reference": request.idempotency_key,
        }
        return await self._request(
            "refund",
            "POST",
            "/refunds",
            json=payload,
            idempotency_key=request.idempotency_key,
        )

    async def query_status(self, reference: str) -> GatewayResult:
        return await self._request("query_status", "GET", f"/charges/{reference}")

    async def close(self) -> None:
        await self._client.aclose()
