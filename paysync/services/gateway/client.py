"""The only path from the service to the external payment gateway.

Every capability is wrapped the same way:

    retry.run(lambda: limiter.execute(lambda: breaker.execute(raw_call)))

The breaker sits inside the limiter, so a call rejected by an open circuit
has already consumed a rate-limit slot. An open circuit is terminal for the
retry layer, which keeps those rejections to one per logical call.
Charge, refund and status queries each own a separate breaker and limiter so
a failing capability cannot starve the others.
"""

import asyncio
import time
from enum import StrEnum
from typing import Any, Awaitable, Callable, TypeVar

from paysync.common.circuit_breaker import CircuitBreaker, CircuitBreakerListener, LoggingListener, MetricsListener
from paysync.common.config import settings
from paysync.common.metrics import gateway_call_seconds
from paysync.common.rate_limiter import SlidingWindowRateLimiter
from paysync.common.retry import RetryExecutor, RetryPolicy
from paysync.common.tracing import tracer
from paysync.services.gateway.schemas import ChargeRequest, GatewayResult, GatewayTransport, RefundRequest


T = TypeVar("T")


class Capability(StrEnum):
    CHARGE = "charge"
    REFUND = "refund"
    QUERY_STATUS = "query_status"


class GuardedCapability:
    """Breaker + limiter + retry bound to one gateway capability."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        limiter: SlidingWindowRateLimiter,
        retry: RetryExecutor,
    ) -> None:
        self.breaker = breaker
        self.limiter = limiter
        self.retry = retry

    async def call(self, raw: Callable[[], Awaitable[T]], cancel: asyncio.Event | None = None) -> T:
        return await self.retry.run(lambda: self.limiter.execute(lambda: self.breaker.execute(raw)), cancel=cancel)


class GatewayClient:
    def __init__(
        self,
        transport: GatewayTransport,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        call_timeout: float = 10.0,
        max_requests: int = 8,
        window: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        listeners: list[CircuitBreakerListener] | None = None,
        service_name: str = "paysync",
    ) -> None:
        self.transport = transport
        self.service_name = service_name
        listeners = listeners if listeners is not None else [LoggingListener(), MetricsListener(service_name)]
        self.capabilities: dict[Capability, GuardedCapability] = {}
        for capability in Capability:
            dependency = f"gateway.{capability}"
            self.capabilities[capability] = GuardedCapability(
                breaker=CircuitBreaker(
                    dependency,
                    failure_threshold=failure_threshold,
                    reset_timeout=reset_timeout,
                    call_timeout=call_timeout,
                    clock=clock,
                    listeners=listeners,
                ),
                limiter=SlidingWindowRateLimiter(
                    dependency,
                    max_requests=max_requests,
                    window=window,
                    clock=clock,
                    service_name=service_name,
                ),
                retry=RetryExecutor(dependency, retry_policy, sleep=sleep, service_name=service_name),
            )

    @classmethod
    def from_settings(cls, transport: GatewayTransport) -> "GatewayClient":
        return cls(
            transport,
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
            call_timeout=settings.breaker_call_timeout_seconds,
            max_requests=settings.rate_limit_max_requests,
            window=settings.rate_limit_window_seconds,
            retry_policy=RetryPolicy.from_settings(),
            service_name=settings.service_name,
        )

    async def _invoke(
        self,
        capability: Capability,
        raw: Callable[[], Awaitable[GatewayResult]],
        cancel: asyncio.Event | None,
    ) -> GatewayResult:
        started = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(f"gateway.{capability}"):
            try:
                result = await self.capabilities[capability].call(raw, cancel=cancel)
                outcome = "ok"
                return result
            finally:
                gateway_call_seconds.labels(
                    service=self.service_name,
                    capability=capability.value,
                    outcome=outcome,
                ).observe(max(0.0, time.perf_counter() - started))

    async def charge(self, request: ChargeRequest, cancel: asyncio.Event | None = None) -> GatewayResult:
        return await self._invoke(Capability.CHARGE, lambda: self.transport.charge(request), cancel)

    async def refund(self, request: RefundRequest, cancel: asyncio.Event | None = None) -> GatewayResult:
        return await self._invoke(Capability.REFUND, lambda: self.transport.refund(request), cancel)

    async def query_status(self, reference: str, cancel: asyncio.Event | None = None) -> GatewayResult:
        return await self._invoke(Capability.QUERY_STATUS, lambda: self.transport.query_status(reference), cancel)

    def health(self) -> dict[str, Any]:
        """Per-capability breaker and limiter state for health-check surfaces."""

        per_dependency = {}
        for capability, guarded in self.capabilities.items():
            snapshot = guarded.breaker.snapshot()
            snapshot["rate_limiter"] = guarded.limiter.status()
            per_dependency[f"gateway.{capability}"] = snapshot
        return {
            "healthy": all(item["healthy"] for item in per_dependency.values()),
            "per_dependency": per_dependency,
        }
