"""Background reconciliation: poll the gateway for payments webhooks left open.

Workers drain the `ReconciliationQueue`. Each job re-reads the store, asks the
gateway for the current status and feeds any change through the lifecycle
service with source `reconciliation`. Unchanged payments are rechecked with a
growing delay; gateway failures are retried a bounded number of times before
the job is abandoned and announced downstream.
"""

import asyncio
from typing import Any

from paysync.common.config import settings
from paysync.common.errors import CircuitOpenError, ConflictError, OperationCancelledError, RateLimitedError
from paysync.common.events import DomainEvent, DomainEventType
from paysync.common.logging import logger, payment_id_ctx
from paysync.common.metrics import reconciliation_abandoned_total, reconciliation_results_total
from paysync.common.state_machine import PaymentStatus, TransitionSource, is_final
from paysync.services.gateway.client import GatewayClient
from paysync.services.payments.service import PaymentLifecycleService
from paysync.services.reconciliation.queue import JobPriority, ReconciliationQueue, SyncJob


OPEN_STATUSES = [PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value]


class ReconciliationService:
    def __init__(
        self,
        queue: ReconciliationQueue,
        lifecycle: PaymentLifecycleService,
        gateway: GatewayClient,
        concurrency: int | None = None,
        retry_delay: float | None = None,
        recheck_delay: float | None = None,
        max_recheck_delay: float | None = None,
        job_interval: float | None = None,
        service_name: str = "paysync",
    ) -> None:
        self.queue = queue
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.concurrency = concurrency or settings.reconcile_concurrency
        self.retry_delay = settings.reconcile_retry_delay_seconds if retry_delay is None else retry_delay
        self.recheck_delay = settings.reconcile_recheck_delay_seconds if recheck_delay is None else recheck_delay
        self.max_recheck_delay = (
            settings.reconcile_max_recheck_delay_seconds if max_recheck_delay is None else max_recheck_delay
        )
        self.job_interval = settings.reconcile_job_interval_seconds if job_interval is None else job_interval
        self.service_name = service_name
        self._workers: list[asyncio.Task] = []
        self._in_flight: set[str] = set()
        self._cancel = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def _count(self, result: str) -> None:
        reconciliation_results_total.labels(service=self.service_name, result=result).inc()

    def enqueue_reconciliation(self, idempotency_key: str, last_known_status: str) -> SyncJob | None:
        if is_final(last_known_status):
            return None
        return self.queue.enqueue(idempotency_key, last_known_status)

    def rebuild_from_store(self) -> int:
        """Re-enqueue every open payment, e.g. after a restart lost the in-memory queue."""

        payments = self.lifecycle.store.list_by_status(OPEN_STATUSES)
        for payment in payments:
            self.queue.enqueue(payment.idempotency_key, payment.status)
        logger.info("reconciliation queue rebuilt jobs=%s", len(payments))
        return len(payments)

    def _recheck_later(self, job: SyncJob, status: str) -> None:
        delay = min(self.max_recheck_delay, self.recheck_delay * 2**job.recheck_count)
        job.recheck_count += 1
        job.attempt_count = 0
        job.last_known_status = status
        self.queue.requeue(job, JobPriority.LOW, delay)

    async def _abandon(self, job: SyncJob, payment_id: str | None, error: BaseException) -> None:
        reconciliation_abandoned_total.labels(service=self.service_name).inc()
        logger.error(
            "reconciliation abandoned idempotency_key=%s attempts=%s last_status=%s error=%s",
            job.idempotency_key,
            job.attempt_count,
            job.last_known_status,
            error,
        )
        await self.lifecycle.sink.publish(
            DomainEvent(
                event_type=DomainEventType.RECONCILIATION_ABANDONED.value,
                aggregate_id=payment_id or job.idempotency_key,
                payload={
                    "idempotency_key": job.idempotency_key,
                    "last_known_status": job.last_known_status,
                    "attempts": job.attempt_count,
                    "error": str(error),
                },
            )
        )

    async def process_job(self, job: SyncJob) -> str:
        """Reconcile one job; returns the result label recorded in metrics."""

        result = await self._process(job)
        self._count(result)
        return result

    async def _process(self, job: SyncJob) -> str:
        if is_final(job.last_known_status):
            return "skipped"
        payment = self.lifecycle.store.get_by_idempotency_key(job.idempotency_key)
        if payment is None:
            logger.warning("reconciliation job for unknown payment idempotency_key=%s", job.idempotency_key)
            return "missing"
        if is_final(payment.status):
            return "skipped"

        token = payment_id_ctx.set(payment.payment_id)
        try:
            try:
                answer = await self.gateway.query_status(
                    payment.gateway_reference or payment.idempotency_key,
                    cancel=self._cancel,
                )
                if answer.status == payment.status:
                    self._recheck_later(job, payment.status)
                    return "unchanged"

                outcome = await self.lifecycle.apply_status(
                    payment.payment_id,
                    answer.status,
                    answer.raw_payload,
                    TransitionSource.RECONCILIATION,
                    reason="reconciliation_poll",
                )
            except OperationCancelledError:
                self.queue.requeue(job, job.priority)
                return "cancelled"
            except ConflictError as exc:
                logger.info("reconciliation lost a concurrent update idempotency_key=%s error=%s", job.idempotency_key, exc)
                job.last_known_status = payment.status
                self.queue.requeue(job, JobPriority.NORMAL)
                return "conflict"
            except (CircuitOpenError, RateLimitedError) as exc:
                # Rejected locally without reaching the gateway; wait it out without spending an attempt.
                delay = max(self.retry_delay, exc.retry_after)
                logger.info(
                    "reconciliation deferred idempotency_key=%s delay_s=%.1f error=%s",
                    job.idempotency_key,
                    delay,
                    exc,
                )
                self.queue.requeue(job, JobPriority.HIGH, delay)
                return "deferred"
            except Exception as exc:
                job.attempt_count += 1
                if job.attempt_count >= job.max_attempts:
                    await self._abandon(job, payment.payment_id, exc)
                    return "abandoned"
                logger.warning(
                    "reconciliation poll failed idempotency_key=%s attempt=%s max_attempts=%s error=%s",
                    job.idempotency_key,
                    job.attempt_count,
                    job.max_attempts,
                    exc,
                )
                self.queue.requeue(job, JobPriority.HIGH, self.retry_delay)
                return "retry"

            current = outcome.payment.status
            logger.info(
                "reconciled idempotency_key=%s gateway_status=%s status=%s outcome=%s",
                job.idempotency_key,
                answer.status,
                current,
                outcome.decision.outcome,
            )
            if is_final(current):
                return "finalized"
            if not outcome.applied:
                # Gateway answer is behind the local status; poll again later.
                self._recheck_later(job, current)
                return "unchanged"
            job.attempt_count = 0
            job.recheck_count = 0
            job.last_known_status = current
            self.queue.requeue(job, JobPriority.NORMAL)
            return "updated"
        finally:
            payment_id_ctx.reset(token)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self.queue.get()
            if job is None:
                return
            self._in_flight.add(job.idempotency_key)
            try:
                await self.process_job(job)
            except Exception:
                # Keep the worker alive; the job is dropped and will be rebuilt from the store.
                logger.exception("reconciliation worker=%s crashed on idempotency_key=%s", index, job.idempotency_key)
            finally:
                self._in_flight.discard(job.idempotency_key)
            if self.job_interval:
                await asyncio.sleep(self.job_interval)

    def start(self) -> None:
        if self.running:
            return
        self._cancel.clear()
        self.queue.reopen()
        self._workers = [asyncio.create_task(self._worker(index)) for index in range(self.concurrency)]
        logger.info("reconciliation started workers=%s queued=%s", self.concurrency, len(self.queue))

    async def stop(self, timeout: float | None = None) -> None:
        """Stop taking jobs and wait for in-flight ones; after `timeout` abort their backoff."""

        self.queue.close()
        if not self._workers:
            return
        _, pending = await asyncio.wait(self._workers, timeout=timeout)
        if pending:
            self._cancel.set()
            await asyncio.wait(pending)
        self._workers = []
        logger.info("reconciliation stopped queued=%s", len(self.queue))

    def status(self) -> dict[str, Any]:
        snapshot = self.queue.snapshot()
        snapshot.update(
            {
                "running": self.running,
                "workers": len(self._workers),
                "in_flight": sorted(self._in_flight),
            }
        )
        return snapshot
