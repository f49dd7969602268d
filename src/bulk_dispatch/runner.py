# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Background execution of a single bulk job.

The :class:`DispatchRunner` walks a job's recipient list strictly in
submission order, invokes the session's send capability once per recipient
and records every outcome in the job store. Between two consecutive sends it
suspends for the pacing delay, which throttles outbound traffic without
blocking any other job's runner.

A recipient's failure, whether reported by the session or raised by it, is
recorded and never aborts the job. Once the last recipient is processed the
job is marked ``completed`` and the store is pruned.

Example:
    Running a job to completion::

        runner = DispatchRunner(store, metrics=metrics)
        job = await runner.run(job_id, session, ["39333111", "39333222"], "Hello",
                               typing_delay_ms=0, pacing_delay_ms=1000)
        assert job.status == JobStatus.COMPLETED
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from .job_store import JobStore
from .logger import get_logger
from .models import DEFAULT_PACING_DELAY_MS, DeliveryStatus, JobRecord, SendOutcome
from .prometheus import BulkMetrics
from .sessions import Session


def coerce_outcome(result: Any) -> SendOutcome:
    """Normalise whatever a send capability returned into a SendOutcome.

    Sessions may return a :class:`SendOutcome` or the gateway envelope
    ``{"success": ..., "message": ..., "data": {"messageId": ...}}``.
    """
    if isinstance(result, SendOutcome):
        return result
    if isinstance(result, dict):
        return SendOutcome.from_response(result)
    return SendOutcome.failure(f"invalid send result: {result!r}")


class DispatchRunner:
    """Drives one bulk job from ``processing`` to ``completed``.

    The runner is the only writer of the records it processes. It holds no
    per-job state, so a single instance can serve any number of concurrent
    jobs.

    Attributes:
        store: Job store holding the records being dispatched.
        metrics: Prometheus collector, or None to skip metrics.
        logger: Logger used for completion and delivery messages.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        metrics: BulkMetrics | None = None,
        logger=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log_delivery_activity: bool = False,
    ):
        """Create a runner bound to ``store``.

        Args:
            store: Job store whose records this runner updates.
            metrics: Optional Prometheus collector.
            logger: Custom logger instance. If None, uses the default logger.
            sleep: Coroutine function used for the pacing suspension.
            log_delivery_activity: Log every recipient outcome at info level.
        """
        self.store = store
        self.metrics = metrics
        self.logger = logger or get_logger("DispatchRunner")
        self._sleep = sleep
        self._log_delivery_activity = bool(log_delivery_activity)

    async def run(
        self,
        job_id: str,
        sender: Session,
        recipients: Sequence[str],
        message: str,
        *,
        typing_delay_ms: int = 0,
        pacing_delay_ms: int = DEFAULT_PACING_DELAY_MS,
    ) -> JobRecord | None:
        """Send ``message`` to every recipient and complete the job.

        Args:
            job_id: Identifier of a record previously created in the store.
            sender: Session whose ``send`` capability delivers each message.
            recipients: Ordered destinations; duplicates are sent separately.
            message: Text delivered to every recipient.
            typing_delay_ms: Typing simulation passed through to ``send``.
            pacing_delay_ms: Pause between two consecutive sends.

        Returns:
            Snapshot of the completed record, or None if the record is not
            (or no longer) in the store.
        """
        job = self.store.get(job_id)
        if job is None:
            self.logger.warning("Bulk job %s not found, nothing to dispatch", job_id)
            return None
        session_id = job.session_id
        total = len(recipients)
        evicted = False

        for index, recipient in enumerate(recipients):
            outcome = await self._attempt(sender, recipient, message, typing_delay_ms)
            snapshot = self.store.mutate(job_id, lambda record: record.record_outcome(recipient, outcome))
            if snapshot is None and not evicted:
                evicted = True
                self.logger.warning("Bulk job %s was evicted while dispatching; progress is no longer tracked", job_id)
            self._observe(job_id, session_id, recipient, outcome)

            if index < total - 1 and pacing_delay_ms > 0:
                await self._sleep(pacing_delay_ms / 1000)

        final = self.store.mutate(job_id, lambda record: record.mark_completed())
        pruned = self.store.prune()
        if self.metrics:
            self.metrics.inc_completed(session_id)
            self.metrics.inc_pruned(len(pruned))
            self.metrics.set_stored(len(self.store))
        if final is not None:
            self.logger.info(
                "Bulk job %s completed. Sent: %d, Failed: %d",
                job_id,
                final.sent,
                final.failed,
            )
        return final

    async def _attempt(self, sender: Session, recipient: str, message: str, typing_delay_ms: int) -> SendOutcome:
        """Invoke the send capability, converting any fault into a failure."""
        try:
            result = await sender.send(recipient, message, typing_delay_ms)
        except Exception as exc:
            return SendOutcome.failure(str(exc) or exc.__class__.__name__)
        return coerce_outcome(result)

    def _observe(self, job_id: str, session_id: str, recipient: str, outcome: SendOutcome) -> None:
        status = DeliveryStatus.SENT if outcome.success else DeliveryStatus.FAILED
        if self.metrics:
            if status == DeliveryStatus.SENT:
                self.metrics.inc_sent(session_id)
            else:
                self.metrics.inc_failed(session_id)
        if status == DeliveryStatus.FAILED:
            log = self.logger.info if self._log_delivery_activity else self.logger.debug
            log("Bulk job %s: send to %s failed: %s", job_id, recipient, outcome.error)
        elif self._log_delivery_activity:
            self.logger.info(
                "Bulk job %s: sent to %s (message_id=%s)",
                job_id,
                recipient,
                outcome.message_id or "-",
            )
