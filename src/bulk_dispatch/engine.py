# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for the bulk dispatch service.

This module provides :class:`BulkDispatchEngine`, the coordinator that:

- Validates bulk submissions before any job is created
- Creates job records in the owned :class:`~bulk_dispatch.job_store.JobStore`
- Spawns one detached dispatch task per job and returns immediately
- Serves the read-only query surface (status and per-session listing)
- Exposes a command-based interface mirroring the HTTP API

Each dispatch task has its own error boundary: a fault escaping one job's
runner is logged and never reaches the submitter or any other job.

Example:
    Submitting a bulk job::

        engine = BulkDispatchEngine()
        receipt = engine.submit(session, ["39333111", "39333222"], "Hello")
        engine.get_job(receipt.job_id)

Attributes:
    DEFAULT_LIST_LIMIT: Maximum records returned by a session listing.
    STATUS_PATH: Template of the status locator returned to submitters.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from .errors import AdmissionLimitError, BulkDispatchError, BulkValidationError
from .job_store import DEFAULT_STORE_CAPACITY, JobStore
from .logger import get_logger
from .models import (
    DEFAULT_MAX_RECIPIENTS,
    DEFAULT_PACING_DELAY_MS,
    DEFAULT_TYPING_DELAY_MS,
    BulkSendRequest,
    JobRecord,
    SubmissionReceipt,
)
from .prometheus import BulkMetrics
from .runner import DispatchRunner
from .sessions import Session, SessionRegistry

DEFAULT_LIST_LIMIT = 50
STATUS_PATH = "/chats/bulk-status/{job_id}"

_FIELD_ALIASES = {
    "session_id": "sessionId",
    "recipients": "recipients",
    "message": "message",
    "pacing_delay_ms": "delayBetweenMessages",
    "typing_delay_ms": "typingTime",
}


def describe_validation_error(exc: ValidationError) -> str:
    """Turn the first pydantic error into a caller-facing message."""
    error = exc.errors()[0]
    field = str(error["loc"][0]) if error.get("loc") else "request"
    field = _FIELD_ALIASES.get(field, field)
    match error.get("type"):
        case "missing":
            if field == "recipients":
                return "Missing required field: recipients (array of phone numbers)"
            return f"Missing required field: {field}"
        case "value_error":
            cause = (error.get("ctx") or {}).get("error")
            return str(cause) if cause else error["msg"]
        case _:
            return f"Invalid field {field}: {error['msg']}"


class BulkDispatchEngine:
    """Coordinator of bulk jobs: submission, background dispatch and queries.

    Attributes:
        store: The owned job store (in-memory, empty at construction).
        metrics: Prometheus metrics collector.
        runner: Dispatch runner shared by every job.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        *,
        store: JobStore | None = None,
        metrics: BulkMetrics | None = None,
        logger=None,
        store_capacity: int = DEFAULT_STORE_CAPACITY,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        list_limit: int = DEFAULT_LIST_LIMIT,
        default_pacing_delay_ms: int = DEFAULT_PACING_DELAY_MS,
        default_typing_delay_ms: int = DEFAULT_TYPING_DELAY_MS,
        max_active_jobs_per_session: int | None = None,
        status_prefix: str = "",
        log_delivery_activity: bool = False,
        runner: DispatchRunner | None = None,
    ):
        """Initialize the engine.

        Args:
            store: Job store to use. A new one of ``store_capacity`` is
                created when omitted.
            metrics: Prometheus metrics collector. If None, creates new instance.
            logger: Custom logger instance. If None, uses default logger.
            store_capacity: Records kept by pruning when no store is given.
            max_recipients: Upper bound on recipients per submission.
            list_limit: Maximum records returned by :meth:`list_jobs`.
            default_pacing_delay_ms: Pacing used when a submission omits it.
            default_typing_delay_ms: Typing delay used when a submission omits it.
            max_active_jobs_per_session: Optional cap on jobs still
                ``processing`` for one session. None means unlimited.
            status_prefix: Prefix of the status locator (e.g. ``/api/whatsapp``).
            log_delivery_activity: Enable verbose per-recipient logging.
            runner: Custom dispatch runner, mainly for tests.
        """
        self.logger = logger or get_logger("BulkDispatchEngine")
        self.metrics = metrics if metrics is not None else BulkMetrics()
        self.store = store if store is not None else JobStore(capacity=store_capacity)
        if runner is None:
            runner = DispatchRunner(
                self.store,
                metrics=self.metrics,
                logger=self.logger,
                log_delivery_activity=log_delivery_activity,
            )
        self.runner = runner
        self._max_recipients = max(1, int(max_recipients))
        self._list_limit = max(1, int(list_limit))
        self._default_pacing_delay_ms = max(0, int(default_pacing_delay_ms))
        self._default_typing_delay_ms = max(0, int(default_typing_delay_ms))
        self._max_active_per_session = (
            int(max_active_jobs_per_session) if max_active_jobs_per_session else None
        )
        self._status_prefix = status_prefix.rstrip("/")
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ submit
    @property
    def active_jobs(self) -> int:
        """Number of dispatch tasks still running."""
        return len(self._tasks)

    def status_url(self, job_id: str) -> str:
        return f"{self._status_prefix}{STATUS_PATH.format(job_id=job_id)}"

    def validate(
        self,
        session_id: str,
        recipients: Any,
        message: Any,
        pacing_delay_ms: int | None = None,
        typing_delay_ms: int | None = None,
    ) -> BulkSendRequest:
        """Validate a submission without creating anything.

        Raises:
            BulkValidationError: If any field is missing or out of bounds.
        """
        data: dict[str, Any] = {
            "session_id": session_id,
            "recipients": recipients,
            "message": message,
            "pacing_delay_ms": self._default_pacing_delay_ms if pacing_delay_ms is None else pacing_delay_ms,
            "typing_delay_ms": self._default_typing_delay_ms if typing_delay_ms is None else typing_delay_ms,
        }
        data = {key: value for key, value in data.items() if value is not None}
        try:
            return BulkSendRequest.model_validate(data, context={"max_recipients": self._max_recipients})
        except ValidationError as exc:
            raise BulkValidationError(describe_validation_error(exc)) from exc

    def submit(
        self,
        session: Session,
        recipients: Any,
        message: Any,
        pacing_delay_ms: int | None = None,
        typing_delay_ms: int | None = None,
    ) -> SubmissionReceipt:
        """Accept a bulk send and start dispatching it in the background.

        Must be called from within a running event loop. Returns as soon as
        the job record exists; the sends proceed independently of the caller.

        Args:
            session: Connected session whose ``send`` delivers each message.
            recipients: Destinations, 1 to ``max_recipients`` entries.
            message: Text to deliver.
            pacing_delay_ms: Pause between consecutive sends. Defaults to the
                engine's configured pacing.
            typing_delay_ms: Typing delay passed to every send.

        Returns:
            Receipt with the job id, recipient count and status locator.

        Raises:
            BulkValidationError: If the submission is malformed.
            AdmissionLimitError: If the session's running-job cap is reached.
        """
        request = self.validate(session.session_id, recipients, message, pacing_delay_ms, typing_delay_ms)
        if self._max_active_per_session is not None:
            running = self.store.count_active(request.session_id)
            if running >= self._max_active_per_session:
                raise AdmissionLimitError(request.session_id, self._max_active_per_session)

        job_id = self.store.create(request.session_id, total=len(request.recipients))
        self.metrics.inc_submitted(request.session_id)
        self.metrics.set_stored(len(self.store))
        self.logger.info(
            "Bulk job %s accepted for session %s (recipients=%d, pacing=%dms)",
            job_id,
            request.session_id,
            len(request.recipients),
            request.pacing_delay_ms,
        )

        task = asyncio.create_task(
            self.runner.run(
                job_id,
                session,
                list(request.recipients),
                request.message,
                typing_delay_ms=request.typing_delay_ms,
                pacing_delay_ms=request.pacing_delay_ms,
            ),
            name=f"bulk-dispatch-{job_id}",
        )
        self._tasks.add(task)
        self.metrics.set_active(len(self._tasks))
        task.add_done_callback(functools.partial(self._on_task_done, job_id))

        return SubmissionReceipt(
            job_id=job_id,
            total=len(request.recipients),
            status_url=self.status_url(job_id),
        )

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        """Error boundary of a dispatch task.

        A runner that dies outside a send leaves its record ``processing``.
        """
        self._tasks.discard(task)
        self.metrics.set_active(len(self._tasks))
        if task.cancelled():
            self.logger.warning("Dispatch task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "Unhandled error in dispatch task %s, bulk job %s left processing: %s",
                task.get_name(),
                job_id,
                exc,
                exc_info=exc,
            )

    # ------------------------------------------------------------------- query
    def get_job(self, job_id: str) -> JobRecord | None:
        """Return the current record, or None if unknown or pruned."""
        return self.store.get(job_id)

    def list_jobs(self, session_id: str, limit: int | None = None) -> list[JobRecord]:
        """Return up to ``limit`` (default 50) records of a session, newest first."""
        if limit is None:
            limit = self._list_limit
        return self.store.list_by_session(session_id, min(int(limit), self._list_limit))

    def stats(self) -> dict[str, int]:
        return {
            "stored_jobs": len(self.store),
            "active_jobs": self.active_jobs,
            "processing_jobs": self.store.count_active(),
            "capacity": self.store.capacity,
        }

    # ---------------------------------------------------------------- commands
    async def handle_command(
        self,
        cmd: str,
        payload: dict[str, Any] | None = None,
        sessions: SessionRegistry | None = None,
    ) -> dict[str, Any]:
        """Execute a control command.

        Supported commands:
        - ``sendBulk``: submit a job (requires ``sessions`` to resolve the session)
        - ``getJob``: return one record
        - ``listJobs``: list a session's records
        - ``stats``: store and task counters

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.
            sessions: Registry used to resolve ``sessionId`` for ``sendBulk``.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        match cmd:
            case "sendBulk":
                if sessions is None:
                    return {"ok": False, "error": "no session registry configured"}
                try:
                    session = sessions.require_connected(payload.get("sessionId") or "")
                    receipt = self.submit(
                        session,
                        payload.get("recipients"),
                        payload.get("message"),
                        pacing_delay_ms=payload.get("delayBetweenMessages"),
                        typing_delay_ms=payload.get("typingTime"),
                    )
                except BulkDispatchError as exc:
                    return {"ok": False, "error": exc.message, "code": exc.code}
                return {"ok": True, **receipt.model_dump()}
            case "getJob":
                job = self.get_job(payload.get("jobId") or "")
                if job is None:
                    return {"ok": False, "error": "Job not found"}
                return {"ok": True, "job": job.model_dump(mode="json")}
            case "listJobs":
                jobs = self.list_jobs(payload.get("sessionId") or "", payload.get("limit"))
                return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
            case "stats":
                return {"ok": True, **self.stats()}
            case _:
                return {"ok": False, "error": "unknown command"}

    # --------------------------------------------------------------- lifecycle
    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until every dispatch task in flight has finished."""
        pending: Iterable[asyncio.Task] = list(self._tasks)
        if not pending:
            return
        await asyncio.wait_for(
            asyncio.gather(*pending, return_exceptions=True),
            timeout=timeout,
        )

    async def stop(self) -> None:
        """Cancel every dispatch task still running and wait for them.

        Jobs cut short this way stay ``processing`` in the store; nothing
        survives the process anyway.
        """
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("Stopped %d bulk dispatch task(s)", len(tasks))
