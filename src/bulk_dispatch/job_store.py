# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded in-memory registry of bulk job records.

The store is an explicitly owned object: it starts empty, lives in process
memory only and is lost on restart. Every operation runs under a single
lock scoped to the whole store, since pruning touches the full collection.

Readers always receive deep snapshots, and ``mutate`` applies its callback
to a private copy that replaces the stored record only once the callback
returns, so a concurrent reader never observes a half-applied update.

Example:
    Typical lifecycle::

        store = JobStore(capacity=100)
        job_id = store.create("session-1", total=3)
        store.mutate(job_id, lambda job: job.record_outcome("123", outcome))
        store.get(job_id)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from .job_ids import generate_job_id
from .logger import get_logger
from .models import DEFAULT_JOB_KIND, JobRecord, JobStatus

DEFAULT_STORE_CAPACITY = 100

logger = get_logger("JobStore")


class JobStore:
    """Thread-safe, size-capped mapping from job id to :class:`JobRecord`.

    Attributes:
        capacity: Nominal number of records retained after pruning.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_STORE_CAPACITY,
        id_factory: Callable[[], str] = generate_job_id,
    ):
        """Create an empty store.

        Args:
            capacity: Number of records kept by :meth:`prune`. Records still
                ``processing`` are kept in addition to this number.
            id_factory: Callable producing new job identifiers.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = int(capacity)
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._sequence: dict[str, int] = {}
        self._next_seq = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, session_id: str, total: int, kind: str = DEFAULT_JOB_KIND) -> str:
        """Allocate a new ``processing`` record and return its identifier."""
        with self._lock:
            job_id = self._id_factory()
            while job_id in self._jobs:
                job_id = self._id_factory()
            self._jobs[job_id] = JobRecord(
                job_id=job_id,
                session_id=session_id,
                kind=kind,
                total=total,
            )
            self._sequence[job_id] = self._next_seq
            self._next_seq += 1
        logger.debug("Created bulk job %s for session %s (total=%d)", job_id, session_id, total)
        return job_id

    def get(self, job_id: str) -> JobRecord | None:
        """Return a snapshot of the record, or ``None`` if unknown or pruned."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def mutate(self, job_id: str, fn: Callable[[JobRecord], Any]) -> JobRecord | None:
        """Apply ``fn`` to the record and return the updated snapshot.

        The update is all-or-nothing: if ``fn`` raises, the stored record is
        left unchanged and the exception propagates. Mutating a record that
        no longer exists (for example after pruning) is a no-op returning
        ``None``.
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                logger.debug("Ignoring update for unknown bulk job %s", job_id)
                return None
            draft = current.model_copy(deep=True)
            fn(draft)
            self._jobs[job_id] = draft
            return draft.model_copy(deep=True)

    def list_by_session(self, session_id: str, limit: int | None = None) -> list[JobRecord]:
        """Return the session's records, newest first, truncated to ``limit``."""
        with self._lock:
            jobs = [job for job in self._ordered() if job.session_id == session_id]
            if limit is not None:
                jobs = jobs[: max(0, int(limit))]
            return [job.model_copy(deep=True) for job in jobs]

    def count_active(self, session_id: str | None = None) -> int:
        """Count records still ``processing``, optionally for one session."""
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == JobStatus.PROCESSING
                and (session_id is None or job.session_id == session_id)
            )

    def prune(self) -> list[str]:
        """Drop the oldest records once the store exceeds its capacity.

        Records are ranked by creation time, newest first, and everything
        past position ``capacity`` is removed unless it is still
        ``processing``.

        Returns:
            The identifiers of the removed records.
        """
        with self._lock:
            if len(self._jobs) <= self.capacity:
                return []
            removed: list[str] = []
            for job in self._ordered()[self.capacity:]:
                if job.status == JobStatus.PROCESSING:
                    continue
                del self._jobs[job.job_id]
                del self._sequence[job.job_id]
                removed.append(job.job_id)
        if removed:
            logger.debug("Pruned %d bulk job(s) beyond capacity %d", len(removed), self.capacity)
        return removed

    def _ordered(self) -> list[JobRecord]:
        """Records sorted newest first; caller must hold the lock."""
        return sorted(
            self._jobs.values(),
            key=lambda job: (job.created_at, self._sequence[job.job_id]),
            reverse=True,
        )
