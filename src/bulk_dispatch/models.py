# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the bulk dispatch engine.

This module defines the typed records exchanged between the job store, the
dispatch runner and the HTTP surface.

Models:
    - JobStatus: Lifecycle state of a bulk job
    - DeliveryStatus: Outcome of a single recipient
    - JobDetail: Per-recipient outcome entry
    - JobRecord: Configuration, live counters and outcome log of one job
    - SendOutcome: Result returned by a session's send capability
    - BulkSendRequest: Validated bulk submission
    - SubmissionReceipt: Handle returned to the submitter
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

DEFAULT_MAX_RECIPIENTS = 100
DEFAULT_PACING_DELAY_MS = 1000
DEFAULT_TYPING_DELAY_MS = 0
DEFAULT_JOB_KIND = "text"


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def compute_progress(processed: int, total: int) -> int:
    """Return the completion percentage for ``processed`` out of ``total``.

    Halves round up, and 100 is reserved for the last recipient.
    """
    if total <= 0:
        return 0
    value = (processed * 200 + total) // (2 * total)
    if processed < total:
        return min(value, 99)
    return 100


class JobStatus(str, Enum):
    """Lifecycle state of a bulk job.

    Attributes:
        PROCESSING: The dispatch runner is still walking the recipient list.
        COMPLETED: Every recipient has been processed. Terminal.
    """

    PROCESSING = "processing"
    COMPLETED = "completed"


class DeliveryStatus(str, Enum):
    """Outcome recorded for a single recipient."""

    SENT = "sent"
    FAILED = "failed"


class JobDetail(BaseModel):
    """Outcome entry appended once per processed recipient."""

    recipient: str
    status: DeliveryStatus
    message_id: str | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class JobRecord(BaseModel):
    """State of one bulk send.

    The record is created by the job store and afterwards mutated only by the
    dispatch runner that owns it, through ``JobStore.mutate``.

    Attributes:
        job_id: Opaque unique identifier, immutable.
        session_id: Channel used for this job, immutable.
        kind: Payload type of the job (currently always ``"text"``).
        status: ``processing`` until the last recipient, then ``completed``.
        total: Number of recipients, fixed at creation.
        sent: Recipients delivered successfully.
        failed: Recipients whose send failed or raised.
        progress: Integer percentage of processed recipients.
        details: Ordered per-recipient outcomes.
        created_at: Creation timestamp, immutable.
        completed_at: Completion timestamp, set once.
    """

    job_id: str
    session_id: str
    kind: str = DEFAULT_JOB_KIND
    status: JobStatus = JobStatus.PROCESSING
    total: Annotated[int, Field(ge=1)]
    sent: Annotated[int, Field(ge=0)] = 0
    failed: Annotated[int, Field(ge=0)] = 0
    progress: Annotated[int, Field(ge=0, le=100)] = 0
    details: list[JobDetail] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def processed(self) -> int:
        """Number of recipients handled so far."""
        return self.sent + self.failed

    @property
    def is_completed(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def record_outcome(self, recipient: str, outcome: SendOutcome) -> JobDetail:
        """Count ``outcome`` for ``recipient`` and append its detail entry."""
        if outcome.success:
            self.sent += 1
            detail = JobDetail(
                recipient=recipient,
                status=DeliveryStatus.SENT,
                message_id=outcome.message_id,
            )
        else:
            self.failed += 1
            detail = JobDetail(
                recipient=recipient,
                status=DeliveryStatus.FAILED,
                error=outcome.error or "unknown error",
            )
        self.details.append(detail)
        self.progress = max(self.progress, compute_progress(self.processed, self.total))
        return detail

    def mark_completed(self) -> None:
        """Transition to ``completed``; later calls leave the record untouched."""
        if self.status == JobStatus.COMPLETED:
            return
        self.status = JobStatus.COMPLETED
        self.completed_at = utc_now()


class SendOutcome(BaseModel):
    """Result of one call to a session's send capability."""

    success: bool
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message_id: str | None = None) -> SendOutcome:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failure(cls, error: str) -> SendOutcome:
        return cls(success=False, error=error)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> SendOutcome:
        """Build an outcome from a gateway response envelope.

        The gateway answers ``{"success": bool, "message": str,
        "data": {"messageId": str}}``; a missing ``success`` key counts as a
        failure.
        """
        payload = data.get("data") or {}
        message_id = payload.get("messageId") if isinstance(payload, dict) else None
        if data.get("success"):
            return cls.ok(str(message_id) if message_id is not None else None)
        return cls.failure(str(data.get("message") or "send failed"))


class BulkSendRequest(BaseModel):
    """Validated bulk submission.

    The recipient ceiling is read from the validation context key
    ``max_recipients`` and defaults to ``DEFAULT_MAX_RECIPIENTS``.
    """

    model_config = ConfigDict(extra="forbid")

    session_id: str
    recipients: list[str]
    message: str
    pacing_delay_ms: Annotated[int, Field(ge=0)] = DEFAULT_PACING_DELAY_MS
    typing_delay_ms: Annotated[int, Field(ge=0)] = DEFAULT_TYPING_DELAY_MS

    @field_validator("session_id")
    @classmethod
    def session_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Missing required field: sessionId")
        return v

    @field_validator("recipients", mode="before")
    @classmethod
    def numeric_recipients_as_text(cls, v: Any) -> Any:
        """Accept phone numbers sent as JSON integers."""
        if isinstance(v, list):
            return [str(item) if isinstance(item, int) and not isinstance(item, bool) else item for item in v]
        return v

    @field_validator("recipients")
    @classmethod
    def recipients_within_bounds(cls, v: list[str], info: ValidationInfo) -> list[str]:
        """Reject empty lists, blank entries and lists above the ceiling."""
        if not v:
            raise ValueError("Missing required field: recipients (array of phone numbers)")
        limit = (info.context or {}).get("max_recipients", DEFAULT_MAX_RECIPIENTS)
        if len(v) > limit:
            raise ValueError(f"Maximum {limit} recipients per request")
        if any(not item.strip() for item in v):
            raise ValueError("Recipients must be non-empty strings")
        return v

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Missing required field: message")
        return v


class SubmissionReceipt(BaseModel):
    """Handle returned synchronously for an accepted submission."""

    job_id: str
    total: int
    status_url: str

