"""Python client for interacting with bulk dispatch instances.

This module provides a Pythonic interface for submitting bulk sends to a
running bulk dispatch server and following the resulting jobs.

Usage in REPL:
    >>> from bulk_dispatch.client import BulkDispatchClient
    >>> client = BulkDispatchClient("http://localhost:8000", token="secret")
    >>> receipt = client.send_bulk("sales", ["39333111", "39333222"], "Hello")
    >>> client.job(receipt.job_id)
    BulkJob(id='bulk_...', status='processing', 0/2)
    >>> client.wait_for(receipt.job_id)
    BulkJob(id='bulk_...', status='completed', 2/2)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests


@dataclass
class BulkReceipt:
    """Handle returned when a bulk send is accepted."""

    job_id: str
    total: int
    status_url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BulkReceipt":
        return cls(
            job_id=data["job_id"],
            total=int(data.get("total", 0)),
            status_url=data.get("status_url", ""),
        )


@dataclass
class BulkJob:
    """Represents a bulk job as reported by the server."""

    job_id: str
    session_id: str = ""
    status: str = "processing"
    total: int = 0
    sent: int = 0
    failed: int = 0
    progress: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BulkJob":
        """Create a BulkJob from API response dict."""
        return cls(
            job_id=data["job_id"],
            session_id=data.get("session_id", ""),
            status=data.get("status", "processing"),
            total=data.get("total", 0),
            sent=data.get("sent", 0),
            failed=data.get("failed", 0),
            progress=data.get("progress", 0),
            details=list(data.get("details") or []),
            created_at=data.get("created_at"),
            completed_at=data.get("completed_at"),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    def __repr__(self) -> str:
        return f"BulkJob(id='{self.job_id}', status='{self.status}', {self.sent + self.failed}/{self.total})"


class BulkDispatchClient:
    """Client for interacting with a bulk dispatch server.

    Attributes:
        url: Base URL of the bulk dispatch server.
        name: Optional name for this connection.

    Example:
        >>> client = BulkDispatchClient("http://localhost:8000", token="secret")
        >>> client.status()
        {'ok': True, 'stored_jobs': 3, 'active_jobs': 1, ...}
    """

    def __init__(
        self,
        url: str = "http://localhost:8000",
        token: Optional[str] = None,
        name: Optional[str] = None,
        timeout: float = 30,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the bulk dispatch server.
            token: API token for authentication.
            name: Optional name for this connection.
            timeout: Timeout in seconds of every HTTP request.
        """
        self.url = url.rstrip("/")
        self.token = token
        self.name = name or url
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["X-API-Token"] = self.token
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make a GET request."""
        url = f"{self.url}{path}"
        resp = requests.get(url, headers=self._headers(), params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Make a POST request."""
        url = f"{self.url}{path}"
        resp = requests.post(url, headers=self._headers(), json=data or {}, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def status(self) -> Dict[str, Any]:
        """Get server status."""
        return self._get("/status")

    def health(self) -> bool:
        """Check if server is healthy."""
        try:
            result = self._get("/health")
        except requests.RequestException:
            return False
        return result.get("status") == "ok"

    def sessions(self) -> List[Dict[str, Any]]:
        """List the sessions registered on the server."""
        return self._get("/sessions").get("sessions", [])

    def send_bulk(
        self,
        session_id: str,
        recipients: List[str],
        message: str,
        delay_between_messages: Optional[int] = None,
        typing_time: Optional[int] = None,
    ) -> BulkReceipt:
        """Submit a bulk send and return its receipt.

        Raises:
            requests.HTTPError: If the server rejects the submission.
        """
        payload: Dict[str, Any] = {
            "sessionId": session_id,
            "recipients": recipients,
            "message": message,
        }
        if delay_between_messages is not None:
            payload["delayBetweenMessages"] = delay_between_messages
        if typing_time is not None:
            payload["typingTime"] = typing_time
        return BulkReceipt.from_dict(self._post("/chats/send-bulk", payload))

    def job(self, job_id: str) -> Optional[BulkJob]:
        """Get a bulk job, or None if the server no longer knows it."""
        try:
            data = self._get(f"/chats/bulk-status/{job_id}")
        except requests.HTTPError as exc:
            if exc.response is not None and exc.response.status_code == 404:
                return None
            raise
        return BulkJob.from_dict(data["job"])

    def jobs(self, session_id: str, limit: Optional[int] = None) -> List[BulkJob]:
        """List a session's bulk jobs, newest first."""
        params = {"limit": limit} if limit else None
        data = self._get(f"/sessions/{session_id}/bulk-jobs", params=params)
        return [BulkJob.from_dict(j) for j in data.get("jobs", [])]

    def wait_for(
        self,
        job_id: str,
        timeout: float = 300,
        interval: float = 1.0,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> BulkJob:
        """Poll a job until it completes.

        Raises:
            LookupError: If the job is unknown or has been pruned.
            TimeoutError: If the job is still processing after ``timeout``.
        """
        deadline = time.monotonic() + timeout
        while True:
            job = self.job(job_id)
            if job is None:
                raise LookupError(f"Job not found: {job_id}")
            if job.is_completed:
                return job
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Job {job_id} still {job.status} after {timeout}s")
            sleep(interval)

    def __repr__(self) -> str:
        return f"<BulkDispatchClient '{self.name}'>"
