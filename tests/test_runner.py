import types
from typing import Any, Dict, List

import pytest

from bulk_dispatch.job_store import JobStore
from bulk_dispatch.models import DeliveryStatus, JobStatus, SendOutcome
from bulk_dispatch.prometheus import BulkMetrics
from bulk_dispatch.runner import DispatchRunner, coerce_outcome


class DummySession:
    def __init__(self, session_id="s1", results: Dict[str, Any] | None = None):
        self.session_id = session_id
        self.connection_status = "connected"
        self.results = results or {}
        self.calls: List[tuple] = []
        self.snapshots: List[Any] = []
        self.store: JobStore | None = None
        self.job_id: str | None = None

    async def send(self, recipient, message, typing_delay_ms=0):
        self.calls.append((recipient, message, typing_delay_ms))
        if self.store is not None:
            self.snapshots.append(self.store.get(self.job_id))
        result = self.results.get(recipient, SendOutcome.ok(f"id-{recipient}"))
        if isinstance(result, Exception):
            raise result
        return result


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _silent_logger():
    return types.SimpleNamespace(
        info=lambda *a, **k: None,
        debug=lambda *a, **k: None,
        warning=lambda *a, **k: None,
        error=lambda *a, **k: None,
    )


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def runner(store, sleep):
    return DispatchRunner(store, sleep=sleep, logger=_silent_logger())


@pytest.mark.asyncio
async def test_all_recipients_sent_in_order(store, runner):
    session = DummySession()
    recipients = ["111", "222", "333"]
    job_id = store.create("s1", total=len(recipients))

    job = await runner.run(job_id, session, recipients, "hello", typing_delay_ms=250, pacing_delay_ms=0)

    assert [c[0] for c in session.calls] == recipients
    assert all(c[1] == "hello" and c[2] == 250 for c in session.calls)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at >= job.created_at
    assert (job.sent, job.failed, job.progress) == (3, 0, 100)
    assert [d.recipient for d in job.details] == recipients
    assert [d.message_id for d in job.details] == ["id-111", "id-222", "id-333"]
    assert store.get(job_id) == job


@pytest.mark.asyncio
async def test_failures_are_isolated(store, runner):
    session = DummySession(results={
        "222": RuntimeError("socket closed"),
        "333": {"success": False, "message": "Number not on WhatsApp"},
        "444": ValueError(),
    })
    recipients = ["111", "222", "333", "444", "555"]
    job_id = store.create("s1", total=len(recipients))

    job = await runner.run(job_id, session, recipients, "hello", pacing_delay_ms=0)

    assert len(session.calls) == 5
    assert (job.sent, job.failed) == (2, 3)
    assert job.sent + job.failed == job.total
    assert [d.status for d in job.details] == [
        DeliveryStatus.SENT,
        DeliveryStatus.FAILED,
        DeliveryStatus.FAILED,
        DeliveryStatus.FAILED,
        DeliveryStatus.SENT,
    ]
    assert job.details[1].error == "socket closed"
    assert job.details[2].error == "Number not on WhatsApp"
    assert job.details[3].error == "ValueError"
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_all_failures_still_complete(store, runner):
    session = DummySession(results={"1": SendOutcome.failure("x"), "2": SendOutcome.failure("y")})
    job_id = store.create("s1", total=2)

    job = await runner.run(job_id, session, ["1", "2"], "hello", pacing_delay_ms=0)

    assert job.status == JobStatus.COMPLETED
    assert (job.sent, job.failed, job.progress) == (0, 2, 100)


@pytest.mark.asyncio
async def test_pacing_between_consecutive_sends_only(store, runner, sleep):
    session = DummySession()
    job_id = store.create("s1", total=3)

    await runner.run(job_id, session, ["1", "2", "3"], "hello", pacing_delay_ms=1500)

    assert sleep.calls == [1.5, 1.5]


@pytest.mark.asyncio
async def test_zero_pacing_never_suspends(store, runner, sleep):
    session = DummySession()
    job_id = store.create("s1", total=3)

    await runner.run(job_id, session, ["1", "2", "3"], "hello", pacing_delay_ms=0)

    assert sleep.calls == []


@pytest.mark.asyncio
async def test_single_recipient_has_no_pause(store, runner, sleep):
    session = DummySession()
    job_id = store.create("s1", total=1)

    job = await runner.run(job_id, session, ["1"], "hello", pacing_delay_ms=1000)

    assert sleep.calls == []
    assert job.progress == 100


@pytest.mark.asyncio
async def test_duplicate_recipients_are_sent_separately(store, runner):
    session = DummySession()
    job_id = store.create("s1", total=2)

    job = await runner.run(job_id, session, ["111", "111"], "hello", pacing_delay_ms=0)

    assert [c[0] for c in session.calls] == ["111", "111"]
    assert len(job.details) == 2
    assert job.sent == 2


@pytest.mark.asyncio
async def test_progress_is_visible_while_running(store, runner):
    session = DummySession()
    job_id = store.create("s1", total=3)
    session.store, session.job_id = store, job_id

    await runner.run(job_id, session, ["1", "2", "3"], "hello", pacing_delay_ms=0)

    assert [(s.sent, s.progress, s.status) for s in session.snapshots] == [
        (0, 0, JobStatus.PROCESSING),
        (1, 33, JobStatus.PROCESSING),
        (2, 67, JobStatus.PROCESSING),
    ]


@pytest.mark.asyncio
async def test_missing_job_is_skipped(store, runner):
    session = DummySession()
    assert await runner.run("bulk_0_missing00", session, ["1"], "hello") is None
    assert session.calls == []


@pytest.mark.asyncio
async def test_completion_prunes_the_store(sleep):
    store = JobStore(capacity=1)
    runner = DispatchRunner(store, sleep=sleep, logger=_silent_logger())
    old_id = store.create("s1", total=1)
    await runner.run(old_id, DummySession(), ["1"], "hello")

    new_id = store.create("s1", total=1)
    await runner.run(new_id, DummySession(), ["1"], "hello")

    assert store.get(old_id) is None
    assert store.get(new_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_metrics_and_completion_log(store, sleep, caplog):
    metrics = BulkMetrics()
    runner = DispatchRunner(store, metrics=metrics, sleep=sleep)
    session = DummySession(results={"2": SendOutcome.failure("nope")})
    job_id = store.create("s1", total=3)

    with caplog.at_level("INFO", logger="DispatchRunner"):
        await runner.run(job_id, session, ["1", "2", "3"], "hello", pacing_delay_ms=0)

    output = metrics.generate_latest()
    assert b'bds_recipients_sent_total{session_id="s1"} 2.0' in output
    assert b'bds_recipients_failed_total{session_id="s1"} 1.0' in output
    assert b'bds_jobs_completed_total{session_id="s1"} 1.0' in output
    assert f"Bulk job {job_id} completed. Sent: 2, Failed: 1" in caplog.text


def test_coerce_outcome():
    ok = SendOutcome.ok("m")
    assert coerce_outcome(ok) is ok
    assert coerce_outcome({"success": True, "data": {"messageId": "x"}}).message_id == "x"
    bad = coerce_outcome(None)
    assert not bad.success
    assert "invalid send result" in bad.error


@pytest.mark.asyncio
async def test_sequential_jobs_keep_only_the_newest_hundred(sleep):
    store = JobStore(capacity=100)
    runner = DispatchRunner(store, sleep=sleep, logger=_silent_logger())
    session = DummySession()
    created = []

    for _ in range(150):
        job_id = store.create("s1", total=1)
        created.append(job_id)
        await runner.run(job_id, session, ["111"], "hello")

    assert len(store) == 100
    assert {job.job_id for job in store.list_by_session("s1")} == set(created[50:])
