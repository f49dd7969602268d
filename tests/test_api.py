import time

import pytest
from fastapi.testclient import TestClient

from bulk_dispatch.api import API_TOKEN_HEADER_NAME, create_app
from bulk_dispatch.engine import BulkDispatchEngine
from bulk_dispatch.models import SendOutcome
from bulk_dispatch.sessions import SessionRegistry


API_TOKEN = "secret-token"


class DummySession:
    def __init__(self, session_id, connection_status="connected", fail=()):
        self.session_id = session_id
        self.connection_status = connection_status
        self.fail = set(fail)
        self.calls = []

    async def send(self, recipient, message, typing_delay_ms=0):
        self.calls.append(recipient)
        if recipient in self.fail:
            return SendOutcome.failure("not on whatsapp")
        return SendOutcome.ok(f"msg-{recipient}")


@pytest.fixture
def sessions():
    return SessionRegistry([
        DummySession("sales", fail={"222"}),
        DummySession("offline", connection_status="disconnected"),
    ])


@pytest.fixture
def engine():
    return BulkDispatchEngine(default_pacing_delay_ms=0)


@pytest.fixture
def client(engine, sessions):
    with TestClient(create_app(engine, sessions, api_token=API_TOKEN)) as test_client:
        test_client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        yield test_client


def _wait_completed(client, job_id, attempts=200):
    for _ in range(attempts):
        job = client.get(f"/chats/bulk-status/{job_id}").json()["job"]
        if job["status"] == "completed":
            return job
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not complete")


def test_health_does_not_require_token(engine, sessions):
    client = TestClient(create_app(engine, sessions, api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_token(engine, sessions):
    client = TestClient(create_app(engine, sessions, api_token=API_TOKEN))
    response = client.post("/chats/send-bulk", json={"sessionId": "sales", "recipients": ["1"], "message": "hi"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"
    assert len(engine.store) == 0


def test_no_token_configured_allows_requests(engine, sessions):
    client = TestClient(create_app(engine, sessions))
    assert client.get("/status").status_code == 200


def test_send_bulk_returns_job_handle(client, sessions):
    response = client.post(
        "/chats/send-bulk",
        json={"sessionId": "sales", "recipients": ["111", "222", "333"], "message": "Hello"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["total"] == 3
    assert body["status_url"] == f"/chats/bulk-status/{body['job_id']}"
    assert body["job_id"].startswith("bulk_")

    job = _wait_completed(client, body["job_id"])
    assert job["sent"] == 2
    assert job["failed"] == 1
    assert job["progress"] == 100
    assert [d["recipient"] for d in job["details"]] == ["111", "222", "333"]
    assert job["details"][1]["error"] == "not on whatsapp"
    assert sessions.get("sales").calls == ["111", "222", "333"]


@pytest.mark.parametrize(
    "payload,status_code,detail",
    [
        ({"recipients": ["1"], "message": "hi"}, 400, "Missing required field: sessionId"),
        ({"sessionId": "ghost", "recipients": ["1"], "message": "hi"}, 404, "Session not found"),
        (
            {"sessionId": "offline", "recipients": ["1"], "message": "hi"},
            400,
            "Session not connected. Please scan QR code first.",
        ),
        (
            {"sessionId": "sales", "message": "hi"},
            400,
            "Missing required field: recipients (array of phone numbers)",
        ),
        ({"sessionId": "sales", "recipients": ["1"]}, 400, "Missing required field: message"),
        (
            {"sessionId": "sales", "recipients": [str(i) for i in range(101)], "message": "hi"},
            400,
            "Maximum 100 recipients per request",
        ),
    ],
)
def test_send_bulk_rejections(client, engine, payload, status_code, detail):
    response = client.post("/chats/send-bulk", json=payload)
    assert response.status_code == status_code
    assert response.json()["detail"] == detail
    assert len(engine.store) == 0


def test_send_bulk_rejects_malformed_types(client, engine):
    response = client.post("/chats/send-bulk", json={"sessionId": "sales", "recipients": "111", "message": "hi"})
    assert response.status_code == 422
    assert len(engine.store) == 0


def test_send_bulk_accepts_numeric_recipients(client, sessions):
    response = client.post(
        "/chats/send-bulk",
        json={"sessionId": "sales", "recipients": [6281234, "222"], "message": "hi"},
    )
    assert response.status_code == 200

    job = _wait_completed(client, response.json()["job_id"])
    assert [d["recipient"] for d in job["details"]] == ["6281234", "222"]
    assert (job["sent"], job["failed"]) == (1, 1)
    assert sessions.get("sales").calls == ["6281234", "222"]


def test_admission_limit_maps_to_429(sessions):
    engine = BulkDispatchEngine(max_active_jobs_per_session=1)
    engine.store.create("sales", total=1)
    with TestClient(create_app(engine, sessions)) as client:
        response = client.post("/chats/send-bulk", json={"sessionId": "sales", "recipients": ["1"], "message": "hi"})
    assert response.status_code == 429


def test_unknown_job_is_404(client):
    response = client.get("/chats/bulk-status/bulk_0_missing00")
    assert response.status_code == 404
    assert response.json()["detail"] == "Job not found"


def test_bulk_jobs_listing_newest_first(client):
    ids = []
    for _ in range(3):
        ids.append(client.post(
            "/chats/send-bulk",
            json={"sessionId": "sales", "recipients": ["111"], "message": "hi"},
        ).json()["job_id"])

    listed = client.post("/chats/bulk-jobs", json={"sessionId": "sales"}).json()
    assert listed["ok"] is True
    assert [j["job_id"] for j in listed["jobs"]] == list(reversed(ids))

    by_path = client.get("/sessions/sales/bulk-jobs", params={"limit": 2}).json()
    assert [j["job_id"] for j in by_path["jobs"]] == list(reversed(ids))[:2]


def test_bulk_jobs_for_session_without_jobs(client):
    assert client.post("/chats/bulk-jobs", json={"sessionId": "offline"}).json() == {"ok": True, "jobs": []}


def test_bulk_jobs_unknown_session(client):
    assert client.post("/chats/bulk-jobs", json={"sessionId": "ghost"}).status_code == 404
    assert client.post("/chats/bulk-jobs", json={}).status_code == 400


def test_sessions_endpoint(client):
    sessions = client.get("/sessions").json()["sessions"]
    assert {s["session_id"]: s["is_connected"] for s in sessions} == {"sales": True, "offline": False}


def test_status_and_metrics(client):
    client.post("/chats/send-bulk", json={"sessionId": "sales", "recipients": ["111"], "message": "hi"})

    status = client.get("/status").json()
    assert status["ok"] is True
    assert status["stored_jobs"] == 1
    assert status["capacity"] == 100

    response = client.get("/metrics")
    assert response.status_code == 200
    assert b'bds_jobs_submitted_total{session_id="sales"} 1.0' in response.content
