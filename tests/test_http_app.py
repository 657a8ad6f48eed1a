from __future__ import annotations

import allure
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from lesson_pipeline.config import Settings
from lesson_pipeline.http_app import create_app
from lesson_pipeline.jobs.dispatcher import Dispatcher

pytestmark = [
    allure.epic("Operations"),
    allure.feature("HTTP Trigger"),
]


def test_ingest_dispatch_and_poll_owner(settings: Settings, source_text: str) -> None:
    with TestClient(create_app(settings)) as client:
        idle = client.post("/dispatch")
        assert idle.status_code == 200
        assert idle.json()["status"] == "idle"

        created = client.post(
            "/owners/bio-1/ingest",
            params={"filename": "biology.md"},
            content=source_text.encode("utf-8"),
            headers={"Content-Type": "text/markdown; charset=utf-8"},
        )
        assert created.status_code == 202
        job_id = created.json()["job_id"]

        first = client.get("/dispatch")
        assert first.json()["status"] == "ok"
        assert first.json()["report"]["completed"] == 1

        job = client.get(f"/jobs/{job_id}").json()
        assert job["job_type"] == "ingest"
        assert job["status"] == "completed"
        assert job["payload"]["content_type"] == "text/markdown"
        assert [event["event_type"] for event in job["events"]] == [
            "spawned",
            "claimed",
            "completed",
        ]

        for _ in range(10):
            if client.post("/dispatch").json()["status"] == "idle":
                break

        owner = client.get("/owners/bio-1").json()
        assert owner["status"] == "completed"
        assert owner["result"]["segment_count"] == 3
        assert {job["job_type"] for job in owner["jobs"]} == {
            "ingest",
            "detect_segments",
            "segment_extract",
            "finalize",
        }

        duplicate = client.post(
            "/owners/bio-1/ingest",
            content=b"again",
            headers={"Content-Type": "text/plain"},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "OWNER_EXISTS"


def test_error_responses(settings: Settings) -> None:
    with TestClient(create_app(settings)) as client:
        assert client.get("/jobs/nope").json()["error"]["code"] == "JOB_NOT_FOUND"
        assert client.get("/owners/nope").status_code == 404
        assert client.post("/owners/nope/retry-failed").status_code == 404
        empty = client.post("/owners/x/ingest", content=b"", headers={"Content-Type": "text/plain"})
        assert empty.status_code == 400
        assert empty.json()["error"]["code"] == "EMPTY_SOURCE"


def test_retry_failed_requeues_jobs(settings: Settings) -> None:
    with TestClient(create_app(settings)) as client:
        client.post(
            "/owners/scan-1/ingest",
            content=b"%PDF-1.7",
            headers={"Content-Type": "application/pdf"},
        )
        client.post("/dispatch")
        assert client.get("/owners/scan-1").json()["status"] == "failed"

        retried = client.post("/owners/scan-1/retry-failed")

        assert retried.status_code == 200
        assert len(retried.json()["requeued"]) == 1
        assert client.get("/owners/scan-1").json()["status"] == "processing"


def test_store_outage_maps_to_503(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    def _locked(self: Dispatcher, job_types: object = None) -> None:
        raise OperationalError("UPDATE jobs", {}, Exception("database is locked"))

    monkeypatch.setattr(Dispatcher, "run_once", _locked)

    with TestClient(create_app(settings)) as client:
        response = client.post("/dispatch")

    assert response.status_code == 503
    assert response.json() == {
        "error": {"code": "STORE_UNAVAILABLE", "message": "job store is unavailable"},
    }
