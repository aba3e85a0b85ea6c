"""
HTTP trigger tests (FastAPI TestClient, pipeline injected via dependency override).
"""

import logging

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.routes import get_pipeline
from config.settings import settings
from db.database import session_scope
from db.history import RunHistoryRecorder
from db.jobs import JobQueue
from db.locks import LockManager
from db.models import RunRecord
from utils.pipeline import TriggerPipeline

from conftest import FakeLlm, FakeReviewApi, add_resource, add_review, no_sleep, raw_review

SECRET = "s3cret-value"


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", SECRET)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(settings, "REVIEW_API_TOKEN", "review-token")


@pytest.fixture
def pipeline(session_factory):
    pages = {"R1": [[raw_review("a", "2024-01-01T10:00:00Z"), raw_review("b", "2024-01-02T10:00:00Z")]]}
    return TriggerPipeline(
        session_factory=session_factory,
        review_client=FakeReviewApi(pages),
        llm=FakeLlm(),
        locks=LockManager(session_factory),
        jobs=JobQueue(session_factory),
        recorder=RunHistoryRecorder(session_factory),
        agent_options={"sleep": no_sleep, "base_delay": 0},
    )


@pytest.fixture
def client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestAuth:
    def test_missing_configuration(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", None)
        monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
        monkeypatch.setattr(settings, "REVIEW_API_TOKEN", "review-token")
        resp = client.post("/api/v1/cron/reviews", headers={"x-cron-secret": SECRET})
        assert resp.status_code == 500
        body = resp.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "config_error"
        assert "CRON_SECRET" in body["error"]["message"]
        assert "OPENAI_API_KEY" in body["error"]["message"]
        assert body["requestId"]

    def test_missing_secret(self, client, configured):
        resp = client.post("/api/v1/cron/reviews")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_wrong_secret(self, client, configured):
        resp = client.post("/api/v1/cron/reviews", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    @pytest.mark.parametrize("kwargs", [
        {"headers": {"x-cron-secret": SECRET}},
        {"headers": {"x-cron-key": SECRET}},
        {"headers": {"Authorization": f"Bearer {SECRET}"}},
        {"params": {"secret": SECRET}},
    ])
    def test_accepted_secret_locations(self, client, configured, kwargs):
        resp = client.get("/api/v1/cron/reviews", **kwargs)
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"


class TestTriggerEndpoint:
    def test_health(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_trigger_runs_pipeline(self, client, configured, session_factory):
        add_resource(session_factory, "R1")
        resp = client.post("/api/v1/cron/reviews", params={"limit": 10},
                           headers={"x-cron-secret": SECRET})
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["mode"] == "backlog"
        assert body["aborted"] is False
        assert body["stats"]["reviewsProcessed"] == 2
        assert body["stats"]["errors"] == []
        assert "debug" not in body or body["debug"] is None

        # Finalized by the background task after the response.
        with session_scope(session_factory) as db:
            record = db.get(RunRecord, body["runId"])
            assert record.request_id == body["requestId"]
            assert record.finished_at is not None
            assert record.processed == 2

    def test_trigger_skip_reason(self, client, configured):
        resp = client.post("/api/v1/cron/reviews", params={"mode": "bogus"},
                           headers={"x-cron-secret": SECRET})
        body = resp.json()
        assert body["skipReason"] == "no_resources"
        assert body["mode"] == "backlog"

    def test_debug_flag(self, client, configured, session_factory):
        add_resource(session_factory, "R1")
        resp = client.post("/api/v1/cron/reviews", params={"debug": True},
                           headers={"x-cron-secret": SECRET})
        assert "queue" in resp.json()["debug"]


class TestJobsEndpoint:
    def test_enqueue(self, client, configured, session_factory):
        review_id = add_review(session_factory, "r1")
        resp = client.post("/api/v1/cron/jobs", json={"review_ids": [review_id, 9999]},
                           headers={"x-cron-secret": SECRET})
        assert resp.status_code == 200
        body = resp.json()
        assert body["enqueued"] == 1
        assert body["missing"] == [9999]

        again = client.post("/api/v1/cron/jobs", json={"review_ids": [review_id]},
                            headers={"x-cron-secret": SECRET}).json()
        assert again["jobIds"] == body["jobIds"]

    def test_enqueue_requires_secret(self, client, configured):
        resp = client.post("/api/v1/cron/jobs", json={"review_ids": [1]})
        assert resp.status_code == 401

    def test_empty_body_rejected(self, client, configured):
        resp = client.post("/api/v1/cron/jobs", json={"review_ids": []},
                           headers={"x-cron-secret": SECRET})
        assert resp.status_code == 422

    def test_recent_runs(self, client, configured):
        client.post("/api/v1/cron/reviews", headers={"x-cron-secret": SECRET})
        resp = client.get("/api/v1/cron/runs", headers={"x-cron-secret": SECRET})
        body = resp.json()
        assert len(body["runs"]) == 1
        assert body["runs"][0]["skip_reason"] == "no_resources"
        assert "counts" in body["queue"]


class TestStartup:
    def test_missing_secrets_reported_at_startup(self, monkeypatch, caplog):
        monkeypatch.setattr("api.main.init_db", lambda: None)
        monkeypatch.setattr(settings, "CRON_SECRET", None)
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(settings, "REVIEW_API_TOKEN", "review-token")
        with caplog.at_level(logging.INFO, logger="api.main"):
            with TestClient(app):
                pass
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "CRON_SECRET" in errors[0].getMessage()

    def test_configured_startup_creates_tables(self, monkeypatch, configured, caplog):
        calls = []
        monkeypatch.setattr("api.main.init_db", lambda: calls.append(True))
        with caplog.at_level(logging.INFO, logger="api.main"):
            with TestClient(app) as client:
                body = client.get("/").json()
        assert calls == [True]
        assert body["trigger"] == "/api/v1/cron/reviews"
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert "ready" in caplog.text
