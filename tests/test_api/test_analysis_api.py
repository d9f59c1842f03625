"""Tests for the analysis HTTP endpoints."""

import asyncio
from datetime import date

import pytest
from fastapi.testclient import TestClient

from app.dependencies import (
    get_batch_processor,
    get_batch_runner,
    get_broadcaster,
    get_ledger_store,
    get_session_ledger,
)
from app.engines.stub_engine import StubPageSource, StubTextEngine
from app.ledger.session_ledger import SessionLedger
from app.main import app
from app.pipeline.batch import BatchProcessor
from app.pipeline.orchestrator import ExtractionOrchestrator
from app.pipeline.rate_limiter import RateLimitedExecutor
from app.schemas.sessions import AnalysisSession
from app.streaming.sse_registry import ProgressBroadcaster

STATEMENT = "\n".join([
    "2024-01-01 | ACME PAYROLL | 50000.00 | inflow",
    "2024-01-05 | NETFLIX | 499.00 | outflow",
])


class FakeRunner:
    """Records submitted batches instead of running them."""

    def __init__(self):
        self.submitted = []

    def submit(self, batch):
        self.submitted.append(batch)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def client(ledger_store, recording_sleep, word_estimate, runner):
    engine = StubTextEngine()
    executor = RateLimitedExecutor(max_concurrency=2, jitter_ratio=0.0, sleep=recording_sleep)
    orchestrator = ExtractionOrchestrator(
        page_source=StubPageSource({"jan.pdf": [STATEMENT]}),
        engine=engine,
        executor=executor,
        store=ledger_store,
        max_tokens_per_chunk=50,
        estimate=word_estimate,
    )
    processor = BatchProcessor(
        orchestrator=orchestrator,
        engine=engine,
        executor=executor,
        store=ledger_store,
        ledger=SessionLedger(ledger_store),
        today=lambda: date(2024, 1, 20),
    )

    app.dependency_overrides[get_ledger_store] = lambda: ledger_store
    app.dependency_overrides[get_session_ledger] = lambda: SessionLedger(ledger_store)
    app.dependency_overrides[get_batch_processor] = lambda: processor
    app.dependency_overrides[get_batch_runner] = lambda: runner
    app.dependency_overrides[get_broadcaster] = lambda: ProgressBroadcaster(heartbeat_seconds=15)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed_session(ledger_store, status="completed", session_id="s-1", error_message=None):
    ledger_store.sessions[session_id] = AnalysisSession(
        session_id=session_id, user_id=1, status=status, error_message=error_message,
    )


class TestEstimate:
    """POST /estimate."""

    def test_estimate(self, client, ledger_store):
        response = client.post("/api/v1/analysis/estimate", json={"user_id": 1, "document_keys": ["jan.pdf"]})

        assert response.status_code == 200
        body = response.json()
        assert body["tokens_expected"] >= 1
        assert body["time_estimate"]["max_seconds"] >= body["time_estimate"]["min_seconds"]
        assert ledger_store.sessions == {}

    def test_estimate_registers_pending_session(self, client, ledger_store):
        response = client.post(
            "/api/v1/analysis/estimate",
            json={"user_id": 1, "session_id": "s-9", "document_keys": ["jan.pdf"]},
        )

        assert response.status_code == 200
        assert ledger_store.sessions["s-9"].status == "pending"
        assert ledger_store.sessions["s-9"].tokens_expected == response.json()["tokens_expected"]

    def test_unknown_document(self, client):
        response = client.post("/api/v1/analysis/estimate", json={"user_id": 1, "document_keys": ["nope.pdf"]})

        assert response.status_code == 400
        assert response.json()["error_code"] == "ERR_DOCUMENT_NOT_FOUND"


class TestSubmit:
    """POST /sessions."""

    def test_accepted(self, client, ledger_store, runner):
        response = client.post(
            "/api/v1/analysis/sessions",
            json={"user_id": 1, "session_id": "s-1", "document_keys": ["jan.pdf"], "tokens_estimate": 2},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["session_id"] == "s-1"
        assert body["tokens_reserved"] == 2
        assert body["events_url"] == "/api/v1/analysis/sessions/s-1/events"
        assert [b.session_id for b in runner.submitted] == ["s-1"]
        assert ledger_store.sessions["s-1"].status == "in_progress"

    def test_insufficient_tokens(self, client, runner):
        response = client.post(
            "/api/v1/analysis/sessions",
            json={"user_id": 1, "session_id": "s-1", "document_keys": ["jan.pdf"], "tokens_estimate": 500},
        )

        assert response.status_code == 402
        assert response.json() == {
            "success": False,
            "error_code": "ERR_INSUFFICIENT_TOKENS",
            "message": "Need 500 tokens, 15 available",
        }
        assert runner.submitted == []

    def test_running_session_conflict(self, client, ledger_store):
        _seed_session(ledger_store, status="in_progress")

        response = client.post(
            "/api/v1/analysis/sessions",
            json={"user_id": 1, "session_id": "s-1", "document_keys": ["jan.pdf"], "tokens_estimate": 2},
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "ERR_SESSION_CONFLICT"

    def test_empty_document_list_rejected(self, client):
        response = client.post("/api/v1/analysis/sessions", json={"user_id": 1, "document_keys": []})
        assert response.status_code == 422


class TestSessionReads:
    """Status, report and events."""

    def test_unknown_session(self, client):
        assert client.get("/api/v1/analysis/sessions/nope").status_code == 404

    def test_status(self, client, ledger_store):
        _seed_session(ledger_store, status="failed", error_message="boom")

        body = client.get("/api/v1/analysis/sessions/s-1").json()

        assert body["status"] == "failed"
        assert body["error_message"] == "boom"

    def test_report_requires_completion(self, client, ledger_store):
        _seed_session(ledger_store, status="in_progress")
        assert client.get("/api/v1/analysis/sessions/s-1/report").status_code == 409

    def test_report(self, client, ledger_store):
        _seed_session(ledger_store)
        ledger_store.snapshots["s-1"] = {"health_score": 80}
        ledger_store.narratives.append((1, "s-1", '{"summary": ["ok"]}'))

        body = client.get("/api/v1/analysis/sessions/s-1/report").json()

        assert body["snapshot"] == {"health_score": 80}
        assert body["narrative"] == '{"summary": ["ok"]}'

    def test_events_for_finished_session(self, client, ledger_store):
        _seed_session(ledger_store)

        response = client.get("/api/v1/analysis/sessions/s-1/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [line[len("event: "):] for line in response.text.splitlines() if line.startswith("event: ")]
        assert events == ["connected", "completed", "close"]


class TestTransactions:
    """GET /sessions/{id}/transactions."""

    def _seed(self, ledger_store, make_txn):
        _seed_session(ledger_store)
        txns = [
            make_txn("2024-01-01", "50000", "inflow", merchant="ACME PAYROLL"),
            make_txn("2024-01-05", "499", merchant="NETFLIX", category="Entertainment"),
            make_txn("2024-01-09", "320.50", merchant="SWIGGY", category="Food"),
            make_txn("2024-01-12", "99", merchant="NETFLIX EXTRA", category="Entertainment"),
            make_txn("2024-01-12", "10", session_id="s-other"),
        ]
        asyncio.run(ledger_store.insert_transactions(txns))

    def test_paginated(self, client, ledger_store, make_txn):
        self._seed(ledger_store, make_txn)

        body = client.get("/api/v1/analysis/sessions/s-1/transactions", params={"page": 2, "limit": 3}).json()

        assert body["total"] == 4
        assert body["page"] == 2
        assert [t["merchant"] for t in body["transactions"]] == ["NETFLIX EXTRA"]
        assert body["transactions"][0]["date"] == "2024-01-12"

    def test_search(self, client, ledger_store, make_txn):
        self._seed(ledger_store, make_txn)

        body = client.get("/api/v1/analysis/sessions/s-1/transactions", params={"search": "netflix"}).json()

        assert body["total"] == 2
        assert {t["merchant"] for t in body["transactions"]} == {"NETFLIX", "NETFLIX EXTRA"}

    def test_limit_bounds(self, client, ledger_store):
        _seed_session(ledger_store)
        assert client.get("/api/v1/analysis/sessions/s-1/transactions", params={"limit": 0}).status_code == 422
        assert client.get("/api/v1/analysis/sessions/s-1/transactions", params={"page": 0}).status_code == 422
