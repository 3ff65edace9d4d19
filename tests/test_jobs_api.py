"""Tests for the jobs API endpoints."""

from conftest import StubGenerator
from longform.database import SessionLocal
from longform.schemas.job import JobCreateRequest, RunRequest, RunStatus, UnitPhase
from longform.services.job_service import JobService


def _create(client, **overrides):
    payload = {"kind": "write", "provider": "openai", "prompt": "Essay on freedom", "target_words": 3000}
    payload.update(overrides)
    response = client.post("/api/jobs", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _run(client, job_service, document_id, **body):
    response = client.post(f"/api/jobs/{document_id}/run", json=body)
    assert response.status_code == 202, response.text
    job_service.join(document_id, timeout=30)
    return response.json()


class TestCreate:
    def test_create_plans_without_generating(self, client, stub_generate):
        job = _create(client)
        assert job["status"] == "planned"
        assert job["title"] == "Stub Title"
        assert job["total"] == 3
        assert job["completed"] == 0
        assert [u["phase"] for u in job["units"]] == ["pending"] * 3
        assert stub_generate.unit_calls() == []

    def test_extraction_job_without_source_is_rejected(self, client):
        response = client.post("/api/jobs", json={"kind": "quotes", "source_text": "  "})
        assert response.status_code == 422
        assert response.json()["error"] == "PLANNING_FAILED"

    def test_invalid_target_rejected_by_schema(self, client):
        response = client.post("/api/jobs", json={"kind": "write", "prompt": "x", "target_words": 0})
        assert response.status_code == 422


class TestRun:
    def test_full_run(self, client, job_service):
        job = _create(client)
        doc_id = job["document_id"]

        started = _run(client, job_service, doc_id)
        assert started["selected"] == [1, 2, 3]
        assert started["mode"] == "interactive"

        status = client.get(f"/api/jobs/{doc_id}").json()
        assert status["status"] == "complete"
        assert status["completed"] == 3
        assert status["running"] is False
        assert status["resumable"] is True

        output = client.get(f"/api/jobs/{doc_id}/output").json()
        assert output["document"].startswith("# Stub Title")
        assert "Body text for unit 3." in output["document"]

    def test_events_polling(self, client, job_service):
        doc_id = _create(client)["document_id"]
        _run(client, job_service, doc_id, units=[1])

        events = client.get(f"/api/jobs/{doc_id}/events").json()
        assert events[0]["phase"] == "planning"
        assert events[-1]["phase"] == "complete"
        assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))

        tail = client.get(f"/api/jobs/{doc_id}/events", params={"after": len(events) - 1}).json()
        assert [e["phase"] for e in tail] == ["complete"]

    def test_preset_selection(self, client, job_service):
        doc_id = _create(client)["document_id"]
        started = _run(client, job_service, doc_id, preset="first_third")
        assert started["selected"] == [1]

        status = client.get(f"/api/jobs/{doc_id}").json()
        assert status["status"] == "partial"
        assert [u["phase"] for u in status["units"]] == ["done", "pending", "pending"]

    def test_invalid_preset(self, client):
        doc_id = _create(client)["document_id"]
        response = client.post(f"/api/jobs/{doc_id}/run", json={"preset": "most"})
        assert response.status_code == 400
        assert response.json()["details"]["field"] == "preset"

    def test_units_and_preset_together_rejected(self, client):
        doc_id = _create(client)["document_id"]
        response = client.post(f"/api/jobs/{doc_id}/run", json={"units": [1], "preset": "all"})
        assert response.status_code == 400

    def test_nothing_left_to_run(self, client, job_service):
        doc_id = _create(client)["document_id"]
        _run(client, job_service, doc_id)
        response = client.post(f"/api/jobs/{doc_id}/run", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_concurrent_run_conflict(self, client, db, job_service):
        doc_id = _create(client)["document_id"]
        job_service._claim(job_service.get_handle(db, doc_id))
        try:
            response = client.post(f"/api/jobs/{doc_id}/run", json={})
        finally:
            job_service._release(doc_id)
        assert response.status_code == 409
        assert response.json()["error"] == "JOB_ALREADY_RUNNING"

    def test_failed_unit_reported_and_resumed(self, client, job_service, stub_generate):
        stub_generate.fail_units.add(2)
        doc_id = _create(client)["document_id"]
        _run(client, job_service, doc_id)

        status = client.get(f"/api/jobs/{doc_id}").json()
        assert status["status"] == "failed"
        assert status["units"][1]["phase"] == "failed"
        assert status["units"][1]["last_error"] == "provider exploded"
        assert status["units"][2]["phase"] == "pending"

        stub_generate.fail_units.clear()
        started = _run(client, job_service, doc_id)
        assert started["selected"] == [2, 3]
        assert client.get(f"/api/jobs/{doc_id}").json()["status"] == "complete"


class TestKinds:
    source = " ".join(f"w{i}" for i in range(3000))

    def test_custom_job_runs_with_instructions(self, client, job_service, stub_generate):
        job = _create(client, kind="custom", prompt="List the main claims", source_text=self.source, target_words=None)
        assert job["kind"] == "custom"
        _run(client, job_service, job["document_id"])

        output = client.get(f"/api/jobs/{job['document_id']}/output").json()
        assert "Body text for unit 1." in output["document"]
        assert all("List the main claims" in i for _, i in stub_generate.unit_calls())

    def test_custom_job_without_instructions_rejected(self, client):
        response = client.post("/api/jobs", json={"kind": "custom", "source_text": self.source})
        assert response.status_code == 422
        assert response.json()["error"] == "PLANNING_FAILED"

    def test_outline_job_output(self, client, job_service):
        job = _create(client, kind="outline", prompt="", source_text=self.source, target_words=None)
        _run(client, job_service, job["document_id"])

        output = client.get(f"/api/jobs/{job['document_id']}/output").json()
        assert output["document"] is None
        assert [s["text"] for s in output["items"]] == ["Section 1 title", "Section 2 title"]
        assert output["items"][1]["themes"] == ["theme 2a", "theme 2b"]
        assert output["display"].startswith("# Stub Title")

    def test_rewrite_target_sets_unit_count(self, client):
        job = _create(client, kind="rewrite", prompt="Expand", source_text=self.source, target_words=6000)
        assert job["total"] == 6


class TestCancel:
    def test_cancel_without_active_run(self, client):
        doc_id = _create(client)["document_id"]
        response = client.post(f"/api/jobs/{doc_id}/cancel")
        assert response.status_code == 200
        assert response.json() == {"document_id": doc_id, "cancelled": False}

    def test_cancel_before_run_loop_starts_is_honoured(self, client, db, job_service, stub_generate):
        doc_id = _create(client)["document_id"]
        handle = job_service.get_handle(db, doc_id)

        # Claimed and selected, but the worker has not entered the loop yet.
        job_service._claim(handle)
        try:
            job_service._select(db, handle, RunRequest())
            assert job_service.cancel(db, doc_id) is True
            outcome = job_service._controller(db).run(handle)
        finally:
            job_service._release(doc_id)

        assert outcome.status is RunStatus.CANCELLED
        assert outcome.completed == 0
        assert stub_generate.unit_calls() == []

    def test_cancelled_job_runs_again(self, client, db, job_service):
        doc_id = _create(client)["document_id"]
        handle = job_service.get_handle(db, doc_id)
        handle.cancel_event.set()

        outcome = job_service.run(db, doc_id, RunRequest())
        assert outcome.status is RunStatus.COMPLETE
        assert outcome.completed == 3


class TestRestore:
    def test_job_survives_service_restart(self, client, job_service, test_settings):
        doc_id = _create(client)["document_id"]
        _run(client, job_service, doc_id, units=[1, 2])

        # A fresh service and session see only what was persisted.
        restarted = JobService(generate=StubGenerator(), settings=test_settings)
        session = SessionLocal()
        try:
            status = restarted.status(session, doc_id)
            assert status.status == "partial"
            assert status.completed == 2

            outcome = restarted.run(session, doc_id, RunRequest())
            assert outcome.completed == 3
        finally:
            session.close()

    def test_idle_handles_evicted_and_reloaded(self, db, stub_generate, test_settings):
        settings = test_settings.model_copy(update={"max_cached_jobs": 1})
        service = JobService(generate=stub_generate, settings=settings)
        request = JobCreateRequest(kind="write", provider="openai", prompt="Essay", target_words=3000)

        first = service.create_job(db, request)
        service.run(db, first.document_id, RunRequest(units=[1]))
        second = service.create_job(db, request)

        assert list(service._handles) == [second.document_id]
        reloaded = service.get_handle(db, first.document_id)
        assert reloaded is not first
        assert reloaded.state.ids_in(UnitPhase.DONE) == [1]
        assert service.status(db, first.document_id).status == "partial"
        assert list(service._handles) == [first.document_id]

    def test_finished_worker_thread_is_dropped(self, client, job_service):
        doc_id = _create(client)["document_id"]
        _run(client, job_service, doc_id)
        assert doc_id not in job_service._threads


class TestErrors:
    def test_unknown_job_is_404(self, client):
        response = client.get("/api/jobs/does-not-exist")
        assert response.status_code == 404
        body = response.json()
        assert body["error"] == "JOB_NOT_FOUND"
        assert body["details"]["document_id"] == "does-not-exist"

    def test_unknown_job_run_is_404(self, client):
        assert client.post("/api/jobs/missing/run", json={}).status_code == 404


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"

    def test_health_reports_open_provider_circuit(self, client):
        from longform.services.circuit_breaker import get_breaker

        breaker = get_breaker("deepseek")
        for _ in range(3):
            breaker.record_failure()
        providers = client.get("/health").json()["providers"]
        assert providers["deepseek"]["state"] == "open"
        assert providers["deepseek"]["consecutive_failures"] == 3
        assert providers["deepseek"]["retry_after_seconds"] > 0
