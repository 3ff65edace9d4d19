"""Shared test fixtures for the longform test suite.

Tests run against a throwaway SQLite file so worker threads get their own
connections. Every test starts with an empty jobs table. The generation
function is a deterministic stub: its output depends only on the
instruction, so a resumed job and an uninterrupted one see the same text.
"""

import os
import re
import tempfile

# Use a scratch database and readable logs before any app imports.
_TMP_DIR = tempfile.mkdtemp(prefix="longform-tests-")
os.environ["LONGFORM_DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/longform_test.db"
os.environ["LONGFORM_LOG_FORMAT"] = "text"

import pytest
from fastapi.testclient import TestClient

from longform.core.config import Settings
from longform.database import Base, SessionLocal, engine, get_db
from longform.models import JobRecord
from longform.services.circuit_breaker import reset_all
from longform.services.planner import PLAN_HEADER

Base.metadata.create_all(bind=engine)


class StubGenerator:
    """Deterministic stand-in for the LiteLLM client.

    * planning instructions get a JSON skeleton with the requested unit count
    * compression instructions get a short summary
    * outline instructions get one JSON section per unit
    * other extraction instructions get one JSON quote per unit
    * everything else gets prose naming the unit

    ``fail_units`` makes the call for those unit ordinals raise.
    """

    _UNIT_RE = re.compile(r"CURRENT UNIT: (\d+)\. (.+)")
    _COUNT_RE = re.compile(r"NUMBER OF UNITS: exactly (\d+)")

    def __init__(self, fail_units=(), error="provider exploded"):
        self.fail_units = set(fail_units)
        self.error = error
        self.calls = []

    def unit_calls(self):
        return [c for c in self.calls if "CURRENT UNIT:" in c[1]]

    def __call__(self, provider_id, instruction):
        self.calls.append((provider_id, instruction))

        if instruction.startswith(PLAN_HEADER):
            count = int(self._COUNT_RE.search(instruction).group(1))
            units = ",".join(
                f'{{"id": {i}, "heading": "Heading {i}", "goal": "Goal {i}", '
                f'"keyPoints": ["point {i}"]}}'
                for i in range(1, count + 1)
            )
            return (
                '{"title": "Stub Title", "thesis": "Stub thesis", '
                f'"constraints": ["Be consistent"], "units": [{units}]}}'
            )

        if instruction.startswith("Compress the following notes"):
            return "Summary of earlier units."

        match = self._UNIT_RE.search(instruction)
        unit_id = int(match.group(1)) if match else 0
        if unit_id in self.fail_units:
            raise RuntimeError(self.error)

        if '"keyThemes"' in instruction:
            return (
                f'{{"title": "Section {unit_id} title", "description": "What part {unit_id} argues.", '
                f'"keyThemes": ["theme {unit_id}a", "theme {unit_id}b"]}}'
            )
        if "Output JSON" in instruction:
            return f'{{"quotes": [{{"author": "Kant", "quote": "Insight number {unit_id} about freedom."}}]}}'
        return f"Body text for unit {unit_id}."


@pytest.fixture()
def stub_generate():
    return StubGenerator()


@pytest.fixture()
def test_settings():
    """Settings with no inter-unit delay and small unit sizes."""
    return Settings(
        interactive_unit_delay_seconds=0,
        batch_unit_delay_seconds=0,
        generate_min_units=3,
        generate_max_unit_words=1000,
        min_target_words=100,
        analysis_max_unit_words=1500,
    )


@pytest.fixture(autouse=True)
def _clean_state():
    """Empty the jobs table and the breaker registry before each test."""
    db = SessionLocal()
    try:
        db.query(JobRecord).delete()
        db.commit()
    finally:
        db.close()
    reset_all()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def job_service(stub_generate, test_settings):
    from longform.services.job_service import JobService
    return JobService(generate=stub_generate, session_factory=SessionLocal, settings=test_settings)


@pytest.fixture()
def client(db, job_service):
    """FastAPI TestClient with the DB and job service dependencies overridden."""
    from longform.api.jobs import get_job_service
    from longform.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_job_service] = lambda: job_service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()