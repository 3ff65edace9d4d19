"""Service for managing long-running document jobs."""

import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..database import SessionLocal
from ..exceptions import JobAlreadyRunningError, LongformError, ValidationError
from ..repositories.job_repository import JobRepository
from ..schemas.job import (
    JobCreateRequest,
    JobOutputResponse,
    JobStatusResponse,
    RunMode,
    RunOutcome,
    RunRequest,
    UnitStatusResponse,
)
from ..schemas.progress import ProgressEvent
from .generation import GenerateFn, GenerationClient
from .job_controller import JobController, JobHandle

logger = logging.getLogger(__name__)


class JobService:
    """
    Keeps live handles per document and runs jobs on worker threads.

    Handles are created when a job is planned, or rebuilt from the job
    repository the first time a persisted job is touched after a restart.
    At most ``max_cached_jobs`` idle, persisted handles stay in memory;
    the least recently used are dropped and reload from storage on demand.
    At most one run per document is active at a time; runs for different
    documents proceed independently.
    """

    def __init__(
        self,
        generate: Optional[GenerateFn] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.generate = generate or GenerationClient(self.settings)
        self._session_factory = session_factory
        self._handles: "OrderedDict[str, JobHandle]" = OrderedDict()
        self._threads: Dict[str, threading.Thread] = {}
        self._active: set = set()
        self._lock = threading.Lock()

    def _controller(self, db: Session) -> JobController:
        return JobController(self.generate, JobRepository(db), self.settings)

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def create_job(self, db: Session, request: JobCreateRequest) -> JobHandle:
        """Plan and persist a new job."""
        handle = self._controller(db).create(
            kind=request.kind,
            provider=request.provider,
            task=request.prompt,
            source_text=request.source_text,
            target_words=request.target_words,
            source_packet=request.source_packet,
            author=request.author or "",
            pure=request.pure,
        )
        self._remember(handle)
        logger.info(
            "Job %s planned with %d units", handle.document_id, handle.plan.unit_count,
            extra={"kind": handle.plan.kind.value},
        )
        return handle

    def get_handle(self, db: Session, document_id: str) -> JobHandle:
        """Live handle for a job, loading it from storage if needed.

        Raises JobNotFoundError if no such job was ever persisted.
        """
        with self._lock:
            handle = self._handles.get(document_id)
            if handle is not None:
                self._handles.move_to_end(document_id)
        if handle is not None:
            return handle

        repo = JobRepository(db)
        record = repo.get_by_id(document_id)
        plan, state = repo.load(document_id)
        restored = self._controller(db).restore(plan, state, record.status)
        handle = self._remember(restored)
        logger.info("Restored job %s from storage", document_id)
        return handle

    def _remember(self, handle: JobHandle) -> JobHandle:
        with self._lock:
            handle = self._handles.setdefault(handle.document_id, handle)
            self._handles.move_to_end(handle.document_id)
            self._evict_idle()
        return handle

    def _evict_idle(self) -> None:
        """Drop least recently used handles that are idle and safely persisted. Caller holds the lock."""
        excess = len(self._handles) - self.settings.max_cached_jobs
        if excess <= 0:
            return
        for document_id, handle in list(self._handles.items()):
            if excess <= 0:
                break
            if document_id in self._active or handle.running or not handle.state.resumable:
                continue
            del self._handles[document_id]
            excess -= 1
            logger.debug("Evicted idle job handle %s", document_id)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _claim(self, handle: JobHandle) -> None:
        """Mark the job active and arm a fresh cancel flag for this run."""
        with self._lock:
            if handle.document_id in self._active:
                raise JobAlreadyRunningError(handle.document_id)
            self._active.add(handle.document_id)
            handle.cancel_event.clear()

    def _release(self, document_id: str) -> None:
        with self._lock:
            self._active.discard(document_id)
            self._evict_idle()

    def _select(self, db: Session, handle: JobHandle, request: RunRequest) -> List[int]:
        selected = self._controller(db).select(handle, units=request.units, preset=request.preset)
        if not selected:
            raise ValidationError("Nothing to run: every requested unit is already done")
        return selected

    def run(self, db: Session, document_id: str, request: RunRequest) -> RunOutcome:
        """Select and run in the calling thread."""
        handle = self.get_handle(db, document_id)
        self._claim(handle)
        try:
            self._select(db, handle, request)
            return self._controller(db).run(handle, request.mode)
        finally:
            self._release(document_id)

    def start_run(self, db: Session, document_id: str, request: RunRequest) -> List[int]:
        """Select units and start the run on a worker thread. Returns the selected ordinals."""
        handle = self.get_handle(db, document_id)
        self._claim(handle)
        try:
            selected = self._select(db, handle, request)
        except LongformError:
            self._release(document_id)
            raise

        thread = threading.Thread(
            target=self._run_in_background,
            args=(handle, request.mode),
            name=f"longform-run-{document_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[document_id] = thread
        thread.start()
        logger.info("Started background run for %s: units %s", document_id, selected)
        return selected

    def _run_in_background(self, handle: JobHandle, mode: RunMode) -> None:
        db = self._session_factory()
        try:
            outcome = self._controller(db).run(handle, mode)
            logger.info(
                "Background run for %s finished: %s (%d/%d)",
                handle.document_id, outcome.status.value, outcome.completed, outcome.total,
            )
        except LongformError as e:
            logger.error("Background run for %s stopped: %s", handle.document_id, e.message)
        except Exception:
            logger.exception("Background run for %s crashed", handle.document_id)
        finally:
            db.close()
            self._release(handle.document_id)
            with self._lock:
                if self._threads.get(handle.document_id) is threading.current_thread():
                    del self._threads[handle.document_id]

    def join(self, document_id: str, timeout: Optional[float] = None) -> None:
        """Wait for a background run to finish."""
        with self._lock:
            thread = self._threads.get(document_id)
        if thread is not None:
            thread.join(timeout)

    def cancel(self, db: Session, document_id: str) -> bool:
        """Request cancellation; returns whether a run was active."""
        handle = self.get_handle(db, document_id)
        with self._lock:
            active = document_id in self._active
        if active:
            self._controller(db).cancel(handle)
        return active

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, db: Session, document_id: str) -> JobStatusResponse:
        handle = self.get_handle(db, document_id)
        record = JobRepository(db).get_by_id_optional(document_id)
        plan, state = handle.plan, handle.state
        return JobStatusResponse(
            document_id=document_id,
            kind=plan.kind,
            provider=state.provider,
            title=plan.title,
            status=handle.status,
            running=handle.running,
            completed=state.completed_count,
            total=plan.unit_count,
            resumable=state.resumable,
            plan_degraded=plan.degraded,
            units=[
                UnitStatusResponse(
                    id=unit.id,
                    label=unit.label,
                    phase=state.units[unit.id].phase,
                    last_error=state.units[unit.id].last_error,
                )
                for unit in plan.units
            ],
            updated_at=record.updated_at if record else None,
        )

    def events(self, db: Session, document_id: str, after: int = 0) -> List[ProgressEvent]:
        return self.get_handle(db, document_id).progress.events(after)

    def output(self, db: Session, document_id: str) -> JobOutputResponse:
        handle = self.get_handle(db, document_id)
        return self._controller(db).output(handle)
