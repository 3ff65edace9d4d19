"""Job endpoints: plan, run, cancel, poll progress and fetch output."""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.job import (
    CancelResponse,
    JobCreateRequest,
    JobOutputResponse,
    JobStatusResponse,
    RunRequest,
    RunStartedResponse,
)
from ..schemas.progress import ProgressEvent
from ..services.job_service import JobService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_job_service(request: Request) -> JobService:
    """The application's job service (one per process)."""
    return request.app.state.job_service


@router.post("", response_model=JobStatusResponse, status_code=201)
def create_job(
    request: JobCreateRequest,
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Plan a new job. Units start pending; nothing is generated until a run starts."""
    handle = service.create_job(db, request)
    return service.status(db, handle.document_id)


@router.get("/{document_id}", response_model=JobStatusResponse)
def get_job(
    document_id: str,
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Per-unit status of a job."""
    return service.status(db, document_id)


@router.post("/{document_id}/run", response_model=RunStartedResponse, status_code=202)
def run_job(
    document_id: str,
    request: RunRequest,
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Select units (explicit ordinals or a preset) and start a background run.

    Without units or a preset every unit not yet done is selected,
    which resumes a job after a failure or a restart.
    """
    selected = service.start_run(db, document_id, request)
    logger.info("Run requested for %s", document_id, extra={"selected": selected})
    return RunStartedResponse(document_id=document_id, selected=selected, mode=request.mode)


@router.post("/{document_id}/cancel", response_model=CancelResponse)
def cancel_job(
    document_id: str,
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Stop the active run before its next unit."""
    cancelled = service.cancel(db, document_id)
    return CancelResponse(document_id=document_id, cancelled=cancelled)


@router.get("/{document_id}/events", response_model=List[ProgressEvent])
def get_events(
    document_id: str,
    after: int = Query(0, ge=0, description="Return events with a sequence greater than this"),
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Progress events in emission order, for polling consumers."""
    return service.events(db, document_id, after)


@router.get("/{document_id}/output", response_model=JobOutputResponse)
def get_output(
    document_id: str,
    db: Session = Depends(get_db),
    service: JobService = Depends(get_job_service),
):
    """Aggregated output so far: the combined document or the merged items."""
    return service.output(db, document_id)
