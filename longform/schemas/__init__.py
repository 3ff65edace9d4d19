"""Pydantic schemas for the pipeline and its API."""

from .plan import JobKind, UnitDescriptor, JobPlan
from .results import UnitStatus, ExtractedItem, UnitResult
from .progress import ProgressPhase, ProgressEvent
from .job import (
    UnitPhase,
    UnitState,
    RunMode,
    JobState,
    RunStatus,
    RunOutcome,
    SignalSummary,
    JobCreateRequest,
    RunRequest,
    UnitStatusResponse,
    JobStatusResponse,
    JobOutputResponse,
    RunStartedResponse,
    CancelResponse,
)

__all__ = [
    "JobKind",
    "UnitDescriptor",
    "JobPlan",
    "UnitStatus",
    "ExtractedItem",
    "UnitResult",
    "ProgressPhase",
    "ProgressEvent",
    "UnitPhase",
    "UnitState",
    "RunMode",
    "JobState",
    "RunStatus",
    "RunOutcome",
    "SignalSummary",
    "JobCreateRequest",
    "RunRequest",
    "UnitStatusResponse",
    "JobStatusResponse",
    "JobOutputResponse",
    "RunStartedResponse",
    "CancelResponse",
]
