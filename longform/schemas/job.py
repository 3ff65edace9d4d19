"""Job state, run outcomes and API payloads."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .plan import JobKind
from .results import ExtractedItem, UnitResult


class UnitPhase(str, Enum):
    """Per-unit state machine: pending -> selected -> in_progress -> done | failed."""
    PENDING = "pending"
    SELECTED = "selected"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class UnitState(BaseModel):
    phase: UnitPhase = UnitPhase.PENDING
    last_error: Optional[str] = None
    attempts: int = 0


class RunMode(str, Enum):
    INTERACTIVE = "interactive"
    BATCH = "batch"


class JobState(BaseModel):
    """Mutable per-job progress. Owned by the job controller's run loop."""
    document_id: str
    kind: JobKind
    provider: str
    units: Dict[int, UnitState]
    accumulated_results: List[UnitResult] = []
    memory_entries: List[str] = []
    # False after a failed save; cleared once storage accepts a write again.
    resumable: bool = True

    @classmethod
    def fresh(cls, document_id: str, kind: JobKind, provider: str, unit_ids: List[int]) -> "JobState":
        return cls(
            document_id=document_id,
            kind=kind,
            provider=provider,
            units={uid: UnitState() for uid in unit_ids},
        )

    def ids_in(self, *phases: UnitPhase) -> List[int]:
        return sorted(uid for uid, s in self.units.items() if s.phase in phases)

    @property
    def completed_count(self) -> int:
        return len(self.ids_in(UnitPhase.DONE))

    @property
    def is_complete(self) -> bool:
        return all(s.phase is UnitPhase.DONE for s in self.units.values())

    @property
    def failures(self) -> Dict[int, str]:
        return {
            uid: s.last_error or "unknown error"
            for uid, s in self.units.items()
            if s.phase is UnitPhase.FAILED
        }

    def result_for(self, unit_id: int) -> Optional[UnitResult]:
        for r in self.accumulated_results:
            if r.unit_id == unit_id:
                return r
        return None


class RunStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunOutcome(BaseModel):
    """Terminal summary of one run of the loop."""
    status: RunStatus
    completed: int
    total: int
    failed_unit: Optional[int] = None
    error: Optional[str] = None
    degraded_units: List[int] = []


class SignalSummary(BaseModel):
    ratio: float
    score: int
    total_input_length: int
    total_signal_length: int
    label: str


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class JobCreateRequest(BaseModel):
    """Create and plan a job."""
    kind: JobKind
    provider: Optional[str] = None
    prompt: str = ""  # writing prompt or rewrite/extraction instructions
    source_text: str = ""
    source_packet: Optional[str] = None
    target_words: Optional[int] = Field(default=None, ge=1)
    author: Optional[str] = None
    pure: bool = False


class RunRequest(BaseModel):
    """Select units (explicit ordinals or a named preset) and start a run."""
    units: Optional[List[int]] = None
    preset: Optional[str] = None
    mode: RunMode = RunMode.INTERACTIVE


class UnitStatusResponse(BaseModel):
    id: int
    label: str
    phase: UnitPhase
    last_error: Optional[str] = None


class JobStatusResponse(BaseModel):
    document_id: str
    kind: JobKind
    provider: str
    title: str
    status: str
    running: bool
    completed: int
    total: int
    resumable: bool
    plan_degraded: bool
    units: List[UnitStatusResponse]
    updated_at: Optional[datetime] = None


class JobOutputResponse(BaseModel):
    document_id: str
    kind: JobKind
    document: Optional[str] = None
    items: List[ExtractedItem] = []
    display: Optional[str] = None
    signal: Optional[SignalSummary] = None


class RunStartedResponse(BaseModel):
    document_id: str
    selected: List[int]
    mode: RunMode


class CancelResponse(BaseModel):
    document_id: str
    cancelled: bool  # False when no run was active
