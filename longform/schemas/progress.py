"""Progress events emitted by the job controller."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProgressPhase(str, Enum):
    PLANNING = "planning"
    WINDOWING = "windowing"
    PROCESSING = "processing"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    sequence: int  # per-job emission order, starting at 1
    phase: ProgressPhase
    message: str
    current: Optional[int] = None
    total: Optional[int] = None
    partial_content: Optional[str] = None
