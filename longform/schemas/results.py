"""Per-unit results and extracted items."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, model_validator


class UnitStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"  # output kept raw because structured parsing failed
    FAILED = "failed"


class ExtractedItem(BaseModel):
    """A quote, position, argument or outline section pulled out of one unit's source slice."""
    model_config = ConfigDict(frozen=True)

    text: str
    author: str = ""
    source_label: str = ""
    note: str = ""  # context, significance or topic, depending on the job kind
    themes: List[str] = []  # outline sections only
    derived_length: int = 0

    @model_validator(mode="before")
    @classmethod
    def _default_length(cls, data):
        if isinstance(data, dict) and not data.get("derived_length"):
            data = {**data, "derived_length": len(str(data.get("text", "")))}
        return data


class UnitResult(BaseModel):
    """Outcome of one unit attempt. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    unit_id: int
    status: UnitStatus
    text: Optional[str] = None
    items: List[ExtractedItem] = []
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not UnitStatus.FAILED
