"""Plan schemas: the ordered unit decomposition of a job."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    """What a job produces.

    Generative kinds write prose unit by unit; extraction kinds pull
    structured items out of source slices and merge them. An outline job
    describes each slice and keeps the descriptions in order.
    """
    WRITE = "write"
    REWRITE = "rewrite"
    CUSTOM = "custom"
    QUOTES = "quotes"
    POSITIONS = "positions"
    ARGUMENTS = "arguments"
    SIGNAL = "signal"
    OUTLINE = "outline"

    @property
    def is_generative(self) -> bool:
        return self in (JobKind.WRITE, JobKind.REWRITE, JobKind.CUSTOM)

    @property
    def follows_source_length(self) -> bool:
        """Output length tracks the source unless the job asks for a target."""
        return self in (JobKind.REWRITE, JobKind.CUSTOM)

    @property
    def needs_source(self) -> bool:
        return self is not JobKind.WRITE


class UnitDescriptor(BaseModel):
    """One unit of the linear decomposition. Immutable once planned."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1, description="Ordinal, 1..N, defines processing order")
    label: str
    goal: str = ""
    target_size: int = Field(ge=0, description="Target size in words")
    key_points: List[str] = []
    source_slice: Optional[str] = None  # analysis/rewrite jobs only


class JobPlan(BaseModel):
    """Document-level skeleton built once per job; read-only afterwards."""
    model_config = ConfigDict(frozen=True)

    kind: JobKind
    title: str
    summary: str = ""  # thesis or task summary
    task: str = ""  # original prompt or instructions, passed through unmodified
    units: List[UnitDescriptor]
    constraints: List[str] = []
    source_packet: Optional[str] = None
    author: str = ""  # attribution for extracted items
    input_length: int = 0  # characters of source text, for signal ratios
    target_words: Optional[int] = None  # requested output length, rewrite and custom jobs
    degraded: bool = False  # True when the generic fallback plan was used

    @property
    def unit_count(self) -> int:
        return len(self.units)

    @property
    def total_target_size(self) -> int:
        return sum(u.target_size for u in self.units)

    def unit(self, unit_id: int) -> UnitDescriptor:
        for u in self.units:
            if u.id == unit_id:
                return u
        raise KeyError(unit_id)

    def overview(self) -> str:
        """One line per unit, so every unit sees the shape of the whole job."""
        lines = []
        for u in self.units:
            line = f"{u.id}. {u.label} ({u.target_size} words)"
            if u.goal:
                line += f" - {u.goal}"
            lines.append(line)
        return "\n".join(lines)
