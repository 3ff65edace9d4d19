"""Persisted job record: plan, state and accumulated results for one document."""

from sqlalchemy import Column, String, Text, DateTime, JSON
from sqlalchemy.sql import func
from ..database import Base


class JobRecord(Base):
    """
    One row per document being transformed.

    ``plan`` is written once when the job is planned; ``state`` is rewritten
    after every unit attempt so a job can be resumed after a restart.
    Status values: planned, running, complete, partial, failed, cancelled
    """

    __tablename__ = "longform_jobs"

    document_id = Column(String(64), primary_key=True)
    kind = Column(String(20), nullable=False)
    provider = Column(String(100), nullable=False)

    # Job lifecycle
    status = Column(String(20), nullable=False, default="planned")
    error_message = Column(Text, nullable=True)

    # Serialized JobPlan / JobState (pydantic model_dump(mode="json"))
    plan = Column(JSON, nullable=False)
    state = Column(JSON, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
