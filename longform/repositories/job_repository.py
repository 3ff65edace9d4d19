"""Repository for persisted job records."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import JobNotFoundError, PersistenceError
from ..models.job_record import JobRecord
from ..schemas.job import JobState
from ..schemas.plan import JobPlan

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Write-through storage for job plans and states.

    ``save`` commits before returning, so the caller can rely on the
    record being durable before it starts the next unit. Storage
    failures are rolled back and surfaced as PersistenceError.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, document_id: str) -> JobRecord:
        """Record for a document. Raises JobNotFoundError if missing."""
        record = self.get_by_id_optional(document_id)
        if record is None:
            raise JobNotFoundError(document_id)
        return record

    def get_by_id_optional(self, document_id: str) -> Optional[JobRecord]:
        return self.db.query(JobRecord).filter(JobRecord.document_id == document_id).first()

    def save(
        self,
        plan: JobPlan,
        state: JobState,
        status: str,
        error_message: Optional[str] = None,
    ) -> JobRecord:
        """Insert or update the record for ``state.document_id``."""
        try:
            record = self.get_by_id_optional(state.document_id)
            if record is None:
                record = JobRecord(
                    document_id=state.document_id,
                    kind=plan.kind.value,
                    provider=state.provider,
                    plan=plan.model_dump(mode="json"),
                )
                self.db.add(record)
            record.state = state.model_dump(mode="json")
            record.status = status
            record.error_message = error_message
            self.db.commit()
            self.db.refresh(record)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to persist job %s: %s", state.document_id, e,
                extra={"status": status},
            )
            raise PersistenceError(
                f"Could not persist job {state.document_id}", original_error=e
            ) from e
        return record

    def load(self, document_id: str) -> Tuple[JobPlan, JobState]:
        """Rebuild the plan and state for a job. Raises JobNotFoundError."""
        try:
            record = self.get_by_id(document_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load job {document_id}", original_error=e) from e
        return JobPlan.model_validate(record.plan), JobState.model_validate(record.state)

    def list_recent(self, limit: int = 20) -> List[JobRecord]:
        """Most recently updated jobs first."""
        return (
            self.db.query(JobRecord)
            .order_by(JobRecord.updated_at.desc())
            .limit(limit)
            .all()
        )
