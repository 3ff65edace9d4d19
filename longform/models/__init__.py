"""Database models."""

from .job_record import JobRecord

__all__ = ["JobRecord"]
