"""Data access repositories."""

from .job_repository import JobRepository

__all__ = ["JobRepository"]
