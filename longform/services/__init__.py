"""Pipeline services: planning, memory, unit processing, aggregation and job control."""

from .generation import GenerationClient
from .job_controller import JobController, JobHandle
from .job_service import JobService

__all__ = ["GenerationClient", "JobController", "JobHandle", "JobService"]
