"""Job store interface.

The store is the backend that owns job records. The client only creates,
triggers and reads jobs; status transitions happen on the worker side.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from wardrobe_ai.jobs.models import Job, JobStatus, JobType


class JobStore(ABC):
    """Abstract interface for the remote job table and its worker pool."""

    @abstractmethod
    async def create_job(
        self, owner_id: str, job_type: JobType, input: Dict[str, Any]
    ) -> Job:
        """Insert a new job with status ``queued``. Returns the stored record."""
        ...

    @abstractmethod
    async def trigger(self, job_id: str) -> None:
        """Ask the worker pool to start processing. Raises on failure."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        """Read a job by id. Returns None when no such job exists."""
        ...

    @abstractmethod
    async def list_jobs(
        self,
        owner_id: str,
        job_type: JobType,
        statuses: Iterable[JobStatus],
        updated_since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Job]:
        """Most recent first."""
        ...
