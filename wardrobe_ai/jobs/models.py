"""Job record data model for remote AI generation jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING})

# Allowed forward moves; the worker never moves a job backwards.
_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
}


class JobType(str, Enum):
    OUTFIT_RENDER = "outfit_render"
    OUTFIT_MANNEQUIN = "outfit_mannequin"
    HEADSHOT_GENERATE = "headshot_generate"
    BODY_SHOT_GENERATE = "body_shot_generate"
    WARDROBE_ITEM_GENERATE = "wardrobe_item_generate"
    WARDROBE_ITEM_RENDER = "wardrobe_item_render"
    WARDROBE_ITEM_TAG = "wardrobe_item_tag"
    AUTO_TAG = "auto_tag"
    PRODUCT_SHOT = "product_shot"
    BATCH = "batch"


class ErrorKind(str, Enum):
    POLICY_BLOCKED = "policy_blocked"
    TRANSIENT = "transient"
    FATAL = "fatal"


class Job(BaseModel):
    """A remote generation job as stored in the ``ai_jobs`` table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_user_id: Optional[str] = None
    job_type: JobType
    status: JobStatus = JobStatus.QUEUED
    input: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_move_to(self, status: JobStatus) -> bool:
        if self.is_terminal:
            return False
        return _STATUS_RANK[status] > _STATUS_RANK[self.status]


class TriggerResult(BaseModel):
    """Outcome of the best-effort execution trigger.

    ``ok=False`` never aborts a generation flow; the job may still be
    picked up by the worker pool and complete.
    """

    job_id: str
    ok: bool
    error: Optional[str] = None
