"""Restart result model returned by the health service."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .status import utcnow

RestartState = Literal["in_progress", "completed", "failed", "not_needed"]


class RestartResult(BaseModel):
    """Outcome of a worker restart request."""

    service_name: str = "infrastructure-worker"
    status: RestartState = "in_progress"
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    output: str | None = Field(default=None, description="What the restart did")
    error: str | None = Field(default=None, description="Error message if failed")
