"""Lock model for cross-process provisioning exclusion.

A lock grants one worker instance the right to provision a single
environment until ``expires_at``. Expired locks are abandoned and may be
seized by the next acquirer.
"""

import os
import socket
import uuid
from datetime import datetime
from typing import Self

from pydantic import BaseModel, Field, model_validator


def _new_lock_id() -> str:
    return f"infra-lock-{uuid.uuid4().hex[:12]}"


class LockInfo(BaseModel):
    """Lock record written to ``infraworker-<env>.lock``.

    Attributes:
        id: Unique lock identifier, regenerated on every acquisition.
        owner: Owner identifier of the worker holding the lock.
        acquired_at: When the lock was first acquired.
        expires_at: When the lock becomes abandoned unless refreshed.
        environment: Environment the lock protects.
        pid: Process ID of the holder.
        hostname: Host of the holder process.
    """

    id: str = Field(default_factory=_new_lock_id, description="Lock identifier")
    owner: str = Field(description="Owner ID of the lock holder")
    acquired_at: datetime = Field(description="Acquisition time")
    expires_at: datetime = Field(description="Expiry time")
    environment: str = Field(description="Environment the lock protects")
    pid: int = Field(default_factory=os.getpid, description="Process ID of the holder")
    hostname: str = Field(default_factory=socket.gethostname, description="Holder host")

    @model_validator(mode="after")
    def _expiry_after_acquisition(self) -> Self:
        if self.expires_at <= self.acquired_at:
            raise ValueError("expires_at must be later than acquired_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        """Return True once ``now`` has reached ``expires_at``."""
        return now >= self.expires_at
