"""Persistent records for the provisioning run.

All three records are small JSON documents on the local filesystem. The state
record and the reboot flag live under a durable directory so they survive a
reboot; the lock record only has meaning within one boot session.
"""

from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from provisioner.models.status import StageEnum


class ProvisioningState(BaseModel):
    """Durable record of the stage currently being attempted."""

    current_stage: StageEnum = Field(..., description="Stage being attempted")
    stage_data: str = Field("", description="Opaque data carried from the previous stage")
    execution_start: datetime = Field(
        default_factory=datetime.now, description="When this provisioning run started"
    )
    stage_entered_at: datetime = Field(
        default_factory=datetime.now, description="When current_stage was entered"
    )
    host_identity: str = Field(..., description="Hostname the record was written on")
    pid: int = Field(..., gt=0, description="PID of the process that wrote the record")

    @field_validator("execution_start", "stage_entered_at", mode="before")
    @classmethod
    def parse_iso8601(cls, v):
        """Parse ISO 8601 timestamp strings."""
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v


class RebootFlagRecord(BaseModel):
    """Marker written right before a deliberate reboot."""

    next_stage: StageEnum = Field(..., description="Stage to resume into after boot")
    set_at: datetime = Field(default_factory=datetime.now)


class LockRecord(BaseModel):
    pid: int = Field(..., gt=0)
