"""Stage enums and outcome models for the provisioning state machine."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from provisioner.errors import ErrorKind


class StageEnum(str, Enum):
    """Provisioning stages.

    State transitions:
    init → banner → updates ──────────────→ agent-install → agent-configure → tunnel-setup → complete
                       ↓ (reboot)              ↑
                   post-reboot ────────────────┘
    """

    INIT = "init"
    BANNER = "banner"
    UPDATES = "updates"
    POST_REBOOT = "post-reboot"
    AGENT_INSTALL = "agent-install"
    AGENT_CONFIGURE = "agent-configure"
    TUNNEL_SETUP = "tunnel-setup"
    COMPLETE = "complete"

    @property
    def next_stage(self) -> Optional["StageEnum"]:
        """Stage entered after a normal success, None for the terminal stage."""
        return NEXT_STAGE[self]

    @property
    def reboot_target(self) -> Optional["StageEnum"]:
        """Stage resumed after a reboot requested by this stage, if any."""
        return REBOOT_TARGET.get(self)

    @property
    def is_terminal(self) -> bool:
        return NEXT_STAGE[self] is None

    @property
    def description(self) -> str:
        return STAGE_DESCRIPTIONS[self]


NEXT_STAGE = {
    StageEnum.INIT: StageEnum.BANNER,
    StageEnum.BANNER: StageEnum.UPDATES,
    StageEnum.UPDATES: StageEnum.AGENT_INSTALL,
    StageEnum.POST_REBOOT: StageEnum.AGENT_INSTALL,
    StageEnum.AGENT_INSTALL: StageEnum.AGENT_CONFIGURE,
    StageEnum.AGENT_CONFIGURE: StageEnum.TUNNEL_SETUP,
    StageEnum.TUNNEL_SETUP: StageEnum.COMPLETE,
    StageEnum.COMPLETE: None,
}

REBOOT_TARGET = {
    StageEnum.UPDATES: StageEnum.POST_REBOOT,
}

STAGE_DESCRIPTIONS = {
    StageEnum.INIT: "Initial setup and validation",
    StageEnum.BANNER: "Setting up system banner and MOTD",
    StageEnum.UPDATES: "Installing system updates and upgrades",
    StageEnum.POST_REBOOT: "Validating system after reboot",
    StageEnum.AGENT_INSTALL: "Installing monitoring agent",
    StageEnum.AGENT_CONFIGURE: "Configuring monitoring agent",
    StageEnum.TUNNEL_SETUP: "Setting up SSH tunnel",
    StageEnum.COMPLETE: "Finalizing server setup",
}


class OutcomeKind(str, Enum):
    ADVANCE = "advance"
    REBOOT_THEN = "reboot_then"
    FAIL = "fail"


class StageOutcome(BaseModel):
    """Result returned by a stage action."""

    kind: OutcomeKind
    next_stage: Optional[StageEnum] = Field(
        None, description="Stage to run next (in-process or after reboot)"
    )
    data: str = Field("", description="Opaque stage data carried into the next state record")
    error: Optional[str] = Field(None, description="Error message when kind == fail")
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def advance(cls, next_stage: Optional[StageEnum], data: str = "") -> "StageOutcome":
        return cls(kind=OutcomeKind.ADVANCE, next_stage=next_stage, data=data)

    @classmethod
    def reboot_then(cls, next_stage: StageEnum, data: str = "") -> "StageOutcome":
        return cls(kind=OutcomeKind.REBOOT_THEN, next_stage=next_stage, data=data)

    @classmethod
    def fail(cls, error: str, error_kind: ErrorKind = ErrorKind.COLLABORATOR) -> "StageOutcome":
        return cls(kind=OutcomeKind.FAIL, error=error, error_kind=error_kind)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    REBOOT_SCHEDULED = "reboot_scheduled"
    FAILED = "failed"


class RunResult(BaseModel):
    """Final result of one executor run within a single process lifetime."""

    status: RunStatus
    last_stage: StageEnum
    stages_run: list[StageEnum] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.FAILED:
            return (self.error_kind or ErrorKind.COLLABORATOR).exit_code
        return 0
