"""Resume/recovery resolution: decide which stage a new process starts at.

Priority order:
1. An explicitly requested stage, verbatim.
2. Resume mode (invoked by the boot service after a reboot):
   a. the reboot flag, which is consumed;
   b. the state store, with ``updates`` read as ``post-reboot``;
   c. live inspection: agent active means ``complete``, otherwise ``init``.
3. Manual run: the state store if present, otherwise ``init``.

``resolve`` only reads; ``apply`` performs the side effects a resolution
calls for, so ``--test`` can report a decision without changing anything.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from provisioner.errors import CommandError
from provisioner.models.status import StageEnum
from provisioner.services.boot import BootPersistenceRegistrar
from provisioner.services.state_manager import RebootFlag, StateStore


class ResolutionSource(str, Enum):
    EXPLICIT = "explicit"
    REBOOT_FLAG = "reboot_flag"
    STATE = "state"
    STATE_AFTER_REBOOT = "state_after_reboot"
    LIVE_AGENT_ACTIVE = "live_agent_active"
    FRESH = "fresh"


class Resolution(BaseModel):
    stage: StageEnum
    source: ResolutionSource
    consume_flag: bool = False
    deregister_boot: bool = False

    @property
    def stage_data(self) -> str:
        return f"resolved_from={self.source.value}"


class Resolver:
    """Chooses the starting stage from flags, persisted state and live inspection."""

    def __init__(
        self,
        state_store: StateStore,
        reboot_flag: RebootFlag,
        agent_probe: Callable[[], Awaitable[bool]],
        registrar: Optional[BootPersistenceRegistrar] = None,
    ):
        """Initialize resolver.

        Args:
            state_store: Durable state record
            reboot_flag: Durable reboot marker
            agent_probe: Coroutine function returning True if the agent is running
            registrar: Boot registrar, used by apply() for defensive cleanup
        """
        self.logger = logging.getLogger("provisioner.resolver")
        self.state_store = state_store
        self.reboot_flag = reboot_flag
        self.agent_probe = agent_probe
        self.registrar = registrar

    async def resolve(self, explicit_stage: Optional[StageEnum] = None, resume: bool = False) -> Resolution:
        if explicit_stage is not None:
            self.logger.info(f"Starting from specified stage: {explicit_stage.value}")
            return Resolution(stage=explicit_stage, source=ResolutionSource.EXPLICIT)

        if resume:
            return await self._resolve_resume()

        state = self.state_store.load()
        if state is not None:
            self.logger.info(f"Continuing from saved stage: {state.current_stage.value}")
            return Resolution(stage=state.current_stage, source=ResolutionSource.STATE)

        self.logger.info("Starting new server setup")
        return Resolution(stage=StageEnum.INIT, source=ResolutionSource.FRESH)

    async def _resolve_resume(self) -> Resolution:
        flagged = self.reboot_flag.check()
        if flagged is not None:
            self.logger.info(f"Resuming after reboot: {flagged.value}")
            return Resolution(
                stage=flagged, source=ResolutionSource.REBOOT_FLAG, consume_flag=True
            )

        self.logger.warning("Resume requested but no reboot flag found, checking saved state")
        state = self.state_store.load()
        if state is not None:
            stage = state.current_stage
            if stage == StageEnum.UPDATES:
                # Resume mode implies the reboot after updates did happen
                stage = StageEnum.POST_REBOOT
            self.logger.info(f"Resuming from saved state: {stage.value}")
            return Resolution(
                stage=stage, source=ResolutionSource.STATE_AFTER_REBOOT, deregister_boot=True
            )

        self.logger.warning("No reboot flag and no saved state, inspecting live system")
        if await self.agent_probe():
            # Heuristic: an agent installed out-of-band also looks complete.
            self.logger.info("Monitoring agent is active, assuming setup is complete")
            return Resolution(
                stage=StageEnum.COMPLETE,
                source=ResolutionSource.LIVE_AGENT_ACTIVE,
                deregister_boot=True,
            )

        self.logger.info("Monitoring agent is not active, starting fresh")
        return Resolution(
            stage=StageEnum.INIT, source=ResolutionSource.FRESH, deregister_boot=True
        )

    async def apply(self, resolution: Resolution) -> None:
        """Carry out the side effects of a resolution (flag consumption, cleanup)."""
        if resolution.consume_flag:
            self.reboot_flag.clear()
        if resolution.deregister_boot and self.registrar is not None:
            try:
                await self.registrar.deregister()
            except CommandError as e:
                self.logger.warning(f"Could not remove stale boot service: {e}")
