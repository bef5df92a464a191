"""Stage executor: the provisioning state machine.

Each stage is entered by first saving it to the state store, then running
its action. An action returns a ``StageOutcome``:

- advance: continue with the next stage in this process
- reboot_then: schedule a reboot that resumes into the given stage, then stop
- fail: stop, keeping the state record for inspection

Actions must be safe to re-run from the start, because a crash or an
interruption makes the next run attempt the same stage again.
"""

import asyncio
import logging
import socket
from typing import Awaitable, Callable, Optional

from provisioner.errors import ErrorKind, ProvisioningError
from provisioner.models.config import Config
from provisioner.models.host import OsInfo
from provisioner.models.status import (
    OutcomeKind,
    RunResult,
    RunStatus,
    StageEnum,
    StageOutcome,
)
from provisioner.services.agent import TUNNEL_ENDPOINT, AgentService
from provisioner.services.banner import BannerService
from provisioner.services.boot import BootPersistenceRegistrar
from provisioner.services.diagnostics import collect_snapshot, log_failure_report
from provisioner.services.network import NetworkProbe
from provisioner.services.packages import PackageManager
from provisioner.services.process import ProcessManager
from provisioner.services.reboot import RebootOrchestrator
from provisioner.services.state_manager import RebootFlag, StateStore
from provisioner.services.tunnel import TunnelProvisioner
from provisioner.utils.osinfo import detect_os


class StageExecutor:
    """Runs stages from a starting point until completion, reboot or failure."""

    def __init__(
        self,
        config: Config,
        state_store: StateStore,
        reboot_flag: RebootFlag,
        registrar: BootPersistenceRegistrar,
        orchestrator: RebootOrchestrator,
        process_manager: Optional[ProcessManager] = None,
        network: Optional[NetworkProbe] = None,
        banner: Optional[BannerService] = None,
        tunnel: Optional[TunnelProvisioner] = None,
        packages: Optional[PackageManager] = None,
        agent: Optional[AgentService] = None,
        os_info: Optional[OsInfo] = None,
    ):
        """Initialize stage executor.

        Collaborators that need the OS (packages, agent) are created lazily
        from the detected OS unless injected.
        """
        self.logger = logging.getLogger("provisioner.executor")
        self.config = config
        self.state_store = state_store
        self.reboot_flag = reboot_flag
        self.registrar = registrar
        self.orchestrator = orchestrator
        self.process_manager = process_manager or ProcessManager(config.command_timeout)
        self.network = network or NetworkProbe(config.network_probe_url)
        self.banner = banner or BannerService(config, self.process_manager)
        self.tunnel = tunnel or TunnelProvisioner(config, self.process_manager)
        self._packages = packages
        self._agent = agent
        self._os_info = os_info
        self.current_stage: Optional[StageEnum] = None

        self._actions: dict[StageEnum, Callable[[], Awaitable[StageOutcome]]] = {
            StageEnum.INIT: self._stage_init,
            StageEnum.BANNER: self._stage_banner,
            StageEnum.UPDATES: self._stage_updates,
            StageEnum.POST_REBOOT: self._stage_post_reboot,
            StageEnum.AGENT_INSTALL: self._stage_agent_install,
            StageEnum.AGENT_CONFIGURE: self._stage_agent_configure,
            StageEnum.TUNNEL_SETUP: self._stage_tunnel_setup,
            StageEnum.COMPLETE: self._stage_complete,
        }

    # ------------------------------------------------------------------
    # Collaborators that depend on the detected OS
    # ------------------------------------------------------------------

    @property
    def os_info(self) -> OsInfo:
        if self._os_info is None:
            self._os_info = detect_os(self.config.os_release_file)
        return self._os_info

    @property
    def packages(self) -> PackageManager:
        if self._packages is None:
            self._packages = PackageManager(
                self.os_info,
                self.process_manager,
                update_timeout=self.config.update_timeout,
                progress_interval=self.config.progress_interval,
            )
        return self._packages

    @property
    def agent(self) -> AgentService:
        if self._agent is None:
            self._agent = AgentService(
                self.config, self.os_info, self.packages, self.process_manager
            )
        return self._agent

    # ------------------------------------------------------------------
    # State machine loop
    # ------------------------------------------------------------------

    async def run(self, start_stage: StageEnum, data: str = "") -> RunResult:
        """Run from start_stage until complete, a scheduled reboot, or failure.

        Args:
            start_stage: First stage to attempt
            data: Stage data recorded with the first state save

        Returns:
            RunResult describing how this process's run ended
        """
        stage = start_stage
        stages_run: list[StageEnum] = []

        while True:
            self.current_stage = stage
            self.logger.info(f"STAGE: {stage.name} - {stage.description}")
            self.state_store.save(stage, data)
            stages_run.append(stage)

            outcome = await self._execute(stage)
            outcome = self._check_transition(stage, outcome)

            if outcome.kind == OutcomeKind.FAIL:
                await self._report_failure(stage, outcome)
                return RunResult(
                    status=RunStatus.FAILED,
                    last_stage=stage,
                    stages_run=stages_run,
                    error=outcome.error,
                    error_kind=outcome.error_kind,
                )

            if outcome.kind == OutcomeKind.REBOOT_THEN:
                try:
                    await self.orchestrator.schedule_reboot(outcome.next_stage)
                except ProvisioningError as e:
                    failed = StageOutcome.fail(str(e), e.kind)
                    await self._report_failure(stage, failed)
                    return RunResult(
                        status=RunStatus.FAILED,
                        last_stage=stage,
                        stages_run=stages_run,
                        error=failed.error,
                        error_kind=failed.error_kind,
                    )
                return RunResult(
                    status=RunStatus.REBOOT_SCHEDULED, last_stage=stage, stages_run=stages_run
                )

            if stage.is_terminal:
                self.logger.info("Server setup completed successfully")
                return RunResult(
                    status=RunStatus.COMPLETED, last_stage=stage, stages_run=stages_run
                )

            self.logger.info(f"Stage {stage.value} completed, proceeding to {outcome.next_stage.value}")
            stage = outcome.next_stage
            data = outcome.data

    async def _execute(self, stage: StageEnum) -> StageOutcome:
        try:
            return await self._actions[stage]()
        except ProvisioningError as e:
            self.logger.error(f"Stage {stage.value} failed: {e}")
            return StageOutcome.fail(str(e), e.kind)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Stage {stage.value} failed unexpectedly: {e}", exc_info=True)
            return StageOutcome.fail(f"UNEXPECTED_ERROR: {e}", ErrorKind.COLLABORATOR)

    def _check_transition(self, stage: StageEnum, outcome: StageOutcome) -> StageOutcome:
        """Reject outcomes that leave the transition table."""
        if outcome.kind == OutcomeKind.ADVANCE:
            expected = stage.next_stage
        elif outcome.kind == OutcomeKind.REBOOT_THEN:
            expected = stage.reboot_target
            if expected is None:
                return StageOutcome.fail(f"INVALID_TRANSITION: {stage.value} cannot reboot")
        else:
            return outcome

        if outcome.next_stage != expected:
            target = outcome.next_stage.value if outcome.next_stage else "none"
            return StageOutcome.fail(f"INVALID_TRANSITION: {stage.value} -> {target}")
        return outcome

    async def _report_failure(self, stage: StageEnum, outcome: StageOutcome) -> None:
        try:
            snapshot = await collect_snapshot(self.process_manager)
        except Exception as e:
            self.logger.warning(f"Could not capture host snapshot: {e}")
            snapshot = None
        log_failure_report(
            self.logger,
            stage,
            outcome.error or "unknown error",
            outcome.error_kind or ErrorKind.COLLABORATOR,
            snapshot,
        )
        self.logger.error(f"State preserved at {self.state_store.state_file_path}")

    # ------------------------------------------------------------------
    # Stage actions
    # ------------------------------------------------------------------

    async def _stage_init(self) -> StageOutcome:
        os_info = self.os_info
        await self.network.wait_for_network(
            self.config.network_timeout, self.config.network_poll_interval
        )
        await self.registrar.register()
        self.logger.info("Initialization completed, proceeding to banner setup")
        return StageOutcome.advance(StageEnum.BANNER, f"os_detected={os_info.label}")

    async def _stage_banner(self) -> StageOutcome:
        self.banner.show_progress("System Updates in Progress")
        await self.banner.install_login_banner()
        self.logger.info("System banner configured")
        return StageOutcome.advance(StageEnum.UPDATES, "banner_set=true")

    async def _stage_updates(self) -> StageOutcome:
        result = await self.packages.update_all()
        for error in result.errors:
            self.logger.warning(f"Non-fatal update error: {error}")

        if result.reboot_required:
            self.logger.info("Updates installed, reboot required")
            self.banner.show_progress("Rebooting after updates...")
            return StageOutcome.reboot_then(StageEnum.POST_REBOOT, "updates_installed=true")

        self.logger.info("No updates required, proceeding to agent installation")
        return StageOutcome.advance(StageEnum.AGENT_INSTALL, "no_updates_needed=true")

    async def _stage_post_reboot(self) -> StageOutcome:
        if self.config.post_reboot_settle > 0:
            self.logger.info(f"Waiting {self.config.post_reboot_settle:.0f}s for system to settle")
            await asyncio.sleep(self.config.post_reboot_settle)
        await self.network.wait_for_network(
            self.config.network_timeout, self.config.network_poll_interval
        )
        self.banner.show_progress("Installing Zabbix Agent...")
        self.logger.info("Post-reboot validation completed")
        return StageOutcome.advance(StageEnum.AGENT_INSTALL, "post_reboot_complete=true")

    async def _stage_agent_install(self) -> StageOutcome:
        await self.agent.install(
            self.config.zabbix_version, self.config.zabbix_server, socket.gethostname()
        )
        self.logger.info("Zabbix agent installed successfully")
        return StageOutcome.advance(StageEnum.AGENT_CONFIGURE, "zabbix_installed=true")

    async def _stage_agent_configure(self) -> StageOutcome:
        self.banner.show_progress("Configuring SSH Tunnel...")
        await self.agent.point_at(TUNNEL_ENDPOINT, socket.gethostname())
        self.logger.info("Zabbix agent configured successfully")
        return StageOutcome.advance(StageEnum.TUNNEL_SETUP, "zabbix_configured=true")

    async def _stage_tunnel_setup(self) -> StageOutcome:
        try:
            await self.tunnel.ensure()
        except (ProvisioningError, OSError) as e:
            # Tunnel problems never block completion
            self.logger.warning(f"SSH tunnel setup failed - manual configuration may be required: {e}")
            return StageOutcome.advance(StageEnum.COMPLETE, "tunnel_failed=true")
        self.logger.info("SSH tunnel configured successfully")
        return StageOutcome.advance(StageEnum.COMPLETE, "tunnel_configured=true")

    async def _stage_complete(self) -> StageOutcome:
        self.banner.show_ready()
        await self.registrar.deregister()
        self.state_store.clear()
        self.reboot_flag.clear()
        self.logger.info("Zabbix agent is configured and running")
        self.logger.info("Server is ready for user access")
        return StageOutcome.advance(None)
