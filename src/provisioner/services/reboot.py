"""Reboot orchestration: persist intent, then restart the host after a delay."""

import logging
import shlex
from typing import Optional

from provisioner.models.config import Config
from provisioner.models.status import StageEnum
from provisioner.services.boot import BootPersistenceRegistrar
from provisioner.services.process import ProcessManager
from provisioner.services.state_manager import RebootFlag


class RebootOrchestrator:
    """Schedules an OS restart that resumes into a given stage."""

    def __init__(
        self,
        config: Config,
        reboot_flag: RebootFlag,
        registrar: BootPersistenceRegistrar,
        process_manager: Optional[ProcessManager] = None,
    ):
        self.logger = logging.getLogger("provisioner.reboot")
        self.config = config
        self.reboot_flag = reboot_flag
        self.registrar = registrar
        self.process_manager = process_manager or ProcessManager(config.command_timeout)

    async def schedule_reboot(self, next_stage: StageEnum, delay_seconds: Optional[int] = None) -> int:
        """Set the reboot flag, refresh boot persistence and start a delayed reboot.

        Returns as soon as the delayed reboot has been spawned; the caller is
        expected to exit with status 0 right after.

        Args:
            next_stage: Stage to resume into after boot
            delay_seconds: Grace delay before rebooting (config.reboot_delay if None)

        Returns:
            PID of the detached reboot helper
        """
        delay = self.config.reboot_delay if delay_seconds is None else delay_seconds
        self.logger.info(
            f"Scheduling reboot in {delay} seconds for next stage: {next_stage.value}"
        )

        self.reboot_flag.set(next_stage)
        await self.registrar.register()

        command = f"sleep {int(delay)} && {self.config.reboot_command}"
        pid = await self.process_manager.spawn_detached(["/bin/sh", "-c", command])
        self.logger.info(
            f"Reboot scheduled ({shlex.quote(command)}, helper PID {pid}). "
            f"Setup will continue after restart."
        )
        return pid
