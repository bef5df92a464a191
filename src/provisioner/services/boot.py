"""Boot-time systemd unit that resumes provisioning after a reboot."""

import logging
from pathlib import Path
from typing import Optional

from provisioner.models.config import Config
from provisioner.services.process import ProcessManager

RESUME_FLAG = "--resume-after-reboot"


def render_boot_unit(entry_point: str, timeout_seconds: int = 1800) -> str:
    """Render the oneshot unit that re-invokes the entry point in resume mode."""
    return f"""[Unit]
Description=Virtualizor Server Setup - Reboot Persistent
After=network.target network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart={entry_point} {RESUME_FLAG}
RemainAfterExit=no
StandardOutput=journal
StandardError=journal
TimeoutStartSec={timeout_seconds}

[Install]
WantedBy=multi-user.target
"""


class BootPersistenceRegistrar:
    """Installs and removes the resume-after-reboot service."""

    def __init__(self, config: Config, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("provisioner.boot")
        self.config = config
        self.process_manager = process_manager or ProcessManager(config.command_timeout)
        self.unit_path: Path = config.boot_unit_file
        self.unit_name = f"{config.service_name}.service"

    def is_registered(self) -> bool:
        return self.unit_path.exists()

    async def register(self, entry_point: Optional[str] = None) -> None:
        """Write and enable the boot unit; safe to call repeatedly.

        Args:
            entry_point: Command to re-invoke (config.entry_point if None)

        Raises:
            CommandError: If systemctl fails
        """
        entry_point = entry_point or self.config.entry_point
        content = render_boot_unit(entry_point, int(self.config.update_timeout))

        self.unit_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.unit_path.exists() or self.unit_path.read_text(encoding="utf-8") != content:
            self.logger.info("Creating systemd service for reboot persistence")
            self.unit_path.write_text(content, encoding="utf-8")
            await self.process_manager.daemon_reload()

        await self.process_manager.enable_service(self.unit_name)
        self.logger.info(f"Boot persistence registered: {self.unit_name}")

    async def deregister(self) -> None:
        """Disable and remove the boot unit if present."""
        if not self.unit_path.exists():
            return

        result = await self.process_manager.run(
            ["systemctl", "disable", self.unit_name], check=False
        )
        if not result.ok:
            self.logger.warning(f"Could not disable {self.unit_name}: {result.stderr.strip()}")

        self.unit_path.unlink(missing_ok=True)
        await self.process_manager.daemon_reload()
        self.logger.info("Systemd service removed")
