"""Login banner and MOTD rendering."""

import logging
import socket
from datetime import datetime
from typing import Optional

from provisioner.models.config import Config
from provisioner.services.process import ProcessManager

RULE = "=" * 47
READY_TITLE = "VIRTUALIZOR MANAGED SERVER - READY"


def render_motd(title: str, notice: str, progress: str, hostname: str, now: datetime) -> str:
    return f"""
{RULE}
   {title}
{RULE}
   Hostname: {hostname}
   Date: {now:%Y-%m-%d %H:%M:%S}

   {notice}

   Setup Progress: {progress}
{RULE}

"""


def render_ready_motd(notice: str, hostname: str, now: datetime) -> str:
    return f"""
{RULE}
   {READY_TITLE}
{RULE}
   Hostname: {hostname}
   Setup Completed: {now:%Y-%m-%d %H:%M:%S}

   {notice}

   Status: Server Ready for Use
   Zabbix Agent: Configured and Running
   SSH Tunnel: Check logs for status
{RULE}

"""


def render_issue(title: str) -> str:
    return f"{RULE}\n{title}\n{RULE}\n"


class BannerService:
    """Writes /etc/motd, /etc/issue.net and the sshd Banner directive."""

    def __init__(self, config: Config, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("provisioner.banner")
        self.config = config
        self.process_manager = process_manager or ProcessManager(config.command_timeout)

    def show_progress(self, progress: str) -> None:
        """Rewrite the MOTD with a new progress line."""
        self.config.motd_file.write_text(
            render_motd(
                self.config.banner_text,
                self.config.motd_message,
                progress,
                socket.gethostname(),
                datetime.now(),
            ),
            encoding="utf-8",
        )
        self.logger.debug(f"MOTD progress: {progress}")

    def show_ready(self) -> None:
        self.config.motd_file.write_text(
            render_ready_motd(self.config.motd_message, socket.gethostname(), datetime.now()),
            encoding="utf-8",
        )

    async def install_login_banner(self) -> None:
        """Write the SSH pre-login banner and enable it in sshd_config."""
        self.config.issue_net_file.write_text(
            render_issue(self.config.banner_text), encoding="utf-8"
        )

        sshd_config = self.config.sshd_config
        if not sshd_config.exists():
            return

        text = sshd_config.read_text(encoding="utf-8")
        directive = f"Banner {self.config.issue_net_file}"
        if "#Banner none" not in text:
            return

        sshd_config.write_text(text.replace("#Banner none", directive), encoding="utf-8")
        self.logger.info("Enabled SSH login banner")

        # Unit is "ssh" on Debian/Ubuntu and "sshd" elsewhere; restart is best effort
        for unit in ("sshd", "ssh"):
            result = await self.process_manager.run(["systemctl", "restart", unit], check=False)
            if result.ok:
                return
        self.logger.warning("Could not restart SSH daemon, banner applies after next restart")
