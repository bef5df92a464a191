"""SSH reverse tunnel credentials and service."""

import logging
import socket
from datetime import datetime
from pathlib import Path
from typing import Optional

from provisioner.models.config import Config
from provisioner.services.process import ProcessManager


def render_tunnel_unit(config: Config) -> str:
    port = config.zabbix_server_port
    return f"""[Unit]
Description=Persistent SSH Reverse Tunnel to Zabbix Server
After=network.target network-online.target
Wants=network-online.target

[Service]
Type=simple
User=root
ExecStartPre=/bin/sleep 60
ExecStart=/usr/bin/ssh -i {config.ssh_key} \\
    -o ExitOnForwardFailure=yes \\
    -o ServerAliveInterval=60 \\
    -o ServerAliveCountMax=3 \\
    -o StrictHostKeyChecking=no \\
    -o UserKnownHostsFile=/dev/null \\
    -o BatchMode=yes \\
    -N -R {port}:localhost:{port} \\
    -p {config.home_server_ssh_port} \\
    {config.ssh_user}@{config.home_server}
Restart=always
RestartSec=60
StandardOutput=journal
StandardError=journal

[Install]
WantedBy=multi-user.target
"""


class TunnelProvisioner:
    """Ensures the tunnel key pair and the tunnel systemd unit exist."""

    def __init__(self, config: Config, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("provisioner.tunnel")
        self.config = config
        self.process_manager = process_manager or ProcessManager(config.command_timeout)

    async def ensure(self) -> None:
        """Create missing credentials and (re)write and enable the tunnel unit.

        The service is enabled but not started: the public key has to be
        authorised on the home server first.

        Raises:
            CommandError: If key generation or systemctl fails
        """
        await self.ensure_key()

        unit_path: Path = self.config.tunnel_unit_file
        content = render_tunnel_unit(self.config)
        unit_path.parent.mkdir(parents=True, exist_ok=True)
        if not unit_path.exists() or unit_path.read_text(encoding="utf-8") != content:
            unit_path.write_text(content, encoding="utf-8")
            self.logger.info(f"Wrote tunnel unit {unit_path}")

        await self.process_manager.daemon_reload()
        await self.process_manager.enable_service(self.config.tunnel_service)
        self.logger.info("SSH tunnel service created (requires manual SSH key setup)")

    async def ensure_key(self) -> bool:
        """Generate the tunnel key if missing.

        Returns:
            True if a new key was generated
        """
        key = self.config.ssh_key
        if key.exists():
            return False

        self.logger.info("Generating SSH key for tunnel")
        key.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        comment = f"zabbix-tunnel-{socket.gethostname()}-{datetime.now():%Y%m%d}"
        await self.process_manager.run(
            ["ssh-keygen", "-t", "rsa", "-b", "4096", "-f", str(key), "-N", "", "-C", comment]
        )
        key.chmod(0o600)
        public_key = key.with_name(key.name + ".pub")
        public_key.chmod(0o644)

        self.logger.info(f"SSH key generated: {key}")
        self.logger.warning("MANUAL ACTION REQUIRED:")
        self.logger.warning(
            f"Copy the following public key to {self.config.ssh_user}@{self.config.home_server}:"
        )
        self.logger.warning(public_key.read_text(encoding="utf-8").strip())
        return True
