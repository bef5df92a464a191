"""Runtime configuration for the provisioner.

Built once at startup and passed to every service. Precedence:
command-line flags > ``PROVISIONER_*`` environment variables > defaults.
"""

import os
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "PROVISIONER_"
SERVICE_NAME = "virtualizor-server-setup"

DEFAULT_MOTD_MESSAGE = (
    "WARNING: Authorized Access Only\n"
    "*   This VPS is the property of Everything Cloud Solutions *\n"
    "*   Unauthorized use is strictly prohibited and monitored. *\n"
    "*   For any issue, report it to support@everythingcloud.ca *"
)


def default_entry_point() -> str:
    """Command the boot service uses to re-invoke the provisioner."""
    argv0 = Path(sys.argv[0]).resolve() if sys.argv and sys.argv[0] else None
    if argv0 is None or argv0.suffix == ".py" or not os.access(argv0, os.X_OK):
        return f"{sys.executable} -m provisioner"
    return str(argv0)


class Config(BaseModel):
    """Immutable provisioner configuration."""

    model_config = ConfigDict(frozen=True)

    # Persistence
    state_dir: Path = Path(f"/var/lib/{SERVICE_NAME}")
    lock_file: Path = Path(f"/run/{SERVICE_NAME}.pid")
    log_file: Path = Path(f"/var/log/zabbix-scripts/{SERVICE_NAME}.log")
    service_name: str = SERVICE_NAME
    systemd_dir: Path = Path("/etc/systemd/system")
    entry_point: str = Field(default_factory=default_entry_point)

    # Monitoring agent
    zabbix_version: str = "6.4"
    zabbix_server: str = "127.0.0.1"
    agent_package: str = "zabbix-agent"
    agent_service: str = "zabbix-agent"
    agent_config: Path = Path("/etc/zabbix/zabbix_agentd.conf")
    agent_listen_port: int = 10050
    agent_debug_level: int = 4
    agent_repo_base: str = "https://repo.zabbix.com/zabbix"

    # Reverse tunnel
    home_server: str = "monitor.cloudgeeks.in"
    home_server_ssh_port: int = 20202
    zabbix_server_port: int = 10051
    ssh_user: str = "zabbixssh"
    ssh_key: Path = Path("/root/.ssh/zabbix_tunnel_key")
    tunnel_service: str = "zabbix-tunnel"

    # Banner
    banner_text: str = "Virtualizor Managed Server - Setup in Progress"
    motd_message: str = DEFAULT_MOTD_MESSAGE
    motd_file: Path = Path("/etc/motd")
    issue_net_file: Path = Path("/etc/issue.net")
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    os_release_file: Path = Path("/etc/os-release")

    # Timing (seconds)
    network_probe_url: str = "https://repo.zabbix.com/"
    network_timeout: float = 300
    network_poll_interval: float = 5
    update_timeout: float = 1800
    command_timeout: float = 600
    reboot_delay: int = 10
    post_reboot_settle: float = 30
    progress_interval: float = 60
    reboot_command: str = "/sbin/reboot"

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def reboot_flag_file(self) -> Path:
        return self.state_dir / "reboot.json"

    @property
    def boot_unit_file(self) -> Path:
        return self.systemd_dir / f"{self.service_name}.service"

    @property
    def tunnel_unit_file(self) -> Path:
        return self.systemd_dir / f"{self.tunnel_service}.service"


def build_config(
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Build a Config from defaults, environment and flag overrides.

    Args:
        overrides: Values from command-line flags; None entries are ignored
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Frozen Config instance

    Raises:
        pydantic.ValidationError: If a value cannot be coerced to its field type
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    for name in Config.model_fields:
        env_key = f"{ENV_PREFIX}{name.upper()}"
        if env_key in environ:
            values[name] = environ[env_key]

    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    return Config(**values)
