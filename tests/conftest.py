"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from provisioner.models.config import Config  # noqa: E402
from provisioner.services.process import CommandResult, ProcessManager  # noqa: E402

UBUNTU_OS_RELEASE = """NAME="Ubuntu"
VERSION="22.04.4 LTS (Jammy Jellyfish)"
ID=ubuntu
ID_LIKE=debian
PRETTY_NAME="Ubuntu 22.04.4 LTS"
VERSION_ID="22.04"
"""

AGENT_CONFIG = """# This is a configuration file for Zabbix agent daemon (Unix)
# DebugLevel=3
Server=127.0.0.1
ServerActive=127.0.0.1
Hostname=Zabbix server
"""

SSHD_CONFIG = """Port 22
PermitRootLogin yes
# no default banner path
#Banner none
"""


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files."""
    yield tmp_path


@pytest.fixture
def config(tmp_path):
    """Config with every path redirected under tmp_path and fast timings."""
    etc = tmp_path / "etc"
    (etc / "zabbix").mkdir(parents=True)
    (etc / "ssh").mkdir(parents=True)
    (etc / "os-release").write_text(UBUNTU_OS_RELEASE)
    (etc / "zabbix" / "zabbix_agentd.conf").write_text(AGENT_CONFIG)
    (etc / "ssh" / "sshd_config").write_text(SSHD_CONFIG)

    return Config(
        state_dir=tmp_path / "var" / "lib" / "provisioner",
        lock_file=tmp_path / "run" / "provisioner.pid",
        log_file=tmp_path / "log" / "provisioner.log",
        systemd_dir=tmp_path / "systemd",
        entry_point="/usr/local/bin/virtualizor-server-setup",
        agent_config=etc / "zabbix" / "zabbix_agentd.conf",
        ssh_key=tmp_path / "root" / ".ssh" / "zabbix_tunnel_key",
        motd_file=etc / "motd",
        issue_net_file=etc / "issue.net",
        sshd_config=etc / "ssh" / "sshd_config",
        os_release_file=etc / "os-release",
        network_timeout=1,
        network_poll_interval=0.01,
        post_reboot_settle=0,
        reboot_delay=10,
    )


def ok_result(args=(), stdout="", returncode=0, stderr=""):
    """Build a CommandResult as ProcessManager.run would return it."""
    return CommandResult(args=list(args), returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_process_manager():
    """ProcessManager double: every command succeeds with empty output."""
    manager = MagicMock(spec=ProcessManager)

    async def run(args, timeout=None, check=True, env=None):
        return ok_result(args)

    manager.run = AsyncMock(side_effect=run)
    manager.command_exists = MagicMock(return_value=True)
    manager.spawn_detached = AsyncMock(return_value=4242)
    manager.is_active = AsyncMock(return_value=False)
    manager.get_main_pid = AsyncMock(return_value=None)
    manager.daemon_reload = AsyncMock()
    manager.enable_service = AsyncMock()
    manager.disable_service = AsyncMock()
    manager.start_service = AsyncMock()
    manager.restart_service = AsyncMock()
    return manager
