"""Post-provisioning health checks (--validate, --quick-status)."""

import logging
import socket
import stat
from datetime import datetime
from typing import Optional

from provisioner.models.config import Config
from provisioner.models.host import CheckResult
from provisioner.services.process import ProcessManager
from provisioner.services.state_manager import StateStore
from provisioner.utils.conf_file import get_option


class SystemValidator:
    """Checks agent, tunnel, config and key state of a provisioned host."""

    def __init__(
        self,
        config: Config,
        state_store: StateStore,
        process_manager: Optional[ProcessManager] = None,
    ):
        self.logger = logging.getLogger("provisioner.validation")
        self.config = config
        self.state_store = state_store
        self.process_manager = process_manager or ProcessManager(config.command_timeout)

    async def validate(self) -> list[CheckResult]:
        """Run every check.

        Returns:
            One CheckResult per check, in report order
        """
        checks = []
        agent = self.config.agent_service
        tunnel = self.config.tunnel_service

        agent_active = await self.process_manager.is_active(agent)
        checks.append(CheckResult(
            name="Zabbix Agent",
            ok=agent_active,
            detail="RUNNING" if agent_active else "NOT RUNNING",
        ))
        if agent_active:
            listening = await self._listening_on(self.config.agent_listen_port)
            checks.append(CheckResult(
                name="Zabbix Agent port",
                ok=listening,
                detail=f"{'Listening' if listening else 'Not listening'} on port {self.config.agent_listen_port}",
                warning=not listening,
            ))

        tunnel_active = await self.process_manager.is_active(tunnel)
        checks.append(CheckResult(
            name="SSH Tunnel Service",
            ok=tunnel_active,
            detail="RUNNING" if tunnel_active else "NOT RUNNING",
        ))
        if tunnel_active:
            pid = await self.process_manager.get_main_pid(tunnel)
            checks.append(CheckResult(
                name="SSH Tunnel connection",
                ok=pid is not None,
                detail=f"Active connection (PID: {pid})" if pid else "Service running but no active connection",
            ))
            if pid:
                forwarded = await self._listening_on(self.config.zabbix_server_port, "127.0.0.1")
                checks.append(CheckResult(
                    name="SSH Tunnel port",
                    ok=forwarded,
                    detail=f"Reverse port {self.config.zabbix_server_port} "
                    f"{'is active' if forwarded else 'not detected locally'}",
                    warning=not forwarded,
                ))

        checks.append(self._check_agent_config())
        checks.extend(self._check_key())
        return checks

    async def quick_status(self) -> list[str]:
        agent_active = await self.process_manager.is_active(self.config.agent_service)
        tunnel_active = await self.process_manager.is_active(self.config.tunnel_service)
        state = self.state_store.load()

        lines = [
            "=" * 67,
            "Virtualizor Server Setup - Quick Status Check",
            "=" * 67,
            f"Hostname: {socket.gethostname()}",
            f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}",
            "",
            f"Zabbix Agent:     {'RUNNING' if agent_active else 'STOPPED'}",
            f"SSH Tunnel:       {'RUNNING' if tunnel_active else 'STOPPED'}",
        ]
        if tunnel_active:
            pid = await self.process_manager.get_main_pid(self.config.tunnel_service)
            lines.append(f"Tunnel PID:       {pid or 'none'}")

        if state is not None:
            lines.append(f"Setup Status:     IN PROGRESS ({state.current_stage.value})")
        elif agent_active:
            lines.append("Setup Status:     COMPLETE")
        else:
            lines.append("Setup Status:     NOT STARTED")

        ssh_target = f"{self.config.ssh_user}@{self.config.home_server}"
        lines += [
            "",
            "Log Files:",
            f"  Setup:   {self.config.log_file}",
            "  Zabbix:  /var/log/zabbix/zabbix_agentd.log",
            f"  Tunnel:  journalctl -u {self.config.tunnel_service}",
            "",
            "Commands:",
            "  Full status:     --validate",
            f"  Service logs:    journalctl -u {self.config.agent_service} -u {self.config.tunnel_service}",
            f"  Test tunnel:     ssh -i {self.config.ssh_key} -p {self.config.home_server_ssh_port} {ssh_target}",
            "=" * 67,
        ]
        return lines

    def troubleshooting_steps(self) -> list[str]:
        ssh_target = f"{self.config.ssh_user}@{self.config.home_server}"
        services = f"{self.config.agent_service} {self.config.tunnel_service}"
        return [
            f"1. Check service logs: journalctl -u {self.config.agent_service} -u {self.config.tunnel_service}",
            f"2. Test SSH connection: ssh -i {self.config.ssh_key} -p {self.config.home_server_ssh_port} {ssh_target}",
            f"3. Restart services: systemctl restart {services}",
        ]

    async def _listening_on(self, port: int, address: Optional[str] = None) -> bool:
        result = await self.process_manager.run(["ss", "-tln"], timeout=10, check=False)
        needle = f"{address}:{port}" if address else f":{port}"
        for line in result.stdout.splitlines():
            fields = line.split()
            if len(fields) >= 4 and fields[3].endswith(needle):
                if address is None or fields[3] == needle:
                    return True
        return False

    def _check_agent_config(self) -> CheckResult:
        path = self.config.agent_config
        if not path.exists():
            return CheckResult(name="Zabbix Config", ok=False, detail="Configuration file missing")
        text = path.read_text(encoding="utf-8", errors="replace")
        tunneled = get_option(text, "Server") == "127.0.0.1" and get_option(text, "ServerActive") == "127.0.0.1"
        return CheckResult(
            name="Zabbix Config",
            ok=tunneled,
            detail="Configured for tunnel (127.0.0.1)" if tunneled else "Not configured for local tunnel",
        )

    def _check_key(self) -> list[CheckResult]:
        key = self.config.ssh_key
        if not key.exists():
            return [CheckResult(name="SSH Key", ok=False, detail=f"Missing at {key}")]
        mode = stat.S_IMODE(key.stat().st_mode)
        return [
            CheckResult(name="SSH Key", ok=True, detail=f"Present at {key}"),
            CheckResult(
                name="SSH Key permissions",
                ok=mode == 0o600,
                detail=f"{mode:o}" + ("" if mode == 0o600 else ", should be 600"),
                warning=mode != 0o600,
            ),
        ]
