"""Monitoring agent (Zabbix) installation and configuration."""

import logging
import tempfile
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from provisioner.errors import CollaboratorError, ConnectivityError
from provisioner.models.config import Config
from provisioner.models.host import OsInfo
from provisioner.services.packages import PackageManager
from provisioner.services.process import ProcessManager
from provisioner.utils.conf_file import rewrite_options

TUNNEL_ENDPOINT = "127.0.0.1"


def release_package_url(base: str, version: str, os_info: OsInfo) -> str:
    """URL of the zabbix-release package that adds the vendor repository."""
    if os_info.family == "debian":
        return (
            f"{base}/{version}/{os_info.os_id}/pool/main/z/zabbix-release/"
            f"zabbix-release_{version}-1+{os_info.os_id}{os_info.version}_all.deb"
        )
    return (
        f"{base}/{version}/rhel/{os_info.version}/x86_64/"
        f"zabbix-release-{version}-1.el{os_info.version}.noarch.rpm"
    )


class AgentService:
    """Installs the agent and points it at a server endpoint."""

    def __init__(
        self,
        config: Config,
        os_info: OsInfo,
        package_manager: Optional[PackageManager] = None,
        process_manager: Optional[ProcessManager] = None,
    ):
        self.logger = logging.getLogger("provisioner.agent")
        self.config = config
        self.os_info = os_info
        self.process_manager = process_manager or ProcessManager(config.command_timeout)
        self.package_manager = package_manager or PackageManager(
            os_info,
            self.process_manager,
            update_timeout=config.update_timeout,
            progress_interval=config.progress_interval,
        )
        self.chunk_size = 64 * 1024

    async def install(self, version: str, server: str, hostname: str) -> None:
        """Install, minimally configure, enable and start the agent.

        Repository and package installation are skipped when the agent
        package is already present.

        Args:
            version: Zabbix release (e.g. "6.4")
            server: Initial Server/ServerActive value
            hostname: Agent Hostname value

        Raises:
            ConnectivityError: If the release package cannot be downloaded
            CollaboratorError: If installation, configuration or service start fails
        """
        package = self.config.agent_package
        if await self.package_manager.is_installed(package):
            self.logger.info(f"{package} already installed, skipping package installation")
        else:
            await self._install_repository(version)
            await self.package_manager.refresh()
            await self.package_manager.install(package)

        await self._write_options(
            {"Server": server, "ServerActive": server, "Hostname": hostname}
        )
        await self.process_manager.enable_service(self.config.agent_service)
        await self.process_manager.start_service(self.config.agent_service)
        self.logger.info(f"Agent {self.config.agent_service} enabled and started")

    async def point_at(self, endpoint: str, hostname: str) -> None:
        """Rewrite the agent configuration for an endpoint and restart the agent.

        Raises:
            CollaboratorError: If the config file is missing or the restart fails
        """
        changed = await self._write_options(
            {
                "Server": endpoint,
                "ServerActive": endpoint,
                "Hostname": hostname,
                "DebugLevel": self.config.agent_debug_level,
            }
        )
        self.logger.info(
            f"Agent configured for {endpoint} ({'updated' if changed else 'unchanged'})"
        )
        await self.process_manager.restart_service(self.config.agent_service)

    async def is_running(self) -> bool:
        return await self.process_manager.is_active(self.config.agent_service)

    async def _install_repository(self, version: str) -> None:
        url = release_package_url(self.config.agent_repo_base, version, self.os_info)
        self.logger.info(f"Installing Zabbix repository from {url}")

        with tempfile.TemporaryDirectory(prefix="zabbix-release-") as tmp:
            target = Path(tmp) / url.rsplit("/", 1)[-1]
            await self._download(url, target)
            if self.os_info.family == "debian":
                await self.process_manager.run(["dpkg", "-i", str(target)])
            else:
                await self.process_manager.run(["rpm", "-Uvh", "--quiet", "--replacepkgs", str(target)])

    async def _download(self, url: str, target: Path) -> None:
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async with aiofiles.open(target, "wb") as f:
                        async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                            await f.write(chunk)
        except httpx.HTTPStatusError as e:
            raise CollaboratorError(f"REPO_DOWNLOAD_FAILED: {url}: {e}") from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"REPO_UNREACHABLE: {url}: {e}") from e
        self.logger.debug(f"Downloaded {target.name} ({target.stat().st_size} bytes)")

    async def _write_options(self, options: dict) -> bool:
        path = self.config.agent_config
        if not path.exists():
            raise CollaboratorError(f"AGENT_CONFIG_MISSING: {path}")
        return await rewrite_options(path, options)
