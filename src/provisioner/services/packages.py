"""OS package manager collaborator (apt, dnf, yum)."""

import asyncio
import contextlib
import logging
import time
from typing import Optional

from pydantic import BaseModel, Field

from provisioner.errors import CollaboratorError, CommandError
from provisioner.models.host import OsInfo
from provisioner.services.process import ProcessManager

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class UpdateResult(BaseModel):
    """Outcome of a full system update."""

    reboot_required: bool = False
    upgradable_count: int = 0
    errors: list[str] = Field(default_factory=list)


class PackageManager:
    """Installs packages and applies system updates through the native tool."""

    def __init__(
        self,
        os_info: OsInfo,
        process_manager: Optional[ProcessManager] = None,
        update_timeout: float = 1800,
        progress_interval: float = 60,
    ):
        """Initialize package manager.

        Args:
            os_info: Detected OS (selects apt or dnf/yum)
            process_manager: Command runner
            update_timeout: Timeout in seconds for each update/upgrade command
            progress_interval: Seconds between progress log lines during long commands
        """
        self.logger = logging.getLogger("provisioner.packages")
        self.os_info = os_info
        self.process_manager = process_manager or ProcessManager()
        self.update_timeout = update_timeout
        self.progress_interval = progress_interval

    @property
    def tool(self) -> str:
        """Name of the native package tool for this host.

        Raises:
            CollaboratorError: If no supported tool is installed
        """
        if self.os_info.family == "debian":
            return "apt-get"
        for candidate in ("dnf", "yum"):
            if self.process_manager.command_exists(candidate):
                return candidate
        raise CollaboratorError("NO_PACKAGE_MANAGER: neither dnf nor yum found")

    async def is_installed(self, package: str) -> bool:
        if self.os_info.family == "debian":
            result = await self.process_manager.run(
                ["dpkg-query", "-W", "-f=${Status}", package], check=False
            )
            return result.ok and "install ok installed" in result.stdout
        result = await self.process_manager.run(["rpm", "-q", package], check=False)
        return result.ok

    async def install(self, *packages: str) -> None:
        """Install packages (a no-op for ones already installed)."""
        tool = self.tool
        self.logger.info(f"Installing packages: {' '.join(packages)}")
        if tool == "apt-get":
            await self._run_long([tool, "install", "-y", *packages], env=APT_ENV)
        else:
            await self._run_long([tool, "install", "-y", "-q", *packages])

    async def refresh(self) -> None:
        if self.tool == "apt-get":
            await self._run_long(["apt-get", "update", "-qq"])

    async def upgradable_count(self) -> int:
        """Count packages with pending updates (after refreshing lists)."""
        if self.tool == "apt-get":
            result = await self.process_manager.run(
                ["apt", "list", "--upgradable"], timeout=self.update_timeout, check=False
            )
            return sum(1 for line in result.stdout.splitlines() if "upgradable" in line)

        result = await self.process_manager.run(
            [self.tool, "check-update", "-q"], timeout=self.update_timeout, check=False
        )
        # check-update exits 100 when updates are available, 0 when none
        if result.returncode == 0:
            return 0
        if result.returncode == 100:
            return sum(1 for line in result.stdout.splitlines() if line.strip())
        raise CommandError(
            f"COMMAND_FAILED: {self.tool} check-update exited {result.returncode}: "
            f"{result.stderr.strip()[-500:]}",
            command=result.args,
            returncode=result.returncode,
            stderr=result.stderr,
        )

    async def update_all(self) -> UpdateResult:
        """Apply all pending updates.

        A reboot is required whenever updates were installed.

        Returns:
            UpdateResult; soft failures (dist-upgrade) are listed in errors

        Raises:
            CommandError: If refreshing, counting or the main upgrade fails
        """
        if self.tool == "apt-get":
            self.logger.info("Updating package lists")
        await self.refresh()

        self.logger.info("Checking for available upgrades")
        count = await self.upgradable_count()
        if count == 0:
            self.logger.info("No package updates available")
            return UpdateResult(reboot_required=False, upgradable_count=0)

        self.logger.info(f"Found {count} packages to upgrade")
        result = UpdateResult(reboot_required=True, upgradable_count=count)

        if self.tool == "apt-get":
            self.logger.info("Installing system updates")
            await self._run_long(["apt-get", "upgrade", "-y"], env=APT_ENV)
            self.logger.info("Installing security updates")
            try:
                await self._run_long(["apt-get", "dist-upgrade", "-y"], env=APT_ENV)
            except CommandError as e:
                self.logger.warning(f"Security upgrade failed or timed out, continuing: {e}")
                result.errors.append(str(e))
        else:
            self.logger.info("Installing system updates")
            await self._run_long([self.tool, "update", "-y", "-q"])

        return result

    async def _run_long(self, args: list[str], env: Optional[dict] = None):
        """Run a long command while a watcher logs elapsed time."""
        watcher = asyncio.create_task(self._watch_progress(" ".join(args[:2])))
        try:
            return await self.process_manager.run(args, timeout=self.update_timeout, env=env)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

    async def _watch_progress(self, label: str) -> None:
        started = time.monotonic()
        while True:
            await asyncio.sleep(self.progress_interval)
            self.logger.info(f"{label} still running... ({time.monotonic() - started:.0f}s elapsed)")
