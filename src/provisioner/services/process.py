"""Subprocess execution and systemd service control."""

import asyncio
import logging
import os
import shlex
import shutil
import time
from enum import Enum
from typing import Mapping, Optional, Sequence

from pydantic import BaseModel

from provisioner.errors import CommandError, CommandTimeoutError


class ServiceStatus(str, Enum):
    """Systemd unit states reported by ``systemctl is-active``."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"
    ACTIVATING = "activating"
    DEACTIVATING = "deactivating"
    UNKNOWN = "unknown"


class CommandResult(BaseModel):
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessManager:
    """Runs external commands with timeouts and manages systemd services."""

    DEFAULT_TIMEOUT = 600.0
    SYSTEMCTL_TIMEOUT = 90.0

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        """Initialize process manager.

        Args:
            default_timeout: Timeout in seconds applied when run() gets none
        """
        self.logger = logging.getLogger("provisioner.process")
        self.default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            args: Program and arguments
            timeout: Seconds before the command is killed (default_timeout if None)
            check: Raise CommandError on non-zero exit
            env: Extra environment variables merged over os.environ

        Returns:
            CommandResult with decoded output

        Raises:
            CommandTimeoutError: If the command exceeds its timeout
            CommandError: If the command cannot start, or exits non-zero with check=True
        """
        args = [str(a) for a in args]
        timeout = self.default_timeout if timeout is None else timeout
        command_line = shlex.join(args)
        self.logger.debug(f"exec: {command_line}")

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CommandError(f"COMMAND_NOT_STARTED: {command_line}: {e}", command=args) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.logger.error(f"Command timed out after {timeout:.0f}s: {command_line}")
            raise CommandTimeoutError(
                f"COMMAND_TIMEOUT: {command_line} exceeded {timeout:.0f}s", command=args
            )

        result = CommandResult(
            args=args,
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration=time.monotonic() - started,
        )
        self.logger.debug(f"done: {command_line} rc={result.returncode} dur={result.duration:.1f}s")

        if check and not result.ok:
            raise CommandError(
                f"COMMAND_FAILED: {command_line} exited {result.returncode}: "
                f"{result.stderr.strip()[-500:]}",
                command=args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def command_exists(self, name: str) -> bool:
        return shutil.which(name) is not None

    async def spawn_detached(self, args: Sequence[str]) -> int:
        """Start a command in its own session without waiting for it.

        The child outlives this process.

        Returns:
            PID of the spawned process
        """
        args = [str(a) for a in args]
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        self.logger.debug(f"spawned detached PID {process.pid}: {shlex.join(args)}")
        return process.pid

    async def get_service_status(self, service_name: str) -> ServiceStatus:
        """Get a systemd unit's state; UNKNOWN if it cannot be determined."""
        try:
            result = await self.run(
                ["systemctl", "is-active", service_name],
                timeout=self.SYSTEMCTL_TIMEOUT,
                check=False,
            )
            state = result.stdout.strip()
            try:
                return ServiceStatus(state)
            except ValueError:
                return ServiceStatus.UNKNOWN
        except Exception as e:
            self.logger.warning(f"Failed to get status of {service_name}: {e}")
            return ServiceStatus.UNKNOWN

    async def is_active(self, service_name: str) -> bool:
        return await self.get_service_status(service_name) == ServiceStatus.ACTIVE

    async def get_main_pid(self, service_name: str) -> Optional[int]:
        result = await self.run(
            ["systemctl", "show", service_name, "--property", "MainPID", "--value"],
            timeout=self.SYSTEMCTL_TIMEOUT,
            check=False,
        )
        value = result.stdout.strip()
        if result.ok and value.isdigit() and int(value) > 0:
            return int(value)
        return None

    async def daemon_reload(self) -> None:
        await self._systemctl("daemon-reload")

    async def enable_service(self, service_name: str) -> None:
        await self._systemctl("enable", service_name)

    async def disable_service(self, service_name: str) -> None:
        await self._systemctl("disable", service_name)

    async def start_service(self, service_name: str) -> None:
        await self._systemctl("start", service_name)

    async def restart_service(self, service_name: str) -> None:
        self.logger.info(f"Restarting service: {service_name}")
        await self._systemctl("restart", service_name)
        self.logger.info(f"Service {service_name} restarted successfully")

    async def _systemctl(self, *args: str) -> CommandResult:
        try:
            return await self.run(["systemctl", *args], timeout=self.SYSTEMCTL_TIMEOUT)
        except CommandError as e:
            self.logger.error(f"systemctl {' '.join(args)} failed: {e}")
            raise
