"""Failure context: host snapshots and remediation hints."""

import logging
import os
import shutil
import socket
from pathlib import Path
from typing import Optional

from provisioner.errors import ErrorKind
from provisioner.models.host import HostSnapshot
from provisioner.models.status import StageEnum
from provisioner.services.process import ProcessManager

MEMINFO = Path("/proc/meminfo")


def read_meminfo(path: Path = MEMINFO) -> dict[str, int]:
    values = {}
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            key, _, rest = line.partition(":")
            parts = rest.split()
            if parts and parts[0].isdigit():
                values[key.strip()] = int(parts[0])
    except OSError:
        return {}
    return values


async def collect_snapshot(process_manager: Optional[ProcessManager] = None) -> HostSnapshot:
    """Capture disk, memory, load and network state of this host.

    Each probe is independent; one failing leaves its fields empty.
    """
    logger = logging.getLogger("provisioner.diagnostics")
    process_manager = process_manager or ProcessManager()
    snapshot = HostSnapshot(hostname=socket.gethostname())

    try:
        usage = shutil.disk_usage("/")
        snapshot.disk_total_bytes = usage.total
        snapshot.disk_free_bytes = usage.free
    except OSError as e:
        logger.debug(f"disk usage unavailable: {e}")

    meminfo = read_meminfo()
    snapshot.mem_total_kb = meminfo.get("MemTotal")
    snapshot.mem_available_kb = meminfo.get("MemAvailable")

    try:
        snapshot.load_average = os.getloadavg()
    except OSError:
        pass

    try:
        result = await process_manager.run(["ip", "-brief", "address"], timeout=10, check=False)
        snapshot.addresses = [
            " ".join(line.split()) for line in result.stdout.splitlines() if line.strip()
        ]
        result = await process_manager.run(["ip", "route", "show", "default"], timeout=10, check=False)
        snapshot.default_route = result.stdout.strip() or None
    except Exception as e:
        logger.debug(f"network state unavailable: {e}")

    return snapshot


def remediation_hints(stage: StageEnum, kind: ErrorKind) -> list[str]:
    hints = []
    if kind == ErrorKind.CONNECTIVITY:
        hints.append("Check network connectivity (DNS, default route, outbound HTTPS)")
    elif kind == ErrorKind.PRIVILEGE:
        hints.append("Run the provisioner as root")
    elif kind == ErrorKind.VALIDATION:
        hints.append("Check the command-line arguments and that the OS is supported")
    elif kind == ErrorKind.INTERRUPTED:
        hints.append("The run was interrupted; re-run to resume from the same stage")
    else:
        hints.append("Inspect the log above for the failing command and its output")

    if stage in (StageEnum.UPDATES, StageEnum.AGENT_INSTALL):
        hints.append("Check the package manager is not locked by another process")
    hints.append(f"Retry this stage with: --stage {stage.value}")
    hints.append("Inspect saved progress with: --status")
    hints.append("Discard saved progress and start over with: --cleanup")
    return hints


def log_failure_report(
    logger: logging.Logger,
    stage: StageEnum,
    error: str,
    kind: ErrorKind,
    snapshot: Optional[HostSnapshot] = None,
) -> None:
    """Log the failing stage, the error, host state and next steps."""
    logger.error("=== PROVISIONING FAILED ===")
    logger.error(f"Stage: {stage.value} ({stage.description})")
    logger.error(f"Error [{kind.value}]: {error}")
    if snapshot is not None:
        for line in snapshot.summary_lines():
            logger.error(f"  {line}")
    logger.error("Remediation:")
    for hint in remediation_hints(stage, kind):
        logger.error(f"  - {hint}")
