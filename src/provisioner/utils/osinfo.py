"""Operating system detection from /etc/os-release."""

import logging
import shlex
from pathlib import Path

from provisioner.errors import ValidationError
from provisioner.models.host import OsInfo

DEBIAN_IDS = {"ubuntu", "debian"}
RHEL_IDS = {"rhel", "centos", "almalinux", "rocky"}


def parse_os_release(text: str) -> dict[str, str]:
    """Parse os-release KEY=value lines, honouring shell quoting."""
    fields = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = [value.strip("\"'")]
        fields[key.strip()] = parts[0] if parts else ""
    return fields


def detect_os(os_release: Path = Path("/etc/os-release")) -> OsInfo:
    """Detect the OS family of this host.

    Args:
        os_release: Path to the os-release file

    Returns:
        OsInfo for a supported distribution

    Raises:
        ValidationError: If the file is missing or the distribution is unsupported
    """
    logger = logging.getLogger("provisioner.osinfo")

    if not os_release.exists():
        raise ValidationError(f"UNSUPPORTED_OS: {os_release} not found")

    fields = parse_os_release(os_release.read_text(encoding="utf-8"))
    os_id = fields.get("ID", "").lower()
    version = fields.get("VERSION_ID", "")

    if os_id in DEBIAN_IDS:
        family = "debian"
    elif os_id in RHEL_IDS:
        family = "rhel"
        version = version.split(".")[0]
    else:
        raise ValidationError(f"UNSUPPORTED_OS: {os_id or 'unknown'}")

    info = OsInfo(
        os_id=os_id,
        version=version,
        family=family,
        pretty_name=fields.get("PRETTY_NAME", ""),
    )
    logger.info(f"Detected OS: {info.os_id} {info.version} (family: {info.family})")
    return info
