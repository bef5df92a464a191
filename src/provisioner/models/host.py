"""Host description models: OS identity, diagnostic snapshots and check results."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class OsInfo(BaseModel):
    """Detected operating system."""

    os_id: str = Field(..., description="os-release ID, e.g. ubuntu")
    version: str = Field(..., description="VERSION_ID (major only for rhel family)")
    family: str = Field(..., description="debian or rhel")
    pretty_name: str = ""

    @property
    def label(self) -> str:
        return f"{self.os_id}-{self.version}"


class HostSnapshot(BaseModel):
    """Point-in-time view of host resources, captured on failure."""

    hostname: str
    captured_at: datetime = Field(default_factory=datetime.now)
    disk_total_bytes: Optional[int] = None
    disk_free_bytes: Optional[int] = None
    mem_total_kb: Optional[int] = None
    mem_available_kb: Optional[int] = None
    load_average: Optional[tuple[float, float, float]] = None
    addresses: list[str] = Field(default_factory=list)
    default_route: Optional[str] = None

    def summary_lines(self) -> list[str]:
        lines = [f"Hostname: {self.hostname}", f"Captured: {self.captured_at.isoformat()}"]
        if self.disk_total_bytes:
            free = self.disk_free_bytes or 0
            free_pct = 100 * free / self.disk_total_bytes
            lines.append(
                f"Disk (/): {free // (1024 ** 2)} MB free of "
                f"{self.disk_total_bytes // (1024 ** 2)} MB ({free_pct:.0f}% free)"
            )
        if self.mem_total_kb:
            lines.append(
                f"Memory: {(self.mem_available_kb or 0) // 1024} MB available of "
                f"{self.mem_total_kb // 1024} MB"
            )
        if self.load_average:
            lines.append("Load average: " + " ".join(f"{v:.2f}" for v in self.load_average))
        lines.append("Addresses: " + (", ".join(self.addresses) if self.addresses else "none"))
        lines.append(f"Default route: {self.default_route or 'none'}")
        return lines


class CheckResult(BaseModel):
    """One line of the --validate report."""

    name: str
    ok: bool
    detail: str
    warning: bool = Field(False, description="Failed check that does not fail validation")
