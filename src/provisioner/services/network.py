"""Network readiness checks."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from provisioner.errors import ConnectivityError


class NetworkProbe:
    """Polls an HTTP endpoint until the network is usable."""

    def __init__(self, probe_url: str, request_timeout: float = 10.0):
        """Initialize network probe.

        Args:
            probe_url: URL that must be reachable (any HTTP response counts)
            request_timeout: Per-request timeout in seconds
        """
        self.logger = logging.getLogger("provisioner.network")
        self.probe_url = probe_url
        self.request_timeout = request_timeout

    async def is_reachable(self, url: Optional[str] = None) -> bool:
        """Return True if the URL answers with any HTTP status."""
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                await client.head(url or self.probe_url, follow_redirects=True)
            return True
        except httpx.HTTPError as e:
            self.logger.debug(f"Probe of {url or self.probe_url} failed: {e}")
            return False

    async def wait_for_network(self, timeout: float = 300, interval: float = 5) -> None:
        """Poll until reachable, bounded by timeout.

        Raises:
            ConnectivityError: If the endpoint stays unreachable for timeout seconds
        """
        self.logger.info(f"Waiting for network connectivity ({self.probe_url})")
        started = time.monotonic()
        last_report = 0.0

        while True:
            if await self.is_reachable():
                self.logger.info("Network connectivity confirmed")
                return

            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                break
            if elapsed - last_report >= 30:
                last_report = elapsed
                self.logger.info(f"Still waiting for network... ({elapsed:.0f}s elapsed)")
            await asyncio.sleep(min(interval, max(timeout - elapsed, 0)))

        self.logger.error(f"Network connectivity timeout after {timeout:.0f}s")
        raise ConnectivityError(
            f"NETWORK_TIMEOUT: {self.probe_url} unreachable after {timeout:.0f}s"
        )
