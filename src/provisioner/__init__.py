"""Reboot-persistent provisioning for Virtualizor-created servers."""

__version__ = "1.0.0"
