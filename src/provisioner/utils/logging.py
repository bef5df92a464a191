"""Rotating logger setup for the provisioner."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


def setup_logger(
    name: str = "provisioner",
    log_file: Optional[Union[str, Path]] = "/var/log/zabbix-scripts/virtualizor-server-setup.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Setup rotating file logger with ISO 8601 timestamps.

    Args:
        name: Logger name
        log_file: Path to log file (created if doesn't exist), None for console only
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level

    Returns:
        Configured logger instance

    Raises:
        OSError: If the log directory or file cannot be created
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers if already configured
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger
