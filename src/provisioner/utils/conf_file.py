"""Idempotent rewriting of ``Key=Value`` style configuration files."""

import os
import re
from pathlib import Path
from typing import Mapping, Optional

import aiofiles


def set_options(text: str, options: Mapping[str, object]) -> str:
    """Set each option in config text, overwriting rather than appending.

    An active ``Key=...`` line is replaced in place (duplicates are dropped).
    Without one, the first commented ``# Key=...`` line is replaced. Only when
    neither exists is the option appended.

    Args:
        text: Current file contents
        options: Keys and values to set

    Returns:
        Updated file contents
    """
    lines = text.splitlines()

    for key, value in options.items():
        wanted = f"{key}={value}"
        active = re.compile(rf"^\s*{re.escape(key)}\s*=")
        commented = re.compile(rf"^\s*#\s*{re.escape(key)}\s*=")

        result = []
        replaced = False
        for line in lines:
            if active.match(line):
                if not replaced:
                    result.append(wanted)
                    replaced = True
                continue
            result.append(line)

        if not replaced:
            for idx, line in enumerate(result):
                if commented.match(line):
                    result[idx] = wanted
                    replaced = True
                    break

        if not replaced:
            result.append(wanted)
        lines = result

    return "\n".join(lines) + "\n"


def get_option(text: str, key: str) -> Optional[str]:
    """Return the value of the active ``key`` line, or None."""
    active = re.compile(rf"^\s*{re.escape(key)}\s*=(.*)$")
    for line in text.splitlines():
        match = active.match(line)
        if match:
            return match.group(1).strip()
    return None


async def rewrite_options(path: Path, options: Mapping[str, object]) -> bool:
    """Apply options to a config file with an atomic replace.

    Args:
        path: Config file to update
        options: Keys and values to set

    Returns:
        True if the file content changed

    Raises:
        FileNotFoundError: If the config file does not exist
    """
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        current = await f.read()

    updated = set_options(current, options)
    if updated == current:
        return False

    tmp_path = path.parent / f"{path.name}.tmp"
    try:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(updated)
        os.chmod(tmp_path, path.stat().st_mode & 0o7777)
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise
    return True
