"""State store and reboot flag for the provisioning run."""

import json
import logging
import os
import socket
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from provisioner.models.state import ProvisioningState, RebootFlagRecord
from provisioner.models.status import StageEnum


def _write_atomic(path: Path, record: BaseModel) -> None:
    """Write a record through a temp file, fsync it, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.tmp.{os.getpid()}"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record.model_dump(mode="json"), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


class StateStore:
    """Durable record of the stage currently being attempted.

    The record is rewritten on entry to every stage, before the stage's side
    effects run, so a crash always leaves it pointing at the attempted stage.
    """

    def __init__(self, state_file: Path):
        """Initialize state store.

        Args:
            state_file: Location of the JSON state record (must survive reboot)
        """
        self.logger = logging.getLogger("provisioner.state_manager")
        self.state_file_path = Path(state_file)

    def save(self, stage: StageEnum, data: str = "") -> ProvisioningState:
        """Overwrite the state record for the stage being entered.

        The execution start time is carried over from an existing record so it
        keeps describing the start of the whole run.

        Args:
            stage: Stage about to run
            data: Opaque data carried from the previous stage

        Returns:
            The record written
        """
        previous = self.load()
        state = ProvisioningState(
            current_stage=stage,
            stage_data=data,
            execution_start=previous.execution_start if previous else datetime.now(),
            host_identity=socket.gethostname(),
            pid=os.getpid(),
        )
        try:
            _write_atomic(self.state_file_path, state)
        except Exception as e:
            self.logger.error(f"Failed to save state file: {e}", exc_info=True)
            raise
        self.logger.debug(f"State saved: stage={stage.value}, data={data!r}")
        return state

    def load(self) -> Optional[ProvisioningState]:
        """Load the state record.

        Returns:
            ProvisioningState if present and valid, None otherwise. An
            unparseable record is reported and treated as absent.
        """
        if not self.state_file_path.exists():
            self.logger.debug("No state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = ProvisioningState(**data)
        except Exception as e:
            self.logger.warning(f"Ignoring unreadable state file {self.state_file_path}: {e}")
            return None

        self.logger.debug(f"State loaded: stage={state.current_stage.value}")
        return state

    def clear(self) -> None:
        """Delete the state record (completion or explicit cleanup)."""
        if self.state_file_path.exists():
            self.state_file_path.unlink()
            self.logger.info("Deleted state file")


class RebootFlag:
    """Marker recording the stage to resume into after the next boot.

    ``check`` never consumes the flag; callers clear it explicitly.
    """

    def __init__(self, flag_file: Path):
        self.logger = logging.getLogger("provisioner.reboot_flag")
        self.flag_file_path = Path(flag_file)

    def set(self, next_stage: StageEnum) -> None:
        _write_atomic(self.flag_file_path, RebootFlagRecord(next_stage=next_stage))
        self.logger.info(f"Reboot flag set for next stage: {next_stage.value}")

    def check(self) -> Optional[StageEnum]:
        """Return the flagged stage without removing the flag.

        Returns:
            StageEnum if a valid flag exists, None otherwise
        """
        if not self.flag_file_path.exists():
            return None
        try:
            with open(self.flag_file_path, "r", encoding="utf-8") as f:
                record = RebootFlagRecord(**json.load(f))
        except Exception as e:
            self.logger.warning(f"Ignoring unreadable reboot flag {self.flag_file_path}: {e}")
            return None
        return record.next_stage

    def clear(self) -> None:
        if self.flag_file_path.exists():
            self.flag_file_path.unlink()
            self.logger.debug("Reboot flag cleared")
