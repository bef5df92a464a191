"""Unit tests for StateStore and RebootFlag."""

import json
import os

import pytest

from provisioner.models.status import StageEnum
from provisioner.services.state_manager import RebootFlag, StateStore


@pytest.mark.unit
class TestStateStore:
    """Test StateStore in isolation."""

    @pytest.fixture
    def store(self, tmp_path):
        return StateStore(tmp_path / "state" / "state.json")

    def test_load_without_file_returns_none(self, store):
        assert store.load() is None

    def test_save_then_load(self, store):
        """Saved record reads back with stage, data, pid and host."""
        store.save(StageEnum.BANNER, "os_detected=ubuntu-22.04")

        state = store.load()
        assert state is not None
        assert state.current_stage == StageEnum.BANNER
        assert state.stage_data == "os_detected=ubuntu-22.04"
        assert state.pid == os.getpid()
        assert state.host_identity

    def test_save_creates_parent_directory(self, store):
        store.save(StageEnum.INIT)
        assert store.state_file_path.parent.is_dir()

    def test_save_overwrites_and_keeps_execution_start(self, store):
        first = store.save(StageEnum.INIT)
        second = store.save(StageEnum.BANNER, "banner_set=true")

        assert second.execution_start == first.execution_start
        assert store.load().current_stage == StageEnum.BANNER

    def test_save_leaves_no_temp_files(self, store):
        store.save(StageEnum.UPDATES)
        leftovers = [p.name for p in store.state_file_path.parent.iterdir()]
        assert leftovers == ["state.json"]

    def test_state_file_is_json(self, store):
        store.save(StageEnum.AGENT_INSTALL, "post_reboot_complete=true")

        with open(store.state_file_path) as f:
            data = json.load(f)

        assert data["current_stage"] == "agent-install"
        assert data["stage_data"] == "post_reboot_complete=true"
        assert "execution_start" in data

    def test_load_corrupted_file_returns_none(self, store):
        """An unparseable record is treated as absent but left in place."""
        store.state_file_path.parent.mkdir(parents=True)
        store.state_file_path.write_text("invalid json{")

        assert store.load() is None
        assert store.state_file_path.exists()

    def test_load_unknown_stage_returns_none(self, store):
        store.state_file_path.parent.mkdir(parents=True)
        store.state_file_path.write_text(json.dumps({
            "current_stage": "no-such-stage",
            "host_identity": "host",
            "pid": 1,
        }))

        assert store.load() is None

    def test_clear_removes_file(self, store):
        store.save(StageEnum.COMPLETE)
        store.clear()

        assert not store.state_file_path.exists()
        assert store.load() is None

    def test_clear_without_file(self, store):
        store.clear()


@pytest.mark.unit
class TestRebootFlag:
    """Test RebootFlag in isolation."""

    @pytest.fixture
    def flag(self, tmp_path):
        return RebootFlag(tmp_path / "state" / "reboot.json")

    def test_check_without_flag(self, flag):
        assert flag.check() is None

    def test_set_and_check(self, flag):
        flag.set(StageEnum.POST_REBOOT)
        assert flag.check() == StageEnum.POST_REBOOT

    def test_check_does_not_consume(self, flag):
        flag.set(StageEnum.POST_REBOOT)

        flag.check()
        assert flag.check() == StageEnum.POST_REBOOT
        assert flag.flag_file_path.exists()

    def test_clear(self, flag):
        flag.set(StageEnum.POST_REBOOT)
        flag.clear()

        assert flag.check() is None
        assert not flag.flag_file_path.exists()

    def test_corrupted_flag_is_ignored(self, flag):
        flag.flag_file_path.parent.mkdir(parents=True)
        flag.flag_file_path.write_text("post-reboot")

        assert flag.check() is None
