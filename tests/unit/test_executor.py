"""Unit tests for StageExecutor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from provisioner.errors import CollaboratorError, ConnectivityError, ErrorKind
from provisioner.models.host import OsInfo
from provisioner.models.status import RunStatus, StageEnum, StageOutcome
from provisioner.services.executor import StageExecutor
from provisioner.services.packages import UpdateResult
from provisioner.services.state_manager import RebootFlag, StateStore


@pytest.mark.unit
class TestStageExecutor:
    """Test the state machine with every collaborator mocked."""

    @pytest.fixture
    def store(self, config):
        return StateStore(config.state_file)

    @pytest.fixture
    def flag(self, config):
        return RebootFlag(config.reboot_flag_file)

    @pytest.fixture
    def collaborators(self):
        registrar = MagicMock()
        registrar.register = AsyncMock()
        registrar.deregister = AsyncMock()

        orchestrator = MagicMock()
        orchestrator.schedule_reboot = AsyncMock(return_value=4242)

        network = MagicMock()
        network.wait_for_network = AsyncMock()

        banner = MagicMock()
        banner.install_login_banner = AsyncMock()

        tunnel = MagicMock()
        tunnel.ensure = AsyncMock()

        packages = MagicMock()
        packages.update_all = AsyncMock(return_value=UpdateResult(reboot_required=False))

        agent = MagicMock()
        agent.install = AsyncMock()
        agent.point_at = AsyncMock()

        return {
            "registrar": registrar,
            "orchestrator": orchestrator,
            "network": network,
            "banner": banner,
            "tunnel": tunnel,
            "packages": packages,
            "agent": agent,
        }

    @pytest.fixture
    def executor(self, config, store, flag, collaborators, mock_process_manager):
        return StageExecutor(
            config,
            store,
            flag,
            collaborators["registrar"],
            collaborators["orchestrator"],
            process_manager=mock_process_manager,
            network=collaborators["network"],
            banner=collaborators["banner"],
            tunnel=collaborators["tunnel"],
            packages=collaborators["packages"],
            agent=collaborators["agent"],
            os_info=OsInfo(os_id="ubuntu", version="22.04", family="debian"),
        )

    @pytest.mark.asyncio
    async def test_full_run_without_reboot(self, executor, store, flag, collaborators):
        result = await executor.run(StageEnum.INIT)

        assert result.status == RunStatus.COMPLETED
        assert result.exit_code == 0
        assert result.stages_run == [
            StageEnum.INIT,
            StageEnum.BANNER,
            StageEnum.UPDATES,
            StageEnum.AGENT_INSTALL,
            StageEnum.AGENT_CONFIGURE,
            StageEnum.TUNNEL_SETUP,
            StageEnum.COMPLETE,
        ]
        assert store.load() is None
        assert flag.check() is None
        collaborators["orchestrator"].schedule_reboot.assert_not_awaited()
        collaborators["registrar"].deregister.assert_awaited_once()
        collaborators["agent"].point_at.assert_awaited_once()
        assert collaborators["agent"].point_at.await_args.args[0] == "127.0.0.1"
        collaborators["banner"].show_ready.assert_called_once()

    @pytest.mark.asyncio
    async def test_updates_with_reboot_stops_process(self, executor, store, collaborators):
        """Updates needing a reboot schedule one and stop without running later stages."""
        collaborators["packages"].update_all.return_value = UpdateResult(
            reboot_required=True, upgradable_count=12
        )

        result = await executor.run(StageEnum.UPDATES)

        assert result.status == RunStatus.REBOOT_SCHEDULED
        assert result.exit_code == 0
        assert result.stages_run == [StageEnum.UPDATES]
        collaborators["orchestrator"].schedule_reboot.assert_awaited_once_with(
            StageEnum.POST_REBOOT
        )
        collaborators["agent"].install.assert_not_awaited()
        assert store.load().current_stage == StageEnum.UPDATES

    @pytest.mark.asyncio
    async def test_updates_without_reboot_skips_post_reboot(self, executor):
        result = await executor.run(StageEnum.UPDATES)

        assert StageEnum.POST_REBOOT not in result.stages_run
        assert result.stages_run[1] == StageEnum.AGENT_INSTALL

    @pytest.mark.asyncio
    async def test_stage_data_carried_forward(self, executor, store, collaborators):
        saved = []
        original_save = store.save

        def recording_save(stage, data=""):
            saved.append((stage, data))
            return original_save(stage, data)

        with patch.object(store, "save", side_effect=recording_save):
            await executor.run(StageEnum.INIT, "resolved_from=fresh")

        assert saved[0] == (StageEnum.INIT, "resolved_from=fresh")
        assert saved[1] == (StageEnum.BANNER, "os_detected=ubuntu-22.04")
        assert saved[2] == (StageEnum.UPDATES, "banner_set=true")
        assert saved[3] == (StageEnum.AGENT_INSTALL, "no_updates_needed=true")

    @pytest.mark.asyncio
    async def test_state_saved_before_stage_action(self, executor, store, collaborators):
        """The state record names the stage while its action runs."""
        seen = []

        async def install(*args):
            seen.append(store.load().current_stage)

        collaborators["agent"].install.side_effect = install

        await executor.run(StageEnum.AGENT_INSTALL)

        assert seen == [StageEnum.AGENT_INSTALL]

    @pytest.mark.asyncio
    async def test_failure_keeps_state(self, executor, store, collaborators):
        collaborators["agent"].install.side_effect = CollaboratorError(
            "COMMAND_FAILED: apt-get install -y zabbix-agent exited 100"
        )

        with patch(
            "provisioner.services.executor.collect_snapshot", new_callable=AsyncMock
        ) as snapshot:
            snapshot.return_value = None
            result = await executor.run(StageEnum.POST_REBOOT)

        assert result.status == RunStatus.FAILED
        assert result.last_stage == StageEnum.AGENT_INSTALL
        assert result.error_kind == ErrorKind.COLLABORATOR
        assert result.exit_code == 1
        assert store.load().current_stage == StageEnum.AGENT_INSTALL
        collaborators["agent"].point_at.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_timeout_exit_code(self, executor, collaborators):
        collaborators["network"].wait_for_network.side_effect = ConnectivityError(
            "NETWORK_TIMEOUT: https://repo.zabbix.com/ unreachable after 300s"
        )

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            result = await executor.run(StageEnum.INIT)

        assert result.status == RunStatus.FAILED
        assert result.exit_code == 3
        assert "NETWORK_TIMEOUT" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_failure(self, executor, collaborators):
        collaborators["banner"].show_progress.side_effect = RuntimeError("disk full")

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            result = await executor.run(StageEnum.BANNER)

        assert result.status == RunStatus.FAILED
        assert result.error.startswith("UNEXPECTED_ERROR")

    @pytest.mark.asyncio
    async def test_tunnel_failure_is_soft(self, executor, store, collaborators):
        collaborators["tunnel"].ensure.side_effect = CollaboratorError("COMMAND_FAILED: ssh-keygen")

        result = await executor.run(StageEnum.TUNNEL_SETUP)

        assert result.status == RunStatus.COMPLETED
        assert result.stages_run == [StageEnum.TUNNEL_SETUP, StageEnum.COMPLETE]
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_tunnel_filesystem_error_is_soft(self, executor, store, collaborators):
        collaborators["tunnel"].ensure.side_effect = PermissionError(
            13, "Permission denied", "/etc/systemd/system/zabbix-tunnel.service"
        )

        result = await executor.run(StageEnum.TUNNEL_SETUP)

        assert result.status == RunStatus.COMPLETED
        assert result.exit_code == 0
        assert result.stages_run == [StageEnum.TUNNEL_SETUP, StageEnum.COMPLETE]
        assert store.load() is None

    def test_every_stage_has_an_action(self, executor):
        assert set(executor._actions) == set(StageEnum)

    @pytest.mark.asyncio
    async def test_reboot_scheduling_failure(self, executor, store, collaborators):
        collaborators["packages"].update_all.return_value = UpdateResult(reboot_required=True)
        collaborators["orchestrator"].schedule_reboot.side_effect = CollaboratorError(
            "COMMAND_FAILED: systemctl enable virtualizor-server-setup.service"
        )

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            result = await executor.run(StageEnum.UPDATES)

        assert result.status == RunStatus.FAILED
        assert result.last_stage == StageEnum.UPDATES
        assert store.load().current_stage == StageEnum.UPDATES

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, executor, store):
        executor._actions[StageEnum.BANNER] = AsyncMock(
            return_value=StageOutcome.advance(StageEnum.TUNNEL_SETUP)
        )

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            result = await executor.run(StageEnum.BANNER)

        assert result.status == RunStatus.FAILED
        assert result.error == "INVALID_TRANSITION: banner -> tunnel-setup"
        assert store.load().current_stage == StageEnum.BANNER

    @pytest.mark.asyncio
    async def test_reboot_from_non_rebooting_stage_rejected(self, executor):
        executor._actions[StageEnum.AGENT_INSTALL] = AsyncMock(
            return_value=StageOutcome.reboot_then(StageEnum.POST_REBOOT)
        )

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            result = await executor.run(StageEnum.AGENT_INSTALL)

        assert result.status == RunStatus.FAILED
        assert "INVALID_TRANSITION" in result.error

    @pytest.mark.asyncio
    async def test_rerun_from_same_stage(self, executor, store, collaborators):
        """A stage interrupted once can be re-run to completion."""
        collaborators["agent"].point_at.side_effect = [
            CollaboratorError("COMMAND_FAILED: systemctl restart zabbix-agent"),
            None,
        ]

        with patch("provisioner.services.executor.collect_snapshot", new_callable=AsyncMock, return_value=None):
            first = await executor.run(StageEnum.AGENT_CONFIGURE)
        resumed_from = store.load().current_stage
        second = await executor.run(resumed_from)

        assert first.status == RunStatus.FAILED
        assert resumed_from == StageEnum.AGENT_CONFIGURE
        assert second.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_post_reboot_waits_for_network(self, executor, collaborators, config):
        await executor.run(StageEnum.POST_REBOOT)

        collaborators["network"].wait_for_network.assert_awaited_with(
            config.network_timeout, config.network_poll_interval
        )

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, executor, store, collaborators):
        collaborators["agent"].install.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await executor.run(StageEnum.AGENT_INSTALL)

        assert store.load().current_stage == StageEnum.AGENT_INSTALL
