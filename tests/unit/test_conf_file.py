"""Unit tests for utils/conf_file.py."""

import stat

import pytest

from provisioner.utils.conf_file import get_option, rewrite_options, set_options


@pytest.mark.unit
class TestSetOptions:

    def test_replaces_active_line(self):
        text = "Server=10.0.0.5\nHostname=old\n"
        assert set_options(text, {"Server": "127.0.0.1"}) == "Server=127.0.0.1\nHostname=old\n"

    def test_drops_duplicate_active_lines(self):
        text = "Server=10.0.0.5\nLogFile=/tmp/x\nServer=10.0.0.6\n"
        result = set_options(text, {"Server": "127.0.0.1"})
        assert result == "Server=127.0.0.1\nLogFile=/tmp/x\n"

    def test_replaces_commented_line(self):
        text = "### Option: DebugLevel\n# DebugLevel=3\n"
        result = set_options(text, {"DebugLevel": 4})
        assert result == "### Option: DebugLevel\nDebugLevel=4\n"

    def test_appends_missing_option(self):
        assert set_options("Server=127.0.0.1", {"Hostname": "vps"}) == "Server=127.0.0.1\nHostname=vps\n"

    def test_similar_key_untouched(self):
        text = "ServerActive=10.0.0.5\n"
        result = set_options(text, {"Server": "127.0.0.1"})
        assert result == "ServerActive=10.0.0.5\nServer=127.0.0.1\n"

    def test_idempotent(self):
        options = {"Server": "127.0.0.1", "ServerActive": "127.0.0.1", "DebugLevel": 4}
        once = set_options("# DebugLevel=3\nServer=1.2.3.4\n", options)
        assert set_options(once, options) == once

    def test_get_option(self):
        text = "# Server=ignored\nServer = 127.0.0.1\n"
        assert get_option(text, "Server") == "127.0.0.1"
        assert get_option(text, "Hostname") is None


@pytest.mark.unit
class TestRewriteOptions:

    @pytest.mark.asyncio
    async def test_rewrite_changes_file(self, tmp_path):
        path = tmp_path / "zabbix_agentd.conf"
        path.write_text("Server=10.0.0.5\n")
        path.chmod(0o640)

        changed = await rewrite_options(path, {"Server": "127.0.0.1"})

        assert changed
        assert path.read_text() == "Server=127.0.0.1\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o640
        assert [p.name for p in tmp_path.iterdir()] == ["zabbix_agentd.conf"]

    @pytest.mark.asyncio
    async def test_rewrite_unchanged(self, tmp_path):
        path = tmp_path / "zabbix_agentd.conf"
        path.write_text("Server=127.0.0.1\n")

        assert not await rewrite_options(path, {"Server": "127.0.0.1"})

    @pytest.mark.asyncio
    async def test_rewrite_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await rewrite_options(tmp_path / "missing.conf", {"Server": "127.0.0.1"})
