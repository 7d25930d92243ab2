"""Tests for the Saltshaker CLI.

Tests cover:
- Main app commands (--help, --version)
- Plugin commands (install, list, info, uninstall)
- The run command
"""

from __future__ import annotations

import pytest
import typer
from typer.testing import CliRunner

from conftest import make_archive
from saltshaker.cli import app
from saltshaker.cli.plugins import parse_resource

PLUGIN_SOURCE = "def on_init(api):\n    api.log('hello')\n"


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def runner() -> CliRunner:
    """Create a CliRunner for testing."""
    return CliRunner()


@pytest.fixture
def plugins_dir(tmp_path):
    return tmp_path / "plugins"


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "demo.tgz"
    path.write_bytes(make_archive({"dist/plugin.py": PLUGIN_SOURCE}))
    return path


def _invoke(runner: CliRunner, plugins_dir, *args: str, **kwargs):
    return runner.invoke(app, ["--plugins-dir", str(plugins_dir), *args], **kwargs)


def _install(runner: CliRunner, plugins_dir, archive, *extra: str):
    return _invoke(
        runner, plugins_dir,
        "plugin", "install", str(archive),
        "--id", "demo", "--name", "Demo", "--version", "1.0.0",
        *extra,
    )


# ===========================================================================
# Main App Tests
# ===========================================================================


class TestMainApp:
    """Tests for main CLI app."""

    def test_help_works(self, runner):
        """--help flag displays help message."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "saltshaker" in result.stdout.lower()
        assert "plugin" in result.stdout.lower()

    def test_version_works(self, runner):
        """--version flag displays version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.stdout

    def test_unknown_command_shows_error(self, runner):
        result = runner.invoke(app, ["nonexistent-command"])
        assert result.exit_code != 0

    def test_verbose_flag_accepted(self, runner):
        result = runner.invoke(app, ["--verbose", "--help"])
        assert result.exit_code == 0


# ===========================================================================
# Plugin Commands Tests
# ===========================================================================


class TestPluginCommands:
    """Tests for plugin CLI commands."""

    def test_install(self, runner, plugins_dir, archive):
        result = _install(runner, plugins_dir, archive, "-p", "file.read", "-r", "prefs:json:{home}/prefs.json")

        assert result.exit_code == 0, result.output
        assert "Installed demo 1.0.0" in result.stdout
        assert (plugins_dir / "demo" / "dist" / "plugin.py").is_file()

    def test_install_hash_mismatch(self, runner, plugins_dir, archive):
        result = _install(runner, plugins_dir, archive, "--sha256", "0" * 64)
        assert result.exit_code == 1
        assert not (plugins_dir / "demo").exists()

    def test_install_bad_resource(self, runner, plugins_dir, archive):
        result = _install(runner, plugins_dir, archive, "-r", "no-colons")
        assert result.exit_code != 0

    def test_install_missing_archive(self, runner, plugins_dir, tmp_path):
        result = _install(runner, plugins_dir, tmp_path / "missing.tgz")
        assert result.exit_code != 0

    def test_list_empty(self, runner, plugins_dir):
        result = _invoke(runner, plugins_dir, "plugin", "list")
        assert result.exit_code == 0
        assert "No plugins installed" in result.stdout

    def test_list_table(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive)
        result = _invoke(runner, plugins_dir, "plugin", "list")
        assert result.exit_code == 0
        assert "demo" in result.stdout

    def test_list_json(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive)
        result = _invoke(runner, plugins_dir, "plugin", "list", "--format", "json")
        assert result.exit_code == 0
        assert '"demo"' in result.stdout
        assert '"plugin.py"' in result.stdout

    def test_info(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive, "-p", "file.read", "-r", "prefs:json:prefs.json")
        result = _invoke(runner, plugins_dir, "plugin", "info", "demo")
        assert result.exit_code == 0
        assert "Demo" in result.stdout
        assert "file.read" in result.stdout
        assert "prefs" in result.stdout

    def test_info_missing(self, runner, plugins_dir):
        result = _invoke(runner, plugins_dir, "plugin", "info", "ghost")
        assert result.exit_code == 1

    def test_uninstall(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive)
        result = _invoke(runner, plugins_dir, "plugin", "uninstall", "demo", "--yes")
        assert result.exit_code == 0
        assert "Uninstalled demo" in result.stdout
        assert not (plugins_dir / "demo").exists()

    def test_uninstall_declined(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive)
        result = _invoke(runner, plugins_dir, "plugin", "uninstall", "demo", input="n\n")
        assert result.exit_code == 1
        assert (plugins_dir / "demo").exists()

    def test_uninstall_missing(self, runner, plugins_dir):
        result = _invoke(runner, plugins_dir, "plugin", "uninstall", "ghost", "-y")
        assert result.exit_code == 1


class TestParseResource:
    """Tests for the ID:TYPE:PATH option parser."""

    def test_parse(self):
        resource = parse_resource("prefs:json:{home}/prefs.json")
        assert (resource.id, resource.type, resource.path) == ("prefs", "json", "{home}/prefs.json")

    def test_path_may_contain_colons(self):
        assert parse_resource("cfg:text:C:/Users/me/cfg.txt").path == "C:/Users/me/cfg.txt"

    @pytest.mark.parametrize("value", ["prefs", "prefs:json", "prefs::path", ":json:path"])
    def test_invalid(self, value):
        with pytest.raises(typer.BadParameter):
            parse_resource(value)


# ===========================================================================
# Run Command Tests
# ===========================================================================


class TestRunCommand:
    """Tests for the run command."""

    def test_run_without_plugins(self, runner, plugins_dir):
        result = _invoke(runner, plugins_dir, "run", "--duration", "0", "--quiet")
        assert result.exit_code == 0
        assert "No plugins were activated" in result.stdout

    def test_run_installed_plugin(self, runner, plugins_dir, archive):
        _install(runner, plugins_dir, archive)
        result = _invoke(runner, plugins_dir, "run", "demo", "--duration", "0")
        assert result.exit_code == 0, result.output

    def test_run_reports_failed_plugin(self, runner, plugins_dir, tmp_path):
        broken = tmp_path / "broken.tgz"
        broken.write_bytes(make_archive({"dist/plugin.py": "x = 1\n"}))
        _install(runner, plugins_dir, broken)

        result = _invoke(runner, plugins_dir, "run", "--duration", "0", "-q")
        assert result.exit_code == 1

    def test_run_unknown_plugin(self, runner, plugins_dir):
        result = _invoke(runner, plugins_dir, "run", "ghost", "--duration", "0", "-q")
        assert result.exit_code == 1
