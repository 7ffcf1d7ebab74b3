"""Tests for the backlog-agent command line."""

import logging

import pytest
import yaml
from click.testing import CliRunner

from backlog_agent.cli import main as cli_main
from backlog_agent.cli.main import cli
from backlog_agent.core.config import clear_config_cache
from backlog_agent.core.models import SessionStatus
from backlog_agent.integrations.github.client import RepoEntry, RepositoryError
from backlog_agent.sessions.manager import SessionManager


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("BACKLOG_AGENT_TRACKER__API_URL", "BACKLOG_AGENT_TRACKER__CLIENT_ID",
                 "BACKLOG_AGENT_TRACKER__CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    clear_config_cache()
    path = tmp_path / "agent.yaml"
    path.write_text(yaml.safe_dump({
        "workspace": str(tmp_path),
        "worker": {"sessions_path": str(tmp_path / "sessions.json")},
    }))
    yield path
    clear_config_cache()
    package_logger = logging.getLogger("backlog_agent")
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)


class TestSessionsCommand:
    def test_no_sessions(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "sessions"])
        assert result.exit_code == 0
        assert "No sessions recorded" in result.output

    def test_lists_sessions(self, config_file, tmp_path):
        manager = SessionManager(tmp_path / "sessions.json")
        manager.create("a1b2c3d4-0000", "Add dark mode")
        manager.update("a1b2c3d4-0000", status=SessionStatus.WAITING_INPUT)

        result = CliRunner().invoke(cli, ["--config", str(config_file), "sessions"])

        assert result.exit_code == 0
        assert "a1b2c3d4" in result.output
        assert "waiting_input" in result.output


class TestRunCommand:
    def test_missing_tracker_config_exits(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "run", "a1b2c3d4"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_bare_task_id_means_run(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "a1b2c3d4"])
        assert result.exit_code == 1
        assert "Missing tracker configuration" in result.output


class FakeRepositoryClient:
    def __init__(self, config):
        self.config = config
        self.calls = []

    def list_files(self, repository, path="", ref=None):
        self.calls.append(("list_files", repository, path, ref))
        return [
            RepoEntry(path="src/app.ts", type="file", size=120),
            RepoEntry(path="src/lib", type="dir"),
        ]

    def get_file(self, repository, path, ref=None):
        self.calls.append(("get_file", repository, path, ref))
        if path == "missing.ts":
            raise RepositoryError("Failed to read missing.ts: Not Found", 404)
        return "export const dark = true;\n"


@pytest.fixture
def github_config_file(config_file, monkeypatch):
    data = yaml.safe_load(config_file.read_text())
    data["github"] = {"token": "ghp_test"}
    config_file.write_text(yaml.safe_dump(data))
    clients = []

    def factory(config):
        clients.append(FakeRepositoryClient(config))
        return clients[-1]

    monkeypatch.setattr(cli_main, "RepositoryClient", factory)
    return config_file, clients


class TestRepositoryCommands:
    def test_files_lists_directory(self, github_config_file):
        path, clients = github_config_file
        result = CliRunner().invoke(cli, ["--config", str(path), "files", "octo/app", "src", "--ref", "main"])

        assert result.exit_code == 0
        assert "src/app.ts" in result.output
        assert "src/lib" in result.output
        assert clients[0].calls == [("list_files", "octo/app", "src", "main")]

    def test_show_prints_file(self, github_config_file):
        path, clients = github_config_file
        result = CliRunner().invoke(cli, ["--config", str(path), "show", "octo/app", "src/app.ts"])

        assert result.exit_code == 0
        assert result.output.endswith("export const dark = true;\n")
        assert clients[0].calls == [("get_file", "octo/app", "src/app.ts", None)]

    def test_show_missing_file(self, github_config_file):
        path, _ = github_config_file
        result = CliRunner().invoke(cli, ["--config", str(path), "show", "octo/app", "missing.ts"])
        assert result.exit_code == 1
        assert "Not Found" in result.output

    def test_requires_token(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "files", "octo/app"])
        assert result.exit_code == 1
        assert "github.token is required" in result.output
