import json
import subprocess
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from nightshift import cli as cli_module
from nightshift.agents.runtime import AgentRequest, AgentResult, AgentRuntime
from nightshift.cli import cli
from nightshift.config import load_config, save_config


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "checkout", "-q", "-b", "main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


class EchoRuntime(AgentRuntime):
    name = "echo"

    async def execute(self, request: AgentRequest) -> AgentResult:
        return AgentResult(success=True, output=f"handled {request.role}", tokens_used=10)


def _invoke(runner: CliRunner, args: list[str]):
    return runner.invoke(cli, args, catch_exceptions=False)


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    monkeypatch.chdir(repo_path)
    return repo_path


def test_init_writes_config(repo: Path) -> None:
    runner = CliRunner()

    result = _invoke(runner, ["init", "--runtime", "openai", "--base-branch", "main"])

    assert result.exit_code == 0
    assert "Initialized nightshift" in result.output
    config = load_config(repo / "nightshift.toml")
    assert config.agents.runtime == "openai"
    assert config.isolation.base_branch == "main"


def test_init_outside_repository_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = _invoke(CliRunner(), ["init"])

    assert result.exit_code == 1
    assert "Not a git repository" in result.output


def test_project_task_and_prompt_commands(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    monkeypatch.setattr(cli_module, "_build_agent_runtime", lambda config, root: EchoRuntime())

    created = _invoke(runner, ["project", "create", "CLI project", "--id", "p1"])
    assert created.exit_code == 0
    assert "Branch: ns/task/p1" in created.output
    assert "p1 active" in _invoke(runner, ["project", "list"]).output

    assert _invoke(runner, ["task", "add", "p1", "First", "--id", "a"]).exit_code == 0
    added = _invoke(runner, ["task", "add", "p1", "Second", "--id", "b", "--depends-on", "a"])
    assert added.output.strip() == "Added b: Second"
    bad = _invoke(runner, ["task", "add", "p1", "Third", "--depends-on", "zzz"])
    assert bad.exit_code == 1
    assert "Unknown dependencies" in bad.output

    ready = _invoke(runner, ["task", "ready", "p1"])
    assert ready.output.strip() == "a p3 First"

    ran = _invoke(runner, ["task", "run", "p1", "a"])
    assert ran.exit_code == 0
    assert "Completed a as coder_1" in ran.output

    assert _invoke(runner, ["task", "update", "p1", "b", "--priority", "1"]).exit_code == 0
    assert _invoke(runner, ["task", "update", "p1", "b"]).exit_code == 1
    illegal = _invoke(runner, ["task", "update", "p1", "a", "--status", "in_progress"])
    assert illegal.exit_code == 1
    assert "Illegal task transition" in illegal.output
    listed = _invoke(runner, ["task", "list", "p1"]).output
    assert "b pending     p1 Second <- a" in listed

    updated = _invoke(
        runner,
        [
            "prompt",
            "update",
            "p1",
            "--status",
            "Halfway",
            "--add-step",
            "Write docs",
            "--add-blocker",
            "Need API key",
            "--commit",
        ],
    )
    assert updated.exit_code == 0
    assert "Committed" in updated.output
    shown = _invoke(runner, ["prompt", "show", "p1"]).output
    assert "Halfway" in shown
    assert "1. Write docs" in shown
    assert "- Need API key" in shown

    status = json.loads(_invoke(runner, ["project", "status", "p1"]).output)
    assert status["project"]["id"] == "p1"
    assert status["tasks"]["completed"] == 1

    assert _invoke(runner, ["project", "delete", "p1"]).exit_code == 0
    assert _invoke(runner, ["project", "list"]).output.strip() == "No projects."
    assert _invoke(runner, ["project", "status", "p1"]).exit_code == 1


def test_gate_commands_exit_codes(repo: Path, tmp_path: Path) -> None:
    config_path = repo / "nightshift.toml"
    config = load_config(config_path)
    config.isolation.install_hooks = False
    config.gate.pre_commit_blocking = True
    config.nags = [
        {
            "id": "build",
            "stage": "pre-commit",
            "command": f'"{sys.executable}" -c "raise SystemExit(1)"',
            "blocking": True,
        }
    ]
    save_config(config_path, config)
    runner = CliRunner()
    assert _invoke(runner, ["project", "create", "Gated", "--id", "p1"]).exit_code == 0
    root = str(tmp_path / "worktree_ns_task_p1")

    run = _invoke(runner, ["gate", "run", "--stage", "pre-commit", "--root", root])
    assert run.exit_code == 1
    assert "build failed" in run.output

    check = _invoke(runner, ["gate", "check", "--stage", "pre-commit", "--root", root])
    assert check.exit_code == 1
    assert json.loads(check.output)["missing"] == ["build"]

    enforce = _invoke(runner, ["gate", "enforce", "--stage", "pre-commit", "--root", root])
    assert enforce.exit_code == 1
    assert "pre-commit gate blocked by: build" in enforce.output

    assert _invoke(runner, ["gate", "set", "build", "OK", "--root", root]).exit_code == 0
    assert (
        _invoke(runner, ["gate", "enforce", "--stage", "pre-commit", "--root", root]).exit_code
        == 0
    )
    ledger = json.loads(_invoke(runner, ["gate", "ledger", "--root", root]).output)
    assert ledger["build"]["status"] == "OK"
    assert ledger["build"]["source"] == "manual"

    push = _invoke(runner, ["gate", "check", "--stage", "pre-push", "--root", root])
    assert push.exit_code == 0
