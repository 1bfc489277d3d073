from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from nightshift.agents import AgentRuntime, ClaudeCodeRuntime, OpenAIRuntime
from nightshift.config import CONFIG_FILENAME, FactoryConfig, load_config, save_config
from nightshift.factory import Factory
from nightshift.gate import NagStage, QualityGate
from nightshift.gate.ledger import LedgerStatus
from nightshift.states import AgentRole, ProjectStatus, TaskStatus
from nightshift.vcs.git import GitClient

STAGE_CHOICE = click.Choice([str(stage) for stage in NagStage])
CLI_ERRORS = (RuntimeError, ValueError)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: FactoryConfig
    factory: Factory


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_agent_runtime(config: FactoryConfig, repo_root: Path) -> AgentRuntime:
    if config.agents.runtime == "openai":
        return OpenAIRuntime()
    return ClaudeCodeRuntime(binary=config.agents.binary, working_directory=repo_root)


def _load_runtime(config_value: str, *, with_agents: bool = False) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    agent_runtime = _build_agent_runtime(config, repo_root) if with_agents else None
    try:
        factory = Factory(repo_root, config, runtime=agent_runtime)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, factory=factory)


def _load_gate(
    root_value: str | None, config_value: str, *, with_agents: bool = False
) -> QualityGate:
    """Gate for one working copy; config comes from the repository that owns it."""
    root = Path(root_value).resolve() if root_value else Path.cwd().resolve()
    try:
        base_root = GitClient(root).common_dir().parent
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    config = load_config(_resolve_config_path(base_root, config_value))
    agent_runtime = _build_agent_runtime(config, root) if with_agents else None
    return QualityGate(root, config=config.gate, runtime=agent_runtime)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)
root_option = click.option(
    "--root", "root_value", default=None, help="Working copy to act on (defaults to cwd)."
)
stage_option = click.option("--stage", type=STAGE_CHOICE, required=True)


@click.group()
@click.option("--verbose", is_flag=True, default=False)
def cli(verbose: bool) -> None:
    """Nightshift factory CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--runtime", type=click.Choice(["claude", "openai"]), default=None)
@click.option("--base-branch", default=None)
@config_option
def init_command(runtime: str | None, base_branch: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if runtime:
        config.agents.runtime = runtime  # type: ignore[assignment]
    if base_branch:
        config.isolation.base_branch = base_branch
    save_config(config_path, config)
    try:
        factory = Factory(repo_root, config)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized nightshift in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {factory.store.state_dir}")
    click.echo(f"Runtime: {config.agents.runtime}")


@cli.group("project")
def project_group() -> None:
    """Manage isolated projects."""


@project_group.command("create")
@click.argument("name")
@click.option("--id", "project_id", default=None)
@click.option("--base", "base_branch", default=None)
@click.option("--parent", "parent_id", default=None)
@click.option("--objective", default="")
@config_option
def project_create_command(
    name: str,
    project_id: str | None,
    base_branch: str | None,
    parent_id: str | None,
    objective: str,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        project = runtime.factory.create_project(
            name,
            project_id=project_id,
            base_branch=base_branch,
            parent_id=parent_id,
            objective=objective,
        )
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created project {project.id}")
    click.echo(f"Branch: {project.branch_name}")
    click.echo(f"Worktree: {project.worktree_path}")


@project_group.command("delete")
@click.argument("project_id")
@config_option
def project_delete_command(project_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        runtime.factory.delete_project(project_id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted project {project_id}")


@project_group.command("list")
@click.option("--status", type=click.Choice([str(item) for item in ProjectStatus]), default=None)
@config_option
def project_list_command(status: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    projects = runtime.factory.list_projects(status)
    if not projects:
        click.echo("No projects.")
        return
    for project in projects:
        click.echo(f"{project.id} {project.status:<9} {project.branch_name} {project.name}")


@project_group.command("status")
@click.argument("project_id")
@config_option
def project_status_command(project_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        payload = runtime.factory.status(project_id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@project_group.command("merge")
@click.argument("project_id")
@click.option("--target", "target_branch", default=None)
@config_option
def project_merge_command(project_id: str, target_branch: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        record = runtime.factory.merge_project(project_id, target_branch)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if record is None:
        click.echo(f"Nothing to merge for {project_id}.")
        return
    click.echo(f"Merged {project_id} as {record.commit_hash[:10]}")


@cli.group("task")
def task_group() -> None:
    """Edit a project's task graph."""


@task_group.command("add")
@click.argument("project_id")
@click.argument("title")
@click.option("--description", default="")
@click.option("--priority", type=int, default=3, show_default=True)
@click.option("--depends-on", "dependencies", multiple=True)
@click.option("--role", type=click.Choice([str(role) for role in AgentRole]), default=None)
@click.option("--id", "task_id", default=None)
@config_option
def task_add_command(
    project_id: str,
    title: str,
    description: str,
    priority: int,
    dependencies: tuple[str, ...],
    role: str | None,
    task_id: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        task = runtime.factory.task_graph(project_id).add_task(
            title,
            description=description,
            priority=priority,
            dependencies=list(dependencies),
            assigned_role=role,
            task_id=task_id,
        )
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Added {task.id}: {task.title}")


@task_group.command("list")
@click.argument("project_id")
@config_option
def task_list_command(project_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        tasks = runtime.factory.task_graph(project_id).list_tasks()
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        deps = f" <- {', '.join(task.dependencies)}" if task.dependencies else ""
        click.echo(f"{task.id} {task.status:<11} p{task.priority} {task.title}{deps}")


@task_group.command("ready")
@click.argument("project_id")
@config_option
def task_ready_command(project_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        tasks = runtime.factory.task_graph(project_id).get_executable_tasks()
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not tasks:
        click.echo("No executable tasks.")
        return
    for task in tasks:
        click.echo(f"{task.id} p{task.priority} {task.title}")


@task_group.command("run")
@click.argument("project_id")
@click.argument("task_id")
@click.option("--role", type=click.Choice([str(role) for role in AgentRole]), default=None)
@config_option
def task_run_command(project_id: str, task_id: str, role: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, with_agents=True)
    try:
        result = asyncio.run(runtime.factory.run_task(project_id, task_id, role))
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{'Completed' if result.success else 'Failed'} {task_id} as {result.agent_id}")
    click.echo(
        f"Model: {result.model or '-'}  tokens: {result.tokens_used}  cost: ${result.cost:.4f}"
    )
    if not result.success:
        raise click.ClickException(result.message)


@task_group.command("update")
@click.argument("project_id")
@click.argument("task_id")
@click.option("--status", type=click.Choice([str(item) for item in TaskStatus]), default=None)
@click.option("--priority", type=int, default=None)
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--role", type=click.Choice([str(role) for role in AgentRole]), default=None)
@config_option
def task_update_command(
    project_id: str,
    task_id: str,
    status: str | None,
    priority: int | None,
    title: str | None,
    description: str | None,
    role: str | None,
    config_value: str,
) -> None:
    changes: dict[str, Any] = {
        key: value
        for key, value in {
            "status": status,
            "priority": priority,
            "title": title,
            "description": description,
            "assigned_role": role,
        }.items()
        if value is not None
    }
    if not changes:
        raise click.ClickException("Nothing to update.")
    runtime = _load_runtime(config_value)
    try:
        task = runtime.factory.task_graph(project_id).update_task(task_id, **changes)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Updated {task.id}: {task.status}")


@cli.group("gate")
def gate_group() -> None:
    """Run nags and query the status ledger of a working copy."""


@gate_group.command("run")
@stage_option
@root_option
@config_option
def gate_run_command(stage: str, root_value: str | None, config_value: str) -> None:
    gate = _load_gate(root_value, config_value, with_agents=True)
    try:
        report = asyncio.run(gate.run_stage(stage))
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    for result in report.results:
        click.echo(f"{result.nag_id} {result.status:<7} {result.message}")
    click.echo(
        f"{report.passed} passed, {report.failed} failed, "
        f"{report.skipped} skipped, {report.errors} errors"
    )
    if report.blocked:
        click.echo(f"{stage} is blocked.", err=True)
        raise SystemExit(1)


@gate_group.command("check")
@stage_option
@root_option
@config_option
def gate_check_command(stage: str, root_value: str | None, config_value: str) -> None:
    decision = _load_gate(root_value, config_value).check(stage)
    _echo_json(decision.to_dict())
    if not decision.allowed:
        raise SystemExit(1)


@gate_group.command("enforce")
@stage_option
@root_option
@config_option
def gate_enforce_command(stage: str, root_value: str | None, config_value: str) -> None:
    gate = _load_gate(root_value, config_value)
    try:
        gate.enforce(stage)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc


@gate_group.command("set")
@click.argument("nag_id")
@click.argument("status", type=click.Choice([str(item) for item in LedgerStatus]))
@click.option("--detail", default="")
@root_option
@config_option
def gate_set_command(
    nag_id: str, status: str, detail: str, root_value: str | None, config_value: str
) -> None:
    gate = _load_gate(root_value, config_value)
    try:
        gate.set_status(nag_id, status, detail=detail)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{nag_id} -> {status}")


@gate_group.command("ledger")
@root_option
@config_option
def gate_ledger_command(root_value: str | None, config_value: str) -> None:
    gate = _load_gate(root_value, config_value)
    _echo_json({nag_id: entry.to_dict() for nag_id, entry in gate.ledger.statuses().items()})


@cli.group("prompt")
def prompt_group() -> None:
    """Read and edit a project's forward prompt."""


@prompt_group.command("show")
@click.argument("project_id")
@config_option
def prompt_show_command(project_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        prompt = runtime.factory.forward_prompt(project_id).read()
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(prompt.to_text(), nl=False)


@prompt_group.command("update")
@click.argument("project_id")
@click.option("--objective", default=None)
@click.option("--status", "current_status", default=None)
@click.option("--notes", "context_notes", default=None)
@click.option("--add-step", "steps", multiple=True)
@click.option("--complete-step", is_flag=True, default=False)
@click.option("--add-blocker", "blockers", multiple=True)
@click.option("--remove-blocker", "resolved", multiple=True)
@click.option("--commit", "commit_changes", is_flag=True, default=False)
@config_option
def prompt_update_command(
    project_id: str,
    objective: str | None,
    current_status: str | None,
    context_notes: str | None,
    steps: tuple[str, ...],
    complete_step: bool,
    blockers: tuple[str, ...],
    resolved: tuple[str, ...],
    commit_changes: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        store = runtime.factory.forward_prompt(project_id)
        changes = {
            key: value
            for key, value in {
                "objective": objective,
                "current_status": current_status,
                "context_notes": context_notes,
            }.items()
            if value is not None
        }
        if changes:
            store.update(**changes)
        if complete_step:
            done = store.complete_next_step()
            click.echo(f"Completed step: {done}" if done else "No next step to complete.")
        for step in steps:
            store.add_next_step(step)
        for blocker in blockers:
            store.add_blocker(blocker)
        for blocker in resolved:
            if not store.remove_blocker(blocker):
                click.echo(f"Blocker not found: {blocker}", err=True)
        if commit_changes:
            record = runtime.factory.checkpoint(project_id)
            if record is not None:
                click.echo(f"Committed {record.commit_hash[:10]}")
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(store.summary())
