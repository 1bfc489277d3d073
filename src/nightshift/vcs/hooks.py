from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path

from nightshift.vcs.git import GitClient

logger = logging.getLogger(__name__)

HOOK_MARKER = "NIGHTSHIFT_HOOK"
HOOKS_DIRNAME = "nightshift-hooks"

PRE_COMMIT_TEMPLATE = """#!/bin/sh
# {marker}: pre-commit quality gate
if [ -n "$NIGHTSHIFT_BYPASS" ]; then
  exit 0
fi
exec {python} -m nightshift gate enforce --stage pre-commit \\
  --root "$(git rev-parse --show-toplevel)"
"""

PRE_PUSH_TEMPLATE = """#!/bin/sh
# {marker}: agents never push; a human must opt in explicitly
if [ -n "$NIGHTSHIFT_BYPASS" ]; then
  exit 0
fi
if [ -z "$NIGHTSHIFT_ALLOW_PUSH" ]; then
  echo "nightshift: push refused from an agent working copy (set NIGHTSHIFT_ALLOW_PUSH=1)" >&2
  exit 1
fi
exec {python} -m nightshift gate enforce --stage pre-push \\
  --root "$(git rev-parse --show-toplevel)"
"""


class HookInstaller:
    """Installs per-worktree enforcement hooks.

    Hooks live inside the worktree's private git directory and are activated
    through a worktree-scoped ``core.hooksPath`` so other checkouts of the same
    repository are unaffected.
    """

    def __init__(self, python_executable: str | None = None) -> None:
        self.python_executable = python_executable or sys.executable

    def hooks_dir(self, worktree: Path) -> Path:
        return GitClient(worktree).git_dir() / HOOKS_DIRNAME

    def _enable_worktree_config(self, git: GitClient) -> None:
        proc = git.run(["config", "--get", "extensions.worktreeConfig"], check=False)
        if proc.stdout.strip() == "true":
            return
        version = git.run(["config", "--get", "core.repositoryformatversion"], check=False)
        if version.stdout.strip() in {"", "0"}:
            git.run(["config", "core.repositoryformatversion", "1"])
        git.run(["config", "extensions.worktreeConfig", "true"])

    def install(self, worktree: Path) -> Path:
        git = GitClient(worktree)
        hooks_dir = self.hooks_dir(worktree)
        hooks_dir.mkdir(parents=True, exist_ok=True)
        python = shlex.quote(self.python_executable)
        scripts = {
            "pre-commit": PRE_COMMIT_TEMPLATE.format(marker=HOOK_MARKER, python=python),
            "pre-push": PRE_PUSH_TEMPLATE.format(marker=HOOK_MARKER, python=python),
        }
        for name, content in scripts.items():
            path = hooks_dir / name
            path.write_text(content, encoding="utf-8")
            path.chmod(0o755)

        self._enable_worktree_config(git)
        git.run(["config", "--worktree", "core.hooksPath", str(hooks_dir)])
        logger.info("Installed enforcement hooks for %s", worktree)
        return hooks_dir

    def is_installed(self, worktree: Path) -> bool:
        git = GitClient(worktree)
        proc = git.run(["config", "--worktree", "--get", "core.hooksPath"], check=False)
        if proc.returncode != 0:
            return False
        hook = Path(proc.stdout.strip()) / "pre-commit"
        return hook.exists() and HOOK_MARKER in hook.read_text(encoding="utf-8")
