from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from nightshift.config import IsolationConfig
from nightshift.vcs.git import GitClient, GitError
from nightshift.vcs.hooks import HookInstaller
from nightshift.vcs.metadata import (
    CommitMetadata,
    CommitRecord,
    parse_message,
    placeholder_record,
    render_message,
)

logger = logging.getLogger(__name__)

UNIT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# git log -z separates commits with NUL, which no commit message can contain.
RECORD_SEPARATOR = "\x00"
FIELD_SEPARATOR = "\x1f"


class WorktreeConflictError(GitError):
    """Raised when the branch or working copy for a unit already exists."""


@dataclass(slots=True)
class Worktree:
    unit_id: str
    branch: str
    path: Path

    def to_dict(self) -> dict[str, str]:
        return {"unit_id": self.unit_id, "branch": self.branch, "path": str(self.path)}


class WorktreeManager:
    """Creates and destroys branch/working-copy pairs next to a base repository."""

    def __init__(
        self,
        repo_root: Path,
        config: IsolationConfig | None = None,
        *,
        hook_installer: HookInstaller | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or IsolationConfig()
        self.git = GitClient(self.repo_root)
        if hook_installer is None and self.config.install_hooks:
            hook_installer = HookInstaller()
        self.hook_installer = hook_installer

    @staticmethod
    def _validate_unit_id(unit_id: str) -> None:
        if not UNIT_ID_PATTERN.match(unit_id) or ".." in unit_id or unit_id.endswith(".lock"):
            raise ValueError(f"Invalid unit identifier: {unit_id!r}")

    def branch_name(self, unit_id: str) -> str:
        self._validate_unit_id(unit_id)
        return f"{self.config.branch_namespace.strip('/')}/{unit_id}"

    def worktree_path(self, unit_id: str) -> Path:
        self._validate_unit_id(unit_id)
        return self.repo_root.parent / f"{self.config.worktree_prefix}{unit_id}"

    def exists(self, unit_id: str) -> bool:
        return self.worktree_path(unit_id).exists() or self.git.branch_exists(
            self.branch_name(unit_id)
        )

    def create_worktree(self, unit_id: str, base_branch: str | None = None) -> Worktree:
        branch = self.branch_name(unit_id)
        path = self.worktree_path(unit_id)
        base = base_branch or self.config.base_branch
        if path.exists():
            raise WorktreeConflictError(f"Working copy already exists: {path}")
        if self.git.branch_exists(branch):
            raise WorktreeConflictError(f"Branch already exists: {branch}")

        self.git.run(["branch", branch, base])
        try:
            self.git.run(["worktree", "add", str(path), branch])
            if self.hook_installer is not None:
                self.hook_installer.install(path)
        except Exception:
            self._rollback(branch, path)
            raise
        logger.info("Created worktree %s on branch %s from %s", path, branch, base)
        return Worktree(unit_id=unit_id, branch=branch, path=path)

    def _rollback(self, branch: str, path: Path) -> None:
        if path.exists():
            self._discard_working_copy(path)
        proc = self.git.run(["branch", "-D", branch], check=False)
        if proc.returncode != 0:
            logger.warning("Rollback could not delete branch %s: %s", branch, proc.stderr.strip())

    def _discard_working_copy(self, path: Path) -> None:
        # Double force also removes locked working copies.
        proc = self.git.run(["worktree", "remove", "--force", "--force", str(path)], check=False)
        if proc.returncode != 0:
            logger.warning(
                "git worktree remove failed for %s, deleting from disk: %s",
                path,
                proc.stderr.strip(),
            )
            shutil.rmtree(path, ignore_errors=True)
            self.git.run(["worktree", "unlock", str(path)], check=False)
        self.git.run(["worktree", "prune"], check=False)

    def _is_registered(self, path: Path) -> bool:
        target = path.resolve()
        return any(
            Path(entry["worktree"]).resolve() == target
            for entry in self.list_worktrees()
            if "worktree" in entry
        )

    def remove_worktree(self, unit_id: str) -> bool:
        """Remove the unit's working copy and branch. Returns False if nothing existed."""
        branch = self.branch_name(unit_id)
        path = self.worktree_path(unit_id)
        removed = False
        if path.exists() or self._is_registered(path):
            self._discard_working_copy(path)
            removed = True
        if self.git.branch_exists(branch):
            proc = self.git.run(["branch", "-D", branch], check=False)
            if proc.returncode != 0:
                logger.warning("Could not delete branch %s: %s", branch, proc.stderr.strip())
            else:
                removed = True
        if removed:
            logger.info("Removed worktree for unit %s", unit_id)
        return removed

    def list_worktrees(self) -> list[dict[str, str]]:
        proc = self.git.run(["worktree", "list", "--porcelain"])
        entries: list[dict[str, str]] = []
        current: dict[str, str] = {}
        for line in proc.stdout.splitlines():
            if not line.strip():
                if current:
                    entries.append(current)
                    current = {}
                continue
            key, _, value = line.partition(" ")
            if key == "branch":
                value = value.removeprefix("refs/heads/")
            current[key] = value
        if current:
            entries.append(current)
        return entries

    def commit_with_metadata(
        self,
        worktree: Path,
        title: str,
        metadata: CommitMetadata,
        *,
        body: str = "",
        paths: list[str] | None = None,
    ) -> CommitRecord | None:
        """Stage and commit changes. Returns None when there is nothing to commit."""
        git = GitClient(worktree)
        pathspec = ["--", *paths] if paths else []
        git.run(["add", "-A", *pathspec])
        staged = git.run(["diff", "--cached", "--quiet", *pathspec], check=False)
        if staged.returncode == 0:
            logger.info("Nothing to commit in %s", worktree)
            return None
        message = render_message(title, metadata, body)
        git.run(
            ["commit", "--no-verify", "--cleanup=whitespace", "-F", "-", *pathspec],
            input_text=message,
        )
        record = self.extract_commit_metadata(worktree, "HEAD")
        logger.info("Committed %s in %s: %s", record.commit_hash[:10], worktree, record.title)
        return record

    def extract_commit_metadata(self, worktree: Path, rev: str = "HEAD") -> CommitRecord:
        git = GitClient(worktree)
        raw = git.output(["log", "-1", f"--format=%H{FIELD_SEPARATOR}%cI{FIELD_SEPARATOR}%B", rev])
        commit_hash, committed_at, message = raw.split(FIELD_SEPARATOR, 2)
        return self._record_from_message(commit_hash, committed_at, message)

    @staticmethod
    def _record_from_message(commit_hash: str, committed_at: str, message: str) -> CommitRecord:
        title, metadata = parse_message(message)
        if metadata is None:
            return placeholder_record(commit_hash, title, committed_at)
        return CommitRecord(
            commit_hash=commit_hash,
            title=title,
            metadata=metadata,
            has_metadata=True,
            committed_at=committed_at,
        )

    def history(
        self, worktree: Path, limit: int = 10, *, agent_id: str | None = None
    ) -> list[CommitRecord]:
        git = GitClient(worktree)
        if git.head() is None:
            return []
        # Agent filtering happens after parsing, so scan a wider window first.
        window = limit if agent_id is None else max(limit * 10, 50)
        raw = git.run(
            [
                "log",
                f"-n{window}",
                "-z",
                f"--format=%H{FIELD_SEPARATOR}%cI{FIELD_SEPARATOR}%B",
            ]
        ).stdout
        records: list[CommitRecord] = []
        for chunk in raw.split(RECORD_SEPARATOR):
            chunk = chunk.lstrip("\n")
            if not chunk.strip():
                continue
            commit_hash, committed_at, message = chunk.split(FIELD_SEPARATOR, 2)
            record = self._record_from_message(commit_hash, committed_at, message)
            if agent_id is not None and record.metadata.agent_id != agent_id:
                continue
            records.append(record)
            if len(records) >= limit:
                break
        return records

    def status(self, worktree: Path) -> list[str]:
        return GitClient(worktree).status_paths()

    def is_clean(self, worktree: Path) -> bool:
        return GitClient(worktree).is_clean()
