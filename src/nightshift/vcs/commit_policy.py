from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from nightshift.config import CommitPolicyConfig
from nightshift.vcs.git import GitClient

logger = logging.getLogger(__name__)

Violation = Literal["diff_too_large", "too_many_files", "time_exceeded"]
INTERNAL_PREFIX = ".nightshift/"


@dataclass(slots=True)
class CommitPolicyStatus:
    lines_changed: int
    files_changed: int
    minutes_since_commit: float | None
    violation: Violation | None = None

    @property
    def should_commit(self) -> bool:
        return self.violation is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lines_changed": self.lines_changed,
            "files_changed": self.files_changed,
            "minutes_since_commit": self.minutes_since_commit,
            "violation": self.violation,
        }


class CommitPolicyChecker:
    """Advisory commit-discipline thresholds for agent working copies."""

    def __init__(
        self,
        config: CommitPolicyConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CommitPolicyConfig()
        self.clock = clock

    @staticmethod
    def diff_stats(worktree: Path) -> tuple[int, int]:
        git = GitClient(worktree)
        lines = 0
        files: set[str] = set()
        if git.head() is not None:
            numstat = git.run(["diff", "--numstat", "HEAD"]).stdout
            for row in numstat.splitlines():
                parts = row.split("\t", 2)
                if len(parts) != 3 or parts[2].startswith(INTERNAL_PREFIX):
                    continue
                added, deleted, path = parts
                # Binary files report "-" for both counts.
                lines += int(added) if added.isdigit() else 0
                lines += int(deleted) if deleted.isdigit() else 0
                files.add(path)
        untracked = git.run(["ls-files", "--others", "--exclude-standard"]).stdout
        for path in untracked.splitlines():
            if path and not path.startswith(INTERNAL_PREFIX):
                files.add(path)
        return lines, len(files)

    def minutes_since_last_commit(self, worktree: Path) -> float | None:
        git = GitClient(worktree)
        if git.head() is None:
            return None
        raw = git.output(["log", "-1", "--format=%ct"])
        try:
            committed_epoch = int(raw)
        except ValueError:
            return None
        return max(0.0, (self.clock() - committed_epoch) / 60.0)

    def check(self, worktree: Path) -> CommitPolicyStatus:
        lines, files = self.diff_stats(worktree)
        minutes = self.minutes_since_last_commit(worktree)
        violation: Violation | None = None
        if lines > self.config.max_diff_lines:
            violation = "diff_too_large"
        elif files > self.config.max_files_changed:
            violation = "too_many_files"
        elif (
            minutes is not None
            and minutes > self.config.max_minutes_since_commit
            and (lines or files)
        ):
            violation = "time_exceeded"
        status = CommitPolicyStatus(
            lines_changed=lines,
            files_changed=files,
            minutes_since_commit=minutes,
            violation=violation,
        )
        if violation:
            logger.warning("Commit policy violation in %s: %s", worktree, self.reminder(status))
        return status

    def can_commit(self, worktree: Path) -> bool:
        minutes = self.minutes_since_last_commit(worktree)
        return minutes is None or minutes >= self.config.min_minutes_between_commits

    def reminder(self, status: CommitPolicyStatus) -> str:
        if status.violation == "diff_too_large":
            return (
                f"{status.lines_changed} changed lines exceed the limit of "
                f"{self.config.max_diff_lines}; commit now in smaller steps."
            )
        if status.violation == "too_many_files":
            return (
                f"{status.files_changed} changed files exceed the limit of "
                f"{self.config.max_files_changed}; commit now."
            )
        if status.violation == "time_exceeded":
            return (
                f"{status.minutes_since_commit:.0f} minutes since the last commit "
                f"(limit {self.config.max_minutes_since_commit}); commit your progress."
            )
        return "Within commit policy."
