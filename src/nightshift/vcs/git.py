from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode


class GitClient:
    def __init__(self, root: Path) -> None:
        self.root = root

    def run(
        self,
        args: list[str],
        *,
        input_text: str | None = None,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        logger.debug("git %s (cwd=%s)", " ".join(args), self.root)
        proc = subprocess.run(
            command,
            cwd=self.root,
            text=True,
            capture_output=True,
            input=input_text,
            env=env,
        )
        if check and proc.returncode != 0:
            raise GitError(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                command=command,
                returncode=proc.returncode,
            )
        return proc

    def output(self, args: list[str]) -> str:
        return self.run(args).stdout.strip()

    def is_repository(self) -> bool:
        proc = self.run(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def branch_exists(self, branch: str) -> bool:
        proc = self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def current_branch(self) -> str:
        return self.output(["rev-parse", "--abbrev-ref", "HEAD"])

    def head(self) -> str | None:
        proc = self.run(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def common_dir(self) -> Path:
        raw = self.output(["rev-parse", "--git-common-dir"])
        path = Path(raw)
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    def git_dir(self) -> Path:
        return Path(self.output(["rev-parse", "--absolute-git-dir"]))

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        path = status_line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        return path.strip().strip('"')

    def status_paths(self, *, exclude_prefixes: tuple[str, ...] = ()) -> list[str]:
        proc = self.run(["status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if len(line) < 4:
                continue
            path = self._status_line_path(line)
            if any(path.startswith(prefix) for prefix in exclude_prefixes):
                continue
            paths.append(path)
        return paths

    def is_clean(self, *, exclude_prefixes: tuple[str, ...] = ()) -> bool:
        return not self.status_paths(exclude_prefixes=exclude_prefixes)
