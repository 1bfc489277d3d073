from nightshift.vcs.commit_policy import CommitPolicyChecker, CommitPolicyStatus
from nightshift.vcs.git import GitClient, GitError
from nightshift.vcs.hooks import HookInstaller
from nightshift.vcs.metadata import CommitMetadata, CommitRecord
from nightshift.vcs.worktrees import Worktree, WorktreeConflictError, WorktreeManager

__all__ = [
    "CommitMetadata",
    "CommitPolicyChecker",
    "CommitPolicyStatus",
    "CommitRecord",
    "GitClient",
    "GitError",
    "HookInstaller",
    "Worktree",
    "WorktreeConflictError",
    "WorktreeManager",
]
