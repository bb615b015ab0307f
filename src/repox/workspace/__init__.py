"""Workspace materialization: git operations, sync orchestration and overlays."""
from repox.workspace.git import GitClient, GitOptions, RepoHandle, SubprocessGit
from repox.workspace.orchestrator import Outcome, RetryPolicy, SyncOrchestrator, SyncResult, SyncRun
from repox.workspace.overlay import apply_overlays
from repox.workspace.state import Workspace, WorkspaceConfig, init_workspace

__all__ = [
    "GitClient",
    "GitOptions",
    "Outcome",
    "RepoHandle",
    "RetryPolicy",
    "SubprocessGit",
    "SyncOrchestrator",
    "SyncResult",
    "SyncRun",
    "Workspace",
    "WorkspaceConfig",
    "apply_overlays",
    "init_workspace",
]
