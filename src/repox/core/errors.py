"""Core exception types for repox."""
from typing import Optional, Sequence


class RepoxError(Exception):
    """Base exception for all repox errors."""
    pass


class ManifestError(RepoxError):
    """Raised when a manifest cannot be turned into a project table."""
    pass


class ManifestLoadError(ManifestError):
    """Raised when a manifest document (or one of its includes) cannot be read."""
    pass


class IncludeNotFound(ManifestLoadError):
    """Raised when an <include> names a file that does not exist."""

    def __init__(self, path: str, included_from: str):
        self.path = path
        self.included_from = included_from
        super().__init__(f"include {path} (from {included_from}) doesn't exist or isn't a file")


class CyclicInclude(ManifestLoadError):
    """Raised when a manifest transitively includes itself."""

    def __init__(self, chain: Sequence[str]):
        self.chain = list(chain)
        super().__init__("cyclic include: " + " -> ".join(self.chain))


class ManifestParseError(ManifestLoadError):
    """Raised when a manifest document is malformed."""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"error parsing manifest {path}: {detail}")


class ResolutionError(ManifestError):
    """Raised when the merged manifest cannot be resolved into concrete projects."""
    pass


class UnresolvedRemote(ResolutionError):
    """Raised when a project has no usable remote."""

    def __init__(self, project_name: str, remote_name: Optional[str] = None):
        self.project_name = project_name
        self.remote_name = remote_name
        if remote_name:
            message = f"project {project_name} uses undefined remote {remote_name}"
        else:
            message = f"no remote for project {project_name}"
        super().__init__(message)


class UnresolvedRevision(ResolutionError):
    """Raised when neither project, remote nor default supply a revision."""

    def __init__(self, project_name: str):
        self.project_name = project_name
        super().__init__(f"no revision for project {project_name}")


class InvalidRevision(ResolutionError):
    """Raised when a revision is not a well-formed git reference."""

    def __init__(self, project_name: str, revision: str):
        self.project_name = project_name
        self.revision = revision
        super().__init__(f"project {project_name} has malformed revision '{revision}'")


class GitOperationError(RepoxError):
    """Raised when a git operation fails."""
    pass


class TransientGitError(GitOperationError):
    """Raised for git failures worth retrying (timeouts, dropped connections)."""
    pass


class SyncCancelledError(GitOperationError):
    """Raised when a git operation is aborted by the cancellation token."""
    pass


class OverlayError(RepoxError):
    """Raised when a copyfile/linkfile projection cannot be applied."""
    pass


class PathEscapeError(OverlayError):
    """Raised when a copyfile/linkfile path leaves its allowed root."""

    def __init__(self, src: str, dest: str, reason: str):
        self.src = src
        self.dest = dest
        self.reason = reason
        super().__init__(f"{src} -> {dest}: {reason}")


class OverlaySourceError(OverlayError):
    """Raised when a copyfile/linkfile source is missing or of the wrong type."""
    pass


class WorkspaceError(RepoxError):
    """Raised when the workspace metadata directory is missing or unusable."""
    pass


class ProjectNotFound(ManifestError):
    """Raised when a project requested by name or path is not in the manifest."""

    def __init__(self, project: str):
        self.project = project
        super().__init__(f"project {project} not found in manifest")
