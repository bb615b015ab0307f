"""Workspace metadata: the .repox directory and persisted run configuration."""
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from repox import __version__
from repox.core.errors import WorkspaceError
from repox.manifest.loader import load_manifest, load_workspace_manifests
from repox.manifest.resolver import ResolvedManifest, resolve
from repox.workspace.git import GitClient, GitOptions

logger = logging.getLogger(__name__)

METADATA_DIR = ".repox"


class WorkspaceConfig(BaseModel):
    """Settings chosen at init time and reused by every later sync."""

    schema_version: str = Field(default="workspace_config_v1")
    manifest_url: str = Field(..., description="Manifest repository URL or manifest file path")
    manifest_branch: str = Field(default="HEAD", description="Manifest repository revision")
    manifest_name: str = Field(default="default.xml", description="Manifest file inside the repository")
    standalone: bool = Field(default=False, description="True if the manifest is a single copied file")
    groups: List[str] = Field(default_factory=list)
    platform: str = Field(default="auto")
    depth: Optional[int] = Field(default=None, ge=1)
    clone_filter: Optional[str] = None
    jobs: Optional[int] = Field(default=None, ge=1)
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    tool_version: str = Field(default=__version__)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "schema_version": "workspace_config_v1",
                "manifest_url": "https://android.googlesource.com/platform/manifest",
                "manifest_branch": "main",
                "manifest_name": "default.xml",
                "standalone": False,
                "groups": ["default", "-notdefault"],
                "platform": "auto",
                "depth": None,
                "clone_filter": None,
                "jobs": 8,
                "created_at": "2026-02-27T10:30:00+00:00",
                "tool_version": "0.1.0",
            }
        }
    )

    @field_validator("manifest_name")
    @classmethod
    def validate_manifest_name(cls, v: str) -> str:
        """The manifest file must live inside the manifest repository."""
        if v.startswith("/") or ".." in Path(v).parts:
            raise ValueError(f"manifest_name must be relative to the manifest repository, got: {v}")
        return v

    def save(self, path: Path) -> None:
        """Write config to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))

    @classmethod
    def load(cls, path: Path) -> "WorkspaceConfig":
        """Load config from JSON file."""
        path = Path(path)
        return cls.model_validate_json(path.read_text())


class Workspace:
    """A workspace root and its ``.repox`` metadata directory."""

    def __init__(self, root: Path):
        self.root = Path(root).absolute()

    @property
    def metadata_dir(self) -> Path:
        return self.root / METADATA_DIR

    @property
    def manifests_dir(self) -> Path:
        return self.metadata_dir / "manifests"

    @property
    def local_manifests_dir(self) -> Path:
        return self.metadata_dir / "local_manifests"

    @property
    def config_path(self) -> Path:
        return self.metadata_dir / "config.json"

    @property
    def is_initialized(self) -> bool:
        return self.config_path.is_file()

    @classmethod
    def find(cls, start: Path) -> "Workspace":
        """Locate the workspace containing ``start``.

        Raises:
            WorkspaceError: If no initialized workspace encloses start
        """
        start = Path(start).absolute()
        for candidate in (start, *start.parents):
            workspace = cls(candidate)
            if workspace.is_initialized:
                return workspace
        raise WorkspaceError(f"no repox workspace found at or above {start}; run 'repox init' first")

    def load_config(self) -> WorkspaceConfig:
        if not self.is_initialized:
            raise WorkspaceError(f"{self.root} is not an initialized repox workspace")
        try:
            return WorkspaceConfig.load(self.config_path)
        except (OSError, ValidationError) as e:
            raise WorkspaceError(f"invalid workspace config {self.config_path}: {e}") from e

    def manifest_path(self, config: WorkspaceConfig) -> Path:
        return self.manifests_dir / config.manifest_name

    def load_manifest(self, config: Optional[WorkspaceConfig] = None) -> ResolvedManifest:
        """Load, merge and resolve the stored manifest plus local manifests."""
        config = config or self.load_config()
        documents = load_workspace_manifests(
            self.manifest_path(config),
            include_root=self.manifests_dir,
            local_manifests_dir=self.local_manifests_dir,
        )
        manifest_url = None if config.standalone else config.manifest_url
        return resolve(documents, manifest_url=manifest_url)


def _copy_standalone(source: Path, manifests_dir: Path, manifest_name: str) -> None:
    """Copy a manifest file and every file it includes, keeping relative paths."""
    documents = load_manifest(source)
    copies = {source: manifests_dir / manifest_name}
    for doc in documents[:-1]:
        included = Path(doc.source)
        copies[included] = manifests_dir / included.relative_to(source.parent)

    for src, dst in copies.items():
        dst.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(src, dst)
        except OSError as e:
            raise WorkspaceError(f"failed to copy manifest {src}: {e}") from e
        logger.debug(f"Copied {src} to {dst}")


def init_workspace(
    root: Path,
    config: WorkspaceConfig,
    git: GitClient,
) -> Workspace:
    """Create or refresh the metadata directory and fetch the manifest.

    A manifest URL naming a single file is copied in as a standalone
    manifest; anything else is cloned as the manifest repository.

    Raises:
        WorkspaceError: If the manifest file cannot be copied
        ManifestError: If a standalone manifest or one of its includes is invalid
        GitOperationError: If the manifest repository cannot be fetched
    """
    workspace = Workspace(root)
    workspace.metadata_dir.mkdir(parents=True, exist_ok=True)

    source = Path(config.manifest_url).expanduser()
    if source.is_file():
        config = config.model_copy(update={"standalone": True, "manifest_url": str(source.absolute())})
        _copy_standalone(source, workspace.manifests_dir, config.manifest_name)
        logger.info(f"Using standalone manifest {source}")
    else:
        if source.is_dir():
            config = config.model_copy(update={"manifest_url": str(source.absolute())})
        options = GitOptions(remote_name="origin")
        handle = git.open(workspace.manifests_dir)
        if handle is None:
            handle = git.clone(config.manifest_url, workspace.manifests_dir, options)
        else:
            git.set_remote_url(handle, config.manifest_url)
            git.fetch(handle, options)
        git.checkout(handle, config.manifest_branch)
        logger.info(f"Manifest repository {config.manifest_url} at {config.manifest_branch}")

    config.save(workspace.config_path)
    return workspace
