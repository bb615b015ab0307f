"""Resolver: merge ordered raw manifest documents into one project table.

The merge is a left fold over the documents. ``merge_document`` takes the
table built so far and one document and returns a new table; nothing is
updated in place. ``finalize`` then fills in every project's effective
remote, revision and sync settings.
"""
import logging
import re
from functools import reduce
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

from pydantic import BaseModel, ConfigDict, Field

from repox.core.errors import InvalidRevision, UnresolvedRemote, UnresolvedRevision
from repox.manifest.schemas import (
    Annotation,
    FileProjection,
    RawDefault,
    RawExtendProject,
    RawManifest,
    RawProject,
    RawRemote,
    RawRemoveProject,
    RepoHooks,
)

logger = logging.getLogger(__name__)

_BAD_REVISION = re.compile(r"[\s~^:?*\[\\]|\.\.|@\{")


class RemoteSpec(BaseModel):
    """A named Git URL prefix shared by one or more projects."""

    model_config = ConfigDict(frozen=True)

    name: str
    fetch_prefix: str
    alias: Optional[str] = None
    push_prefix: Optional[str] = None
    review_host: Optional[str] = None
    revision: Optional[str] = None

    @property
    def local_name(self) -> str:
        """Remote name written into each project's git config."""
        return self.alias or self.name

    @property
    def effective_push_prefix(self) -> str:
        return self.push_prefix or self.fetch_prefix

    def clone_url(self, project_name: str) -> str:
        return f"{self.fetch_prefix.rstrip('/')}/{project_name}.git"

    @classmethod
    def from_raw(cls, raw: RawRemote) -> "RemoteSpec":
        return cls(
            name=raw.name,
            fetch_prefix=raw.fetch,
            alias=raw.alias,
            push_prefix=raw.pushurl,
            review_host=raw.review,
            revision=raw.revision,
        )


class DefaultSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    remote: Optional[str] = None
    revision: Optional[str] = None
    dest_branch: Optional[str] = None
    upstream: Optional[str] = None
    sync_jobs: Optional[int] = None
    sync_current_branch_only: Optional[bool] = None
    sync_submodules: Optional[bool] = None
    sync_tags: Optional[bool] = None

    @classmethod
    def from_raw(cls, raw: RawDefault) -> "DefaultSpec":
        return cls(
            remote=raw.remote,
            revision=raw.revision,
            dest_branch=raw.dest_branch,
            upstream=raw.upstream,
            sync_jobs=raw.sync_j,
            sync_current_branch_only=raw.sync_c,
            sync_submodules=raw.sync_s,
            sync_tags=raw.sync_tags,
        )


class ProjectSpec(BaseModel):
    """One repository in the project table.

    Nested (submodule) projects are separate entries whose ``parent_path``
    names the entry they were declared under; their name and path already
    carry the parent's prefix.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    remote_name: Optional[str] = None
    revision: Optional[str] = None
    dest_branch: Optional[str] = None
    groups: Tuple[str, ...] = ()
    sync_current_branch_only: Optional[bool] = None
    sync_submodules: Optional[bool] = None
    sync_tags: Optional[bool] = None
    upstream_ref: Optional[str] = None
    clone_depth: Optional[int] = None
    force_path_for_mirror: Optional[bool] = None
    annotations: Tuple[Annotation, ...] = ()
    copy_files: Tuple[FileProjection, ...] = ()
    link_files: Tuple[FileProjection, ...] = ()
    parent_path: Optional[str] = None
    source: Optional[str] = Field(default=None, description="Document that defined the project")

    @property
    def effective_groups(self) -> FrozenSet[str]:
        """Declared groups plus the implicit all, name:<name> and path:<path>."""
        return frozenset(self.groups) | {"all", f"name:{self.name}", f"path:{self.path}"}


class ManifestTable(BaseModel):
    """Running state of the document fold."""

    model_config = ConfigDict(frozen=True)

    remotes: Dict[str, RemoteSpec] = Field(default_factory=dict)
    default: DefaultSpec = Field(default_factory=DefaultSpec)
    projects: Dict[str, ProjectSpec] = Field(default_factory=dict)
    notice: Optional[str] = None
    manifest_server: Optional[str] = None
    repo_hooks: Optional[RepoHooks] = None


class ResolvedManifest(BaseModel):
    """The merged manifest: remotes, one default and a flat project table.

    ``projects`` is keyed by the fully-qualified workspace path and keeps the
    order in which entries were first defined.
    """

    model_config = ConfigDict(frozen=True)

    remotes: Dict[str, RemoteSpec]
    default: DefaultSpec
    projects: Dict[str, ProjectSpec]
    notice: Optional[str] = None
    manifest_server: Optional[str] = None
    repo_hooks: Optional[RepoHooks] = None

    @property
    def project_count(self) -> int:
        return len(self.projects)

    def remote_for(self, project: ProjectSpec) -> RemoteSpec:
        return self.remotes[project.remote_name]

    def clone_url(self, project: ProjectSpec) -> str:
        return self.remote_for(project).clone_url(project.name)

    def children_of(self, path: str) -> List[ProjectSpec]:
        return [p for p in self.projects.values() if p.parent_path == path]

    def projects_named(self, name: str) -> List[ProjectSpec]:
        return [p for p in self.projects.values() if p.name == name]


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def flatten_project(
    raw: RawProject,
    parent: Optional[ProjectSpec] = None,
    source: Optional[str] = None,
) -> List[ProjectSpec]:
    """Turn a <project> element and its nested projects into table entries.

    Children inherit every attribute they leave unset from their parent;
    their name and path are prefixed by the parent's.
    """
    own_path = (raw.path or raw.name).strip("/")
    if parent is None:
        name = raw.name
        path = own_path
        inherited = ProjectSpec(name=name, path=path)
    else:
        name = f"{parent.name}/{raw.name}"
        path = f"{parent.path}/{own_path}"
        inherited = parent

    spec = ProjectSpec(
        name=name,
        path=path,
        remote_name=_first(raw.remote, inherited.remote_name),
        revision=_first(raw.revision, inherited.revision),
        dest_branch=_first(raw.dest_branch, inherited.dest_branch),
        groups=raw.groups or inherited.groups,
        sync_current_branch_only=_first(raw.sync_c, inherited.sync_current_branch_only),
        sync_submodules=_first(raw.sync_s, inherited.sync_submodules),
        sync_tags=_first(raw.sync_tags, inherited.sync_tags),
        upstream_ref=_first(raw.upstream, inherited.upstream_ref),
        clone_depth=_first(raw.clone_depth, inherited.clone_depth),
        force_path_for_mirror=_first(raw.force_path, inherited.force_path_for_mirror),
        annotations=raw.annotations,
        copy_files=raw.copyfiles,
        link_files=raw.linkfiles,
        parent_path=parent.path if parent is not None else None,
        source=source,
    )
    entries = [spec]
    for child in raw.projects:
        entries.extend(flatten_project(child, parent=spec, source=source))
    return entries


def _extend(projects: Dict[str, ProjectSpec], action: RawExtendProject) -> Dict[str, ProjectSpec]:
    updated = dict(projects)
    matched = False
    for path, project in projects.items():
        if project.name != action.name:
            continue
        if action.path and project.path != action.path.strip("/"):
            continue
        matched = True
        changes = {}
        if action.groups:
            changes["groups"] = project.groups + tuple(g for g in action.groups if g not in project.groups)
        if action.revision:
            changes["revision"] = action.revision
        if action.remote:
            changes["remote_name"] = action.remote
        updated[path] = project.model_copy(update=changes)
    if not matched:
        logger.warning(f"extend-project specifies non-existent project: {action.name}")
    return updated


def _descendants(projects: Dict[str, ProjectSpec], root_path: str) -> List[str]:
    prefix = f"{root_path}/"
    return [
        path for path, p in projects.items()
        if p.parent_path is not None and (p.parent_path == root_path or p.parent_path.startswith(prefix))
    ]


def _remove(projects: Dict[str, ProjectSpec], action: RawRemoveProject) -> Dict[str, ProjectSpec]:
    """Drop every entry named ``action.name`` along with its nested projects."""
    matches = [path for path, p in projects.items() if p.name == action.name]
    if not matches:
        logger.debug(f"remove-project {action.name}: no such project, nothing to remove")
        return projects
    doomed = set(matches)
    for path in matches:
        doomed.update(_descendants(projects, path))
    logger.debug(f"Removing project {action.name} ({len(doomed)} entries)")
    return {path: p for path, p in projects.items() if path not in doomed}


def merge_document(table: ManifestTable, doc: RawManifest) -> ManifestTable:
    """Fold one raw document into the table, returning a new table.

    Remotes are last-wins per name and a <default> replaces the previous
    one. All of the document's projects are inserted first, then its
    extend-project elements are applied, then its remove-project elements,
    each against the table built so far.
    """
    remotes = dict(table.remotes)
    for raw_remote in doc.remotes:
        if raw_remote.name in remotes:
            logger.debug(f"{doc.source}: remote {raw_remote.name} replaces earlier definition")
        remotes[raw_remote.name] = RemoteSpec.from_raw(raw_remote)

    default = table.default
    if doc.default is not None:
        default = DefaultSpec.from_raw(doc.default)

    projects = dict(table.projects)
    for raw_project in doc.projects:
        for entry in flatten_project(raw_project, source=doc.source):
            projects[entry.path] = entry
    for extend in doc.extend_projects:
        projects = _extend(projects, extend)
    for remove in doc.remove_projects:
        projects = _remove(projects, remove)

    return ManifestTable(
        remotes=remotes,
        default=default,
        projects=projects,
        notice=_first(doc.notice, table.notice),
        manifest_server=_first(doc.manifest_server, table.manifest_server),
        repo_hooks=_first(doc.repo_hooks, table.repo_hooks),
    )


def check_revision(project_name: str, revision: str) -> None:
    """Reject revisions that can never be valid git references."""
    if (
        _BAD_REVISION.search(revision)
        or revision.startswith(("/", "-"))
        or revision.endswith(("/", ".lock", "."))
    ):
        raise InvalidRevision(project_name, revision)


def resolve_fetch_url(fetch: str, manifest_url: Optional[str]) -> str:
    """Resolve a relative remote fetch prefix against the manifest URL."""
    if manifest_url is None or not fetch.startswith("."):
        return fetch
    base = manifest_url.rstrip("/")
    scp_like = base.find(":") != base.find("/") - 1
    if scp_like:
        base = "gopher://" + base
    joined = urljoin(base, fetch.rstrip("/"))
    return joined[len("gopher://"):] if scp_like else joined


def finalize(table: ManifestTable, manifest_url: Optional[str] = None) -> ResolvedManifest:
    """Compute effective remote, revision and sync settings for every project.

    Raises:
        UnresolvedRemote: If a project has no remote, or names an unknown one
        UnresolvedRevision: If no revision is available for a project
        InvalidRevision: If a revision is malformed
    """
    default = table.default
    remotes = {
        name: remote.model_copy(update={"fetch_prefix": resolve_fetch_url(remote.fetch_prefix, manifest_url)})
        for name, remote in table.remotes.items()
    }

    projects: Dict[str, ProjectSpec] = {}
    for path, project in table.projects.items():
        remote_name = project.remote_name or default.remote
        if not remote_name:
            raise UnresolvedRemote(project.name)
        remote = remotes.get(remote_name)
        if remote is None:
            raise UnresolvedRemote(project.name, remote_name)

        revision = _first(project.revision, remote.revision, default.revision)
        if not revision:
            raise UnresolvedRevision(project.name)
        check_revision(project.name, revision)

        projects[path] = project.model_copy(update={
            "remote_name": remote_name,
            "revision": revision,
            "dest_branch": _first(project.dest_branch, default.dest_branch),
            "upstream_ref": _first(project.upstream_ref, default.upstream),
            "sync_current_branch_only": bool(_first(project.sync_current_branch_only, default.sync_current_branch_only, False)),
            "sync_submodules": bool(_first(project.sync_submodules, default.sync_submodules, False)),
            "sync_tags": bool(_first(project.sync_tags, default.sync_tags, True)),
        })

    return ResolvedManifest(
        remotes=remotes,
        default=default,
        projects=projects,
        notice=table.notice,
        manifest_server=table.manifest_server,
        repo_hooks=table.repo_hooks,
    )


def resolve(documents: Iterable[RawManifest], manifest_url: Optional[str] = None) -> ResolvedManifest:
    """Merge ordered raw documents into a ResolvedManifest.

    Args:
        documents: Raw documents in inclusion order
        manifest_url: Where the manifest came from; relative remote fetch
            prefixes are resolved against it

    Returns:
        ResolvedManifest; identical input always yields an identical result
    """
    table = reduce(merge_document, documents, ManifestTable())
    resolved = finalize(table, manifest_url)
    logger.debug(f"Resolved {resolved.project_count} projects from {len(resolved.remotes)} remotes")
    return resolved
