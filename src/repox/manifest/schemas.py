"""Raw manifest records: one RawManifest per parsed XML document.

These models mirror the manifest XML field-for-field. They carry no
inheritance or defaulting; that is the resolver's job.
"""
from typing import List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Annotation(BaseModel):
    """Name/value pair attached to a project."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str
    keep: bool = True


class FileProjection(BaseModel):
    """A copyfile or linkfile element.

    ``src`` is relative to the project checkout, ``dest`` to the top of the
    workspace.
    """

    model_config = ConfigDict(frozen=True)

    src: str
    dest: str


class RawRemote(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    fetch: str
    alias: Optional[str] = None
    pushurl: Optional[str] = None
    review: Optional[str] = None
    revision: Optional[str] = None


class RawDefault(BaseModel):
    model_config = ConfigDict(frozen=True)

    remote: Optional[str] = None
    revision: Optional[str] = None
    dest_branch: Optional[str] = None
    upstream: Optional[str] = None
    sync_j: Optional[int] = None
    sync_c: Optional[bool] = None
    sync_s: Optional[bool] = None
    sync_tags: Optional[bool] = None


class RawProject(BaseModel):
    """A <project> element, possibly with nested submodule projects."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["project"] = "project"
    name: str
    path: Optional[str] = None
    remote: Optional[str] = None
    revision: Optional[str] = None
    dest_branch: Optional[str] = None
    groups: Tuple[str, ...] = ()
    sync_c: Optional[bool] = None
    sync_s: Optional[bool] = None
    sync_tags: Optional[bool] = None
    upstream: Optional[str] = None
    clone_depth: Optional[int] = None
    force_path: Optional[bool] = None
    annotations: Tuple[Annotation, ...] = ()
    copyfiles: Tuple[FileProjection, ...] = ()
    linkfiles: Tuple[FileProjection, ...] = ()
    projects: Tuple["RawProject", ...] = ()

    @field_validator("clone_depth")
    @classmethod
    def validate_clone_depth(cls, v: Optional[int]) -> Optional[int]:
        """clone-depth must be a positive number when given."""
        if v is not None and v <= 0:
            raise ValueError(f"clone-depth must be greater than 0, not {v}")
        return v


class RawExtendProject(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["extend-project"] = "extend-project"
    name: str
    path: Optional[str] = None
    groups: Tuple[str, ...] = ()
    revision: Optional[str] = None
    remote: Optional[str] = None


class RawRemoveProject(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["remove-project"] = "remove-project"
    name: str


class RawInclude(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    groups: Tuple[str, ...] = ()


class RepoHooks(BaseModel):
    model_config = ConfigDict(frozen=True)

    in_project: str
    enabled_list: Tuple[str, ...] = ()


ProjectAction = Union[RawProject, RawExtendProject, RawRemoveProject]


class RawManifest(BaseModel):
    """One parsed manifest document.

    ``actions`` keeps project, extend-project and remove-project elements in
    the order they appear in the file; the resolver replays them in that
    order.
    """

    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Path or label of the document")
    includes: Tuple[RawInclude, ...] = ()
    remotes: Tuple[RawRemote, ...] = ()
    default: Optional[RawDefault] = None
    notice: Optional[str] = None
    manifest_server: Optional[str] = None
    repo_hooks: Optional[RepoHooks] = None
    actions: Tuple[ProjectAction, ...] = ()

    @property
    def projects(self) -> List[RawProject]:
        return [a for a in self.actions if isinstance(a, RawProject)]

    @property
    def extend_projects(self) -> List[RawExtendProject]:
        return [a for a in self.actions if isinstance(a, RawExtendProject)]

    @property
    def remove_projects(self) -> List[RawRemoveProject]:
        return [a for a in self.actions if isinstance(a, RawRemoveProject)]


RawProject.model_rebuild()
