"""Tree overlay: apply copyfile/linkfile projections after checkout.

``src`` is relative to the project checkout and must stay inside it;
``dest`` is relative to the workspace root and must stay inside that.
Every check runs before anything is written, so a rejected pair leaves
the tree untouched.
"""
import filecmp
import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable

from repox.core.errors import OverlayError, OverlaySourceError, PathEscapeError
from repox.manifest.resolver import ProjectSpec
from repox.manifest.schemas import FileProjection
from repox.workspace.orchestrator import Outcome, SyncRun

logger = logging.getLogger(__name__)

_FORBIDDEN_COMPONENTS = {"..", ".git", ".repox"}


def _check_relative(projection: FileProjection, value: str, what: str, dot_ok: bool = False) -> None:
    """Validate a manifest path in isolation, before touching the filesystem."""
    if not value:
        raise PathEscapeError(projection.src, projection.dest, f"empty {what}")
    if dot_ok and value.rstrip("/") == ".":
        return
    posix = PurePosixPath(value.replace("\\", "/"))
    if posix.is_absolute() or value.startswith("~") or os.path.isabs(value):
        raise PathEscapeError(projection.src, projection.dest, f"{what} must be relative")
    bad = {part.lower() for part in posix.parts} & _FORBIDDEN_COMPONENTS
    if bad:
        raise PathEscapeError(projection.src, projection.dest, f"bad component in {what}: {value}")


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _check_no_symlinks(projection: FileProjection, root: Path, relative: str, what: str) -> None:
    """Intermediate components of a path below root must not be symlinks."""
    current = root
    for part in PurePosixPath(relative).parts[:-1]:
        current = current / part
        if current.is_symlink():
            raise PathEscapeError(projection.src, projection.dest, f"{what} traverses symlink {current}")


def _resolve_src(projection: FileProjection, project_root: Path, dot_ok: bool) -> Path:
    _check_relative(projection, projection.src, "src", dot_ok=dot_ok)
    root = project_root.resolve()
    src_path = project_root / projection.src
    if not _is_within(src_path.resolve(), root):
        raise PathEscapeError(projection.src, projection.dest, "src escapes the project")
    _check_no_symlinks(projection, project_root, projection.src, "src")
    if not src_path.exists():
        raise OverlaySourceError(f"{projection.src}: source does not exist in {project_root}")
    return src_path


def _resolve_dest(projection: FileProjection, workspace_root: Path) -> Path:
    _check_relative(projection, projection.dest, "dest")
    root = workspace_root.resolve()
    dest_path = workspace_root / projection.dest
    if not _is_within(dest_path.parent.resolve() / dest_path.name, root):
        raise PathEscapeError(projection.src, projection.dest, "dest escapes the workspace")
    _check_no_symlinks(projection, workspace_root, projection.dest, "dest")
    return dest_path


def copy_file(projection: FileProjection, project_root: Path, workspace_root: Path) -> Path:
    """Copy ``src`` from the project to ``dest`` in the workspace.

    Both ends must be regular files. Missing parent directories of dest
    are created; an identical existing dest is left alone.
    """
    src_path = _resolve_src(projection, project_root, dot_ok=False)
    if src_path.is_symlink() or not src_path.is_file():
        raise OverlaySourceError(f"{projection.src}: copyfile source must be a regular file")
    dest_path = _resolve_dest(projection, workspace_root)
    if dest_path.is_symlink() or dest_path.is_dir():
        raise OverlayError(f"{projection.dest}: copyfile destination must be a regular file")

    if dest_path.exists() and filecmp.cmp(src_path, dest_path, shallow=False):
        return dest_path

    dest_path.parent.mkdir(parents=True, exist_ok=True)
    if dest_path.exists():
        dest_path.unlink()
    shutil.copy2(src_path, dest_path)
    logger.debug(f"Copied {src_path} -> {dest_path}")
    return dest_path


def link_file(projection: FileProjection, project_root: Path, workspace_root: Path) -> Path:
    """Create ``dest`` as a relative symlink pointing at ``src``.

    ``src`` may be a file, a directory or ``.`` (the project itself).
    An existing symlink at dest is replaced; anything else is refused.
    """
    src_path = _resolve_src(projection, project_root, dot_ok=True)
    dest_path = _resolve_dest(projection, workspace_root)
    if dest_path.exists() and not dest_path.is_symlink():
        raise OverlayError(f"{projection.dest}: refusing to replace existing non-link file")

    target = os.path.relpath(src_path, dest_path.parent)
    resolved_target = (dest_path.parent / target).resolve()
    if not _is_within(resolved_target, workspace_root.resolve()):
        raise PathEscapeError(projection.src, projection.dest, "link target escapes the workspace")

    if dest_path.is_symlink():
        if os.readlink(dest_path) == target:
            return dest_path
        dest_path.unlink()

    dest_path.parent.mkdir(parents=True, exist_ok=True)
    os.symlink(target, dest_path)
    logger.debug(f"Linked {dest_path} -> {target}")
    return dest_path


def apply_project_overlay(project: ProjectSpec, workspace_root: Path) -> None:
    """Apply all copyfile then linkfile projections of one project.

    Raises:
        OverlayError: On the first projection that cannot be applied
    """
    workspace_root = Path(workspace_root)
    project_root = workspace_root / project.path
    for projection in project.copy_files:
        copy_file(projection, project_root, workspace_root)
    for projection in project.link_files:
        link_file(projection, project_root, workspace_root)


def apply_overlays(projects: Iterable[ProjectSpec], run: SyncRun, workspace_root: Path) -> SyncRun:
    """Apply overlays for every successfully synced project.

    Failures are recorded on the project's result; checkouts are left as
    they are and other projects still get their overlays.
    """
    by_path: Dict[str, ProjectSpec] = {p.path: p for p in projects}
    results = []
    for result in run.results:
        project = by_path.get(result.path)
        if result.outcome == Outcome.SUCCEEDED and project is not None:
            try:
                apply_project_overlay(project, workspace_root)
            except (OverlayError, OSError) as e:
                logger.error(f"{project.path}: overlay failed: {e}")
                result = result.model_copy(update={"overlay_error": str(e)})
        results.append(result)
    return run.model_copy(update={"results": results})
