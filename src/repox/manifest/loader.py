"""Manifest loader: read a manifest and every manifest it includes."""
import logging
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence, Tuple

from repox.core.errors import CyclicInclude, IncludeNotFound, ManifestLoadError, ManifestParseError
from repox.manifest.parser import parse_manifest
from repox.manifest.schemas import RawManifest, RawProject

logger = logging.getLogger(__name__)


def _check_include_name(name: str, including: str) -> None:
    """Include names must stay inside the manifest repository."""
    posix = PurePosixPath(name.replace("\\", "/"))
    if posix.is_absolute() or ".." in posix.parts or name.startswith("~"):
        raise ManifestParseError(including, f'<include> invalid "name": {name}')


def _add_groups(project: RawProject, groups: Tuple[str, ...]) -> RawProject:
    merged = project.groups + tuple(g for g in groups if g not in project.groups)
    children = tuple(_add_groups(child, groups) for child in project.projects)
    return project.model_copy(update={"groups": merged, "projects": children})


def _with_include_groups(doc: RawManifest, groups: Tuple[str, ...]) -> RawManifest:
    """Return ``doc`` with ``groups`` added to every project it defines."""
    if not groups:
        return doc
    actions = tuple(
        _add_groups(action, groups) if isinstance(action, RawProject) else action
        for action in doc.actions
    )
    return doc.model_copy(update={"actions": actions})


def _expand(
    doc: RawManifest,
    include_root: Path,
    stack: List[Path],
    groups: Tuple[str, ...],
) -> List[RawManifest]:
    documents: List[RawManifest] = []
    for include in doc.includes:
        _check_include_name(include.name, doc.source)
        target = include_root / include.name
        if not target.is_file():
            raise IncludeNotFound(str(target), doc.source)
        inherited = include.groups + tuple(g for g in groups if g not in include.groups)
        documents.extend(_load_file(target, include_root, stack, inherited))
    documents.append(_with_include_groups(doc, groups))
    return documents


def _load_file(
    path: Path,
    include_root: Path,
    stack: List[Path],
    groups: Tuple[str, ...] = (),
) -> List[RawManifest]:
    key = path.resolve()
    if key in stack:
        chain = [str(p) for p in stack[stack.index(key):]] + [str(key)]
        raise CyclicInclude(chain)

    try:
        data = path.read_bytes()
    except OSError as e:
        raise ManifestLoadError(f"failed to read manifest {path}: {e}") from e

    logger.debug(f"Loaded manifest {path}")
    doc = parse_manifest(data, source=str(path))
    return _expand(doc, include_root, stack + [key], groups)


def load_manifest(manifest_path: Path, include_root: Optional[Path] = None) -> List[RawManifest]:
    """Load a manifest file and its includes in inclusion order.

    Each included file is fully expanded, in the order its <include>
    elements appear, before the including document itself.

    Args:
        manifest_path: Root manifest file
        include_root: Directory include names are relative to
            (default: the root manifest's directory)

    Returns:
        Ordered list of raw documents

    Raises:
        IncludeNotFound: If an included file is missing
        CyclicInclude: If a file transitively includes itself
        ManifestParseError: If any document is malformed
    """
    manifest_path = Path(manifest_path)
    if include_root is None:
        include_root = manifest_path.parent
    if not manifest_path.is_file():
        raise ManifestLoadError(f"manifest file not found: {manifest_path}")
    return _load_file(manifest_path, Path(include_root), [])


def load_manifest_text(
    text: str,
    include_root: Path,
    source: str = "<string>",
) -> List[RawManifest]:
    """Same as load_manifest, for a root manifest given as text."""
    doc = parse_manifest(text, source=source)
    return _expand(doc, Path(include_root), [], ())


def load_workspace_manifests(
    manifest_path: Path,
    include_root: Optional[Path] = None,
    local_manifests_dir: Optional[Path] = None,
) -> List[RawManifest]:
    """Load the main manifest followed by any local manifests.

    Local manifests (``*.xml`` in ``local_manifests_dir``) are merged after
    the main manifest, sorted by file name.
    """
    documents = load_manifest(manifest_path, include_root)
    if local_manifests_dir is not None and Path(local_manifests_dir).is_dir():
        local_files: Sequence[Path] = sorted(Path(local_manifests_dir).glob("*.xml"))
        for local_file in local_files:
            logger.info(f"Using local manifest {local_file.name}")
            documents.extend(load_manifest(local_file, include_root or Path(manifest_path).parent))
    return documents
