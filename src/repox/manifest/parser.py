"""Manifest deserializer: XML text -> RawManifest."""
import logging
import re
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError

from repox.core.errors import ManifestParseError
from repox.manifest.schemas import (
    Annotation,
    FileProjection,
    RawDefault,
    RawExtendProject,
    RawInclude,
    RawManifest,
    RawProject,
    RawRemote,
    RawRemoveProject,
    RepoHooks,
)

logger = logging.getLogger(__name__)

_LIST_SPLIT = re.compile(r"[,\s]+")
_TRUE_VALUES = {"yes", "true", "1"}
_FALSE_VALUES = {"no", "false", "0"}


def parse_list(value: Optional[str]) -> Tuple[str, ...]:
    """Split a whitespace or comma separated attribute into its items."""
    if not value:
        return ()
    return tuple(item for item in _LIST_SPLIT.split(value) if item)


def _bool_attr(node: ET.Element, attr: str, source: str) -> Optional[bool]:
    """Read a boolean attribute; invalid values warn and count as unset."""
    value = node.get(attr)
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning(f"{source}: {attr}=\"{value}\": ignoring invalid XML boolean")
    return None


def _int_attr(node: ET.Element, attr: str, source: str) -> Optional[int]:
    value = node.get(attr)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ManifestParseError(source, f"invalid {attr}=\"{value}\" integer")


def _required(node: ET.Element, attr: str, source: str) -> str:
    value = node.get(attr)
    if not value:
        raise ManifestParseError(source, f"no {attr} in <{node.tag}>")
    return value


def _parse_remote(node: ET.Element, source: str) -> RawRemote:
    return RawRemote(
        name=_required(node, "name", source),
        fetch=_required(node, "fetch", source),
        alias=node.get("alias") or None,
        pushurl=node.get("pushurl") or None,
        review=node.get("review") or None,
        revision=node.get("revision") or None,
    )


def _parse_default(node: ET.Element, source: str) -> RawDefault:
    return RawDefault(
        remote=node.get("remote") or None,
        revision=node.get("revision") or None,
        dest_branch=node.get("dest-branch") or None,
        upstream=node.get("upstream") or None,
        sync_j=_int_attr(node, "sync-j", source),
        sync_c=_bool_attr(node, "sync-c", source),
        sync_s=_bool_attr(node, "sync-s", source),
        sync_tags=_bool_attr(node, "sync-tags", source),
    )


def _parse_annotation(node: ET.Element, source: str) -> Annotation:
    keep = (node.get("keep") or "true").lower()
    if keep not in ("true", "false"):
        raise ManifestParseError(source, 'optional "keep" attribute must be "true" or "false"')
    return Annotation(
        name=_required(node, "name", source),
        value=_required(node, "value", source),
        keep=keep == "true",
    )


def _parse_projection(node: ET.Element, source: str) -> FileProjection:
    return FileProjection(
        src=_required(node, "src", source),
        dest=_required(node, "dest", source),
    )


def _parse_project(node: ET.Element, source: str) -> RawProject:
    annotations: List[Annotation] = []
    copyfiles: List[FileProjection] = []
    linkfiles: List[FileProjection] = []
    children: List[RawProject] = []
    for child in node:
        if child.tag == "annotation":
            annotations.append(_parse_annotation(child, source))
        elif child.tag == "copyfile":
            copyfiles.append(_parse_projection(child, source))
        elif child.tag == "linkfile":
            linkfiles.append(_parse_projection(child, source))
        elif child.tag == "project":
            children.append(_parse_project(child, source))

    return RawProject(
        name=_required(node, "name", source),
        path=node.get("path") or None,
        remote=node.get("remote") or None,
        revision=node.get("revision") or None,
        dest_branch=node.get("dest-branch") or None,
        groups=parse_list(node.get("groups")),
        sync_c=_bool_attr(node, "sync-c", source),
        sync_s=_bool_attr(node, "sync-s", source),
        sync_tags=_bool_attr(node, "sync-tags", source),
        upstream=node.get("upstream") or None,
        clone_depth=_int_attr(node, "clone-depth", source),
        force_path=_bool_attr(node, "force-path", source),
        annotations=tuple(annotations),
        copyfiles=tuple(copyfiles),
        linkfiles=tuple(linkfiles),
        projects=tuple(children),
    )


def parse_manifest(text: Union[str, bytes], source: str = "<string>") -> RawManifest:
    """Parse manifest XML text into a RawManifest.

    Args:
        text: Manifest document contents; bytes are decoded per the XML declaration
        source: Path or label used in error messages

    Returns:
        RawManifest with elements in document order

    Raises:
        ManifestParseError: If the XML is malformed or an element is invalid
    """
    try:
        root = ET.fromstring(text)
    except (ET.ParseError, UnicodeDecodeError) as e:
        raise ManifestParseError(source, str(e))

    if root.tag != "manifest":
        raise ManifestParseError(source, f"no <manifest> root element (found <{root.tag}>)")

    includes = []
    remotes = []
    actions = []
    default = None
    notice = None
    manifest_server = None
    repo_hooks = None

    try:
        for node in root:
            if node.tag == "include":
                includes.append(RawInclude(
                    name=_required(node, "name", source),
                    groups=parse_list(node.get("groups")),
                ))
            elif node.tag == "remote":
                remotes.append(_parse_remote(node, source))
            elif node.tag == "default":
                default = _parse_default(node, source)
            elif node.tag == "notice":
                notice = (node.text or "").strip() or None
            elif node.tag == "manifest-server":
                manifest_server = _required(node, "url", source)
            elif node.tag == "repo-hooks":
                repo_hooks = RepoHooks(
                    in_project=_required(node, "in-project", source),
                    enabled_list=parse_list(_required(node, "enabled-list", source)),
                )
            elif node.tag == "project":
                actions.append(_parse_project(node, source))
            elif node.tag == "extend-project":
                actions.append(RawExtendProject(
                    name=_required(node, "name", source),
                    path=node.get("path") or None,
                    groups=parse_list(node.get("groups")),
                    revision=node.get("revision") or None,
                    remote=node.get("remote") or None,
                ))
            elif node.tag == "remove-project":
                actions.append(RawRemoveProject(name=_required(node, "name", source)))
            else:
                logger.debug(f"{source}: ignoring unknown element <{node.tag}>")
    except ValidationError as e:
        raise ManifestParseError(source, str(e))

    return RawManifest(
        source=source,
        includes=tuple(includes),
        remotes=tuple(remotes),
        default=default,
        notice=notice,
        manifest_server=manifest_server,
        repo_hooks=repo_hooks,
        actions=tuple(actions),
    )
