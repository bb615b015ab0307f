"""Group and platform filtering of the resolved project table."""
import logging
import platform as platform_module
from typing import FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from repox.core.errors import ProjectNotFound
from repox.manifest.parser import parse_list
from repox.manifest.resolver import ProjectSpec, ResolvedManifest

logger = logging.getLogger(__name__)

KNOWN_PLATFORMS = ("linux", "darwin", "windows")


def _normalize(group: str) -> str:
    # platform:linux and platform-linux name the same group
    if group.startswith("platform:"):
        return "platform-" + group[len("platform:"):]
    return group


def split_groups(groups: Optional[Iterable[str]]) -> Tuple[Set[str], Set[str]]:
    """Split requested group expressions into (positive, negative) sets.

    Each item may itself be a comma separated list. A leading ``-``
    negates a group. With no positive group, ``default`` is implied.
    """
    positive: Set[str] = set()
    negative: Set[str] = set()
    for item in groups or ():
        for group in parse_list(item):
            if group.startswith("-"):
                negative.add(_normalize(group[1:]))
            else:
                positive.add(_normalize(group))
    if not positive:
        positive.add("default")
    return positive, negative


def platform_groups(selector: Optional[str]) -> List[str]:
    """Expand a platform selector (auto, all, none, or OS names) into groups."""
    if not selector or selector == "none":
        return []
    if selector == "auto":
        return [f"platform-{platform_module.system().lower()}"]
    if selector == "all":
        return [f"platform-{name}" for name in KNOWN_PLATFORMS]
    return [f"platform-{name}" for name in parse_list(selector)]


def project_groups(project: ProjectSpec) -> FrozenSet[str]:
    """Groups a project answers to, including the implicit ``default``."""
    groups = {_normalize(g) for g in project.effective_groups}
    if "notdefault" not in groups:
        groups.add("default")
    return frozenset(groups)


def matches_groups(project: ProjectSpec, positive: Set[str], negative: Set[str]) -> bool:
    groups = project_groups(project)
    return bool(groups & positive) and not (groups & negative)


def select_projects(
    manifest: ResolvedManifest,
    groups: Optional[Sequence[str]] = None,
    platform: Optional[str] = "auto",
    projects: Optional[Sequence[str]] = None,
) -> List[ProjectSpec]:
    """Compute the sync set.

    Args:
        manifest: Resolved manifest
        groups: Requested group expressions, e.g. ["default,-tools"]
        platform: Platform selector: auto, all, none or OS names
        projects: Explicit project names or paths; when given, group
            filtering is bypassed and only these projects are returned

    Returns:
        Selected projects in project-table order

    Raises:
        ProjectNotFound: If an explicitly requested project does not exist
    """
    table = list(manifest.projects.values())

    if projects:
        wanted = set(projects)
        known = {p.name for p in table} | {p.path for p in table}
        for item in projects:
            if item not in known and item.rstrip("/") not in known:
                raise ProjectNotFound(item)
        wanted |= {item.rstrip("/") for item in projects}
        return [p for p in table if p.name in wanted or p.path in wanted]

    positive, negative = split_groups(groups)
    positive.update(platform_groups(platform))

    selected = [p for p in table if matches_groups(p, positive, negative)]
    logger.info(f"Selected {len(selected)} of {len(table)} projects")
    return selected


def is_required(project: ProjectSpec) -> bool:
    """A project's failure fails the run unless it is in ``notdefault``."""
    return "notdefault" not in project.groups
