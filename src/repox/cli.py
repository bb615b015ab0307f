"""repox CLI - Command line interface for repox."""
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

import click

from repox.core.errors import GitOperationError, ManifestError, WorkspaceError
from repox.manifest.filters import select_projects
from repox.workspace.git import SubprocessGit
from repox.workspace.orchestrator import Outcome, RetryPolicy, SyncOrchestrator, SyncProgress, SyncResult, SyncRun
from repox.workspace.overlay import apply_overlays
from repox.workspace.state import Workspace, WorkspaceConfig, init_workspace

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(name)s: %(message)s",
)
logger = logging.getLogger("repox")

EXIT_OK = 0
EXIT_SYNC_FAILED = 1
EXIT_MANIFEST_ERROR = 3
EXIT_WORKSPACE_ERROR = 4
EXIT_CANCELLED = 130


class EchoProgress(SyncProgress):
    """Prints one line per finished project."""

    def __init__(self):
        self.total = 0
        self.done = 0

    def start(self, total: int) -> None:
        self.total = total
        self.done = 0

    def project_done(self, result: SyncResult) -> None:
        self.done += 1
        status = "ok" if result.outcome == Outcome.SUCCEEDED else result.outcome.value
        click.echo(f"[{self.done}/{self.total}] {result.path}: {status}")


def _print_summary(run: SyncRun) -> None:
    synced = sum(1 for r in run.results if r.outcome == Outcome.SUCCEEDED)
    click.echo(f"Synced {synced} of {len(run.results)} projects")
    for result in run.failed:
        detail = result.overlay_error if result.outcome == Outcome.SUCCEEDED else result.error
        marker = "" if result.required else " (optional)"
        click.echo(f"  [FAIL] {result.path}{marker}: {detail}", err=True)
    if run.cancelled:
        click.echo("Sync cancelled before completion", err=True)


def _exit_code(run: SyncRun) -> int:
    if run.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if run.succeeded else EXIT_SYNC_FAILED


def _run_sync(
    workspace: Workspace,
    config: WorkspaceConfig,
    projects: Sequence[str] = (),
    jobs: Optional[int] = None,
    retries: int = 3,
    timeout: Optional[float] = None,
) -> int:
    """Resolve the stored manifest, sync the selected projects, apply overlays."""
    git = SubprocessGit()
    manifest = workspace.load_manifest(config)
    sync_set = select_projects(
        manifest,
        groups=config.groups,
        platform=config.platform,
        projects=list(projects) or None,
    )

    orchestrator = SyncOrchestrator(
        git=git,
        manifest=manifest,
        workspace_root=workspace.root,
        jobs=jobs or config.jobs,
        retry=RetryPolicy(max_attempts=retries),
        depth=config.depth,
        clone_filter=config.clone_filter,
        timeout=timeout,
        progress=EchoProgress(),
    )
    run = orchestrator.run(sync_set)
    run = apply_overlays(sync_set, run, workspace.root)

    _print_summary(run)
    if run.succeeded and manifest.notice:
        click.echo(manifest.notice)
    return _exit_code(run)


@click.group()
@click.version_option(package_name="repox")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors")
def main(verbose: bool, quiet: bool):
    """repox - manage a workspace of many git repositories from one manifest."""
    if verbose:
        logger.setLevel(logging.DEBUG)
    elif quiet:
        logger.setLevel(logging.WARNING)


workspace_option = click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    envvar="REPOX_WORKSPACE",
    help="Workspace root (default: current directory)",
)
jobs_option = click.option(
    "-j",
    "--jobs",
    type=click.IntRange(min=1),
    default=None,
    envvar="REPOX_JOBS",
    help="Number of projects to sync in parallel",
)


@main.command()
@click.option("-u", "--manifest-url", required=True, help="Manifest repository location or manifest file")
@click.option("-b", "--manifest-branch", default="HEAD", help="Manifest branch or revision (use HEAD for default)")
@click.option("-m", "--manifest-name", default="default.xml", help="Initial manifest file")
@click.option(
    "-g",
    "--groups",
    multiple=True,
    help="Restrict projects to the given group(s) [default|all|G1,G2,-G3]",
)
@click.option("-p", "--platform", default="auto", help="Platform groups to include [auto|all|none|linux|darwin|...]")
@click.option("--depth", type=click.IntRange(min=1), default=None, help="Create shallow clones with the given depth")
@click.option("--clone-filter", default=None, help="Partial clone filter, e.g. blob:none")
@click.option("--no-sync", is_flag=True, help="Only initialize the workspace, do not sync projects")
@jobs_option
@workspace_option
def init(
    manifest_url: str,
    manifest_branch: str,
    manifest_name: str,
    groups: Tuple[str, ...],
    platform: str,
    depth: Optional[int],
    clone_filter: Optional[str],
    no_sync: bool,
    jobs: Optional[int],
    workspace: Path,
):
    """Initialize a workspace from a manifest and sync it.

    Examples:
        repox init -u https://example.com/platform/manifest -b main
        repox init -u ./default.xml -g default,-tools

    Exit codes:
        0: Success
        1: At least one required project failed to sync
        3: Manifest could not be loaded or resolved
        4: Workspace could not be initialized
        130: Sync was cancelled
    """
    config = WorkspaceConfig(
        manifest_url=manifest_url,
        manifest_branch=manifest_branch,
        manifest_name=manifest_name,
        groups=list(groups),
        platform=platform,
        depth=depth,
        clone_filter=clone_filter,
        jobs=jobs,
    )
    try:
        ws = init_workspace(workspace, config, SubprocessGit())
        config = ws.load_config()
        click.echo(f"[OK] Workspace initialized in {ws.root}")
        if no_sync:
            sys.exit(EXIT_OK)
        sys.exit(_run_sync(ws, config, jobs=jobs))

    except ManifestError as e:
        logger.error(f"Manifest error: {e}")
        sys.exit(EXIT_MANIFEST_ERROR)

    except (WorkspaceError, GitOperationError) as e:
        logger.error(f"Init failed: {e}")
        sys.exit(EXIT_WORKSPACE_ERROR)


@main.command()
@click.argument("projects", nargs=-1)
@click.option("-g", "--groups", multiple=True, help="Override the groups stored at init time")
@click.option("-p", "--platform", default=None, help="Override the platform stored at init time")
@click.option("--retries", type=click.IntRange(min=1), default=3, help="Attempts per project on network errors")
@click.option("--timeout", type=float, default=None, help="Per-operation timeout in seconds")
@jobs_option
@workspace_option
def sync(
    projects: Tuple[str, ...],
    groups: Tuple[str, ...],
    platform: Optional[str],
    retries: int,
    timeout: Optional[float],
    jobs: Optional[int],
    workspace: Path,
):
    """Update the working tree to the manifest's revisions.

    With PROJECTS (names or paths), only those projects are synced.

    Exit codes:
        0: Success
        1: At least one required project failed to sync
        3: Manifest could not be loaded or resolved
        4: Not inside an initialized workspace
        130: Sync was cancelled
    """
    try:
        ws = Workspace.find(workspace)
        config = ws.load_config()
        overrides = {}
        if groups:
            overrides["groups"] = list(groups)
        if platform:
            overrides["platform"] = platform
        config = config.model_copy(update=overrides)
        sys.exit(_run_sync(ws, config, projects=projects, jobs=jobs, retries=retries, timeout=timeout))

    except ManifestError as e:
        logger.error(f"Manifest error: {e}")
        sys.exit(EXIT_MANIFEST_ERROR)

    except WorkspaceError as e:
        logger.error(f"{e}")
        sys.exit(EXIT_WORKSPACE_ERROR)


@main.command(name="list")
@click.option("-g", "--groups", multiple=True, help="Override the groups stored at init time")
@click.option("-p", "--platform", default=None, help="Override the platform stored at init time")
@workspace_option
def list_projects(groups: Tuple[str, ...], platform: Optional[str], workspace: Path):
    """List the projects in the sync set and their directories."""
    try:
        ws = Workspace.find(workspace)
        config = ws.load_config()
        manifest = ws.load_manifest(config)
        selected = select_projects(
            manifest,
            groups=list(groups) or config.groups,
            platform=platform or config.platform,
        )
    except ManifestError as e:
        logger.error(f"Manifest error: {e}")
        sys.exit(EXIT_MANIFEST_ERROR)
    except WorkspaceError as e:
        logger.error(f"{e}")
        sys.exit(EXIT_WORKSPACE_ERROR)

    for project in selected:
        click.echo(f"{project.path} : {project.name}")


if __name__ == "__main__":
    main()
