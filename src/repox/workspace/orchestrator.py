"""Sync orchestrator: materialize the sync set with a bounded worker pool."""
import logging
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from repox.core.errors import RepoxError, SyncCancelledError, TransientGitError
from repox.manifest.filters import is_required
from repox.manifest.resolver import ProjectSpec, ResolvedManifest
from repox.workspace.git import GitClient, GitOptions, branch_for

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncResult(BaseModel):
    """Outcome of syncing one project."""

    name: str
    path: str
    destination: str
    outcome: Outcome
    error: Optional[str] = None
    duration: float = Field(default=0.0, description="Seconds spent on the project")
    attempts: int = 0
    revision_id: Optional[str] = None
    required: bool = True
    overlay_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED and self.overlay_error is None


class SyncRun(BaseModel):
    """All results of one orchestration, in sync-set order."""

    results: List[SyncResult] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[SyncResult]:
        return [r for r in self.results if not r.ok]

    @property
    def succeeded(self) -> bool:
        """True when not cancelled and every required project succeeded."""
        if self.cancelled:
            return False
        return all(r.ok for r in self.results if r.required)


class RetryPolicy(BaseModel):
    """Exponential backoff with jitter for transient git failures."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=8.0, ge=0.0)
    jitter: float = Field(default=0.25, ge=0.0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1)) + random.uniform(0.0, self.jitter)


class SyncProgress(ABC):
    """Observer for orchestration progress."""

    @abstractmethod
    def start(self, total: int) -> None:
        ...  # pragma: no cover

    @abstractmethod
    def project_done(self, result: SyncResult) -> None:
        ...  # pragma: no cover


class NullSyncProgress(SyncProgress):
    def start(self, total: int) -> None:
        pass

    def project_done(self, result: SyncResult) -> None:
        pass


def default_jobs(manifest: Optional[ResolvedManifest] = None) -> int:
    """Worker count: the manifest's sync-j, else host parallelism."""
    if manifest is not None and manifest.default.sync_jobs:
        return manifest.default.sync_jobs
    return max(1, os.cpu_count() or 1)


class SyncOrchestrator:
    """Clone or fetch, then check out, every project of a sync set.

    At most ``jobs`` projects are in flight. A failing project never stops
    its siblings. Setting ``cancel`` stops dispatch of new projects and is
    handed to the git collaborator so running operations can abort.
    """

    def __init__(
        self,
        git: GitClient,
        manifest: ResolvedManifest,
        workspace_root: Path,
        jobs: Optional[int] = None,
        retry: Optional[RetryPolicy] = None,
        depth: Optional[int] = None,
        clone_filter: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        progress: Optional[SyncProgress] = None,
    ):
        self.git = git
        self.manifest = manifest
        self.workspace_root = Path(workspace_root)
        self.jobs = max(1, jobs or default_jobs(manifest))
        self.retry = retry or RetryPolicy()
        self.depth = depth
        self.clone_filter = clone_filter
        self.timeout = timeout
        self.cancel = cancel or threading.Event()
        self.progress = progress or NullSyncProgress()
        self._finished: Dict[str, threading.Event] = {}
        self._outcomes: Dict[str, Outcome] = {}

    def run(self, projects: Sequence[ProjectSpec]) -> SyncRun:
        """Sync every project and return results in the order given."""
        projects = list(projects)
        results: List[Optional[SyncResult]] = [None] * len(projects)
        self._finished = {p.path: threading.Event() for p in projects}
        self._outcomes = {}
        self.progress.start(len(projects))

        # Parents are dispatched before anything nested inside them.
        order = sorted(range(len(projects)), key=lambda i: projects[i].path.count("/"))
        logger.info(f"Syncing {len(projects)} projects with {self.jobs} jobs")

        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="repox-sync") as executor:
            futures: Dict[Future, int] = {
                executor.submit(self._sync_one, projects[index]): index for index in order
            }
            pending = set(futures)
            while pending:
                try:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; waiting for in-flight projects to stop")
                    self.cancel.set()
                    continue
                for future in done:
                    result = future.result()
                    results[futures[future]] = result
                    self.progress.project_done(result)

        return SyncRun(results=results, cancelled=self.cancel.is_set())

    def _result(self, project: ProjectSpec, outcome: Outcome, **kwargs) -> SyncResult:
        return SyncResult(
            name=project.name,
            path=project.path,
            destination=str(self.workspace_root / project.path),
            outcome=outcome,
            required=is_required(project),
            **kwargs,
        )

    def _blocking_ancestor(self, project: ProjectSpec) -> Optional[str]:
        """Wait for enclosing projects; return the path of one that failed."""
        for path, finished in self._finished.items():
            if project.path.startswith(path + "/"):
                finished.wait()
                if self._outcomes.get(path) != Outcome.SUCCEEDED:
                    return path
        return None

    def _sync_one(self, project: ProjectSpec) -> SyncResult:
        """Worker entry point; always returns a result for the project."""
        result = None
        try:
            result = self._sync_project(project)
        except Exception as e:
            logger.exception(f"{project.path}: unexpected error")
            result = self._result(project, Outcome.FAILED, error=f"{type(e).__name__}: {e}")
        finally:
            self._outcomes[project.path] = result.outcome if result is not None else Outcome.FAILED
            self._finished[project.path].set()
        return result

    def _sync_project(self, project: ProjectSpec) -> SyncResult:
        if self.cancel.is_set():
            return self._result(project, Outcome.SKIPPED, error="cancelled")

        blocked_by = self._blocking_ancestor(project)
        if blocked_by is not None:
            logger.warning(f"{project.path}: skipped because {blocked_by} did not sync")
            return self._result(project, Outcome.SKIPPED, error=f"enclosing project {blocked_by} did not sync")

        started = time.monotonic()
        destination = self.workspace_root / project.path
        attempts = 0
        while True:
            attempts += 1
            try:
                destination.mkdir(parents=True, exist_ok=True)
                revision_id = self._materialize(project, destination)
                logger.info(f"{project.path}: synced {project.revision} ({revision_id[:12]})")
                return self._result(
                    project,
                    Outcome.SUCCEEDED,
                    revision_id=revision_id,
                    attempts=attempts,
                    duration=time.monotonic() - started,
                )
            except SyncCancelledError as e:
                logger.warning(f"{project.path}: {e}")
                return self._result(
                    project, Outcome.SKIPPED, error=str(e), attempts=attempts, duration=time.monotonic() - started
                )
            except TransientGitError as e:
                if attempts < self.retry.max_attempts:
                    delay = self.retry.delay(attempts)
                    logger.warning(
                        f"{project.path}: {e}; retrying in {delay:.1f}s "
                        f"(attempt {attempts + 1}/{self.retry.max_attempts})"
                    )
                    if self.cancel.wait(delay):
                        return self._result(
                            project, Outcome.SKIPPED, error="cancelled", attempts=attempts,
                            duration=time.monotonic() - started,
                        )
                    continue
                error = e
            except (RepoxError, OSError) as e:
                error = e

            logger.error(f"{project.path}: {error}")
            return self._result(
                project, Outcome.FAILED, error=str(error), attempts=attempts, duration=time.monotonic() - started
            )

    def _options(self, project: ProjectSpec) -> GitOptions:
        remote = self.manifest.remote_for(project)
        return GitOptions(
            remote_name=remote.local_name,
            depth=project.clone_depth or self.depth,
            clone_filter=self.clone_filter,
            branch=branch_for(project.revision) if project.sync_current_branch_only else None,
            tags=project.sync_tags is not False,
            timeout=self.timeout,
            cancel=self.cancel,
        )

    def _materialize(self, project: ProjectSpec, destination: Path) -> str:
        """Clone-or-fetch then checkout; returns the checked out commit id."""
        url = self.manifest.clone_url(project)
        options = self._options(project)

        handle = self.git.open(destination, options.remote_name)
        if handle is None:
            handle = self.git.clone(url, destination, options)
        else:
            _, current_url = self.git.default_remote(handle)
            if current_url != url:
                self.git.set_remote_url(handle, url)
            self.git.fetch(handle, options)

        revision_id = self.git.checkout(handle, project.revision, options)
        if project.sync_submodules:
            self.git.update_submodules(handle, options)
        return revision_id
