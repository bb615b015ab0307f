"""Git collaborator: clone, fetch and checkout through the git CLI."""
import logging
import os
import re
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from repox.core.errors import GitOperationError, SyncCancelledError, TransientGitError

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2
_SHA_PATTERN = re.compile(r"^[0-9a-f]{7,40}$")

# Substrings of git's stderr that indicate a retryable network failure.
_TRANSIENT_MARKERS = (
    "timed out",
    "connection reset",
    "connection refused",
    "the remote end hung up unexpectedly",
    "early eof",
    "rpc failed",
    "unexpected disconnect",
    "temporary failure in name resolution",
    "operation too slow",
    "http 502",
    "http 503",
    "http 504",
    "error: 502",
    "error: 503",
    "error: 504",
)


@dataclass
class GitOptions:
    """Per-operation options passed to the git collaborator."""

    remote_name: str = "origin"
    depth: Optional[int] = None
    clone_filter: Optional[str] = None
    branch: Optional[str] = None
    tags: bool = True
    timeout: Optional[float] = None
    cancel: Optional[threading.Event] = field(default=None, repr=False)


@dataclass(frozen=True)
class RepoHandle:
    """A local repository known to the collaborator."""

    path: Path
    remote_name: str = "origin"


def is_commit_id(revision: str) -> bool:
    return bool(_SHA_PATTERN.match(revision))


def branch_for(revision: str) -> Optional[str]:
    """Branch or tag name to restrict a fetch to, or None for commit ids."""
    if is_commit_id(revision):
        return None
    for prefix in ("refs/heads/", "refs/tags/"):
        if revision.startswith(prefix):
            return revision[len(prefix):]
    if revision.startswith("refs/"):
        return None
    return revision


def _kill_group(proc: subprocess.Popen) -> None:
    """Kill git and every helper it spawned (ssh, remote helpers)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.communicate()


def classify_failure(action: str, stderr: str) -> GitOperationError:
    """Map git's stderr to a transient or permanent error."""
    message = f"git {action} failed: {stderr.strip() or 'unknown error'}"
    lowered = stderr.lower()
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientGitError(message)
    return GitOperationError(message)


class GitClient(ABC):
    """Narrow interface the sync orchestrator drives.

    Implementations own every wire-protocol and object-store concern.
    """

    @abstractmethod
    def open(self, destination: Path, remote_name: str = "origin") -> Optional[RepoHandle]:
        """Return a handle for an existing checkout at destination, else None."""

    @abstractmethod
    def clone(self, url: str, destination: Path, options: GitOptions) -> RepoHandle:
        ...

    @abstractmethod
    def fetch(self, handle: RepoHandle, options: GitOptions) -> None:
        ...

    @abstractmethod
    def checkout(self, handle: RepoHandle, revision: str, options: Optional[GitOptions] = None) -> str:
        """Check out revision (detached) and return the resulting commit id."""

    @abstractmethod
    def default_remote(self, handle: RepoHandle) -> Tuple[str, str]:
        """Return (name, url) of the repository's fetch remote."""

    @abstractmethod
    def set_remote_url(self, handle: RepoHandle, url: str) -> None:
        ...

    @abstractmethod
    def update_submodules(self, handle: RepoHandle, options: GitOptions) -> None:
        ...


class SubprocessGit(GitClient):
    """GitClient backed by the ``git`` executable."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    def _run(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        options: Optional[GitOptions] = None,
    ) -> subprocess.CompletedProcess:
        """Run git, honouring the options' timeout and cancellation token.

        Raises:
            TransientGitError: If the timeout expires
            SyncCancelledError: If the cancellation token is set
        """
        options = options or GitOptions()
        cmd = [self.executable, *args]
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        logger.debug(f"Running {' '.join(cmd)} in {cwd or os.getcwd()}")

        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            env=env,
            start_new_session=True,
        )
        deadline = time.monotonic() + options.timeout if options.timeout else None
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if options.cancel is not None and options.cancel.is_set():
                    _kill_group(proc)
                    raise SyncCancelledError(f"git {args[0]} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    _kill_group(proc)
                    raise TransientGitError(f"git {args[0]} timed out after {options.timeout}s")
        return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)

    def open(self, destination: Path, remote_name: str = "origin") -> Optional[RepoHandle]:
        destination = Path(destination)
        if (destination / ".git").exists():
            return RepoHandle(path=destination, remote_name=remote_name)
        return None

    def clone(self, url: str, destination: Path, options: GitOptions) -> RepoHandle:
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        args = ["clone", "--quiet", "--no-checkout", "--origin", options.remote_name]
        if options.depth:
            args += ["--depth", str(options.depth)]
        if options.clone_filter:
            args.append(f"--filter={options.clone_filter}")
        if options.branch:
            args += ["--single-branch", "--branch", options.branch]
        if not options.tags:
            args.append("--no-tags")
        args += [url, str(destination)]

        logger.info(f"Cloning {url} to {destination}")
        result = self._run(args, options=options)
        if result.returncode != 0:
            raise classify_failure("clone", result.stderr)
        return RepoHandle(path=destination, remote_name=options.remote_name)

    def fetch(self, handle: RepoHandle, options: GitOptions) -> None:
        args = ["fetch", "--quiet"]
        args.append("--tags" if options.tags else "--no-tags")
        if options.depth:
            args += ["--depth", str(options.depth)]
        args.append(handle.remote_name)
        if options.branch:
            args.append(options.branch)

        logger.info(f"Fetching {handle.remote_name} in {handle.path}")
        result = self._run(args, cwd=handle.path, options=options)
        if result.returncode != 0:
            raise classify_failure("fetch", result.stderr)

    def _rev_parse(self, handle: RepoHandle, rev: str) -> Optional[str]:
        result = self._run(["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"], cwd=handle.path)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def checkout(self, handle: RepoHandle, revision: str, options: Optional[GitOptions] = None) -> str:
        if revision.startswith("refs/heads/"):
            candidates = [f"{handle.remote_name}/{revision[len('refs/heads/'):]}", revision]
        elif revision.startswith("refs/"):
            candidates = [revision]
        else:
            candidates = [f"{handle.remote_name}/{revision}", revision]

        commit_id = None
        for candidate in candidates:
            commit_id = self._rev_parse(handle, candidate)
            if commit_id:
                break
        if not commit_id:
            raise GitOperationError(f"revision {revision} not found in {handle.path}")

        logger.info(f"Checking out {revision} ({commit_id[:12]}) in {handle.path}")
        result = self._run(["checkout", "--quiet", "--detach", commit_id], cwd=handle.path, options=options)
        if result.returncode != 0:
            raise classify_failure("checkout", result.stderr)
        return commit_id

    def default_remote(self, handle: RepoHandle) -> Tuple[str, str]:
        result = self._run(["remote"], cwd=handle.path)
        if result.returncode != 0:
            raise classify_failure("remote", result.stderr)
        names = result.stdout.split()
        if not names:
            raise GitOperationError(f"no remote configured in {handle.path}")
        name = handle.remote_name if handle.remote_name in names else names[0]

        result = self._run(["remote", "get-url", name], cwd=handle.path)
        if result.returncode != 0:
            raise classify_failure("remote get-url", result.stderr)
        return name, result.stdout.strip()

    def set_remote_url(self, handle: RepoHandle, url: str) -> None:
        logger.info(f"Updating {handle.remote_name} url in {handle.path} to {url}")
        result = self._run(["remote", "set-url", handle.remote_name, url], cwd=handle.path)
        if result.returncode != 0:
            raise classify_failure("remote set-url", result.stderr)

    def update_submodules(self, handle: RepoHandle, options: GitOptions) -> None:
        result = self._run(
            ["submodule", "update", "--init", "--recursive", "--quiet"],
            cwd=handle.path,
            options=options,
        )
        if result.returncode != 0:
            raise classify_failure("submodule update", result.stderr)
