"""Pytest fixtures for repox tests."""
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from repox.core.errors import GitOperationError
from repox.workspace.git import GitClient, GitOptions, RepoHandle


def _git(args: List[str], cwd: Path) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def make_git_repo(path: Path, files: Dict[str, str], message: str = "Initial commit") -> str:
    """Create a git repository on branch main with the given files committed.

    Returns the SHA of the commit.
    """
    path.mkdir(parents=True, exist_ok=True)
    _git(["init", "--quiet"], path)
    _git(["checkout", "--quiet", "-b", "main"], path)
    _git(["config", "user.email", "test@example.com"], path)
    _git(["config", "user.name", "Test User"], path)
    _git(["config", "commit.gpgsign", "false"], path)
    return commit_files(path, files, message)


def commit_files(path: Path, files: Dict[str, str], message: str) -> str:
    """Write files into an existing repository and commit them."""
    for name, content in files.items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    _git(["add", "--all"], path)
    _git(["commit", "--quiet", "-m", message], path)
    return _git(["rev-parse", "HEAD"], path)


@pytest.fixture
def remotes_fixture(tmp_path: Path) -> Dict[str, object]:
    """Create a directory of upstream repositories served as a remote.

    Repositories live at ``<root>/<name>.git`` so that the remote fetch
    prefix is simply ``<root>``.

    Returns dict with:
        - root: Path used as the remote fetch prefix
        - shas: {project name: SHA of main}
        - tag_sha: SHA tagged v1.0 in platform/build
    """
    root = tmp_path / "remotes"
    shas = {}

    build = root / "platform" / "build.git"
    shas["platform/build"] = make_git_repo(
        build,
        {"README.md": "build system\n", "core/Makefile": "all:\n\techo build\n", "envsetup.sh": "export A=1\n"},
    )
    _git(["tag", "v1.0"], build)
    tag_sha = shas["platform/build"]
    shas["platform/build"] = commit_files(build, {"CHANGELOG": "v1.1\n"}, "Second commit")

    shas["platform/tools"] = make_git_repo(root / "platform" / "tools.git", {"tool.py": "print('hi')\n"})
    shas["platform/docs"] = make_git_repo(root / "platform" / "docs.git", {"index.md": "# Docs\n"})

    return {"root": root, "shas": shas, "tag_sha": tag_sha}


@pytest.fixture
def manifest_repo_fixture(tmp_path: Path, remotes_fixture) -> Dict[str, object]:
    """Create a manifest repository whose default.xml points at remotes_fixture.

    The manifest has one default project with a copyfile and a linkfile,
    one project in the notdefault group, and an include.

    Returns dict with:
        - path: Path to the manifest repository
        - remotes: remotes_fixture
    """
    root = remotes_fixture["root"]
    default_xml = f"""<?xml version="1.0" encoding="UTF-8"?>
<manifest>
  <remote name="origin" fetch="{root}" />
  <default remote="origin" revision="main" sync-j="2" />
  <notice>Welcome to the test workspace.</notice>
  <project name="platform/build" path="build">
    <copyfile src="core/Makefile" dest="Makefile" />
    <linkfile src="envsetup.sh" dest="tools/envsetup.sh" />
  </project>
  <project name="platform/docs" path="docs" groups="notdefault,docs" />
  <include name="extra.xml" />
</manifest>
"""
    extra_xml = """<?xml version="1.0" encoding="UTF-8"?>
<manifest>
  <project name="platform/tools" path="tools/bin" groups="tools" />
</manifest>
"""
    path = tmp_path / "manifest"
    make_git_repo(path, {"default.xml": default_xml, "extra.xml": extra_xml})
    return {"path": path, "remotes": remotes_fixture}


class FakeGit(GitClient):
    """In-memory GitClient that records calls and concurrency.

    ``failures`` maps a clone URL substring to a list of exceptions raised
    by successive clone attempts; once the list is empty clones succeed.
    """

    def __init__(self, delay: float = 0.0, failures: Optional[Dict[str, List[Exception]]] = None):
        self.delay = delay
        self.failures = failures or {}
        self.cloned: Dict[Path, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def _enter(self, action: str, target: str) -> None:
        with self._lock:
            self.calls.append((action, target))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()

    def _exit(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def open(self, destination: Path, remote_name: str = "origin") -> Optional[RepoHandle]:
        if Path(destination) in self.cloned:
            return RepoHandle(path=Path(destination), remote_name=remote_name)
        return None

    def clone(self, url: str, destination: Path, options: GitOptions) -> RepoHandle:
        self._enter("clone", url)
        try:
            if self.delay:
                time.sleep(self.delay)
            for marker, errors in self.failures.items():
                if marker in url and errors:
                    raise errors.pop(0)
            self.cloned[Path(destination)] = url
            return RepoHandle(path=Path(destination), remote_name=options.remote_name)
        finally:
            self._exit()

    def fetch(self, handle: RepoHandle, options: GitOptions) -> None:
        self._enter("fetch", str(handle.path))
        self._exit()

    def checkout(self, handle: RepoHandle, revision: str, options: Optional[GitOptions] = None) -> str:
        if Path(handle.path) not in self.cloned:
            raise GitOperationError(f"no repository at {handle.path}")
        self.calls.append(("checkout", revision))
        return "0123456789abcdef0123456789abcdef01234567"

    def default_remote(self, handle: RepoHandle) -> Tuple[str, str]:
        return handle.remote_name, self.cloned[Path(handle.path)]

    def set_remote_url(self, handle: RepoHandle, url: str) -> None:
        self.calls.append(("set-url", url))
        self.cloned[Path(handle.path)] = url

    def update_submodules(self, handle: RepoHandle, options: GitOptions) -> None:
        self.calls.append(("submodules", str(handle.path)))


@pytest.fixture
def fake_git_factory():
    """Return the FakeGit class so tests can configure delays and failures."""
    return FakeGit
