from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

LOG = logging.getLogger(__name__)

GIT_BINARY = "git"
DEFAULT_REMOTE = "origin"
_CREDENTIALS_IN_URL = re.compile(r"(https?://)[^/@\s]+@")


class GitError(Exception):
    """Raised when a git operation against the snapshot store fails."""


def redact(text: str) -> str:
    return _CREDENTIALS_IN_URL.sub(r"\1***@", text)


def _run_git(args: Sequence[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    cmd = [GIT_BINARY, *args]
    if cwd is not None:
        cmd = [GIT_BINARY, "-C", str(cwd), *args]
    LOG.debug("Running %s", redact(" ".join(cmd)))
    try:
        return subprocess.run(cmd, check=False, capture_output=True)
    except FileNotFoundError as exc:
        raise GitError(f"git is not installed: {exc}") from exc


def _stderr(completed: subprocess.CompletedProcess) -> str:
    return redact(completed.stderr.decode("utf-8", "ignore").strip())


class GitSnapshotStore:
    """Snapshot store backed by a local git working copy and one remote."""

    def __init__(self, path: Path, remote: str = DEFAULT_REMOTE) -> None:
        self.path = Path(path)
        self.remote = remote

    def __repr__(self) -> str:
        return f"GitSnapshotStore({str(self.path)!r})"

    # Repository setup ------------------------------------------------------
    def init(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        self._git("init", "-q")

    def set_remote(self, url: str) -> None:
        completed = _run_git(["remote", "add", self.remote, url], cwd=self.path)
        if completed.returncode != 0:
            LOG.debug("Remote '%s' already exists; updating URL", self.remote)
            self._git("remote", "set-url", self.remote, url)

    def configure_identity(self, name: str, email: str) -> None:
        self._git("config", "user.name", name)
        self._git("config", "user.email", email)

    @classmethod
    def clone(cls, url: str, destination: Path, branch: str, depth: Optional[int] = 1) -> "GitSnapshotStore":
        args = ["clone", "--single-branch", "--branch", branch]
        if depth:
            args.extend(["--depth", str(depth)])
        args.extend([url, str(destination)])
        LOG.info("Cloning branch '%s' into %s", branch, destination)
        completed = _run_git(args)
        if completed.returncode != 0:
            raise GitError(f"git clone failed: {_stderr(completed)}")
        return cls(destination)

    # Branch handling -------------------------------------------------------
    def remote_branch_exists(self, branch: str) -> bool:
        completed = _run_git(
            ["ls-remote", "--heads", self.remote, f"refs/heads/{branch}"],
            cwd=self.path,
        )
        if completed.returncode != 0:
            raise GitError(f"Remote is unreachable or access was denied: {_stderr(completed)}")
        return bool(completed.stdout.strip())

    def fetch_branch(self, branch: str, depth: Optional[int] = 1) -> bool:
        if not self.remote_branch_exists(branch):
            LOG.warning("Branch '%s' not found on remote; it will be created", branch)
            return False
        args = ["fetch", "-q"]
        if depth:
            args.extend(["--depth", str(depth)])
        args.extend([self.remote, branch])
        self._git(*args)
        return True

    def checkout_or_create(self, branch: str, exists: bool) -> None:
        if exists:
            self._git("checkout", "-q", "-B", branch, "FETCH_HEAD")
        else:
            # HEAD is unborn in a fresh repository; pointing it at the branch creates it on first commit
            self._git("symbolic-ref", "HEAD", f"refs/heads/{branch}")

    # Staging and publishing ------------------------------------------------
    def stage_all(self, paths: Sequence[str] = (".",)) -> None:
        self._git("add", "-A", "--", *paths)

    def commit(self, message: str) -> Optional[str]:
        staged = _run_git(["diff", "--cached", "--quiet"], cwd=self.path)
        if staged.returncode == 0 and self.has_commits():
            LOG.info("Nothing to commit")
            return None
        self._git("commit", "-q", "--allow-empty", "-m", message)
        return self.head_commit()

    def push(self, branch: str) -> None:
        LOG.info("Pushing branch '%s' to %s", branch, self.remote)
        self._git("push", "-q", "-u", self.remote, branch)

    # History queries -------------------------------------------------------
    def has_commits(self) -> bool:
        completed = _run_git(["rev-parse", "--verify", "-q", "HEAD"], cwd=self.path)
        return completed.returncode == 0

    def head_commit(self) -> str:
        return self._git("rev-parse", "HEAD").decode("utf-8").strip()

    def list_commits_matching(self, pattern: str) -> List[str]:
        if not self.has_commits():
            return []
        output = self._git("log", "--format=%H", "--fixed-strings", f"--grep={pattern}")
        return output.decode("utf-8").split()

    def show_file_at_commit(self, commit: str, relpath: str) -> Optional[bytes]:
        completed = _run_git(["show", f"{commit}:{relpath}"], cwd=self.path)
        if completed.returncode != 0:
            return None
        return completed.stdout

    def list_files_at_commit(self, commit: str, reldir: str) -> List[str]:
        completed = _run_git(["ls-tree", "-z", "--name-only", commit, f"{reldir.rstrip('/')}/"], cwd=self.path)
        if completed.returncode != 0:
            return []
        return [name for name in completed.stdout.decode("utf-8").split("\0") if name]

    def _git(self, *args: str) -> bytes:
        completed = _run_git(args, cwd=self.path)
        if completed.returncode != 0:
            raise GitError(f"git {args[0]} failed: {_stderr(completed)}")
        return completed.stdout
