from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from n8n_manager.models import RemoteSpec
from n8n_manager.target import ExecResult

N8N_VERSION = "1.45.0"


class FakeN8nTarget:
    """Emulates the n8n CLI and a container filesystem rooted in a host directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.workflows: Dict[str, dict] = {}
        self.credentials: Dict[str, dict] = {}
        self.commands: List[List[str]] = []
        self.dry_run_commands: List[List[str]] = []
        self.copies: List[Tuple[str, str, str]] = []
        self.imports: List[Tuple[str, List[dict], Dict[str, str]]] = []
        self.fail_on: Set[str] = set()
        self.environment: Dict[str, str] = {"PATH": "/usr/bin", "HOME": "/home/node"}
        self._next_id = 1

    # Helpers for tests -----------------------------------------------------
    def add_workflow(self, workflow_id: str, name: str, credential_ids: Sequence[str] = ()) -> dict:
        nodes = [{"name": "Start", "type": "n8n-nodes-base.start", "parameters": {}}]
        for cred_id in credential_ids:
            nodes.append(
                {
                    "name": f"Uses {cred_id}",
                    "type": "n8n-nodes-base.httpRequest",
                    "credentials": {"httpBasicAuth": {"id": cred_id, "name": f"cred {cred_id}"}},
                }
            )
        workflow = {"id": workflow_id, "name": name, "active": False, "nodes": nodes}
        self.workflows[workflow_id] = workflow
        return workflow

    def add_credential(self, credential_id: str, name: str) -> dict:
        credential = {"id": credential_id, "name": name, "type": "httpBasicAuth", "data": {"user": name}}
        self.credentials[credential_id] = credential
        return credential

    def host_path(self, container_path: str) -> Path:
        return self.root / container_path.lstrip("/")

    def commands_mentioning(self, text: str) -> List[List[str]]:
        return [cmd for cmd in self.commands + self.dry_run_commands if any(text in part for part in cmd)]

    # ExecutionTarget -------------------------------------------------------
    def run(self, command: Sequence[str], dry_run: bool = False) -> ExecResult:
        command = list(command)
        if dry_run:
            self.dry_run_commands.append(command)
            return ExecResult()
        self.commands.append(command)

        if command[0] == "mkdir":
            for path in command[2:]:
                self.host_path(path).mkdir(parents=True, exist_ok=True)
            return ExecResult()
        if command[0] == "rm":
            for path in command[2:]:
                host = self.host_path(path)
                if host.is_dir():
                    shutil.rmtree(host)
                elif host.exists():
                    host.unlink()
            return ExecResult()
        if command[:2] == ["n8n", "--version"]:
            return ExecResult(output=f"{N8N_VERSION}\n")
        if command == ["printenv"]:
            if "printenv" in self.fail_on:
                return ExecResult(exit_code=1, error="printenv failed")
            return ExecResult(output="".join(f"{key}={value}\n" for key, value in self.environment.items()))

        if command[0] == "n8n" and command[1] in self.fail_on:
            return ExecResult(output="boom", exit_code=1, error="boom")
        action, _, noun = command[1].partition(":")
        collection = self.workflows if noun == "workflow" else self.credentials
        options = _parse_options(command[2:])
        if action == "export":
            return self._export(noun, collection, options)
        if action == "import":
            return self._import(noun, collection, options)
        return ExecResult(output=f"unknown command {command}", exit_code=127, error="unknown command")

    def copy_from(self, source: str, destination, dry_run: bool = False) -> ExecResult:
        if dry_run:
            return ExecResult()
        self.copies.append(("from", source, str(destination)))
        return _copy(self.host_path(source.rstrip(".").rstrip("/")), Path(destination), source.endswith("/."))

    def copy_to(self, source, destination: str, dry_run: bool = False) -> ExecResult:
        source = str(source)
        if dry_run:
            self.dry_run_commands.append(["cp", source, destination])
            return ExecResult()
        self.copies.append(("to", source, destination))
        contents_only = source.endswith("/.")
        return _copy(Path(source[:-2] if contents_only else source), self.host_path(destination), contents_only)

    # n8n CLI emulation -----------------------------------------------------
    def _export(self, noun: str, collection: Dict[str, dict], options: Dict[str, Optional[str]]) -> ExecResult:
        plural = "workflows" if noun == "workflow" else "credentials"
        if "id" in options:
            items = [collection[options["id"]]] if options["id"] in collection else []
        else:
            items = [collection[key] for key in sorted(collection)]
        if not items:
            message = f"No {plural} found with specified filters"
            return ExecResult(output=message, exit_code=1, error=message)

        output = options["output"]
        if "backup" in options or "separate" in options:
            directory = self.host_path(output)
            directory.mkdir(parents=True, exist_ok=True)
            for item in items:
                (directory / f"{item['id']}.json").write_text(_dump(item), encoding="utf-8")
        else:
            path = self.host_path(output)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(_dump(items), encoding="utf-8")
        return ExecResult(output=f"Successfully exported {len(items)} {plural}.")

    def _import(self, noun: str, collection: Dict[str, dict], options: Dict[str, Optional[str]]) -> ExecResult:
        source = self.host_path(options["input"])
        if "separate" in options:
            items = [json.loads(path.read_text(encoding="utf-8")) for path in sorted(source.glob("*.json"))]
        else:
            items = json.loads(source.read_text(encoding="utf-8"))
        identity = {key: options[key] for key in ("userId", "projectId") if key in options}
        self.imports.append((noun, [dict(item) for item in items], identity))
        for item in items:
            item = dict(item)
            if "id" not in item:
                item["id"] = f"new{self._next_id}"
                self._next_id += 1
            collection[item["id"]] = item
        return ExecResult(output=f"Successfully imported {len(items)} {noun}.")


def _parse_options(args: Sequence[str]) -> Dict[str, Optional[str]]:
    options: Dict[str, Optional[str]] = {}
    for arg in args:
        key, sep, value = arg[2:].partition("=")
        options[key] = value if sep else None
    return options


def _dump(payload) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def _copy(source: Path, destination: Path, contents_only: bool) -> ExecResult:
    if not source.exists():
        return ExecResult(output="no such file", exit_code=1, error=f"no such file: {source}")
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=contents_only)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    return ExecResult()


def git(*args: str, cwd: Optional[Path] = None) -> str:
    completed = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)
    return completed.stdout.decode("utf-8")


@pytest.fixture
def n8n(tmp_path: Path) -> FakeN8nTarget:
    return FakeN8nTarget(tmp_path / "container")


@pytest.fixture
def remote_path(tmp_path: Path) -> Path:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    path = tmp_path / "remote.git"
    git("init", "--bare", "-q", str(path))
    return path


@pytest.fixture
def remote(remote_path: Path) -> RemoteSpec:
    return RemoteSpec(url=remote_path.as_uri(), branch="main", display_name="test-remote")


@pytest.fixture
def workdirs(tmp_path: Path) -> Dict[str, Path]:
    dirs = {name: tmp_path / name for name in ("workspace", "snapshots")}
    for path in dirs.values():
        path.mkdir()
    return dirs


class RemoteReader:
    """Reads committed content from the bare remote."""

    def __init__(self, path: Path, branch: str = "main") -> None:
        self.path = path
        self.branch = branch

    def exists(self) -> bool:
        completed = subprocess.run(
            ["git", "--git-dir", str(self.path), "rev-parse", "--verify", "-q", f"refs/heads/{self.branch}"],
            capture_output=True,
        )
        return completed.returncode == 0

    def commit_count(self) -> int:
        if not self.exists():
            return 0
        return int(git("--git-dir", str(self.path), "rev-list", "--count", self.branch).strip())

    def last_message(self) -> str:
        return git("--git-dir", str(self.path), "log", "-1", "--format=%s", self.branch).strip()

    def files(self) -> List[str]:
        output = git("--git-dir", str(self.path), "ls-tree", "-r", "--name-only", self.branch)
        return output.split()

    def read_text(self, relpath: str) -> str:
        return git("--git-dir", str(self.path), "show", f"{self.branch}:{relpath}")

    def read_json(self, relpath: str):
        return json.loads(self.read_text(relpath))


@pytest.fixture
def remote_reader(remote_path: Path) -> RemoteReader:
    return RemoteReader(remote_path)
