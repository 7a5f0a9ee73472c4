from __future__ import annotations

import subprocess
from typing import List

import pytest

from n8n_manager import target as target_module
from n8n_manager.target import DockerTarget, TargetNotFoundError, resolve_container


class Recorder:
    def __init__(self, returncode: int = 0, stdout: bytes = b"") -> None:
        self.calls: List[List[str]] = []
        self.returncode = returncode
        self.stdout = stdout

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=b"")


def test_run_uses_docker_exec_without_a_shell(monkeypatch):
    recorder = Recorder(stdout=b"ok\n")
    monkeypatch.setattr(target_module.subprocess, "run", recorder)

    result = DockerTarget("abc123").run(["n8n", "export:workflow", "--all", "--output=/tmp/x.json"])

    assert result.ok
    assert result.output == "ok\n"
    assert recorder.calls == [["docker", "exec", "abc123", "n8n", "export:workflow", "--all", "--output=/tmp/x.json"]]


def test_dry_run_does_not_execute(monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(target_module.subprocess, "run", recorder)

    result = DockerTarget("abc123").run(["rm", "-rf", "/tmp/x"], dry_run=True)

    assert result.ok
    assert recorder.calls == []


def test_failure_reports_exit_code_and_output(monkeypatch):
    monkeypatch.setattr(target_module.subprocess, "run", Recorder(returncode=3, stdout=b"No workflows found\n"))

    result = DockerTarget("abc123").run(["n8n", "export:workflow", "--all", "--output=/tmp/x.json"])

    assert not result.ok
    assert result.exit_code == 3
    assert "No workflows found" in result.output
    assert result.error == "No workflows found"


def test_missing_docker_binary(monkeypatch):
    def _missing(cmd, **kwargs):
        raise FileNotFoundError("docker")

    monkeypatch.setattr(target_module.subprocess, "run", _missing)

    result = DockerTarget("abc123").copy_from("/tmp/x.json", "/host/x.json")

    assert result.exit_code == 127


def test_copy_directions(monkeypatch):
    recorder = Recorder()
    monkeypatch.setattr(target_module.subprocess, "run", recorder)
    docker = DockerTarget("abc123")

    docker.copy_from("/tmp/s/workflows.json", "/host/workflows.json")
    docker.copy_to("/host/credentials.json", "/tmp/s/credentials.json")

    assert recorder.calls == [
        ["docker", "cp", "abc123:/tmp/s/workflows.json", "/host/workflows.json"],
        ["docker", "cp", "/host/credentials.json", "abc123:/tmp/s/credentials.json"],
    ]


def test_empty_container_id_is_rejected():
    with pytest.raises(ValueError):
        DockerTarget("")


def test_resolve_container_falls_back_to_id(monkeypatch):
    calls = []

    def _ps(cmd, **kwargs):
        calls.append(cmd)
        stdout = b"" if "name=abc" in cmd else b"abc123def\n"
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr=b"")

    monkeypatch.setattr(target_module.subprocess, "run", _ps)

    assert resolve_container("abc") == "abc123def"
    assert [cmd[-1] for cmd in calls] == ["name=abc", "id=abc"]


def test_resolve_container_not_running(monkeypatch):
    monkeypatch.setattr(target_module.subprocess, "run", Recorder(stdout=b""))

    with pytest.raises(TargetNotFoundError, match="not found"):
        resolve_container("n8n")
