from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Sequence, Union

LOG = logging.getLogger(__name__)

DOCKER_BINARY = "docker"
COMMAND_NOT_FOUND = 127

PathLike = Union[str, Path]


class TargetNotFoundError(Exception):
    """Raised when the requested container is not running."""


@dataclass
class ExecResult:
    output: str = ""
    exit_code: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExecutionTarget(Protocol):
    def run(self, command: Sequence[str], dry_run: bool = False) -> ExecResult:
        ...

    def copy_from(self, source: str, destination: PathLike, dry_run: bool = False) -> ExecResult:
        ...

    def copy_to(self, source: PathLike, destination: str, dry_run: bool = False) -> ExecResult:
        ...


class DockerTarget:
    """Runs commands inside a running Docker container."""

    def __init__(self, container_id: str, docker_binary: str = DOCKER_BINARY) -> None:
        if not container_id:
            raise ValueError("Container ID must not be empty")
        self.container_id = container_id
        self._docker = docker_binary

    def __repr__(self) -> str:
        return f"DockerTarget({self.container_id!r})"

    def run(self, command: Sequence[str], dry_run: bool = False) -> ExecResult:
        return self._invoke(
            [self._docker, "exec", self.container_id, *command],
            description=" ".join(command),
            dry_run=dry_run,
        )

    def copy_from(self, source: str, destination: PathLike, dry_run: bool = False) -> ExecResult:
        return self._invoke(
            [self._docker, "cp", f"{self.container_id}:{source}", str(destination)],
            description=f"copy {self.container_id}:{source} -> {destination}",
            dry_run=dry_run,
        )

    def copy_to(self, source: PathLike, destination: str, dry_run: bool = False) -> ExecResult:
        return self._invoke(
            [self._docker, "cp", str(source), f"{self.container_id}:{destination}"],
            description=f"copy {source} -> {self.container_id}:{destination}",
            dry_run=dry_run,
        )

    def _invoke(self, cmd: List[str], description: str, dry_run: bool) -> ExecResult:
        if dry_run:
            LOG.info("DRY RUN: would execute in container %s: %s", self.container_id, description)
            return ExecResult()

        LOG.debug("Executing in container %s: %s", self.container_id, description)
        try:
            completed = subprocess.run(
                cmd,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            LOG.error("Docker binary not found: %s", exc)
            return ExecResult(exit_code=COMMAND_NOT_FOUND, error=str(exc))

        output = completed.stdout.decode("utf-8", "ignore")
        if completed.returncode != 0:
            LOG.error("Command failed in container (exit code %s): %s", completed.returncode, description)
            if output:
                LOG.debug("Container output:\n%s", output)
            return ExecResult(
                output=output,
                exit_code=completed.returncode,
                error=output.strip() or f"exit code {completed.returncode}",
            )
        return ExecResult(output=output)


def resolve_container(name_or_id: str, docker_binary: str = DOCKER_BINARY) -> str:
    # docker ANDs filters with different keys, so query by name and by ID separately
    for key in ("name", "id"):
        cmd = [docker_binary, "ps", "-q", "--filter", f"{key}={name_or_id}"]
        try:
            completed = subprocess.run(cmd, check=True, capture_output=True)
        except FileNotFoundError as exc:
            raise TargetNotFoundError(f"Docker is not available: {exc}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", "ignore")
            raise TargetNotFoundError(f"Failed to list containers: {stderr.strip()}") from exc

        found = completed.stdout.decode("utf-8", "ignore").split()
        if found:
            LOG.debug("Resolved container %s by %s to %s", name_or_id, key, found[0])
            return found[0]

    raise TargetNotFoundError(f"Container '{name_or_id}' not found or not running.")
