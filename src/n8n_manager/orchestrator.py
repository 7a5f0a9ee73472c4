from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .backup import BackupOrchestrator
from .config import ConfigurationError, ManagerConfig, load_config
from .github_api import AccessCheckError, GitHubAPI
from .models import BackupRequest, OperationResult, OperationStatus, RemoteSpec, RestorePlan, RestoreType
from .restore import ConfirmCallback, RestoreOrchestrator, SourceChooser
from .target import DockerTarget, ExecutionTarget, TargetNotFoundError, resolve_container

LOG = logging.getLogger(__name__)

TargetFactory = Callable[[str], ExecutionTarget]


def docker_target_factory(name_or_id: str) -> ExecutionTarget:
    return DockerTarget(resolve_container(name_or_id))


class Manager:
    """Runs backup, restore and rollback operations for one configured n8n instance."""

    def __init__(
        self,
        config: ManagerConfig,
        target_factory: TargetFactory = docker_target_factory,
        **orchestrator_options: Any,
    ) -> None:
        self._config = config
        self._target_factory = target_factory
        self._options = orchestrator_options

    @property
    def config(self) -> ManagerConfig:
        return self._config

    def remote(self) -> RemoteSpec:
        return self._config.remote_spec()

    def run_backup(self, request: BackupRequest, container: Optional[str] = None) -> OperationResult:
        remote = self.remote()
        try:
            self.verify_access(require_branch=False)
            target = self._resolve_target(container)
        except (AccessCheckError, TargetNotFoundError) as exc:
            return _failed("backup", exc, request.dry_run)
        return BackupOrchestrator(target, remote, **self._options).run(request)

    def run_restore(
        self,
        plan: RestorePlan,
        container: Optional[str] = None,
        confirm: Optional[ConfirmCallback] = None,
        source_chooser: Optional[SourceChooser] = None,
    ) -> OperationResult:
        remote = self.remote()
        try:
            self.verify_access(require_branch=True)
            target = self._resolve_target(container)
        except (AccessCheckError, TargetNotFoundError) as exc:
            return _failed("restore", exc, plan.dry_run)
        orchestrator = RestoreOrchestrator(target, remote, **self._options)
        return orchestrator.run(plan, confirm=confirm, source_chooser=source_chooser)

    def run_rollback(
        self,
        snapshot: Path,
        restore_type: RestoreType = RestoreType.ALL,
        container: Optional[str] = None,
        dry_run: bool = False,
    ) -> OperationResult:
        try:
            target = self._resolve_target(container)
        except TargetNotFoundError as exc:
            return _failed("rollback", exc, dry_run)
        # rollback never talks to the snapshot store
        remote = RemoteSpec(url="", display_name="pre-restore snapshot")
        return RestoreOrchestrator(target, remote, **self._options).rollback(snapshot, restore_type, dry_run=dry_run)

    def verify_access(self, require_branch: bool) -> None:
        github = self._config.github
        if not github.verify_access or github.remote_url or not github.repo:
            return
        LOG.info("Verifying GitHub access to %s", github.repo)
        GitHubAPI(github.resolved_token()).verify_access(github.repo, github.branch, require_branch=require_branch)

    def _resolve_target(self, container: Optional[str]) -> ExecutionTarget:
        name = container or self._config.container
        if not name:
            raise ConfigurationError("No n8n container configured; set 'container' or pass --container.")
        target = self._target_factory(name)
        LOG.info("Using n8n container %s", name)
        return target


def _failed(action: str, exc: Exception, dry_run: bool) -> OperationResult:
    LOG.error("%s aborted: %s", action.capitalize(), exc)
    now = datetime.now()
    return OperationResult(
        action=action,
        status=OperationStatus.FAILED,
        started_at=now,
        completed_at=now,
        errors=[str(exc)],
        dry_run=dry_run,
    )


def load_manager(config_path: Optional[Path] = None, target_factory: TargetFactory = docker_target_factory) -> Manager:
    return Manager(config=load_config(config_path), target_factory=target_factory)
