"""Restore orchestration with a pre-restore safety snapshot.

Before anything on the container changes, the current state of every
in-scope kind is exported to a host-local snapshot directory. A successful
restore discards it; any failure keeps it and reports its path so that
``RestoreOrchestrator.rollback`` (or an operator) can replay it. Rollback is
never triggered automatically.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .backup import DATED_PREFIX, PLACEHOLDER_NAME, TARGET_STAGING_ROOT
from .commands import CommandError, ExportCommand, ImportCommand, make_directory, remove_paths
from .manifest import BackupManifest
from .models import (
    BackupLayout,
    InputError,
    Kind,
    OperationResult,
    OperationStatus,
    PreRestoreSnapshot,
    RemoteSpec,
    RestorePlan,
    RestoreType,
    Selector,
)
from .sanitize import SanitizeError, strip_ids_directory, strip_ids_file
from .storage import GitError, GitSnapshotStore
from .target import ExecutionTarget

LOG = logging.getLogger(__name__)

PRE_RESTORE_PREFIX = "n8n-prerestore-"

SourceChooser = Callable[[List[str]], Optional[str]]
ConfirmCallback = Callable[[RestorePlan], bool]


class RestoreState(str, Enum):
    INIT = "init"
    PRE_SNAPSHOT_TAKEN = "pre_snapshot_taken"
    FETCHED = "fetched"
    SOURCE_SELECTED = "source_selected"
    VALIDATED = "validated"
    TRANSFERRED = "transferred"
    IMPORTED = "imported"
    DONE = "done"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RestoreError(Exception):
    """Raised inside the restore pipeline to signal a controlled failure."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


@dataclass
class RestoreArtifact:
    kind: Kind
    layout: BackupLayout
    path: Path
    target_path: str = ""


def newest_dated_backup(candidates: List[str]) -> Optional[str]:
    return candidates[0] if candidates else None


def list_dated_backups(repo_root: Path) -> List[str]:
    names = [
        child.name
        for child in repo_root.iterdir()
        if child.is_dir() and child.name.startswith(DATED_PREFIX)
    ]
    return sorted(names, reverse=True)


def detect_layout(location: Path, kind: Kind) -> BackupLayout:
    directory = location / kind.artifact_dir
    if not directory.is_dir():
        return BackupLayout.SINGLE_FILE
    # an empty kind is stored as a directory holding only the placeholder
    if (directory / PLACEHOLDER_NAME).exists() or _json_files(directory):
        return BackupLayout.SEPARATE_FILES
    return BackupLayout.SINGLE_FILE


def _json_files(directory: Path) -> List[Path]:
    return [path for path in directory.glob("*.json") if path.stat().st_size > 0]


def _describe_source(location: Path) -> None:
    manifest = BackupManifest.read(location)
    if manifest is None:
        LOG.debug("No backup manifest in %s", location.name or ".")
        return
    LOG.info(
        "Backup taken %s (%s, %s, n8n %s): %s",
        manifest.created_at.isoformat(),
        manifest.backup_type,
        manifest.layout,
        manifest.n8n_version or "unknown",
        ", ".join(f"{count} {name}" for name, count in sorted(manifest.item_counts.items())),
    )


def _artifact_present(location: Path, kind: Kind) -> bool:
    if detect_layout(location, kind) is BackupLayout.SEPARATE_FILES:
        return True
    single = location / kind.artifact_file
    return single.is_file() and single.stat().st_size > 0


class RestoreOrchestrator:
    """Drives one restore from the snapshot store into the execution target."""

    def __init__(
        self,
        target: ExecutionTarget,
        remote: RemoteSpec,
        *,
        workspace_root: Optional[Path] = None,
        snapshot_root: Optional[Path] = None,
        staging_root: str = TARGET_STAGING_ROOT,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._target = target
        self._remote = remote
        self._workspace_root = workspace_root
        self._snapshot_root = snapshot_root
        self._staging_root = staging_root.rstrip("/")
        self._clock = clock
        self.state = RestoreState.INIT

    def run(
        self,
        plan: RestorePlan,
        confirm: Optional[ConfirmCallback] = None,
        source_chooser: Optional[SourceChooser] = None,
    ) -> OperationResult:
        started_at = self._clock()
        self.state = RestoreState.INIT
        LOG.info("Starting restore of %s from %s", plan.restore_type.value, self._remote)
        if plan.dry_run:
            LOG.warning("DRY RUN mode enabled: nothing will be imported")

        try:
            plan.validate()
        except InputError as exc:
            LOG.error("Invalid restore plan: %s", exc)
            return self._result("restore", OperationStatus.FAILED, started_at, plan.dry_run, errors=[str(exc)])

        if confirm is not None and not plan.dry_run and not confirm(plan):
            LOG.info("Restore cancelled by operator")
            return self._result("restore", OperationStatus.CANCELLED, started_at, plan.dry_run)

        try:
            snapshot = self.capture_pre_restore_snapshot(plan.restore_type.kinds)
        except RestoreError as exc:
            self._transition(RestoreState.FAILED)
            LOG.error("Cannot proceed safely without a pre-restore snapshot: %s", exc)
            return self._result("restore", OperationStatus.FAILED, started_at, plan.dry_run, errors=exc.errors)
        self._transition(RestoreState.PRE_SNAPSHOT_TAKEN)

        workspace = Path(tempfile.mkdtemp(prefix="n8n-restore-", dir=self._workspace_root))
        staging = f"{self._staging_root}/{uuid.uuid4().hex}"
        keep_snapshot = True
        failed_kinds: List[Kind] = []
        location_name: Optional[str] = None

        try:
            try:
                GitSnapshotStore.clone(self._remote.url, workspace / "repo", self._remote.branch, depth=1)
            except GitError as exc:
                raise RestoreError(f"Failed to clone {self._remote}: {exc}") from exc
            self._transition(RestoreState.FETCHED)

            location_name, location = self._select_source(workspace / "repo", source_chooser)
            _describe_source(location)
            self._transition(RestoreState.SOURCE_SELECTED)

            artifacts = self._validate(workspace / "repo", location, plan)
            self._transition(RestoreState.VALIDATED)

            self._transfer(artifacts, staging, plan.dry_run)
            self._transition(RestoreState.TRANSFERRED)

            failed_kinds, errors = self._import(artifacts, plan, staging, workspace)
            if failed_kinds:
                raise RestoreError(
                    f"Import failed for {', '.join(kind.plural for kind in failed_kinds)}",
                    errors=errors,
                )
            self._transition(RestoreState.IMPORTED)
            self._transition(RestoreState.DONE)
            keep_snapshot = False
            LOG.info("Restore completed successfully")
            return self._result(
                "restore",
                OperationStatus.SUCCESS,
                started_at,
                plan.dry_run,
                snapshot_location=location_name,
            )
        except RestoreError as exc:
            self._transition(RestoreState.FAILED)
            LOG.error("Restore failed: %s", exc)
            LOG.warning("Pre-restore snapshot kept at: %s", snapshot.path)
            return self._result(
                "restore",
                OperationStatus.FAILED,
                started_at,
                plan.dry_run,
                errors=exc.errors,
                retained_path=snapshot.path,
                failed_kinds=failed_kinds,
                snapshot_location=location_name,
            )
        except Exception as exc:  # noqa: BLE001
            self._transition(RestoreState.FAILED)
            LOG.exception("Unexpected restore error")
            LOG.warning("Pre-restore snapshot kept at: %s", snapshot.path)
            return self._result(
                "restore",
                OperationStatus.FAILED,
                started_at,
                plan.dry_run,
                errors=[f"Unexpected error: {exc}"],
                retained_path=snapshot.path,
            )
        finally:
            self._cleanup_staging(staging, plan.dry_run)
            shutil.rmtree(workspace, ignore_errors=True)
            if not keep_snapshot:
                shutil.rmtree(snapshot.path, ignore_errors=True)
                LOG.info("Pre-restore snapshot discarded")

    def capture_pre_restore_snapshot(self, kinds: Sequence[Kind]) -> PreRestoreSnapshot:
        """Export the container's current state for ``kinds`` to a host-local directory."""
        path = Path(tempfile.mkdtemp(prefix=PRE_RESTORE_PREFIX, dir=self._snapshot_root))
        staging = f"{self._staging_root}/{uuid.uuid4().hex}-pre"
        LOG.info("Creating pre-restore snapshot in %s", path)
        try:
            created = self._target.run(make_directory(staging))
            if not created.ok:
                raise RestoreError(f"Failed to create staging directory in container: {created.error}")
            for kind in kinds:
                self._snapshot_kind(kind, path, staging)
        except Exception:
            shutil.rmtree(path, ignore_errors=True)
            raise
        finally:
            self._cleanup_staging(staging, dry_run=False)

        LOG.info("Pre-restore snapshot created for %s", ", ".join(kind.plural for kind in kinds))
        return PreRestoreSnapshot(path=path, kinds=tuple(kinds))

    def rollback(
        self,
        snapshot: Union[PreRestoreSnapshot, Path],
        restore_type: RestoreType,
        dry_run: bool = False,
    ) -> OperationResult:
        """Replay a retained pre-restore snapshot. The snapshot is never deleted here."""
        started_at = self._clock()
        if not isinstance(snapshot, PreRestoreSnapshot):
            snapshot = PreRestoreSnapshot(path=Path(snapshot), kinds=restore_type.kinds)
        LOG.warning("Rolling back %s from pre-restore snapshot %s", restore_type.value, snapshot.path)

        missing = [
            f"Pre-restore file {kind.artifact_file} not found in {snapshot.path}"
            for kind in restore_type.kinds
            if not snapshot.artifact(kind).is_file()
        ]
        if missing:
            for message in missing:
                LOG.error(message)
            return self._result(
                "rollback",
                OperationStatus.FAILED,
                started_at,
                dry_run,
                errors=missing,
                retained_path=snapshot.path,
            )

        staging = f"{self._staging_root}/{uuid.uuid4().hex}-rollback"
        artifacts = [
            RestoreArtifact(kind=kind, layout=BackupLayout.SINGLE_FILE, path=snapshot.artifact(kind))
            for kind in restore_type.kinds
        ]
        failed_kinds: List[Kind] = []
        try:
            self._transfer(artifacts, staging, dry_run)
            failed_kinds, errors = self._import(artifacts, RestorePlan(restore_type=restore_type, dry_run=dry_run), staging)
            if failed_kinds:
                raise RestoreError("Rollback import failed", errors=errors)
        except RestoreError as exc:
            LOG.error("Rollback failed; manual intervention may be required: %s", exc)
            LOG.warning("Pre-restore snapshot kept at: %s", snapshot.path)
            return self._result(
                "rollback",
                OperationStatus.FAILED,
                started_at,
                dry_run,
                errors=exc.errors,
                retained_path=snapshot.path,
                failed_kinds=failed_kinds,
            )
        finally:
            self._cleanup_staging(staging, dry_run)

        self._transition(RestoreState.ROLLED_BACK)
        LOG.info("Rollback completed; n8n should be back in its pre-restore state")
        return self._result("rollback", OperationStatus.SUCCESS, started_at, dry_run, retained_path=snapshot.path)

    # Pipeline steps --------------------------------------------------------
    def _snapshot_kind(self, kind: Kind, path: Path, staging: str) -> None:
        target_file = f"{staging}/{kind.artifact_file}"
        host_file = path / kind.artifact_file
        result = self._target.run(ExportCommand(Selector(kind), BackupLayout.SINGLE_FILE, target_file).argv())
        if not result.ok:
            if kind.empty_marker in result.output:
                LOG.info("No existing %s found; snapshot records an empty collection", kind.plural)
                host_file.write_text("[]\n", encoding="utf-8")
                return
            raise RestoreError(f"Could not export current {kind.plural}: {result.error}")

        copied = self._target.copy_from(target_file, host_file)
        if not copied.ok:
            raise RestoreError(f"Could not copy current {kind.plural} from container: {copied.error}")
        if not host_file.is_file() or host_file.stat().st_size == 0:
            raise RestoreError(f"Pre-restore export of {kind.plural} is empty")

    def _select_source(self, repo_root: Path, chooser: Optional[SourceChooser]) -> Tuple[str, Path]:
        dated = list_dated_backups(repo_root)
        if dated:
            LOG.info("Found %d dated backup(s); newest is %s", len(dated), dated[0])
        else:
            LOG.info("No dated backups found")
        chosen = (chooser or newest_dated_backup)(dated)
        if chosen is None:
            LOG.info("Using files from repository root")
            return ".", repo_root
        if chosen not in dated:
            raise RestoreError(f"Unknown backup directory '{chosen}'")
        LOG.info("Using dated backup %s", chosen)
        return chosen, repo_root / chosen

    def _validate(self, repo_root: Path, location: Path, plan: RestorePlan) -> List[RestoreArtifact]:
        artifacts: List[RestoreArtifact] = []
        errors: List[str] = []
        for kind in plan.restore_type.kinds:
            source = location
            if not _artifact_present(location, kind) and location != repo_root and _artifact_present(repo_root, kind):
                LOG.warning("No %s in %s; falling back to repository root", kind.plural, location.name)
                source = repo_root

            layout = detect_layout(source, kind)
            if plan.layout is not None and plan.layout is not layout:
                LOG.warning(
                    "Requested %s layout but backup holds %s %s; using %s",
                    plan.layout.value,
                    kind.plural,
                    layout.value,
                    layout.value,
                )

            if layout is BackupLayout.SEPARATE_FILES:
                path = source / kind.artifact_dir
                if not _json_files(path):
                    LOG.info("No %s in backup; nothing to import", kind.plural)
                    continue
            else:
                path = source / kind.artifact_file
                if not path.is_file() or path.stat().st_size == 0:
                    errors.append(f"Valid {kind.artifact_file} not found for {plan.restore_type.value} restore")
                    continue
            LOG.info("Validated %s (%s) for import", kind.plural, layout.value)
            artifacts.append(RestoreArtifact(kind=kind, layout=layout, path=path))

        if errors:
            raise RestoreError("Backup validation failed", errors=errors)
        return artifacts

    def _transfer(self, artifacts: List[RestoreArtifact], staging: str, dry_run: bool) -> None:
        created = self._target.run(make_directory(staging), dry_run=dry_run)
        if not created.ok:
            raise RestoreError(f"Failed to create staging directory in container: {created.error}")

        for artifact in artifacts:
            kind = artifact.kind
            if artifact.layout is BackupLayout.SEPARATE_FILES:
                artifact.target_path = f"{staging}/{kind.artifact_dir}"
                copied = self._target.copy_to(f"{artifact.path}/.", artifact.target_path, dry_run=dry_run)
            else:
                artifact.target_path = f"{staging}/{kind.artifact_file}"
                copied = self._target.copy_to(artifact.path, artifact.target_path, dry_run=dry_run)
            if not copied.ok:
                raise RestoreError(f"Failed to copy {kind.plural} to container: {copied.error}")
            LOG.info("Copied %s to container", kind.plural)

    def _import(
        self,
        artifacts: List[RestoreArtifact],
        plan: RestorePlan,
        staging: str,
        workspace: Optional[Path] = None,
    ) -> Tuple[List[Kind], List[str]]:
        failed: List[Kind] = []
        errors: List[str] = []
        for artifact in artifacts:
            kind = artifact.kind
            try:
                input_path = artifact.target_path
                if plan.import_as_new:
                    input_path = self._sanitized_copy(artifact, staging, workspace, plan.dry_run)
                command = ImportCommand(kind, artifact.layout, input_path, plan.identity).argv()
            except (RestoreError, SanitizeError, CommandError) as exc:
                LOG.error("Cannot import %s: %s", kind.plural, exc)
                failed.append(kind)
                errors.append(f"{kind.plural}: {exc}")
                continue

            LOG.info("Importing %s", kind.plural)
            result = self._target.run(command, dry_run=plan.dry_run)
            if result.ok:
                LOG.info("%s imported successfully", kind.plural.capitalize())
            else:
                LOG.error("Failed to import %s", kind.plural)
                failed.append(kind)
                errors.append(f"{kind.plural}: import failed: {result.error}")
        return failed, errors

    def _sanitized_copy(
        self,
        artifact: RestoreArtifact,
        staging: str,
        workspace: Optional[Path],
        dry_run: bool,
    ) -> str:
        if workspace is None:
            raise RestoreError("Import-as-new requires a working directory")
        kind = artifact.kind
        LOG.info("Stripping IDs from %s for import-as-new", kind.plural)
        sanitized = workspace / "sanitized"
        if artifact.layout is BackupLayout.SEPARATE_FILES:
            local_path = sanitized / kind.artifact_dir
            strip_ids_directory(artifact.path, local_path)
            target_path = f"{staging}/new_{kind.artifact_dir}"
            copied = self._target.copy_to(f"{local_path}/.", target_path, dry_run=dry_run)
        else:
            local_path = sanitized / kind.artifact_file
            strip_ids_file(artifact.path, local_path)
            target_path = f"{staging}/new_{kind.artifact_file}"
            copied = self._target.copy_to(local_path, target_path, dry_run=dry_run)
        if not copied.ok:
            raise RestoreError(f"Failed to copy sanitized {kind.plural} to container: {copied.error}")
        return target_path

    # Helpers ---------------------------------------------------------------
    def _cleanup_staging(self, staging: str, dry_run: bool) -> None:
        result = self._target.run(remove_paths([staging]), dry_run=dry_run)
        if not result.ok:
            LOG.warning("Could not clean up temporary files in container at %s", staging)

    def _transition(self, state: RestoreState) -> None:
        LOG.debug("Restore state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _result(
        self,
        action: str,
        status: OperationStatus,
        started_at: datetime,
        dry_run: bool,
        **kwargs,
    ) -> OperationResult:
        return OperationResult(
            action=action,
            status=status,
            started_at=started_at,
            completed_at=self._clock(),
            dry_run=dry_run,
            **kwargs,
        )


def run_restore(
    target: ExecutionTarget,
    remote: RemoteSpec,
    plan: RestorePlan,
    confirm: Optional[ConfirmCallback] = None,
    source_chooser: Optional[SourceChooser] = None,
    **kwargs,
) -> OperationResult:
    return RestoreOrchestrator(target, remote, **kwargs).run(plan, confirm=confirm, source_chooser=source_chooser)


def run_rollback(
    target: ExecutionTarget,
    remote: RemoteSpec,
    snapshot: Union[PreRestoreSnapshot, Path],
    restore_type: RestoreType,
    dry_run: bool = False,
    **kwargs,
) -> OperationResult:
    return RestoreOrchestrator(target, remote, **kwargs).rollback(snapshot, restore_type, dry_run=dry_run)
