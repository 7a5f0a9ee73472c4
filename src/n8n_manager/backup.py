"""Backup orchestration: export from n8n, commit to the snapshot store, push.

The run moves through ``BackupState`` in order. ``FAILED`` can be reached
from any step; incremental runs that find nothing new stop early with a
``no_changes`` outcome, which is a success.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .commands import (
    CommandError,
    ExportCommand,
    environment_command,
    make_directory,
    parse_version,
    remove_paths,
    version_command,
)
from .discovery import discover_linked_credentials_in_directory, discover_linked_credentials_in_file
from .incremental import BACKUP_MARKER, ChangeDetector
from .manifest import BackupManifest
from .models import (
    BackupLayout,
    BackupRequest,
    ChangeSet,
    InputError,
    Kind,
    OperationResult,
    OperationStatus,
    RemoteSpec,
    Selector,
)
from .storage import GitError, GitSnapshotStore
from .target import ExecutionTarget

LOG = logging.getLogger(__name__)

COMMITTER_NAME = "n8n Backup Script"
COMMITTER_EMAIL = "n8n-backup-script@localhost"
TARGET_STAGING_ROOT = "/tmp/n8n-manager"
DATED_PREFIX = "backup_"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
PLACEHOLDER_NAME = ".gitkeep"
ENV_FILE = ".env"
ENV_PREFIX = "N8N_"


class BackupState(str, Enum):
    INIT = "init"
    REMOTE_PREPARED = "remote_prepared"
    EXPORTED = "exported"
    INCREMENTAL_SHORT_CIRCUIT = "incremental_short_circuit"
    STAGED = "staged"
    COMMITTED = "committed"
    PUSHED = "pushed"
    DONE = "done"
    FAILED = "failed"


class BackupError(Exception):
    """Raised inside the backup pipeline to signal a controlled failure."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class BackupOrchestrator:
    """Drives one backup from the execution target into the snapshot store."""

    def __init__(
        self,
        target: ExecutionTarget,
        remote: RemoteSpec,
        *,
        workspace_root: Optional[Path] = None,
        staging_root: str = TARGET_STAGING_ROOT,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._target = target
        self._remote = remote
        self._workspace_root = workspace_root
        self._staging_root = staging_root.rstrip("/")
        self._clock = clock
        self.state = BackupState.INIT

    def run(self, request: BackupRequest) -> OperationResult:
        started_at = self._clock()
        self.state = BackupState.INIT
        LOG.info("Starting %s backup to %s", request.qualifier, self._remote)
        if request.dry_run:
            LOG.warning("DRY RUN mode enabled: nothing will be committed or pushed")

        try:
            request.validate()
        except InputError as exc:
            LOG.error("Invalid backup request: %s", exc)
            return self._result(OperationStatus.FAILED, started_at, request, errors=[str(exc)])

        workspace = Path(tempfile.mkdtemp(prefix="n8n-backup-", dir=self._workspace_root))
        export_dir = Path(tempfile.mkdtemp(prefix="n8n-export-", dir=self._workspace_root))
        staging = f"{self._staging_root}/{uuid.uuid4().hex}"
        retain_workspace = False

        try:
            store, branch_exists = self._prepare_remote(workspace, request)
            item_counts = self._export(request, export_dir, staging)
            if request.include_env:
                self._capture_environment(export_dir)
            self._transition(BackupState.EXPORTED)

            change_set: Optional[ChangeSet] = None
            if request.incremental:
                change_set, has_prior = self._detect_changes(store, branch_exists, export_dir, request)
                if has_prior and not change_set.has_changes:
                    self._transition(BackupState.INCREMENTAL_SHORT_CIRCUIT)
                    self._transition(BackupState.DONE)
                    LOG.info("No changes since last backup; nothing to commit")
                    return self._result(
                        OperationStatus.NO_CHANGES, started_at, request, change_set=change_set
                    )

            version = self._n8n_version()
            location = self._place_artifacts(workspace, export_dir, request, started_at, item_counts, version)
            store.stage_all()
            self._transition(BackupState.STAGED)

            message = self._commit_message(request, started_at, location, version)
            if request.dry_run:
                LOG.info("DRY RUN: would commit with message: %s", message)
                LOG.info("DRY RUN: would push branch '%s'", self._remote.branch)
                self._transition(BackupState.DONE)
                return self._result(
                    OperationStatus.SUCCESS,
                    started_at,
                    request,
                    snapshot_location=location,
                    change_set=change_set,
                )

            commit_id = store.commit(message)
            if commit_id is None:
                self._transition(BackupState.DONE)
                return self._result(
                    OperationStatus.NO_CHANGES,
                    started_at,
                    request,
                    snapshot_location=location,
                    change_set=change_set,
                )
            self._transition(BackupState.COMMITTED)
            LOG.info("Committed backup %s: %s", commit_id[:12], message)

            try:
                store.push(self._remote.branch)
            except GitError as exc:
                retain_workspace = True
                raise BackupError(
                    f"Push to {self._remote} failed: {exc}. Local repository kept at {workspace}"
                ) from exc
            self._transition(BackupState.PUSHED)
            self._transition(BackupState.DONE)
            LOG.info("Backup pushed to %s", self._remote)
            return self._result(
                OperationStatus.SUCCESS,
                started_at,
                request,
                commit_id=commit_id,
                snapshot_location=location,
                change_set=change_set,
            )
        except BackupError as exc:
            self._transition(BackupState.FAILED)
            LOG.error("Backup failed: %s", exc)
            return self._result(
                OperationStatus.FAILED,
                started_at,
                request,
                errors=exc.errors,
                retained_path=workspace if retain_workspace else None,
            )
        except (GitError, CommandError) as exc:
            self._transition(BackupState.FAILED)
            LOG.error("Backup failed: %s", exc)
            return self._result(OperationStatus.FAILED, started_at, request, errors=[str(exc)])
        except Exception as exc:  # noqa: BLE001
            self._transition(BackupState.FAILED)
            LOG.exception("Unexpected backup error")
            return self._result(OperationStatus.FAILED, started_at, request, errors=[f"Unexpected error: {exc}"])
        finally:
            shutil.rmtree(export_dir, ignore_errors=True)
            if not retain_workspace:
                shutil.rmtree(workspace, ignore_errors=True)

    # Pipeline steps --------------------------------------------------------
    def _prepare_remote(self, workspace: Path, request: BackupRequest) -> Tuple[GitSnapshotStore, bool]:
        store = GitSnapshotStore(workspace)
        store.init()
        store.set_remote(self._remote.url)
        store.configure_identity(COMMITTER_NAME, COMMITTER_EMAIL)

        # incremental runs need history to find the last marked backup commit
        depth = None if request.incremental else 1
        LOG.info("Fetching remote branch '%s'", self._remote.branch)
        branch_exists = store.fetch_branch(self._remote.branch, depth=depth)
        store.checkout_or_create(self._remote.branch, branch_exists)
        self._transition(BackupState.REMOTE_PREPARED)
        return store, branch_exists

    def _export(self, request: BackupRequest, export_dir: Path, staging: str) -> Dict[str, int]:
        self._run_on_target(make_directory(staging), f"create staging directory {staging}")
        counts: Dict[str, int] = {}
        try:
            for selector in request.selection.selectors:
                counts[selector.kind.plural] = self._export_kind(selector, request.layout, export_dir, staging)
            if request.include_linked_credentials:
                linked = self._export_linked_credentials(request, export_dir, staging)
                if linked:
                    counts[Kind.CREDENTIAL.plural] = counts.get(Kind.CREDENTIAL.plural, 0) + linked
        finally:
            cleanup = self._target.run(remove_paths([staging]))
            if not cleanup.ok:
                LOG.warning("Could not clean up staging directory %s in container", staging)
        return counts

    def _capture_environment(self, export_dir: Path) -> None:
        result = self._target.run(environment_command())
        if not result.ok:
            LOG.warning("Could not capture %s environment variables from container", ENV_PREFIX)
            return
        lines = [line for line in result.output.splitlines() if line.startswith(ENV_PREFIX)]
        (export_dir / ENV_FILE).write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        LOG.info("Captured %d %s environment variable(s)", len(lines), ENV_PREFIX)

    def _export_kind(self, selector: Selector, layout: BackupLayout, export_dir: Path, staging: str) -> int:
        kind = selector.kind
        LOG.info("Exporting %s", selector.describe())
        if layout is BackupLayout.SEPARATE_FILES:
            target_path = f"{staging}/{kind.artifact_dir}"
            host_path = export_dir / kind.artifact_dir
            self._run_on_target(make_directory(target_path), f"create {target_path}")
        else:
            target_path = f"{staging}/{kind.artifact_file}"
            host_path = export_dir / kind.artifact_file

        result = self._target.run(ExportCommand(selector, layout, target_path).argv())
        if not result.ok:
            if selector.is_all and kind.empty_marker in result.output:
                LOG.info("No %s found to back up; writing an empty placeholder", kind.plural)
                _write_placeholder(host_path, layout)
                return 0
            raise BackupError(f"Failed to export {selector.describe()}: {result.error}")

        if layout is BackupLayout.SEPARATE_FILES:
            host_path.mkdir(parents=True, exist_ok=True)
            copied = self._target.copy_from(f"{target_path}/.", host_path)
        else:
            copied = self._target.copy_from(target_path, host_path)
        if not copied.ok:
            raise BackupError(f"Failed to copy exported {kind.plural} from container: {copied.error}")

        count = _count_items(host_path, layout)
        if count == 0:
            _write_placeholder(host_path, layout)
        LOG.info("Exported %d %s", count, kind.plural)
        return count

    def _export_linked_credentials(self, request: BackupRequest, export_dir: Path, staging: str) -> int:
        credentials = request.selection.credentials
        if credentials is not None and credentials.is_all:
            LOG.debug("All credentials already exported; skipping linked credential discovery")
            return 0

        try:
            if request.layout is BackupLayout.SEPARATE_FILES:
                linked_ids = discover_linked_credentials_in_directory(export_dir / Kind.WORKFLOW.artifact_dir)
            else:
                linked_ids = discover_linked_credentials_in_file(export_dir / Kind.WORKFLOW.artifact_file)
        except (OSError, ValueError) as exc:
            LOG.warning("Failed to discover linked credentials: %s", exc)
            return 0

        already = credentials.item_id if credentials is not None else None
        linked_ids = [cred_id for cred_id in linked_ids if cred_id != already]
        exported = 0
        for cred_id in linked_ids:
            try:
                if self._export_linked_credential(cred_id, request.layout, export_dir, staging):
                    exported += 1
            except CommandError as exc:
                LOG.warning("Skipping linked credential '%s': %s", cred_id, exc)
        return exported

    def _export_linked_credential(self, cred_id: str, layout: BackupLayout, export_dir: Path, staging: str) -> bool:
        selector = Selector(Kind.CREDENTIAL, cred_id)
        linked_dir = f"{staging}/linked"
        self._run_on_target(make_directory(linked_dir), f"create {linked_dir}")

        if layout is BackupLayout.SEPARATE_FILES:
            target_path = linked_dir
            host_path = export_dir / Kind.CREDENTIAL.artifact_dir
            host_path.mkdir(parents=True, exist_ok=True)
            source = f"{linked_dir}/."
        else:
            target_path = f"{linked_dir}/credential_{cred_id}.json"
            host_path = export_dir / "linked" / f"credential_{cred_id}.json"
            host_path.parent.mkdir(parents=True, exist_ok=True)
            source = target_path

        result = self._target.run(ExportCommand(selector, layout, target_path).argv())
        if not result.ok:
            LOG.warning("Failed to export linked credential ID %s: %s", cred_id, result.error)
            return False
        copied = self._target.copy_from(source, host_path)
        if not copied.ok:
            LOG.warning("Failed to copy linked credential ID %s: %s", cred_id, copied.error)
            return False

        if layout is BackupLayout.SINGLE_FILE:
            _merge_collection(export_dir / Kind.CREDENTIAL.artifact_file, host_path)
        LOG.info("Included linked credential %s", cred_id)
        return True

    def _detect_changes(
        self,
        store: GitSnapshotStore,
        branch_exists: bool,
        export_dir: Path,
        request: BackupRequest,
    ) -> Tuple[ChangeSet, bool]:
        if not branch_exists:
            LOG.info("No previous backup branch; performing a full initial backup")
            return ChangeSet(), False
        detector = ChangeDetector(store, BACKUP_MARKER)
        return detector.diff(export_dir, request.layout, request.selection)

    def _place_artifacts(
        self,
        workspace: Path,
        export_dir: Path,
        request: BackupRequest,
        started_at: datetime,
        item_counts: Dict[str, int],
        version: Optional[str],
    ) -> str:
        location_name = "."
        location = workspace
        if request.dated:
            location_name = _unique_dated_name(workspace, started_at)
            location = workspace / location_name
            location.mkdir()
            LOG.info("Using dated backup directory %s", location_name)

        for kind in Kind:
            selector = request.selection.for_kind(kind)
            if request.layout is BackupLayout.SEPARATE_FILES:
                _place_directory(export_dir / kind.artifact_dir, location, kind, selector)
            else:
                _place_file(export_dir / kind.artifact_file, location, kind)

        env_file = export_dir / ENV_FILE
        if env_file.is_file():
            shutil.copy2(env_file, location / ENV_FILE)

        manifest = BackupManifest(
            created_at=started_at,
            layout=request.layout.value,
            backup_type=request.qualifier,
            selection={s.kind.plural: (s.item_id or "all") for s in request.selection.selectors},
            item_counts=item_counts,
            n8n_version=version,
        )
        manifest.write(location)
        return location_name

    def _commit_message(
        self, request: BackupRequest, started_at: datetime, location: str, version: Optional[str]
    ) -> str:
        header = f"{BACKUP_MARKER} (v{version})" if version else BACKUP_MARKER
        message = f"{header} - {started_at.strftime(TIMESTAMP_FORMAT)} [{request.qualifier}]"
        if location != ".":
            message = f"{message} [{location}]"
        return message

    # Helpers ---------------------------------------------------------------
    def _n8n_version(self) -> Optional[str]:
        result = self._target.run(version_command())
        return parse_version(result.output) if result.ok else None

    def _run_on_target(self, command: List[str], description: str) -> None:
        result = self._target.run(command)
        if not result.ok:
            raise BackupError(f"Failed to {description} in container: {result.error}")

    def _transition(self, state: BackupState) -> None:
        LOG.debug("Backup state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _result(
        self,
        status: OperationStatus,
        started_at: datetime,
        request: BackupRequest,
        **kwargs,
    ) -> OperationResult:
        return OperationResult(
            action="backup",
            status=status,
            started_at=started_at,
            completed_at=self._clock(),
            dry_run=request.dry_run,
            **kwargs,
        )


def run_backup(target: ExecutionTarget, remote: RemoteSpec, request: BackupRequest, **kwargs) -> OperationResult:
    return BackupOrchestrator(target, remote, **kwargs).run(request)


def _unique_dated_name(workspace: Path, started_at: datetime) -> str:
    base = f"{DATED_PREFIX}{started_at.strftime(TIMESTAMP_FORMAT)}"
    name = base
    suffix = 1
    while (workspace / name).exists():
        name = f"{base}-{suffix}"
        suffix += 1
    return name


def _write_placeholder(host_path: Path, layout: BackupLayout) -> None:
    if layout is BackupLayout.SEPARATE_FILES:
        host_path.mkdir(parents=True, exist_ok=True)
        (host_path / PLACEHOLDER_NAME).touch()
    else:
        host_path.parent.mkdir(parents=True, exist_ok=True)
        host_path.write_text("[]\n", encoding="utf-8")


def _count_items(host_path: Path, layout: BackupLayout) -> int:
    if layout is BackupLayout.SEPARATE_FILES:
        return len(list(host_path.glob("*.json")))
    if not host_path.is_file():
        raise BackupError(f"Export produced no file at {host_path}")
    try:
        with host_path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except ValueError as exc:
        raise BackupError(f"Export {host_path.name} is not valid JSON: {exc}") from exc
    return len(data) if isinstance(data, list) else 1


def _merge_collection(collection_path: Path, addition_path: Path) -> None:
    records: List = []
    if collection_path.is_file():
        with collection_path.open("r", encoding="utf-8") as fh:
            records = json.load(fh)
    with addition_path.open("r", encoding="utf-8") as fh:
        addition = json.load(fh)
    if isinstance(addition, dict):
        addition = [addition]

    seen = {record.get("id") for record in records if isinstance(record, dict)}
    for record in addition:
        if isinstance(record, dict) and record.get("id") in seen:
            continue
        records.append(record)
    with collection_path.open("w", encoding="utf-8") as fh:
        json.dump(records, fh, ensure_ascii=False, indent=2)


def _place_file(source: Path, location: Path, kind: Kind) -> None:
    if not source.is_file():
        return
    shutil.copy2(source, location / kind.artifact_file)
    stray = location / kind.artifact_dir
    if stray.is_dir():
        LOG.info("Removing separate-files artifacts for %s from %s", kind.plural, location.name or ".")
        shutil.rmtree(stray)


def _place_directory(source: Path, location: Path, kind: Kind, selector: Optional[Selector]) -> None:
    if not source.is_dir():
        return
    destination = location / kind.artifact_dir
    if destination.is_dir() and selector is not None and selector.is_all:
        shutil.rmtree(destination)
    shutil.copytree(source, destination, dirs_exist_ok=True)
    placeholder = destination / PLACEHOLDER_NAME
    if placeholder.exists() and any(destination.glob("*.json")):
        placeholder.unlink()
    stray = location / kind.artifact_file
    if stray.is_file():
        LOG.info("Removing single-file artifact %s", stray.name)
        stray.unlink()
