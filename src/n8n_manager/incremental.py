from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .models import BackupLayout, ChangeSet, ChangeStatus, Kind, Selection
from .storage import GitSnapshotStore

LOG = logging.getLogger(__name__)

BACKUP_MARKER = "n8n Backup"


class ChangeDetector:
    """Compares a fresh export against the last backup commit in the store."""

    def __init__(self, store: GitSnapshotStore, marker: str = BACKUP_MARKER) -> None:
        self._store = store
        self._marker = marker

    def last_backup_commit(self) -> Optional[str]:
        commits = self._store.list_commits_matching(self._marker)
        return commits[0] if commits else None

    def diff(
        self,
        export_path: Path,
        layout: BackupLayout,
        selection: Selection,
    ) -> Tuple[ChangeSet, bool]:
        commit = self.last_backup_commit()
        if commit is None:
            LOG.info("No previous backup found; a full backup is required")
            return ChangeSet(), False

        LOG.debug("Comparing export with backup commit %s", commit)
        change_set = ChangeSet()
        # every exported artifact counts, including linked credentials outside the selection
        for kind in Kind:
            selector = selection.for_kind(kind)
            track_removals = selector is not None and selector.is_all
            if layout is BackupLayout.SEPARATE_FILES:
                if (export_path / kind.artifact_dir).is_dir():
                    self._diff_directory(commit, export_path, kind, track_removals, change_set)
            else:
                self._classify(commit, export_path / kind.artifact_file, kind.artifact_file, change_set)

        if change_set.has_changes:
            LOG.info(
                "Incremental changes detected: %d changed, %d removed",
                len(change_set.changed()),
                len(change_set.removed),
            )
        else:
            LOG.info("No changes detected since last backup")
        return change_set, True

    def _diff_directory(
        self,
        commit: str,
        export_path: Path,
        kind: Kind,
        track_removals: bool,
        change_set: ChangeSet,
    ) -> None:
        local_dir = export_path / kind.artifact_dir
        exported = set()
        for path in _json_files(local_dir):
            relpath = f"{kind.artifact_dir}/{path.name}"
            exported.add(relpath)
            self._classify(commit, path, relpath, change_set)

        if not track_removals:
            return
        for relpath in self._store.list_files_at_commit(commit, kind.artifact_dir):
            if relpath.endswith(".json") and relpath not in exported:
                LOG.debug("Removed %s detected: %s", kind.value, relpath)
                change_set.removed.append(relpath)

    def _classify(self, commit: str, local_path: Path, relpath: str, change_set: ChangeSet) -> None:
        if not local_path.is_file():
            return
        committed = self._store.show_file_at_commit(commit, relpath)
        if committed is None:
            status = ChangeStatus.NEW
        elif committed != local_path.read_bytes():
            status = ChangeStatus.MODIFIED
        else:
            status = ChangeStatus.UNCHANGED
        if status is not ChangeStatus.UNCHANGED:
            LOG.debug("%s: %s", status.value, relpath)
        change_set.statuses[relpath] = status


def diff(
    repo_path: Path,
    export_path: Path,
    layout: BackupLayout,
    selection: Optional[Selection] = None,
) -> Tuple[ChangeSet, bool]:
    detector = ChangeDetector(GitSnapshotStore(repo_path))
    return detector.diff(export_path, layout, selection or Selection.from_options())


def _json_files(directory: Path) -> Iterable[Path]:
    if not directory.is_dir():
        return []
    return sorted(directory.glob("*.json"))
