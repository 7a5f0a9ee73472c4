from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class InputError(ValueError):
    """Raised for invalid or conflicting operation input, before any remote call."""


def check_identifier(value: Optional[str], label: str, error_cls: Type[InputError] = InputError) -> str:
    if not value or not SAFE_ID.match(value):
        raise error_cls(f"Invalid {label} '{value}': only letters, digits, '-' and '_' are allowed.")
    return value


class Kind(str, Enum):
    WORKFLOW = "workflow"
    CREDENTIAL = "credential"

    @property
    def plural(self) -> str:
        return f"{self.value}s"

    @property
    def cli_noun(self) -> str:
        # n8n uses "export:workflow" but "export:credentials"
        return "workflow" if self is Kind.WORKFLOW else "credentials"

    @property
    def empty_marker(self) -> str:
        return f"No {self.plural} found"

    @property
    def artifact_file(self) -> str:
        return f"{self.plural}.json"

    @property
    def artifact_dir(self) -> str:
        return self.plural


class BackupLayout(str, Enum):
    SINGLE_FILE = "single-file"
    SEPARATE_FILES = "separate-files"


class RestoreType(str, Enum):
    ALL = "all"
    WORKFLOWS = "workflows"
    CREDENTIALS = "credentials"

    @property
    def kinds(self) -> Tuple[Kind, ...]:
        if self is RestoreType.WORKFLOWS:
            return (Kind.WORKFLOW,)
        if self is RestoreType.CREDENTIALS:
            return (Kind.CREDENTIAL,)
        return (Kind.WORKFLOW, Kind.CREDENTIAL)


@dataclass(frozen=True)
class Selector:
    kind: Kind
    item_id: Optional[str] = None

    @property
    def is_all(self) -> bool:
        return self.item_id is None

    def describe(self) -> str:
        if self.is_all:
            return f"all {self.kind.plural}"
        return f"{self.kind.value} {self.item_id}"


@dataclass(frozen=True)
class Selection:
    """Which items of each kind an operation covers. ``None`` leaves a kind out."""

    workflows: Optional[Selector] = None
    credentials: Optional[Selector] = None

    @classmethod
    def from_options(
        cls,
        workflow_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        all_workflows: bool = False,
        all_credentials: bool = False,
    ) -> "Selection":
        if workflow_id and all_workflows:
            raise InputError("A specific workflow ID cannot be combined with 'all workflows'.")
        if credential_id and all_credentials:
            raise InputError("A specific credential ID cannot be combined with 'all credentials'.")

        nothing_requested = not (workflow_id or credential_id or all_workflows or all_credentials)
        if nothing_requested:
            return cls(
                workflows=Selector(Kind.WORKFLOW),
                credentials=Selector(Kind.CREDENTIAL),
            )

        workflows = None
        if workflow_id or all_workflows:
            workflows = Selector(Kind.WORKFLOW, workflow_id or None)
        credentials = None
        if credential_id or all_credentials:
            credentials = Selector(Kind.CREDENTIAL, credential_id or None)
        return cls(workflows=workflows, credentials=credentials)

    def for_kind(self, kind: Kind) -> Optional[Selector]:
        return self.workflows if kind is Kind.WORKFLOW else self.credentials

    @property
    def selectors(self) -> List[Selector]:
        return [s for s in (self.workflows, self.credentials) if s is not None]

    @property
    def is_full(self) -> bool:
        return all(s.is_all for s in self.selectors) and len(self.selectors) == 2


@dataclass(frozen=True)
class IdentityOverrides:
    user_id: Optional[str] = None
    project_id: Optional[str] = None


@dataclass(frozen=True)
class BackupRequest:
    selection: Selection = field(default_factory=Selection.from_options)
    layout: BackupLayout = BackupLayout.SINGLE_FILE
    dated: bool = False
    incremental: bool = False
    include_linked_credentials: bool = False
    include_env: bool = False
    dry_run: bool = False

    def validate(self) -> None:
        if self.dated and self.incremental:
            raise InputError("Incremental and dated backups cannot be combined.")
        if not self.selection.selectors:
            raise InputError("Backup selection is empty.")
        for selector in self.selection.selectors:
            if selector.item_id is not None:
                check_identifier(selector.item_id, f"{selector.kind.value} ID")
        if self.include_linked_credentials:
            workflows = self.selection.workflows
            if workflows is None or workflows.is_all:
                raise InputError("Including linked credentials requires a specific workflow ID.")

    @property
    def qualifier(self) -> str:
        if self.incremental:
            return "incremental"
        return "full" if self.selection.is_full else "selective"


@dataclass(frozen=True)
class RestorePlan:
    restore_type: RestoreType = RestoreType.ALL
    layout: Optional[BackupLayout] = None
    identity: IdentityOverrides = field(default_factory=IdentityOverrides)
    import_as_new: bool = False
    dry_run: bool = False

    def validate(self) -> None:
        if not isinstance(self.restore_type, RestoreType):
            raise InputError(f"Invalid restore type: {self.restore_type!r}")
        if self.identity.user_id is not None:
            check_identifier(self.identity.user_id, "user ID")
        if self.identity.project_id is not None:
            check_identifier(self.identity.project_id, "project ID")


@dataclass(frozen=True)
class RemoteSpec:
    url: str
    branch: str = "main"
    display_name: str = ""

    def __str__(self) -> str:
        return f"{self.display_name or '<remote>'}@{self.branch}"


@dataclass
class PreRestoreSnapshot:
    path: Path
    kinds: Tuple[Kind, ...]

    def artifact(self, kind: Kind) -> Path:
        return self.path / kind.artifact_file


class ChangeStatus(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass
class ChangeSet:
    statuses: Dict[str, ChangeStatus] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        if self.removed:
            return True
        return any(status is not ChangeStatus.UNCHANGED for status in self.statuses.values())

    def changed(self) -> List[str]:
        return sorted(name for name, status in self.statuses.items() if status is not ChangeStatus.UNCHANGED)


class OperationStatus(str, Enum):
    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class OperationResult:
    action: str
    status: OperationStatus
    started_at: datetime
    completed_at: datetime
    errors: List[str] = field(default_factory=list)
    retained_path: Optional[Path] = None
    commit_id: Optional[str] = None
    snapshot_location: Optional[str] = None
    change_set: Optional[ChangeSet] = None
    failed_kinds: List[Kind] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status is not OperationStatus.FAILED

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()
