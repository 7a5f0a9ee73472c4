"""Git-backed backup and restore for n8n workflows and credentials."""

from .models import (
    BackupLayout,
    BackupRequest,
    OperationResult,
    OperationStatus,
    RemoteSpec,
    RestorePlan,
    RestoreType,
    Selection,
)

__all__ = [
    "BackupLayout",
    "BackupRequest",
    "OperationResult",
    "OperationStatus",
    "RemoteSpec",
    "RestorePlan",
    "RestoreType",
    "Selection",
]

__version__ = "0.1.0"
