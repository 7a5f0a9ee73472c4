from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

MANIFEST_NAME = "backup_manifest.json"


@dataclass
class BackupManifest:
    created_at: datetime
    layout: str
    backup_type: str
    selection: Dict[str, str]
    item_counts: Dict[str, int] = field(default_factory=dict)
    n8n_version: Optional[str] = None
    schema_version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "created_at": self.created_at.isoformat(),
            "layout": self.layout,
            "backup_type": self.backup_type,
            "selection": self.selection,
            "item_counts": self.item_counts,
            "n8n_version": self.n8n_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupManifest":
        return cls(
            created_at=datetime.fromisoformat(data["created_at"]),
            layout=data.get("layout", ""),
            backup_type=data.get("backup_type", ""),
            selection=data.get("selection", {}),
            item_counts=data.get("item_counts", {}),
            n8n_version=data.get("n8n_version"),
            schema_version=data.get("schema_version", "1.0.0"),
        )

    def write(self, directory: Path) -> Path:
        path = directory / MANIFEST_NAME
        with path.open("w", encoding="utf-8") as fh:
            json.dump(self.to_dict(), fh, indent=2)
        return path

    @classmethod
    def read(cls, directory: Path) -> Optional["BackupManifest"]:
        path = directory / MANIFEST_NAME
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as fh:
                return cls.from_dict(json.load(fh))
        except (ValueError, KeyError):
            return None
