"""Typed builders for the commands issued against an n8n container.

Every command is an argv list; nothing is passed through a shell, and
operator-supplied identifiers are validated when the command is built.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .models import BackupLayout, IdentityOverrides, InputError, Kind, Selector, check_identifier

N8N_BINARY = "n8n"


class CommandError(InputError):
    """Raised when a command cannot be built from the given arguments."""


def validate_identifier(value: str, label: str) -> str:
    return check_identifier(value, label, CommandError)


def _require_absolute(path: str) -> str:
    if not posixpath.isabs(path):
        raise CommandError(f"Target path must be absolute: {path}")
    return path


def _as_directory(path: str) -> str:
    return path if path.endswith("/") else f"{path}/"


@dataclass(frozen=True)
class ExportCommand:
    selector: Selector
    layout: BackupLayout
    output: str

    def __post_init__(self) -> None:
        _require_absolute(self.output)
        if self.selector.item_id is not None:
            validate_identifier(self.selector.item_id, f"{self.selector.kind.value} ID")

    @property
    def kind(self) -> Kind:
        return self.selector.kind

    def argv(self) -> List[str]:
        args = [N8N_BINARY, f"export:{self.kind.cli_noun}"]
        if self.layout is BackupLayout.SEPARATE_FILES:
            if self.selector.is_all:
                args.append("--backup")
            else:
                args.extend([f"--id={self.selector.item_id}", "--separate", "--pretty"])
            output = _as_directory(self.output)
        else:
            args.append("--all" if self.selector.is_all else f"--id={self.selector.item_id}")
            output = self.output
        if self.kind is Kind.CREDENTIAL:
            args.append("--decrypted")
        args.append(f"--output={output}")
        return args


@dataclass(frozen=True)
class ImportCommand:
    kind: Kind
    layout: BackupLayout
    input_path: str
    identity: IdentityOverrides = IdentityOverrides()

    def __post_init__(self) -> None:
        _require_absolute(self.input_path)
        if self.identity.user_id is not None:
            validate_identifier(self.identity.user_id, "user ID")
        if self.identity.project_id is not None:
            validate_identifier(self.identity.project_id, "project ID")

    def argv(self) -> List[str]:
        args = [N8N_BINARY, f"import:{self.kind.cli_noun}"]
        if self.layout is BackupLayout.SEPARATE_FILES:
            args.extend(["--separate", f"--input={_as_directory(self.input_path)}"])
        else:
            args.append(f"--input={self.input_path}")
        if self.identity.user_id:
            args.append(f"--userId={self.identity.user_id}")
        if self.identity.project_id:
            args.append(f"--projectId={self.identity.project_id}")
        return args


def make_directory(path: str) -> List[str]:
    return ["mkdir", "-p", _require_absolute(path)]


def remove_paths(paths: Sequence[str]) -> List[str]:
    if not paths:
        raise CommandError("No paths given for cleanup.")
    for path in paths:
        _require_absolute(path)
        if posixpath.normpath(path) == "/":
            raise CommandError("Refusing to remove the container root.")
    return ["rm", "-rf", *paths]


def version_command() -> List[str]:
    return [N8N_BINARY, "--version"]


def environment_command() -> List[str]:
    return ["printenv"]


def parse_version(output: str) -> Optional[str]:
    match = re.search(r"(\d+\.\d+\.\d+)", output or "")
    return match.group(1) if match else None
