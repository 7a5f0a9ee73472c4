from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

LOG = logging.getLogger(__name__)

DEFAULT_ID_FIELD = "id"


class SanitizeError(Exception):
    """Raised when an export cannot be stripped of its identity fields."""


def strip_ids(collection: Any, id_field: str = DEFAULT_ID_FIELD) -> List[Any]:
    """Return a copy of ``collection`` with ``id_field`` removed from every record.

    Records keep every other field and their original order. Non-object
    entries are passed through untouched, so stripping twice is a no-op.
    """
    if not isinstance(collection, list):
        raise SanitizeError(f"Expected a JSON array of records, got {type(collection).__name__}")

    stripped: List[Any] = []
    for record in collection:
        if isinstance(record, dict):
            stripped.append({key: value for key, value in record.items() if key != id_field})
        else:
            stripped.append(record)
    return stripped


def strip_ids_file(source: Path, destination: Path, id_field: str = DEFAULT_ID_FIELD) -> int:
    """Write an id-less copy of the collection in ``source`` to ``destination``.

    Returns the number of records written. Nothing is written when the
    source is not a well-formed collection.
    """
    raw = _read_text(source)
    if not raw.strip():
        LOG.warning("Input file %s is empty; writing an empty collection", source)
        _write_json_atomic(destination, [])
        return 0

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SanitizeError(f"Malformed JSON in {source}: {exc}") from exc

    stripped = strip_ids(data, id_field)
    _write_json_atomic(destination, stripped)
    LOG.debug("Stripped '%s' from %d records in %s", id_field, len(stripped), source)
    return len(stripped)


def strip_ids_directory(source_dir: Path, destination_dir: Path, id_field: str = DEFAULT_ID_FIELD) -> int:
    """Sanitize a separate-files export, where every file holds one record."""
    if not source_dir.is_dir():
        raise SanitizeError(f"Not a directory: {source_dir}")

    records: Dict[Path, Any] = {}
    for path in sorted(source_dir.glob("*.json")):
        try:
            data = json.loads(_read_text(path))
        except json.JSONDecodeError as exc:
            raise SanitizeError(f"Malformed JSON in {path}: {exc}") from exc
        if isinstance(data, dict):
            records[path] = strip_ids([data], id_field)[0]
        else:
            records[path] = strip_ids(data, id_field)

    # everything is parsed before the first write so a bad file leaves no partial output
    destination_dir.mkdir(parents=True, exist_ok=True)
    for path, record in records.items():
        _write_json_atomic(destination_dir / path.name, record)
    return len(records)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SanitizeError(f"Cannot read {path}: {exc}") from exc


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
