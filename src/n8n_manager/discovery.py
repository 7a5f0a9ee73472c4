from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Set

LOG = logging.getLogger(__name__)


def _workflows_in(export: Any) -> List[Any]:
    if isinstance(export, list):
        return export
    if isinstance(export, dict):
        wrapped = export.get("workflows")
        if isinstance(wrapped, list):
            return wrapped
        return [export]
    return []


def _credential_ids_in_node(node: Any) -> Iterable[str]:
    if not isinstance(node, dict):
        return []
    credentials = node.get("credentials")
    if not isinstance(credentials, dict):
        return []
    found = []
    for cred_info in credentials.values():
        if isinstance(cred_info, dict):
            cred_id = cred_info.get("id")
            if isinstance(cred_id, (str, int)) and str(cred_id):
                found.append(str(cred_id))
    return found


def discover_linked_credentials(export: Any) -> List[str]:
    """Return the sorted, unique credential IDs referenced by workflow nodes.

    ``export`` may be a single workflow, a list of workflows or an object
    wrapping a ``workflows`` list. Anything else yields an empty list.
    """
    discovered: Set[str] = set()
    for workflow in _workflows_in(export):
        if not isinstance(workflow, dict):
            continue
        nodes = workflow.get("nodes")
        if not isinstance(nodes, list):
            continue
        for node in nodes:
            discovered.update(_credential_ids_in_node(node))
    return sorted(discovered)


def discover_linked_credentials_in_file(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8") as fh:
        export = json.load(fh)
    credential_ids = discover_linked_credentials(export)
    if credential_ids:
        LOG.info("Discovered linked credentials in %s: %s", path.name, ", ".join(credential_ids))
    else:
        LOG.info("No linked credentials found in %s", path.name)
    return credential_ids


def discover_linked_credentials_in_directory(directory: Path) -> List[str]:
    discovered: Set[str] = set()
    for path in sorted(directory.glob("*.json")):
        discovered.update(discover_linked_credentials_in_file(path))
    return sorted(discovered)
