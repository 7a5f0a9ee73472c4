from __future__ import annotations

import json

from n8n_manager.discovery import (
    discover_linked_credentials,
    discover_linked_credentials_in_directory,
    discover_linked_credentials_in_file,
)


def _workflow(*cred_ids):
    return {
        "id": "w",
        "nodes": [{"name": f"n{i}", "credentials": {"api": {"id": cid, "name": "x"}}} for i, cid in enumerate(cred_ids)],
    }


def test_discovers_unique_sorted_ids_across_workflows():
    export = [_workflow("c2", "c1"), _workflow("c1")]

    assert discover_linked_credentials(export) == ["c1", "c2"]


def test_accepts_single_workflow_and_wrapped_list():
    assert discover_linked_credentials(_workflow("c9")) == ["c9"]
    assert discover_linked_credentials({"workflows": [_workflow("c3")]}) == ["c3"]


def test_malformed_nodes_are_skipped():
    export = {
        "nodes": [
            "not a node",
            {"credentials": "nope"},
            {"credentials": {"a": "nope"}},
            {"credentials": {"a": {"name": "no id"}}},
            {"credentials": {"a": {"id": 42}}},
        ]
    }

    assert discover_linked_credentials(export) == ["42"]


def test_nothing_to_discover():
    assert discover_linked_credentials([]) == []
    assert discover_linked_credentials("garbage") == []
    assert discover_linked_credentials([{"id": "w", "nodes": []}]) == []


def test_discovery_from_files(tmp_path):
    (tmp_path / "a.json").write_text(json.dumps(_workflow("c1")), encoding="utf-8")
    (tmp_path / "b.json").write_text(json.dumps(_workflow("c2", "c1")), encoding="utf-8")

    assert discover_linked_credentials_in_file(tmp_path / "a.json") == ["c1"]
    assert discover_linked_credentials_in_directory(tmp_path) == ["c1", "c2"]
