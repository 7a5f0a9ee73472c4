from __future__ import annotations

import os
from datetime import datetime

import pytest

from n8n_manager.backup import BackupOrchestrator, BackupState
from n8n_manager.models import BackupLayout, BackupRequest, OperationStatus, RemoteSpec, Selection

FIXED_TIME = datetime(2024, 5, 1, 3, 0, 0)


@pytest.fixture
def populated(n8n):
    n8n.add_workflow("w1", "Alpha", credential_ids=["c1"])
    n8n.add_workflow("w2", "Beta")
    n8n.add_credential("c1", "api")
    n8n.add_credential("c2", "smtp")
    return n8n


def _orchestrator(target, remote, workdirs, clock=lambda: FIXED_TIME):
    return BackupOrchestrator(target, remote, workspace_root=workdirs["workspace"], clock=clock)


def test_full_backup_to_fresh_remote(populated, remote, remote_reader, workdirs):
    orchestrator = _orchestrator(populated, remote, workdirs)

    result = orchestrator.run(BackupRequest())

    assert result.status is OperationStatus.SUCCESS
    assert orchestrator.state is BackupState.DONE
    assert result.commit_id
    assert remote_reader.commit_count() == 1
    assert remote_reader.last_message() == "n8n Backup (v1.45.0) - 2024-05-01_03-00-00 [full]"
    assert sorted(remote_reader.files()) == ["backup_manifest.json", "credentials.json", "workflows.json"]
    assert [w["id"] for w in remote_reader.read_json("workflows.json")] == ["w1", "w2"]
    assert remote_reader.read_json("backup_manifest.json")["item_counts"] == {"workflows": 2, "credentials": 2}


def test_staging_and_workspace_are_cleaned_up(populated, remote, workdirs):
    _orchestrator(populated, remote, workdirs).run(BackupRequest())

    assert list(populated.host_path("/tmp/n8n-manager").iterdir()) == []
    assert list(workdirs["workspace"].iterdir()) == []


def test_unreachable_remote_fails_before_export(populated, tmp_path, workdirs):
    remote = RemoteSpec(url=(tmp_path / "nowhere.git").as_uri(), display_name="nowhere")

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest())

    assert result.status is OperationStatus.FAILED
    assert populated.commands_mentioning("export:") == []


def test_dated_and_incremental_rejected_without_side_effects(populated, remote, remote_reader, workdirs):
    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(dated=True, incremental=True))

    assert result.status is OperationStatus.FAILED
    assert "cannot be combined" in result.errors[0]
    assert populated.commands == []
    assert remote_reader.commit_count() == 0


def test_incremental_without_changes_is_a_no_op(populated, remote, remote_reader, workdirs):
    _orchestrator(populated, remote, workdirs).run(BackupRequest())

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(incremental=True))

    assert result.status is OperationStatus.NO_CHANGES
    assert result.success
    assert remote_reader.commit_count() == 1


def test_incremental_with_changes_commits(populated, remote, remote_reader, workdirs):
    _orchestrator(populated, remote, workdirs).run(BackupRequest())
    populated.add_workflow("w3", "Gamma")

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(incremental=True))

    assert result.status is OperationStatus.SUCCESS
    assert "workflows.json" in result.change_set.changed()
    assert remote_reader.commit_count() == 2
    assert remote_reader.last_message().endswith("[incremental]")


def test_first_incremental_backup_is_full(populated, remote, remote_reader, workdirs):
    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(incremental=True))

    assert result.status is OperationStatus.SUCCESS
    assert remote_reader.commit_count() == 1


def test_switching_layout_removes_the_other_representation(populated, remote, remote_reader, workdirs):
    _orchestrator(populated, remote, workdirs).run(BackupRequest())

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(layout=BackupLayout.SEPARATE_FILES))

    assert result.status is OperationStatus.SUCCESS
    files = remote_reader.files()
    assert "workflows.json" not in files
    assert "credentials.json" not in files
    assert "workflows/w1.json" in files
    assert "credentials/c2.json" in files


def test_dated_backups_never_overwrite(populated, remote, remote_reader, workdirs):
    _orchestrator(populated, remote, workdirs).run(BackupRequest(dated=True))

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(dated=True))

    assert result.snapshot_location == "backup_2024-05-01_03-00-00-1"
    files = remote_reader.files()
    assert "backup_2024-05-01_03-00-00/workflows.json" in files
    assert "backup_2024-05-01_03-00-00-1/workflows.json" in files
    assert remote_reader.last_message().endswith("[full] [backup_2024-05-01_03-00-00-1]")


def test_empty_instance_writes_placeholders(n8n, remote, remote_reader, workdirs):
    result = _orchestrator(n8n, remote, workdirs).run(BackupRequest())

    assert result.status is OperationStatus.SUCCESS
    assert remote_reader.read_json("workflows.json") == []
    assert remote_reader.read_json("credentials.json") == []


def test_single_workflow_with_linked_credentials(populated, remote, remote_reader, workdirs):
    request = BackupRequest(
        selection=Selection.from_options(workflow_id="w1"),
        include_linked_credentials=True,
    )

    result = _orchestrator(populated, remote, workdirs).run(request)

    assert result.status is OperationStatus.SUCCESS
    assert [w["id"] for w in remote_reader.read_json("workflows.json")] == ["w1"]
    assert [c["id"] for c in remote_reader.read_json("credentials.json")] == ["c1"]
    assert remote_reader.last_message().endswith("[selective]")


@pytest.mark.parametrize("layout", list(BackupLayout))
def test_incremental_commits_changed_linked_credential(layout, populated, remote, remote_reader, workdirs):
    request = BackupRequest(
        selection=Selection.from_options(workflow_id="w1"),
        layout=layout,
        include_linked_credentials=True,
    )
    _orchestrator(populated, remote, workdirs).run(request)
    populated.add_credential("c1", "rotated")

    result = _orchestrator(populated, remote, workdirs).run(
        BackupRequest(
            selection=request.selection,
            layout=layout,
            include_linked_credentials=True,
            incremental=True,
        )
    )

    assert result.status is OperationStatus.SUCCESS
    assert remote_reader.commit_count() == 2
    if layout is BackupLayout.SEPARATE_FILES:
        assert remote_reader.read_json("credentials/c1.json")["name"] == "rotated"
    else:
        assert remote_reader.read_json("credentials.json")[0]["name"] == "rotated"


def test_include_env_stores_only_n8n_variables(populated, remote, remote_reader, workdirs):
    populated.environment.update({"N8N_HOST": "n8n.example.com", "N8N_PORT": "5678"})

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(include_env=True))

    assert result.status is OperationStatus.SUCCESS
    assert ".env" in remote_reader.files()
    assert remote_reader.read_text(".env").splitlines() == ["N8N_HOST=n8n.example.com", "N8N_PORT=5678"]


def test_env_is_not_captured_by_default(populated, remote, remote_reader, workdirs):
    populated.environment["N8N_HOST"] = "n8n.example.com"

    _orchestrator(populated, remote, workdirs).run(BackupRequest())

    assert ".env" not in remote_reader.files()
    assert populated.commands_mentioning("printenv") == []


def test_env_capture_failure_does_not_fail_backup(populated, remote, remote_reader, workdirs):
    populated.fail_on.add("printenv")

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(include_env=True))

    assert result.status is OperationStatus.SUCCESS
    assert ".env" not in remote_reader.files()


def test_unknown_workflow_id_fails(populated, remote, remote_reader, workdirs):
    request = BackupRequest(selection=Selection.from_options(workflow_id="missing"))

    result = _orchestrator(populated, remote, workdirs).run(request)

    assert result.status is OperationStatus.FAILED
    assert remote_reader.commit_count() == 0


def test_export_failure_commits_nothing(populated, remote, remote_reader, workdirs):
    populated.fail_on.add("export:credentials")

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest())

    assert result.status is OperationStatus.FAILED
    assert remote_reader.commit_count() == 0
    assert list(populated.host_path("/tmp/n8n-manager").iterdir()) == []


def test_dry_run_leaves_remote_untouched(populated, remote, remote_reader, workdirs):
    result = _orchestrator(populated, remote, workdirs).run(BackupRequest(dry_run=True))

    assert result.status is OperationStatus.SUCCESS
    assert result.dry_run
    assert remote_reader.commit_count() == 0


def test_push_failure_keeps_local_commit(populated, remote, remote_path, workdirs):
    hook = remote_path / "hooks" / "pre-receive"
    hook.write_text("#!/bin/sh\nexit 1\n", encoding="utf-8")
    os.chmod(hook, 0o755)

    result = _orchestrator(populated, remote, workdirs).run(BackupRequest())

    assert result.status is OperationStatus.FAILED
    assert result.retained_path is not None
    assert (result.retained_path / ".git").is_dir()
    assert (result.retained_path / "workflows.json").is_file()
