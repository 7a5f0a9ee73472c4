from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from croniter import croniter
from pydantic import ValidationError
from zoneinfo import ZoneInfo

from .config import ConfigurationError, ManagerConfig, SchedulerConfig, load_config
from .logger import configure_logging
from .models import BackupLayout, InputError, OperationResult, RestorePlan, RestoreType, Selection
from .orchestrator import Manager, TargetFactory, docker_target_factory

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

SOURCE_LATEST = "latest"
SOURCE_ROOT = "root"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Path to configuration YAML file.")
    common.add_argument("--container", help="n8n container name or ID.")
    common.add_argument("--repo", help="GitHub repository as owner/name.")
    common.add_argument("--branch", help="Branch holding the backups.")
    common.add_argument("--token", help="GitHub token (prefer the token_env setting).")
    common.add_argument("--dry-run", action="store_true", help="Log actions without changing anything.")
    common.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL"),
        help="Log level (default from config, INFO).",
    )
    common.add_argument("--log-file", help="Also append logs to this file.")

    parser = argparse.ArgumentParser(prog="n8n-manager", description="Back up and restore n8n via Git.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", parents=[common], help="Back up workflows and credentials.")
    backup.add_argument("--workflow-id", help="Back up a single workflow.")
    backup.add_argument("--credential-id", help="Back up a single credential.")
    backup.add_argument("--all-workflows", action="store_true", help="Back up all workflows.")
    backup.add_argument("--all-credentials", action="store_true", help="Back up all credentials.")
    backup.add_argument("--separate-files", action="store_true", help="Store one JSON file per item.")
    backup.add_argument("--dated", action="store_true", help="Store the backup in a timestamped directory.")
    backup.add_argument("--incremental", action="store_true", help="Only commit when something changed.")
    backup.add_argument(
        "--include-linked-creds",
        action="store_true",
        help="Also back up credentials used by the selected workflow.",
    )
    backup.add_argument(
        "--include-env",
        action="store_true",
        help="Also store the container's N8N_* environment variables in .env.",
    )
    backup.add_argument("--schedule", action="store_true", help="Run on the configured cron schedule.")

    restore = subparsers.add_parser("restore", parents=[common], help="Restore from the backup repository.")
    restore.add_argument("--restore-type", choices=[t.value for t in RestoreType], help="What to restore.")
    restore.add_argument("--separate-files", action="store_true", help="Expect one JSON file per item.")
    restore.add_argument("--import-as-new", action="store_true", help="Strip IDs so items are created anew.")
    restore.add_argument("--user-id", help="Assign imported items to this n8n user.")
    restore.add_argument("--project-id", help="Assign imported items to this n8n project.")
    restore.add_argument(
        "--source",
        default=SOURCE_LATEST,
        help="Dated backup directory to restore, 'latest' (default) or 'root'.",
    )
    restore.add_argument("--yes", action="store_true", help="Do not ask for confirmation.")

    rollback = subparsers.add_parser("rollback", parents=[common], help="Replay a pre-restore snapshot.")
    rollback.add_argument("--snapshot", required=True, help="Pre-restore snapshot directory.")
    rollback.add_argument(
        "--restore-type",
        choices=[t.value for t in RestoreType],
        default=RestoreType.ALL.value,
        help="What to roll back.",
    )
    return parser.parse_args(argv)


def load_configuration(args: argparse.Namespace) -> ManagerConfig:
    config = load_config(Path(args.config) if args.config else None)
    return apply_overrides(config, args)


def apply_overrides(config: ManagerConfig, args: argparse.Namespace) -> ManagerConfig:
    data: Dict[str, Any] = config.model_dump()
    github = data["github"]
    if args.repo:
        github["repo"] = args.repo
    if args.branch:
        github["branch"] = args.branch
    if args.token:
        github["token"] = args.token
    if args.container:
        data["container"] = args.container
    if args.log_level:
        data["logging"]["level"] = args.log_level
    if args.log_file:
        data["logging"]["file"] = args.log_file

    if args.command == "backup":
        backup = data["backup"]
        if args.separate_files:
            backup["layout"] = BackupLayout.SEPARATE_FILES
        backup["dated"] = backup["dated"] or args.dated
        backup["incremental"] = backup["incremental"] or args.incremental
        backup["include_linked_credentials"] = backup["include_linked_credentials"] or args.include_linked_creds
        backup["include_env"] = backup["include_env"] or args.include_env
    elif args.command == "restore":
        restore = data["restore"]
        if args.restore_type:
            restore["type"] = args.restore_type
        restore["import_as_new"] = restore["import_as_new"] or args.import_as_new
        if args.user_id:
            restore["user_id"] = args.user_id
        if args.project_id:
            restore["project_id"] = args.project_id

    try:
        return ManagerConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def report(result: OperationResult) -> int:
    if result.success:
        logging.info(
            "%s finished with status %s in %.2fs%s",
            result.action.capitalize(),
            result.status.value,
            result.duration,
            " (dry run)" if result.dry_run else "",
        )
        if result.commit_id:
            logging.info("Commit: %s", result.commit_id)
        if result.snapshot_location:
            logging.info("Location: %s", result.snapshot_location)
        return EXIT_OK

    logging.error("%s failed: %s", result.action.capitalize(), "; ".join(result.errors))
    if result.retained_path:
        logging.warning("Files kept for recovery at: %s", result.retained_path)
    return EXIT_FAILURE


def run_backup(manager: Manager, args: argparse.Namespace) -> int:
    selection = Selection.from_options(
        workflow_id=args.workflow_id,
        credential_id=args.credential_id,
        all_workflows=args.all_workflows,
        all_credentials=args.all_credentials,
    )
    request = manager.config.backup_request(selection, dry_run=args.dry_run)
    request.validate()
    return report(manager.run_backup(request))


def run_restore(manager: Manager, args: argparse.Namespace) -> int:
    layout = BackupLayout.SEPARATE_FILES if args.separate_files else None
    plan = manager.config.restore_plan(layout=layout, dry_run=args.dry_run)
    plan.validate()
    confirm = None if args.yes else confirm_restore
    result = manager.run_restore(plan, confirm=confirm, source_chooser=source_chooser(args.source))
    return report(result)


def run_rollback(manager: Manager, args: argparse.Namespace) -> int:
    result = manager.run_rollback(
        Path(args.snapshot).expanduser(),
        RestoreType(args.restore_type),
        dry_run=args.dry_run,
    )
    return report(result)


def confirm_restore(plan: RestorePlan) -> bool:
    print(f"This will import {plan.restore_type.value} into n8n and may overwrite existing items.")
    try:
        answer = input("Type 'yes' to continue: ")
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


def source_chooser(source: str):
    def _choose(candidates: List[str]) -> Optional[str]:
        if source == SOURCE_ROOT:
            return None
        if source == SOURCE_LATEST:
            return candidates[0] if candidates else None
        return source

    return _choose


def main(argv: Optional[Sequence[str]] = None, target_factory: TargetFactory = docker_target_factory) -> int:
    args = parse_args(argv)
    try:
        config = load_configuration(args)
    except ConfigurationError as exc:
        configure_logging(args.log_level or "INFO")
        logging.error("Configuration error: %s", exc)
        return EXIT_USAGE

    configure_logging(config.logging.level, config.logging.file)
    manager = Manager(config=config, target_factory=target_factory)

    try:
        if args.command == "backup":
            if args.schedule:
                return run_with_scheduler(args, manager, target_factory)
            return run_backup(manager, args)
        if args.command == "restore":
            return run_restore(manager, args)
        return run_rollback(manager, args)
    except (ConfigurationError, InputError) as exc:
        logging.error("%s", exc)
        return EXIT_USAGE


def run_with_scheduler(args: argparse.Namespace, manager: Manager, target_factory: TargetFactory) -> int:
    scheduler = _require_scheduler(manager.config.scheduler)
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        logging.info("Executing initial backup immediately")
    else:
        logging.info("Next backup scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            try:
                manager = Manager(config=load_configuration(args), target_factory=target_factory)
            except ConfigurationError as exc:
                logging.error("Failed to reload configuration: %s; continuing with previous settings", exc)
            else:
                if not manager.config.scheduler:
                    logging.info("Scheduler removed from configuration; exiting loop")
                    break
                scheduler = manager.config.scheduler
                timezone = ZoneInfo(scheduler.timezone)

            try:
                exit_code = run_backup(manager, args)
            except (ConfigurationError, InputError) as exc:
                logging.error("Scheduled backup not started: %s", exc)
                exit_code = EXIT_USAGE
            if exit_code != EXIT_OK:
                logging.warning("Scheduled backup completed with errors (exit code %s)", exit_code)

            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            logging.info("Next backup scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    logging.info("Scheduler stopped")
    return EXIT_OK


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ConfigurationError("Scheduled backups need a 'scheduler' section with a cron expression")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
