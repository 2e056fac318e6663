from __future__ import annotations

import argparse
import sys
import time

from safebackup.core.config import get_settings
from safebackup.core.logging import configure_logging
from safebackup.db.init_db import initialize_database
from safebackup.db.models import BackupJobType
from safebackup.jobs.service import BackupConflictError
from safebackup.jobs.types import BatchStatus
from safebackup.worker.pipeline import build_orchestrator

TERMINAL_STATUSES = {BatchStatus.COMPLETED, BatchStatus.NO_ACTIVE_JOB, BatchStatus.SESSION_EXPIRED}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a SafeBackup job or the HTTP API")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Start a backup and drive it to completion")
    backup.add_argument(
        "--type",
        dest="job_type",
        choices=[item.value for item in BackupJobType],
        default=BackupJobType.FULL.value,
        help="Backup type",
    )
    backup.add_argument("--session-id", default=None, help="Session id reported with progress")
    backup.add_argument("--exclude", action="append", default=[], help="Extra path substring to exclude")
    backup.add_argument("--resume", action="store_true", help="Continue the active backup instead of failing")
    backup.add_argument("--poll-interval", type=float, default=1.0, help="Seconds to wait while locked")

    subparsers.add_parser("cancel", help="Cancel the active backup")
    subparsers.add_parser("progress", help="Print the last progress snapshot")

    serve = subparsers.add_parser("serve", help="Serve the HTTP API with uvicorn")
    serve.add_argument("--host", default=None, help="Bind address (defaults to api_host)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (defaults to api_port)")
    return parser.parse_args()


def run_backup(args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(with_continuation=False)
    try:
        state = orchestrator.start_backup(
            BackupJobType(args.job_type),
            args.session_id,
            exclusions=args.exclude,
            resume=args.resume,
        )
    except BackupConflictError as exc:
        print(f"error: {exc} (use --resume to continue it)", file=sys.stderr)
        return 2

    print(f"backup job={state.job_id} session={state.session_id} dir={state.work_dir}")
    while True:
        result = orchestrator.run_batch(resume=True)
        print(f"[{result.percent:3d}%] {result.status.value}: {result.message}")
        if result.status in TERMINAL_STATUSES:
            break
        if result.status == BatchStatus.LOCKED:
            time.sleep(args.poll_interval)

    if result.status != BatchStatus.COMPLETED:
        return 1
    print(f"backup_id={result.backup_id}")
    return 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    from safebackup.api.app import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main() -> None:
    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "serve":
        sys.exit(serve(args))

    initialize_database()
    if args.command == "backup":
        sys.exit(run_backup(args))
    if args.command == "cancel":
        cancelled = build_orchestrator(with_continuation=False).cancel_backup()
        print("cancelled" if cancelled else "no_active_job")
        return
    snapshot = build_orchestrator(with_continuation=False).get_progress()
    print(f"[{snapshot.percent:3d}%] active={snapshot.active} session={snapshot.session_id}: {snapshot.message}")


if __name__ == "__main__":
    main()
