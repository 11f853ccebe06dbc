#!/usr/bin/env python3
"""
CourseGen v1.0.0: main entry point.

    coursegen run transcript.txt --audience "new engineers" --max-lessons 4
    coursegen resume
    coursegen status <job-id>
    coursegen cancel <job-id>
    coursegen diagnostics
"""

import argparse
import json
import logging
import sys
import traceback
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

from coursegen.core.config import AppConfig
from coursegen.core.constants import APP_NAME, APP_VERSION, LOG_DIR, DEFAULT_MAX_LESSONS
from coursegen.core.db_sqlite import Database
from coursegen.core.diagnostics import get_diagnostics
from coursegen.core.error_codes import ValidationError
from coursegen.core.job_queue import JobQueueManager

logger = logging.getLogger("coursegen")


def setup_logging(verbose: bool = False):
    """Log to <app dir>/logs/app.log and stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "app.log", encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def snapshot_to_dict(snapshot) -> dict:
    data = asdict(snapshot)
    data['artifacts'] = {stage: artifact for stage, artifact in snapshot.artifacts}
    return data


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def cmd_run(manager: JobQueueManager, args) -> int:
    transcript = Path(args.transcript).read_text(encoding="utf-8")
    course = {
        'target_audience': args.audience,
        'max_lessons': args.max_lessons,
        'title': args.title or "",
    }
    if args.voice:
        course['voice'] = {'voice': args.voice}
    try:
        job_id = manager.submit(transcript, course)
    except ValidationError as e:
        print(f"Rejected: {e.message}", file=sys.stderr)
        return 2

    manager.start()
    for event in manager.subscribe(job_id):
        print(f"[{event.percentage:3d}%] {event.stage or '-'}: {event.message}", file=sys.stderr)
    snapshot = manager.status(job_id)
    manager.shutdown()
    _print(snapshot_to_dict(snapshot))
    return 0 if snapshot.status == "COMPLETED" else 1


def cmd_resume(manager: JobQueueManager, args) -> int:
    pending = [job.id for status in ("RUNNING", "QUEUED")
               for job in manager.db.get_jobs_by_status(status)]
    manager.start()
    for job_id in pending:
        snapshot = manager.wait(job_id)
        print(f"{job_id}: {snapshot.status}", file=sys.stderr)
    manager.shutdown()
    return 0


def cmd_status(manager: JobQueueManager, args) -> int:
    snapshot = manager.status(args.job_id)
    if snapshot is None:
        print(f"Unknown job {args.job_id}", file=sys.stderr)
        return 1
    _print(snapshot_to_dict(snapshot))
    return 0


def cmd_cancel(manager: JobQueueManager, args) -> int:
    if not manager.cancel(args.job_id):
        print(f"Job {args.job_id} is unknown or already finished", file=sys.stderr)
        return 1
    return 0


def cmd_diagnostics(manager: JobQueueManager, args) -> int:
    _print(get_diagnostics(manager))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coursegen", description=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Turn a transcript into a course")
    run.add_argument("transcript", type=Path)
    run.add_argument("--audience", required=True)
    run.add_argument("--max-lessons", type=int, default=DEFAULT_MAX_LESSONS)
    run.add_argument("--title")
    run.add_argument("--voice")
    run.set_defaults(func=cmd_run)

    sub.add_parser("resume", help="Finish jobs left over from a previous run") \
        .set_defaults(func=cmd_resume)

    status = sub.add_parser("status", help="Show a job")
    status.add_argument("job_id")
    status.set_defaults(func=cmd_status)

    cancel = sub.add_parser("cancel", help="Cancel a queued or running job")
    cancel.add_argument("job_id")
    cancel.set_defaults(func=cmd_cancel)

    sub.add_parser("diagnostics", help="Queue, limiter and cache state") \
        .set_defaults(func=cmd_diagnostics)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("=" * 60)

    config = AppConfig(args.config)
    db = Database(config.db_path)
    try:
        manager = JobQueueManager(db, config)
        return args.func(manager, args)
    except Exception as e:
        logger.critical("Fatal error: %s: %s\n%s", type(e).__name__, e, traceback.format_exc())
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
