"""
Lab server entry point.

Usage:
    python lab_server.py --port 8080 --work-dir /tmp/easylab-jobs --data-dir /tmp/easylab-data
    python lab_server.py --env-file .env

Flags override environment variables (PORT, WORK_DIR, DATA_DIR), which
override .env values.
"""

import argparse
import logging
import threading
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger('lab_server')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Lab provisioning server")
    parser.add_argument("--host", help="Address to bind (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: PORT or 8080)")
    parser.add_argument("--work-dir", help="Root for per-job workspaces (default: WORK_DIR)")
    parser.add_argument("--data-dir", help="Directory for persisted jobs (default: DATA_DIR)")
    parser.add_argument("--env-file", help="Load environment variables from this file")
    return parser.parse_args(argv)


def load_settings(args):
    """Build settings from env/.env, then apply command-line overrides."""
    from config.settings import get_settings

    if args.env_file:
        if not load_dotenv(args.env_file):
            raise SystemExit(f"Cannot load env file: {args.env_file}")
    else:
        load_dotenv()

    get_settings.cache_clear()
    settings = get_settings()

    job_overrides = {}
    if args.work_dir:
        job_overrides["work_dir"] = Path(args.work_dir)
    if args.data_dir:
        job_overrides["data_dir"] = Path(args.data_dir)

    overrides = {}
    if job_overrides:
        overrides["jobs"] = settings.jobs.model_copy(update=job_overrides)
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port

    return settings.model_copy(update=overrides) if overrides else settings


def _recover_in_background(lab_manager):
    def recover():
        try:
            result = lab_manager.recover_jobs()
            logger.info(f"Job recovery finished: {result['loaded']} loaded")
        except Exception:
            logger.exception("Job recovery failed")

    thread = threading.Thread(target=recover, name="job-recovery", daemon=True)
    thread.start()
    return thread


def main(argv=None):
    args = parse_args(argv)
    settings = load_settings(args)

    from server.logging_config import configure_logging
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
    )

    from core.jobs.labs import LabManager
    from server.app import create_app
    from server.lifecycle import register_shutdown_handlers

    for directory in (settings.jobs.work_dir, settings.jobs.data_dir):
        directory.mkdir(parents=True, exist_ok=True)

    lab_manager = LabManager.from_settings(settings)
    _recover_in_background(lab_manager)

    app = create_app(lab_manager=lab_manager)
    register_shutdown_handlers(
        lab_manager,
        grace_period=settings.jobs.shutdown_grace_seconds,
        shutdown_timeout=settings.shutdown_timeout,
    )

    logger.info(f"Starting lab server on {settings.host}:{settings.port}...")
    logger.info(f"  - Work dir: {settings.jobs.work_dir}")
    logger.info(f"  - Data dir: {settings.jobs.data_dir}")
    logger.info(f"  - Interrupted jobs: {settings.jobs.interrupted_job_policy}")

    # One process only: the job store lives in memory
    app.run(host=settings.host, port=settings.port, threaded=True, use_reloader=False)  # nosec B104


if __name__ == '__main__':
    main()
