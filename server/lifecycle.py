"""
Graceful shutdown and lifecycle management.

On SIGTERM/SIGINT the server stops accepting jobs, gives live provisioning
programs a grace period to exit, and waits for in-flight requests.
"""

import time
import signal
import logging

logger = logging.getLogger(__name__)

_shutdown_in_progress = False
_active_requests = 0
_lab_manager = None
_grace_period = 30.0
_shutdown_timeout = 30


def increment_active_requests():
    """Increment active request counter."""
    global _active_requests
    _active_requests += 1


def decrement_active_requests():
    """Decrement active request counter."""
    global _active_requests
    _active_requests = max(0, _active_requests - 1)


def get_active_requests():
    """Return current active request count."""
    return _active_requests


def is_shutting_down():
    return _shutdown_in_progress


def graceful_shutdown(signum, frame):
    """Handle graceful shutdown on SIGTERM/SIGINT."""
    global _shutdown_in_progress

    if _shutdown_in_progress:
        logger.warning("Forced shutdown requested")
        raise SystemExit(1)

    _shutdown_in_progress = True
    signal_name = signal.Signals(signum).name
    logger.info(f"Received {signal_name}, starting graceful shutdown...")

    # Stop provisioning programs; their jobs stay running on disk
    if _lab_manager is not None:
        logger.info(f"Stopping job executions (grace period {_grace_period}s)...")
        interrupted = _lab_manager.shutdown(_grace_period)
        if interrupted:
            logger.warning(f"Left {len(interrupted)} job(s) running: {interrupted}")

    # Wait for active requests to complete
    start_time = time.time()

    while _active_requests > 0 and (time.time() - start_time) < _shutdown_timeout:
        logger.info(f"Waiting for {_active_requests} active requests to complete...")
        time.sleep(1)

    if _active_requests > 0:
        logger.warning(f"Shutdown timeout reached with {_active_requests} requests still active")
    else:
        logger.info("All requests completed")

    logger.info("Graceful shutdown complete")
    raise SystemExit(0)


def register_shutdown_handlers(lab_manager=None, grace_period=30.0, shutdown_timeout=30):
    """Register signal handlers for graceful shutdown."""
    global _lab_manager, _grace_period, _shutdown_timeout
    _lab_manager = lab_manager
    _grace_period = grace_period
    _shutdown_timeout = shutdown_timeout

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)
    logger.info("Registered shutdown handlers for SIGTERM and SIGINT")
