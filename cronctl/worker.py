import logging
import signal
import sqlite3
import threading
import time
from datetime import timedelta
from typing import Optional

from . import dispatch_queue
from .backoff import backoff
from .callback import execute_callback
from .config import Settings
from .db import connect_db
from .errors import StoreError
from .models import FAILED_TERMINAL, RETRY_SCHEDULED, SUCCEEDED, DispatchTask
from .repository import (
    load_settings, mark_failed_terminal, mark_succeeded, schedule_retry, start_execution,
)
from .scheduler import default_owner, run_scheduler
from .utils import SYSTEM_CLOCK, to_iso

logger = logging.getLogger(__name__)

_stop = threading.Event()

IDLE_SLEEP = 0.5


def setup_signal_handlers(stop_event: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping.", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # only the main thread may install handlers
            logger.debug("Cannot install handler for signal %s here", sig)


def handle_task(conn, task: DispatchTask, worker_id: str, settings: Settings,
                clock=SYSTEM_CLOCK, session=None) -> Optional[str]:
    """
    Execute one dispatch task and record the outcome on its run.

    Returns the state the run moved to, or None when the task was stale
    (already executed, reclaimed, or re-claimed under a new token) or the
    lease was lost before the outcome could be written.
    """
    run = start_execution(conn, task.run_id, task.claim_token, worker_id,
                          settings.lease_timeout_seconds, clock=clock)
    if run is None:
        logger.info("[%s] Dropping stale task for run %s (attempt %s)",
                    worker_id, task.run_id, task.attempt)
        return None

    attempt = run.attempt
    logger.info("[%s] Executing %s run %s attempt %d/%d: %s %s",
                worker_id, run.job_name, run.id, attempt, max(run.max_retries, 1),
                run.target.method, run.target.url)
    result = execute_callback(
        run, attempt,
        timeout=settings.callback_timeout_seconds,
        success_range=settings.success_status_range,
        session=session,
    )
    outcome = dict(status=result.status, body=result.body, duration=result.duration, clock=clock)

    if result.ok:
        if mark_succeeded(conn, run.id, run.claim_token, **outcome):
            logger.info("[%s] Run %s of %s succeeded (HTTP %s).", worker_id, run.id, run.job_name, result.status)
            return SUCCEEDED
    elif attempt < run.max_retries:
        delay_ms = backoff(attempt, run.retry_backoff_ms, settings.backoff_ceiling_ms, settings.backoff_policy)
        next_at = clock.now() + timedelta(milliseconds=delay_ms)
        if schedule_retry(conn, run.id, run.claim_token, error=result.error, next_attempt_at=next_at, **outcome):
            logger.info("[%s] Run %s of %s failed (%s), retry at %s.",
                        worker_id, run.id, run.job_name, result.error, to_iso(next_at))
            return RETRY_SCHEDULED
    else:
        if mark_failed_terminal(conn, run.id, run.claim_token, error=result.error, **outcome):
            logger.error("[%s] Run %s of %s failed after %d attempt(s): %s",
                         worker_id, run.id, run.job_name, attempt, result.error)
            return FAILED_TERMINAL

    logger.warning("[%s] Run %s lost its lease before the outcome was recorded", worker_id, run.id)
    return None


def worker_loop(name: str, *, db_path: Optional[str] = None,
                stop_event: threading.Event = _stop, clock=SYSTEM_CLOCK, session=None):
    conn = connect_db(db_path)
    try:
        settings = load_settings(conn)
    except (sqlite3.Error, ValueError) as e:
        logger.warning("[%s] Could not load config (%s); using defaults.", name, e)
        settings = Settings()

    failures = 0
    while not stop_event.is_set():
        try:
            task = dispatch_queue.receive(conn, name, settings.visibility_timeout_seconds, clock=clock)
            if not task:
                stop_event.wait(IDLE_SLEEP)
                continue
            handle_task(conn, task, name, settings, clock=clock, session=session)
            dispatch_queue.ack(conn, task.task_id)
            failures = 0
        except (sqlite3.Error, StoreError) as e:
            # unacked tasks come back after their visibility timeout
            if conn.in_transaction:
                conn.rollback()
            failures += 1
            delay = backoff(failures, settings.infra_backoff_ms, settings.backoff_ceiling_ms,
                            settings.backoff_policy) / 1000.0
            logger.warning("[%s] Store unavailable (%s); retrying in %.2fs", name, e, delay)
            stop_event.wait(delay)
        except Exception:
            logger.exception("[%s] Unexpected error", name)
            stop_event.wait(1)

    conn.close()
    logger.info("[%s] Worker stopped.", name)


def start_workers(count: int, *, db_path: Optional[str] = None, with_scheduler: bool = False,
                  owner: Optional[str] = None):
    """Start worker threads (and optionally a scheduler thread) until signalled."""
    setup_signal_handlers(_stop)
    threads = []

    if with_scheduler:
        t = threading.Thread(
            target=run_scheduler,
            kwargs=dict(owner=owner or default_owner(), db_path=db_path, stop_event=_stop),
            name="scheduler",
            daemon=True,
        )
        t.start()
        threads.append(t)
        logger.info("Started %s", t.name)

    prefix = owner or default_owner()
    for i in range(count):
        t = threading.Thread(
            target=worker_loop,
            args=(f"{prefix}/worker-{i+1}",),
            kwargs=dict(db_path=db_path, stop_event=_stop),
            name=f"worker-{i+1}",
            daemon=True,
        )
        t.start()
        threads.append(t)
        logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        _stop.set()
        for t in threads:
            t.join()
        logger.info("All threads stopped gracefully.")
