import logging
import os
import socket
import sqlite3
import threading
import uuid
from typing import List, Optional

from . import dispatch_queue
from .backoff import backoff
from .config import Settings
from .db import connect_db
from .errors import StoreError
from .models import DispatchTask, Run
from .repository import (
    claim_occurrence, claim_run, find_claimable_runs, find_due_jobs, load_settings,
    reclaim_expired,
)
from .utils import SYSTEM_CLOCK

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


def _dispatch(conn, run: Run, clock) -> DispatchTask:
    task = DispatchTask(
        job_name=run.job_name,
        run_id=run.id,
        attempt=run.attempt + 1,
        claim_token=run.claim_token,
    )
    # earlier tasks for this run carry a dead claim token; drop any nobody holds
    dropped = dispatch_queue.purge_run(conn, run.id, clock=clock)
    if dropped:
        logger.debug("Dropped %d stale task(s) for run %s", dropped, run.id)
    dispatch_queue.put(conn, task, clock=clock)
    return task


def tick(conn, owner: str, settings: Settings, clock=SYSTEM_CLOCK) -> List[DispatchTask]:
    """
    One poll: claim every due occurrence and every retry/reclaimed run this
    instance can win, and enqueue a dispatch task for each claim.

    If enqueueing fails after a claim, the run stays claimed until its lease
    expires and the sweep hands it back, so nothing is lost. A job whose
    definition cannot be evaluated is logged and skipped.
    """
    now = clock.now()
    tasks = []

    for job in find_due_jobs(conn, now, settings.batch_size):
        try:
            run = claim_occurrence(conn, job, owner, settings.lease_timeout_seconds,
                                   clock=clock, coalesce=settings.coalesce)
        except (ValueError, LookupError) as e:
            logger.error("[%s] Skipping job %s: %s", owner, job.name, e)
            continue
        if run is not None:
            tasks.append(_dispatch(conn, run, clock))

    for candidate in find_claimable_runs(conn, now, settings.batch_size):
        run = claim_run(conn, candidate, owner, settings.lease_timeout_seconds, clock=clock)
        if run is not None:
            tasks.append(_dispatch(conn, run, clock))

    if tasks:
        logger.info("[%s] Dispatched %d task(s)", owner, len(tasks))
    return tasks


def sweep(conn, clock=SYSTEM_CLOCK) -> int:
    return reclaim_expired(conn, clock=clock)


def run_scheduler(owner: Optional[str] = None, *, db_path: Optional[str] = None,
                  stop_event: Optional[threading.Event] = None, clock=SYSTEM_CLOCK):
    owner = owner or default_owner()
    stop_event = stop_event or threading.Event()
    conn = connect_db(db_path)
    try:
        settings = load_settings(conn)
    except (sqlite3.Error, ValueError) as e:
        logger.warning("[%s] Could not load config (%s); using defaults.", owner, e)
        settings = Settings()

    logger.info("[%s] Scheduler started (poll=%ss, lease=%ss)",
                owner, settings.poll_interval_seconds, settings.lease_timeout_seconds)
    failures = 0
    last_sweep = None
    try:
        while not stop_event.is_set():
            try:
                now = clock.now()
                if last_sweep is None or (now - last_sweep).total_seconds() >= settings.sweep_interval_seconds:
                    sweep(conn, clock=clock)
                    last_sweep = now
                tick(conn, owner, settings, clock=clock)
                failures = 0
                delay = settings.poll_interval_seconds
            except (sqlite3.Error, StoreError) as e:
                if conn.in_transaction:
                    conn.rollback()
                failures += 1
                delay = backoff(failures, settings.infra_backoff_ms, settings.backoff_ceiling_ms,
                                settings.backoff_policy) / 1000.0
                logger.warning("[%s] Store unavailable (%s); retrying in %.2fs", owner, e, delay)
            except Exception:
                if conn.in_transaction:
                    conn.rollback()
                logger.exception("[%s] Unexpected error", owner)
                delay = 1
            stop_event.wait(delay)
    finally:
        conn.close()
        logger.info("[%s] Scheduler stopped.", owner)
