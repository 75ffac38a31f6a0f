"""
At-least-once dispatch queue kept in the same SQLite file as the job store.

A received task is hidden for `visibility_timeout` seconds. Acking deletes
it; a consumer that dies before acking lets it reappear for someone else.
"""
import logging
from datetime import timedelta
from typing import Optional

from .db import immediate
from .models import DispatchTask
from .utils import SYSTEM_CLOCK, to_iso

logger = logging.getLogger(__name__)


def put(conn, task: DispatchTask, clock=SYSTEM_CLOCK, delay_seconds: float = 0) -> int:
    now = clock.now()
    with conn:
        cur = conn.execute(
            "INSERT INTO dispatch_tasks(run_id, body, visible_at, created_at) VALUES (?, ?, ?, ?)",
            (task.run_id, task.to_json(), to_iso(now + timedelta(seconds=delay_seconds)), to_iso(now)),
        )
    logger.debug("Enqueued task %s for run %s (attempt %s)", cur.lastrowid, task.run_id, task.attempt)
    return cur.lastrowid


def receive(conn, consumer: str, visibility_timeout: float, clock=SYSTEM_CLOCK) -> Optional[DispatchTask]:
    now = clock.now()
    with immediate(conn):
        row = conn.execute(
            """SELECT id, body, deliveries FROM dispatch_tasks
               WHERE visible_at <= ?
               ORDER BY visible_at ASC, id ASC
               LIMIT 1""",
            (to_iso(now),),
        ).fetchone()
        if not row:
            return None
        conn.execute(
            """UPDATE dispatch_tasks
               SET visible_at=?, consumer=?, deliveries=deliveries+1
               WHERE id=?""",
            (to_iso(now + timedelta(seconds=visibility_timeout)), consumer, row["id"]),
        )
    if row["deliveries"]:
        logger.info("Redelivering task %s (delivery %d)", row["id"], row["deliveries"] + 1)
    return DispatchTask.from_json(row["body"], task_id=row["id"], deliveries=row["deliveries"] + 1)


def ack(conn, task_id: int) -> bool:
    with conn:
        res = conn.execute("DELETE FROM dispatch_tasks WHERE id=?", (task_id,))
    return res.rowcount == 1


def nack(conn, task_id: int, clock=SYSTEM_CLOCK, delay_seconds: float = 0) -> bool:
    """Give the task back early instead of waiting out its visibility timeout."""
    visible_at = clock.now() + timedelta(seconds=delay_seconds)
    with conn:
        res = conn.execute(
            "UPDATE dispatch_tasks SET visible_at=?, consumer=NULL WHERE id=?",
            (to_iso(visible_at), task_id),
        )
    return res.rowcount == 1


def depth(conn) -> int:
    return conn.execute("SELECT COUNT(1) AS c FROM dispatch_tasks").fetchone()["c"]


def purge_run(conn, run_id: int, clock=SYSTEM_CLOCK) -> int:
    """Delete the run's tasks that no consumer currently holds. Returns how many."""
    with conn:
        res = conn.execute(
            "DELETE FROM dispatch_tasks WHERE run_id=? AND visible_at <= ?",
            (run_id, to_iso(clock.now())),
        )
    return res.rowcount
