import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .config import ALLOWED_CONFIG_KEYS, Settings
from .cron import get_zone, next_occurrence, parse_cron
from .db import immediate
from .errors import JobNotFound, JobValidationError, StoreError
from .models import (
    ACTIVE_STATES, CLAIMED, EXECUTING, FAILED_TERMINAL, HTTP_METHODS,
    PENDING, RETRY_SCHEDULED, RUN_STATES, SUCCEEDED, TERMINAL_STATES,
    Job, Run, Schedule, can_transition,
)
from .utils import SYSTEM_CLOCK, to_iso, truncate

logger = logging.getLogger(__name__)

LEASE_EXPIRED_FINAL = "lease expired during final attempt"

_TERMINAL_SQL = "('{}', '{}')".format(SUCCEEDED, FAILED_TERMINAL)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    candidate = get_config(conn)
    candidate[key] = str(value)
    Settings.from_config(candidate)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_settings(conn) -> Settings:
    return Settings.from_config(get_config(conn))


# ---------- Jobs: definition API ----------
def _parse_run_at(value, tz_name: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise JobValidationError(f"Invalid run_at format: {value} ({e})")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=get_zone(tz_name))
    return dt.astimezone(timezone.utc)


def _validate_target(url: str, method: str, headers) -> Tuple[str, str]:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise JobValidationError(f"Callback URL must be http(s): {url!r}")
    method = (method or "").upper()
    if method not in HTTP_METHODS:
        raise JobValidationError(f"Method must be one of {', '.join(HTTP_METHODS)}")
    if not isinstance(headers, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
    ):
        raise JobValidationError("Headers must be a JSON object of strings.")
    return url, method


def _validate_schedule(cron: Optional[str], run_at, tz_name: str) -> Schedule:
    if (cron is None) == (run_at is None):
        raise JobValidationError("Set exactly one of cron or run_at.")
    get_zone(tz_name)
    if cron is not None:
        parse_cron(cron)
        return Schedule(cron=cron.strip(), timezone=tz_name)
    return Schedule(run_at=_parse_run_at(run_at, tz_name), timezone=tz_name)


def _validate_retries(max_retries, retry_backoff_ms) -> Tuple[int, int]:
    try:
        mret = int(max_retries)
        backoff_ms = int(retry_backoff_ms)
    except (TypeError, ValueError):
        raise JobValidationError("max_retries and retry_backoff_ms must be integers.")
    if mret < 0:
        raise JobValidationError("max_retries must be >= 0")
    if backoff_ms < 0:
        raise JobValidationError("retry_backoff_ms must be >= 0")
    return mret, backoff_ms


def initial_run_at(schedule: Schedule, now: datetime) -> Optional[datetime]:
    """First due time for a freshly defined (or re-armed) schedule."""
    if schedule.is_recurring:
        return next_occurrence(schedule, now)
    # one-shot times in the past still fire once, on the next tick
    return schedule.run_at


def _first_run_at(schedule: Schedule, now: datetime) -> Optional[datetime]:
    next_at = initial_run_at(schedule, now)
    if next_at is None and schedule.is_recurring:
        raise JobValidationError(f"Cron expression {schedule.cron!r} never fires.")
    return next_at


def create_job(
    conn,
    *,
    name: str,
    url: str,
    cron: Optional[str] = None,
    run_at=None,
    timezone_name: Optional[str] = None,
    method: str = "POST",
    payload: Optional[str] = None,
    headers: Optional[dict] = None,
    max_retries: Optional[int] = None,
    retry_backoff_ms: Optional[int] = None,
    enabled: bool = True,
    clock=SYSTEM_CLOCK,
) -> Job:
    if not name or not name.strip():
        raise JobValidationError("Job name cannot be empty.")
    name = name.strip()

    settings = load_settings(conn)
    tz_name = timezone_name or settings.default_timezone
    schedule = _validate_schedule(cron, run_at, tz_name)
    headers = {} if headers is None else headers
    url, method = _validate_target(url, method, headers)
    mret, backoff_ms = _validate_retries(
        settings.max_retries_default if max_retries is None else max_retries,
        settings.retry_backoff_ms_default if retry_backoff_ms is None else retry_backoff_ms,
    )

    now = clock.now()
    ts = to_iso(now)
    next_at = _first_run_at(schedule, now)

    exists = conn.execute("SELECT 1 FROM jobs WHERE name=?", (name,)).fetchone()
    if exists:
        raise JobValidationError(f"Job '{name}' already exists.")

    try:
        with conn:
            conn.execute(
                """INSERT INTO jobs
                   (name, cron, run_at, timezone, url, method, payload, headers,
                    max_retries, retry_backoff_ms, enabled, next_run_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (name, schedule.cron, to_iso(schedule.run_at), tz_name, url, method, payload,
                 json.dumps(headers), mret, backoff_ms, int(bool(enabled)), to_iso(next_at), ts, ts),
            )
    except sqlite3.IntegrityError:
        raise JobValidationError(f"Job '{name}' already exists.")
    except sqlite3.Error as e:
        raise StoreError(f"DB error while inserting job: {e}")

    logger.info("Created job %s (next_run_at=%s)", name, to_iso(next_at))
    return get_job(conn, name)


_UPDATABLE = {"cron", "run_at", "timezone_name", "url", "method", "payload", "headers",
              "max_retries", "retry_backoff_ms"}

# times update_job re-reads a job whose next_run_at moved under it
UPDATE_ATTEMPTS = 5


def update_job(conn, name: str, *, clock=SYSTEM_CLOCK, **changes) -> Job:
    """
    Apply `changes` to a job definition.

    next_run_at is only written when the schedule itself changed, and then
    only if it still holds the value read here: a scheduler claiming the job
    concurrently is never rolled back.
    """
    unknown = set(changes) - _UPDATABLE
    if unknown:
        raise JobValidationError(f"Cannot update: {', '.join(sorted(unknown))}")

    for _ in range(UPDATE_ATTEMPTS):
        job = get_job(conn, name)
        if job is None:
            raise JobNotFound(f"Job '{name}' not found.")

        tz_name = changes.get("timezone_name") or job.schedule.timezone
        if "cron" in changes or "run_at" in changes:
            cron, run_at = changes.get("cron"), changes.get("run_at")
        elif job.schedule.is_recurring:
            cron, run_at = job.schedule.cron, None
        else:
            cron, run_at = None, job.schedule.run_at
        schedule = _validate_schedule(cron, run_at, tz_name)

        headers = changes.get("headers", job.target.headers)
        url, method = _validate_target(
            changes.get("url", job.target.url), changes.get("method", job.target.method), headers
        )
        payload = changes.get("payload", job.target.payload)
        mret, backoff_ms = _validate_retries(
            changes.get("max_retries", job.max_retries),
            changes.get("retry_backoff_ms", job.retry_backoff_ms),
        )

        now = clock.now()
        sql = """UPDATE jobs
                 SET cron=?, run_at=?, timezone=?, url=?, method=?, payload=?, headers=?,
                     max_retries=?, retry_backoff_ms=?, updated_at=?"""
        params = [schedule.cron, to_iso(schedule.run_at), tz_name, url, method, payload,
                  json.dumps(headers), mret, backoff_ms, to_iso(now)]
        where, where_params = " WHERE name=?", [name]
        if schedule != job.schedule:
            sql += ", next_run_at=?"
            params.append(to_iso(_first_run_at(schedule, now)))
            where += " AND next_run_at IS ?"
            where_params.append(to_iso(job.next_run_at))

        try:
            with conn:
                cur = conn.execute(sql + where, params + where_params)
        except sqlite3.Error as e:
            raise StoreError(f"DB error while updating job: {e}")
        if cur.rowcount == 1:
            logger.info("Updated job %s", name)
            return get_job(conn, name)
        logger.debug("Job %s changed during update; re-reading", name)

    raise StoreError(f"Job '{name}' kept changing; update not applied.")


def delete_job(conn, name: str) -> bool:
    """Remove the definition. Runs keep their own snapshot and finish regardless."""
    with conn:
        res = conn.execute("DELETE FROM jobs WHERE name=?", (name,))
    if res.rowcount == 1:
        logger.info("Deleted job %s", name)
    return res.rowcount == 1


def set_enabled(conn, name: str, enabled: bool, clock=SYSTEM_CLOCK) -> bool:
    """
    Toggle a job. Only re-enabling a recurring job touches next_run_at: it
    resumes from now instead of replaying what was missed while disabled.
    """
    job = get_job(conn, name)
    if job is None:
        return False
    now = clock.now()
    with conn:
        res = None
        if enabled and not job.enabled and job.schedule.is_recurring:
            # no scheduler claims a disabled job, so next_run_at is stable while enabled=0
            res = conn.execute(
                "UPDATE jobs SET enabled=1, next_run_at=?, updated_at=? WHERE name=? AND enabled=0",
                (to_iso(next_occurrence(job.schedule, now)), to_iso(now), name),
            )
        if res is None or res.rowcount == 0:
            res = conn.execute(
                "UPDATE jobs SET enabled=?, updated_at=? WHERE name=?",
                (int(bool(enabled)), to_iso(now), name),
            )
    if res.rowcount == 1:
        logger.info("%s job %s", "Enabled" if enabled else "Disabled", name)
    return res.rowcount == 1


def get_job(conn, name: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE name=?", (name,)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, enabled: Optional[bool] = None) -> List[Job]:
    if enabled is None:
        rows = conn.execute("SELECT * FROM jobs ORDER BY name").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE enabled=? ORDER BY name", (int(enabled),)
        ).fetchall()
    return [Job.from_row(r) for r in rows]


# ---------- Scheduling: due scan / claim ----------
def _readable(model, rows) -> list:
    """Rows that load cleanly; a corrupt row is logged and skipped, not fatal to the scan."""
    out = []
    for row in rows:
        try:
            out.append(model.from_row(row))
        except (ValueError, TypeError, KeyError) as e:
            logger.error("Skipping unreadable %s row %r: %s", model.__name__, row[0], e)
    return out


def find_due_jobs(conn, now: datetime, limit: int = 100) -> List[Job]:
    rows = conn.execute(
        f"""SELECT * FROM jobs
            WHERE enabled=1 AND next_run_at IS NOT NULL AND next_run_at <= ?
              AND NOT EXISTS (
                  SELECT 1 FROM runs r
                  WHERE r.job_name = jobs.name AND r.state NOT IN {_TERMINAL_SQL}
              )
            ORDER BY next_run_at ASC
            LIMIT ?""",
        (to_iso(now), limit),
    ).fetchall()
    return _readable(Job, rows)


def claim_occurrence(conn, job: Job, owner: str, lease_seconds: float,
                     clock=SYSTEM_CLOCK, coalesce: bool = True) -> Optional[Run]:
    """
    Claim the job's due occurrence for `owner`.

    One write transaction compares-and-swaps the job's next_run_at from the
    value this instance observed and inserts the claimed run. Another
    instance that observed the same value finds rowcount 0 (or trips the
    one-active-run index) and gets None.
    """
    if job.next_run_at is None:
        return None
    now = clock.now()
    scheduled_for = job.next_run_at
    after = max(scheduled_for, now) if coalesce else scheduled_for
    following = next_occurrence(job.schedule, after)
    token = uuid.uuid4().hex
    ts = to_iso(now)

    try:
        with immediate(conn):
            cur = conn.execute(
                """UPDATE jobs SET next_run_at=?, last_run_at=?
                   WHERE name=? AND enabled=1 AND next_run_at=?""",
                (to_iso(following), to_iso(scheduled_for), job.name, to_iso(scheduled_for)),
            )
            if cur.rowcount != 1:
                logger.debug("Lost claim race for %s @ %s", job.name, to_iso(scheduled_for))
                return None
            cur = conn.execute(
                """INSERT INTO runs
                   (job_name, scheduled_for, state, attempt, url, method, payload, headers,
                    max_retries, retry_backoff_ms, claim_token, lease_owner, lease_expires_at,
                    created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.name, to_iso(scheduled_for), CLAIMED, job.target.url, job.target.method,
                 job.target.payload, json.dumps(job.target.headers), job.max_retries,
                 job.retry_backoff_ms, token, owner,
                 to_iso(now + timedelta(seconds=lease_seconds)), ts, ts),
            )
            run_id = cur.lastrowid
    except sqlite3.IntegrityError:
        logger.debug("Occurrence of %s already has an active run", job.name)
        return None

    logger.info("Claimed %s run %s for %s (next_run_at=%s)",
                job.name, run_id, to_iso(scheduled_for), to_iso(following))
    return get_run(conn, run_id)


def find_claimable_runs(conn, now: datetime, limit: int = 100) -> List[Run]:
    """Reclaimed runs and retries whose time has come."""
    rows = conn.execute(
        """SELECT * FROM runs
           WHERE state=? OR (state=? AND next_attempt_at <= ?)
           ORDER BY COALESCE(next_attempt_at, updated_at) ASC
           LIMIT ?""",
        (PENDING, RETRY_SCHEDULED, to_iso(now), limit),
    ).fetchall()
    return _readable(Run, rows)


# ---------- Runs: state transitions ----------
def _transition(conn, run_id: int, expected: Iterable[str], new_state: str, now: datetime,
                expect_token: Optional[str] = None, **fields) -> bool:
    expected = tuple(expected)
    for state in expected:
        if not can_transition(state, new_state):
            raise ValueError(f"Illegal run transition {state} -> {new_state}")

    assignments = {"state": new_state, "updated_at": to_iso(now)}
    assignments.update(fields)
    set_sql = ", ".join(f"{col}=?" for col in assignments)
    where = f"id=? AND state IN ({', '.join('?' for _ in expected)})"
    params = list(assignments.values()) + [run_id, *expected]
    if expect_token is not None:
        where += " AND claim_token=?"
        params.append(expect_token)

    with conn:
        cur = conn.execute(f"UPDATE runs SET {set_sql} WHERE {where}", params)
    return cur.rowcount == 1


def claim_run(conn, run: Run, owner: str, lease_seconds: float, clock=SYSTEM_CLOCK) -> Optional[Run]:
    """pending / retry_scheduled -> claimed with a fresh lease and token."""
    now = clock.now()
    if run.state not in (PENDING, RETRY_SCHEDULED):
        return None
    if run.state == RETRY_SCHEDULED and run.next_attempt_at and run.next_attempt_at > now:
        return None
    ok = _transition(
        conn, run.id, (run.state,), CLAIMED, now,
        claim_token=uuid.uuid4().hex,
        lease_owner=owner,
        lease_expires_at=to_iso(now + timedelta(seconds=lease_seconds)),
        next_attempt_at=None,
    )
    if not ok:
        logger.debug("Lost claim race for run %s", run.id)
        return None
    logger.info("Claimed run %s of %s (%s -> claimed)", run.id, run.job_name, run.state)
    return get_run(conn, run.id)


def start_execution(conn, run_id: int, claim_token: str, worker_id: str,
                    lease_seconds: float, clock=SYSTEM_CLOCK) -> Optional[Run]:
    """claimed -> executing. Counts the attempt and hands the lease to the worker."""
    now = clock.now()
    with conn:
        cur = conn.execute(
            """UPDATE runs
               SET state=?, attempt=attempt+1, lease_owner=?, lease_expires_at=?, updated_at=?
               WHERE id=? AND state=? AND claim_token=?""",
            (EXECUTING, worker_id, to_iso(now + timedelta(seconds=lease_seconds)), to_iso(now),
             run_id, CLAIMED, claim_token),
        )
    if cur.rowcount != 1:
        return None
    return get_run(conn, run_id)


def mark_succeeded(conn, run_id: int, claim_token: str, *, status: Optional[int] = None,
                   body: Optional[str] = None, duration: Optional[float] = None,
                   clock=SYSTEM_CLOCK) -> bool:
    now = clock.now()
    return _transition(
        conn, run_id, (EXECUTING,), SUCCEEDED, now, expect_token=claim_token,
        response_status=status, response_body=truncate(body), duration_seconds=duration,
        last_error=None, lease_owner=None, lease_expires_at=None, finished_at=to_iso(now),
    )


def schedule_retry(conn, run_id: int, claim_token: str, *, error: str, next_attempt_at: datetime,
                   status: Optional[int] = None, body: Optional[str] = None,
                   duration: Optional[float] = None, clock=SYSTEM_CLOCK) -> bool:
    now = clock.now()
    return _transition(
        conn, run_id, (EXECUTING,), RETRY_SCHEDULED, now, expect_token=claim_token,
        last_error=truncate(error), next_attempt_at=to_iso(next_attempt_at),
        response_status=status, response_body=truncate(body), duration_seconds=duration,
        lease_owner=None, lease_expires_at=None,
    )


def mark_failed_terminal(conn, run_id: int, claim_token: str, *, error: str,
                         status: Optional[int] = None, body: Optional[str] = None,
                         duration: Optional[float] = None, clock=SYSTEM_CLOCK) -> bool:
    now = clock.now()
    return _transition(
        conn, run_id, (EXECUTING,), FAILED_TERMINAL, now, expect_token=claim_token,
        last_error=truncate(error), response_status=status, response_body=truncate(body),
        duration_seconds=duration, lease_owner=None, lease_expires_at=None,
        finished_at=to_iso(now),
    )


def reclaim_expired(conn, clock=SYSTEM_CLOCK) -> int:
    """
    Recover runs whose lease ran out while claimed/executing.

    They go back to pending so any scheduler can claim them again, except an
    executing run that was already on its last allowed attempt: that attempt
    counts, so it ends failed_terminal instead of exceeding max_retries.
    """
    now = to_iso(clock.now())
    with immediate(conn):
        final = conn.execute(
            """UPDATE runs
               SET state=?, last_error=?, claim_token=NULL, lease_owner=NULL,
                   lease_expires_at=NULL, updated_at=?, finished_at=?
               WHERE state=? AND lease_expires_at <= ? AND attempt >= max_retries""",
            (FAILED_TERMINAL, LEASE_EXPIRED_FINAL, now, now, EXECUTING, now),
        ).rowcount
        reset = conn.execute(
            """UPDATE runs
               SET state=?, claim_token=NULL, lease_owner=NULL, lease_expires_at=NULL, updated_at=?
               WHERE state IN (?, ?) AND lease_expires_at <= ?""",
            (PENDING, now, CLAIMED, EXECUTING, now),
        ).rowcount
    if final or reset:
        logger.warning("Lease sweep: %d run(s) reset to pending, %d failed on final attempt",
                       reset, final)
    return final + reset


# ---------- Queries ----------
def get_run(conn, run_id: int) -> Optional[Run]:
    row = conn.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
    return Run.from_row(row) if row else None


def active_run(conn, job_name: str) -> Optional[Run]:
    row = conn.execute(
        f"SELECT * FROM runs WHERE job_name=? AND state NOT IN {_TERMINAL_SQL}",
        (job_name,),
    ).fetchone()
    return Run.from_row(row) if row else None


def list_runs(conn, job_name: Optional[str] = None, state: Optional[str] = None,
              limit: int = 50) -> List[Run]:
    clauses, params = [], []
    if job_name:
        clauses.append("job_name=?")
        params.append(job_name)
    if state:
        if state not in RUN_STATES:
            raise ValueError(f"Unknown state {state!r}")
        clauses.append("state=?")
        params.append(state)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM runs {where} ORDER BY scheduled_for DESC, id DESC LIMIT ?",
        (*params, limit),
    ).fetchall()
    return [Run.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in RUN_STATES}
    for r in conn.execute("SELECT state, COUNT(1) AS c FROM runs GROUP BY state"):
        out[r["state"]] = r["c"]
    out["active"] = sum(out[s] for s in ACTIVE_STATES)
    out["terminal"] = sum(out[s] for s in TERMINAL_STATES)
    return out
