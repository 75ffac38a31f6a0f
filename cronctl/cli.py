import json
import threading
from datetime import timedelta

import click

from .cron import iter_occurrences
from .db import DB_FILE, init_db, connect_db
from .dispatch_queue import depth
from .errors import CronctlError
from .models import RUN_STATES
from .repository import (
    counts, create_job, delete_job, get_config, get_job, get_run, list_jobs, list_runs,
    set_config, set_enabled, update_job,
)
from .scheduler import default_owner, run_scheduler
from .utils import SYSTEM_CLOCK, parse_delay_to_seconds, setup_logging, to_iso
from .worker import setup_signal_handlers, start_workers


def _parse_headers(values):
    headers = {}
    for raw in values:
        key, sep, value = raw.partition(":")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected 'Name: value', got {raw!r}", param_hint="--header")
        headers[key.strip()] = value.strip()
    return headers


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _job_dict(job):
    return {
        "name": job.name,
        "cron": job.schedule.cron,
        "run_at": to_iso(job.schedule.run_at),
        "timezone": job.schedule.timezone,
        "url": job.target.url,
        "method": job.target.method,
        "payload": job.target.payload,
        "headers": job.target.headers,
        "max_retries": job.max_retries,
        "retry_backoff_ms": job.retry_backoff_ms,
        "enabled": job.enabled,
        "next_run_at": to_iso(job.next_run_at),
        "last_run_at": to_iso(job.last_run_at),
        "created_at": to_iso(job.created_at),
        "updated_at": to_iso(job.updated_at),
    }


def _run_dict(run):
    return {
        "id": run.id,
        "job_name": run.job_name,
        "scheduled_for": to_iso(run.scheduled_for),
        "state": run.state,
        "attempt": run.attempt,
        "max_retries": run.max_retries,
        "next_attempt_at": to_iso(run.next_attempt_at),
        "lease_owner": run.lease_owner,
        "lease_expires_at": to_iso(run.lease_expires_at),
        "last_error": run.last_error,
        "response_status": run.response_status,
        "response_body": run.response_body,
        "duration_seconds": run.duration_seconds,
        "finished_at": to_iso(run.finished_at),
    }


@click.group(help="cronctl: cron-as-a-service scheduler CLI")
@click.option("--db", "db_path", envvar="CRONCTL_DB", default=DB_FILE, show_default=True,
              help="SQLite database file")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    setup_logging(log_level)
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db": db_path}


# ---------- Jobs ----------
@cli.group("job", help="Define and manage jobs")
def job_group():
    pass


def _schedule_options(f):
    options = [
        click.option("--cron", default=None, help="Five-field cron expression, e.g. '*/5 * * * *'"),
        click.option("--run-at", default=None, help="One-shot ISO datetime; naive values use --tz"),
        click.option("--in", "delay_str", default=None,
                     help="One-shot after a delay, e.g. 20s, 5m, 1h30m (instead of --run-at)"),
        click.option("--tz", "timezone_name", default=None, help="IANA time zone (default from config)"),
        click.option("--url", default=None, help="Callback URL"),
        click.option("--method", default=None, type=click.Choice(["GET", "POST", "PUT", "PATCH", "DELETE"],
                                                                  case_sensitive=False)),
        click.option("--payload", default=None,
                     help="Body template; $job_name, $run_id, $scheduled_for, $attempt are filled in"),
        click.option("--header", "headers", multiple=True, help="Extra header 'Name: value' (repeatable)"),
        click.option("--max-retries", default=None, type=int, help="Total attempts per occurrence"),
        click.option("--retry-backoff-ms", default=None, type=int, help="Base retry delay in ms"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _resolve_run_at(run_at, delay_str):
    if run_at and delay_str:
        raise click.ClickException("Use either --run-at or --in, not both.")
    if delay_str:
        seconds = parse_delay_to_seconds(delay_str)
        return SYSTEM_CLOCK.now() + timedelta(seconds=seconds)
    return run_at


@job_group.command("add", help="Create a job")
@click.argument("name")
@_schedule_options
@click.option("--disabled", is_flag=True, help="Create the job disabled")
@click.pass_context
def job_add(ctx, name, cron, run_at, delay_str, timezone_name, url, method, payload, headers,
            max_retries, retry_backoff_ms, disabled):
    conn = connect_db(ctx.obj["db"])
    try:
        if not url:
            raise click.ClickException("--url is required.")
        job = create_job(
            conn,
            name=name,
            url=url,
            cron=cron,
            run_at=_resolve_run_at(run_at, delay_str),
            timezone_name=timezone_name,
            method=method or "POST",
            payload=payload,
            headers=_parse_headers(headers),
            max_retries=max_retries,
            retry_backoff_ms=retry_backoff_ms,
            enabled=not disabled,
        )
        click.secho(f"Created {job.name} -> {job.target.method} {job.target.url} "
                    f"(next_run_at={to_iso(job.next_run_at)})", fg="green")
    except (ValueError, CronctlError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


@job_group.command("update", help="Change a job definition")
@click.argument("name")
@_schedule_options
@click.pass_context
def job_update(ctx, name, cron, run_at, delay_str, timezone_name, url, method, payload, headers,
               max_retries, retry_backoff_ms):
    conn = connect_db(ctx.obj["db"])
    try:
        if cron and (run_at or delay_str):
            raise click.ClickException("Use either --cron or --run-at/--in, not both.")
        changes = {}
        one_shot = _resolve_run_at(run_at, delay_str)
        if cron:
            changes.update(cron=cron, run_at=None)
        elif one_shot:
            changes.update(cron=None, run_at=one_shot)
        for key, value in (("timezone_name", timezone_name), ("url", url), ("method", method),
                           ("payload", payload), ("max_retries", max_retries),
                           ("retry_backoff_ms", retry_backoff_ms)):
            if value is not None:
                changes[key] = value
        if headers:
            changes["headers"] = _parse_headers(headers)
        job = update_job(conn, name, **changes)
        click.secho(f"Updated {job.name} (next_run_at={to_iso(job.next_run_at)})", fg="green")
    except (ValueError, LookupError, CronctlError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


@job_group.command("remove", help="Delete a job (in-flight runs still finish)")
@click.argument("name")
@click.pass_context
def job_remove(ctx, name):
    conn = connect_db(ctx.obj["db"])
    try:
        if not delete_job(conn, name):
            raise click.ClickException(f"Job {name} not found.")
        click.secho(f"Removed {name}.", fg="yellow")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


def _toggle(ctx, name, enabled):
    conn = connect_db(ctx.obj["db"])
    try:
        if not set_enabled(conn, name, enabled):
            raise click.ClickException(f"Job {name} not found.")
        click.secho(f"{'Enabled' if enabled else 'Disabled'} {name}.", fg="green")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


@job_group.command("enable")
@click.argument("name")
@click.pass_context
def job_enable(ctx, name):
    _toggle(ctx, name, True)


@job_group.command("disable", help="Stop future claims; a claimed run still completes")
@click.argument("name")
@click.pass_context
def job_disable(ctx, name):
    _toggle(ctx, name, False)


@job_group.command("show")
@click.argument("name")
@click.pass_context
def job_show(ctx, name):
    conn = connect_db(ctx.obj["db"])
    try:
        job = get_job(conn, name)
    finally:
        conn.close()
    if job is None:
        _fail(f"Job {name} not found.")
    click.echo(json.dumps(_job_dict(job), indent=2))


@job_group.command("list")
@click.option("--enabled/--disabled", "enabled", default=None, help="Filter by enabled flag")
@click.pass_context
def job_list(ctx, enabled):
    conn = connect_db(ctx.obj["db"])
    try:
        jobs = list_jobs(conn, enabled=enabled)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        schedule = j.schedule.cron or f"once@{to_iso(j.schedule.run_at)}"
        click.echo(
            f"{j.name:>20} | {'on ' if j.enabled else 'off'} | {schedule:<20} | tz={j.schedule.timezone} "
            f"| next={to_iso(j.next_run_at)} | {j.target.method} {j.target.url}"
        )


@job_group.command("next", help="Preview upcoming occurrences")
@click.argument("name")
@click.option("--count", default=5, show_default=True, type=int)
@click.pass_context
def job_next(ctx, name, count):
    conn = connect_db(ctx.obj["db"])
    try:
        job = get_job(conn, name)
    finally:
        conn.close()
    if job is None:
        _fail(f"Job {name} not found.")
    upcoming = list(iter_occurrences(job.schedule, SYSTEM_CLOCK.now(), limit=count))
    if not upcoming:
        click.echo("No future occurrences.")
        return
    for when in upcoming:
        click.echo(to_iso(when))


# ---------- Runs ----------
@cli.group("runs", help="Occurrence history")
def runs_group():
    pass


@runs_group.command("list")
@click.option("--job", "job_name", default=None)
@click.option("--state", type=click.Choice(RUN_STATES), default=None)
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def runs_list(ctx, job_name, state, limit):
    conn = connect_db(ctx.obj["db"])
    try:
        runs = list_runs(conn, job_name=job_name, state=state, limit=limit)
    finally:
        conn.close()

    if not runs:
        click.echo("No runs.")
        return

    for r in runs:
        click.echo(
            f"{r.id:>6} | {r.job_name:>20} | {to_iso(r.scheduled_for)} | {r.state:<15} "
            f"| attempts={r.attempt}/{r.max_retries} | last_error={r.last_error}"
        )


@runs_group.command("show")
@click.argument("run_id", type=int)
@click.pass_context
def runs_show(ctx, run_id):
    conn = connect_db(ctx.obj["db"])
    try:
        run = get_run(conn, run_id)
    finally:
        conn.close()
    if run is None:
        _fail(f"Run {run_id} not found.")
    click.echo(json.dumps(_run_dict(run), indent=2))


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        out = counts(conn)
        out["queued_tasks"] = depth(conn)
        click.echo(json.dumps(out, indent=2))
    finally:
        conn.close()


# ---------- Processes ----------
@cli.group("scheduler", help="Run the scheduler loop")
def scheduler_group():
    pass


@scheduler_group.command("start")
@click.option("--owner", default=None, help="Instance id used for leases (default host:pid:random)")
@click.pass_context
def scheduler_start(ctx, owner):
    owner = owner or default_owner()
    stop = threading.Event()
    setup_signal_handlers(stop)
    click.secho(f"Starting scheduler {owner}. Press Ctrl+C to stop…", fg="cyan")
    run_scheduler(owner, db_path=ctx.obj["db"], stop_event=stop)
    click.secho("Scheduler stopped.", fg="yellow")


@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--with-scheduler", is_flag=True, help="Also run a scheduler loop in this process")
@click.pass_context
def worker_start(ctx, count, with_scheduler):
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, db_path=ctx.obj["db"], with_scheduler=with_scheduler)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
