import logging
import time
from dataclasses import dataclass
from string import Template
from typing import Optional, Tuple

import requests

from . import __version__
from .models import Run
from .utils import to_iso, truncate

logger = logging.getLogger(__name__)

USER_AGENT = f"cronctl/{__version__}"


@dataclass
class CallbackResult:
    ok: bool
    status: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0


def render_payload(template: Optional[str], run: Run, attempt: int) -> Optional[str]:
    """Fill $job_name, $run_id, $scheduled_for and $attempt; other '$' text is left alone."""
    if template is None:
        return None
    return Template(template).safe_substitute(
        job_name=run.job_name,
        run_id=run.id,
        scheduled_for=to_iso(run.scheduled_for),
        attempt=attempt,
    )


def build_headers(run: Run, attempt: int) -> dict:
    headers = {
        "User-Agent": USER_AGENT,
        "X-Cronctl-Job": run.job_name,
        "X-Cronctl-Run": str(run.id),
        "X-Cronctl-Attempt": str(attempt),
        # stable across attempts so receivers can deduplicate
        "X-Cronctl-Occurrence": f"{run.job_name}@{to_iso(run.scheduled_for)}",
    }
    headers.update(run.target.headers)
    return headers


def execute_callback(
    run: Run,
    attempt: int,
    *,
    timeout: float,
    success_range: Tuple[int, int] = (200, 299),
    session=None,
) -> CallbackResult:
    """
    Make exactly one HTTP request for this attempt and classify it.

    Never raises for callback problems: timeouts, transport errors and
    out-of-range statuses all come back as a failed CallbackResult.
    """
    session = session or requests
    body = render_payload(run.target.payload, run, attempt)
    started = time.monotonic()
    try:
        resp = session.request(
            run.target.method,
            run.target.url,
            data=body.encode("utf-8") if body is not None else None,
            headers=build_headers(run, attempt),
            timeout=timeout,
        )
    except requests.Timeout:
        return CallbackResult(ok=False, error=f"timeout after {timeout}s",
                              duration=time.monotonic() - started)
    except requests.RequestException as e:
        return CallbackResult(ok=False, error=f"transport error: {e}",
                              duration=time.monotonic() - started)

    duration = time.monotonic() - started
    low, high = success_range
    ok = low <= resp.status_code <= high
    text = resp.text
    logger.debug("%s %s -> %s in %.3fs", run.target.method, run.target.url, resp.status_code, duration)
    return CallbackResult(
        ok=ok,
        status=resp.status_code,
        body=truncate(text),
        error=None if ok else f"HTTP {resp.status_code}: {truncate(text, 200)}",
        duration=duration,
    )
