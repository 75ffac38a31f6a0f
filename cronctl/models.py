import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .utils import from_iso

# Run States
PENDING = "pending"
CLAIMED = "claimed"
EXECUTING = "executing"
SUCCEEDED = "succeeded"
RETRY_SCHEDULED = "retry_scheduled"
FAILED_TERMINAL = "failed_terminal"

RUN_STATES = (PENDING, CLAIMED, EXECUTING, SUCCEEDED, RETRY_SCHEDULED, FAILED_TERMINAL)
TERMINAL_STATES = frozenset({SUCCEEDED, FAILED_TERMINAL})
ACTIVE_STATES = frozenset(set(RUN_STATES) - TERMINAL_STATES)

# Every legal edge of the run state machine. CLAIMED/EXECUTING -> PENDING
# is the lease-expiry reclaim.
TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({CLAIMED}),
    CLAIMED: frozenset({EXECUTING, PENDING}),
    EXECUTING: frozenset({SUCCEEDED, RETRY_SCHEDULED, FAILED_TERMINAL, PENDING}),
    RETRY_SCHEDULED: frozenset({CLAIMED}),
    SUCCEEDED: frozenset(),
    FAILED_TERMINAL: frozenset(),
}

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


@dataclass(frozen=True)
class Schedule:
    """Exactly one of `cron` or `run_at` is set."""
    cron: Optional[str] = None
    run_at: Optional[datetime] = None
    timezone: str = "UTC"

    @property
    def is_recurring(self) -> bool:
        return self.cron is not None


@dataclass(frozen=True)
class CallbackTarget:
    url: str
    method: str = "POST"
    payload: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Job:
    name: str
    schedule: Schedule
    target: CallbackTarget
    max_retries: int = 3
    retry_backoff_ms: int = 1000
    enabled: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            name=row["name"],
            schedule=Schedule(
                cron=row["cron"],
                run_at=from_iso(row["run_at"]),
                timezone=row["timezone"],
            ),
            target=CallbackTarget(
                url=row["url"],
                method=row["method"],
                payload=row["payload"],
                headers=json.loads(row["headers"] or "{}"),
            ),
            max_retries=row["max_retries"],
            retry_backoff_ms=row["retry_backoff_ms"],
            enabled=bool(row["enabled"]),
            next_run_at=from_iso(row["next_run_at"]),
            last_run_at=from_iso(row["last_run_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Run:
    id: int
    job_name: str
    scheduled_for: datetime
    state: str
    attempt: int
    target: CallbackTarget
    max_retries: int
    retry_backoff_ms: int
    claim_token: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    duration_seconds: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    @classmethod
    def from_row(cls, row) -> "Run":
        return cls(
            id=row["id"],
            job_name=row["job_name"],
            scheduled_for=from_iso(row["scheduled_for"]),
            state=row["state"],
            attempt=row["attempt"],
            target=CallbackTarget(
                url=row["url"],
                method=row["method"],
                payload=row["payload"],
                headers=json.loads(row["headers"] or "{}"),
            ),
            max_retries=row["max_retries"],
            retry_backoff_ms=row["retry_backoff_ms"],
            claim_token=row["claim_token"],
            lease_owner=row["lease_owner"],
            lease_expires_at=from_iso(row["lease_expires_at"]),
            next_attempt_at=from_iso(row["next_attempt_at"]),
            last_error=row["last_error"],
            response_status=row["response_status"],
            response_body=row["response_body"],
            duration_seconds=row["duration_seconds"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            finished_at=from_iso(row["finished_at"]),
        )


@dataclass(frozen=True)
class DispatchTask:
    """What travels on the dispatch queue: enough to find and fence the run."""
    job_name: str
    run_id: int
    attempt: int
    claim_token: str
    task_id: Optional[int] = None
    deliveries: int = 0

    def to_json(self) -> str:
        return json.dumps({
            "job_name": self.job_name,
            "run_id": self.run_id,
            "attempt": self.attempt,
            "claim_token": self.claim_token,
        })

    @classmethod
    def from_json(cls, body: str, task_id: Optional[int] = None, deliveries: int = 0) -> "DispatchTask":
        data = json.loads(body)
        return cls(
            job_name=data["job_name"],
            run_id=int(data["run_id"]),
            attempt=int(data["attempt"]),
            claim_token=data["claim_token"],
            task_id=task_id,
            deliveries=deliveries,
        )
