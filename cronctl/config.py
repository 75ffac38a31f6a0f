from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from .backoff import get_policy
from .cron import get_zone

DEFAULT_CONFIG = {
    "poll_interval_seconds": "1",
    "sweep_interval_seconds": "5",
    "lease_timeout_seconds": "60",
    "callback_timeout_seconds": "20",
    "visibility_timeout_seconds": "90",
    "max_retries_default": "3",
    "retry_backoff_ms_default": "1000",
    "backoff_policy": "exponential",
    "backoff_ceiling_ms": "3600000",
    "infra_backoff_ms": "500",
    "success_status_range": "200-299",
    "default_timezone": "UTC",
    "coalesce": "true",
    "batch_size": "100",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_status_range(value: str) -> Tuple[int, int]:
    """'200-299' -> (200, 299); a single code '204' -> (204, 204)."""
    text = str(value).strip()
    lo, sep, hi = text.partition("-")
    try:
        low = int(lo)
        high = int(hi) if sep else low
    except ValueError:
        raise ValueError(f"Invalid status range: {value!r}")
    if not (100 <= low <= high <= 599):
        raise ValueError(f"Invalid status range: {value!r}")
    return low, high


def parse_bool(value: str) -> bool:
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


@dataclass(frozen=True)
class Settings:
    poll_interval_seconds: float = 1.0
    sweep_interval_seconds: float = 5.0
    lease_timeout_seconds: float = 60.0
    callback_timeout_seconds: float = 20.0
    visibility_timeout_seconds: float = 90.0
    max_retries_default: int = 3
    retry_backoff_ms_default: int = 1000
    backoff_policy: str = "exponential"
    backoff_ceiling_ms: int = 3_600_000
    infra_backoff_ms: int = 500
    success_status_range: Tuple[int, int] = (200, 299)
    default_timezone: str = "UTC"
    coalesce: bool = True
    batch_size: int = 100

    def __post_init__(self):
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")
        if self.callback_timeout_seconds <= 0:
            raise ValueError("callback_timeout_seconds must be > 0")
        # A lease shorter than the callback lets a healthy run be reclaimed.
        if self.lease_timeout_seconds <= self.callback_timeout_seconds:
            raise ValueError(
                "lease_timeout_seconds must exceed callback_timeout_seconds "
                f"({self.lease_timeout_seconds} <= {self.callback_timeout_seconds})"
            )
        # A task hidden for less than a callback gets redelivered mid-attempt.
        if self.visibility_timeout_seconds <= self.callback_timeout_seconds:
            raise ValueError(
                "visibility_timeout_seconds must exceed callback_timeout_seconds "
                f"({self.visibility_timeout_seconds} <= {self.callback_timeout_seconds})"
            )
        if self.max_retries_default < 0 or self.retry_backoff_ms_default < 0:
            raise ValueError("retry defaults must be >= 0")
        if self.backoff_ceiling_ms < 0:
            raise ValueError("backoff_ceiling_ms must be >= 0")
        if self.infra_backoff_ms <= 0:
            raise ValueError("infra_backoff_ms must be > 0")
        get_policy(self.backoff_policy)
        get_zone(self.default_timezone)
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "Settings":
        merged: Dict[str, str] = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS})
        try:
            return cls(
                poll_interval_seconds=float(merged["poll_interval_seconds"]),
                sweep_interval_seconds=float(merged["sweep_interval_seconds"]),
                lease_timeout_seconds=float(merged["lease_timeout_seconds"]),
                callback_timeout_seconds=float(merged["callback_timeout_seconds"]),
                visibility_timeout_seconds=float(merged["visibility_timeout_seconds"]),
                max_retries_default=int(merged["max_retries_default"]),
                retry_backoff_ms_default=int(merged["retry_backoff_ms_default"]),
                backoff_policy=merged["backoff_policy"].strip().lower(),
                backoff_ceiling_ms=int(merged["backoff_ceiling_ms"]),
                infra_backoff_ms=int(merged["infra_backoff_ms"]),
                success_status_range=parse_status_range(merged["success_status_range"]),
                default_timezone=merged["default_timezone"].strip(),
                coalesce=parse_bool(merged["coalesce"]),
                batch_size=int(merged["batch_size"]),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid configuration: {e}") from e
