"""Retry delay policies. All return milliseconds and honour the ceiling."""
import random
from typing import Callable, Dict, Optional

BackoffPolicy = Callable[..., int]


def _check(attempt: int, base_ms: int) -> None:
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base_ms < 0:
        raise ValueError("base_ms must be >= 0")


def _cap(delay_ms: int, ceiling_ms: Optional[int]) -> int:
    if ceiling_ms is not None:
        return min(delay_ms, ceiling_ms)
    return delay_ms


def exponential(attempt: int, base_ms: int, ceiling_ms: Optional[int] = None) -> int:
    """base_ms * 2^(attempt-1): 1000 -> 1000, 2000, 4000, ..."""
    _check(attempt, base_ms)
    if ceiling_ms is not None and base_ms > 0:
        # stop doubling once past the ceiling; large attempts stay cheap
        delay = base_ms
        for _ in range(attempt - 1):
            if delay >= ceiling_ms:
                break
            delay *= 2
        return _cap(delay, ceiling_ms)
    return base_ms * (2 ** (attempt - 1))


def linear(attempt: int, base_ms: int, ceiling_ms: Optional[int] = None) -> int:
    _check(attempt, base_ms)
    return _cap(base_ms * attempt, ceiling_ms)


def jittered(attempt: int, base_ms: int, ceiling_ms: Optional[int] = None,
             rng: Optional[random.Random] = None) -> int:
    """Full jitter: uniform in [0, exponential value]."""
    upper = exponential(attempt, base_ms, ceiling_ms)
    rng = rng or random
    return rng.randint(0, upper) if upper > 0 else 0


POLICIES: Dict[str, BackoffPolicy] = {
    "exponential": exponential,
    "linear": linear,
    "jittered": jittered,
}


def get_policy(name: str) -> BackoffPolicy:
    try:
        return POLICIES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown backoff policy {name!r}. Allowed: {', '.join(sorted(POLICIES))}")


def backoff(attempt: int, base_ms: int, ceiling_ms: Optional[int] = None, policy: str = "exponential") -> int:
    return get_policy(policy)(attempt, base_ms, ceiling_ms)
