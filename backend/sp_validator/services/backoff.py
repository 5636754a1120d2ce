"""Retry delay computation shared by the job queue and the webhook engine."""


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Return the delay in seconds to wait after failed attempt ``attempt``.

    The delay doubles with each attempt and never exceeds ``cap``:
    ``min(base * 2 ** (attempt - 1), cap)``.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base < 0 or cap < 0:
        raise ValueError("base and cap must be non-negative")
    # Cap the exponent first so large attempt numbers cannot overflow
    if base == 0:
        return 0.0
    exponent = min(attempt - 1, 64)
    return float(min(base * (2 ** exponent), cap))
