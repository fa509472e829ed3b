from __future__ import annotations

BACKOFF_BASE_MS = 2_000
BACKOFF_CAP_MS = 60_000


def backoff_ms(attempt: int, *, base_ms: int = BACKOFF_BASE_MS, cap_ms: int = BACKOFF_CAP_MS) -> int:
    attempt_i = int(attempt)
    if attempt_i <= 0:
        return 0
    # Past ~16 doublings the cap always wins; avoid building huge ints.
    if attempt_i > 32:
        return int(cap_ms)
    return int(min(cap_ms, base_ms * (2 ** (attempt_i - 1))))
