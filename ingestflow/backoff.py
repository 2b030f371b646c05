from __future__ import annotations

import random
from typing import Optional

from .errors import ErrorKind, base_backoff_ms, is_retryable

MAX_RETRY_DELAY_MS = 300_000
MAX_JITTER_MS = 1_000


def compute_retry_delay(
    base_ms: int,
    occurrence: int,
    rng: random.Random,
    cap_ms: int = MAX_RETRY_DELAY_MS,
) -> int:
    """Exponential backoff with jitter: min(base * 2^(n-1) + jitter, cap).

    Pure given ``rng``; pass ``random.Random(seed)`` for deterministic output.
    """
    if base_ms <= 0:
        return 0
    # Past 2^20 every base is already over the cap.
    exponent = min(max(occurrence, 1) - 1, 20)
    jitter = rng.uniform(0, MAX_JITTER_MS)
    return int(min(base_ms * (2 ** exponent) + jitter, cap_ms))


class BackoffStrategy:
    """Exponential backoff with jitter for retry delays.

    ``get_delay_ms`` returns the recommended delay before the next attempt for
    a failure kind; ``get_sleep`` is the seconds variant collectors use for
    their own low-level retries."""

    def __init__(self, rng: Optional[random.Random] = None, cap_ms: int = MAX_RETRY_DELAY_MS) -> None:
        self._rng = rng or random.Random()
        self._cap_ms = cap_ms

    def get_delay_ms(self, kind: ErrorKind, occurrence: int) -> int:
        """Recommended delay for the ``occurrence``-th failure of ``kind``; 0 if not retryable."""
        if not is_retryable(kind):
            return 0
        return compute_retry_delay(base_backoff_ms(kind), occurrence, self._rng, self._cap_ms)

    def get_sleep(self, attempt: int, error_kind: Optional[ErrorKind] = None) -> float:
        """Seconds to sleep before retry ``attempt`` of a low-level request.

        Unclassified failures back off from the UNKNOWN base."""
        kind = error_kind or ErrorKind.UNKNOWN
        if not is_retryable(kind):
            return 0.0
        return self.get_delay_ms(kind, attempt) / 1000.0
