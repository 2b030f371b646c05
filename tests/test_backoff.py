"""Tests for retry delay computation."""

import random
import unittest

from ingestflow.backoff import MAX_RETRY_DELAY_MS, BackoffStrategy, compute_retry_delay
from ingestflow.errors import ErrorKind


class TestComputeRetryDelay(unittest.TestCase):
    """Verify the pure delay function."""

    def test_exponential_growth_with_bounded_jitter(self):
        """Delay doubles per occurrence plus at most 1000 ms of jitter."""
        rng = random.Random(7)
        for occurrence, expected_base in ((1, 30_000), (2, 60_000), (3, 120_000)):
            delay = compute_retry_delay(30_000, occurrence, rng)
            self.assertGreaterEqual(delay, expected_base)
            self.assertLessEqual(delay, expected_base + 1_000)

    def test_capped_at_five_minutes(self):
        """No delay ever exceeds 300000 ms, even for huge occurrence counts."""
        rng = random.Random(1)
        for occurrence in (5, 20, 1000):
            self.assertEqual(compute_retry_delay(60_000, occurrence, rng), MAX_RETRY_DELAY_MS)

    def test_same_seed_same_delays(self):
        """The function is deterministic for a seeded generator."""
        first = [compute_retry_delay(10_000, n, random.Random(42)) for n in range(1, 6)]
        second = [compute_retry_delay(10_000, n, random.Random(42)) for n in range(1, 6)]
        self.assertEqual(first, second)


class TestBackoffStrategy(unittest.TestCase):
    """Verify kind-aware delays."""

    def test_non_decreasing_in_occurrence(self):
        """For every retryable kind, delays never decrease as occurrences grow."""
        strategy = BackoffStrategy(rng=random.Random(3))
        for kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.UNKNOWN, ErrorKind.BLOCKED):
            with self.subTest(kind=kind):
                delays = [strategy.get_delay_ms(kind, n) for n in range(1, 12)]
                # Jitter is under 1 s while each doubling adds at least 10 s, until the cap.
                self.assertEqual(delays, sorted(delays))
                self.assertLessEqual(max(delays), MAX_RETRY_DELAY_MS)

    def test_non_retryable_kind_is_zero(self):
        """Non-retryable kinds get no delay."""
        strategy = BackoffStrategy(rng=random.Random(0))
        self.assertEqual(strategy.get_delay_ms(ErrorKind.PARSING, 3), 0)
        self.assertEqual(strategy.get_sleep(1, ErrorKind.AUTHENTICATION), 0.0)

    def test_get_sleep_uses_unknown_base(self):
        """Unclassified failures sleep from the 10 s UNKNOWN base."""
        strategy = BackoffStrategy(rng=random.Random(0))
        seconds = strategy.get_sleep(1)
        self.assertGreaterEqual(seconds, 10.0)
        self.assertLessEqual(seconds, 11.0)

    def test_custom_cap(self):
        """A lower cap bounds every delay."""
        strategy = BackoffStrategy(rng=random.Random(0), cap_ms=5_000)
        self.assertEqual(strategy.get_delay_ms(ErrorKind.RATE_LIMIT, 4), 5_000)


if __name__ == "__main__":
    unittest.main()
