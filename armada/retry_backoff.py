"""Backoff delay calculation for retries and reconnection."""

import random


class RetryBackoffCalculator:
    """Calculate backoff delays for retries."""

    @staticmethod
    def calculate_delay(
        attempt: int,
        strategy: str = "exponential",
        base_seconds: float = 1.0,
        max_seconds: float | None = None,
        jitter: float = 0.0,
    ) -> float:
        """Calculate a backoff delay.

        Args:
            attempt: Retry attempt number (0-based, the first retry waits base_seconds)
            strategy: Backoff strategy (exponential, linear, fixed)
            base_seconds: Base delay in seconds
            max_seconds: Maximum delay cap in seconds, or None for no cap
            jitter: Fraction of the delay to randomize by (0.1 means ±10%)

        Returns:
            Delay in seconds
        """
        if attempt < 0:
            raise ValueError(f"Attempt must be >= 0, got {attempt}")

        if strategy == "exponential":
            delay = base_seconds * (2**attempt)
        elif strategy == "linear":
            delay = base_seconds * (attempt + 1)
        elif strategy == "fixed":
            delay = base_seconds
        else:
            raise ValueError(f"Unknown backoff strategy: {strategy}")

        if max_seconds is not None:
            delay = min(delay, max_seconds)

        if jitter:
            spread = delay * jitter
            delay = delay + random.uniform(-spread, spread)

        return float(max(0.0, delay))
