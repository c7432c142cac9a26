"""Bounded exponential backoff for calls across the tracker boundary."""


class RetryHandler:
    """
    Decides whether a failed boundary call is retried and how long to wait.

    Logic:
    - Backoff: initial * multiplier^(attempt-1), capped at max_backoff seconds
    - After max_retries retries (max_retries + 1 attempts) the call is given up
    """

    def __init__(
        self,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        multiplier: float = 2.0,
        max_retries: int = 2,
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier
        self.max_retries = max_retries

    def calculate_backoff(self, retry_count: int) -> float:
        """
        Calculate backoff time for given retry count (1-based).

        Formula: initial * multiplier^(retry_count-1), capped at max_backoff
        """
        if retry_count < 1:
            return 0.0
        backoff = self.initial_backoff * (self.multiplier ** (retry_count - 1))
        return min(backoff, self.max_backoff)

    def should_retry(self, failed_attempts: int) -> bool:
        """True while the number of retries so far is below max_retries."""
        return failed_attempts <= self.max_retries

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1
