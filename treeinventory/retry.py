"""
Retry helpers for the database and the Overpass mirrors.

exponential_backoff retries a single call (the tree count before a backfill).
EndpointRotation walks a list of redundant mirrors in rounds; the caller
decides what to do in each state.
"""

import functools
import time
from typing import Callable, List, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
):
    """
    Retry the decorated function, sleeping base_delay, base_delay * base, ...
    (capped at max_delay) between attempts.

    Args:
        max_retries: Retries after the first attempt (0 = call once)
        base_delay: First delay in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between delays
        exceptions: Exception types that trigger a retry; others propagate
        on_retry: Optional callback(attempt, exception, delay) before sleeping

    Raises:
        RetryError: From the last caught exception once retries run out
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        raise RetryError(f"Failed after {attempt + 1} attempts: {e}") from e
                    delay = min(base_delay * exponential_base ** attempt, max_delay)
                    attempt += 1
                    if on_retry:
                        on_retry(attempt, e, delay)
                    time.sleep(delay)

        return wrapper
    return decorator


class EndpointRotation:
    """
    Walks a list of redundant endpoints in rounds.

    States:
    - TRYING: endpoint `index` of round `round` is the next one to call
    - WAITING: every endpoint failed this round, another round remains
    - EXHAUSTED: every endpoint failed in every round
    - SUCCEEDED: an endpoint answered
    """

    TRYING = "trying"
    WAITING = "waiting"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"

    def __init__(self, endpoints: List[str], max_rounds: int = 3):
        """
        Initialize the rotation.

        Args:
            endpoints: Endpoint URLs, tried in order each round
            max_rounds: Number of full passes over the endpoints

        Raises:
            ValueError: If there are no endpoints or max_rounds < 1
        """
        if not endpoints:
            raise ValueError("At least one endpoint is required")
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")

        self.endpoints = list(endpoints)
        self.max_rounds = max_rounds
        self.round = 1
        self.index = 0
        self.state = self.TRYING

    @property
    def current(self) -> str:
        """Endpoint to call next. Only meaningful while TRYING."""
        if self.state != self.TRYING:
            raise RuntimeError(f"No current endpoint in state {self.state}")
        return self.endpoints[self.index]

    @property
    def done(self) -> bool:
        return self.state in (self.EXHAUSTED, self.SUCCEEDED)

    def record_success(self):
        self.state = self.SUCCEEDED

    def record_failure(self):
        """Move past the current endpoint, closing the round when it was the last."""
        if self.state != self.TRYING:
            raise RuntimeError(f"Cannot record a failure in state {self.state}")

        self.index += 1
        if self.index < len(self.endpoints):
            return

        if self.round < self.max_rounds:
            self.state = self.WAITING
        else:
            self.state = self.EXHAUSTED

    def next_round(self):
        """Leave WAITING and start the next pass from the first endpoint."""
        if self.state != self.WAITING:
            raise RuntimeError(f"Cannot start a new round in state {self.state}")
        self.round += 1
        self.index = 0
        self.state = self.TRYING


# Substrings of psycopg2/SQLAlchemy and requests messages for failures that
# usually clear up on their own.
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "could not connect",
    "server closed the connection",
    "temporary failure",
    "service unavailable",
    "deadlock detected",
    "canceling statement due to conflict",
    "500",
    "502",
    "503",
    "504",
    "429",
)

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient_error(exception: Exception) -> bool:
    """True if the error message looks like a timeout, dropped connection or 5xx."""
    message = str(exception).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def should_retry_http_status(status_code: int) -> bool:
    """True for statuses an overloaded mirror returns (408, 429, 5xx gateway errors)."""
    return status_code in RETRYABLE_HTTP_STATUSES
