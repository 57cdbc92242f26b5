import time
import typing
from typing import Any, Callable, Optional, Tuple, Type

from dagdeploy.constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_BACKOFF, DEFAULT_RETRY_DELAY
from dagdeploy.errors import RunCancelledError


class RetryPolicy:
    """Bounded retries with exponential backoff for transient failures."""

    def __init__(
        self,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY,
        backoff: float = DEFAULT_RETRY_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if attempts < 1:
            raise ValueError("Retry attempts must be at least 1")
        self.attempts = attempts
        self.delay = delay
        self.backoff = backoff
        self._sleep = sleep

    def delays(self) -> typing.Iterator[float]:
        """Waits between consecutive attempts."""
        delay = self.delay
        for _ in range(self.attempts - 1):
            yield delay
            delay *= self.backoff

    def run(
        self,
        fn: Callable[[], Any],
        retry_on: Tuple[Type[BaseException], ...],
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        deadline: Optional["Deadline"] = None,
    ) -> Any:
        """
        Calls fn until it succeeds, retrying only exceptions of the given types
        (and, if given, only those accepted by should_retry). The last error is re-raised,
        or RunCancelledError when the deadline leaves no time for another attempt.
        """
        delays = self.delays()
        while True:
            try:
                return fn()
            except retry_on as e:
                if should_retry is not None and not should_retry(e):
                    raise
                delay = next(delays, None)
                if delay is None:
                    raise
                remaining = deadline.remaining() if deadline is not None else None
                if remaining is not None and remaining <= delay:
                    raise RunCancelledError(f"Run timed out while retrying: {e}") from e
                print(f"(i) Retrying in {delay:g}s after error: {e}")
                self._sleep(delay)


class Deadline:
    """Overall run timeout; None means unbounded."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds if seconds is not None else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0
