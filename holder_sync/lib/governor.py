"""
Rate and retry governor wrapping a range fetcher.

The governor paces calls, waits out rate limits, retries other transient
failures with exponential backoff, and hands the caller only terminal
outcomes: data, end of data, or a fatal failure.
"""

import random
import threading
from typing import Optional, Union

from .config import RetryPolicy
from .models import FatalFailure, FetchEmpty, FetchOk, TransientFailure
from .near_client import TransientSourceError


class SyncCancelled(Exception):
    """Raised from a governed wait when the run has been cancelled."""

    pass


class RateGovernor:
    """
    Pacing and retry wrapper around one fetcher.

    A governor belongs to a single collection channel: calls through it are
    strictly sequential. Every wait goes through cancel_event, so setting
    the event interrupts a backoff or pacing delay immediately.
    """

    def __init__(
        self,
        fetcher,
        policy: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the governor.

        Args:
            fetcher: Object with fetch_range(collection, start_index, batch_size)
            policy: Pacing and retry settings
            cancel_event: Event that aborts waits when set
        """
        self.fetcher = fetcher
        self.policy = policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.calls = 0
        self.retries = 0
        self.rate_limit_waits = 0

    def _apply_jitter(self, delay: float) -> float:
        """Apply random jitter to a delay value."""
        jitter_range = delay * self.policy.jitter
        return delay + random.uniform(-jitter_range, jitter_range)

    def _backoff_delay(self, failures: int) -> float:
        delay = self.policy.initial_delay * (self.policy.backoff_multiplier ** (failures - 1))
        return self._apply_jitter(min(delay, self.policy.max_delay))

    def wait(self, seconds: float) -> None:
        """
        Sleep for the given time unless the run is cancelled.

        Raises:
            SyncCancelled: If the cancel event is set before or during the wait
        """
        if self.cancel_event.is_set():
            raise SyncCancelled("Sync cancelled")
        if seconds > 0 and self.cancel_event.wait(seconds):
            raise SyncCancelled("Sync cancelled")

    def pace(self) -> None:
        """Wait the fixed inter-call delay."""
        self.wait(self.policy.request_delay)

    def total_supply(self, collection: str) -> Optional[int]:
        """
        Query the fetcher's total supply, waiting out rate limits.

        Returns:
            The supply, or None if the fetcher has no supply query

        Raises:
            SourceError: If the query fails for any reason other than a rate limit
                the wait budget can absorb
            SyncCancelled: If the run is cancelled while waiting
        """
        query = getattr(self.fetcher, "total_supply", None)
        if not callable(query):
            return None

        rate_limited = 0
        while True:
            if self.cancel_event.is_set():
                raise SyncCancelled("Sync cancelled")

            self.calls += 1
            try:
                return query(collection)
            except TransientSourceError as e:
                if not e.rate_limited or rate_limited >= self.policy.max_rate_limit_waits:
                    raise
                rate_limited += 1
                self.rate_limit_waits += 1
                self.retries += 1
                self.wait(self.policy.rate_limit_backoff)

    def fetch(
        self, collection: str, start_index: int, batch_size: int
    ) -> Union[FetchOk, FetchEmpty, FatalFailure]:
        """
        Fetch a range, retrying the same range until it succeeds or fails for good.

        Rate-limited failures wait rate_limit_backoff and do not count as
        attempts; they are bounded separately by max_rate_limit_waits. Other
        transient failures back off exponentially and count towards
        max_attempts.

        Returns:
            FetchOk, FetchEmpty, or FatalFailure once retries are exhausted

        Raises:
            SyncCancelled: If the run is cancelled while waiting
        """
        failures = 0
        rate_limited = 0

        while True:
            if self.cancel_event.is_set():
                raise SyncCancelled("Sync cancelled")

            self.calls += 1
            result = self.fetcher.fetch_range(collection, start_index, batch_size)

            if not isinstance(result, TransientFailure):
                return result

            if result.rate_limited:
                if rate_limited >= self.policy.max_rate_limit_waits:
                    return FatalFailure(
                        f"Rate limit persisted after {rate_limited} waits: {result.reason}"
                    )
                rate_limited += 1
                self.rate_limit_waits += 1
                self.retries += 1
                self.wait(self.policy.rate_limit_backoff)
                continue

            failures += 1
            if failures >= self.policy.max_attempts:
                return FatalFailure(f"Retries exhausted after {failures} attempts: {result.reason}")

            self.retries += 1
            self.wait(self._backoff_delay(failures))
