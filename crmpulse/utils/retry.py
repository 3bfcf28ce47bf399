"""
Retry utilities with exponential backoff for API calls.

RetryPolicy is the reusable strategy object the CRM client consults on every
rate-limited response; it knows nothing about HTTP beyond an optional
server-provided delay.
"""
import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from dateutil import parser as date_parser


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    delays: List[float] = field(default_factory=list)
    success: bool = False

    def record_attempt(self):
        """Record a request sent."""
        self.attempts += 1

    def record_retry(self, error: str, delay: float):
        """Record a failed attempt that will be retried after `delay` seconds."""
        self.total_delay_seconds += delay
        self.delays.append(delay)
        self.last_error = error
        self.errors.append(error)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True

    @property
    def retries(self) -> int:
        return len(self.delays)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = False
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current retry number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    # Exponential backoff: base_delay * (exponential_base ^ (attempt - 1))
    delay = base_delay * (exponential_base ** (attempt - 1))

    # Cap at max_delay
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        jitter_amount = delay * random.uniform(0, 0.25)
        delay += jitter_amount

    return delay


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header.

    Both forms are honored: delay-seconds ("3") and an HTTP-date
    ("Wed, 21 Oct 2015 07:28:00 GMT"), the latter counted from `now`.
    A date already past means no wait. Returns None if absent or unparseable.
    """
    if value is None:
        return None
    text = str(value).strip()
    try:
        seconds = float(text)
    except ValueError:
        try:
            retry_at = date_parser.parse(text)
        except (ValueError, OverflowError):
            return None
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max((retry_at - now).total_seconds(), 0.0)
    return seconds if seconds >= 0 else None



@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry strategy.

    With the defaults a request is retried at most 5 times, waiting
    1s, 2s, 4s, 8s, 16s unless the server supplies its own delay.
    """
    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def can_retry(self, retries_done: int) -> bool:
        return retries_done < self.max_retries

    def delay_for(self, retry_number: int, server_delay: Optional[float] = None) -> float:
        """Delay before retry number `retry_number` (1-indexed)."""
        if server_delay is not None:
            return server_delay
        return calculate_backoff(
            retry_number,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter
        )
