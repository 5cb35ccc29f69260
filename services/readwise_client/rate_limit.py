"""Request admission and retry policy for the Readwise API."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Enforces a minimum interval between the starts of consecutive requests.

    Readwise Reader allows 20 requests per minute, so the default spacing
    is 3 seconds. A single instance must be shared by every call that
    counts against the same token.
    """

    def __init__(self, min_interval: float = 3.0, clock: Callable[[], float] = time.monotonic):
        """
        Initialize rate limiter.

        Args:
            min_interval: Minimum seconds between request starts
            clock: Monotonic clock, injectable for tests
        """
        self.min_interval = min_interval
        self._clock = clock
        self._last_request_time: Optional[float] = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait until the next request may start and claim its slot.

        The slot is claimed immediately before sending, not after the
        response arrives, so a slow response cannot let two requests start
        within the same interval. Concurrent callers are admitted one at a
        time.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            waited = 0.0
            if self._last_request_time is not None:
                elapsed = self._clock() - self._last_request_time
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    await asyncio.sleep(waited)

            self._last_request_time = self._clock()
            return waited

    def reset(self) -> None:
        """Forget the last request so the next one is admitted immediately."""
        self._last_request_time = None


@dataclass(frozen=True)
class RetryPolicy:
    """How to react to one response status.

    Attributes:
        wait: Computes the delay from (attempt, response, min_interval)
        max_retries: Retry budget for this status; None means unlimited
    """
    wait: Callable[[int, httpx.Response, float], float]
    max_retries: Optional[int] = None


def throttle_wait(attempt: int, response: httpx.Response, min_interval: float) -> float:
    """Wait for the provider-supplied Retry-After, or twice the admission interval."""
    retry_after = _extract_retry_after(response)
    if retry_after is not None:
        return retry_after
    return 2 * min_interval


def exponential_wait(attempt: int, response: httpx.Response, min_interval: float) -> float:
    """2s, 4s, 8s, ..."""
    return 2.0 * (2 ** attempt)


# status code -> wait strategy and retry budget; any other status is final
RETRY_POLICIES: Dict[int, RetryPolicy] = {
    429: RetryPolicy(wait=throttle_wait, max_retries=None),
    500: RetryPolicy(wait=exponential_wait, max_retries=3),
}


def next_retry_delay(
    response: httpx.Response,
    attempts: Dict[int, int],
    min_interval: float,
    policies: Optional[Dict[int, RetryPolicy]] = None
) -> Optional[float]:
    """
    Decide whether a response should be retried.

    Args:
        response: The response just received
        attempts: Retries already made per status code for this call (updated in place)
        min_interval: The client's admission interval
        policies: Policy table, defaults to RETRY_POLICIES

    Returns:
        Seconds to wait before retrying, or None if the response is final
    """
    policy = (policies if policies is not None else RETRY_POLICIES).get(response.status_code)
    if policy is None:
        return None

    attempt = attempts.get(response.status_code, 0)
    if policy.max_retries is not None and attempt >= policy.max_retries:
        logger.error(
            f"Retry budget ({policy.max_retries}) exhausted for status {response.status_code}"
        )
        return None

    attempts[response.status_code] = attempt + 1
    return policy.wait(attempt, response, min_interval)


def _extract_retry_after(response: httpx.Response) -> Optional[float]:
    """
    Extract the retry-after duration from a throttled response.

    Accepts delta-seconds or an HTTP date in the Retry-After header, then a
    ``retry_after`` field in a JSON body.

    Returns:
        Seconds to wait, or None if the provider did not say
    """
    retry_after = response.headers.get('Retry-After')
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass

        try:
            retry_at = parsedate_to_datetime(retry_after)
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)
        except (TypeError, ValueError):
            logger.warning(f"Unparsable Retry-After header: {retry_after!r}")

    try:
        body = response.json()
    except ValueError:
        return None

    if isinstance(body, dict) and 'retry_after' in body:
        try:
            return max(float(body['retry_after']), 0.0)
        except (TypeError, ValueError):
            return None

    return None
