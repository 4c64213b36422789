"""
HTTP GET with exponential backoff for rate-limit and server errors.

429 and 5xx responses are retried, honouring ``Retry-After`` when the
server asks for a longer wait than the backoff schedule. When the retry
budget runs out the last failing response is returned as-is; turning it
into an error is the caller's decision.
"""

import asyncio
import math
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from core.exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 6
BACKOFF_BASE_MS = 250
BACKOFF_CAP_MS = 30_000


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def backoff_ms(attempt: int) -> int:
    """Exponential backoff for the given 1-based attempt: 250, 500, 1000, ... capped at 30s."""
    return min(BACKOFF_CAP_MS, BACKOFF_BASE_MS * 2 ** (attempt - 1))


def retry_after_ms(value: Optional[str]) -> int:
    """Convert a Retry-After header (delta-seconds or HTTP date) to milliseconds."""
    if not value:
        return 0
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return 0
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if not math.isfinite(seconds) or seconds <= 0:
        return 0
    return math.ceil(seconds * 1000)


class RetryingHTTPClient:
    """
    Thin retry layer over an ``httpx.AsyncClient``.

    Attributes:
        max_retries: Additional attempts after the first (default: 6)
        sleep: Awaitable used for waits, in seconds (default: asyncio.sleep)
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.client = client
        self.max_retries = max_retries
        self.sleep = sleep

    async def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Perform a GET, retrying 429/5xx responses and network errors.

        Returns:
            The first non-retryable response, or the last retryable one once
            the budget is spent.

        Raises:
            TransportError: Network errors persisted past the retry budget
        """
        attempt = 0

        while True:
            attempt += 1

            try:
                response = await self.client.get(url, headers=headers, params=params)
            except httpx.TransportError as e:
                if attempt > self.max_retries:
                    raise TransportError(
                        f"Network error after {attempt} attempts",
                        context={"api_url": url, "retry_count": attempt},
                        original_exception=e
                    )
                wait_ms = backoff_ms(attempt)
                logger.warning(
                    f"Retrying {type(e).__name__} in {wait_ms}ms (attempt {attempt})"
                )
                await self.sleep(wait_ms / 1000)
                continue

            if not is_retryable_status(response.status_code):
                return response

            if attempt > self.max_retries:
                return response

            wait_ms = max(
                retry_after_ms(response.headers.get("retry-after")),
                backoff_ms(attempt)
            )
            logger.warning(
                f"Retrying {response.status_code} in {wait_ms}ms (attempt {attempt})"
            )
            await self.sleep(wait_ms / 1000)
