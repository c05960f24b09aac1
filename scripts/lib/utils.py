"""
Utility functions for BuildHub Analytics.
Async rate limiting, retry logic, HTTP helpers and atomic file writes.

Usage:
    from scripts.lib.utils import RateLimiter, atomic_write_json, safe_request
"""
from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import requests
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


class RateLimiter:
    """
    Enforces a minimum interval between successive calls.

    One limiter is shared by every request that uses the same credential,
    so waiters are serialized through a lock: the quota is global, not
    per request.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Block until the next call is allowed. Returns seconds waited."""
        async with self._lock:
            waited = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.debug("Rate limiting: waiting %.2fs", waited)
                    await self._sleep(waited)
            self._last_call = self._clock()
            return waited


def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True

    except OSError as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink(missing_ok=True)
        return False


def _retryable(exc: BaseException) -> bool:
    """Connection problems, timeouts and 5xx answers are worth another try."""
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    response = getattr(exc, "response", None)
    return isinstance(exc, requests.exceptions.HTTPError) and response is not None and response.status_code >= 500


def safe_request(
    url: str,
    method: str = "GET",
    timeout: float = 30,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    **kwargs,
) -> Optional[requests.Response]:
    """
    Make HTTP request with automatic retries and error handling.

    Retries use exponential backoff starting at `retry_delay` seconds.

    Returns:
        Response object if successful, None if the request ultimately failed.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=retry_delay, max=30) if retry_delay else wait_none(),
        retry=retry_if_exception(_retryable),
        before_sleep=lambda state: logger.warning(
            "%s %s failed (attempt %d/%d): %s",
            method, url, state.attempt_number, max_retries, state.outcome.exception(),
        ),
        reraise=True,
    )
    try:
        for attempt in retrying:
            with attempt:
                start = time.time()
                logger.debug("%s %s", method, url)
                response = requests.request(method, url, timeout=timeout, **kwargs)
                logger.info(
                    "%s %s — %d in %.2fs",
                    method, url, response.status_code, time.time() - start,
                )
                response.raise_for_status()
                return response
    except requests.RequestException as e:
        logger.error("Request failed: %s %s - %s", method, url, e)
        return None
