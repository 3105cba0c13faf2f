"""Shared HTTP helpers used by the package index and the source fetcher.

Encapsulates request/timeout error handling, bounded retries with
exponential backoff, and a small in-memory response cache so callers avoid
duplicating try/except blocks. Failures surface as ``NetworkError`` or
``SourceNotFound`` instead of terminating the process.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from errors import NetworkError, SourceNotFound

logger = logging.getLogger(__name__)


# Simple in-memory cache for HTTP responses
_http_cache: Dict[str, Tuple[Any, float]] = {}


def _get_cache_key(method: str, url: str, headers: Optional[Dict[str, str]] = None) -> str:
    """Generate cache key from request parameters."""
    headers_str = str(sorted(headers.items())) if headers else ""
    return f"{method}:{url}:{headers_str}"


def _is_cache_valid(cache_entry: Tuple[Any, float]) -> bool:
    """Check if cache entry is still valid."""
    _, cached_time = cache_entry
    return time.time() - cached_time < Constants.HTTP_CACHE_TTL_SEC


def clear_cache() -> None:
    """Drop every cached response."""
    _http_cache.clear()


def backoff_delay(attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt."""
    return Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** attempt)


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def robust_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    use_cache: bool = True,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], str]:
    """Perform GET request with timeout, retries, and caching with DEBUG traces.

    Timeouts, connection errors and 5xx/429 responses are retried up to
    ``Constants.HTTP_RETRY_MAX`` attempts with exponential backoff.

    Returns:
        Tuple of (status_code, headers_dict, body_text)

    Raises:
        NetworkError: every attempt failed transiently.
    """
    cache_key = _get_cache_key('GET', url, headers)
    safe_target = safe_url(url)

    if use_cache and cache_key in _http_cache and _is_cache_valid(_http_cache[cache_key]):
        cached_data, _ = _http_cache[cache_key]
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP cache hit",
                extra=extra_context(
                    event="cache_hit",
                    component="http_client",
                    action="GET",
                    target=safe_target
                )
            )
        return cached_data

    last_exception = None

    for attempt in range(Constants.HTTP_RETRY_MAX):
        if attempt:
            time.sleep(backoff_delay(attempt - 1))
        with Timer() as t:
            try:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP request",
                        extra=extra_context(
                            event="http_request",
                            component="http_client",
                            action="GET",
                            target=safe_target,
                            attempt=attempt + 1
                        )
                    )

                response = requests.get(
                    url,
                    timeout=Constants.REQUEST_TIMEOUT,
                    headers=headers,
                    **kwargs
                )
            except requests.Timeout:
                last_exception = "timeout"
                logger.debug("GET %s timed out (attempt %d)", safe_target, attempt + 1)
                continue
            except requests.RequestException as exc:
                last_exception = str(exc)
                logger.debug("GET %s failed (attempt %d): %s", safe_target, attempt + 1, exc)
                continue

            if _is_transient_status(response.status_code):
                last_exception = f"HTTP {response.status_code}"
                continue

            cache_data = (response.status_code, dict(response.headers), response.text)
            if use_cache:
                _http_cache[cache_key] = (cache_data, time.time())

            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response ok",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        outcome="success",
                        status_code=response.status_code,
                        duration_ms=t.duration_ms(),
                        target=safe_target
                    )
                )
            return cache_data

    raise NetworkError(
        f"GET {safe_target} failed after {Constants.HTTP_RETRY_MAX} attempts: {last_exception}"
    )


def get_text(url: str, *, headers: Optional[Dict[str, str]] = None) -> str:
    """GET ``url`` and return the body, mapping 404 to ``SourceNotFound``."""
    status_code, _, text = robust_get(url, headers=headers)
    if status_code == 404:
        raise SourceNotFound(f"not found: {safe_url(url)}")
    if status_code != 200:
        raise NetworkError(f"GET {safe_url(url)} returned HTTP {status_code}")
    return text


def download_to_file(url: str, dest_path: str) -> int:
    """Stream ``url`` into ``dest_path`` with retries; returns the byte count.

    A partially written file is removed before each retry and on failure.
    """
    safe_target = safe_url(url)
    last_exception = None

    for attempt in range(Constants.HTTP_RETRY_MAX):
        if attempt:
            time.sleep(backoff_delay(attempt - 1))
        try:
            with requests.get(url, timeout=Constants.REQUEST_TIMEOUT, stream=True) as response:
                if response.status_code == 404:
                    raise SourceNotFound(f"not found: {safe_target}")
                if _is_transient_status(response.status_code):
                    last_exception = f"HTTP {response.status_code}"
                    continue
                if response.status_code != 200:
                    raise NetworkError(f"GET {safe_target} returned HTTP {response.status_code}")
                size = 0
                with open(dest_path, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
                            size += len(chunk)
                logger.debug("Downloaded %s (%d bytes)", safe_target, size)
                return size
        except requests.Timeout:
            last_exception = "timeout"
        except requests.RequestException as exc:
            last_exception = str(exc)
        if os.path.exists(dest_path):
            os.remove(dest_path)

    raise NetworkError(
        f"download of {safe_target} failed after {Constants.HTTP_RETRY_MAX} attempts: {last_exception}"
    )
