"""
Resilient HTTP access layer.

Every remote call goes through ``ResilientClient.request``, which applies
one retry policy:

- 429: wait for ``Retry-After`` (seconds or HTTP-date, capped at 30s),
  otherwise ``retry_delay * attempt``.
- 5xx on a write: retry with ``retry_delay * attempt``.
- 5xx on a GET, and any other status: returned to the caller as is.
- Timeouts and connection failures: retried for every method.

Successful GET responses are cached for ``cache_ttl`` seconds. Writes never
touch the cache except to invalidate reads of the collection they wrote to.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

import httpx

from .cache import TTLCache
from .errors import MaxRetriesExceededError, NetworkError, RequestCancelledError

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 30.0


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header, or None if absent/invalid."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        current = now if now is not None else time.time()
        seconds = when.timestamp() - current
    if not math.isfinite(seconds):
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


def _collection_of(url: httpx.URL) -> httpx.URL:
    segment = url.path.lstrip("/").split("/", 1)[0]
    return url.copy_with(path="/" + segment, query=None, fragment=None)


def _under(key: str, prefix: str) -> bool:
    return key == prefix or key.startswith(prefix + "/") or key.startswith(prefix + "?")


class ResilientClient:
    """httpx client wrapper with retry, backoff, cancellation and a GET cache."""

    def __init__(
        self,
        base_url: str = "",
        max_retries: int = 2,
        retry_delay: float = 1.0,
        timeout: float = 15.0,
        cache_ttl: float = 30.0,
        cache_max_entries: int = 1000,
        sweep_interval: Optional[float] = 60.0,
        http: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        cache_clock: Callable[[], float] = time.monotonic,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self._sleep = sleep
        self._cache = TTLCache(
            ttl=cache_ttl,
            max_entries=cache_max_entries,
            sweep_interval=sweep_interval,
            clock=cache_clock,
        )

    def __enter__(self) -> "ResilientClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self._cache.close()
        if self._owns_http:
            self._http.close()

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> httpx.Response:
        method = method.upper()
        request = self._http.build_request(
            method,
            url,
            json=json,
            params=params,
            headers=headers,
            timeout=timeout if timeout is not None else self.timeout,
        )
        cache_key = str(request.url)

        if method == "GET":
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache hit: %s", cache_key)
                return cached
            response = self._send(request, cancel)
            if response.is_success:
                self._cache.set(cache_key, response)
            return response

        try:
            return self._send(request, cancel)
        finally:
            purged = self._cache.delete_where(
                lambda key, prefix=str(_collection_of(request.url)): _under(key, prefix)
            )
            if purged:
                logger.debug("Invalidated %d cached reads after %s %s", purged, method, cache_key)

    def _send(self, request: httpx.Request, cancel: Optional[threading.Event]) -> httpx.Response:
        attempts = self.max_retries + 1
        last_response: Optional[httpx.Response] = None
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError(f"{request.method} {request.url} cancelled")

            try:
                response = self._http.send(request)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_response = None
                last_error = f"{type(e).__name__}: {e}"
                if attempt < attempts:
                    self._backoff(request, attempt, attempts, last_error, None, cancel)
                    continue
                break
            except httpx.TransportError as e:
                raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

            status = response.status_code
            retryable = status == 429 or (status >= 500 and request.method != "GET")
            if not retryable:
                return response

            last_response = response
            last_error = f"HTTP {status}"
            if attempt < attempts:
                delay = None
                if status == 429:
                    delay = parse_retry_after(response.headers.get("Retry-After"))
                self._backoff(request, attempt, attempts, last_error, delay, cancel)
                continue
            break

        logger.warning(
            "Giving up on %s %s after %d attempts: %s",
            request.method,
            request.url,
            attempts,
            last_error,
        )
        raise MaxRetriesExceededError(
            f"{request.method} {request.url} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            last_response=last_response,
        )

    def _backoff(
        self,
        request: httpx.Request,
        attempt: int,
        attempts: int,
        reason: str,
        delay: Optional[float],
        cancel: Optional[threading.Event],
    ) -> None:
        if delay is None:
            delay = self.retry_delay * attempt
        logger.info(
            "Retryable error on %s %s (attempt %d/%d): %s; retrying in %.2fs",
            request.method,
            request.url,
            attempt,
            attempts,
            reason,
            delay,
        )
        if cancel is not None:
            if cancel.wait(delay):
                raise RequestCancelledError(f"{request.method} {request.url} cancelled")
        else:
            self._sleep(delay)

    def invalidate(self, prefix: str) -> int:
        """Drop cached reads under a path such as ``/sessions``."""
        key_prefix = str(self._http.build_request("GET", prefix).url).rstrip("/")
        return self._cache.delete_where(lambda key: _under(key, key_prefix))

    def clear_cache(self) -> None:
        self._cache.clear()
