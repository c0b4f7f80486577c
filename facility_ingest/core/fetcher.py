"""Throttled, retrying JSON-over-HTTP client shared by all source adapters."""

from __future__ import annotations

import json as jsonlib
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter

from facility_ingest.core.config import DEFAULT_USER_AGENT, Settings
from facility_ingest.core.errors import FetchCancelledError, SourceUnavailableError

logger = logging.getLogger(__name__)

MIN_REQUEST_INTERVAL_SECONDS = 1.0
MAX_CONCURRENT_REQUESTS = 3
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_JITTER_SECONDS = 0.5
SLOT_POLL_SECONDS = 0.05


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    return (2 ** (attempt - 1)) * BACKOFF_BASE_SECONDS + random.uniform(0, BACKOFF_JITTER_SECONDS)


class RateLimitedFetcher:
    """HTTP client enforcing per-host spacing, a global in-flight cap and retries.

    One instance is meant to be shared by every adapter of a process so the
    limits hold across sources. ``clock`` and ``sleep`` are injectable for
    tests; when ``sleep`` is not given, waits honour the caller's
    cancellation event.
    """

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        min_interval: float = MIN_REQUEST_INTERVAL_SECONDS,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        cache_ttl: float = 0.0,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.min_interval = min_interval
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.max_retries = max_retries
        self.cache_ttl = cache_ttl

        self._clock = clock
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._host_lock = threading.Lock()
        self._next_allowed: Dict[str, float] = {}
        self._cache_lock = threading.Lock()
        self._cache: Dict[Tuple[str, ...], Tuple[float, Any]] = {}

        self._owns_session = session is None
        self.session = session or self._build_session(max_concurrent)
        self.session.headers.setdefault("User-Agent", user_agent)
        self.session.headers.setdefault("Accept", "application/json,text/plain,*/*")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> RateLimitedFetcher:
        return cls(
            min_interval=settings.min_request_interval,
            max_concurrent=settings.max_concurrent_requests,
            timeout=settings.fetch_timeout,
            max_retries=settings.max_retries,
            cache_ttl=settings.cache_ttl,
            user_agent=settings.user_agent,
            **kwargs,
        )

    @staticmethod
    def _build_session(pool_size: int) -> requests.Session:
        session = requests.Session()
        # Retries are handled by fetch() so the backoff formula stays in one place.
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        data: Any = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Return the decoded JSON body of ``url`` or raise SourceUnavailableError."""
        host = urlparse(url).hostname or url
        attempts = max_retries if max_retries is not None else self.max_retries
        attempt_timeout = timeout if timeout is not None else self.timeout

        cache_key = self._cache_key(method, url, params, data, json)
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug("Serving %s %s from cache", method, url)
            return cached

        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            self._check_cancelled(cancel_event, host)
            self._wait_for_host(host, cancel_event)
            try:
                logger.info("Fetch attempt %s/%s: %s %s", attempt, attempts, method, url)
                payload = self._send(method, url, params, data, json, headers, attempt_timeout, cancel_event, host)
                self._cache_put(cache_key, payload)
                return payload
            except (requests.RequestException, ValueError) as exc:
                last_error = exc
                logger.warning("Fetch attempt %s/%s failed for %s: %s", attempt, attempts, host, exc)
                if attempt >= attempts:
                    break
                delay = backoff_delay(attempt)
                logger.info("Retrying %s in %.0fms", host, delay * 1000)
                self._pause(delay, cancel_event, host)

        logger.error("Fetch exhausted %s attempts for %s", attempts, url)
        raise SourceUnavailableError(f"{host} unavailable after {attempts} attempts: {last_error}", source=host)

    def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        data: Any,
        json: Any,
        headers: Optional[Dict[str, str]],
        timeout: float,
        cancel_event: Optional[threading.Event],
        host: str,
    ) -> Any:
        self._acquire_slot(cancel_event, host)
        try:
            # Cancellation may have arrived while queued for the slot.
            self._check_cancelled(cancel_event, host)
            response = self.session.request(
                method,
                url,
                params=params,
                data=data,
                json=json,
                headers=headers,
                timeout=timeout,
            )
        finally:
            self._slots.release()
        self._check_cancelled(cancel_event, host)
        if not (200 <= response.status_code < 300):
            raise requests.HTTPError(f"HTTP {response.status_code} from {url}", response=response)
        return response.json()

    def _acquire_slot(self, cancel_event: Optional[threading.Event], host: str) -> None:
        if cancel_event is None:
            self._slots.acquire()
            return
        while not self._slots.acquire(timeout=SLOT_POLL_SECONDS):
            self._check_cancelled(cancel_event, host)

    def _wait_for_host(self, host: str, cancel_event: Optional[threading.Event]) -> None:
        # Reserve the next slot for this host under the lock, then wait outside it.
        with self._host_lock:
            now = self._clock()
            start_at = max(now, self._next_allowed.get(host, now))
            self._next_allowed[host] = start_at + self.min_interval
        wait = start_at - now
        if wait > 0:
            logger.info("Rate limiting: waiting %.0fms for %s", wait * 1000, host)
            self._pause(wait, cancel_event, host)

    def _pause(self, seconds: float, cancel_event: Optional[threading.Event], host: str) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_event is not None:
            if cancel_event.wait(seconds):
                raise FetchCancelledError(f"fetch to {host} cancelled", source=host)
        else:
            time.sleep(seconds)
        self._check_cancelled(cancel_event, host)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], host: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelledError(f"fetch to {host} cancelled", source=host)

    def _cache_key(self, method: str, url: str, params: Any, data: Any, json: Any) -> Optional[Tuple[str, ...]]:
        if self.cache_ttl <= 0:
            return None
        return (
            method.upper(),
            url,
            jsonlib.dumps(params, sort_keys=True, default=str),
            jsonlib.dumps(data, sort_keys=True, default=str),
            jsonlib.dumps(json, sort_keys=True, default=str),
        )

    def _cache_get(self, key: Optional[Tuple[str, ...]]) -> Any:
        if key is None:
            return None
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at < self._clock():
                del self._cache[key]
                return None
            return payload

    def _cache_put(self, key: Optional[Tuple[str, ...]], payload: Any) -> None:
        if key is None:
            return
        with self._cache_lock:
            self._cache[key] = (self._clock() + self.cache_ttl, payload)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> RateLimitedFetcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
