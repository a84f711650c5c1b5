"""Rate limited HTTP client shared by every outbound request of a run."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Mapping

import requests

from topicmirror.errors import NetworkError

__all__ = ["DEFAULT_HEADERS", "RateLimitedClient"]

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "topicmirror/0.1 (+https://github.com/)",
    "Accept": "application/json",
}


class RateLimitedClient:
    """Issue JSON GET requests through one "next allowed instant" gate.

    Every attempt, retries included, waits for the gate and then pushes it
    ``interval`` seconds into the future. Callers on several threads therefore
    still leave the process one at a time and evenly spaced.

    Each calling thread gets its own session from ``session_factory``, since
    :class:`requests.Session` is not guaranteed to be thread-safe. Passing
    ``session`` pins every thread to that one object instead.
    """

    def __init__(
        self,
        interval: float = 0.35,
        retries: int = 3,
        *,
        session: requests.Session | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.interval = max(0.0, float(interval))
        self.retries = int(retries)
        self.timeout = timeout
        self._shared_session = session
        self._session_factory = session_factory
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()
        if session is not None:
            session.headers.update(DEFAULT_HEADERS)
        self._clock = clock
        self._sleep = sleep
        self._gate = threading.Lock()
        self._next_allowed = 0.0
        self.request_count = 0

    @classmethod
    def from_config(cls, config, **kwargs: Any) -> "RateLimitedClient":
        return cls(
            interval=config.interval_seconds,
            retries=config.retries,
            timeout=config.request_timeout,
            **kwargs,
        )

    @property
    def session(self) -> requests.Session:
        """The session used by the calling thread."""

        if self._shared_session is not None:
            return self._shared_session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            session.headers.update(DEFAULT_HEADERS)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        if self._shared_session is not None:
            self._shared_session.close()
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    def __enter__(self) -> "RateLimitedClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _wait_turn(self) -> None:
        with self._gate:
            wait = self._next_allowed - self._clock()
            if wait > 0:
                self._sleep(wait)
            self._next_allowed = self._clock() + self.interval
            self.request_count += 1

    def _attempt(self, url: str, params: Mapping[str, Any] | None, headers: Mapping[str, str] | None) -> Any:
        response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        status = response.status_code
        if not 200 <= status < 300:
            raise NetworkError(f"HTTP {status} for {url}", url=url, status_code=status)
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"Malformed JSON body from {url}: {exc}", url=url, status_code=status) from exc

    def request(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Return the decoded JSON body of ``url``.

        Raises :class:`~topicmirror.errors.NetworkError` once ``retries``
        attempts have failed. The back-off after attempt ``n`` is
        ``interval * n * 2`` seconds.
        """

        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            self._wait_turn()
            try:
                return self._attempt(url, params, headers)
            except (requests.RequestException, NetworkError) as exc:
                last_error = exc
                logger.warning("Attempt %d/%d for %s failed: %s", attempt, self.retries, url, exc)
            if attempt < self.retries:
                self._sleep(self.interval * attempt * 2)

        status = getattr(last_error, "status_code", None)
        raise NetworkError(
            f"Request failed after {self.retries} attempts: {url} ({last_error})",
            url=url,
            status_code=status,
            attempts=self.retries,
        ) from last_error
