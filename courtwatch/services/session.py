"""
Session management for the booking site.
Logs in with form credentials, caches the cookie session with a TTL and
serializes refreshes so concurrent callers share a single login.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from courtwatch.errors import AuthError, NetworkError
from courtwatch.models.schemas import Session, utcnow
from courtwatch.services.fetcher import PageFetcher

logger = logging.getLogger(__name__)


def cookies_from_headers(set_cookie_headers: list[str]) -> dict[str, str]:
    """Reduce raw Set-Cookie headers to a name -> value mapping."""
    cookies: dict[str, str] = {}
    for header in set_cookie_headers:
        pair = header.split(";", 1)[0]
        name, sep, value = pair.partition("=")
        if sep and name.strip():
            cookies[name.strip()] = value.strip()
    return cookies


class SessionManager:
    """Process-scoped session cache with single-flight refresh."""

    def __init__(
        self,
        fetcher: PageFetcher,
        login_url: str,
        username: str,
        password: str,
        ttl: timedelta = timedelta(minutes=30),
        max_retries: int = 3,
        retry_delay: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fetcher = fetcher
        self.login_url = login_url
        self.username = username
        self._password = password
        self.ttl = ttl
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.clock = clock
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self.login_count = 0

    def _is_fresh(self, session: Optional[Session]) -> bool:
        return session is not None and self.clock() - session.created_at < self.ttl

    async def get_session(self) -> Session:
        """
        Return a valid session, logging in when the cache is empty or expired.

        Raises:
            AuthError: If the site rejects the credentials
            NetworkError: If the login request keeps failing at transport level
        """
        session = self._session
        if self._is_fresh(session):
            logger.debug("Session cache hit")
            return session

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh(self._session):
                return self._session

            reason = "expired" if self._session else "missing"
            logger.info(f"Session cache miss ({reason}), logging in")
            self._session = await self._login_with_retry()
            return self._session

    def invalidate_session(self) -> None:
        """Force the next get_session() call to log in again."""
        logger.info("Session invalidated")
        self._session = None
        self.fetcher.clear_cookies()

    async def _login_with_retry(self) -> Session:
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self.login()
            except NetworkError as e:
                logger.error(f"Login attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    wait_time = self.retry_delay * 2 ** (attempt - 1)
                    logger.info(f"Retrying login in {wait_time} seconds...")
                    await asyncio.sleep(wait_time)
                else:
                    raise

        raise NetworkError(f"Login failed after {self.max_retries} attempts")

    async def login(self) -> Session:
        """Perform one login request and build a session from its cookies."""
        self.login_count += 1
        self.fetcher.clear_cookies()
        response = await self.fetcher.post_page(
            self.login_url,
            {"username": self.username, "password": self._password},
        )

        set_cookies = response.headers.get_list("set-cookie")
        if response.status_code not in (200, 302):
            raise AuthError(f"Login failed with status {response.status_code}")

        cookies = cookies_from_headers(set_cookies)
        if not cookies:
            raise AuthError("No session cookies received from login response")

        logger.info(f"Login successful ({len(cookies)} cookies)")
        return Session(cookies=cookies, created_at=self.clock())
