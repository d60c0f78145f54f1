"""
HTTP page fetcher for the booking site.
Injects session cookies and a browser User-Agent; no business logic.
"""

import asyncio
import logging
from typing import Mapping, Optional

import httpx

from courtwatch.errors import AuthError, NetworkError
from courtwatch.models.schemas import Session

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

LOGIN_PATH = "/auth/login"


class PageFetcher:
    """Authenticated GET/POST against the booking site."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize page fetcher.

        Args:
            timeout: Per-request timeout in seconds
            max_retries: Attempts for GET requests failing with NetworkError
            retry_delay: Base backoff delay in seconds, doubled per attempt
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _headers(
        self, session: Optional[Session], referer: Optional[str] = None
    ) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }
        if session is not None and session.cookies:
            headers["Cookie"] = session.cookie_header
        if referer:
            headers["Referer"] = referer
            origin = httpx.URL(referer)
            headers["Origin"] = f"{origin.scheme}://{origin.host}"
        return headers

    async def _get_once(self, url: str, session: Session) -> str:
        try:
            response = await self.client.get(
                url, headers=self._headers(session), follow_redirects=True
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e

        if response.url.path.rstrip("/").endswith(LOGIN_PATH):
            raise AuthError("Session expired: redirected to the login page")

        if not response.is_success:
            raise NetworkError(
                f"Failed to fetch page: HTTP {response.status_code} - "
                f"{response.text[:200]}"
            )

        return response.text

    async def get_page(self, url: str, session: Session) -> str:
        """
        Fetch a page and return its HTML.

        Raises:
            NetworkError: On transport failure or non-2xx after all retries
            AuthError: When the site bounces the request to its login page
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(f"Fetching {url} (attempt {attempt}/{self.max_retries})")
                html = await self._get_once(url, session)
                logger.info(f"Fetched {url} ({len(html)} characters)")
                return html

            except NetworkError as e:
                logger.error(f"Fetch attempt {attempt} failed for {url}: {e}")

                if attempt < self.max_retries:
                    wait_time = self.retry_delay * 2 ** (attempt - 1)
                    logger.info(f"Retrying in {wait_time} seconds...")
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"All {self.max_retries} fetch attempts failed for {url}")
                    raise

        raise NetworkError(f"Failed to fetch {url} after {self.max_retries} attempts")

    async def post_page(
        self,
        url: str,
        data: Mapping[str, str],
        session: Optional[Session] = None,
        referer: Optional[str] = None,
    ) -> httpx.Response:
        """
        POST a form and return the raw response without following redirects.

        Status codes are not checked here: booking steps inspect status,
        Location and body themselves.

        Raises:
            NetworkError: On transport failure only
        """
        logger.info(f"Posting to {url}")
        try:
            response = await self.client.post(
                url,
                data=dict(data),
                headers=self._headers(session, referer),
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"POST {url} failed: {e}") from e

        logger.info(f"POST {url} returned HTTP {response.status_code}")
        return response

    def clear_cookies(self) -> None:
        """Drop cookies the client picked up from Set-Cookie headers."""
        self.client.cookies.clear()

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
