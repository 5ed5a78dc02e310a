"""HTTP fetcher for remote ICS calendar feeds."""
import logging
import time
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

# Shortest body that can hold a VCALENDAR envelope
MIN_FEED_LENGTH = 50

ALLOWED_SCHEMES = ('http', 'https')


class FeedFetchError(Exception):
    """Calendar feed could not be retrieved."""


class InvalidFeedUrlError(FeedFetchError):
    """Feed URL is empty or not an HTTP(S) URL."""


class FeedTransportError(FeedFetchError):
    """DNS, connection or timeout failure."""


class FeedHttpError(FeedFetchError):
    """Feed URL answered with a non-success status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class MalformedFeedError(FeedFetchError):
    """Feed URL answered with something that cannot be a calendar."""


def validate_feed_url(url: str) -> None:
    """
    Check that a feed URL can be fetched over HTTP(S).

    Raises:
        InvalidFeedUrlError: If the URL is empty, has another scheme or no host
    """
    if not url or not url.strip():
        raise InvalidFeedUrlError('Feed URL is empty')
    parsed = urlparse(url.strip())
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidFeedUrlError(f"Feed URL must start with http:// or https://: {url}")
    if not parsed.netloc:
        raise InvalidFeedUrlError(f"Feed URL has no host: {url}")


class IcsFeedFetcher:
    """Fetcher for OTA calendar feeds."""

    USER_AGENT = 'ical-block-sync/1.0'
    CHUNK_SIZE = 8192

    def __init__(self, timeout: int = 30, max_retries: int = 3, retry_delay: float = 1):
        """
        Initialize the feed fetcher.

        Args:
            timeout: Overall bound in seconds for one fetch, retries and
                backoff included (default: 30)
            max_retries: Attempts for transport and 5xx failures (default: 3)
            retry_delay: Base delay of the exponential backoff in seconds
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    def fetch(self, url: str) -> str:
        """
        Fetch raw calendar text.

        Args:
            url: HTTP(S) URL of the feed

        Returns:
            Calendar text

        Raises:
            InvalidFeedUrlError: If the URL is not an HTTP(S) URL
            FeedTransportError: If the server cannot be reached in time
            FeedHttpError: If the server answers with a non-2xx status
            MalformedFeedError: If the body is too short to be a calendar
        """
        validate_feed_url(url)
        url = url.strip()
        logger.info(f"Fetching calendar feed {url}")
        deadline = time.monotonic() + self.timeout

        for attempt in range(self.max_retries):
            try:
                return self._fetch_once(url, deadline)
            except (FeedTransportError, FeedHttpError) as e:
                retryable = not isinstance(e, FeedHttpError) or e.status_code >= 500
                delay = self.retry_delay * (2 ** attempt)
                remaining = deadline - time.monotonic()
                if retryable and attempt < self.max_retries - 1 and delay < remaining:
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                    continue
                logger.error(f"Giving up on {url} after {attempt + 1} attempt(s): {e}")
                raise

    def _fetch_once(self, url: str, deadline: float) -> str:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FeedTransportError(f"Timed out after {self.timeout}s fetching feed")

        try:
            with requests.get(
                url,
                timeout=remaining,
                stream=True,
                headers={'User-Agent': self.USER_AGENT, 'Accept': 'text/calendar, */*'},
            ) as response:
                if not response.ok:
                    raise FeedHttpError(
                        response.status_code,
                        f"Feed returned HTTP {response.status_code} {response.reason or ''}".strip(),
                    )
                body = self._read_body(response, deadline)
                # text/calendar without charset would otherwise decode as ISO-8859-1
                if 'charset' in response.headers.get('Content-Type', '').lower():
                    encoding = response.encoding or 'utf-8'
                else:
                    encoding = 'utf-8'
        except requests.Timeout as e:
            raise FeedTransportError(f"Timed out after {self.timeout}s fetching feed: {e}") from e
        except requests.RequestException as e:
            raise FeedTransportError(f"Could not reach feed: {e}") from e

        text = body.decode(encoding, errors='replace')
        if len(text.strip()) < MIN_FEED_LENGTH:
            raise MalformedFeedError(
                f"Feed body too short to be a calendar ({len(text.strip())} characters)"
            )

        logger.info(f"Fetched {len(text)} characters from feed")
        return text

    def _read_body(self, response: requests.Response, deadline: float) -> bytes:
        """Read the streamed body, aborting once the fetch deadline passes."""
        chunks = []
        for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise FeedTransportError(
                    f"Timed out after {self.timeout}s reading feed body "
                    f"({sum(len(c) for c in chunks)} bytes received)"
                )
        return b''.join(chunks)
