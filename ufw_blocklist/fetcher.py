"""Remote feed fetching for ufw-blocklist."""

import gzip
import logging
import ssl
import zlib
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .constants import DEFAULT_TIMEOUT, USER_AGENT
from .exceptions import TransportError

logger = logging.getLogger(__name__)


class FeedFetcher:
    """Fetches a remote address list with a single HTTP(S) GET."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        """
        Initialize the fetcher.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout

    def fetch(self, url: str) -> str:
        """
        Fetch the full body of a feed.

        There are no retries; the next scheduled run is the next attempt.

        Args:
            url: The URL to fetch from

        Returns:
            The decoded response body

        Raises:
            TransportError: On any non-2xx status, transport failure or
                undecodable body
        """
        request = Request(
            url,
            headers={
                "User-Agent": USER_AGENT,
                "Accept-Encoding": "gzip",
            },
        )
        try:
            # Create SSL context that verifies certificates
            context = ssl.create_default_context()
            with urlopen(request, timeout=self.timeout, context=context) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise TransportError(f"HTTP status {status}: {url}")
                body = response.read()
                encoding = response.headers.get("Content-Encoding", "")
        except TransportError:
            raise
        except HTTPError as e:
            raise TransportError(f"HTTP error {e.code}: {url}") from e
        except URLError as e:
            raise TransportError(f"URL error: {e.reason} - {url}") from e
        except TimeoutError as e:
            raise TransportError(f"Timeout fetching {url}") from e
        except Exception as e:
            raise TransportError(f"Failed to fetch {url}: {e}") from e

        if encoding.strip().lower() == "gzip":
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError, zlib.error) as e:
                raise TransportError(f"Corrupt gzip body from {url}: {e}") from e

        logger.debug("Fetched %d bytes from %s", len(body), url)
        return body.decode("utf-8", errors="replace")
