from __future__ import annotations

import logging
import threading

import requests

from feedsync.errors import NetworkError
from feedsync.models import FetchConfig

logger = logging.getLogger(__name__)

# Schemes that mean "the same resource over HTTPS".
_HTTPS_ALIASES = ("webcal://", "webcals://")


def normalize_feed_address(feed_address: str) -> str:
    address = str(feed_address or "").strip()
    lowered = address.lower()
    for alias in _HTTPS_ALIASES:
        if lowered.startswith(alias):
            return "https://" + address[len(alias) :]
    return address


class FeedFetcher:
    """Downloads feed text over HTTP(S).

    Each thread lazily gets its own ``requests.Session``. An explicitly
    passed ``session`` is shared as-is.
    """

    def __init__(self, config: FetchConfig | None = None, session: requests.Session | None = None) -> None:
        self.config = config or FetchConfig()
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def fetch(self, feed_address: str) -> str:
        url = normalize_feed_address(feed_address)
        if not url:
            raise NetworkError("Feed address is empty.")
        logger.debug("Fetching feed %s", url)
        try:
            response = self.session.get(
                url,
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise NetworkError(f"Request timeout after {self.config.timeout_seconds}s: {exc}") from exc
        except requests.ConnectionError as exc:
            raise NetworkError(f"Network connection failed: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"Feed fetch failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.reason or ''}".rstrip(),
                status_code=response.status_code,
            )
        # requests falls back to ISO-8859-1 for text/* without a charset; iCalendar is UTF-8.
        content_type = str(response.headers.get("Content-Type", "") or "")
        if "charset" not in content_type.lower():
            response.encoding = "utf-8"
        return response.text
