"""HTTP client for the rating site.

Fetches pages with httpx and turns them into raw row dicts with
BeautifulSoup. The extraction is deliberately generic: tabular rows are
``<tr data-id="...">`` elements whose cells carry ``data-field`` attributes,
standalone values are ``data-field`` elements outside any row, and listings
announce their size through a ``data-page-count`` attribute.

Retries are not done here; callers wrap fetches in a RetryPolicy so that
backoff sleeps can observe cancellation.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup

from mafia_data_platform.config import SiteConfig
from mafia_data_platform.pipeline.errors import ParseError

logger = logging.getLogger(__name__)


@dataclass
class ParsedPage:
    """Raw content extracted from one page."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    fields: dict[str, str] = field(default_factory=dict)
    page_count: int = 1


def parse_page(html: str) -> ParsedPage:
    """Extract rows, standalone fields and the page count from HTML.

    Raises:
        ParseError: If the document has no body
    """
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.body is None:
        raise ParseError("Page has no body")

    rows = []
    for tr in soup.select("tr[data-id]"):
        row: dict[str, Any] = {"id": tr["data-id"].strip()}
        for cell in tr.select("[data-field]"):
            row[cell["data-field"]] = cell.get_text(strip=True)
        rows.append(row)

    fields = {}
    for element in soup.select("[data-field]"):
        if element.find_parent("tr", attrs={"data-id": True}) is None:
            fields[element["data-field"]] = element.get_text(strip=True)

    page_count = 1
    marker = soup.select_one("[data-page-count]")
    if marker is not None:
        try:
            page_count = max(1, int(marker["data-page-count"]))
        except ValueError:
            raise ParseError(f"Invalid page count: {marker['data-page-count']!r}")

    return ParsedPage(rows=rows, fields=fields, page_count=page_count)


class SiteClient:
    """Rate-limited client for the rating site.

    Examples:
        >>> with SiteClient(SiteConfig()) as client:
        ...     page = client.fetch_page("/rating", {"tab": "clubs", "page": 1})
        ...     print(page.page_count, len(page.rows))
    """

    # Default headers to mimic browser request
    DEFAULT_HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7",
    }

    def __init__(self, config: Optional[SiteConfig] = None, client: Optional[httpx.Client] = None):
        """Initialize site client.

        Args:
            config: Site settings (base URL, rate limit, timeout)
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.config = config or SiteConfig()
        self.client = client or httpx.Client(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            headers=self.DEFAULT_HEADERS,
            follow_redirects=True,
        )
        self._min_interval = 60.0 / self.config.rate_limit
        self._last_request_time: Optional[float] = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close HTTP client."""
        self.close()

    def close(self) -> None:
        self.client.close()

    def _apply_rate_limit(self) -> None:
        """Keep at least 60 / rate_limit seconds between requests."""
        if self._last_request_time is not None:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self._min_interval:
                time.sleep(self._min_interval - elapsed)
        self._last_request_time = time.monotonic()

    def get_html(self, path: str, params: Optional[dict[str, Any]] = None) -> str:
        """Fetch a page.

        Raises:
            httpx.HTTPStatusError: On 4xx/5xx responses
            httpx.TransportError: On connection problems and timeouts
        """
        self._apply_rate_limit()
        logger.debug(f"Fetching: {path} (params={params})")

        response = self.client.get(path, params=params)
        response.raise_for_status()
        return response.text

    def fetch_page(self, path: str, params: Optional[dict[str, Any]] = None) -> ParsedPage:
        """Fetch a page and extract its rows and fields."""
        return parse_page(self.get_html(path, params))
