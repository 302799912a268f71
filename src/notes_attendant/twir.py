"""This Week in Rust archive scraper."""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime

import httpx
from bs4 import BeautifulSoup
from markdownify import markdownify

from .pipeline import CollaboratorError

logger = logging.getLogger(__name__)

ARCHIVE_URL = "https://this-week-in-rust.org/blog/archives/index.html"
DEFAULT_TIMEOUT = 30.0

TRAILING_NUMBER_PATTERN = re.compile(r"(\d+)\s*$")
ISSUE_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:(?:-|\.\.=?)\s*(\d+)\s*)?$")


class TwirError(CollaboratorError):
    """Base exception for archive scraping."""

    pass


class IssueNotFoundError(TwirError):
    """Raised when no archive entry carries the requested issue number."""

    pass


@dataclass(slots=True, frozen=True)
class IssueRange:
    """Inclusive range of issue numbers requested on the command line."""

    first: int
    last: int

    @classmethod
    def parse(cls, value: str) -> "IssueRange":
        """
        Parse ``"42"``, ``"40-45"`` or ``"40..45"``.

        Raises:
            ValueError: If the value is not a positive number or ascending range
        """
        match = ISSUE_RANGE_PATTERN.match(value)
        if match is None:
            raise ValueError(f"Illegal issue number {value}")
        first = int(match.group(1))
        last = int(match.group(2)) if match.group(2) else first
        if first <= 0 or last < first:
            raise ValueError(f"Illegal issue number {value}")
        return cls(first, last)

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.first, self.last + 1))


@dataclass(slots=True, frozen=True)
class TwirIssue:
    """One archive entry."""

    title: str
    published: datetime
    url: str

    @property
    def number(self) -> int | None:
        match = TRAILING_NUMBER_PATTERN.search(self.title)
        return int(match.group(1)) if match else None


def parse_archive(html: str) -> list[TwirIssue]:
    """Extract archive entries, newest first."""
    soup = BeautifulSoup(html, "html.parser")
    issues: list[TwirIssue] = []
    for row in soup.select("div.row .post-title"):
        time_tag = row.find("time")
        link = row.find("a", href=True)
        if time_tag is None or link is None or not time_tag.get("datetime"):
            continue
        try:
            published = datetime.fromisoformat(str(time_tag["datetime"]))
        except ValueError as e:
            raise TwirError(f"Illegal issue datetime {time_tag['datetime']!r}") from e
        issues.append(
            TwirIssue(
                title=" ".join(link.stripped_strings),
                published=published,
                url=str(link["href"]),
            )
        )

    issues.sort(key=lambda issue: issue.published, reverse=True)
    return issues


class TwirArchive:
    """The archive index, loaded once and queried by issue number."""

    def __init__(
        self,
        issues: list[TwirIssue],
        client: httpx.AsyncClient | None = None,
        owns_client: bool = False,
    ):
        self.issues = issues
        self._client = client
        self._owns_client = owns_client

    @classmethod
    async def select(
        cls, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT
    ) -> "TwirArchive":
        """
        Fetch and parse the archive index.

        Args:
            client: Shared HTTP client (a private one is created if omitted)
            timeout: Request timeout in seconds for a private client

        Raises:
            TwirError: On HTTP failures or malformed entries
        """
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        try:
            response = await client.get(ARCHIVE_URL)
            response.raise_for_status()
            issues = parse_archive(response.text)
        except httpx.HTTPError as e:
            if owns_client:
                await client.aclose()
            raise TwirError(f"Cannot fetch the archive: {e}") from e
        except TwirError:
            if owns_client:
                await client.aclose()
            raise

        logger.debug(f"Found {len(issues)} archive entries")
        return cls(issues, client, owns_client)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "TwirArchive":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __iter__(self) -> Iterator[TwirIssue]:
        return iter(self.issues)

    def __len__(self) -> int:
        return len(self.issues)

    def first(self) -> "TwirArchive":
        """Archive restricted to the newest entry."""
        return TwirArchive(self.issues[:1], self._client)

    def find(self, number: int) -> TwirIssue:
        for issue in self.issues:
            if issue.number == number:
                return issue
        raise IssueNotFoundError(f"Illegal issue number {number}")

    async def fetch_markdown(self, issue: TwirIssue) -> str:
        """
        Download an issue page and convert its article to Markdown.

        Raises:
            TwirError: On HTTP failures or when the page has no article
        """
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True)
            self._owns_client = True
        try:
            response = await self._client.get(issue.url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TwirError(f"Cannot fetch {issue.url}: {e}") from e

        article = BeautifulSoup(response.text, "html.parser").select_one("article.post-content")
        if article is None:
            raise TwirError(f"Illegal HTML content at {issue.url}")
        return markdownify(article.decode_contents(), heading_style="ATX").strip() + "\n"
