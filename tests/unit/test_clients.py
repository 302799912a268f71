"""Tests for the APOD and This Week in Rust clients."""

from datetime import date
from pathlib import Path

import httpx
import pytest

from notes_attendant.apod import APOD_URL, ApodClient, ApodError, MediaKind
from notes_attendant.pipeline import CollaboratorError
from notes_attendant.twir import (
    ARCHIVE_URL,
    IssueNotFoundError,
    IssueRange,
    TwirArchive,
    TwirError,
    parse_archive,
)

ARCHIVE_HTML = """
<html><body>
<div class="row">
  <div class="col post-title">
    <time datetime="2023-06-28T00:00:00+00:00">2023-06-28</time>
    <a href="https://this-week-in-rust.org/blog/2023/06/28/this-week-in-rust-501/">This Week in Rust 501</a>
  </div>
</div>
<div class="row">
  <div class="col post-title">
    <time datetime="2023-07-05T00:00:00+00:00">2023-07-05</time>
    <a href="https://this-week-in-rust.org/blog/2023/07/05/this-week-in-rust-502/">This Week in Rust 502</a>
  </div>
</div>
<div class="row"><div class="col post-title"><span>no link</span></div></div>
</body></html>
"""

ISSUE_HTML = """
<html><body><article class="post-content">
<h2>Updates from Rust Community</h2>
<p>Hello <a href="https://rust-lang.org">Rust</a>!</p>
</article></body></html>
"""

APOD_JSON = {
    "date": "2024-02-03",
    "title": "Orion Nebula",
    "explanation": "A stellar nursery.",
    "media_type": "image",
    "url": "https://apod.nasa.gov/apod/image/2402/orion.jpg",
    "hdurl": "https://apod.nasa.gov/apod/image/2402/orion_big.jpg",
    "copyright": "\nJane Doe\n",
    "service_version": "v1",
}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "value, expected",
    [("42", (42, 42)), ("40-45", (40, 45)), ("40..45", (40, 45)), (" 7 - 7 ", (7, 7))],
)
def test_issue_range_parse(value: str, expected: tuple[int, int]) -> None:
    """Test accepted issue range spellings."""
    issues = IssueRange.parse(value)
    assert (issues.first, issues.last) == expected


@pytest.mark.parametrize("value", ["", "abc", "0", "45-40", "1-2-3"])
def test_issue_range_parse_illegal(value: str) -> None:
    """Test rejected issue ranges."""
    with pytest.raises(ValueError, match="Illegal issue number"):
        IssueRange.parse(value)


def test_issue_range_iterates_inclusively() -> None:
    """Test that both ends are included."""
    assert list(IssueRange(3, 5)) == [3, 4, 5]
    assert list(IssueRange(3, 3)) == [3]


def test_parse_archive_newest_first() -> None:
    """Test extracting archive entries."""
    issues = parse_archive(ARCHIVE_HTML)
    assert [issue.number for issue in issues] == [502, 501]
    assert issues[0].published.date() == date(2023, 7, 5)
    assert issues[0].url.endswith("this-week-in-rust-502/")


async def test_archive_select_and_fetch() -> None:
    """Test loading the archive and converting an issue to Markdown."""
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if str(request.url) == ARCHIVE_URL:
            return httpx.Response(200, text=ARCHIVE_HTML)
        return httpx.Response(200, text=ISSUE_HTML)

    async with mock_client(handler) as client:
        archive = await TwirArchive.select(client)
        assert len(archive) == 2
        assert [issue.number for issue in archive.first()] == [502]

        markdown = await archive.fetch_markdown(archive.find(501))
        assert markdown.startswith("## Updates from Rust Community")
        assert "[Rust](https://rust-lang.org)" in markdown

        with pytest.raises(IssueNotFoundError):
            archive.find(1)

        await archive.aclose()
        assert not client.is_closed

    assert requested[0] == ARCHIVE_URL


async def test_archive_http_error() -> None:
    """Test that HTTP failures become archive errors."""
    async with mock_client(lambda request: httpx.Response(503)) as client:
        with pytest.raises(TwirError, match="Cannot fetch the archive"):
            await TwirArchive.select(client)


async def test_archive_issue_without_article() -> None:
    """Test that a page without the article is rejected."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == ARCHIVE_URL:
            return httpx.Response(200, text=ARCHIVE_HTML)
        return httpx.Response(200, text="<html><body><p>moved</p></body></html>")

    async with mock_client(handler) as client:
        archive = await TwirArchive.select(client)
        with pytest.raises(TwirError, match="Illegal HTML content"):
            await archive.fetch_markdown(archive.find(502))


def test_apod_client_requires_key() -> None:
    """Test that an empty API key is rejected."""
    with pytest.raises(ApodError, match="API key"):
        ApodClient("  ")


async def test_apod_fetch_today() -> None:
    """Test fetching and validating the picture of the day."""

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url).startswith(APOD_URL)
        assert request.url.params["api_key"] == "DEMO_KEY"
        return httpx.Response(200, json=APOD_JSON)

    async with mock_client(handler) as client:
        info = await ApodClient("DEMO_KEY", client=client).fetch_today()

    assert info.title == "Orion Nebula"
    assert info.date == date(2024, 2, 3)
    assert info.media_type is MediaKind.IMAGE
    assert info.copyright == "Jane Doe"


async def test_apod_unknown_media_type() -> None:
    """Test that unexpected media types are not a validation error."""
    payload = dict(APOD_JSON, media_type="other")
    async with mock_client(lambda request: httpx.Response(200, json=payload)) as client:
        info = await ApodClient("DEMO_KEY", client=client).fetch_today()
    assert info.media_type is MediaKind.UNKNOWN


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(403, json={"error": "bad key"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"title": "missing fields"}),
    ],
)
async def test_apod_fetch_errors(response: httpx.Response) -> None:
    """Test that failures surface as APOD errors."""
    async with mock_client(lambda request: response) as client:
        with pytest.raises(ApodError):
            await ApodClient("DEMO_KEY", client=client).fetch_today()


async def test_apod_download(tmp_path: Path) -> None:
    """Test streaming an image to disk."""
    async with mock_client(lambda request: httpx.Response(200, content=b"\x89PNG")) as client:
        target = await ApodClient("DEMO_KEY", client=client).download(
            "https://apod.nasa.gov/image.png", tmp_path / "image.png"
        )
    assert target.read_bytes() == b"\x89PNG"


def test_client_errors_share_a_base() -> None:
    """Test that both service clients raise collaborator errors."""
    assert issubclass(ApodError, CollaboratorError)
    assert issubclass(TwirError, CollaboratorError)
    assert issubclass(IssueNotFoundError, CollaboratorError)
