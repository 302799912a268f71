"""NASA Astronomy Picture of the Day client."""

import datetime as dt
import logging
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from .pipeline import CollaboratorError

logger = logging.getLogger(__name__)

APOD_URL = "https://api.nasa.gov/planetary/apod"
DEFAULT_TIMEOUT = 30.0


class ApodError(CollaboratorError):
    """Base exception for APOD requests."""

    pass


class UnknownMediaTypeError(ApodError):
    """Raised when the picture of the day is neither an image nor a video."""

    pass


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    UNKNOWN = "unknown"


class ApodInfo(BaseModel):
    """Picture of the day as returned by the API."""

    title: str
    explanation: str
    media_type: MediaKind = MediaKind.UNKNOWN
    url: str
    hdurl: str | None = None
    copyright: str | None = None
    date: dt.date
    service_version: str = Field(default="v1")

    @field_validator("media_type", mode="before")
    @classmethod
    def _known_media(cls, value: Any) -> Any:
        if value not in {kind.value for kind in MediaKind}:
            return MediaKind.UNKNOWN
        return value

    @field_validator("copyright", mode="before")
    @classmethod
    def _strip_copyright(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


class ApodClient:
    """Fetches the picture of the day and its image."""

    def __init__(
        self,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize the client.

        Args:
            api_key: NASA API key
            client: Shared HTTP client (a private one is created if omitted)
            timeout: Request timeout in seconds
        """
        if not api_key or not api_key.strip():
            raise ApodError("Illegal NASA Astronomy Picture of the Day API key")
        self.api_key = api_key.strip()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ApodClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def fetch_today(self) -> ApodInfo:
        """
        Get today's picture of the day.

        Raises:
            ApodError: On HTTP failures or an unexpected response shape
        """
        try:
            response = await self._client.get(APOD_URL, params={"api_key": self.api_key})
            response.raise_for_status()
            info = ApodInfo.model_validate(response.json())
        except httpx.HTTPError as e:
            raise ApodError(f"APOD request failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise ApodError(f"Illegal APOD response: {e}") from e

        logger.debug(f"Fetched APOD {info.date}: {info.title} ({info.media_type.value})")
        return info

    async def download(self, url: str, target: Path) -> Path:
        """Stream a media file to ``target``."""
        try:
            async with self._client.stream("GET", url) as response:
                response.raise_for_status()
                async with aiofiles.open(target, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        await f.write(chunk)
        except httpx.HTTPError as e:
            raise ApodError(f"Cannot download {url}: {e}") from e

        logger.info(f"The image was downloaded from {url} into the file \"{target}\"")
        return target
