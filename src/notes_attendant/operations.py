"""Named vault maintenance operations built on the transform pipeline."""

import asyncio
import logging
import re
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import urlparse

import httpx

from .apod import ApodClient, ApodError, ApodInfo, MediaKind, UnknownMediaTypeError
from .config import AttendantConfig, ConfigError
from .daily import insert_daily_link, render_month_calendar
from .frontmatter import (
    FrontMatterDocument,
    MalformedMetadataError,
    MetadataNotFoundError,
    NotAMappingError,
    split_lines,
)
from .pipeline import (
    BatchOutcome,
    Transform,
    TransformPipeline,
    has_extension,
    read_note,
    rewrite_text,
    walk_files,
    write_note,
)
from .rename import build_rename_map, rename_files
from .twir import IssueRange, TwirArchive, TwirIssue

logger = logging.getLogger(__name__)

# [[file |  description]] -> [[file|description]]
WIKI_REF_PATTERN = re.compile(
    r"\[\[\s*(?P<file>[A-Za-z\d\-\.]+(?:\s+[\w\d\-_\.\(\)]+)*)\s*\|\s+(?P<descr>.[^\[\]]+)\s*?\]\]"
)
LEGACY_TWIR_PATTERN = re.compile(r"^TWiR\s+(?P<number>\d+)$")
LEGACY_APOD_PATTERN = re.compile(
    r"^APoD\s+(?P<year>\d{1,4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})$"
)

APOD_SUPERTAG = "astronomy"
VIDEO_EMBED = (
    '<iframe width="100%" height="450" src="{url}" title="YouTube video player" '
    'frameborder="0" allow="accelerometer; autoplay; clipboard-write; '
    'encrypted-media; gyroscope; picture-in-picture" allowfullscreen></iframe>'
)

MetadataEdit = Callable[[FrontMatterDocument, Path], bool]


class OperationError(Exception):
    """Raised when an operation cannot start with the arguments it was given."""

    pass


def edit_front_matter(edit: MetadataEdit) -> Transform:
    """
    Build a transform that mutates a note's front matter.

    ``edit`` returns whether it changed anything; only then is the note
    rewritten. Notes without front matter are skipped, as are notes whose
    front matter is malformed or is not a mapping (a pair of horizontal rules
    in the body reads like a scalar block).
    """

    async def transform(path: Path) -> bool:
        content = await read_note(path)
        try:
            document = FrontMatterDocument.parse(content)
        except MetadataNotFoundError:
            logger.debug(f"No front matter in \"{path}\"")
            return False
        except MalformedMetadataError as e:
            logger.warning(f"Skipping \"{path}\": {e}")
            return False

        try:
            changed = edit(document, path)
        except NotAMappingError as e:
            logger.warning(f"Skipping \"{path}\": {e}")
            return False
        if not changed:
            return False

        await write_note(path, document.embed(content))
        logger.info(f"The note \"{path}\" has been updated")
        return True

    return transform


def repair_wiki_refs_text(content: str) -> str:
    return WIKI_REF_PATTERN.sub(r"[[\g<file>|\g<descr>]]", content)


def remove_line_text(content: str, line: str) -> str:
    """Drop every line whose trimmed text ends with ``line``."""
    return "".join(
        current
        for current in split_lines(content)
        if not current.strip().endswith(line)
    )


def _replace_issue_ref(content: str, old: str, new: str) -> str:
    return re.sub(rf"{re.escape(old)}(?!\d)", new, content)


def apod_tags(subtags: Iterable[str] | None) -> list[str]:
    """Tags under ``astronomy`` for a picture of the day note."""
    tags = {
        tag if tag.startswith(APOD_SUPERTAG) else f"{APOD_SUPERTAG}/{tag}"
        for tag in (subtag.strip().lower() for subtag in subtags or [])
        if tag
    }
    return sorted(tags) or [APOD_SUPERTAG]


def _daily_link(prefix: str | None, target: str, title: str) -> str:
    link = f"[[{target}|{title}]]"
    return f"{prefix} {link}" if prefix else link


class VaultOperations:
    """Maintenance operations over the configured vault."""

    def __init__(
        self,
        config: AttendantConfig,
        pipeline: TransformPipeline | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize operations.

        Args:
            config: Attendant configuration
            pipeline: Pipeline to run per-file work on (built from config if omitted)
            http_client: Shared HTTP client for the grab operations
        """
        self.config = config
        self.pipeline = pipeline or TransformPipeline.from_config(config)
        self.http_client = http_client

    def _markdown(self) -> Callable[[Path], bool]:
        return has_extension(".md")

    def _notes(self) -> Callable[[Path], bool]:
        return has_extension(*self.config.note_extensions)

    @staticmethod
    def _require_dir(path: Path, what: str) -> Path:
        if not path.is_dir():
            raise ConfigError(f"The {what} directory does not exist: {path}")
        return path

    # Repair

    async def repair_wiki_refs(self) -> BatchOutcome:
        """Remove stray whitespace around the ``|`` of wiki references."""
        root = self.config.require_root()
        return await self.pipeline.run(root, self._markdown(), rewrite_text(repair_wiki_refs_text))

    async def remove_unused_files(self) -> BatchOutcome:
        """
        Delete attachments that no note mentions by name.

        Nothing is deleted when any note could not be scanned.

        Returns:
            Outcome whose affected paths are the removed attachments
        """
        root = self.config.require_root()
        files_dir = self._require_dir(self.config.files_dir, "attachments")

        attachments: dict[str, list[Path]] = {}
        for path in walk_files(files_dir):
            attachments.setdefault(path.name, []).append(path)

        referenced: set[str] = set()

        async def scan(path: Path) -> bool:
            content = await read_note(path)
            referenced.update(name for name in attachments if name in content)
            return False

        scanned = await self.pipeline.run(root, self._notes(), scan)
        if not scanned.succeeded:
            logger.error("Some notes could not be scanned, no attachment was removed")
            return scanned

        unused = sorted(
            path
            for name, paths in attachments.items()
            if name not in referenced
            for path in paths
        )

        async def remove(path: Path) -> bool:
            await asyncio.to_thread(path.unlink)
            logger.info(f"Removed unused file \"{path}\"")
            return True

        return await self.pipeline.run_each(unused, remove)

    async def rename_attached_files(self) -> BatchOutcome:
        """
        Give every attachment an opaque UUID name.

        All notes are rewritten first; attachments are renamed only after
        every rewrite has finished.
        """
        root = self.config.require_root()
        files_dir = self._require_dir(self.config.files_dir, "attachments")

        rename_map = build_rename_map(files_dir)
        if not rename_map:
            return BatchOutcome()

        async def rewrite(path: Path) -> bool:
            content = await read_note(path)
            updated, changed = rename_map.apply_to_text(content)
            if not changed:
                return False
            await write_note(path, updated)
            logger.info(f"The note \"{path}\" has been updated")
            return True

        notes = await self.pipeline.run(root, self._notes(), rewrite)
        renamed = await rename_files(rename_map, self.pipeline)
        return notes.merge(renamed)

    async def repair_twir_issues(self) -> BatchOutcome:
        """Move legacy ``TWiR <n>`` notes to ``ISS.TWiR.<n>``."""
        self.config.require_root()
        twir_dir = self._require_dir(self.config.twir_dir, "This Week in Rust")

        def legacy(path: Path) -> bool:
            return path.suffix == ".md" and LEGACY_TWIR_PATTERN.match(path.stem) is not None

        async def move(path: Path) -> Path:
            match = LEGACY_TWIR_PATTERN.match(path.stem)
            if match is None:
                raise OperationError(f"Not a legacy This Week in Rust note: {path}")
            number = int(match.group("number"))
            new_path = twir_dir / f"ISS.TWiR.{number}.md"
            if new_path.exists():
                raise FileExistsError(f"Target note already exists: {new_path}")

            content = await read_note(path)
            content = content.replace("type: news", "type: issue").replace(
                "news/twir", "issue/twir"
            )
            for neighbour in (number - 1, number + 1):
                if neighbour > 0:
                    content = _replace_issue_ref(
                        content, f"TWiR {neighbour}", f"ISS.TWiR.{neighbour}"
                    )

            await write_note(new_path, content)
            await asyncio.to_thread(path.unlink)
            logger.info(f"The note \"{path}\" has been moved to \"{new_path}\"")
            return new_path

        return await self.pipeline.run(twir_dir, legacy, move)

    async def repair_apod_issues(self) -> BatchOutcome:
        """Move legacy ``APoD <y>-<m>-<d>`` notes and fix their daily links."""
        self.config.require_root()
        apod_dir = self._require_dir(self.config.apod_dir, "Astronomy Picture of the Day")
        daily_dir = self.config.daily_dir

        def legacy(path: Path) -> bool:
            return path.suffix == ".md" and LEGACY_APOD_PATTERN.match(path.stem) is not None

        async def move(path: Path) -> Path:
            match = LEGACY_APOD_PATTERN.match(path.stem)
            if match is None:
                raise OperationError(f"Not a legacy Astronomy Picture of the Day note: {path}")
            year, month, day = match.group("year", "month", "day")
            new_path = apod_dir / f"ISS.APoD.{year}.{month}.{day}.md"
            if new_path.exists():
                raise FileExistsError(f"Target note already exists: {new_path}")

            content = await read_note(path)
            content = (
                content.replace("type: news", "type: issue")
                .replace("news/apod", "issue/apod")
                .replace("science/astronomy", "astronomy")
            )
            await write_note(new_path, content)
            await asyncio.to_thread(path.unlink)
            logger.info(f"The note \"{path}\" has been moved to \"{new_path}\"")

            daily_path = daily_dir / f"{year}-{month}-{day}.md"
            if daily_path.is_file():
                daily = await read_note(daily_path)
                updated = daily.replace(path.stem, new_path.stem)
                if updated != daily:
                    await write_note(daily_path, updated)
                    logger.info(f"The daily note \"{daily_path}\" has been updated")
            return new_path

        return await self.pipeline.run(apod_dir, legacy, move)

    async def remove_created(self) -> BatchOutcome:
        """Strip the ``created`` field from every note."""
        root = self.config.require_root()
        return await self.pipeline.run(
            root, self._markdown(), edit_front_matter(lambda doc, _: doc.remove_created())
        )

    async def repair_banners(self) -> BatchOutcome:
        """Normalize every banner to the ``![[name]]`` form."""
        root = self.config.require_root()
        return await self.pipeline.run(
            root, self._markdown(), edit_front_matter(lambda doc, _: doc.fix_banner())
        )

    # Add

    async def add_banner(
        self, file_name: str, note_type: str, tags: Iterable[str] | None = None
    ) -> BatchOutcome:
        """Set the banner of notes of a type carrying all the given tags."""
        root = self.config.require_root()
        required = set(tags or [])
        banner = f"![[{file_name}]]"

        def edit(document: FrontMatterDocument, path: Path) -> bool:
            if document.get_type() != note_type:
                return False
            if not required.issubset(document.get_tags()):
                return False
            if document.get_string("banner") == banner:
                return False
            document.set_banner(file_name)
            return True

        return await self.pipeline.run(root, self._markdown(), edit_front_matter(edit))

    async def add_created(self, note_type: str) -> BatchOutcome:
        """Record the file creation time on notes of a type that lack one."""
        root = self.config.require_root()

        def edit(document: FrontMatterDocument, path: Path) -> bool:
            if document.get_type() != note_type or document.has_created():
                return False
            stat = path.stat()
            created = getattr(stat, "st_birthtime", None) or stat.st_mtime
            document.set_created(datetime.fromtimestamp(created))
            return True

        return await self.pipeline.run(root, self._markdown(), edit_front_matter(edit))

    async def add_calendar(self, year: int, month: int) -> BatchOutcome:
        """
        Append a month calendar to the monthly note ``<daily>/<YYYY>-<MM>.md``.

        Raises:
            OperationError: If the date is illegal or the monthly note does not exist
        """
        self.config.require_root()
        try:
            table = render_month_calendar(year, month)
        except ValueError as e:
            raise OperationError(str(e)) from e
        monthly_path = self.config.daily_dir / f"{year}-{month:02}.md"
        if not monthly_path.is_file():
            raise OperationError(f"Monthly note not found: {monthly_path}")

        content = await read_note(monthly_path)
        if table in content:
            logger.info(f"The monthly note \"{monthly_path}\" already has a calendar")
            return BatchOutcome()

        await write_note(monthly_path, f"{content}\n\n{table}\n")
        logger.info(f"The monthly note \"{monthly_path}\" has been updated")
        return BatchOutcome(affected=(monthly_path,))

    # Rename / remove

    async def rename_banner(self, old_name: str, new_name: str) -> BatchOutcome:
        """Point banners that use ``old_name`` at ``new_name``."""
        root = self.config.require_root()

        def edit(document: FrontMatterDocument, path: Path) -> bool:
            if document.get_banner() != old_name:
                return False
            document.set_banner(new_name)
            return True

        return await self.pipeline.run(root, self._markdown(), edit_front_matter(edit))

    async def remove_line(self, line: str) -> BatchOutcome:
        """Remove every line ending with ``line`` from all notes."""
        target = line.strip()
        if not target:
            raise OperationError("The line to remove must not be empty")
        root = self.config.require_root()
        return await self.pipeline.run(
            root, self._markdown(), rewrite_text(lambda content: remove_line_text(content, target))
        )

    async def remove_raindrop_notes(self) -> BatchOutcome:
        """Delete bookmark notes whose file name starts with the configured prefix."""
        self.config.require_root()
        prefix = self.config.raindrop_prefix
        if not prefix:
            raise ConfigError("The raindrop prefix is not set (use `nta config raindrop.prefix`)")
        raindrop_dir = self._require_dir(self.config.raindrop_dir, "raindrop")

        def bookmark(path: Path) -> bool:
            return path.suffix == ".md" and path.name.startswith(prefix)

        async def remove(path: Path) -> bool:
            await asyncio.to_thread(path.unlink)
            logger.info(f"Removed bookmark note \"{path}\"")
            return True

        return await self.pipeline.run(raindrop_dir, bookmark, remove)

    # Grab

    async def grab_apod(
        self, update_daily: bool = False, subtags: Iterable[str] | None = None
    ) -> BatchOutcome:
        """
        Create today's Astronomy Picture of the Day note.

        Raises:
            ApodError: If the API key is missing or the request fails
            UnknownMediaTypeError: If the media is neither image nor video
        """
        self.config.require_root()
        if not self.config.apod_key:
            raise ApodError("Illegal NASA Astronomy Picture of the Day API key")

        files_dir = self.config.files_dir
        apod_dir = self.config.apod_dir
        files_dir.mkdir(parents=True, exist_ok=True)
        apod_dir.mkdir(parents=True, exist_ok=True)

        async with ApodClient(self.config.apod_key, client=self.http_client) as client:
            info = await client.fetch_today()
            media_ref = await self._apod_media(client, info, files_dir)

        date_text = info.date.isoformat()
        file_stem = f"ISS.APoD.{info.date:%Y.%m.%d}"
        daily_path = self.config.daily_dir / f"{date_text}.md"
        link_daily = self._can_link_daily(update_daily, daily_path)

        metadata: dict[str, Any] = {
            "type": "issue",
            "name": info.title,
            "issue": "APoD",
            "date": date_text,
            "tags": ["issue/apod", *apod_tags(subtags)],
        }
        if self.config.apod_banner:
            metadata["banner"] = self.config.apod_banner
        if self.config.apod_icon:
            metadata["banner_icon"] = self.config.apod_icon

        parts = [
            f"[[{date_text}]]" if link_daily else date_text,
            f"# {info.title}",
            media_ref,
            f"**Explanation:** {info.explanation}",
        ]
        if info.copyright:
            parts.append(f"*Image copyright:* {info.copyright}©")
        body = "\n\n".join(parts) + "\n"

        note_path = apod_dir / f"{file_stem}.md"
        await write_note(note_path, FrontMatterDocument.new(metadata).embed(body))
        logger.info(f"The Astronomy Picture of the Day note \"{note_path}\" has been created")

        affected = [note_path]
        if link_daily:
            link = _daily_link(self.config.apod_prefix, file_stem, "Astronomy Picture of the Day")
            if await self._link_daily(daily_path, link, self.config.apod_marker):
                affected.append(daily_path)
        return BatchOutcome(affected=tuple(affected))

    async def _apod_media(self, client: ApodClient, info: ApodInfo, files_dir: Path) -> str:
        if info.media_type is MediaKind.IMAGE:
            suffix = PurePosixPath(urlparse(info.url).path).suffix
            target = files_dir / f"{uuid.uuid4()}{suffix}"
            await client.download(info.url, target)
            return f"![[{target.name}]]"
        if info.media_type is MediaKind.VIDEO:
            return VIDEO_EMBED.format(url=info.url)
        raise UnknownMediaTypeError(f"Unknown media type of the picture of {info.date}")

    async def grab_twir(self, issues: IssueRange, update_daily: bool = False) -> BatchOutcome:
        """
        Create This Week in Rust notes for one issue or an inclusive range.

        Every issue is grabbed independently; failures are aggregated.
        """
        self.config.require_root()
        twir_dir = self.config.twir_dir
        twir_dir.mkdir(parents=True, exist_ok=True)

        async with await TwirArchive.select(self.http_client) as archive:
            return await self.pipeline.run_each(
                issues,
                lambda number: self._grab_twir_note(archive, number, twir_dir, update_daily),
                describe=lambda number: f"This Week in Rust {number}",
            )

    async def _grab_twir_note(
        self, archive: TwirArchive, number: int, twir_dir: Path, update_daily: bool
    ) -> Path:
        issue = archive.find(number)
        markdown = await archive.fetch_markdown(issue)

        date_text = issue.published.date().isoformat()
        daily_path = self.config.daily_dir / f"{date_text}.md"
        link_daily = self._can_link_daily(update_daily, daily_path)

        metadata: dict[str, Any] = {
            "type": "issue",
            "issue": number,
            "date": date_text,
            "tags": ["rust", "issue/twir"],
            "aliases": [issue.title, f"TWiR {date_text} This Week in Rust {number}"],
            "url": issue.url,
        }
        if self.config.twir_banner:
            metadata["banner"] = self.config.twir_banner
        if self.config.twir_icon:
            metadata["banner_icon"] = self.config.twir_icon

        following = f"[[ISS.TWiR.{number + 1}|{number + 1}]] >>"
        if number > 1:
            navigation = f"<< [[ISS.TWiR.{number - 1}|{number - 1}]] | {following}"
        else:
            navigation = f"| {following}"
        day = f"[[{date_text}]]" if link_daily else date_text
        body = f"{navigation}\n\n# {day}: This Week in Rust {number}\n\n{markdown}"

        note_path = twir_dir / f"ISS.TWiR.{number}.md"
        await write_note(note_path, FrontMatterDocument.new(metadata).embed(body))
        logger.info(f"The This Week in Rust note \"{note_path}\" has been created")

        if link_daily:
            link = _daily_link(
                self.config.twir_prefix, f"ISS.TWiR.{number}", f"This Week in Rust {number}"
            )
            await self._link_daily(daily_path, link, self.config.twir_marker)
        return note_path

    def _can_link_daily(self, update_daily: bool, daily_path: Path) -> bool:
        if not update_daily:
            return False
        if not daily_path.is_file():
            logger.warning(f"Irrelevant daily path \"{daily_path}\"")
            return False
        return True

    async def _link_daily(self, daily_path: Path, link: str, marker: str | None) -> bool:
        content = await read_note(daily_path)
        updated = insert_daily_link(content, link, marker)
        if updated == content:
            return False
        await write_note(daily_path, updated)
        logger.info(f"The daily note \"{daily_path}\" has been updated")
        return True

    # Show

    async def list_twir_issues(self, last: bool = False) -> list[TwirIssue]:
        """Archive entries, newest first (only the newest with ``last``)."""
        async with await TwirArchive.select(self.http_client) as archive:
            if last:
                archive = archive.first()
            return list(archive)
