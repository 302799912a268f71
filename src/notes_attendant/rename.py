"""Opaque identifiers for attachment files and the references to them."""

import asyncio
import logging
import re
import uuid
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from .pipeline import BatchOutcome, TransformPipeline, walk_files

logger = logging.getLogger(__name__)

UUID_STEM_PATTERN = re.compile(
    r"^[\dA-Fa-f]{8}-[\dA-Fa-f]{4}-[\dA-Fa-f]{4}-[\dA-Fa-f]{4}-[\dA-Fa-f]{12}$"
)


def is_uuid_stem(stem: str) -> bool:
    """Whether a file stem already has the canonical UUID shape."""
    return UUID_STEM_PATTERN.match(stem) is not None


@dataclass(slots=True, frozen=True)
class RenameRecord:
    """Planned rename of one attachment file."""

    old_path: Path
    old_name: str
    new_path: Path
    new_name: str

    @classmethod
    def for_path(cls, path: Path, identifier: str) -> "RenameRecord":
        new_name = f"{identifier}{path.suffix}"
        return cls(
            old_path=path,
            old_name=path.name,
            new_path=path.with_name(new_name),
            new_name=new_name,
        )


class RenameMap(Mapping[str, RenameRecord]):
    """Read-only mapping from bare old file name to its rename record."""

    def __init__(self, records: Mapping[str, RenameRecord]):
        self._records = MappingProxyType(dict(records))
        # Longest names first so a name never shadows one that contains it.
        names = sorted(self._records, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(name) for name in names)) if names else None

    def __getitem__(self, name: str) -> RenameRecord:
        return self._records[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def apply_to_text(self, text: str) -> tuple[str, bool]:
        """
        Replace every occurrence of an old file name with its new name.

        Replacement is a single pass, so a new name is never rewritten again.

        Returns:
            Tuple of (updated text, whether anything was replaced)
        """
        if self._pattern is None:
            return text, False

        updated, count = self._pattern.subn(lambda m: self._records[m.group(0)].new_name, text)
        return updated, count > 0


def apply_to_text(text: str, rename_map: RenameMap) -> tuple[str, bool]:
    return rename_map.apply_to_text(text)


def build_rename_map(
    attachments_dir: Path,
    is_already_opaque: Callable[[str], bool] = is_uuid_stem,
    recursive: bool = True,
    new_identifier: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> RenameMap:
    """
    Plan new opaque names for attachments that do not have one yet.

    Args:
        attachments_dir: Directory holding attachment files
        is_already_opaque: Predicate on the file stem; matching files are kept
        recursive: Also plan renames for files in subdirectories
        new_identifier: Factory for fresh identifiers

    Returns:
        Immutable map keyed by the bare old file name
    """
    if recursive:
        files = list(walk_files(attachments_dir))
    else:
        files = [path for path in attachments_dir.iterdir() if path.is_file()]

    taken = {path.name for path in files}
    records: dict[str, RenameRecord] = {}

    for path in sorted(files):
        if is_already_opaque(path.stem):
            continue
        if path.name in records:
            # Notes refer to attachments by bare name, so a second file with
            # the same name cannot be told apart.
            logger.warning(
                f"Skipping {path}: name already planned for {records[path.name].old_path}"
            )
            continue

        record = RenameRecord.for_path(path, new_identifier())
        while record.new_name in taken:
            logger.debug(f"Identifier collision for {record.new_name}, regenerating")
            record = RenameRecord.for_path(path, new_identifier())

        taken.add(record.new_name)
        records[path.name] = record

    logger.info(f"Planned {len(records)} attachment renames in {attachments_dir}")
    return RenameMap(records)


async def rename_files(rename_map: RenameMap, pipeline: TransformPipeline) -> BatchOutcome:
    """Physically rename every planned file."""

    async def rename(record: RenameRecord) -> Path:
        await asyncio.to_thread(record.old_path.rename, record.new_path)
        logger.info(f"Renamed \"{record.old_path}\" to \"{record.new_name}\"")
        return record.new_path

    return await pipeline.run_each(
        rename_map.values(), rename, describe=lambda record: str(record.old_path)
    )
