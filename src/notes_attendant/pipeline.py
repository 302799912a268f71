"""Concurrent per-file transformation over a vault directory tree."""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import aiofiles

if TYPE_CHECKING:
    from .config import AttendantConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Predicate = Callable[[Path], bool]
# A transform returns True when it changed (or removed) the file it was given.
Transform = Callable[[Path], Awaitable[bool | None]]


class CollaboratorError(Exception):
    """Base exception for external services an operation depends on."""

    pass


@dataclass(slots=True, frozen=True)
class Failure:
    """One unit of work that failed, and why."""

    subject: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.subject}: {self.error}"


class PartialFailureError(Exception):
    """Raised when one or more units of a batch failed."""

    def __init__(self, failures: Iterable[Failure]):
        self.failures = list(failures)
        if not self.failures:
            raise ValueError("PartialFailureError requires at least one failure")
        super().__init__(f"{len(self.failures)} operation(s) failed")


@dataclass(slots=True, frozen=True)
class BatchOutcome:
    """Result of one pipeline run: what changed and what failed."""

    affected: tuple[Path, ...] = ()
    failures: tuple[Failure, ...] = ()

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def merge(self, other: "BatchOutcome") -> "BatchOutcome":
        return BatchOutcome(self.affected + other.affected, self.failures + other.failures)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailureError(self.failures)


async def read_note(path: Path) -> str:
    """Read a note, keeping its line endings untouched."""
    async with aiofiles.open(path, encoding="utf-8", newline="") as f:
        return await f.read()


async def write_note(path: Path, content: str) -> None:
    """Write a note, keeping its line endings untouched."""
    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)


def has_extension(*extensions: str) -> Predicate:
    """Predicate selecting files by (case-sensitive) extension, e.g. ``".md"``."""
    wanted = frozenset(extensions)

    def predicate(path: Path) -> bool:
        return path.suffix in wanted

    return predicate


def rewrite_text(edit: Callable[[str], str]) -> Transform:
    """
    Build a transform from a pure text edit.

    The file is rewritten only when the edit changed its content.
    """

    async def transform(path: Path) -> bool:
        content = await read_note(path)
        updated = edit(content)
        if updated == content:
            return False
        await write_note(path, updated)
        logger.info(f"The note \"{path}\" has been updated")
        return True

    return transform


def walk_files(root: Path, predicate: Predicate | None = None) -> Iterator[Path]:
    """
    Yield every regular file under ``root`` accepted by ``predicate``.

    Symbolic links to directories are followed; each real directory is
    visited once so link cycles terminate.
    """
    seen: set[Path] = set()
    for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
        real = Path(dirpath).resolve()
        if real in seen:
            dirnames[:] = []
            continue
        seen.add(real)

        for name in filenames:
            path = Path(dirpath) / name
            if not path.is_file():
                continue
            if predicate is None or predicate(path):
                yield path


class TransformPipeline:
    """Runs independent, possibly failing units of work with bounded concurrency."""

    def __init__(self, max_concurrency: int = 32):
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")
        self.max_concurrency = max_concurrency

    @classmethod
    def from_config(cls, config: "AttendantConfig") -> "TransformPipeline":
        return cls(config.max_concurrency)

    async def run(self, root: Path, predicate: Predicate, transform: Transform) -> BatchOutcome:
        """
        Apply ``transform`` to every file under ``root`` selected by ``predicate``.

        Every selected file is processed even if others fail. Failures are
        reported in completion order; nothing is retried or rolled back.

        Args:
            root: Directory to traverse recursively
            predicate: File selection predicate
            transform: Async per-file transformation

        Returns:
            Outcome listing changed files and failures
        """
        paths = list(walk_files(root, predicate))
        logger.debug(f"Selected {len(paths)} files under {root}")

        async def unit(path: Path) -> bool | None:
            # Gone since the listing: no longer a candidate.
            if not path.is_file():
                logger.debug(f"Skipping vanished file {path}")
                return False
            logger.debug(f"Start processing of the file \"{path}\"")
            changed = await transform(path)
            logger.debug(f"Finish processing of the file \"{path}\"")
            return changed

        return await self.run_each(paths, unit, describe=str)

    async def run_each(
        self,
        items: Iterable[T],
        unit: Callable[[T], Awaitable[Any]],
        describe: Callable[[T], str] = str,
    ) -> BatchOutcome:
        """
        Run ``unit`` once per item concurrently and collect the outcome.

        A unit reports what it changed by returning a path, or True when the
        item itself is the changed path.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        affected: list[Path] = []
        failures: list[Failure] = []

        async def guarded(item: T) -> None:
            async with semaphore:
                try:
                    result = await unit(item)
                except Exception as e:
                    logger.debug(f"Failed to process {describe(item)}: {e}")
                    failures.append(Failure(describe(item), e))
                    return
            if isinstance(result, Path):
                affected.append(result)
            elif result is True and isinstance(item, Path):
                affected.append(item)

        await asyncio.gather(*(guarded(item) for item in items))

        if failures:
            logger.warning(f"{len(failures)} unit(s) failed")
        return BatchOutcome(tuple(affected), tuple(failures))
