"""Front matter parsing and re-embedding for vault notes.

A note may start with a YAML block fenced by ``---`` lines::

    ---
    type: issue
    banner: "![[old.png]]"
    ---
    # Title

The block is parsed into a plain mapping, mutated through the accessors below
and rendered back into the same place. Every line outside the block is kept
byte-for-byte; the block itself is re-rendered, so its key formatting and
comments are not preserved.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DELIMITER = "---"

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"
_LINE_END = re.compile(r"(?<=\n)")


class MetadataError(Exception):
    """Base exception for front matter problems."""

    pass


class MetadataNotFoundError(MetadataError):
    """Raised when a document has no front matter delimiter at all."""

    pass


class MalformedMetadataError(MetadataError):
    """Raised when the block is unterminated or is not valid YAML."""

    pass


class NotAMappingError(MetadataError):
    """Raised when mutating front matter whose root is not a mapping."""

    pass


class _MetadataLoader(yaml.SafeLoader):
    """Safe loader that keeps dates and timestamps as plain strings."""


class _MetadataDumper(yaml.SafeDumper):
    """Safe dumper matching ``_MetadataLoader``'s scalar resolution."""


for _cls, _base in ((_MetadataLoader, yaml.SafeLoader), (_MetadataDumper, yaml.SafeDumper)):
    _cls.yaml_implicit_resolvers = {
        first: [(tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG]
        for first, resolvers in _base.yaml_implicit_resolvers.items()
    }


def split_lines(text: str) -> list[str]:
    """
    Split text into lines after each line feed, keeping the endings.

    Unlike ``str.splitlines`` this does not break on Unicode line separators,
    which PyYAML writes raw inside quoted scalars.
    """
    lines = _LINE_END.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _line_content(line: str) -> str:
    return line.rstrip("\r\n")


def _line_ending(line: str) -> str:
    return line[len(_line_content(line)) :]


def _is_delimiter(line: str) -> bool:
    return _line_content(line) == DELIMITER


@dataclass(slots=True, frozen=True)
class FrontMatterSpan:
    """
    Half-open range of line indices holding the front matter block.

    ``start`` is the opening delimiter line, ``end - 1`` the closing one, so
    ``lines[start:end]`` is the whole block and ``lines[start + 1:end - 1]``
    is the YAML text.
    """

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end - self.start < 2:
            raise ValueError(f"Invalid front matter span [{self.start}, {self.end})")

    @property
    def inner(self) -> slice:
        return slice(self.start + 1, self.end - 1)

    def __contains__(self, index: object) -> bool:
        return isinstance(index, int) and self.start <= index < self.end


class LineBuffer:
    """A document as a list of lines, each keeping its own line ending."""

    def __init__(self, lines: list[str]):
        self.lines = lines

    @classmethod
    def from_text(cls, text: str) -> "LineBuffer":
        return cls(split_lines(text))

    def __len__(self) -> int:
        return len(self.lines)

    def __getitem__(self, index: int) -> str:
        return self.lines[index]

    def text(self) -> str:
        return "".join(self.lines)

    def find_span(self) -> FrontMatterSpan:
        """
        Locate the front matter block.

        Raises:
            MetadataNotFoundError: If no delimiter line exists
            MalformedMetadataError: If the opening delimiter is never closed
        """
        start: int | None = None
        for index, line in enumerate(self.lines):
            if not _is_delimiter(line):
                continue
            if start is None:
                start = index
            else:
                return FrontMatterSpan(start, index + 1)

        if start is None:
            raise MetadataNotFoundError("The note metadata was not found")
        raise MalformedMetadataError(f"Unterminated front matter opened at line {start + 1}")

    def splice(self, span: FrontMatterSpan, lines: list[str]) -> "LineBuffer":
        """Return a new buffer with ``lines`` in place of the span."""
        return LineBuffer(self.lines[: span.start] + lines + self.lines[span.end :])


def _render(metadata: Any) -> str:
    if metadata is None or metadata == {}:
        return ""
    return yaml.dump(
        metadata,
        Dumper=_MetadataDumper,
        default_flow_style=False,
        allow_unicode=True,
        sort_keys=False,
    )


def _scalar_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return None


class FrontMatterDocument:
    """Parsed front matter of one note, plus where it came from."""

    def __init__(self, metadata: Any, span: FrontMatterSpan | None = None):
        self.metadata = metadata
        self.span = span

    @classmethod
    def parse(cls, text: str) -> "FrontMatterDocument":
        """
        Parse the front matter block of a note.

        Args:
            text: Full note content

        Returns:
            Document holding the parsed mapping and its span

        Raises:
            MetadataNotFoundError: If the note has no delimiter line
            MalformedMetadataError: If the block is unterminated or invalid YAML
        """
        buffer = LineBuffer.from_text(text)
        span = buffer.find_span()
        raw = "".join(buffer.lines[span.inner])

        try:
            metadata = yaml.load(raw, Loader=_MetadataLoader)
        except yaml.YAMLError as e:
            raise MalformedMetadataError(f"Illegal note metadata: {e}") from e

        if metadata is None:
            metadata = {}
        return cls(metadata, span)

    @classmethod
    def new(cls, metadata: dict[str, Any] | None = None) -> "FrontMatterDocument":
        """Create front matter that is not yet part of any note."""
        return cls(dict(metadata or {}))

    def _mapping(self) -> dict[str, Any]:
        if not isinstance(self.metadata, dict):
            raise NotAMappingError(
                f"Front matter root is a {type(self.metadata).__name__}, not a mapping"
            )
        return self.metadata

    # Accessors

    def has(self, key: str) -> bool:
        return isinstance(self.metadata, dict) and key in self.metadata

    def get(self, key: str) -> Any:
        if not isinstance(self.metadata, dict):
            return None
        return self.metadata.get(key)

    def get_string(self, key: str) -> str | None:
        """Scalar value of a top-level key, or None if absent or not a scalar."""
        return _scalar_text(self.get(key))

    def get_string_list(self, key: str) -> list[str] | None:
        """Sequence of scalars under a top-level key, or None if the shape differs."""
        value = self.get(key)
        if not isinstance(value, list):
            return None
        items = [_scalar_text(item) for item in value]
        if any(item is None for item in items):
            return None
        return [item for item in items if item is not None]

    # Mutators

    def set(self, key: str, value: Any) -> None:
        self._mapping()[key] = value

    def set_string(self, key: str, value: str) -> None:
        self.set(key, value)

    def remove(self, key: str) -> bool:
        """Remove a top-level key; returns whether it was present."""
        mapping = self._mapping()
        if key not in mapping:
            return False
        del mapping[key]
        return True

    def append_to_list(self, key: str, value: str) -> bool:
        """Append to a sequence value, creating it if needed; skips duplicates."""
        mapping = self._mapping()
        current = mapping.get(key)
        if current is None:
            mapping[key] = [value]
            return True
        if not isinstance(current, list):
            current = [current]
            mapping[key] = current
        if value in current:
            return False
        current.append(value)
        return True

    # Note-specific helpers

    def get_type(self) -> str | None:
        return self.get_string("type")

    def get_tags(self) -> list[str]:
        tags = self.get_string_list("tags")
        if tags is not None:
            return tags
        single = self.get_string("tags")
        return [single] if single else []

    def get_banner(self) -> str | None:
        """Banner file name without the embed syntax around it."""
        banner = self.get_string("banner")
        if banner is None:
            return None
        return banner.strip().strip("![]")

    def set_banner(self, file_name: str) -> None:
        self.set_string("banner", f"![[{file_name}]]")

    def fix_banner(self) -> bool:
        """Normalize the banner to the ``![[name]]`` embed form."""
        banner = self.get_string("banner")
        name = self.get_banner()
        if banner is None or not name:
            return False
        fixed = f"![[{name}]]"
        if banner == fixed:
            return False
        self.set_string("banner", fixed)
        return True

    def has_created(self) -> bool:
        return self.has("created")

    def set_created(self, created: datetime) -> None:
        self.set_string("created", created.strftime("%Y-%m-%dT%H:%M:%S"))

    def remove_created(self) -> bool:
        if not self.has_created():
            return False
        return self.remove("created")

    # Rendering

    def render(self, newline: str = "\n") -> list[str]:
        """YAML lines of the block body, without delimiters."""
        rendered = split_lines(_render(self.metadata))
        return [line.removesuffix("\n") + newline for line in rendered]

    def embed(self, original: str) -> str:
        """
        Put the (possibly mutated) front matter back into a note.

        Only the lines between the delimiters of the original span are
        replaced. A document without a span gets a new block prepended.
        """
        buffer = LineBuffer.from_text(original)

        if self.span is None:
            block = [DELIMITER + "\n", *self.render(), DELIMITER + "\n"]
            return "".join(block) + original

        if self.span.end > len(buffer) or not (
            _is_delimiter(buffer[self.span.start]) and _is_delimiter(buffer[self.span.end - 1])
        ):
            raise MalformedMetadataError("Front matter span does not match the document")

        opening = buffer[self.span.start]
        closing = buffer[self.span.end - 1]
        newline = _line_ending(opening) or "\n"
        return buffer.splice(self.span, [opening, *self.render(newline), closing]).text()
