"""Daily and monthly note helpers."""

import calendar
from datetime import date

from .frontmatter import split_lines

WEEKDAY_HEADER = "| Mo | Tu | We | Th | Fr | Sa | Su |"
WEEKDAY_ALIGN = "|:--:|:--:|:--:|:--:|:--:|:--:|:--:|"
EMPTY_CELL = "    |"


def insert_daily_link(content: str, link: str, marker: str | None = None) -> str:
    """
    Add a link line to a daily note.

    The link goes right after the first line equal to ``marker``; without a
    marker (or when it is missing) it is appended at the end. A note that
    already contains the link line is returned unchanged.
    """
    lines = split_lines(content)
    if any(line.rstrip("\r\n") == link for line in lines):
        return content

    newline = "\r\n" if lines and lines[0].endswith("\r\n") else "\n"

    if marker is not None:
        for index, line in enumerate(lines):
            if line.rstrip("\r\n") == marker:
                if not line.endswith(("\n", "\r")):
                    lines[index] = line + newline
                lines.insert(index + 1, link + newline)
                return "".join(lines)

    if lines and not lines[-1].endswith(("\n", "\r")):
        lines[-1] += newline
    lines.append(link + newline)
    return "".join(lines)


def render_month_calendar(year: int, month: int) -> str:
    """
    Render a Monday-first table linking every day of the month.

    Each cell is a ``[[YYYY-MM-DD\\|D]]`` link (the pipe is escaped for
    Markdown tables).

    Raises:
        ValueError: If year or month are out of range
    """
    if year <= 0 or not 1 <= month <= 12:
        raise ValueError(f"Illegal date {year}-{month}")

    rows = [WEEKDAY_HEADER, WEEKDAY_ALIGN]
    for week in calendar.Calendar(firstweekday=calendar.MONDAY).monthdayscalendar(year, month):
        cells = []
        for day in week:
            if day == 0:
                cells.append(EMPTY_CELL)
            else:
                cells.append(f" [[{date(year, month, day):%Y-%m-%d}\\|{day}]] |")
        rows.append("|" + "".join(cells))
    return "\n".join(rows)
