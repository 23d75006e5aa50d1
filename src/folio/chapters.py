from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .logging_utils import debug_log
from .pagination import Page, page_number_for_offset

_CJK_NUMERALS = "一二三四五六七八九十百千万零〇两"

# Checked in order; the first pattern that matches a line wins.
HEADING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^Chapter\s+(?P<num>\d+|[IVXLCDM]+)[:.\s]?\s*(?P<title>.*)$", re.IGNORECASE),
    re.compile(rf"^第\s*(?P<num>[{_CJK_NUMERALS}\d]+)\s*章[：:.\s]?\s*(?P<title>.*)$"),
    re.compile(rf"^第\s*(?P<num>[{_CJK_NUMERALS}\d]+)\s*节[：:.\s]?\s*(?P<title>.*)$"),
    re.compile(r"^(?P<num>\d+)\.\s+(?P<title>.+)$"),
    re.compile(r"^(?P<num>[IVXLCDM]+)\.\s+(?P<title>.+)$"),
)


@dataclass
class Chapter:
    id: str
    title: str
    start_offset: int
    start_page: int
    end_page: int | None = None
    heading: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "start_offset": self.start_offset,
            "start_page": self.start_page,
            "end_page": self.end_page,
            "heading": self.heading,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Chapter | None":
        if not isinstance(payload, Mapping):
            return None
        chapter_id = payload.get("id")
        title = payload.get("title")
        start_offset = payload.get("start_offset")
        start_page = payload.get("start_page")
        if not isinstance(chapter_id, str) or not isinstance(title, str):
            return None
        if not isinstance(start_offset, int) or not isinstance(start_page, int):
            return None
        end_page = payload.get("end_page")
        heading = payload.get("heading")
        return cls(
            id=chapter_id,
            title=title,
            start_offset=start_offset,
            start_page=start_page,
            end_page=end_page if isinstance(end_page, int) else None,
            heading=heading if isinstance(heading, str) else None,
        )


def _iter_stripped_lines(content: str) -> Iterable[tuple[str, int]]:
    """Yield ``(stripped_line, offset_of_first_visible_char)`` for non-blank lines."""
    cursor = 0
    for raw in content.split("\n"):
        line_start = cursor
        cursor += len(raw) + 1
        stripped = raw.strip()
        if not stripped:
            continue
        leading = len(raw) - len(raw.lstrip())
        yield stripped, line_start + leading


def match_heading(line: str) -> re.Match[str] | None:
    for pattern in HEADING_PATTERNS:
        match = pattern.match(line)
        if match:
            return match
    return None


def detect_chapters(content: str, pages: Sequence[Page]) -> list[Chapter]:
    """
    Find heading lines and map each to its offset and starting page.

    Offsets come from the line scan itself, so a heading whose text repeats
    later in the body still resolves to the line that matched.
    """
    chapters: list[Chapter] = []
    for line, offset in _iter_stripped_lines(content):
        match = match_heading(line)
        if match is None:
            continue
        index = len(chapters) + 1
        title = (match.group("title") or "").strip() or line
        chapters.append(
            Chapter(
                id=f"chapter-{index}",
                title=title,
                start_offset=offset,
                start_page=page_number_for_offset(pages, offset),
                heading=line,
            )
        )

    last_page = pages[-1].number if pages else 1
    if not chapters:
        chapters.append(
            Chapter(id="chapter-1", title="Chapter 1", start_offset=0, start_page=1)
        )
    for current, following in zip(chapters, chapters[1:]):
        current.end_page = following.start_page - 1
    chapters[-1].end_page = last_page
    debug_log("chapters", f"detected {len(chapters)} chapter(s): {[c.title for c in chapters]}")
    return chapters


def chapter_for_page(chapters: Sequence[Chapter], page_number: int) -> Chapter | None:
    for chapter in chapters:
        if page_number >= chapter.start_page and (
            chapter.end_page is None or page_number <= chapter.end_page
        ):
            return chapter
    return chapters[0] if chapters else None


def chapter_for_offset(chapters: Sequence[Chapter], offset: int) -> Chapter | None:
    """Return the last chapter starting at or before ``offset``."""
    found: Chapter | None = None
    for chapter in chapters:
        if chapter.start_offset <= offset:
            found = chapter
        else:
            break
    if found is None and chapters:
        return chapters[0]
    return found


def find_chapter(chapters: Sequence[Chapter], chapter_id: str) -> Chapter | None:
    for chapter in chapters:
        if chapter.id == chapter_id:
            return chapter
    return None


__all__ = [
    "Chapter",
    "HEADING_PATTERNS",
    "chapter_for_offset",
    "chapter_for_page",
    "detect_chapters",
    "find_chapter",
    "match_heading",
]
