from __future__ import annotations

import math
import re
import threading
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from .logging_utils import debug_log

PLACEHOLDER_TEXT = "No content available"
# Where inside an oversized paragraph the search for a break point begins.
BREAK_SEARCH_START = 0.8
_SENTENCE_BREAKS = frozenset(".!?;:," "。！？；：，、")
_TRAILING_SPACE = frozenset(" \t　")
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t\r\f\v　]*\n\s*")


class PaginationCancelled(RuntimeError):
    """Raised when segmentation is cancelled through its cancel event."""


@dataclass(frozen=True)
class Page:
    """
    One screenful of content: the half-open range ``[start, end)``.

    ``hard_cut`` marks a page whose end fell on the character budget because
    no punctuation was found near it. A placeholder page stands in for empty
    content and carries display text that is not a slice of the book.
    """

    number: int
    start: int
    end: int
    text: str
    hard_cut: bool = False
    placeholder: bool = False

    @property
    def length(self) -> int:
        return self.end - self.start

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "number": self.number,
            "start": self.start,
            "end": self.end,
        }
        if self.hard_cut:
            payload["hard_cut"] = True
        if self.placeholder:
            payload["placeholder"] = True
        return payload


def _check_cancel(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PaginationCancelled("Pagination cancelled")


def _paragraph_spans(content: str) -> list[tuple[int, int]]:
    """Blank-line delimited units; each keeps its trailing separator."""
    spans: list[tuple[int, int]] = []
    cursor = 0
    for match in _PARAGRAPH_BREAK_RE.finditer(content):
        spans.append((cursor, match.end()))
        cursor = match.end()
    if cursor < len(content):
        spans.append((cursor, len(content)))
    return spans


def _break_index(content: str, start: int, budget: int) -> int | None:
    window_start = start + math.floor(budget * BREAK_SEARCH_START)
    limit = start + budget
    for idx in range(limit - 1, window_start - 1, -1):
        if content[idx] in _SENTENCE_BREAKS:
            cut = idx + 1
            while cut < limit and content[cut] in _TRAILING_SPACE:
                cut += 1
            return cut
    return None


def _split_long_paragraph(
    content: str,
    start: int,
    end: int,
    budget: int,
    cancel_event: threading.Event | None,
) -> list[tuple[int, bool]]:
    pieces: list[tuple[int, bool]] = []
    cursor = start
    while end - cursor > budget:
        _check_cancel(cancel_event)
        cut = _break_index(content, cursor, budget)
        hard_cut = cut is None
        if cut is None:
            cut = cursor + budget
        pieces.append((cut - cursor, hard_cut))
        cursor = cut
    if end > cursor:
        pieces.append((end - cursor, False))
    return pieces


def segment_lengths(
    content: str,
    chars_per_page: int,
    *,
    cancel_event: threading.Event | None = None,
) -> list[tuple[int, bool]]:
    """
    Return ``(length, hard_cut)`` for each page-sized segment, in order.

    Segment lengths always sum to ``len(content)``.
    """
    if chars_per_page <= 0:
        raise ValueError(f"chars_per_page must be positive, got {chars_per_page}")
    if len(content) <= chars_per_page:
        return [(len(content), False)]

    segments: list[tuple[int, bool]] = []
    current = 0
    for start, end in _paragraph_spans(content):
        _check_cancel(cancel_event)
        size = end - start
        if current + size <= chars_per_page:
            current += size
            continue
        if current:
            segments.append((current, False))
            current = 0
        if size > chars_per_page:
            # the tail of a split paragraph keeps accumulating like any paragraph
            *full_pages, (tail, _) = _split_long_paragraph(
                content, start, end, chars_per_page, cancel_event
            )
            segments.extend(full_pages)
            current = tail
        else:
            current = size
    if current:
        segments.append((current, False))
    return segments


def paginate(
    content: str,
    chars_per_page: int,
    *,
    cancel_event: threading.Event | None = None,
) -> list[Page]:
    """Partition ``content`` into pages of at most ``chars_per_page`` characters."""
    if not content.strip():
        return [
            Page(
                number=1,
                start=0,
                end=len(content),
                text=PLACEHOLDER_TEXT,
                placeholder=True,
            )
        ]
    pages: list[Page] = []
    offset = 0
    for number, (length, hard_cut) in enumerate(
        segment_lengths(content, chars_per_page, cancel_event=cancel_event), start=1
    ):
        end = offset + length
        pages.append(
            Page(number=number, start=offset, end=end, text=content[offset:end], hard_cut=hard_cut)
        )
        offset = end
    hard_cuts = sum(1 for page in pages if page.hard_cut)
    debug_log(
        "pagination",
        f"{len(content)} chars / budget {chars_per_page} -> {len(pages)} pages"
        + (f" ({hard_cuts} hard cuts)" if hard_cuts else ""),
    )
    return pages


def find_page(pages: Sequence[Page], offset: int) -> Page | None:
    """Return the page whose range contains ``offset``, if any."""
    if not pages:
        return None
    starts = [page.start for page in pages]
    idx = bisect_right(starts, offset) - 1
    if idx < 0:
        return None
    page = pages[idx]
    return page if page.contains(offset) else None


def closest_page(pages: Sequence[Page], offset: int) -> Page | None:
    """Return the page with the start nearest to ``offset`` (first on ties)."""
    best: Page | None = None
    best_distance = 0
    for page in pages:
        distance = abs(offset - page.start)
        if best is None or distance < best_distance:
            best = page
            best_distance = distance
    return best


def page_number_for_offset(pages: Sequence[Page], offset: int) -> int:
    if not pages:
        return 1
    if offset >= pages[-1].end:
        return pages[-1].number
    page = find_page(pages, offset) or closest_page(pages, offset)
    return page.number if page is not None else 1


def pages_cover(content: str, pages: Sequence[Page]) -> bool:
    """True when ``pages`` partition ``content`` exactly with numbers 1..N."""
    if not pages:
        return False
    if pages[0].start != 0 or pages[-1].end != len(content):
        return False
    for idx, page in enumerate(pages):
        if page.number != idx + 1 or page.end < page.start:
            return False
        if idx and pages[idx - 1].end != page.start:
            return False
    return True


def pages_from_payload(content: str, payload: Iterable[Mapping[str, object]]) -> list[Page] | None:
    """Rebuild pages from stored ranges, taking text from ``content``."""
    pages: list[Page] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            return None
        number = entry.get("number")
        start = entry.get("start")
        end = entry.get("end")
        if not isinstance(number, int) or not isinstance(start, int) or not isinstance(end, int):
            return None
        placeholder = entry.get("placeholder") is True
        pages.append(
            Page(
                number=number,
                start=start,
                end=end,
                text=PLACEHOLDER_TEXT if placeholder else content[start:end],
                hard_cut=entry.get("hard_cut") is True,
                placeholder=placeholder,
            )
        )
    if not pages_cover(content, pages):
        return None
    return pages


__all__ = [
    "BREAK_SEARCH_START",
    "PLACEHOLDER_TEXT",
    "Page",
    "PaginationCancelled",
    "closest_page",
    "find_page",
    "page_number_for_offset",
    "pages_cover",
    "pages_from_payload",
    "paginate",
    "segment_lengths",
]
