from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Sequence

from .chapters import Chapter, detect_chapters
from .layout import DEFAULT_PROFILE, LayoutProfile, page_size_for_content
from .logging_utils import debug_log
from .pagination import Page, closest_page, find_page, paginate
from .tracker import ReadingPositionTracker

# Average page size may drift this far from the expected budget before a
# repagination is worth doing.
REPAGINATION_THRESHOLD = 0.25


@dataclass
class RepaginationResult:
    pages: list[Page]
    chapters: list[Chapter]
    current_page: int
    chars_per_page: int
    previous_page_count: int


def resolve_page(pages: Sequence[Page], offset: int) -> int:
    """
    Page number for ``offset``: the page whose range contains it, otherwise
    the page whose start is closest. Offsets at or past the end map to the
    last page.
    """
    if not pages:
        return 1
    page = find_page(pages, offset)
    if page is None:
        if offset >= pages[-1].end:
            return pages[-1].number
        page = closest_page(pages, offset)
    return page.number if page is not None else 1


def repaginate(
    content: str,
    chars_per_page: int,
    character_offset: int,
    *,
    previous_pages: Sequence[Page] | None = None,
    cancel_event: threading.Event | None = None,
) -> RepaginationResult:
    """Rebuild pages from scratch and map the unchanged offset onto them."""
    pages = paginate(content, chars_per_page, cancel_event=cancel_event)
    chapters = detect_chapters(content, pages)
    current = resolve_page(pages, character_offset)
    previous_count = len(previous_pages) if previous_pages is not None else 0
    debug_log(
        "repagination",
        f"budget {chars_per_page}: {previous_count} -> {len(pages)} pages, "
        f"offset {character_offset} on page {current}",
    )
    return RepaginationResult(
        pages=pages,
        chapters=chapters,
        current_page=current,
        chars_per_page=chars_per_page,
        previous_page_count=previous_count,
    )


def needs_repagination(
    content: str,
    pages: Sequence[Page],
    expected_chars_per_page: int,
    *,
    threshold: float = REPAGINATION_THRESHOLD,
) -> bool:
    if not pages:
        return True
    average = len(content) / len(pages)
    return abs(expected_chars_per_page - average) > expected_chars_per_page * threshold


class RepaginationBusyError(RuntimeError):
    """Raised when a repagination of the same content is already running."""


class Repaginator:
    """
    Runs repagination for one book, never two at once.

    A second call while one is in flight raises :class:`RepaginationBusyError`;
    callers debounce rapid triggers such as a font-size slider.
    """

    def __init__(self, profile: LayoutProfile = DEFAULT_PROFILE) -> None:
        self.profile = profile
        self._running = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._running.locked()

    def run(
        self,
        content: str,
        chars_per_page: int,
        character_offset: int,
        *,
        previous_pages: Sequence[Page] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RepaginationResult:
        if not self._running.acquire(blocking=False):
            raise RepaginationBusyError("Repagination already in progress")
        try:
            return repaginate(
                content,
                chars_per_page,
                character_offset,
                previous_pages=previous_pages,
                cancel_event=cancel_event,
            )
        finally:
            self._running.release()

    def apply_viewport(
        self,
        tracker: ReadingPositionTracker,
        font_size: float,
        viewport_width: float,
        viewport_height: float,
        *,
        cancel_event: threading.Event | None = None,
    ) -> RepaginationResult:
        """Recompute the budget for a new viewport and re-anchor ``tracker``."""
        budget = page_size_for_content(
            tracker.content,
            font_size,
            viewport_width,
            viewport_height,
            profile=self.profile,
        )
        result = self.run(
            tracker.content,
            budget,
            tracker.character_offset,
            previous_pages=tracker.pages,
            cancel_event=cancel_event,
        )
        tracker.rebind(result.pages, result.chapters)
        return result


__all__ = [
    "REPAGINATION_THRESHOLD",
    "RepaginationBusyError",
    "RepaginationResult",
    "Repaginator",
    "needs_repagination",
    "repaginate",
    "resolve_page",
]
