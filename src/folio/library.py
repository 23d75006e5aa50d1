from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from .book_io import BookState, BookStore, make_book_id
from .chapters import detect_chapters
from .decoder import DecodedDocument, decode_bytes, decode_file
from .layout import DEFAULT_PROFILE, LayoutProfile, orientation_aware_page_size
from .logging_utils import debug_log
from .pagination import paginate
from .repagination import RepaginationResult, Repaginator, needs_repagination
from .settings import ReaderSettings
from .tracker import ReadingPositionTracker


@dataclass(slots=True)
class Viewport:
    width: float = 390
    height: float = 844
    landscape: bool = False


@dataclass(slots=True)
class BookListing:
    id: str
    title: str
    author: str | None
    total_pages: int
    progress: float
    added_at: float
    last_read_at: float


def page_budget(content: str, font_size: float, viewport: Viewport, profile: LayoutProfile = DEFAULT_PROFILE) -> int:
    return orientation_aware_page_size(
        content,
        font_size,
        viewport.width,
        viewport.height,
        landscape=viewport.landscape,
        profile=profile,
    )


def build_book_state(
    document: DecodedDocument,
    *,
    font_size: float,
    viewport: Viewport,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> BookState:
    """Paginate and chapterize a decoded document into a fresh book."""
    budget = page_budget(document.content, font_size, viewport, profile)
    pages = paginate(document.content, budget)
    chapters = detect_chapters(document.content, pages)
    now = time.time()
    return BookState(
        id=make_book_id(document.title, document.content),
        title=document.title,
        author=document.author,
        content=document.content,
        pages=pages,
        chapters=chapters,
        chars_per_page=budget,
        source_format=document.source_format,
        added_at=now,
    )


def _store_document(
    store: BookStore,
    document: DecodedDocument,
    *,
    font_size: float,
    viewport: Viewport,
    profile: LayoutProfile,
) -> BookState:
    state = build_book_state(document, font_size=font_size, viewport=viewport, profile=profile)
    existing = store.load(state.id)
    if existing is not None:
        debug_log("library", f"{state.id} already imported; keeping saved position")
        return existing
    store.save(state)
    debug_log(
        "library",
        f"imported {state.id}: {len(state.content)} chars, {state.total_pages} pages, "
        f"{len(state.chapters)} chapters",
    )
    return state


def import_file(
    store: BookStore,
    path: Path,
    *,
    font_size: float = 16,
    viewport: Viewport | None = None,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> BookState:
    document = decode_file(path)
    return _store_document(
        store, document, font_size=font_size, viewport=viewport or Viewport(), profile=profile
    )


def import_bytes(
    store: BookStore,
    raw: bytes,
    filename: str,
    *,
    font_size: float = 16,
    viewport: Viewport | None = None,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> BookState:
    document = decode_bytes(raw, filename)
    return _store_document(
        store, document, font_size=font_size, viewport=viewport or Viewport(), profile=profile
    )


def list_books_sorted(store: BookStore, mode: str = "author") -> list[BookListing]:
    normalized_mode = mode.lower().strip()
    if normalized_mode not in {"author", "recent", "read"}:
        normalized_mode = "author"
    entries: list[tuple[tuple[object, ...], BookListing]] = []
    for state in store.load_all():
        author = state.author.strip() if state.author else None
        listing = BookListing(
            id=state.id,
            title=state.title,
            author=author,
            total_pages=state.total_pages,
            progress=state.progress,
            added_at=state.added_at,
            last_read_at=state.last_read_at,
        )
        normalized_author = author.casefold() if author else ""
        normalized_title = state.title.casefold()
        if normalized_mode == "recent":
            sort_key = (-state.added_at, 0 if author else 1, normalized_author, normalized_title, state.id)
        elif normalized_mode == "read":
            has_read = state.last_read_at > 0
            sort_key = (
                0 if has_read else 1,
                -state.last_read_at if has_read else 0,
                -state.added_at,
                normalized_title,
                state.id,
            )
        else:
            sort_key = (0 if author else 1, normalized_author, normalized_title, state.id)
        entries.append((sort_key, listing))
    entries.sort(key=lambda item: item[0])
    return [listing for _, listing in entries]


def delete_book(store: BookStore, book_id: str) -> bool:
    return store.delete(book_id)


def repaginate_book(
    state: BookState,
    font_size: float,
    viewport: Viewport,
    *,
    profile: LayoutProfile = DEFAULT_PROFILE,
    repaginator: Repaginator | None = None,
) -> RepaginationResult:
    """Rebuild the pages of ``state`` for a new layout; the offset is kept."""
    budget = page_budget(state.content, font_size, viewport, profile)
    runner = repaginator or Repaginator(profile)
    result = runner.run(state.content, budget, state.character_offset, previous_pages=state.pages)
    state.pages = result.pages
    state.chapters = result.chapters
    state.chars_per_page = result.chars_per_page
    return result


def repaginate_library(
    store: BookStore,
    font_size: float,
    viewport: Viewport,
    *,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> dict[str, int]:
    """
    Repaginate every stored book whose pages no longer fit the layout.

    Returns the new page count for each book that changed.
    """
    updated: dict[str, int] = {}
    repaginator = Repaginator(profile)
    for state in list(store.load_all()):
        budget = page_budget(state.content, font_size, viewport, profile)
        if budget == state.chars_per_page and not needs_repagination(state.content, state.pages, budget):
            continue
        result = repaginate_book(state, font_size, viewport, profile=profile, repaginator=repaginator)
        store.save(state)
        updated[state.id] = len(result.pages)
    debug_log("library", f"repaginated {len(updated)} book(s) for font size {font_size}")
    return updated


def open_tracker(
    state: BookState,
    settings: ReaderSettings,
    **kwargs,
) -> ReadingPositionTracker:
    return ReadingPositionTracker(
        state.content,
        pages=state.pages,
        chapters=state.chapters,
        character_offset=state.character_offset,
        speech_rate=settings.speech_rate,
        language=settings.speech_language,
        **kwargs,
    )


def record_position(state: BookState, tracker: ReadingPositionTracker) -> None:
    state.character_offset = tracker.character_offset
    state.pages = tracker.pages
    state.chapters = tracker.chapters
    state.last_read_at = time.time()


__all__ = [
    "BookListing",
    "Viewport",
    "build_book_state",
    "delete_book",
    "import_bytes",
    "import_file",
    "list_books_sorted",
    "open_tracker",
    "page_budget",
    "record_position",
    "repaginate_book",
    "repaginate_library",
]
