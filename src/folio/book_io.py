from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from .chapters import Chapter, detect_chapters
from .logging_utils import debug_log
from .pagination import Page, page_number_for_offset, pages_from_payload, paginate
from .text import first_n_units

BOOK_STATE_FILENAME = ".folio-book.json"
BOOK_STATE_VERSION = 1
DEFAULT_CHARS_PER_PAGE = 1500
BOOKMARK_LABEL_UNITS = 12
AUTO_BOOKMARK_ID = "auto"


@dataclass
class Bookmark:
    id: str
    offset: int
    note: str | None = None
    created_at: float = 0.0

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "offset": self.offset,
            "note": self.note,
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Bookmark | None":
        if not isinstance(payload, Mapping):
            return None
        bookmark_id = payload.get("id")
        offset = payload.get("offset")
        if not isinstance(bookmark_id, str) or not bookmark_id.strip():
            return None
        if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
            return None
        note = payload.get("note")
        created_at = payload.get("created_at")
        return cls(
            id=bookmark_id,
            offset=offset,
            note=note if isinstance(note, str) else None,
            created_at=float(created_at) if isinstance(created_at, (int, float)) else 0.0,
        )


@dataclass
class Highlight:
    id: str
    start: int
    end: int
    text: str
    note: str | None = None
    created_at: float = 0.0

    def as_payload(self) -> dict[str, object]:
        return {
            "id": self.id,
            "start": self.start,
            "end": self.end,
            "text": self.text,
            "note": self.note,
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Highlight | None":
        if not isinstance(payload, Mapping):
            return None
        highlight_id = payload.get("id")
        start = payload.get("start")
        end = payload.get("end")
        text = payload.get("text")
        if not isinstance(highlight_id, str) or not isinstance(text, str):
            return None
        if not isinstance(start, int) or not isinstance(end, int) or start < 0 or end < start:
            return None
        note = payload.get("note")
        created_at = payload.get("created_at")
        return cls(
            id=highlight_id,
            start=start,
            end=end,
            text=text,
            note=note if isinstance(note, str) else None,
            created_at=float(created_at) if isinstance(created_at, (int, float)) else 0.0,
        )


@dataclass
class BookState:
    """
    Everything persisted for one book.

    ``progress`` is never stored: it is re-derived from ``character_offset``
    and the content length whenever it is needed.
    """

    id: str
    title: str
    author: str | None
    content: str
    pages: list[Page]
    chapters: list[Chapter]
    character_offset: int = 0
    chars_per_page: int = DEFAULT_CHARS_PER_PAGE
    source_format: str = "txt"
    bookmarks: list[Bookmark] = field(default_factory=list)
    highlights: list[Highlight] = field(default_factory=list)
    added_at: float = 0.0
    last_read_at: float = 0.0

    @property
    def progress(self) -> float:
        if not self.content:
            return 0.0
        return self.character_offset / len(self.content)

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    @property
    def current_page(self) -> int:
        return page_number_for_offset(self.pages, self.character_offset)

    def summary(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "total_pages": self.total_pages,
            "current_page": self.current_page,
            "character_offset": self.character_offset,
            "progress": self.progress,
            "chapters": len(self.chapters),
            "added_at": self.added_at,
            "last_read_at": self.last_read_at,
        }

    def add_bookmark(self, offset: int, note: str | None = None) -> Bookmark:
        offset = max(0, min(len(self.content), offset))
        if note is None:
            note = first_n_units(self.content[offset:], BOOKMARK_LABEL_UNITS) or None
        bookmark = Bookmark(id=uuid.uuid4().hex, offset=offset, note=note, created_at=time.time())
        self.bookmarks.append(bookmark)
        return bookmark

    def set_auto_bookmark(self, offset: int) -> Bookmark:
        """Replace the single automatic bookmark that marks the last stop."""
        self.bookmarks = [b for b in self.bookmarks if b.id != AUTO_BOOKMARK_ID]
        offset = max(0, min(len(self.content), offset))
        bookmark = Bookmark(
            id=AUTO_BOOKMARK_ID,
            offset=offset,
            note=first_n_units(self.content[offset:], BOOKMARK_LABEL_UNITS) or None,
            created_at=time.time(),
        )
        self.bookmarks.append(bookmark)
        return bookmark

    def remove_bookmark(self, bookmark_id: str) -> bool:
        remaining = [b for b in self.bookmarks if b.id != bookmark_id]
        removed = len(remaining) != len(self.bookmarks)
        self.bookmarks = remaining
        return removed

    def add_highlight(self, start: int, end: int, note: str | None = None) -> Highlight:
        length = len(self.content)
        start = max(0, min(length, start))
        end = max(start, min(length, end))
        highlight = Highlight(
            id=uuid.uuid4().hex,
            start=start,
            end=end,
            text=self.content[start:end],
            note=note,
            created_at=time.time(),
        )
        self.highlights.append(highlight)
        return highlight

    def remove_highlight(self, highlight_id: str) -> bool:
        remaining = [h for h in self.highlights if h.id != highlight_id]
        removed = len(remaining) != len(self.highlights)
        self.highlights = remaining
        return removed


def _slugify_for_dirname(text: str) -> str:
    cleaned_chars: list[str] = []
    for ch in text.strip():
        if ch in {"/", "\\", ":", "*", "?", '"', "<", ">", "|"}:
            cleaned_chars.append("_")
            continue
        if ord(ch) < 32:
            continue
        if ch.isspace():
            cleaned_chars.append("_")
            continue
        cleaned_chars.append(ch)
    slug = "".join(cleaned_chars)
    slug = re.sub(r"_+", "_", slug).strip("._")
    return slug[:60]


def make_book_id(title: str, content: str) -> str:
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:10]
    slug = _slugify_for_dirname(title)
    return f"{slug}-{digest}" if slug else digest


def serialize_book_state(state: BookState) -> str:
    payload = {
        "version": BOOK_STATE_VERSION,
        "id": state.id,
        "title": state.title,
        "author": state.author,
        "source_format": state.source_format,
        "content": state.content,
        "chars_per_page": state.chars_per_page,
        "pages": [page.to_payload() for page in state.pages],
        "chapters": [chapter.to_payload() for chapter in state.chapters],
        "character_offset": state.character_offset,
        "bookmarks": [bookmark.as_payload() for bookmark in state.bookmarks],
        "highlights": [highlight.as_payload() for highlight in state.highlights],
        "added_at": state.added_at,
        "last_read_at": state.last_read_at,
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _load_entries(raw: object, loader) -> list:
    if not isinstance(raw, list):
        return []
    entries = []
    seen: set[str] = set()
    for item in raw:
        entry = loader(item)
        if entry is None or entry.id in seen:
            continue
        seen.add(entry.id)
        entries.append(entry)
    return entries


def deserialize_book_state(raw: str | bytes) -> BookState | None:
    """
    Rebuild a book from its serialized form.

    Page ranges that no longer partition the content are discarded and the
    book is repaginated with its stored budget; chapters are re-detected when
    missing. A stored ``progress`` value, if any, is ignored.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    book_id = payload.get("id")
    content = payload.get("content")
    if not isinstance(book_id, str) or not book_id or not isinstance(content, str):
        return None
    title = payload.get("title")
    author = payload.get("author")
    source_format = payload.get("source_format")
    chars_per_page = payload.get("chars_per_page")
    if not isinstance(chars_per_page, int) or chars_per_page <= 0:
        chars_per_page = DEFAULT_CHARS_PER_PAGE

    pages_payload = payload.get("pages")
    pages = pages_from_payload(content, pages_payload) if isinstance(pages_payload, list) else None
    repaginated = pages is None
    if pages is None:
        debug_log("book_io", f"{book_id}: stored pages invalid, repaginating at {chars_per_page}")
        pages = paginate(content, chars_per_page)

    chapters: list[Chapter] = []
    if not repaginated:
        chapters = _load_entries(payload.get("chapters"), Chapter.from_payload)
    if not chapters:
        chapters = detect_chapters(content, pages)

    offset = payload.get("character_offset")
    if not isinstance(offset, int) or isinstance(offset, bool):
        offset = 0
    offset = max(0, min(len(content), offset))
    added_at = payload.get("added_at")
    last_read_at = payload.get("last_read_at")
    return BookState(
        id=book_id,
        title=title if isinstance(title, str) and title else book_id,
        author=author if isinstance(author, str) and author else None,
        content=content,
        pages=pages,
        chapters=chapters,
        character_offset=offset,
        chars_per_page=chars_per_page,
        source_format=source_format if isinstance(source_format, str) else "txt",
        bookmarks=_load_entries(payload.get("bookmarks"), Bookmark.from_payload),
        highlights=_load_entries(payload.get("highlights"), Highlight.from_payload),
        added_at=float(added_at) if isinstance(added_at, (int, float)) else 0.0,
        last_read_at=float(last_read_at) if isinstance(last_read_at, (int, float)) else 0.0,
    )


class BookStore:
    """
    Opaque blob storage keyed by book id: one directory per book under
    ``root`` holding a single state file.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _book_dir(self, book_id: str) -> Path:
        if not book_id or "/" in book_id or "\\" in book_id or book_id in {".", ".."}:
            raise KeyError(book_id)
        return self.root / book_id

    def _state_path(self, book_id: str) -> Path:
        return self._book_dir(book_id) / BOOK_STATE_FILENAME

    def ids(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and (entry / BOOK_STATE_FILENAME).is_file()
        )

    def exists(self, book_id: str) -> bool:
        try:
            return self._state_path(book_id).is_file()
        except KeyError:
            return False

    def get(self, book_id: str) -> bytes | None:
        try:
            return self._state_path(book_id).read_bytes()
        except (KeyError, OSError):
            return None

    def set(self, book_id: str, blob: bytes) -> None:
        book_dir = self._book_dir(book_id)
        book_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=book_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(blob)
            os.replace(tmp_name, book_dir / BOOK_STATE_FILENAME)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, book_id: str) -> bool:
        try:
            book_dir = self._book_dir(book_id)
        except KeyError:
            return False
        if not book_dir.is_dir():
            return False
        shutil.rmtree(book_dir)
        return True

    def load(self, book_id: str) -> BookState | None:
        blob = self.get(book_id)
        if blob is None:
            return None
        return deserialize_book_state(blob)

    def save(self, state: BookState) -> None:
        self.set(state.id, serialize_book_state(state).encode("utf-8"))

    def load_all(self) -> Iterable[BookState]:
        for book_id in self.ids():
            state = self.load(book_id)
            if state is not None:
                yield state


__all__ = [
    "AUTO_BOOKMARK_ID",
    "BOOK_STATE_FILENAME",
    "BookState",
    "BookStore",
    "Bookmark",
    "DEFAULT_CHARS_PER_PAGE",
    "Highlight",
    "deserialize_book_state",
    "make_book_id",
    "serialize_book_state",
]
