from __future__ import annotations

import json
from pathlib import Path

from folio.book_io import (
    AUTO_BOOKMARK_ID,
    BOOK_STATE_FILENAME,
    BookState,
    BookStore,
    deserialize_book_state,
    make_book_id,
    serialize_book_state,
)
from folio.chapters import detect_chapters
from folio.pagination import paginate

CONTENT = (
    "Chapter 1: Morning\n\n"
    + "The kettle whistled while the town woke up. " * 30
    + "\n\nChapter 2: Evening\n\n"
    + "Lamps came on one by one along the harbour. " * 30
)


def _state(offset: int = 0) -> BookState:
    pages = paginate(CONTENT, 500)
    return BookState(
        id=make_book_id("Harbour Days", CONTENT),
        title="Harbour Days",
        author="J. Doe",
        content=CONTENT,
        pages=pages,
        chapters=detect_chapters(CONTENT, pages),
        character_offset=offset,
        chars_per_page=500,
        added_at=1700000000.0,
    )


def test_round_trip_restores_everything() -> None:
    state = _state(offset=1234)
    state.add_bookmark(200, "kettle")
    state.add_highlight(10, 40, note="nice")
    restored = deserialize_book_state(serialize_book_state(state))
    assert restored is not None
    assert restored.content == state.content
    assert restored.pages == state.pages
    assert restored.chapters == state.chapters
    assert restored.character_offset == 1234
    assert restored.progress == state.progress
    assert restored.bookmarks == state.bookmarks
    assert restored.highlights == state.highlights
    assert restored.highlights[0].text == CONTENT[10:40]
    assert restored.title == "Harbour Days"
    assert restored.author == "J. Doe"


def test_progress_is_derived_not_trusted() -> None:
    payload = json.loads(serialize_book_state(_state(offset=len(CONTENT) // 2)))
    payload["progress"] = 0.99
    restored = deserialize_book_state(json.dumps(payload))
    assert restored.progress == (len(CONTENT) // 2) / len(CONTENT)


def test_invalid_pages_are_rebuilt_from_stored_budget() -> None:
    payload = json.loads(serialize_book_state(_state()))
    payload["pages"][1]["start"] += 3
    restored = deserialize_book_state(json.dumps(payload))
    assert restored.pages == paginate(CONTENT, 500)
    assert [chapter.title for chapter in restored.chapters] == ["Morning", "Evening"]


def test_out_of_range_offset_is_clamped() -> None:
    payload = json.loads(serialize_book_state(_state()))
    payload["character_offset"] = len(CONTENT) + 500
    assert deserialize_book_state(json.dumps(payload)).character_offset == len(CONTENT)


def test_malformed_payloads() -> None:
    assert deserialize_book_state("not json") is None
    assert deserialize_book_state("[]") is None
    assert deserialize_book_state(json.dumps({"id": "x"})) is None
    minimal = deserialize_book_state(json.dumps({"id": "x", "content": "Hello there."}))
    assert minimal is not None
    assert minimal.title == "x"
    assert len(minimal.pages) == 1
    assert minimal.bookmarks == []


def test_bad_annotation_entries_are_dropped() -> None:
    payload = json.loads(serialize_book_state(_state()))
    payload["bookmarks"] = [{"id": "a", "offset": 5}, {"id": "a", "offset": 6}, {"offset": -1}, "junk"]
    payload["highlights"] = [{"id": "h", "start": 5, "end": 2, "text": "x"}]
    restored = deserialize_book_state(json.dumps(payload))
    assert [bookmark.offset for bookmark in restored.bookmarks] == [5]
    assert restored.highlights == []


def test_default_bookmark_note_is_an_excerpt() -> None:
    state = _state()
    bookmark = state.add_bookmark(CONTENT.index("The kettle"))
    assert bookmark.note == "The kettle whistled while the town woke up. The kettle whistled while"
    assert state.remove_bookmark(bookmark.id)
    assert not state.remove_bookmark(bookmark.id)


def test_auto_bookmark_is_replaced() -> None:
    state = _state()
    state.set_auto_bookmark(100)
    state.set_auto_bookmark(300)
    autos = [bookmark for bookmark in state.bookmarks if bookmark.id == AUTO_BOOKMARK_ID]
    assert len(autos) == 1
    assert autos[0].offset == 300


def test_make_book_id_is_stable_and_safe() -> None:
    first = make_book_id("A/B: Story?", "content")
    assert first == make_book_id("A/B: Story?", "content")
    assert "/" not in first and ":" not in first
    assert first != make_book_id("A/B: Story?", "other content")
    assert make_book_id("   ", "content") == make_book_id("", "content")


def test_store_round_trip(tmp_path: Path) -> None:
    store = BookStore(tmp_path)
    state = _state(offset=42)
    store.save(state)
    assert store.ids() == [state.id]
    assert (tmp_path / state.id / BOOK_STATE_FILENAME).is_file()
    assert store.exists(state.id)
    loaded = store.load(state.id)
    assert loaded.character_offset == 42
    assert loaded.pages == state.pages
    assert [book.id for book in store.load_all()] == [state.id]
    assert store.delete(state.id)
    assert not store.delete(state.id)
    assert store.load(state.id) is None
    assert store.ids() == []


def test_store_blobs_are_opaque(tmp_path: Path) -> None:
    store = BookStore(tmp_path)
    store.set("raw-book", b"\x00\x01binary")
    assert store.get("raw-book") == b"\x00\x01binary"
    assert store.load("raw-book") is None
    assert store.get("../escape") is None
    assert not store.exists("..")
    assert store.get("missing") is None
