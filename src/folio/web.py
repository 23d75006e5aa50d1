from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from fastapi import Body, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse

from .book_io import BookState, BookStore
from .chapters import chapter_for_offset
from .decoder import ContentEmptyError, DecodeError, UnsupportedFormatError
from .layout import DEFAULT_PROFILE, LayoutProfile
from .library import (
    Viewport,
    delete_book,
    import_bytes,
    list_books_sorted,
    open_tracker,
    record_position,
    repaginate_book,
    repaginate_library,
)
from .logging_utils import debug_log
from .narration import NarrationError, event_from_payload
from .repagination import RepaginationBusyError, Repaginator
from .settings import ReaderSettings, load_settings, save_settings
from .tracker import DEFAULT_TICK_INTERVAL, ReadingPositionTracker, TrackerStateError

MAX_NOTE_LENGTH = 200
_PERSIST_EVENTS = {
    "jump",
    "narration_stopped",
    "narration_completed",
    "narration_failed",
    "repaginated",
}


@dataclass(slots=True)
class ReaderConfig:
    root: Path
    viewport_width: float = 390
    viewport_height: float = 844
    platform: str = "android"
    tick_interval: float = DEFAULT_TICK_INTERVAL


@dataclass
class _OpenBook:
    state: BookState
    tracker: ReadingPositionTracker
    repaginator: Repaginator


def _int_field(payload: Mapping[str, object], name: str, *, minimum: int | None = None) -> int:
    value = payload.get(name)
    if not isinstance(value, int) or isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{name} must be an integer.")
    if minimum is not None and value < minimum:
        raise HTTPException(status_code=400, detail=f"{name} must be at least {minimum}.")
    return value


def _number_field(payload: Mapping[str, object], name: str) -> float:
    value = payload.get(name)
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{name} must be a number.")
    return float(value)


def _note_field(payload: Mapping[str, object]) -> str | None:
    note = payload.get("note")
    if note is None:
        return None
    if not isinstance(note, str):
        raise HTTPException(status_code=400, detail="note must be a string or null.")
    note = note.strip() or None
    if note and len(note) > MAX_NOTE_LENGTH:
        note = note[:MAX_NOTE_LENGTH]
    return note


def _require_dict(payload: object) -> dict[str, object]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    return payload


def _annotations_payload(state: BookState) -> dict[str, object]:
    return {
        "bookmarks": [
            bookmark.as_payload() for bookmark in sorted(state.bookmarks, key=lambda b: b.offset)
        ],
        "highlights": [
            highlight.as_payload() for highlight in sorted(state.highlights, key=lambda h: h.start)
        ],
    }


def create_app(config: ReaderConfig) -> FastAPI:
    root = config.root.expanduser().resolve()
    if not root.exists():
        raise FileNotFoundError(f"Library root not found: {root}")

    profile = LayoutProfile(platform=config.platform)
    store = BookStore(root)
    settings = load_settings(root)

    app = FastAPI(title="folio reader")
    app.state.config = config
    app.state.root = root
    app.state.store = store
    app.state.settings = settings

    open_books: dict[str, _OpenBook] = {}
    books_lock = threading.Lock()
    save_lock = threading.Lock()

    def _viewport(payload: Mapping[str, object] | None = None) -> Viewport:
        payload = payload or {}
        width = payload.get("width", config.viewport_width)
        height = payload.get("height", config.viewport_height)
        landscape = payload.get("landscape", False)
        if not isinstance(width, (int, float)) or not isinstance(height, (int, float)):
            raise HTTPException(status_code=400, detail="width and height must be numbers.")
        if width <= 0 or height <= 0:
            raise HTTPException(status_code=400, detail="width and height must be positive.")
        return Viewport(width=float(width), height=float(height), landscape=landscape is True)

    def _persist(book: _OpenBook) -> None:
        with save_lock:
            record_position(book.state, book.tracker)
            store.save(book.state)

    def _make_listener(book_id: str) -> Callable[[Mapping[str, object]], None]:
        def _listener(event: Mapping[str, object]) -> None:
            name = event.get("event")
            if name not in _PERSIST_EVENTS:
                return
            book = open_books.get(book_id)
            if book is None:
                return
            if name == "narration_stopped" and settings.auto_bookmark:
                book.state.set_auto_bookmark(book.tracker.character_offset)
            _persist(book)

        return _listener

    def _open_book(book_id: str) -> _OpenBook:
        with books_lock:
            book = open_books.get(book_id)
            if book is not None:
                return book
            state = store.load(book_id)
            if state is None:
                raise HTTPException(status_code=404, detail="Book not found")
            tracker = open_tracker(state, settings, tick_interval=config.tick_interval)
            book = _OpenBook(state=state, tracker=tracker, repaginator=Repaginator(profile))
            open_books[book_id] = book
        tracker.add_listener(_make_listener(book_id))
        return book

    def _close_book(book_id: str) -> None:
        with books_lock:
            book = open_books.pop(book_id, None)
        if book is not None:
            book.tracker.close()

    def _position_response(book: _OpenBook) -> JSONResponse:
        return JSONResponse({"position": book.tracker.snapshot()})

    def _close_all() -> None:
        for book_id in list(open_books):
            book = open_books.get(book_id)
            if book is not None:
                book.tracker.stop_narration()
            _close_book(book_id)

    app.state.close_books = _close_all

    @app.get("/api/books")
    def api_books(sort: str = Query("author")) -> JSONResponse:
        books_payload = []
        for listing in list_books_sorted(store, sort):
            payload: dict[str, object] = {
                "id": listing.id,
                "title": listing.title,
                "total_pages": listing.total_pages,
                "progress": listing.progress,
                "added_at": listing.added_at,
                "last_read_at": listing.last_read_at,
            }
            if listing.author:
                payload["author"] = listing.author
            books_payload.append(payload)
        return JSONResponse({"books": books_payload})

    @app.post("/api/books")
    async def api_import_book(file: UploadFile = File(...)) -> JSONResponse:
        filename = file.filename or "upload.txt"
        try:
            raw = await file.read()
        finally:
            await file.close()
        try:
            state = import_bytes(
                store,
                raw,
                filename,
                font_size=settings.font_size,
                viewport=_viewport(),
                profile=profile,
            )
        except UnsupportedFormatError as exc:
            raise HTTPException(status_code=415, detail=str(exc)) from exc
        except ContentEmptyError as exc:
            raise HTTPException(status_code=422, detail="No readable content.") from exc
        except DecodeError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return JSONResponse({"book": state.summary()})

    @app.get("/api/books/{book_id}")
    def api_book(book_id: str) -> JSONResponse:
        book = _open_book(book_id)
        payload = book.state.summary()
        payload["position"] = book.tracker.snapshot()
        payload["chapters"] = [chapter.to_payload() for chapter in book.tracker.chapters]
        payload.update(_annotations_payload(book.state))
        return JSONResponse({"book": payload})

    @app.delete("/api/books/{book_id}")
    def api_delete_book(book_id: str) -> JSONResponse:
        _close_book(book_id)
        with save_lock:
            deleted = delete_book(store, book_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Book not found")
        return JSONResponse({"deleted": True, "book": book_id})

    @app.get("/api/books/{book_id}/pages/{page_number}")
    def api_page(book_id: str, page_number: int) -> JSONResponse:
        book = _open_book(book_id)
        pages = book.tracker.pages
        if page_number < 1 or page_number > len(pages):
            raise HTTPException(status_code=404, detail="Page not found")
        page = pages[page_number - 1]
        chapter = chapter_for_offset(book.tracker.chapters, page.start)
        payload = page.to_payload()
        payload["text"] = page.text
        payload["total_pages"] = len(pages)
        payload["chapter"] = chapter.id if chapter else None
        return JSONResponse({"page": payload})

    @app.get("/api/books/{book_id}/chapters")
    def api_chapters(book_id: str) -> JSONResponse:
        book = _open_book(book_id)
        current = book.tracker.current_chapter
        return JSONResponse(
            {
                "chapters": [chapter.to_payload() for chapter in book.tracker.chapters],
                "current": current.id if current else None,
            }
        )

    @app.get("/api/books/{book_id}/position")
    def api_position(book_id: str) -> JSONResponse:
        return _position_response(_open_book(book_id))

    @app.post("/api/books/{book_id}/position")
    def api_move(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        payload = _require_dict(payload)
        action = payload.get("action")
        tracker = book.tracker
        try:
            if action == "offset":
                tracker.seek_to_offset(_int_field(payload, "offset", minimum=0))
            elif action == "progress":
                tracker.seek_to_progress(_number_field(payload, "progress"))
            elif action == "page":
                tracker.seek_to_page(_int_field(payload, "page", minimum=1))
            elif action == "chapter":
                chapter_id = payload.get("chapter_id")
                if not isinstance(chapter_id, str) or not chapter_id:
                    raise HTTPException(status_code=400, detail="chapter_id is required.")
                tracker.jump_to_chapter(chapter_id)
            elif action == "skip":
                tracker.skip(_int_field(payload, "delta"))
            elif action == "skip_progress":
                tracker.skip_progress(_number_field(payload, "delta"))
            else:
                raise HTTPException(status_code=400, detail=f"Unknown action: {action!r}")
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return _position_response(book)

    @app.post("/api/books/{book_id}/seek/begin")
    def api_seek_begin(book_id: str) -> JSONResponse:
        book = _open_book(book_id)
        book.tracker.begin_seek()
        return _position_response(book)

    @app.post("/api/books/{book_id}/seek/update")
    def api_seek_update(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        offset = _int_field(_require_dict(payload), "offset", minimum=0)
        try:
            book.tracker.update_seek(offset)
        except TrackerStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _position_response(book)

    @app.post("/api/books/{book_id}/seek/end")
    def api_seek_end(book_id: str, payload: dict[str, object] = Body(default={})) -> JSONResponse:
        book = _open_book(book_id)
        payload = _require_dict(payload)
        offset = _int_field(payload, "offset", minimum=0) if "offset" in payload else None
        try:
            book.tracker.end_seek(offset)
        except TrackerStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _position_response(book)

    @app.post("/api/books/{book_id}/narration/start")
    def api_narration_start(book_id: str) -> JSONResponse:
        book = _open_book(book_id)
        try:
            session = book.tracker.start_narration(language=settings.speech_language)
        except TrackerStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except NarrationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        payload: dict[str, object] = {
            "position": book.tracker.snapshot(),
            "started": session is not None,
        }
        if session is not None:
            payload["text_offset"] = session.text_offset
            payload["rate"] = book.tracker.speech_rate
            payload["language"] = settings.speech_language
            payload["voice"] = settings.speech_voice
        return JSONResponse(payload)

    @app.post("/api/books/{book_id}/narration/event")
    def api_narration_event(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        try:
            event = event_from_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        book.tracker.handle_narration_event(event)
        return _position_response(book)

    @app.post("/api/books/{book_id}/narration/stop")
    def api_narration_stop(book_id: str) -> JSONResponse:
        book = _open_book(book_id)
        book.tracker.stop_narration()
        return _position_response(book)

    @app.post("/api/books/{book_id}/narration/rate")
    def api_narration_rate(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        rate = _number_field(_require_dict(payload), "rate")
        try:
            book.tracker.set_speech_rate(rate)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _position_response(book)

    @app.post("/api/books/{book_id}/layout")
    def api_layout(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        payload = _require_dict(payload)
        font_size = _number_field(payload, "font_size")
        if font_size <= 0:
            raise HTTPException(status_code=400, detail="font_size must be positive.")
        viewport = _viewport(payload)
        try:
            with save_lock:
                # narration advances are not persisted; take the live offset
                record_position(book.state, book.tracker)
                result = repaginate_book(
                    book.state,
                    font_size,
                    viewport,
                    profile=profile,
                    repaginator=book.repaginator,
                )
        except RepaginationBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        book.tracker.rebind(result.pages, result.chapters)
        return JSONResponse(
            {
                "chars_per_page": result.chars_per_page,
                "total_pages": len(result.pages),
                "current_page": result.current_page,
                "position": book.tracker.snapshot(),
            }
        )

    @app.get("/api/settings")
    def api_settings() -> JSONResponse:
        return JSONResponse({"settings": settings.as_payload()})

    @app.post("/api/settings")
    def api_update_settings(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        previous_font = settings.font_size
        changed = settings.update(payload)
        save_settings(root, settings)
        repaginated: dict[str, int] = {}
        if "font_size" in changed and settings.font_size != previous_font:
            _close_all()
            with save_lock:
                repaginated = repaginate_library(
                    store, settings.font_size, _viewport(), profile=profile
                )
        if "speech_rate" in changed:
            for book in list(open_books.values()):
                book.tracker.set_speech_rate(settings.speech_rate)
        debug_log("web", f"settings updated: {changed}")
        return JSONResponse({"settings": settings.as_payload(), "repaginated": repaginated})

    @app.get("/api/books/{book_id}/annotations")
    def api_annotations(book_id: str) -> JSONResponse:
        return JSONResponse(_annotations_payload(_open_book(book_id).state))

    @app.post("/api/books/{book_id}/bookmarks")
    def api_add_bookmark(book_id: str, payload: dict[str, object] = Body(default={})) -> JSONResponse:
        book = _open_book(book_id)
        payload = _require_dict(payload)
        if "offset" in payload:
            offset = _int_field(payload, "offset", minimum=0)
        else:
            offset = book.tracker.character_offset
        with save_lock:
            book.state.add_bookmark(offset, _note_field(payload))
            store.save(book.state)
        return JSONResponse(_annotations_payload(book.state))

    @app.delete("/api/books/{book_id}/bookmarks/{bookmark_id}")
    def api_delete_bookmark(book_id: str, bookmark_id: str) -> JSONResponse:
        book = _open_book(book_id)
        with save_lock:
            removed = book.state.remove_bookmark(bookmark_id)
            if removed:
                store.save(book.state)
        if not removed:
            raise HTTPException(status_code=404, detail="Bookmark not found.")
        return JSONResponse(_annotations_payload(book.state))

    @app.post("/api/books/{book_id}/highlights")
    def api_add_highlight(book_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        book = _open_book(book_id)
        payload = _require_dict(payload)
        start = _int_field(payload, "start", minimum=0)
        end = _int_field(payload, "end", minimum=0)
        if end <= start:
            raise HTTPException(status_code=400, detail="end must be greater than start.")
        with save_lock:
            book.state.add_highlight(start, end, _note_field(payload))
            store.save(book.state)
        return JSONResponse(_annotations_payload(book.state))

    @app.delete("/api/books/{book_id}/highlights/{highlight_id}")
    def api_delete_highlight(book_id: str, highlight_id: str) -> JSONResponse:
        book = _open_book(book_id)
        with save_lock:
            removed = book.state.remove_highlight(highlight_id)
            if removed:
                store.save(book.state)
        if not removed:
            raise HTTPException(status_code=404, detail="Highlight not found.")
        return JSONResponse(_annotations_payload(book.state))

    return app


__all__ = ["ReaderConfig", "create_app"]
