from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Iterator, Mapping, Sequence
from uuid import uuid4

from .chapters import Chapter, chapter_for_offset, find_chapter
from .logging_utils import debug_log
from .narration import (
    Boundary,
    Done,
    Failed,
    NarrationEngine,
    NarrationError,
    NarrationEvent,
    Stopped,
)
from .pagination import Page, page_number_for_offset
from .text import count_units
from .timing import BASE_WORDS_PER_MINUTE, words_per_minute

IDLE = "idle"
NARRATING = "narrating"
SEEKING = "seeking"

DEFAULT_TICK_INTERVAL = 0.1
VIOLATION_HISTORY = 200

TrackerListener = Callable[[Mapping[str, object]], None]


class TrackerStateError(RuntimeError):
    """Raised when an operation is not allowed in the tracker's current state."""


@dataclass
class ReadingPosition:
    """Character offset into the content; progress is always derived from it."""

    content_length: int
    character_offset: int = 0

    @property
    def progress(self) -> float:
        if self.content_length <= 0:
            return 0.0
        return self.character_offset / self.content_length

    def clamp(self, offset: int) -> int:
        return max(0, min(self.content_length, int(offset)))


@dataclass(frozen=True)
class MonotonicityViolation:
    """A candidate that would have moved an active narration backward."""

    candidate: int
    confirmed: int
    source: str
    at: float


class _Ticker:
    """Background thread calling ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], object], name: str) -> None:
        self.interval = interval
        self._callback = callback
        self._cancel = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "_Ticker":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancel.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while not self._cancel.wait(self.interval):
            try:
                self._callback()
            except Exception as exc:
                debug_log("tracker", f"tick failed: {exc}")


@dataclass
class NarrationSession:
    """
    State that exists only while narration is active.

    ``start_offset``/``start_time`` anchor the time estimate and move when the
    speech rate changes; ``text_offset`` is where the text handed to the
    engine begins, which boundary indices are relative to.
    """

    start_offset: int
    start_time: float
    remaining_units: int
    last_confirmed_offset: int
    words_per_minute: int
    text_offset: int
    boundary_offset: int = 0
    engine: NarrationEngine | None = None
    ticker: _Ticker | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def cancel_ticker(self) -> _Ticker | None:
        ticker = self.ticker
        self.ticker = None
        if ticker is not None:
            ticker.cancel()
        return ticker


class ReadingPositionTracker:
    """
    Single owner of the reading position for one open book.

    Every mutation goes through the transitions below, serialized by one
    re-entrant lock. While narrating, time-estimated ticks and engine
    boundary reports feed one forward-only ratchet: a candidate that would
    move the position backward is discarded and recorded, never applied.
    Manual navigation (seek, skip, chapter jump) always stops narration first
    and then sets the offset exactly. Engine ``speak``/``stop`` calls are made
    after the lock is released.
    """

    def __init__(
        self,
        content: str,
        *,
        pages: Sequence[Page] | None = None,
        chapters: Sequence[Chapter] | None = None,
        character_offset: int = 0,
        speech_rate: float = 1.0,
        base_words_per_minute: int = BASE_WORDS_PER_MINUTE,
        language: str = "en-US",
        clock: Callable[[], float] = time.monotonic,
        listener: TrackerListener | None = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        auto_tick: bool = True,
    ) -> None:
        self._content = content
        self._position = ReadingPosition(content_length=len(content))
        self._position.character_offset = self._position.clamp(character_offset)
        self._pages: list[Page] = list(pages or [])
        self._chapters: list[Chapter] = list(chapters or [])
        self._state = IDLE
        self._session: NarrationSession | None = None
        self._seek_preview: int | None = None
        self._lock = threading.RLock()
        self._lock_depth = 0
        self._engines_to_stop: list[NarrationEngine] = []
        self._listeners: list[TrackerListener] = [listener] if listener else []
        self._stale_tickers: list[_Ticker] = []
        self.speech_rate = speech_rate
        self.base_words_per_minute = base_words_per_minute
        self.language = language
        self.clock = clock
        self.tick_interval = tick_interval
        self.auto_tick = auto_tick
        self.violation_count = 0
        self.violations: deque[MonotonicityViolation] = deque(maxlen=VIOLATION_HISTORY)
        self.last_error: str | None = None

    # ------------------------------------------------------------------ state

    @property
    def content(self) -> str:
        return self._content

    @property
    def content_length(self) -> int:
        return self._position.content_length

    @property
    def character_offset(self) -> int:
        return self._position.character_offset

    @property
    def progress(self) -> float:
        return self._position.progress

    @property
    def state(self) -> str:
        return self._state

    @property
    def session(self) -> NarrationSession | None:
        return self._session

    @property
    def is_narrating(self) -> bool:
        return self._state == NARRATING

    @property
    def seek_preview(self) -> int | None:
        return self._seek_preview

    @property
    def pages(self) -> list[Page]:
        return list(self._pages)

    @property
    def chapters(self) -> list[Chapter]:
        return list(self._chapters)

    @property
    def words_per_minute(self) -> int:
        return words_per_minute(self.speech_rate, base=self.base_words_per_minute)

    @property
    def current_page(self) -> int:
        return page_number_for_offset(self._pages, self.character_offset)

    @property
    def current_chapter(self) -> Chapter | None:
        return chapter_for_offset(self._chapters, self.character_offset)

    def add_listener(self, listener: TrackerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TrackerListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def snapshot(self) -> dict[str, object]:
        with self._locked():
            chapter = self.current_chapter
            payload: dict[str, object] = {
                "state": self._state,
                "offset": self.character_offset,
                "progress": self.progress,
                "content_length": self.content_length,
                "page": self.current_page,
                "total_pages": len(self._pages),
                "chapter": chapter.id if chapter else None,
                "speech_rate": self.speech_rate,
                "words_per_minute": self.words_per_minute,
                "violations": self.violation_count,
                "error": self.last_error,
            }
            if self._state == SEEKING:
                payload["seek_preview"] = self._seek_preview
            session = self._session
            if session is not None:
                payload["session"] = {
                    "id": session.id,
                    "start_offset": session.start_offset,
                    "text_offset": session.text_offset,
                    "remaining_units": session.remaining_units,
                    "last_confirmed_offset": session.last_confirmed_offset,
                    "boundary_offset": session.boundary_offset,
                }
            return payload

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """
        Hold the tracker lock; engines stopped inside are stopped after release.

        An engine may deliver its final callback from its own thread and wait
        for it inside ``stop()``, so ``stop()`` never runs under the lock.
        """
        engines: list[NarrationEngine] = []
        try:
            with self._lock:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                    if self._lock_depth == 0:
                        engines, self._engines_to_stop = self._engines_to_stop, []
        finally:
            for engine in engines:
                engine.stop()

    def _emit(self, event: str, **fields: object) -> None:
        payload: dict[str, object] = {
            "event": event,
            "offset": self.character_offset,
            "progress": self.progress,
            "state": self._state,
        }
        payload.update(fields)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as exc:
                debug_log("tracker", f"listener failed on {event}: {exc}")

    # -------------------------------------------------------------- narration

    def start_narration(
        self,
        engine: NarrationEngine | None = None,
        *,
        language: str | None = None,
    ) -> NarrationSession | None:
        """
        Idle -> Narrating from the current offset.

        Returns the new session, the running one if narration is already
        active, or ``None`` when nothing is left to read. Engine start failures
        tear the session down like an error event and re-raise.
        """
        with self._locked():
            if self._state == SEEKING:
                raise TrackerStateError("Cannot start narration while seeking.")
            if self._session is not None:
                return self._session
            start = self.character_offset
            remaining = count_units(self._content[start:]).units if start < self.content_length else 0
            if remaining == 0:
                debug_log("tracker", f"nothing to narrate from offset {start}/{self.content_length}")
                self._emit("narration_skipped")
                return None
            self.last_error = None
            session = NarrationSession(
                start_offset=start,
                start_time=self.clock(),
                remaining_units=remaining,
                last_confirmed_offset=start,
                words_per_minute=self.words_per_minute,
                text_offset=start,
                boundary_offset=start,
                engine=engine,
            )
            self._session = session
            self._state = NARRATING
            self._emit("narration_started", remaining_units=remaining, session=session.id)
            if self.auto_tick:
                session.ticker = _Ticker(
                    self.tick_interval,
                    partial(self._tick_session, session.id),
                    name=f"folio-tick-{session.id[:8]}",
                ).start()
            if engine is None:
                return session
            rate = self.speech_rate
            language = language or self.language
        # the engine may call back from its own thread before speak() returns
        try:
            engine.speak(
                self._content[start:],
                rate=rate,
                language=language,
                on_event=partial(self._on_engine_event, session.id),
            )
        except NarrationError as exc:
            with self._locked():
                if self._session is session:
                    self._fail(str(exc))
            raise
        return self._session

    def tick(self) -> bool:
        """Advance from the elapsed-time estimate; True when the offset moved."""
        with self._locked():
            session = self._session
            if session is None:
                return False
            return self._tick_session(session.id)

    def _tick_session(self, session_id: str) -> bool:
        with self._locked():
            session = self._session
            if session is None or session.id != session_id:
                return False
            elapsed = max(0.0, self.clock() - session.start_time)
            units_read = elapsed * (session.words_per_minute / 60.0)
            fraction = min(1.0, max(0.0, units_read / session.remaining_units))
            span = self.content_length - session.start_offset
            candidate = session.start_offset + int(fraction * span)
            return self._gate(session, candidate, "estimate")

    def propose_offset(self, candidate: int, source: str = "external") -> bool:
        """Offer a candidate offset to the forward-only gate of the active session."""
        with self._locked():
            session = self._session
            if session is None:
                return False
            return self._gate(session, candidate, source)

    def _gate(self, session: NarrationSession, candidate: int, source: str) -> bool:
        candidate = self._position.clamp(candidate)
        confirmed = session.last_confirmed_offset
        new_offset = max(candidate, session.boundary_offset, confirmed)
        if new_offset > confirmed:
            session.last_confirmed_offset = new_offset
            self._position.character_offset = new_offset
            self._emit("advance", source=source, page=self.current_page)
            return True
        if candidate < confirmed:
            violation = MonotonicityViolation(
                candidate=candidate,
                confirmed=confirmed,
                source=source,
                at=self.clock(),
            )
            self.violation_count += 1
            self.violations.append(violation)
            debug_log(
                "tracker",
                f"discarded {source} candidate {candidate} behind confirmed {confirmed}",
            )
            self._emit("blocked", source=source, candidate=candidate, reason="regress")
        else:
            self._emit("blocked", source=source, candidate=candidate, reason="stalled")
        return False

    def handle_narration_event(self, event: NarrationEvent) -> None:
        """Apply an engine event to whichever session is active."""
        with self._locked():
            if self._session is None:
                debug_log("tracker", f"ignoring {event.kind} event without a session")
                return
            self._apply_event(self._session, event)

    def _on_engine_event(self, session_id: str, event: NarrationEvent) -> None:
        with self._locked():
            session = self._session
            if session is None or session.id != session_id:
                debug_log("tracker", f"ignoring stale {event.kind} event")
                return
            self._apply_event(session, event)

    def _apply_event(self, session: NarrationSession, event: NarrationEvent) -> None:
        if isinstance(event, Boundary):
            candidate = self._position.clamp(session.text_offset + event.char_index)
            if candidate > session.boundary_offset:
                session.boundary_offset = candidate
            self._gate(session, candidate, "boundary")
        elif isinstance(event, Done):
            self.complete_narration()
        elif isinstance(event, Stopped):
            self._end_session("narration_stopped", stop_engine=False)
        elif isinstance(event, Failed):
            self._fail(event.message)

    def stop_narration(self) -> int:
        """Narrating -> Idle; the position freezes at the last confirmed offset."""
        with self._locked():
            self._end_session("narration_stopped", stop_engine=True)
            return self.character_offset

    def complete_narration(self) -> int:
        """Narrating -> Idle after the engine read everything: jump to the end."""
        with self._locked():
            if self._session is None:
                return self.character_offset
            self._end_session("narration_completed", stop_engine=False, final_offset=self.content_length)
            return self.character_offset

    def _fail(self, message: str) -> None:
        self.last_error = message
        debug_log("tracker", f"narration failed: {message}")
        self._end_session("narration_failed", stop_engine=False, message=message)

    def _end_session(
        self,
        event: str,
        *,
        stop_engine: bool,
        final_offset: int | None = None,
        **fields: object,
    ) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        self._state = IDLE
        ticker = session.cancel_ticker()
        self._stale_tickers = [t for t in self._stale_tickers if t.alive]
        if ticker is not None:
            self._stale_tickers.append(ticker)
        offset = session.last_confirmed_offset if final_offset is None else final_offset
        self._position.character_offset = self._position.clamp(offset)
        if stop_engine and session.engine is not None:
            self._engines_to_stop.append(session.engine)
        self._emit(event, session=session.id, **fields)

    def set_speech_rate(self, speech_rate: float) -> None:
        """
        Change the narration speed.

        An engine-driven session is restarted from the confirmed offset; a
        time-only session is re-anchored in place so the estimate continues
        from where it is instead of jumping.
        """
        if speech_rate <= 0:
            raise ValueError("speech rate must be positive")
        restart: NarrationEngine | None = None
        with self._locked():
            self.speech_rate = speech_rate
            session = self._session
            if session is None:
                return
            if session.engine is not None:
                restart = session.engine
                self._end_session("narration_stopped", stop_engine=True)
            else:
                anchor = session.last_confirmed_offset
                session.start_offset = anchor
                session.start_time = self.clock()
                session.remaining_units = count_units(self._content[anchor:]).units
                session.words_per_minute = self.words_per_minute
                if session.remaining_units == 0:
                    self.complete_narration()
                    return
                self._emit("rate_changed", words_per_minute=session.words_per_minute)
        if restart is not None:
            self.start_narration(restart)

    # ------------------------------------------------------------------ seeking

    def begin_seek(self) -> None:
        """Idle/Narrating -> Seeking; active narration is stopped first."""
        with self._locked():
            if self._state == SEEKING:
                return
            self._end_session("narration_stopped", stop_engine=True)
            self._state = SEEKING
            self._seek_preview = self.character_offset
            self._emit("seek_started")

    def update_seek(self, offset: int) -> int:
        with self._locked():
            if self._state != SEEKING:
                raise TrackerStateError("update_seek requires an active seek.")
            self._seek_preview = self._position.clamp(offset)
            self._emit("seek_preview", preview=self._seek_preview)
            return self._seek_preview

    def end_seek(self, offset: int | None = None) -> int:
        """Seeking -> Idle, committing exactly the released offset."""
        with self._locked():
            if self._state != SEEKING:
                raise TrackerStateError("end_seek requires an active seek.")
            target = self._seek_preview if offset is None else offset
            return self._jump(target if target is not None else self.character_offset, "seek")

    def _jump(self, offset: int, reason: str) -> int:
        self._end_session("narration_stopped", stop_engine=True)
        self._state = IDLE
        self._seek_preview = None
        self._position.character_offset = self._position.clamp(offset)
        self._emit("jump", reason=reason, page=self.current_page)
        return self.character_offset

    def seek_to_offset(self, offset: int) -> int:
        with self._locked():
            return self._jump(offset, "offset")

    def seek_to_progress(self, progress: float) -> int:
        with self._locked():
            fraction = max(0.0, min(1.0, progress))
            return self._jump(int(fraction * self.content_length), "progress")

    def seek_to_page(self, page_number: int) -> int:
        with self._locked():
            for page in self._pages:
                if page.number == page_number:
                    return self._jump(page.start, "page")
            raise KeyError(f"Page {page_number} not found")

    def jump_to_chapter(self, chapter: Chapter | str) -> int:
        with self._locked():
            if isinstance(chapter, str):
                found = find_chapter(self._chapters, chapter)
                if found is None:
                    raise KeyError(f"Chapter {chapter} not found")
                chapter = found
            return self._jump(chapter.start_offset, "chapter")

    def skip(self, delta: int) -> int:
        """Move by ``delta`` characters (negative skips back)."""
        with self._locked():
            return self._jump(self.character_offset + delta, "skip")

    def skip_progress(self, delta: float) -> int:
        """Move by a fraction of the whole book, like the +/-5% buttons."""
        with self._locked():
            fraction = max(0.0, min(1.0, self.progress + delta))
            return self._jump(int(fraction * self.content_length), "skip")

    # ------------------------------------------------------------- repagination

    def rebind(self, pages: Sequence[Page], chapters: Sequence[Chapter] | None = None) -> int:
        """Swap in freshly computed pages; the character offset is untouched."""
        with self._locked():
            self._pages = list(pages)
            if chapters is not None:
                self._chapters = list(chapters)
            self._emit("repaginated", page=self.current_page, total_pages=len(self._pages))
            return self.current_page

    def close(self) -> None:
        """Stop narration and wait for any cancelled tickers to exit."""
        with self._locked():
            self._end_session("narration_stopped", stop_engine=True)
            tickers, self._stale_tickers = self._stale_tickers, []
        for ticker in tickers:
            ticker.join(timeout=max(1.0, self.tick_interval * 5))

    def __enter__(self) -> "ReadingPositionTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "DEFAULT_TICK_INTERVAL",
    "IDLE",
    "MonotonicityViolation",
    "NARRATING",
    "NarrationSession",
    "ReadingPosition",
    "ReadingPositionTracker",
    "SEEKING",
    "TrackerListener",
    "TrackerStateError",
]
