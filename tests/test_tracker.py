from __future__ import annotations

import random
import threading
import time

import pytest

from folio.chapters import detect_chapters
from folio.narration import Boundary, Done, Failed, NarrationError, Stopped
from folio.pagination import paginate
from folio.tracker import (
    IDLE,
    NARRATING,
    SEEKING,
    ReadingPositionTracker,
    TrackerStateError,
)


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.spoken: list[dict[str, object]] = []
        self.stopped = 0
        self.on_event = None

    def speak(self, text, *, rate, language, on_event) -> None:
        if self.fail:
            raise NarrationError("engine unavailable")
        self.spoken.append({"text": text, "rate": rate, "language": language})
        self.on_event = on_event

    def stop(self) -> None:
        self.stopped += 1


WORDS = "word " * 2000  # 10000 chars, 2000 units


def _tracker(content: str = WORDS, **kwargs) -> tuple[ReadingPositionTracker, FakeClock, list[dict]]:
    clock = FakeClock()
    events: list[dict] = []
    pages = paginate(content, 1000)
    tracker = ReadingPositionTracker(
        content,
        pages=pages,
        chapters=detect_chapters(content, pages),
        clock=clock,
        auto_tick=False,
        listener=lambda event: events.append(dict(event)),
        **kwargs,
    )
    return tracker, clock, events


def test_jittery_candidates_never_move_backward() -> None:
    tracker, _clock, events = _tracker(character_offset=1000)
    assert tracker.progress == pytest.approx(0.1)
    session = tracker.start_narration()
    assert session is not None
    assert session.last_confirmed_offset == 1000
    assert tracker.propose_offset(1200) is True
    assert tracker.character_offset == 1200
    assert tracker.propose_offset(1100) is False
    assert tracker.character_offset == 1200
    assert tracker.violation_count == 1
    violation = tracker.violations[-1]
    assert (violation.candidate, violation.confirmed) == (1100, 1200)
    blocked = [event for event in events if event["event"] == "blocked"]
    assert blocked and blocked[-1]["reason"] == "regress"


def test_time_estimate_advances_with_words_per_minute() -> None:
    tracker, clock, _events = _tracker()
    session = tracker.start_narration()
    assert session.remaining_units == 2000
    assert session.words_per_minute == 160
    clock.advance(60)
    assert tracker.tick() is True
    assert tracker.character_offset == 800
    clock.advance(60)
    tracker.tick()
    assert tracker.character_offset == 1600
    assert tracker.state == NARRATING


def test_tick_without_elapsed_time_is_a_stall_not_a_violation() -> None:
    tracker, _clock, events = _tracker()
    tracker.start_narration()
    assert tracker.tick() is False
    assert tracker.violation_count == 0
    assert events[-1]["event"] == "blocked"
    assert events[-1]["reason"] == "stalled"


def test_clock_going_backwards_is_discarded() -> None:
    tracker, clock, _events = _tracker()
    tracker.start_narration()
    clock.advance(60)
    tracker.tick()
    clock.advance(-30)
    assert tracker.tick() is False
    assert tracker.character_offset == 800
    assert tracker.violation_count == 1


def test_boundary_events_feed_the_same_ratchet() -> None:
    tracker, clock, _events = _tracker()
    tracker.start_narration()
    tracker.handle_narration_event(Boundary(char_index=3000))
    assert tracker.character_offset == 3000
    clock.advance(60)
    # estimate says 800, boundary truth is ahead
    assert tracker.tick() is False
    assert tracker.character_offset == 3000
    tracker.handle_narration_event(Boundary(char_index=2500))
    assert tracker.character_offset == 3000
    assert tracker.session.boundary_offset == 3000


def test_random_candidates_produce_non_decreasing_offsets() -> None:
    tracker, _clock, events = _tracker()
    tracker.start_narration()
    rng = random.Random(7)
    for _ in range(500):
        if rng.random() < 0.3:
            tracker.handle_narration_event(Boundary(char_index=rng.randrange(0, 10000)))
        else:
            tracker.propose_offset(rng.randrange(-100, 10100))
    offsets = [event["offset"] for event in events]
    assert offsets == sorted(offsets)
    assert tracker.violation_count > 0


def test_stop_freezes_at_last_confirmed_offset() -> None:
    tracker, clock, events = _tracker()
    tracker.start_narration()
    clock.advance(60)
    tracker.tick()
    clock.advance(10)
    assert tracker.stop_narration() == 800
    assert tracker.state == IDLE
    assert tracker.session is None
    assert events[-1]["event"] == "narration_stopped"
    assert tracker.tick() is False


def test_done_event_moves_to_end_of_book() -> None:
    tracker, _clock, events = _tracker()
    tracker.start_narration()
    tracker.handle_narration_event(Boundary(char_index=40))
    tracker.handle_narration_event(Done())
    assert tracker.character_offset == len(WORDS)
    assert tracker.progress == 1.0
    assert tracker.state == IDLE
    assert events[-1]["event"] == "narration_completed"


def test_error_event_freezes_and_records_message() -> None:
    tracker, _clock, events = _tracker()
    tracker.start_narration()
    tracker.handle_narration_event(Boundary(char_index=120))
    tracker.handle_narration_event(Failed(message="audio focus lost"))
    assert tracker.character_offset == 120
    assert tracker.state == IDLE
    assert tracker.last_error == "audio focus lost"
    assert events[-1]["event"] == "narration_failed"
    # restart from the frozen position
    session = tracker.start_narration()
    assert session.start_offset == 120
    assert tracker.last_error is None


def test_stopped_event_ends_session() -> None:
    tracker, _clock, _events = _tracker()
    tracker.start_narration()
    tracker.handle_narration_event(Stopped())
    assert tracker.state == IDLE


def test_nothing_to_narrate_is_a_no_op() -> None:
    tracker, _clock, events = _tracker(character_offset=len(WORDS))
    assert tracker.start_narration() is None
    assert tracker.state == IDLE
    assert events[-1]["event"] == "narration_skipped"
    padded, _clock, _events = _tracker("Some words.   \n\n  ", character_offset=12)
    assert padded.start_narration() is None


def test_seek_stops_narration_and_jumps_exactly() -> None:
    engine = FakeEngine()
    tracker, clock, _events = _tracker()
    tracker.start_narration(engine)
    clock.advance(60)
    tracker.tick()
    tracker.begin_seek()
    assert engine.stopped == 1
    assert tracker.state == SEEKING
    assert tracker.character_offset == 800
    assert tracker.update_seek(5003) == 5003
    assert tracker.character_offset == 800
    assert tracker.snapshot()["seek_preview"] == 5003
    assert tracker.end_seek() == 5003
    assert tracker.state == IDLE
    assert tracker.seek_preview is None


def test_end_seek_with_explicit_offset_and_clamping() -> None:
    tracker, _clock, _events = _tracker()
    tracker.begin_seek()
    assert tracker.end_seek(99999) == len(WORDS)


def test_seek_state_guards() -> None:
    tracker, _clock, _events = _tracker()
    with pytest.raises(TrackerStateError):
        tracker.update_seek(10)
    with pytest.raises(TrackerStateError):
        tracker.end_seek(10)
    tracker.begin_seek()
    with pytest.raises(TrackerStateError):
        tracker.start_narration()


def test_manual_skip_may_move_backward() -> None:
    tracker, clock, _events = _tracker()
    tracker.start_narration()
    clock.advance(60)
    tracker.tick()
    assert tracker.skip(-500) == 300
    assert tracker.state == IDLE
    assert tracker.skip(-1000) == 0
    assert tracker.skip_progress(0.05) == 500
    assert tracker.seek_to_progress(0.5) == 5000


def test_page_and_chapter_jumps() -> None:
    content = "Chapter 1: One\n\n" + "alpha " * 300 + "\n\nChapter 2: Two\n\n" + "beta " * 300
    tracker, _clock, _events = _tracker(content)
    assert tracker.jump_to_chapter("chapter-2") == content.index("Chapter 2")
    assert tracker.current_chapter.title == "Two"
    assert tracker.seek_to_page(2) == tracker.pages[1].start
    with pytest.raises(KeyError):
        tracker.jump_to_chapter("chapter-9")
    with pytest.raises(KeyError):
        tracker.seek_to_page(99)


def test_speech_rate_change_rebases_time_only_session() -> None:
    tracker, clock, _events = _tracker()
    tracker.start_narration()
    clock.advance(60)
    tracker.tick()
    tracker.set_speech_rate(2.0)
    session = tracker.session
    assert session.start_offset == 800
    assert session.words_per_minute == 320
    assert session.remaining_units == 1840
    assert tracker.tick() is False
    clock.advance(60)
    tracker.tick()
    assert 2399 <= tracker.character_offset <= 2400
    with pytest.raises(ValueError):
        tracker.set_speech_rate(0)


def test_speech_rate_change_restarts_engine_from_confirmed_offset() -> None:
    engine = FakeEngine()
    tracker, _clock, _events = _tracker()
    tracker.start_narration(engine)
    engine.on_event(Boundary(char_index=50))
    tracker.set_speech_rate(1.5)
    assert engine.stopped == 1
    assert len(engine.spoken) == 2
    assert engine.spoken[1]["rate"] == 1.5
    assert engine.spoken[1]["text"] == WORDS[50:]
    assert tracker.session.text_offset == 50


def test_engine_boundaries_are_relative_to_spoken_text() -> None:
    engine = FakeEngine()
    tracker, _clock, _events = _tracker(character_offset=1000, language="zh-CN")
    tracker.start_narration(engine)
    assert engine.spoken[0]["text"] == WORDS[1000:]
    assert engine.spoken[0]["language"] == "zh-CN"
    callback = engine.on_event
    callback(Boundary(char_index=25))
    assert tracker.character_offset == 1025
    tracker.stop_narration()
    # late events from the finished session are ignored
    callback(Boundary(char_index=900))
    callback(Done())
    assert tracker.character_offset == 1025


def test_engine_start_failure_tears_down_and_raises() -> None:
    tracker, _clock, _events = _tracker(character_offset=10)
    with pytest.raises(NarrationError):
        tracker.start_narration(FakeEngine(fail=True))
    assert tracker.state == IDLE
    assert tracker.session is None
    assert tracker.character_offset == 10
    assert tracker.last_error == "engine unavailable"


def test_rebind_keeps_offset() -> None:
    tracker, _clock, events = _tracker(character_offset=4200)
    before = tracker.current_page
    pages = paginate(WORDS, 300)
    assert tracker.rebind(pages) != before
    assert tracker.character_offset == 4200
    assert events[-1]["event"] == "repaginated"


def test_background_ticker_advances_and_is_cancelled() -> None:
    content = "word " * 100
    tracker = ReadingPositionTracker(content, speech_rate=4.0, tick_interval=0.01)
    with tracker:
        session = tracker.start_narration()
        assert session is not None
        ticker = session.ticker
        deadline = time.monotonic() + 5
        while tracker.character_offset == 0 and time.monotonic() < deadline:
            time.sleep(0.02)
        assert tracker.character_offset > 0
    assert tracker.session is None
    assert not ticker.alive


class ThreadedEngine(FakeEngine):
    """Delivers callbacks from its own thread and waits for them."""

    def __init__(self) -> None:
        super().__init__()
        self.callbacks_finished: list[bool] = []

    def _deliver(self, callback, event) -> None:
        worker = threading.Thread(target=callback, args=(event,))
        worker.start()
        worker.join(timeout=2)
        self.callbacks_finished.append(not worker.is_alive())

    def speak(self, text, *, rate, language, on_event) -> None:
        super().speak(text, rate=rate, language=language, on_event=on_event)
        self._deliver(on_event, Boundary(char_index=40))

    def stop(self) -> None:
        super().stop()
        self._deliver(self.on_event, Stopped())


def test_engine_calls_happen_outside_the_tracker_lock() -> None:
    engine = ThreadedEngine()
    tracker, _clock, events = _tracker(character_offset=100)
    tracker.start_narration(engine)
    assert tracker.character_offset == 140
    tracker.seek_to_offset(3000)
    assert engine.stopped == 1
    assert engine.callbacks_finished == [True, True]
    assert tracker.character_offset == 3000
    assert tracker.state == IDLE
    assert [event["event"] for event in events].count("narration_stopped") == 1


def test_rate_change_stops_engine_before_restarting() -> None:
    engine = ThreadedEngine()
    tracker, _clock, _events = _tracker()
    tracker.start_narration(engine)
    tracker.set_speech_rate(2.0)
    assert engine.stopped == 1
    assert all(engine.callbacks_finished)
    assert len(engine.spoken) == 2
    assert engine.spoken[1]["text"] == WORDS[40:]
    assert tracker.is_narrating
    tracker.close()
