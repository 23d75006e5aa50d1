from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Union


class NarrationError(RuntimeError):
    """Raised when the narration engine fails to start or fails mid-playback."""


@dataclass(frozen=True)
class Boundary:
    """The engine reached ``char_index`` of the text it was given."""

    char_index: int
    kind: str = "boundary"


@dataclass(frozen=True)
class Done:
    kind: str = "done"


@dataclass(frozen=True)
class Stopped:
    kind: str = "stopped"


@dataclass(frozen=True)
class Failed:
    message: str
    kind: str = "error"


NarrationEvent = Union[Boundary, Done, Stopped, Failed]
NarrationCallback = Callable[[NarrationEvent], None]


class NarrationEngine(Protocol):
    """
    Speech backend driven by the reading-position tracker.

    ``speak`` starts playback of ``text`` and reports progress through
    ``on_event``: any number of :class:`Boundary` events followed by exactly
    one terminal :class:`Done`, :class:`Stopped` or :class:`Failed`. Events may
    arrive from another thread. ``stop`` must be safe to call at any time.
    """

    def speak(
        self,
        text: str,
        *,
        rate: float,
        language: str,
        on_event: NarrationCallback,
    ) -> None: ...

    def stop(self) -> None: ...


def event_from_payload(payload: object) -> NarrationEvent:
    """Build an event from a client-reported mapping such as ``{"kind": "boundary", "char_index": 12}``."""
    if not isinstance(payload, dict):
        raise ValueError("Narration event must be an object.")
    kind = payload.get("kind")
    if kind == "boundary":
        char_index = payload.get("char_index")
        if not isinstance(char_index, int) or isinstance(char_index, bool) or char_index < 0:
            raise ValueError("char_index must be a non-negative integer.")
        return Boundary(char_index=char_index)
    if kind == "done":
        return Done()
    if kind == "stopped":
        return Stopped()
    if kind == "error":
        message = payload.get("message")
        return Failed(message=message if isinstance(message, str) and message else "Narration failed")
    raise ValueError(f"Unknown narration event kind: {kind!r}")


def is_terminal(event: NarrationEvent) -> bool:
    return not isinstance(event, Boundary)


__all__ = [
    "Boundary",
    "Done",
    "Failed",
    "NarrationCallback",
    "NarrationEngine",
    "NarrationError",
    "NarrationEvent",
    "Stopped",
    "event_from_payload",
    "is_terminal",
]
