from __future__ import annotations

import math
from typing import Sequence

from .pagination import Page
from .text import count_units

# 1.0x speech rate narrates roughly 160 units per minute once pauses are included.
BASE_WORDS_PER_MINUTE = 160
DEFAULT_WORDS_PER_MINUTE = 200


def words_per_minute(speech_rate: float, *, base: int = BASE_WORDS_PER_MINUTE) -> int:
    return round(base * speech_rate)


def estimate_reading_minutes(text: str, wpm: float = DEFAULT_WORDS_PER_MINUTE) -> int:
    if wpm <= 0:
        return 0
    return math.ceil(count_units(text).units / wpm)


def page_range_minutes(
    pages: Sequence[Page],
    start_page: int,
    end_page: int,
    wpm: float = DEFAULT_WORDS_PER_MINUTE,
) -> int:
    """Reading minutes for the inclusive 1-based page range."""
    if not pages or wpm <= 0:
        return 0
    first = max(1, start_page)
    last = min(end_page, len(pages))
    if first > last:
        return 0
    joined = " ".join(page.text for page in pages[first - 1 : last])
    if not joined.strip():
        return 0
    return estimate_reading_minutes(joined, wpm)


def elapsed_minutes(pages: Sequence[Page], current_page: int, wpm: float = DEFAULT_WORDS_PER_MINUTE) -> int:
    if not pages or current_page <= 0:
        return 0
    return page_range_minutes(pages, 1, current_page, wpm)


def remaining_minutes(pages: Sequence[Page], current_page: int, wpm: float = DEFAULT_WORDS_PER_MINUTE) -> int:
    if not pages or current_page >= len(pages):
        return 0
    return page_range_minutes(pages, current_page + 1, len(pages), wpm)


def format_minutes(minutes: float | None) -> str:
    if minutes is None or math.isnan(minutes) or minutes <= 0:
        return "0:00"
    total_seconds = int(minutes * 60)
    hours, rem = divmod(total_seconds, 3600)
    mins, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"


__all__ = [
    "BASE_WORDS_PER_MINUTE",
    "DEFAULT_WORDS_PER_MINUTE",
    "elapsed_minutes",
    "estimate_reading_minutes",
    "format_minutes",
    "page_range_minutes",
    "remaining_minutes",
    "words_per_minute",
]
