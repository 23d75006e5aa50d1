from __future__ import annotations

from dataclasses import dataclass

ENGLISH = "english"
CHINESE = "chinese"
MIXED = "mixed"
LANGUAGES = (ENGLISH, CHINESE, MIXED)

CHINESE_RATIO_THRESHOLD = 0.6
ENGLISH_RATIO_THRESHOLD = 0.1


def is_ideograph(ch: str) -> bool:
    if not ch:
        return False
    code = ord(ch)
    return (
        0x4E00 <= code <= 0x9FFF  # CJK Unified Ideographs
        or 0x3400 <= code <= 0x4DBF  # Extension A
        or 0x20000 <= code <= 0x2A6DF  # Extension B
        or 0x2A700 <= code <= 0x2B73F  # Extension C
        or 0x2B740 <= code <= 0x2B81F  # Extension D
        or 0x2B820 <= code <= 0x2CEAF  # Extension E
        or 0x2CEB0 <= code <= 0x2EBEF  # Extension F
        or 0x30000 <= code <= 0x3134F  # Extension G
        or 0xF900 <= code <= 0xFAFF  # Compatibility Ideographs
        or 0x2F800 <= code <= 0x2FA1F  # Compatibility Supplement
    )


def count_ideographs(text: str) -> int:
    return sum(1 for ch in text if is_ideograph(ch))


def contains_ideographs(text: str) -> bool:
    return any(is_ideograph(ch) for ch in text)


def ideograph_ratio(text: str) -> float:
    if not text:
        return 0.0
    return count_ideographs(text) / len(text)


def detect_language(text: str) -> str:
    """
    Classify a span as english, chinese or mixed by ideograph density.

    The ratio is taken over every character of the span, whitespace and
    punctuation included. Empty input classifies as english.
    """
    ratio = ideograph_ratio(text)
    if ratio > CHINESE_RATIO_THRESHOLD:
        return CHINESE
    if ratio < ENGLISH_RATIO_THRESHOLD:
        return ENGLISH
    return MIXED


@dataclass(frozen=True)
class UnitCount:
    units: int
    characters: int
    ideographs: int

    @property
    def english_words(self) -> int:
        return self.units - self.ideographs


def count_units(text: str) -> UnitCount:
    """
    Count reading units: each maximal run of non-ideograph, non-whitespace
    characters is one word, each ideograph is one unit on its own.
    """
    cleaned = text.strip()
    words = 0
    ideographs = 0
    in_word = False
    for ch in cleaned:
        if is_ideograph(ch):
            ideographs += 1
            in_word = False
        elif ch.isspace():
            in_word = False
        elif not in_word:
            words += 1
            in_word = True
    return UnitCount(units=words + ideographs, characters=len(cleaned), ideographs=ideographs)


def first_n_units(text: str, n: int) -> str:
    """Return the leading text that spans the first ``n`` reading units."""
    if not text or n <= 0:
        return ""
    cleaned = text.strip()
    count = 0
    idx = 0
    end = 0
    length = len(cleaned)
    while idx < length and count < n:
        ch = cleaned[idx]
        if is_ideograph(ch):
            idx += 1
            count += 1
            end = idx
        elif ch.isspace():
            idx += 1
        else:
            while idx < length and not cleaned[idx].isspace() and not is_ideograph(cleaned[idx]):
                idx += 1
            count += 1
            end = idx
    return cleaned[:end]


__all__ = [
    "CHINESE",
    "ENGLISH",
    "LANGUAGES",
    "MIXED",
    "UnitCount",
    "contains_ideographs",
    "count_ideographs",
    "count_units",
    "detect_language",
    "first_n_units",
    "ideograph_ratio",
    "is_ideograph",
]
