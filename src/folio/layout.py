from __future__ import annotations

import math
from dataclasses import dataclass, replace

from .logging_utils import debug_log
from .text import CHINESE, ENGLISH, LANGUAGES, MIXED, detect_language

MIN_CHARS_PER_PAGE = 200
MAX_CHARS_PER_PAGE = 3000

# Line height as a multiple of the font size.
LINE_HEIGHT_FACTORS = {"ios": 1.6, "android": 1.75}
# Average glyph advance as a multiple of the font size.
CHAR_WIDTH_FACTORS = {
    "ios": {ENGLISH: 0.65, MIXED: 0.8, CHINESE: 1.1},
    "android": {ENGLISH: 0.6, MIXED: 0.75, CHINESE: 1.0},
}
# Denser scripts get shorter pages.
DENSITY_FACTORS = {ENGLISH: 1.0, MIXED: 0.9, CHINESE: 0.85}


@dataclass(frozen=True)
class LayoutProfile:
    """Screen chrome that is not available to the text area, in points."""

    header_height: float = 120
    controls_height: float = 80
    padding: float = 40
    status_bar_height: float = 50
    tab_bar_height: float = 80
    platform: str = "android"

    def landscape(self) -> "LayoutProfile":
        return replace(self, header_height=80, controls_height=60)

    @property
    def reserved_height(self) -> float:
        return (
            self.header_height
            + self.controls_height
            + self.status_bar_height
            + self.tab_bar_height
            + self.padding
        )


DEFAULT_PROFILE = LayoutProfile()


@dataclass(frozen=True)
class PageSizeResult:
    chars_per_page: int
    raw_chars_per_page: int
    lines_per_page: int
    chars_per_line: int
    line_height: float
    char_width: float
    available_width: float
    available_height: float
    language: str


def _platform_key(platform: str) -> str:
    return "ios" if platform.lower() == "ios" else "android"


def line_height_for(font_size: float, platform: str = "android") -> float:
    return font_size * LINE_HEIGHT_FACTORS[_platform_key(platform)]


def char_width_for(font_size: float, language: str, platform: str = "android") -> float:
    if language not in LANGUAGES:
        language = ENGLISH
    return font_size * CHAR_WIDTH_FACTORS[_platform_key(platform)][language]


def clamp_page_size(
    value: int,
    *,
    minimum: int = MIN_CHARS_PER_PAGE,
    maximum: int = MAX_CHARS_PER_PAGE,
) -> int:
    return max(minimum, min(maximum, value))


def calculate_page_size(
    font_size: float,
    viewport_width: float,
    viewport_height: float,
    language: str = ENGLISH,
    *,
    profile: LayoutProfile = DEFAULT_PROFILE,
    minimum: int = MIN_CHARS_PER_PAGE,
    maximum: int = MAX_CHARS_PER_PAGE,
) -> PageSizeResult:
    """
    Derive the character budget of one page from font size and viewport.

    The result is a pure function of its arguments so repagination with the
    same settings always reproduces the same page boundaries.
    """
    if font_size <= 0:
        raise ValueError(f"font size must be positive, got {font_size}")
    if language not in LANGUAGES:
        language = ENGLISH
    available_width = viewport_width - profile.padding
    available_height = viewport_height - profile.reserved_height
    line_height = line_height_for(font_size, profile.platform)
    char_width = char_width_for(font_size, language, profile.platform)
    lines_per_page = max(0, math.floor(available_height / line_height))
    chars_per_line = max(0, math.floor(available_width / char_width))
    raw = lines_per_page * chars_per_line
    adjusted = math.floor(raw * DENSITY_FACTORS[language])
    budget = clamp_page_size(adjusted, minimum=minimum, maximum=maximum)
    debug_log(
        "layout",
        f"font={font_size} viewport={viewport_width}x{viewport_height} "
        f"language={language} lines={lines_per_page} cols={chars_per_line} "
        f"raw={raw} budget={budget}",
    )
    return PageSizeResult(
        chars_per_page=budget,
        raw_chars_per_page=adjusted,
        lines_per_page=lines_per_page,
        chars_per_line=chars_per_line,
        line_height=line_height,
        char_width=char_width,
        available_width=available_width,
        available_height=available_height,
        language=language,
    )


def page_size_for_content(
    content: str,
    font_size: float,
    viewport_width: float,
    viewport_height: float,
    *,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> int:
    language = detect_language(content)
    return calculate_page_size(
        font_size,
        viewport_width,
        viewport_height,
        language,
        profile=profile,
    ).chars_per_page


def orientation_aware_page_size(
    content: str,
    font_size: float,
    viewport_width: float,
    viewport_height: float,
    *,
    landscape: bool = False,
    profile: LayoutProfile = DEFAULT_PROFILE,
) -> int:
    short_side = min(viewport_width, viewport_height)
    long_side = max(viewport_width, viewport_height)
    if landscape:
        width, height = long_side, short_side
        profile = profile.landscape()
    else:
        width, height = short_side, long_side
    return page_size_for_content(content, font_size, width, height, profile=profile)


__all__ = [
    "CHAR_WIDTH_FACTORS",
    "DEFAULT_PROFILE",
    "DENSITY_FACTORS",
    "LINE_HEIGHT_FACTORS",
    "LayoutProfile",
    "MAX_CHARS_PER_PAGE",
    "MIN_CHARS_PER_PAGE",
    "PageSizeResult",
    "calculate_page_size",
    "char_width_for",
    "clamp_page_size",
    "line_height_for",
    "orientation_aware_page_size",
    "page_size_for_content",
]
