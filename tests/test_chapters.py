from __future__ import annotations

from folio.chapters import (
    Chapter,
    chapter_for_offset,
    chapter_for_page,
    detect_chapters,
    find_chapter,
    match_heading,
)
from folio.pagination import paginate


def test_chinese_headings_resolve_to_pages() -> None:
    content = "第一章 开端\n" + "甲" * 300 + "\n第二章 风暴\n" + "乙" * 300
    pages = paginate(content, 200)
    assert len(pages) == 4
    chapters = detect_chapters(content, pages)
    assert [chapter.title for chapter in chapters] == ["开端", "风暴"]
    first, second = chapters
    assert first.start_offset == 0
    assert first.start_page == 1
    assert second.start_offset == content.index("第二章")
    assert second.start_page == 2
    assert first.end_page == second.start_page - 1
    assert second.end_page == 4


def test_english_numbered_and_roman_headings() -> None:
    content = (
        "Chapter 1: The Start\n\nIt began.\n\n"
        "CHAPTER IV. Later\n\nThen.\n\n"
        "3. Third Part\n\nMore.\n\n"
        "IX. Ninth\n\nEnd."
    )
    pages = paginate(content, 300)
    chapters = detect_chapters(content, pages)
    assert [chapter.title for chapter in chapters] == ["The Start", "Later", "Third Part", "Ninth"]
    assert [chapter.id for chapter in chapters] == ["chapter-1", "chapter-2", "chapter-3", "chapter-4"]
    assert chapters[1].heading == "CHAPTER IV. Later"


def test_section_heading_and_bare_chapter_line() -> None:
    content = "第3节\n内容。\n\nChapter 7\n\nBody."
    chapters = detect_chapters(content, paginate(content, 500))
    # without a title the heading line itself is used
    assert [chapter.title for chapter in chapters] == ["第3节", "Chapter 7"]


def test_first_matching_pattern_wins() -> None:
    match = match_heading("Chapter 12. Storm")
    assert match is not None
    assert match.group("num") == "12"
    assert match.group("title") == "Storm"
    assert match_heading("just a sentence.") is None


def test_offset_comes_from_the_matching_line() -> None:
    content = "Preface quoting 2. Storm inline.\n\n2. Storm\nbody text here."
    chapters = detect_chapters(content, paginate(content, 500))
    assert len(chapters) == 1
    assert chapters[0].start_offset == content.index("\n2. Storm") + 1


def test_indented_heading_offset_skips_leading_space() -> None:
    content = "Intro line.\n  Chapter 3 Rise\nText."
    chapters = detect_chapters(content, paginate(content, 500))
    assert chapters[0].start_offset == content.index("Chapter 3")
    assert chapters[0].title == "Rise"


def test_no_headings_yields_one_synthetic_chapter() -> None:
    content = "Just some prose without any headings at all. " * 100
    pages = paginate(content, 500)
    chapters = detect_chapters(content, pages)
    assert len(chapters) == 1
    chapter = chapters[0]
    assert chapter.title == "Chapter 1"
    assert chapter.start_page == 1
    assert chapter.start_offset == 0
    assert chapter.end_page == pages[-1].number


def test_chapter_lookup_helpers() -> None:
    content = "第一章 开端\n" + "甲" * 300 + "\n第二章 风暴\n" + "乙" * 300
    chapters = detect_chapters(content, paginate(content, 200))
    assert chapter_for_page(chapters, 1).title == "开端"
    assert chapter_for_page(chapters, 3).title == "风暴"
    assert chapter_for_page(chapters, 99).title == "开端"
    assert chapter_for_offset(chapters, 400).title == "风暴"
    assert chapter_for_offset(chapters, 5).title == "开端"
    assert find_chapter(chapters, "chapter-2").title == "风暴"
    assert find_chapter(chapters, "missing") is None
    assert chapter_for_page([], 1) is None


def test_chapter_payload_round_trip() -> None:
    chapter = Chapter(id="chapter-1", title="One", start_offset=0, start_page=1, end_page=3, heading="1. One")
    assert Chapter.from_payload(chapter.to_payload()) == chapter
    assert Chapter.from_payload({"id": 1}) is None
