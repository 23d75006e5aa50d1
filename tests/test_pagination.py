from __future__ import annotations

import threading

import pytest

from folio.pagination import (
    PLACEHOLDER_TEXT,
    Page,
    PaginationCancelled,
    closest_page,
    find_page,
    page_number_for_offset,
    pages_cover,
    pages_from_payload,
    paginate,
)

SENTENCE = "The quick brown fox jumps over the lazy dog. "


def _prose(length: int) -> str:
    return (SENTENCE * (length // len(SENTENCE) + 1))[:length]


def _assert_partition(content: str, pages: list[Page]) -> None:
    assert pages[0].start == 0
    assert pages[-1].end == len(content)
    for previous, current in zip(pages, pages[1:]):
        assert previous.end == current.start
    assert [page.number for page in pages] == list(range(1, len(pages) + 1))
    assert "".join(page.text for page in pages) == content


def test_single_page_when_content_fits() -> None:
    pages = paginate("Short text.", 200)
    assert len(pages) == 1
    assert (pages[0].start, pages[0].end) == (0, 11)


def test_five_thousand_chars_of_prose_make_four_pages() -> None:
    content = _prose(5000)
    pages = paginate(content, 1500)
    assert len(pages) == 4
    assert all(page.length <= 1500 for page in pages)
    assert sum(page.length for page in pages) == 5000
    # each cut lands after a full stop and its trailing space
    assert [page.length for page in pages] == [1485, 1485, 1485, 545]
    assert not any(page.hard_cut for page in pages)
    _assert_partition(content, pages)


def test_paragraphs_are_packed_greedily() -> None:
    paragraph = "x" * 90 + "\n\n"
    content = paragraph * 3
    pages = paginate(content, 200)
    assert [page.length for page in pages] == [184, 92]
    assert pages[0].text.endswith("\n\n")
    _assert_partition(content, pages)


def test_oversized_paragraph_without_punctuation_is_hard_cut() -> None:
    content = "a" * 1000
    pages = paginate(content, 300)
    assert [page.length for page in pages] == [300, 300, 300, 100]
    assert [page.hard_cut for page in pages] == [True, True, True, False]
    _assert_partition(content, pages)


def test_cjk_punctuation_is_a_break_point() -> None:
    content = ("字" * 9 + "。") * 50
    pages = paginate(content, 100)
    assert [page.length for page in pages] == [100] * 5
    assert all(page.text.endswith("。") for page in pages)
    assert not any(page.hard_cut for page in pages)


def test_break_searches_only_the_tail_of_the_budget() -> None:
    # the only comma sits at 10% of the budget, far before the search window
    content = "a" * 10 + "," + "b" * 489
    pages = paginate(content, 100)
    assert pages[0].length == 100
    assert pages[0].hard_cut


def test_coverage_for_mixed_content_and_budgets() -> None:
    content = (
        "Chapter 1: Beginnings\n\n"
        + _prose(2300)
        + "\n\n第二章 风暴\n\n"
        + "雨下了一整夜，风没有停。" * 120
        + "\n\n"
        + "z" * 3100
        + "\n\nThe end."
    )
    for budget in (200, 333, 576, 1500, 3000):
        pages = paginate(content, budget)
        _assert_partition(content, pages)
        assert all(0 < page.length <= budget for page in pages)


def test_pagination_is_deterministic() -> None:
    content = _prose(7777) + "\n\n" + "文字。" * 500
    first = paginate(content, 640)
    second = paginate(content, 640)
    assert [(p.start, p.end) for p in first] == [(p.start, p.end) for p in second]


def test_duplicate_paragraphs_get_distinct_offsets() -> None:
    content = ("Same paragraph.\n\n" * 40).strip()
    pages = paginate(content, 200)
    _assert_partition(content, pages)
    assert len({page.start for page in pages}) == len(pages)


@pytest.mark.parametrize("content", ["", "   \n\n\t  "])
def test_empty_content_yields_placeholder_page(content: str) -> None:
    pages = paginate(content, 500)
    assert len(pages) == 1
    assert pages[0].placeholder
    assert pages[0].text == PLACEHOLDER_TEXT
    assert pages[0].start == 0
    assert pages[0].end == len(content)


def test_invalid_budget_rejected() -> None:
    with pytest.raises(ValueError):
        paginate("text that is long enough", 0)


def test_cancelled_segmentation() -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PaginationCancelled):
        paginate(_prose(5000), 500, cancel_event=cancel)


def test_page_lookup() -> None:
    content = _prose(5000)
    pages = paginate(content, 1500)
    assert find_page(pages, 0).number == 1
    assert find_page(pages, 1484).number == 1
    assert find_page(pages, 1485).number == 2
    assert find_page(pages, 5000) is None
    assert page_number_for_offset(pages, 5000) == 4
    assert page_number_for_offset([], 10) == 1


def test_closest_page_prefers_nearest_start() -> None:
    pages = [
        Page(number=1, start=0, end=10, text=""),
        Page(number=2, start=20, end=30, text=""),
    ]
    assert closest_page(pages, 14).number == 2
    assert closest_page(pages, 9).number == 1
    assert closest_page([], 3) is None


def test_pages_round_trip_through_payload() -> None:
    content = _prose(3000)
    pages = paginate(content, 700)
    restored = pages_from_payload(content, [page.to_payload() for page in pages])
    assert restored == pages


def test_pages_from_payload_rejects_gaps() -> None:
    content = _prose(3000)
    payload = [page.to_payload() for page in paginate(content, 700)]
    payload[1]["start"] += 1
    assert pages_from_payload(content, payload) is None
    assert pages_from_payload(content, [{"number": "1"}]) is None
    assert not pages_cover(content, [])
