from .book_io import BookState, BookStore, deserialize_book_state, serialize_book_state
from .chapters import Chapter, detect_chapters
from .decoder import ContentEmptyError, DecodeError, DecodedDocument, decode_bytes, decode_file
from .layout import LayoutProfile, calculate_page_size, page_size_for_content
from .narration import Boundary, Done, Failed, NarrationEngine, NarrationError, Stopped
from .pagination import Page, PaginationCancelled, paginate
from .repagination import Repaginator, repaginate, resolve_page
from .text import count_units, detect_language
from .tracker import MonotonicityViolation, ReadingPositionTracker, TrackerStateError

__all__ = [
    "BookState",
    "BookStore",
    "Boundary",
    "Chapter",
    "ContentEmptyError",
    "DecodeError",
    "DecodedDocument",
    "Done",
    "Failed",
    "LayoutProfile",
    "MonotonicityViolation",
    "NarrationEngine",
    "NarrationError",
    "Page",
    "PaginationCancelled",
    "ReadingPositionTracker",
    "Repaginator",
    "Stopped",
    "TrackerStateError",
    "calculate_page_size",
    "count_units",
    "decode_bytes",
    "decode_file",
    "deserialize_book_state",
    "detect_chapters",
    "detect_language",
    "page_size_for_content",
    "paginate",
    "repaginate",
    "resolve_page",
    "serialize_book_state",
]
