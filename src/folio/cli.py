from __future__ import annotations

import argparse
import socket
import sys
import time
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .book_io import BookStore
from .chapters import chapter_for_offset, detect_chapters
from .decoder import ContentEmptyError, DecodeError, decode_file
from .layout import LayoutProfile
from .library import Viewport, import_file, list_books_sorted, open_tracker, page_budget, record_position
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .pagination import paginate
from .settings import load_settings
from .text import detect_language
from .timing import format_minutes, remaining_minutes, words_per_minute
from .web import ReaderConfig, create_app

console = Console()


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("folio")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


def _add_common_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"folio {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print pagination, tracker and repagination diagnostics.",
    )


def _add_layout_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--font-size",
        type=float,
        help="Font size in points (default: saved setting or 16).",
    )
    parser.add_argument("--width", type=float, default=390, help="Viewport width (default: 390).")
    parser.add_argument("--height", type=float, default=844, help="Viewport height (default: 844).")
    parser.add_argument("--landscape", action="store_true", help="Lay pages out for landscape.")
    parser.add_argument(
        "--platform",
        choices=["android", "ios"],
        default="android",
        help="Font metrics to assume (default: android).",
    )


def build_paginate_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio paginate",
        description="Split a .txt or .epub into pages for a given viewport and show the result.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="Path to a .txt or .epub file.")
    _add_layout_flags(ap)
    ap.add_argument(
        "--chars-per-page",
        type=int,
        help="Use this page budget instead of deriving it from the viewport.",
    )
    return ap


def build_chapters_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio chapters",
        description="List the chapter headings detected in a .txt or .epub.",
    )
    _add_common_flags(ap)
    ap.add_argument("input_path", help="Path to a .txt or .epub file.")
    _add_layout_flags(ap)
    return ap


def build_import_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio import",
        description="Import books into a library directory.",
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory (created if missing).")
    ap.add_argument("files", nargs="+", help="One or more .txt/.epub files.")
    _add_layout_flags(ap)
    return ap


def build_list_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="folio list", description="List the books in a library.")
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory.")
    ap.add_argument(
        "--sort",
        choices=["author", "recent", "read"],
        default="author",
        help="Sort order (default: author).",
    )
    return ap


def build_narrate_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio narrate",
        description=(
            "Dry-run narration of a stored book: advance the reading position from the "
            "words-per-minute estimate and save where it stops."
        ),
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory.")
    ap.add_argument("book_id", help="Book id as shown by `folio list`.")
    ap.add_argument("--rate", type=float, help="Speech rate (default: saved setting).")
    ap.add_argument(
        "--minutes",
        type=float,
        default=5.0,
        help="Simulated listening time in minutes (default: 5).",
    )
    ap.add_argument(
        "--step",
        type=float,
        default=1.0,
        help="Simulated seconds per tick (default: 1).",
    )
    ap.add_argument(
        "--realtime",
        action="store_true",
        help="Sleep between ticks instead of simulating the clock.",
    )
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio web",
        description="Serve a library to the reader client over HTTP.",
    )
    _add_common_flags(ap)
    ap.add_argument("root", help="Library directory.")
    ap.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host interface for the web server (default: 0.0.0.0).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=2047,
        help="Port for the web server (default: 2047).",
    )
    ap.add_argument("--width", type=float, default=390, help="Default viewport width (default: 390).")
    ap.add_argument("--height", type=float, default=844, help="Default viewport height (default: 844).")
    ap.add_argument(
        "--platform",
        choices=["android", "ios"],
        default="android",
        help="Font metrics to assume (default: android).",
    )
    ap.add_argument(
        "--tick-interval",
        type=float,
        default=0.1,
        help="Seconds between narration progress ticks (default: 0.1).",
    )
    return ap


def _viewport_from_args(args: argparse.Namespace) -> Viewport:
    return Viewport(width=args.width, height=args.height, landscape=args.landscape)


def _decode_or_exit(path: Path):
    try:
        return decode_file(path)
    except ContentEmptyError as exc:
        raise SystemExit(f"No readable content: {exc}") from exc
    except DecodeError as exc:
        raise SystemExit(str(exc)) from exc


def _font_size(args: argparse.Namespace, root: Path | None = None) -> float:
    if args.font_size is not None:
        if args.font_size <= 0:
            raise SystemExit("--font-size must be positive.")
        return args.font_size
    return load_settings(root or Path.cwd()).font_size


def _preview(text: str, width: int = 40) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 1] + "…"


def _run_paginate(args: argparse.Namespace) -> int:
    document = _decode_or_exit(Path(args.input_path))
    if args.chars_per_page is not None:
        if args.chars_per_page <= 0:
            raise SystemExit("--chars-per-page must be positive.")
        budget = args.chars_per_page
    else:
        budget = page_budget(
            document.content,
            _font_size(args),
            _viewport_from_args(args),
            LayoutProfile(platform=args.platform),
        )
    pages = paginate(document.content, budget)
    table = Table(title=f"{document.title}: {len(pages)} pages ({budget} chars/page)")
    table.add_column("Page", justify="right")
    table.add_column("Range")
    table.add_column("Chars", justify="right")
    table.add_column("Cut")
    table.add_column("Starts with")
    for page in pages:
        table.add_row(
            str(page.number),
            f"{page.start}–{page.end}",
            str(page.length),
            "hard" if page.hard_cut else "",
            _preview(page.text),
        )
    console.print(f"Language: {detect_language(document.content)}")
    console.print(table)
    return 0


def _run_chapters(args: argparse.Namespace) -> int:
    document = _decode_or_exit(Path(args.input_path))
    budget = page_budget(
        document.content,
        _font_size(args),
        _viewport_from_args(args),
        LayoutProfile(platform=args.platform),
    )
    pages = paginate(document.content, budget)
    chapters = detect_chapters(document.content, pages)
    table = Table(title=f"{document.title}: {len(chapters)} chapters")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Offset", justify="right")
    table.add_column("Pages")
    for index, chapter in enumerate(chapters, start=1):
        table.add_row(str(index), chapter.title, str(chapter.start_offset), f"{chapter.start_page}–{chapter.end_page}")
    console.print(table)
    return 0


def _run_import(args: argparse.Namespace) -> int:
    root = Path(args.root).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    store = BookStore(root)
    font_size = _font_size(args, root)
    profile = LayoutProfile(platform=args.platform)
    failures = 0
    for raw_path in args.files:
        path = Path(raw_path).expanduser()
        try:
            state = import_file(store, path, font_size=font_size, viewport=_viewport_from_args(args), profile=profile)
        except ContentEmptyError as exc:
            console.print(f"[yellow]Skipped[/yellow] {path.name}: no readable content ({exc})")
            failures += 1
            continue
        except DecodeError as exc:
            console.print(f"[red]Failed[/red] {path.name}: {exc}")
            failures += 1
            continue
        console.print(
            f"[green]Imported[/green] {state.title} as [bold]{state.id}[/bold] "
            f"({state.total_pages} pages, {len(state.chapters)} chapters)"
        )
    return 1 if failures else 0


def _run_list(args: argparse.Namespace) -> int:
    root = Path(args.root).expanduser().resolve()
    if not root.is_dir():
        raise SystemExit(f"Library not found: {root}")
    books = list_books_sorted(BookStore(root), args.sort)
    if not books:
        console.print("No books yet.")
        return 0
    table = Table()
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Pages", justify="right")
    table.add_column("Progress", justify="right")
    for book in books:
        table.add_row(book.id, book.title, book.author or "", str(book.total_pages), f"{book.progress:.1%}")
    console.print(table)
    return 0


class _SimulatedClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _run_narrate(args: argparse.Namespace) -> int:
    root = Path(args.root).expanduser().resolve()
    store = BookStore(root)
    state = store.load(args.book_id)
    if state is None:
        raise SystemExit(f"Book not found: {args.book_id}")
    if args.step <= 0:
        raise SystemExit("--step must be positive.")
    settings = load_settings(root)
    if args.rate is not None:
        if args.rate <= 0:
            raise SystemExit("--rate must be positive.")
        settings.speech_rate = args.rate

    clock = _SimulatedClock()
    tracker = open_tracker(
        state,
        settings,
        clock=time.monotonic if args.realtime else clock,
        auto_tick=False,
    )
    wpm = words_per_minute(settings.speech_rate)
    console.print(
        f"{state.title}: page {state.current_page}/{state.total_pages}, "
        f"{format_minutes(remaining_minutes(state.pages, state.current_page, wpm))} left at {wpm} wpm"
    )
    with tracker:
        session = tracker.start_narration()
        if session is None:
            console.print("Nothing left to read.")
            return 0
        total_seconds = max(0.0, args.minutes * 60)
        elapsed = 0.0
        columns = (
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
        )
        with Progress(*columns, console=console, transient=False) as progress:
            task_id = progress.add_task("Narrating", total=max(1, tracker.content_length))
            progress.update(task_id, completed=tracker.character_offset)
            while elapsed < total_seconds:
                if args.realtime:
                    time.sleep(args.step)
                else:
                    clock.advance(args.step)
                elapsed += args.step
                tracker.tick()
                progress.update(
                    task_id,
                    completed=tracker.character_offset,
                    description=f"Narrating p.{tracker.current_page}/{len(tracker.pages)}",
                )
                if tracker.character_offset >= tracker.content_length:
                    tracker.complete_narration()
                    break
        if tracker.is_narrating:
            tracker.stop_narration()
    if settings.auto_bookmark:
        state.set_auto_bookmark(tracker.character_offset)
    record_position(state, tracker)
    store.save(state)
    chapter = chapter_for_offset(state.chapters, state.character_offset)
    console.print(
        f"Stopped at offset {state.character_offset} ({state.progress:.1%}), "
        f"page {state.current_page}" + (f", {chapter.title}" if chapter else "")
    )
    if tracker.violation_count:
        console.print(f"[yellow]{tracker.violation_count} backward estimate(s) discarded[/yellow]")
    return 0


def _run_web(args: argparse.Namespace) -> None:
    root = Path(args.root).expanduser().resolve()
    root.mkdir(parents=True, exist_ok=True)
    config = ReaderConfig(
        root=root,
        viewport_width=args.width,
        viewport_height=args.height,
        platform=args.platform,
        tick_interval=args.tick_interval,
    )
    app = create_app(config)
    public_ip = _resolve_local_ip(args.host)
    url = f"http://{public_ip}:{args.port}/"
    print(f"Serving folio library from {root}")
    print(f"Web URL: {url}")
    print("Press Ctrl+C to stop.\n")
    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level="debug" if args.debug else "info",
            log_config=build_uvicorn_log_config(debug=args.debug),
        )
    finally:
        app.state.close_books()


def _resolve_local_ip(host: str) -> str:
    if host not in {"", "0.0.0.0"}:
        return host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


_COMMANDS = {
    "paginate": (build_paginate_parser, _run_paginate),
    "chapters": (build_chapters_parser, _run_chapters),
    "import": (build_import_parser, _run_import),
    "list": (build_list_parser, _run_list),
    "narrate": (build_narrate_parser, _run_narrate),
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="folio",
        description="Paginate books, track reading position and serve a reader library.",
        epilog="Commands: paginate, chapters, import, list, narrate, web. Use `folio <command> -h` for details.",
    )
    _add_common_flags(ap)
    return ap


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] == "web":
        web_args = build_web_parser().parse_args(argv[1:])
        set_debug_logging(web_args.debug)
        _run_web(web_args)
        return 0
    if argv and argv[0] in _COMMANDS:
        build, run = _COMMANDS[argv[0]]
        args = build().parse_args(argv[1:])
        if args.debug:
            set_debug_logging(True)
        return run(args)

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    args = parser.parse_args(argv)
    if args.debug:
        set_debug_logging(True)
    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
