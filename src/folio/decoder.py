from __future__ import annotations

import re
import unicodedata
import warnings
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass
from html.entities import name2codepoint
from io import BytesIO
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from bs4 import (
    BeautifulSoup,
    Doctype,
    FeatureNotFound,
    NavigableString,
    XMLParsedAsHTMLWarning,
)  # type: ignore

from .logging_utils import debug_log

HTML_EXTS = (".xhtml", ".html", ".htm")
TEXT_EXTS = (".txt", ".text", ".md")
EPUB_EXTS = (".epub",)
SUPPORTED_EXTS = TEXT_EXTS + EPUB_EXTS
_TEXT_ENCODINGS = ("utf-8-sig", "gb18030", "big5")
_UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")
_DC_NS = "{http://purl.org/dc/elements/1.1/}"
_XML_ENTITIES = frozenset({"amp", "lt", "gt", "quot", "apos"})
_NAMED_ENTITY_RE = re.compile(r"&([A-Za-z][A-Za-z0-9]*);")

# Block elements that should start on a new line when collapsing to text.
BLOCK_LEVEL_TAGS = {
    "address",
    "article",
    "aside",
    "blockquote",
    "dd",
    "div",
    "dl",
    "dt",
    "figcaption",
    "figure",
    "footer",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "header",
    "hr",
    "li",
    "main",
    "ol",
    "p",
    "pre",
    "section",
    "table",
    "tr",
    "ul",
}
# Paragraph-like blocks get a blank line so they become pagination units.
PARAGRAPH_TAGS = {"p", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "pre"}


class DecodeError(ValueError):
    """Raised when a document cannot be decoded into text."""


class UnsupportedFormatError(DecodeError):
    """Raised for file types the decoder does not handle."""


class ContentEmptyError(ValueError):
    """Raised when a document decodes but holds no readable text."""


@dataclass
class DecodedDocument:
    title: str
    author: str | None
    content: str
    source_format: str


def _title_from_filename(filename: str) -> str:
    stem = Path(filename).stem.strip()
    return stem or "Untitled"


def _decode_text_bytes(raw: bytes) -> str:
    if raw.startswith(_UTF16_BOMS):
        try:
            return raw.decode("utf-16")
        except UnicodeDecodeError as exc:
            raise DecodeError("Invalid UTF-16 text") from exc
    for enc in _TEXT_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    raise DecodeError("Unable to detect the text encoding")


def _normalize_content(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\xa0", " ")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def decode_text(raw: bytes, filename: str) -> DecodedDocument:
    content = _normalize_content(_decode_text_bytes(raw))
    if not content:
        raise ContentEmptyError(f"{filename} contains no readable text")
    return DecodedDocument(
        title=_title_from_filename(filename),
        author=None,
        content=content,
        source_format="txt",
    )


# ---------- epub structure ----------


def _zip_read_text(zf: zipfile.ZipFile, name: str) -> str:
    raw = zf.read(name)
    for enc in ("utf-8", "utf-16", "gb18030"):
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = _zip_read_text(zf, "META-INF/container.xml")
        root = ET.fromstring(container)
        ns = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
        for rf in root.findall(".//c:rootfile", ns):
            full = rf.attrib.get("full-path")
            if full:
                return full
    except (KeyError, ET.ParseError):
        pass
    for name in zf.namelist():
        if name.lower().endswith(".opf"):
            return name
    raise DecodeError("Invalid EPUB: package document (OPF) not found")


def _read_opf(zf: zipfile.ZipFile) -> tuple[str, ET.Element]:
    opf_path = _find_opf_path(zf)
    try:
        return opf_path, ET.fromstring(_zip_read_text(zf, opf_path))
    except KeyError as exc:
        raise DecodeError(f"Invalid EPUB: cannot read {opf_path}") from exc
    except ET.ParseError as exc:
        raise DecodeError(f"Invalid EPUB: malformed package document ({exc})") from exc


def _spine_items(zf: zipfile.ZipFile, opf_path: str, root: ET.Element) -> list[str]:
    nsmap = {"opf": root.tag.split("}")[0].strip("{")} if root.tag.startswith("{") else {}
    prefix = "opf:" if nsmap else ""
    manifest: dict[str, str] = {}
    for item in root.findall(f".//{prefix}manifest/{prefix}item", nsmap):
        iid = item.attrib.get("id")
        href = item.attrib.get("href")
        if iid and href:
            manifest[iid] = unquote(href)
    items = [
        manifest[ref.attrib["idref"]]
        for ref in root.findall(f".//{prefix}spine/{prefix}itemref", nsmap)
        if ref.attrib.get("idref") in manifest
    ]
    base = str(PurePosixPath(opf_path).parent)
    resolved = []
    for href in items:
        if not href.lower().endswith(HTML_EXTS):
            continue
        path = str(PurePosixPath(base) / href) if base not in ("", ".", "/") else href
        resolved.append(PurePosixPath(path).as_posix())
    if not resolved:
        resolved = [n for n in zf.namelist() if n.lower().endswith(HTML_EXTS)]
    return resolved


def _metadata_text(root: ET.Element, tag: str) -> str | None:
    for el in root.iter(f"{_DC_NS}{tag}"):
        value = "".join(el.itertext()).strip()
        if value:
            return unicodedata.normalize("NFKC", value)
    return None


def _replace_html_entities(html: str) -> str:
    """Resolve HTML named entities the XML parser does not know (``&nbsp;`` etc.)."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in _XML_ENTITIES or name not in name2codepoint:
            return match.group(0)
        return chr(name2codepoint[name])

    return _NAMED_ENTITY_RE.sub(_sub, html)


def _soup_from_html(html: str) -> BeautifulSoup:
    stripped = html.lstrip()
    lower_head = stripped[:200].lower()
    xmlish = stripped.startswith("<?xml") or ("<html" in lower_head and "xmlns" in lower_head)
    if xmlish:
        xml_html = _replace_html_entities(html)
        for parser in ("lxml-xml", "xml"):
            try:
                return BeautifulSoup(xml_html, parser)
            except FeatureNotFound:
                continue
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
        return BeautifulSoup(html, "html.parser")


def html_to_text(html: str) -> str:
    """Collapse an XHTML document to plain text with paragraph breaks kept."""
    soup = _soup_from_html(html)
    for node in list(soup.contents):
        if isinstance(node, Doctype):
            node.extract()
        elif isinstance(node, NavigableString):
            stripped = str(node).strip()
            if stripped and stripped.upper().startswith("HTML PUBLIC"):
                node.extract()
    for tag in soup.find_all(["script", "style", "title", "rp", "rt"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_LEVEL_TAGS):
        tag.insert_before("\n\n" if tag.name in PARAGRAPH_TAGS else "\n")
        tag.insert_after("\n")
    text = soup.get_text(separator="")
    lines = [re.sub(r"\s+", " ", line).strip() for line in text.replace("\xa0", " ").split("\n")]
    return _normalize_content("\n".join(lines))


def decode_epub(raw: bytes, filename: str) -> DecodedDocument:
    try:
        zf = zipfile.ZipFile(BytesIO(raw))
    except zipfile.BadZipFile as exc:
        raise DecodeError(f"Invalid EPUB: {filename} is not a zip archive") from exc
    with zf:
        opf_path, root = _read_opf(zf)
        parts: list[str] = []
        for name in _spine_items(zf, opf_path, root):
            try:
                html = _zip_read_text(zf, name)
            except KeyError:
                debug_log("decoder", f"spine item missing from archive: {name}")
                continue
            text = html_to_text(html)
            if text:
                parts.append(text)
        title = _metadata_text(root, "title") or _title_from_filename(filename)
        author = _metadata_text(root, "creator")
    content = "\n\n".join(parts).strip()
    if not content:
        raise ContentEmptyError(f"No readable content found in {filename}")
    debug_log("decoder", f"{filename}: {len(parts)} spine documents, {len(content)} chars")
    return DecodedDocument(title=title, author=author, content=content, source_format="epub")


def decode_bytes(raw: bytes, filename: str) -> DecodedDocument:
    suffix = Path(filename).suffix.lower()
    if suffix in EPUB_EXTS:
        return decode_epub(raw, filename)
    if suffix in TEXT_EXTS:
        return decode_text(raw, filename)
    raise UnsupportedFormatError(f"Unsupported file format: {suffix or filename}")


def decode_file(path: Path) -> DecodedDocument:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise DecodeError(f"Cannot read {path}: {exc}") from exc
    return decode_bytes(raw, path.name)


__all__ = [
    "ContentEmptyError",
    "DecodeError",
    "DecodedDocument",
    "SUPPORTED_EXTS",
    "UnsupportedFormatError",
    "decode_bytes",
    "decode_epub",
    "decode_file",
    "decode_text",
    "html_to_text",
]
