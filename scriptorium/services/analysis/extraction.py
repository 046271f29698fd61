from __future__ import annotations

import io
import posixpath
import re
import zipfile
from html import unescape
from xml.etree import ElementTree

from scriptorium.core.errors import UnsupportedFormat, ValidationError


CONTENT_TYPE_TEXT = "text/plain"
CONTENT_TYPE_PDF = "application/pdf"
CONTENT_TYPE_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
CONTENT_TYPE_EPUB = "application/epub+zip"

ALLOWED_CONTENT_TYPES: frozenset[str] = frozenset(
    {CONTENT_TYPE_TEXT, CONTENT_TYPE_PDF, CONTENT_TYPE_DOCX, CONTENT_TYPE_EPUB}
)

_EXTENSION_TYPES = {
    ".txt": CONTENT_TYPE_TEXT,
    ".pdf": CONTENT_TYPE_PDF,
    ".docx": CONTENT_TYPE_DOCX,
    ".epub": CONTENT_TYPE_EPUB,
}

_WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"
_CONTAINER_NS = "{urn:oasis:names:tc:opendocument:xmlns:container}"
_OPF_NS = "{http://www.idpf.org/2007/opf}"

_BLOCK_TAG_RE = re.compile(r"</(p|div|h[1-6]|li|br|tr)\s*>|<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_STYLE_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def resolve_content_type(content_type: str | None, filename: str | None = None) -> str | None:
    """Normalize a declared content type, falling back to the file extension."""
    if content_type:
        normalized = content_type.split(";", 1)[0].strip().lower()
        if normalized in ALLOWED_CONTENT_TYPES:
            return normalized
    if filename:
        extension = posixpath.splitext(filename.lower())[1]
        return _EXTENSION_TYPES.get(extension)
    return None


def extract_text(data: bytes, content_type: str, filename: str | None = None) -> str:
    resolved = resolve_content_type(content_type, filename)
    if resolved == CONTENT_TYPE_TEXT:
        return data.decode("utf-8", errors="replace")
    if resolved == CONTENT_TYPE_DOCX:
        return extract_docx(data)
    if resolved == CONTENT_TYPE_EPUB:
        return extract_epub(data)
    if resolved == CONTENT_TYPE_PDF:
        raise UnsupportedFormat(
            "PDF text extraction is not supported. Convert the manuscript to DOCX or TXT and upload again.",
            details={"fileType": CONTENT_TYPE_PDF},
        )
    raise UnsupportedFormat(f"File type {content_type!r} not supported")


def _open_zip(data: bytes, label: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ValidationError(f"{label} file is not a valid archive") from exc


def extract_docx(data: bytes) -> str:
    # Paragraph text from word/document.xml, one paragraph per line.
    with _open_zip(data, "DOCX") as archive:
        try:
            document = archive.read("word/document.xml")
        except KeyError as exc:
            raise ValidationError("DOCX file has no document body") from exc
    try:
        root = ElementTree.fromstring(document)
    except ElementTree.ParseError as exc:
        raise ValidationError("DOCX document body is malformed") from exc
    paragraphs: list[str] = []
    for paragraph in root.iter(f"{_WORD_NS}p"):
        parts: list[str] = []
        for node in paragraph.iter():
            if node.tag == f"{_WORD_NS}t" and node.text:
                parts.append(node.text)
            elif node.tag == f"{_WORD_NS}tab":
                parts.append("\t")
            elif node.tag in (f"{_WORD_NS}br", f"{_WORD_NS}cr"):
                parts.append("\n")
        paragraphs.append("".join(parts))
    return "\n".join(paragraphs).strip()


def html_to_text(markup: str) -> str:
    body = _SCRIPT_STYLE_RE.sub("", markup)
    body = _BLOCK_TAG_RE.sub("\n", body)
    body = _TAG_RE.sub("", body)
    body = unescape(body)
    lines = [line.strip() for line in body.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def _epub_spine(archive: zipfile.ZipFile) -> list[str]:
    try:
        container = ElementTree.fromstring(archive.read("META-INF/container.xml"))
    except (KeyError, ElementTree.ParseError) as exc:
        raise ValidationError("EPUB file has no readable container") from exc
    rootfile = container.find(f".//{_CONTAINER_NS}rootfile")
    if rootfile is None or not rootfile.get("full-path"):
        raise ValidationError("EPUB container does not name a package document")
    opf_path = rootfile.get("full-path", "")
    try:
        package = ElementTree.fromstring(archive.read(opf_path))
    except (KeyError, ElementTree.ParseError) as exc:
        raise ValidationError("EPUB package document is unreadable") from exc
    base = posixpath.dirname(opf_path)
    manifest = {
        item.get("id"): item.get("href")
        for item in package.iter(f"{_OPF_NS}item")
        if item.get("id") and item.get("href")
    }
    paths: list[str] = []
    for itemref in package.iter(f"{_OPF_NS}itemref"):
        href = manifest.get(itemref.get("idref"))
        if href:
            paths.append(posixpath.normpath(posixpath.join(base, href)) if base else href)
    return paths


def extract_epub(data: bytes) -> str:
    # Spine order defines reading order; documents missing from the archive are skipped.
    with _open_zip(data, "EPUB") as archive:
        sections: list[str] = []
        for path in _epub_spine(archive):
            try:
                markup = archive.read(path).decode("utf-8", errors="replace")
            except KeyError:
                continue
            text = html_to_text(markup)
            if text:
                sections.append(text)
    return "\n\n".join(sections)
