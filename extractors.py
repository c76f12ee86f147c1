"""Plain-text extraction for teacher-uploaded topic documents."""

import io
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from pathlib import PurePath
from typing import Callable, Dict, List

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from engines.validation import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_FILE_TYPES = ("pdf", "docx", "doc", "txt", "md", "pptx")
MAX_UPLOAD_BYTES = 25 * 1024 * 1024
NO_SLIDE_TEXT = "[No text content found in slides]"

_SLIDE_NAME = re.compile(r"^ppt/slides/slide(\d+)\.xml$")


def file_type_for(filename: str) -> str:
    """Return the lower-case extension of ``filename`` or raise for unsupported types."""
    suffix = PurePath(filename or "").suffix.lower().lstrip(".")
    if suffix not in ALLOWED_FILE_TYPES:
        raise ValidationError("Only PDF, Word, PowerPoint, and text files are allowed")
    return suffix


def _local_name(tag: str) -> str:
    return tag.split("}")[-1]


def _open_archive(content: bytes, label: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise ValidationError(f"Failed to extract text: not a valid {label} file") from exc


def _slide_text(xml_bytes: bytes) -> str:
    root = ET.fromstring(xml_bytes)
    runs = [
        (elem.text or "").strip()
        for elem in root.iter()
        if _local_name(elem.tag) == "t" and elem.text and elem.text.strip()
    ]
    return " ".join(runs)


def extract_pptx(content: bytes) -> str:
    with _open_archive(content, "PowerPoint") as archive:
        numbered = []
        for name in archive.namelist():
            match = _SLIDE_NAME.match(name)
            if match:
                numbered.append((int(match.group(1)), name))
        slides: List[str] = []
        for _, name in sorted(numbered):
            try:
                text = _slide_text(archive.read(name))
            except ET.ParseError as exc:
                logger.warning("Skipping unreadable slide %s: %s", name, exc)
                continue
            if text.strip():
                slides.append(text.strip())

    if not slides:
        return NO_SLIDE_TEXT
    return "\n\n".join(f"[Slide {index}]\n{text}" for index, text in enumerate(slides, start=1))


def extract_docx(content: bytes) -> str:
    with _open_archive(content, "Word") as archive:
        try:
            xml_bytes = archive.read("word/document.xml")
        except KeyError as exc:
            raise ValidationError("Failed to extract text: Word file has no document body") from exc
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        raise ValidationError("Failed to extract text: Word file is damaged") from exc

    paragraphs: List[str] = []
    for paragraph in root.iter():
        if _local_name(paragraph.tag) != "p":
            continue
        text = "".join(
            node.text or "" for node in paragraph.iter() if _local_name(node.tag) == "t"
        )
        if text.strip():
            paragraphs.append(text.strip())
    return "\n".join(paragraphs)


def extract_pdf(content: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as exc:
        raise ValidationError(f"Failed to extract text: {exc}") from exc
    return "\n\n".join(page.strip() for page in pages if page.strip())


def extract_plain(content: bytes) -> str:
    return content.decode("utf-8", errors="replace")


def _unsupported_doc(content: bytes) -> str:
    raise ValidationError("Legacy .doc files cannot be read. Please save the file as .docx")


_EXTRACTORS: Dict[str, Callable[[bytes], str]] = {
    "pptx": extract_pptx,
    "docx": extract_docx,
    "pdf": extract_pdf,
    "txt": extract_plain,
    "md": extract_plain,
    "doc": _unsupported_doc,
}


def extract_text(filename: str, content: bytes) -> str:
    file_type = file_type_for(filename)
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError("File is larger than the 25 MB upload limit")
    return _EXTRACTORS[file_type](content)
