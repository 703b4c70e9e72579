"""Document loading, text sanitization and paragraph-aware chunking."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import pypdf

from .config import config
from .models import Chunk

logger = config.get_logger(__name__)

CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
ESCAPED_UNICODE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")
PAGE_MARKER_RE = re.compile(r"^\s*-{2,}\s*Page\s+\d+\s*-{2,}\s*$", re.IGNORECASE)
PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")
SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")
HEADER_SPLIT_RE = re.compile(r"^(?=#{1,6}\s)", re.MULTILINE)

MARKDOWN_SUFFIXES = (".md", ".markdown")


class DocumentLoader:
    """Handles loading of PDF, Markdown and TXT documents."""

    @staticmethod
    def load_pdf(file_path: Path) -> str:
        """Load text content from a PDF file.

        Each page is prefixed with a ``--- Page N ---`` marker which the chunker
        later recognizes and strips.

        Returns:
            The extracted text content from the PDF as a string.
        """
        try:
            with file_path.open("rb") as file:
                pdf_reader = pypdf.PdfReader(file)
                text = ""
                for page_num, page in enumerate(pdf_reader.pages):
                    page_text = page.extract_text()
                    text += f"\n--- Page {page_num + 1} ---\n{page_text}\n"
        except Exception:
            logger.exception("Error loading PDF %s", file_path)
            raise
        else:
            return text

    @staticmethod
    def load_txt(file_path: Path) -> str:
        """Load text content from a TXT or Markdown file.

        Returns:
            The text content of the file as a string.
        """
        try:
            with file_path.open(encoding="utf-8") as file:
                text = file.read()
            logger.info("Successfully loaded text file %s", file_path.name)
        except Exception:
            logger.exception("Error loading text file %s", file_path)
            raise
        else:
            return text

    @classmethod
    def load_document(cls, file_path: Path) -> str:
        """Load document based on file extension.

        Args:
            file_path: Path to the document file.

        Returns:
            The text content of the document as a string.

        Raises:
            ValueError: If the file type is not supported.
        """
        file_ext = file_path.suffix.lower()
        if file_ext == ".pdf":
            return cls.load_pdf(file_path)
        if file_ext == ".txt" or file_ext in MARKDOWN_SUFFIXES:
            return cls.load_txt(file_path)
        msg = f"Unsupported file type: {file_ext}"
        raise ValueError(msg)


def _decode_escape(match: re.Match[str]) -> str:
    code_point = int(match.group(1), 16)
    # Lone surrogates cannot be encoded later on
    if 0xD800 <= code_point <= 0xDFFF:
        return ""
    return chr(code_point)


def sanitize_text(text: str) -> str:
    """Normalize raw text before chunking.

    Line endings and form feeds become newlines, null bytes and other control
    characters (newline and tab excepted) are removed, stray ``\\uXXXX``
    escapes are decoded, and the result is trimmed.

    Returns:
        The sanitized text.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\f", "\n")
    text = CONTROL_CHARS_RE.sub("", text)
    text = ESCAPED_UNICODE_RE.sub(_decode_escape, text)
    return text.strip()


def _source_name(metadata: dict[str, Any]) -> str:
    return str(metadata.get("source") or metadata.get("filename") or "")


def looks_like_pdf_text(text: str, metadata: dict[str, Any] | None = None) -> bool:
    """Guess whether text was extracted from a PDF.

    Returns:
        True when the source name has a PDF extension, the text contains page
        breaks, or a non-blank line is immediately repeated.
    """
    if _source_name(metadata or {}).lower().endswith(".pdf"):
        return True
    if "\f" in text:
        return True

    previous = None
    for line in text.splitlines():
        if PAGE_MARKER_RE.match(line):
            return True
        stripped = line.strip()
        if stripped and stripped == previous:
            return True
        previous = stripped
    return False


def _is_broken_line(previous: str, line: str) -> bool:
    tail = previous.rstrip()
    head = line.lstrip()
    if not tail or not head:
        return False
    return (tail[-1].islower() or tail[-1] == ",") and head[0].islower()


def clean_pdf_text(text: str) -> str:
    """Remove common PDF extraction artifacts.

    Returns:
        Text without page markers or consecutive duplicate lines, with
        mid-sentence line breaks merged and runs of whitespace collapsed.
    """
    deduplicated: list[str] = []
    for line in text.split("\n"):
        if PAGE_MARKER_RE.match(line):
            continue
        stripped = line.strip()
        if stripped and deduplicated and deduplicated[-1].strip() == stripped:
            continue
        deduplicated.append(line)

    merged: list[str] = []
    for line in deduplicated:
        if merged and _is_broken_line(merged[-1], line):
            merged[-1] = f"{merged[-1].rstrip()} {line.lstrip()}"
        else:
            merged.append(line)

    cleaned = "\n".join(merged)
    cleaned = re.sub(r" {2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def is_markdown(metadata: dict[str, Any]) -> bool:
    """Check whether chunk metadata marks its source as Markdown.

    Returns:
        True for ``type == "markdown"`` or a Markdown file extension.
    """
    if metadata.get("type") == "markdown":
        return True
    return _source_name(metadata).lower().endswith(MARKDOWN_SUFFIXES)


class TextChunker:
    """Splits text into overlapping paragraph-based chunks."""

    def __init__(self, chunk_size: int | None = None, overlap: int | None = None) -> None:
        """Initialize the TextChunker.

        Args:
            chunk_size: Maximum chunk length in characters.
                If None, uses config.CHUNK_SIZE.
            overlap: Number of trailing paragraphs repeated at the start of the
                next chunk. If None, uses config.CHUNK_OVERLAP.

        Raises:
            ValueError: If chunk_size is not positive or overlap is negative.
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.overlap = config.CHUNK_OVERLAP if overlap is None else overlap
        self._check_settings(self.chunk_size, self.overlap)

    @staticmethod
    def _check_settings(chunk_size: int, overlap: int) -> None:
        if chunk_size <= 0:
            msg = f"chunk_size must be positive, got {chunk_size}"
            raise ValueError(msg)
        if overlap < 0:
            msg = f"overlap must not be negative, got {overlap}"
            raise ValueError(msg)

    def process(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ) -> list[Chunk]:
        """Sanitize and split content into chunks stamped with their position.

        Returns:
            Chunks in source order; empty for blank input.

        Raises:
            ValueError: If an override chunk_size is not positive or an
                override chunk_overlap is negative.
        """
        metadata = dict(metadata or {})
        size = self.chunk_size if chunk_size is None else chunk_size
        overlap = self.overlap if chunk_overlap is None else chunk_overlap
        self._check_settings(size, overlap)

        if not content or not content.strip():
            return []

        pdf_like = looks_like_pdf_text(content, metadata)
        text = sanitize_text(content)
        if pdf_like:
            text = clean_pdf_text(text)
        if not text:
            return []

        if len(text) <= size:
            pieces = [text]
        elif is_markdown(metadata):
            pieces = self.split_markdown(text, size, overlap)
        else:
            pieces = self.split_paragraphs(text, size, overlap)

        total = len(pieces)
        chunks = [
            Chunk(
                content=piece,
                metadata={**metadata, "chunk_index": index, "total_chunks": total},
                chunk_index=index,
                total_chunks=total,
            )
            for index, piece in enumerate(pieces)
        ]
        logger.info("Text split into %d chunks", total)
        return chunks

    def split_markdown(self, text: str, chunk_size: int, overlap: int) -> list[str]:
        """Split on Markdown headers, then by paragraph for oversized sections.

        Returns:
            Non-empty chunk strings.
        """
        pieces: list[str] = []
        for section in HEADER_SPLIT_RE.split(text):
            section = section.strip()
            if not section:
                continue
            if len(section) <= chunk_size:
                pieces.append(section)
            else:
                pieces.extend(self.split_paragraphs(section, chunk_size, overlap))
        return pieces

    def split_paragraphs(self, text: str, chunk_size: int, overlap: int) -> list[str]:
        """Accumulate blank-line separated paragraphs into chunks.

        When the next paragraph would push the running chunk past chunk_size,
        the chunk is closed and the next one starts with its last ``overlap``
        paragraphs.

        Returns:
            Non-empty chunk strings.
        """
        paragraphs: list[str] = []
        for block in PARAGRAPH_BREAK_RE.split(text):
            block = block.strip()
            if block:
                paragraphs.extend(self._split_oversized(block, chunk_size))

        chunks: list[str] = []
        current: list[str] = []
        for paragraph in paragraphs:
            candidate = "\n\n".join([*current, paragraph])
            if current and len(candidate) > chunk_size:
                chunks.append("\n\n".join(current))
                current = current[-overlap:] if overlap > 0 else []
            current.append(paragraph)

        if current:
            chunks.append("\n\n".join(current))
        return chunks

    @staticmethod
    def _split_oversized(paragraph: str, chunk_size: int) -> list[str]:
        """Break a single paragraph longer than chunk_size at sentence ends.

        Returns:
            Pieces no longer than chunk_size.
        """
        if len(paragraph) <= chunk_size:
            return [paragraph]

        pieces: list[str] = []
        current = ""
        for sentence in SENTENCE_END_RE.split(paragraph):
            if len(sentence) > chunk_size:
                if current:
                    pieces.append(current)
                    current = ""
                pieces.extend(
                    sentence[start : start + chunk_size].strip()
                    for start in range(0, len(sentence), chunk_size)
                )
                continue
            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) > chunk_size:
                pieces.append(current)
                current = sentence
            else:
                current = candidate

        if current:
            pieces.append(current)
        return [piece for piece in pieces if piece]
