"""Text extraction for heterogeneous source documents."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from corpus_agent.errors import ExtractionError

logger = logging.getLogger(__name__)


class TextExtractor(ABC):
    """Base extractor interface used by the indexing pipeline."""

    extensions: tuple[str, ...] = ()

    async def extract_text(self, source_ref: str | Path) -> str:
        path = Path(source_ref)
        if not path.is_file():
            raise ExtractionError(f"File not found: {path}")
        return await asyncio.to_thread(self._read, path)

    @abstractmethod
    def _read(self, path: Path) -> str:
        """Read the file synchronously and return its text."""


class PdfTextExtractor(TextExtractor):
    """Extracts page text from PDF files with pypdf."""

    extensions = (".pdf",)

    def _read(self, path: Path) -> str:
        try:
            reader = PdfReader(path)
            pages = [page.extract_text() or "" for page in reader.pages]
        except (PyPdfError, OSError, ValueError) as exc:
            raise ExtractionError(f"Failed to read PDF {path.name}: {exc}") from exc
        logger.debug("Extracted %d pages from %s", len(pages), path.name)
        return "\n".join(pages)


class PlainTextExtractor(TextExtractor):
    """Reads plain text and markdown documents."""

    extensions = (".txt", ".md", ".markdown")

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ExtractionError(f"Failed to read {path.name}: {exc}") from exc


class ExtractorRegistry:
    """Maps file extension to extractor implementation."""

    def __init__(self, extractors: list[TextExtractor] | None = None) -> None:
        self._extractors: dict[str, TextExtractor] = {}
        for extractor in extractors or [PdfTextExtractor(), PlainTextExtractor()]:
            self.register(extractor)

    def register(self, extractor: TextExtractor) -> None:
        for extension in extractor.extensions:
            self._extractors[extension.lower()] = extractor

    def supports(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self._extractors

    async def extract_text(self, source_ref: str | Path) -> str:
        path = Path(source_ref)
        extractor = self._extractors.get(path.suffix.lower())
        if extractor is None:
            raise ExtractionError(f"No extractor registered for extension: {path.suffix}")
        return await extractor.extract_text(path)
