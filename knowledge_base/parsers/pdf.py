# knowledge_base/parsers/pdf.py
import io
import logging
from typing import Any, Dict, List, Tuple

from pypdf import PdfReader

from knowledge_base.chunking import ParsedDocument, chunk_text
from knowledge_base.errors import ParseError
from knowledge_base.models import ChunkType, FileType
from knowledge_base.parsers.base import Content, Parser, as_bytes

logger = logging.getLogger(__name__)


def extract_text_from_pdf(reader: PdfReader, file_name: str) -> List[Tuple[int, str]]:
    """
    Extract text by page. Returns list of tuples (page_number (1-based), text).
    Keeps pages empty-string if extraction fails for that page to preserve page numbering.
    """
    pages_text = []
    for i, page in enumerate(reader.pages):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            logger.warning("Failed to extract text from page %s of %s: %s", i + 1, file_name, e)
            text = ""
        pages_text.append((i + 1, text))
    return pages_text


def _document_info(reader: PdfReader) -> Dict[str, Any]:
    try:
        info = reader.metadata or {}
    except Exception:
        logger.debug("PDF document info unreadable", exc_info=True)
        return {}
    return {str(k).lstrip("/"): str(v) for k, v in info.items() if v is not None}


class PdfParser(Parser):
    """
    Page attribution is proportional: chunk i of n lands on page
    floor(i / n * page_count) + 1. Chunks are built from the whole text, so a
    chunk straddling a page break is only approximately placed.
    """

    file_types = (FileType.PDF,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        try:
            reader = PdfReader(io.BytesIO(as_bytes(content)))
            page_count = len(reader.pages)
        except Exception as e:
            raise ParseError(file_type, f"Failed to parse PDF document: {e}") from e
        if page_count == 0:
            raise ParseError(file_type, "Failed to parse PDF document: no pages found")

        pages = extract_text_from_pdf(reader, file_name)
        text = "\n\n".join(t.strip() for _, t in pages if t.strip())

        chunks = chunk_text(text, ChunkType.TEXT)
        total = len(chunks)
        for index, chunk in enumerate(chunks):
            chunk.source_page = int(index / total * page_count) + 1

        return ParsedDocument(
            content=text,
            metadata={
                "page_count": page_count,
                "info": _document_info(reader),
            },
            chunks=chunks,
        )
