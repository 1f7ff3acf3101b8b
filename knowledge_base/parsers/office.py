# knowledge_base/parsers/office.py
import io
import logging
import re
import struct
import zipfile
from html import unescape
from typing import List

import docx
import olefile

from knowledge_base.chunking import ParsedChunk, ParsedDocument, chunk_text
from knowledge_base.errors import ParseError
from knowledge_base.models import ChunkType, FileType
from knowledge_base.parsers.base import Content, Parser, as_bytes

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_PRINTABLE_RUN = re.compile(r"[^\x00-\x08\x0b\x0c\x0e-\x1f]{4,}")
_SLIDE_NAME = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
_TEXT_RUN = re.compile(r"<a:t(?:\s[^>]*)?>([^<]*)</a:t>")

WORD_IDENT = 0xA5EC


class DocxParser(Parser):
    file_types = (FileType.DOCX,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        document = docx.Document(io.BytesIO(as_bytes(content)))
        warnings: List[str] = []

        blocks = [p.text.strip() for p in document.paragraphs if p.text.strip()]
        paragraph_count = len(blocks)

        for table in document.tables:
            rows = []
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                row_text = " | ".join(c for c in cells if c)
                if row_text:
                    rows.append(row_text)
            if rows:
                blocks.append("\n".join(rows))
        if document.tables:
            warnings.append(f"{len(document.tables)} table(s) flattened to plain text after the body")

        images = len(document.inline_shapes)
        if images:
            warnings.append(f"{images} embedded image(s) ignored")

        text = "\n\n".join(blocks)
        return ParsedDocument(
            content=text,
            metadata={
                "paragraph_count": paragraph_count,
                "table_count": len(document.tables),
                "warnings": warnings,
            },
            chunks=chunk_text(text, ChunkType.TEXT),
        )


def _decode_word_text(raw: bytes) -> str:
    # Word 97 stores either 8-bit (cp1252) or UTF-16LE text; UTF-16 Latin text is half NULs
    if raw and raw[1::2].count(0) > len(raw) // 4:
        text = raw.decode("utf-16le", errors="ignore")
    else:
        text = raw.decode("cp1252", errors="ignore")
    text = text.replace("\x07", "\t").replace("\r", "\n\n")
    return _CONTROL_CHARS.sub("", text)


class DocParser(Parser):
    """
    Legacy Word 97-2003 files. Text is read from the WordDocument stream's
    fcMin..fcMac range; documents saved with fast-save piece tables may come
    out partially scrambled, which is recorded as a warning, never an error.
    """

    file_types = (FileType.DOC,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        try:
            ole = olefile.OleFileIO(io.BytesIO(as_bytes(content)))
        except Exception as e:
            raise ParseError(file_type, f"Failed to parse Word 97-2003 (.doc) document: {e}") from e

        try:
            if not ole.exists("WordDocument"):
                raise ParseError(file_type, "Failed to parse Word 97-2003 (.doc) document: no WordDocument stream")
            stream = ole.openstream("WordDocument").read()
        finally:
            ole.close()

        warnings = ["Legacy .doc text extracted without formatting"]
        text = ""
        if len(stream) >= 0x20:
            ident, = struct.unpack_from("<H", stream, 0)
            fc_min, fc_mac = struct.unpack_from("<II", stream, 0x18)
            if ident == WORD_IDENT and 0 < fc_min < fc_mac <= len(stream):
                text = _decode_word_text(stream[fc_min:fc_mac])

        if not text.strip():
            # fall back to scanning the stream for readable runs
            candidates = [
                "\n".join(_PRINTABLE_RUN.findall(stream.decode("utf-16le", errors="ignore"))),
                "\n".join(_PRINTABLE_RUN.findall(stream.decode("cp1252", errors="ignore"))),
            ]
            text = max(candidates, key=len)
            warnings.append("Text recovered by scanning the document stream; ordering may be approximate")

        text = "\n\n".join(p.strip() for p in re.split(r"\n\s*\n", text) if p.strip())
        if not text:
            warnings.append("No readable text found")

        return ParsedDocument(
            content=text,
            metadata={"warnings": warnings},
            chunks=chunk_text(text, ChunkType.TEXT),
        )


def _slide_number(name: str) -> int:
    match = _SLIDE_NAME.match(name)
    return int(match.group(1)) if match else 0


class PptxParser(Parser):
    file_types = (FileType.PPTX,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        chunks: List[ParsedChunk] = []
        all_text: List[str] = []

        with zipfile.ZipFile(io.BytesIO(as_bytes(content))) as zf:
            slide_files = sorted(
                (n for n in zf.namelist() if _SLIDE_NAME.match(n)),
                key=_slide_number,
            )
            for slide_file in slide_files:
                number = _slide_number(slide_file)
                xml = zf.read(slide_file).decode("utf-8", errors="ignore")
                slide_texts = [unescape(t).strip() for t in _TEXT_RUN.findall(xml)]
                slide_texts = [t for t in slide_texts if t]
                if not slide_texts:
                    continue
                all_text.append(f"Slide {number}: {' '.join(slide_texts)}")
                chunks.append(ParsedChunk(
                    content=f"Slide {number}:\n" + "\n".join(slide_texts),
                    chunk_type=ChunkType.TEXT,
                    source_page=number,
                ))

        full_text = "\n\n".join(all_text)
        return ParsedDocument(
            content=full_text,
            metadata={"slide_count": len(slide_files)},
            chunks=chunks or chunk_text(full_text, ChunkType.TEXT),
        )
