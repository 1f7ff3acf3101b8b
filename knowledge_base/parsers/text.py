# knowledge_base/parsers/text.py
import json
import re
from typing import List

from knowledge_base.chunking import (
    CODE_CHUNK_SIZE,
    MAX_CHUNK_SIZE,
    ParsedChunk,
    ParsedDocument,
    chunk_text,
)
from knowledge_base.errors import ParseError
from knowledge_base.file_types import file_extension
from knowledge_base.models import ChunkType, FileType
from knowledge_base.parsers.base import Content, Parser, as_text

_HEADING_SPLIT = re.compile(r"(?=^#{1,6}\s)", re.MULTILINE)
_HEADING = re.compile(r"^(#{1,6})\s+(.+)")

# declarations we avoid splitting in the middle of
BOUNDARY_PATTERNS = [
    re.compile(r"^(export\s+)?(async\s+)?function\s+\w+"),           # JS/TS functions
    re.compile(r"^(export\s+)?(class|interface|type|enum)\s+\w+"),   # JS/TS classes/types
    re.compile(r"^(async\s+)?def\s+\w+"),                            # Python functions
    re.compile(r"^class\s+\w+"),                                     # Python classes
    re.compile(r"^func\s+\w+"),                                      # Go functions
    re.compile(r"^(pub\s+)?fn\s+\w+"),                               # Rust functions
    re.compile(r"^(public|private|protected)?\s*(static\s+)?[\w<>]+\s+\w+\s*\("),  # Java methods
]
MIN_BLOCK_LINES = 5


class TextParser(Parser):
    file_types = (FileType.TXT, FileType.MD)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        text = as_text(content)
        if file_type == FileType.MD:
            chunks = self._markdown_chunks(text)
        else:
            chunks = chunk_text(text, ChunkType.TEXT)

        return ParsedDocument(
            content=text,
            metadata={
                "line_count": len(text.split("\n")),
                "char_count": len(text),
            },
            chunks=chunks,
        )

    @staticmethod
    def _markdown_chunks(text: str) -> List[ParsedChunk]:
        chunks: List[ParsedChunk] = []
        for section in _HEADING_SPLIT.split(text):
            if not section.strip():
                continue
            match = _HEADING.match(section)
            if match:
                chunks.append(ParsedChunk(
                    content=match.group(2).strip(),
                    chunk_type=ChunkType.HEADING,
                    metadata={"level": len(match.group(1))},
                ))
                rest = section[match.end():].strip()
                if rest:
                    chunks.extend(chunk_text(rest, ChunkType.TEXT))
            else:
                chunks.extend(chunk_text(section, ChunkType.TEXT))
        return chunks


class JsonParser(Parser):
    file_types = (FileType.JSON,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        try:
            data = json.loads(as_text(content))
        except ValueError as e:
            raise ParseError(file_type, f"Failed to parse JSON file: {e}") from e

        formatted = json.dumps(data, indent=2, ensure_ascii=False)
        chunks: List[ParsedChunk] = []

        if isinstance(data, dict):
            for key, value in data.items():
                value_str = json.dumps(value, indent=2, ensure_ascii=False)
                if len(value_str) > MAX_CHUNK_SIZE:
                    for part, chunk in enumerate(chunk_text(value_str, ChunkType.TEXT), start=1):
                        chunk.metadata = {"key": key, "part": part}
                        chunks.append(chunk)
                else:
                    chunks.append(ParsedChunk(
                        content=f'"{key}": {value_str}',
                        chunk_type=ChunkType.TEXT,
                        metadata={"key": key},
                    ))
        else:
            chunks.extend(chunk_text(formatted, ChunkType.TEXT))

        if isinstance(data, list):
            kind = "array"
        elif isinstance(data, dict):
            kind = "object"
        else:
            kind = type(data).__name__

        return ParsedDocument(
            content=formatted,
            metadata={
                "type": kind,
                "keys": list(data.keys()) if isinstance(data, dict) else [],
            },
            chunks=chunks,
        )


def _is_boundary(line: str) -> bool:
    stripped = line.strip()
    return any(p.match(stripped) for p in BOUNDARY_PATTERNS)


class CodeParser(Parser):
    """
    Line scanner: start a new chunk at a declaration once the current block has
    a few lines, or when the block outgrows CODE_CHUNK_SIZE characters.
    """

    file_types = (FileType.CODE,)

    def __init__(self, chunk_size: int = CODE_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        text = as_text(content)
        lines = text.split("\n")
        chunks: List[ParsedChunk] = []

        current: List[str] = []
        current_size = 0
        chunk_start = 1

        def flush(end_line: int) -> None:
            body = "\n".join(current)
            if body.strip():
                chunks.append(ParsedChunk(
                    content=body,
                    chunk_type=ChunkType.CODE,
                    source_line_start=chunk_start,
                    source_line_end=end_line,
                ))

        for i, line in enumerate(lines):
            new_block = _is_boundary(line) and len(current) >= MIN_BLOCK_LINES
            if new_block or current_size > self.chunk_size:
                flush(i)
                current = [line]
                current_size = len(line)
                chunk_start = i + 1
            else:
                current_size += len(line) + (1 if current else 0)
                current.append(line)

        if current:
            flush(len(lines))

        return ParsedDocument(
            content=text,
            metadata={
                "language": file_extension(file_name),
                "line_count": len(lines),
                "file_name": file_name,
            },
            chunks=chunks,
        )
