# knowledge_base/chunking.py
"""
Paragraph-based text chunking shared by most parsers.

 - split on blank lines, accumulate paragraphs up to MAX_CHUNK_SIZE characters
 - never emit a chunk below MIN_CHUNK_SIZE unless it is the only content
 - seed each new chunk with the last OVERLAP_WORDS words of the previous one
 - a single paragraph larger than MAX_CHUNK_SIZE is kept whole in its own chunk
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from knowledge_base.models import ChunkType

# Tunable params
MAX_CHUNK_SIZE = 1000     # characters per chunk
MIN_CHUNK_SIZE = 100      # smaller buffers keep accumulating
CHUNK_OVERLAP = 200       # overlap budget in characters
OVERLAP_WORDS = CHUNK_OVERLAP // 5   # ~5 characters per word
CODE_CHUNK_SIZE = 500     # smaller chunks for source code

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass
class ParsedChunk:
    content: str
    chunk_type: ChunkType = ChunkType.TEXT
    source_page: Optional[int] = None
    source_line_start: Optional[int] = None
    source_line_end: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedDocument:
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunks: List[ParsedChunk] = field(default_factory=list)


def split_paragraphs(text: str) -> List[str]:
    return [p.strip() for p in _PARAGRAPH_BREAK.split(text or "") if p.strip()]


def _overlap_tail(text: str, words: int = OVERLAP_WORDS) -> str:
    return " ".join(text.split()[-words:])


def chunk_text(
    text: str,
    chunk_type: ChunkType = ChunkType.TEXT,
    max_size: int = MAX_CHUNK_SIZE,
    min_size: int = MIN_CHUNK_SIZE,
) -> List[ParsedChunk]:
    """
    Chunk ``text`` on paragraph boundaries with a word overlap between chunks.
    Returns an empty list for blank input.
    """
    contents: List[str] = []
    overlap = ""
    parts: List[str] = []

    def buffered() -> str:
        return "\n\n".join(([overlap] if overlap else []) + parts)

    for para in split_paragraphs(text):
        current = buffered()
        if parts and len(current) + len(para) > max_size and len(current) >= min_size:
            contents.append(current)
            overlap = _overlap_tail(current)
            parts = [para]
        else:
            parts.append(para)

    if parts:
        last = buffered()
        if len(last) >= min_size or not contents:
            contents.append(last)
        else:
            # too small to stand alone: fold the new paragraphs into the previous chunk
            contents[-1] = contents[-1] + "\n\n" + "\n\n".join(parts)

    return [ParsedChunk(content=c, chunk_type=chunk_type) for c in contents]
