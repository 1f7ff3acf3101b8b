# knowledge_base/tokens.py
"""
Content-aware token estimation.

A character-ratio heuristic is used instead of a model tokenizer: chunk sizes
and context budgets only need to be roughly right, and the estimate must be
cheap enough to run on every chunk of every document.
"""
import math
import re
from typing import Optional

from knowledge_base.models import ChunkType

CJK_PATTERN = re.compile(
    "[\u4e00-\u9fff\u3400-\u4dbf\U00020000-\U0002a6df\U0002a700-\U0002b73f"
    "\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af]"
)
CJK_DOMINANCE = 0.3
CJK_SAMPLE_CHARS = 10000

CJK_CHARS_PER_TOKEN = 1.5
PROSE_CHARS_PER_TOKEN = 4.0
CODE_CHARS_PER_TOKEN = 3.5
STRUCTURED_CHARS_PER_TOKEN = 3.0


def _cjk_ratio(text: str) -> float:
    sample = text[:CJK_SAMPLE_CHARS]
    return len(CJK_PATTERN.findall(sample)) / len(sample)


def estimate_tokens(text: Optional[str], chunk_type=None) -> int:
    if not text:
        return 0

    length = len(text)
    ratio = _cjk_ratio(text)
    if ratio > CJK_DOMINANCE:
        cjk_chars = length * ratio if length > CJK_SAMPLE_CHARS else len(CJK_PATTERN.findall(text))
        return math.ceil(cjk_chars / CJK_CHARS_PER_TOKEN + (length - cjk_chars) / PROSE_CHARS_PER_TOKEN)

    kind = ChunkType(chunk_type) if chunk_type else ChunkType.TEXT
    if kind == ChunkType.CODE:
        return math.ceil(length / CODE_CHARS_PER_TOKEN)
    if kind in (ChunkType.TABLE, ChunkType.METADATA):
        return math.ceil(length / STRUCTURED_CHARS_PER_TOKEN)
    return math.ceil(length / PROSE_CHARS_PER_TOKEN)
