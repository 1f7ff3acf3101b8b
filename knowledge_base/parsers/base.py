# knowledge_base/parsers/base.py
import asyncio
import codecs
import logging
from typing import Tuple, Union

from knowledge_base.chunking import ParsedDocument
from knowledge_base.errors import ParseError
from knowledge_base.file_types import describe_expected
from knowledge_base.models import FileType

logger = logging.getLogger(__name__)

Content = Union[bytes, str]


def as_text(content: Content) -> str:
    if isinstance(content, str):
        return content
    data = bytes(content)
    if data.startswith(codecs.BOM_UTF8):
        data = data[len(codecs.BOM_UTF8):]
    return data.decode("utf-8", errors="replace")


def as_bytes(content: Content) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return bytes(content)


class Parser:
    """
    One strategy per file type. Subclasses implement parse(); aparse() runs it
    off the event loop and turns unexpected failures into ParseError.
    """

    file_types: Tuple[FileType, ...] = ()

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        raise NotImplementedError

    async def aparse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        try:
            return await asyncio.to_thread(self.parse, content, file_name, file_type)
        except ParseError:
            raise
        except Exception as e:
            logger.exception("%s parsing failed for %s", file_type.value, file_name)
            raise ParseError(file_type, f"Failed to parse {describe_expected(file_type)} document: {e}") from e
