# knowledge_base/parsers/__init__.py
"""
Format parsers. Every supported FileType maps to exactly one Parser in the
registry; parse_document() is the single entrypoint used by the pipeline.
"""
from typing import Dict, Iterable, Optional

from knowledge_base.chunking import ParsedChunk, ParsedDocument
from knowledge_base.errors import ParseError
from knowledge_base.models import FileType
from knowledge_base.parsers.base import Content, Parser
from knowledge_base.parsers.image import ImageParser
from knowledge_base.parsers.office import DocParser, DocxParser, PptxParser
from knowledge_base.parsers.pdf import PdfParser
from knowledge_base.parsers.tabular import CsvParser, XlsParser, XlsxParser
from knowledge_base.parsers.text import CodeParser, JsonParser, TextParser

__all__ = [
    "ParsedChunk",
    "ParsedDocument",
    "Parser",
    "ParserRegistry",
    "default_registry",
    "parse_document",
]


class ParserRegistry:
    def __init__(self, parsers: Iterable[Parser] = ()):
        self._parsers: Dict[FileType, Parser] = {}
        for parser in parsers:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for file_type in parser.file_types:
            self._parsers[file_type] = parser

    def get(self, file_type: FileType) -> Optional[Parser]:
        return self._parsers.get(FileType(file_type))

    def supports(self, file_type: FileType) -> bool:
        return self.get(file_type) is not None


def default_registry(vision=None) -> ParserRegistry:
    return ParserRegistry([
        PdfParser(),
        DocxParser(),
        DocParser(),
        TextParser(),
        CsvParser(),
        XlsxParser(),
        XlsParser(),
        JsonParser(),
        CodeParser(),
        PptxParser(),
        ImageParser(vision=vision),
    ])


async def parse_document(
    content: Content,
    file_type: FileType,
    file_name: str,
    registry: Optional[ParserRegistry] = None,
) -> ParsedDocument:
    file_type = FileType(file_type)
    parser = (registry or default_registry()).get(file_type)
    if parser is None:
        raise ParseError(file_type, f"Unsupported file type: {file_type.value}")
    return await parser.aparse(content, file_name, file_type)
