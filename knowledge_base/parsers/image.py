# knowledge_base/parsers/image.py
import logging

from knowledge_base.chunking import ParsedDocument, chunk_text
from knowledge_base.file_types import sniff_image_mime
from knowledge_base.models import ChunkType, FileType
from knowledge_base.parsers.base import Content, Parser, as_bytes

logger = logging.getLogger(__name__)


class ImageParser(Parser):
    """
    Images are transcribed and described by the vision provider. The upload
    never fails because of OCR: without a provider, or when the call errors,
    a placeholder document with no chunks is returned instead.
    """

    file_types = (FileType.IMAGE,)

    def __init__(self, vision=None):
        if vision is None:
            from knowledge_base import vision as default_vision
            vision = default_vision
        self.vision = vision

    async def aparse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        data = as_bytes(content)
        mime_type = sniff_image_mime(data)

        if not self.vision.is_available():
            logger.warning("No vision provider configured for image OCR, storing %s with empty chunks", file_name)
            return ParsedDocument(
                content="[Image - no OCR available]",
                metadata={"mime_type": mime_type, "ocr_available": False},
                chunks=[],
            )

        try:
            extracted = await self.vision.describe_and_transcribe(data, mime_type=mime_type)
        except Exception as e:
            logger.exception("Image OCR failed for %s", file_name)
            return ParsedDocument(
                content="[Image - OCR failed]",
                metadata={"mime_type": mime_type, "ocr_available": False, "error": str(e)},
                chunks=[],
            )

        return ParsedDocument(
            content=extracted,
            metadata={
                "mime_type": mime_type,
                "ocr_model": self.vision.model_name(),
                "ocr_available": True,
            },
            chunks=chunk_text(extracted, ChunkType.TEXT),
        )
