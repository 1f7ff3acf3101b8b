# knowledge_base/file_types.py
"""
File type detection and magic-byte validation.

detect_file_type() classifies an upload from its MIME type and name and never
raises. validate_magic_bytes() confirms the raw bytes really are the claimed
format before anything is stored or parsed.
"""
import codecs
from typing import Optional

from knowledge_base.models import FileType

MIME_TYPES = {
    "application/pdf": FileType.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileType.DOCX,
    "application/msword": FileType.DOC,
    "text/markdown": FileType.MD,
    "text/x-markdown": FileType.MD,
    "text/csv": FileType.CSV,
    "application/json": FileType.JSON,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": FileType.XLSX,
    "application/vnd.ms-excel": FileType.XLS,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": FileType.PPTX,
    "application/vnd.ms-powerpoint": FileType.PPT,
}

CODE_EXTENSIONS = frozenset({
    "js", "ts", "jsx", "tsx", "py", "rb", "go", "rs", "java", "c", "cpp", "h",
    "cs", "php", "swift", "kt", "scala", "sh", "bash", "zsh", "sql", "html",
    "css", "scss", "sass", "less", "vue", "svelte", "yaml", "yml", "toml",
    "xml", "graphql", "prisma", "tf", "dockerfile",
})

EXTENSIONS = {
    "pdf": FileType.PDF,
    "docx": FileType.DOCX,
    "doc": FileType.DOC,
    "txt": FileType.TXT,
    "md": FileType.MD,
    "csv": FileType.CSV,
    "json": FileType.JSON,
    "xlsx": FileType.XLSX,
    "xls": FileType.XLS,
    "pptx": FileType.PPTX,
    "ppt": FileType.PPT,
}

TEXT_TYPES = frozenset({FileType.TXT, FileType.MD, FileType.CSV, FileType.JSON, FileType.CODE})
BINARY_TYPES = frozenset({
    FileType.PDF, FileType.DOCX, FileType.DOC, FileType.XLSX, FileType.XLS,
    FileType.PPTX, FileType.PPT, FileType.IMAGE,
})

PDF_SIGNATURE = b"%PDF"
ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"
GIF_SIGNATURES = (b"GIF87a", b"GIF89a")

TEXT_SAMPLE_BYTES = 8192
NULL_SCAN_BYTES = 1024
MAX_NULL_BYTES = 2

_DESCRIPTIONS = {
    FileType.PDF: "PDF",
    FileType.DOCX: "Word (.docx)",
    FileType.DOC: "Word 97-2003 (.doc)",
    FileType.XLSX: "Excel (.xlsx)",
    FileType.XLS: "Excel 97-2003 (.xls)",
    FileType.PPTX: "PowerPoint (.pptx)",
    FileType.PPT: "PowerPoint 97-2003 (.ppt)",
    FileType.IMAGE: "image (PNG, JPEG, GIF, WebP or SVG)",
    FileType.TXT: "plain text",
    FileType.MD: "Markdown",
    FileType.CSV: "CSV",
    FileType.JSON: "JSON",
    FileType.CODE: "source code",
}


def file_extension(file_name: Optional[str]) -> str:
    # "Dockerfile" has no dot, so the whole name is its extension
    return str(file_name or "").rsplit(".", 1)[-1].lower()


def detect_file_type(mime_type: Optional[str], file_name: Optional[str]) -> FileType:
    mime = str(mime_type or "").split(";", 1)[0].strip().lower()
    ext = file_extension(file_name)

    # MIME type first
    if mime == "text/plain":
        return FileType.MD if ext == "md" else FileType.TXT
    if mime in MIME_TYPES:
        return MIME_TYPES[mime]
    if mime.startswith("image/"):
        return FileType.IMAGE

    if ext in CODE_EXTENSIONS:
        return FileType.CODE

    return EXTENSIONS.get(ext, FileType.OTHER)


def describe_expected(file_type: FileType) -> str:
    return _DESCRIPTIONS.get(file_type, str(getattr(file_type, "value", file_type)))


def _is_image(data: bytes) -> bool:
    if data.startswith(PNG_SIGNATURE) or data.startswith(JPEG_SIGNATURE):
        return True
    if data.startswith(GIF_SIGNATURES):
        return True
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return True
    head = data[:NULL_SCAN_BYTES].lstrip(codecs.BOM_UTF8).lstrip().lower()
    if head.startswith(b"<svg"):
        return True
    return head.startswith(b"<?xml") and b"<svg" in head


def _is_text(data: bytes) -> bool:
    if data[:NULL_SCAN_BYTES].count(b"\x00") > MAX_NULL_BYTES:
        return False
    decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
    try:
        # final=False tolerates a code point cut in half by the sample boundary
        decoder.decode(data[:TEXT_SAMPLE_BYTES], final=False)
    except UnicodeDecodeError:
        return False
    return True


def validate_magic_bytes(data: bytes, expected_type: FileType) -> bool:
    """Return True if ``data`` looks like ``expected_type``."""
    data = bytes(data or b"")
    if expected_type in TEXT_TYPES:
        return _is_text(data)
    if expected_type == FileType.PDF:
        return data.startswith(PDF_SIGNATURE)
    if expected_type in (FileType.DOCX, FileType.XLSX, FileType.PPTX):
        return data.startswith(ZIP_SIGNATURE)
    if expected_type in (FileType.DOC, FileType.XLS, FileType.PPT):
        return data.startswith(OLE_SIGNATURE)
    if expected_type == FileType.IMAGE:
        return _is_image(data)
    return False


def sniff_image_mime(data: bytes) -> str:
    """Best-effort image MIME type from the leading bytes (defaults to PNG)."""
    if data.startswith(JPEG_SIGNATURE):
        return "image/jpeg"
    if data.startswith(GIF_SIGNATURES):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if b"<svg" in data[:NULL_SCAN_BYTES].lower():
        return "image/svg+xml"
    return "image/png"
