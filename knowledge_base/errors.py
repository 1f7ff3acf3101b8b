# knowledge_base/errors.py
"""
Domain errors raised by the ingestion and retrieval pipeline.

Upload-time errors (UnsupportedTypeError, ValidationError, DuplicateDocumentError)
and folder errors surface synchronously to the caller. Parse, storage and
embedding errors raised while processing land in ``Document.processing_error``.
"""
from typing import Optional


class KnowledgeBaseError(Exception):
    """Base class for every error raised by this package."""


class UnsupportedTypeError(KnowledgeBaseError):
    def __init__(self, mime_type: Optional[str], file_name: Optional[str] = None):
        self.mime_type = mime_type
        self.file_name = file_name
        super().__init__(f"Unsupported file type: {mime_type or file_name or 'unknown'}")


class ValidationError(KnowledgeBaseError):
    """Rejected input, raised before anything is written to storage."""


class DuplicateDocumentError(KnowledgeBaseError):
    def __init__(self, existing_document_id: str, existing_name: str):
        self.existing_document_id = existing_document_id
        self.existing_name = existing_name
        super().__init__("Duplicate file")


class StorageError(KnowledgeBaseError):
    """Blob storage or record persistence failed."""


class BlobMimeTypeError(StorageError):
    """The blob store refused the object because of its content type."""


class ParseError(KnowledgeBaseError):
    def __init__(self, file_type, message: str):
        self.file_type = file_type
        super().__init__(message)


class EmbeddingError(KnowledgeBaseError):
    """The batch embedding call itself failed."""


class FolderCycleError(KnowledgeBaseError):
    """Moving a folder would make the folder graph cyclic."""


class NotFoundError(KnowledgeBaseError):
    pass


class AuthorizationError(KnowledgeBaseError):
    pass
