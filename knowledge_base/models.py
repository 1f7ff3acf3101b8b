# knowledge_base/models.py
import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import expression, func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class FileType(str, enum.Enum):
    PDF = "pdf"
    DOCX = "docx"
    DOC = "doc"
    TXT = "txt"
    MD = "md"
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"
    XLS = "xls"
    CODE = "code"
    PPTX = "pptx"
    PPT = "ppt"
    IMAGE = "image"
    OTHER = "other"


class DocumentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    ARCHIVED = "archived"


class DocumentScope(str, enum.Enum):
    CONVERSATION = "conversation"
    GLOBAL = "global"


class ChunkType(str, enum.Enum):
    TEXT = "text"
    CODE = "code"
    TABLE = "table"
    HEADING = "heading"
    METADATA = "metadata"


class DocumentFolder(Base):
    __tablename__ = "document_folders"
    __table_args__ = (
        UniqueConstraint("user_id", "parent_id", "name", name="uq_folder_name_per_parent"),
    )
    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("document_folders.id", ondelete="CASCADE"), nullable=True, index=True)
    color = Column(String(7), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("ix_documents_user_hash", "user_id", "content_hash"),
    )
    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)   # user id who uploaded
    name = Column(String, nullable=False)
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="application/octet-stream")
    size_bytes = Column(Integer, default=0)
    storage_path = Column(String, nullable=False)           # object key inside the bucket
    storage_bucket = Column(String, nullable=False, default="documents")
    file_type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=DocumentStatus.PENDING.value, index=True)
    scope = Column(String(16), nullable=False, default=DocumentScope.GLOBAL.value)
    thread_id = Column(String(64), nullable=True, index=True)
    folder_id = Column(String(36), ForeignKey("document_folders.id", ondelete="SET NULL"), nullable=True, index=True)
    doc_metadata = Column("metadata", JSON, nullable=False, default=dict)
    chunk_count = Column(Integer, nullable=False, default=0)
    token_count = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=True)
    # version chain: every later version points at the first upload
    version = Column(Integer, nullable=False, default=1, server_default="1")
    is_latest = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    parent_document_id = Column(String(36), ForeignKey("documents.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)


class DocumentChunk(Base):
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunk_index_per_document"),
    )
    id = Column(String(36), primary_key=True, default=_new_id)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    chunk_index = Column(Integer, nullable=False)
    chunk_type = Column(String(16), nullable=False, default=ChunkType.TEXT.value)
    source_page = Column(Integer, nullable=True)
    source_line_start = Column(Integer, nullable=True)
    source_line_end = Column(Integer, nullable=True)
    embedding = Column(JSON, nullable=True)   # None when the provider returned nothing for this chunk
    token_count = Column(Integer, nullable=False, default=0)
    chunk_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
