# knowledge_base/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    user_id: str
    name: str
    original_name: str
    mime_type: str
    size_bytes: int
    storage_path: str
    storage_bucket: str
    file_type: str
    status: str
    scope: str
    thread_id: Optional[str] = None
    folder_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="doc_metadata")
    chunk_count: int = 0
    token_count: int = 0
    processing_error: Optional[str] = None
    content_hash: Optional[str] = None
    version: int = 1
    is_latest: bool = True
    parent_document_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class DocumentVersion(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    version: int
    is_latest: bool
    size_bytes: int
    status: str
    created_at: Optional[datetime] = None


class VersionHistory(BaseModel):
    root_document_id: str
    versions: List[DocumentVersion]


class ChunkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    document_id: str
    content: str
    chunk_index: int
    chunk_type: str
    source_page: Optional[int] = None
    source_line_start: Optional[int] = None
    source_line_end: Optional[int] = None
    token_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="chunk_metadata")
    has_embedding: bool = False


class DocumentDetail(BaseModel):
    document: DocumentOut
    chunks: List[ChunkOut]


class DocumentList(BaseModel):
    documents: List[DocumentOut]
    total: int


class FolderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    user_id: str
    name: str
    parent_id: Optional[str] = None
    color: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    document_count: int = 0


class FolderTreeNode(FolderOut):
    depth: int = 0
    path: List[str] = Field(default_factory=list)
    children: List["FolderTreeNode"] = Field(default_factory=list)


class BreadcrumbItem(BaseModel):
    id: str
    name: str


class FolderContents(BaseModel):
    folder: Optional[FolderOut] = None
    breadcrumb: List[BreadcrumbItem]
    subfolders: List[FolderOut]
    documents: List[DocumentOut]
    total_documents: int


class SearchResult(BaseModel):
    chunk_id: str
    document_id: str
    document_name: str
    content: str
    chunk_type: str
    chunk_index: int
    source_page: Optional[int] = None
    source_line_start: Optional[int] = None
    source_line_end: Optional[int] = None
    similarity: float
    keyword_score: float
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContextSource(BaseModel):
    document_id: str
    document_name: str
    chunk_id: str
    chunk_index: int
    source_page: Optional[int] = None
    score: float


class ConversationContext(BaseModel):
    content: str = ""
    sources: List[ContextSource] = Field(default_factory=list)
    total_tokens: int = 0


# ---- request bodies ----

class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(10, ge=1, le=100)
    min_similarity: float = Field(0.7, ge=0.0, le=1.0)
    scope: Optional[str] = None
    thread_id: Optional[str] = None
    file_types: Optional[List[str]] = None
    folder_id: Optional[str] = None


class ContextRequest(BaseModel):
    thread_id: str
    query: str = Field(..., min_length=1)
    max_tokens: int = Field(4000, ge=1)
    min_similarity: float = Field(0.6, ge=0.0, le=1.0)


class FolderCreate(BaseModel):
    name: str
    parent_id: Optional[str] = None
    color: Optional[str] = None


class FolderUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    # "root" moves the folder to the top level
    parent_id: Optional[str] = None


class DocumentMove(BaseModel):
    folder_id: Optional[str] = None


FolderTreeNode.model_rebuild()
