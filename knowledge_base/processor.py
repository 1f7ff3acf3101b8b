# knowledge_base/processor.py
"""
Upload and processing pipeline:
 - upload: detect type, validate, dedupe by content hash, store the blob, create a pending record
 - versions: a new upload joins the chain of an existing document and becomes its latest version
 - process: pending -> processing -> ready | error
   download, parse, embed chunks, then replace chunks and vector points in one transaction

Failures while processing are written to the document (status ``error`` and
``processing_error``) and re-raised to whoever ran the job.
"""
import asyncio
import hashlib
import logging
import re
import time
import uuid
import weakref
from typing import Any, Dict, List, Optional, Tuple

from knowledge_base import deepinfra
from knowledge_base.chunking import ParsedDocument
from knowledge_base.config import settings
from knowledge_base.errors import (
    AuthorizationError,
    BlobMimeTypeError,
    DuplicateDocumentError,
    EmbeddingError,
    NotFoundError,
    StorageError,
    UnsupportedTypeError,
    ValidationError,
)
from knowledge_base.file_types import TEXT_TYPES, describe_expected, detect_file_type, validate_magic_bytes
from knowledge_base.models import Document, DocumentScope, DocumentStatus, FileType
from knowledge_base.parsers import ParserRegistry, default_registry, parse_document
from knowledge_base.parsers.base import as_text
from knowledge_base.repository import DocumentRepository, utcnow
from knowledge_base.schemas import ChunkOut, DocumentDetail, DocumentOut
from knowledge_base.storage import GENERIC_CONTENT_TYPE, BlobStorage, get_blob_storage
from knowledge_base.tokens import estimate_tokens
from knowledge_base.vector_index import VectorIndex, get_vector_index

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def chunk_id(document_id: str, chunk_index: int, text: str) -> str:
    """
    Deterministic UUID for a chunk: uuid5 under the document UUID (when it is
    one) over index + text hash, so reprocessing identical content reuses ids.
    """
    text_hash = hashlib.sha1(text.encode("utf-8")).hexdigest()[:16]
    try:
        namespace = uuid.UUID(document_id)
    except (ValueError, TypeError):
        namespace = uuid.uuid5(uuid.NAMESPACE_URL, str(document_id))
    return str(uuid.uuid5(namespace, f"{chunk_index}:{text_hash}"))


def safe_file_name(file_name: str) -> str:
    name = _UNSAFE_NAME_CHARS.sub("_", (file_name or "").strip()).strip("._")
    return name or "file"


class DocumentProcessor:
    def __init__(
        self,
        repository: Optional[DocumentRepository] = None,
        storage: Optional[BlobStorage] = None,
        index: Optional[VectorIndex] = None,
        embedder=None,
        registry: Optional[ParserRegistry] = None,
        dispatcher=None,
        max_upload_size: Optional[int] = None,
    ):
        self.repository = repository or DocumentRepository(insert_batch=settings.chunk_insert_batch)
        self.storage = storage or get_blob_storage()
        self.index = index or get_vector_index()
        # anything with ``async embed_batch(texts)``
        self.embedder = embedder or deepinfra
        self.registry = registry or default_registry()
        self.dispatcher = dispatcher
        self.max_upload_size = max_upload_size or settings.max_upload_size
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ---------- upload ----------

    async def upload_document(
        self,
        user_id: str,
        file_name: str,
        data: bytes,
        mime_type: Optional[str] = None,
        scope: str = DocumentScope.GLOBAL.value,
        thread_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Document:
        doc = await self._create_document(
            user_id, file_name, data, mime_type, scope=scope, thread_id=thread_id, folder_id=folder_id,
        )
        await self._submit(doc.id)
        return doc

    async def _create_document(
        self,
        user_id: str,
        file_name: str,
        data: bytes,
        mime_type: Optional[str],
        scope: str,
        thread_id: Optional[str],
        folder_id: Optional[str],
        name: Optional[str] = None,
        version: int = 1,
        parent_document_id: Optional[str] = None,
    ) -> Document:
        """Validate, dedupe and store ``data``, then insert the pending record."""
        file_type = detect_file_type(mime_type, file_name)
        if file_type == FileType.OTHER or not self.registry.supports(file_type):
            raise UnsupportedTypeError(mime_type, file_name)

        if len(data) > self.max_upload_size:
            raise ValidationError(
                f"File too large: {len(data)} bytes (maximum {self.max_upload_size} bytes)"
            )
        try:
            scope = DocumentScope(scope).value
        except ValueError:
            raise ValidationError(f"Invalid scope: {scope}") from None
        if scope == DocumentScope.CONVERSATION.value and not thread_id:
            raise ValidationError("thread_id is required for conversation-scoped documents")

        if folder_id:
            folder = await self.repository.get_folder(folder_id)
            if folder is None or folder.user_id != user_id:
                raise NotFoundError(f"Folder not found: {folder_id}")

        if not validate_magic_bytes(data, file_type):
            raise ValidationError(
                f"File content does not match expected format: {describe_expected(file_type)}"
            )

        content_hash = hashlib.sha256(data).hexdigest()
        existing = await self.repository.find_by_hash(user_id, content_hash)
        if existing is not None:
            raise DuplicateDocumentError(existing.id, existing.name)

        storage_path = f"{user_id}/{int(time.time() * 1000)}_{safe_file_name(file_name)}"
        await self._store_blob(storage_path, data, mime_type or GENERIC_CONTENT_TYPE)

        doc = Document(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name or file_name,
            original_name=file_name,
            mime_type=mime_type or GENERIC_CONTENT_TYPE,
            size_bytes=len(data),
            storage_path=storage_path,
            storage_bucket=getattr(self.storage, "bucket", settings.storage_bucket),
            file_type=file_type.value,
            status=DocumentStatus.PENDING.value,
            scope=scope,
            thread_id=thread_id,
            folder_id=folder_id,
            doc_metadata={},
            chunk_count=0,
            token_count=0,
            content_hash=content_hash,
            version=version,
            is_latest=True,
            parent_document_id=parent_document_id,
        )
        try:
            doc = await self.repository.add_document(doc)
        except Exception as e:
            logger.exception("Failed to create document record for %s", storage_path)
            try:
                await self.storage.delete(storage_path)
            except StorageError:
                logger.exception("Failed to clean up blob %s", storage_path)
            raise StorageError(f"Failed to create document record: {e}") from e

        logger.info("Uploaded %s (%s, %d bytes) as %s", file_name, file_type.value, len(data), doc.id)
        return doc

    async def upload_version(
        self,
        document_id: str,
        user_id: str,
        file_name: str,
        data: bytes,
        mime_type: Optional[str] = None,
    ) -> Document:
        """
        Upload ``data`` as the next version of ``document_id``. The new record
        keeps the current name, scope, thread and folder, points at the first
        version of the chain and becomes the only latest one.
        """
        current = await self._owned_document(document_id, user_id)
        root_id = current.parent_document_id or current.id
        chain = await self.repository.version_chain(user_id, root_id)
        version = max(d.version or 1 for d in chain) + 1

        doc = await self._create_document(
            user_id, file_name, data, mime_type,
            scope=current.scope, thread_id=current.thread_id, folder_id=current.folder_id,
            name=current.name, version=version, parent_document_id=root_id,
        )
        await self.repository.mark_latest(root_id, doc.id)
        logger.info("Document %s is version %d of %s", doc.id, version, root_id)
        await self._submit(doc.id)
        return doc

    async def list_versions(self, document_id: str, user_id: str) -> Tuple[str, List[Document]]:
        """(root document id, every version newest first) for the chain ``document_id`` belongs to."""
        doc = await self._owned_document(document_id, user_id)
        root_id = doc.parent_document_id or doc.id
        return root_id, await self.repository.version_chain(user_id, root_id)

    async def _store_blob(self, path: str, data: bytes, content_type: str) -> None:
        try:
            await self.storage.put(path, data, content_type)
        except BlobMimeTypeError:
            if content_type == GENERIC_CONTENT_TYPE:
                raise
            logger.warning("Storage refused content type %s for %s; retrying as %s",
                           content_type, path, GENERIC_CONTENT_TYPE)
            await self.storage.put(path, data, GENERIC_CONTENT_TYPE)

    async def _submit(self, document_id: str):
        if self.dispatcher is None:
            logger.warning("No dispatcher configured; %s stays pending", document_id)
            return None
        try:
            return await self.dispatcher.submit(document_id)
        except Exception as e:
            logger.exception("Failed to queue %s for processing", document_id)
            await self.repository.update_document(
                document_id,
                status=DocumentStatus.ERROR.value,
                processing_error=f"Failed to queue document for processing: {e}",
            )
            return None

    # ---------- processing ----------

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def process_document(self, document_id: str) -> ParsedDocument:
        lock = self._lock_for(document_id)
        async with lock:
            return await self._process(document_id)

    async def _process(self, document_id: str) -> ParsedDocument:
        doc = await self.repository.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document not found: {document_id}")

        await self.repository.update_document(
            document_id, status=DocumentStatus.PROCESSING.value, processing_error=None
        )
        logger.info("Processing document %s (%s)", document_id, doc.file_type)

        try:
            file_type = FileType(doc.file_type)
            data = await self.storage.get(doc.storage_path)
            content = as_text(data) if file_type in TEXT_TYPES else data
            parsed = await parse_document(content, file_type, doc.name, registry=self.registry)

            texts = [c.content for c in parsed.chunks]
            embeddings: List[Optional[List[float]]] = []
            if texts:
                try:
                    embeddings = await self.embedder.embed_batch(texts)
                except EmbeddingError:
                    raise
                except Exception as e:
                    raise EmbeddingError(f"Embedding request failed: {e}") from e
            embeddings = list(embeddings) + [None] * (len(texts) - len(embeddings))

            rows, points = self._build_rows(doc, parsed, embeddings)
            token_count = sum(row["token_count"] for row in rows)

            async def _replace_points():
                await self.index.replace_document(document_id, points)

            await self.repository.replace_chunks(
                document_id,
                rows,
                {
                    "status": DocumentStatus.READY.value,
                    "chunk_count": len(rows),
                    "token_count": token_count,
                    "doc_metadata": parsed.metadata or {},
                    "processing_error": None,
                    "processed_at": utcnow(),
                },
                before_commit=_replace_points,
            )
        except Exception as e:
            logger.exception("Processing failed for document %s", document_id)
            await self._mark_failed(document_id, e)
            raise

        logger.info("Document %s ready: %d chunks, %d tokens, %d vectors",
                    document_id, len(rows), token_count, len(points))
        return parsed

    def _build_rows(self, doc: Document, parsed: ParsedDocument, embeddings):
        rows: List[Dict[str, Any]] = []
        points: List[Dict[str, Any]] = []
        for index, (chunk, vector) in enumerate(zip(parsed.chunks, embeddings)):
            cid = chunk_id(doc.id, index, chunk.content)
            chunk_type = getattr(chunk.chunk_type, "value", chunk.chunk_type)
            rows.append({
                "id": cid,
                "document_id": doc.id,
                "content": chunk.content,
                "chunk_index": index,
                "chunk_type": chunk_type,
                "source_page": chunk.source_page,
                "source_line_start": chunk.source_line_start,
                "source_line_end": chunk.source_line_end,
                "embedding": vector,
                "token_count": estimate_tokens(chunk.content, chunk_type),
                "chunk_metadata": chunk.metadata or {},
                "created_at": utcnow(),
            })
            if vector:
                points.append({
                    "id": cid,
                    "vector": vector,
                    "payload": {
                        "document_id": doc.id,
                        "chunk_id": cid,
                        "user_id": doc.user_id,
                        "scope": doc.scope,
                        "thread_id": doc.thread_id,
                        "file_type": doc.file_type,
                        "chunk_index": index,
                    },
                })
        return rows, points

    async def _mark_failed(self, document_id: str, exc: Exception) -> None:
        try:
            await self.repository.update_document(
                document_id,
                status=DocumentStatus.ERROR.value,
                processing_error=str(exc),
                chunk_count=0,
                token_count=0,
            )
            await self.repository.delete_chunks(document_id)
        except Exception:
            logger.exception("Failed to record error status for %s", document_id)
        try:
            await self.index.delete_document(document_id)
        except Exception:
            logger.exception("Failed to remove vector points for %s", document_id)

    async def reprocess_document(self, document_id: str, user_id: str):
        await self._owned_document(document_id, user_id)
        return await self._submit(document_id)

    # ---------- queries / deletion ----------

    async def _owned_document(self, document_id: str, user_id: str) -> Document:
        doc = await self.repository.get_document(document_id)
        if doc is None:
            raise NotFoundError(f"Document not found: {document_id}")
        if doc.user_id != user_id:
            raise AuthorizationError("Unauthorized")
        return doc

    async def get_document_with_chunks(self, document_id: str, user_id: str) -> DocumentDetail:
        doc = await self._owned_document(document_id, user_id)
        chunks = await self.repository.get_chunks(document_id)
        return DocumentDetail(
            document=DocumentOut.model_validate(doc),
            chunks=[
                ChunkOut.model_validate(c).model_copy(update={"has_embedding": c.embedding is not None})
                for c in chunks
            ],
        )

    async def list_documents(self, user_id: str, **filters):
        return await self.repository.list_documents(user_id, **filters)

    async def delete_document(self, document_id: str, user_id: str) -> None:
        doc = await self._owned_document(document_id, user_id)
        try:
            await self.storage.delete(doc.storage_path)
        except StorageError:
            logger.exception("Failed to delete blob %s for document %s", doc.storage_path, document_id)
        await self.index.delete_document(document_id)
        await self.repository.delete_document(document_id)
        logger.info("Deleted document %s", document_id)
