# knowledge_base/main.py
import asyncio
import logging
import time
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_base import deepinfra
from knowledge_base.config import settings
from knowledge_base.db import close_engine, get_async_session, init_models
from knowledge_base.dispatch import InlineDispatcher, build_dispatcher
from knowledge_base.errors import (
    AuthorizationError,
    DuplicateDocumentError,
    EmbeddingError,
    FolderCycleError,
    KnowledgeBaseError,
    NotFoundError,
    ParseError,
    StorageError,
    UnsupportedTypeError,
    ValidationError,
)
from knowledge_base.folders import FolderService
from knowledge_base.processor import DocumentProcessor
from knowledge_base.schemas import (
    ContextRequest,
    DocumentList,
    DocumentMove,
    DocumentOut,
    DocumentVersion,
    FolderCreate,
    FolderUpdate,
    SearchRequest,
    VersionHistory,
)
from knowledge_base.search import SearchService
from knowledge_base.vector_index import get_qdrant_client

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Knowledge Base", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus counters
uploads_total = Counter("kb_uploads_total", "Total uploads accepted")
uploads_rejected = Counter("kb_uploads_rejected_total", "Uploads rejected before storage")
process_requests_total = Counter("kb_process_requests_total", "Explicit reprocessing requests")
search_requests_total = Counter("kb_search_requests_total", "Search requests")
context_requests_total = Counter("kb_context_requests_total", "Conversation context requests")

UPLOAD_READ_CHUNK = 1024 * 64

# Redis helper
_redis = None
def get_redis():
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def allow_request(key: str, limit: int, period: int = 60) -> bool:
    r = get_redis()
    now = int(time.time())
    bucket_key = f"rate:{key}:{now // period}"
    val = await r.incr(bucket_key)
    if val == 1:
        await r.expire(bucket_key, period + 1)
    return val <= limit


# ---------- services (overridable dependencies) ----------

_processor: Optional[DocumentProcessor] = None
_folders: Optional[FolderService] = None
_search: Optional[SearchService] = None

def get_processor() -> DocumentProcessor:
    global _processor
    if _processor is None:
        _processor = DocumentProcessor()
        _processor.dispatcher = build_dispatcher(_processor)
    return _processor

def get_folder_service() -> FolderService:
    global _folders
    if _folders is None:
        _folders = FolderService()
    return _folders

def get_search_service() -> SearchService:
    global _search
    if _search is None:
        _search = SearchService()
    return _search


async def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def rate_limited(user_id: str = Depends(get_user_id)) -> str:
    try:
        allowed = await allow_request(f"search:{user_id}", limit=settings.search_rate_limit, period=60)
    except Exception:
        logger.exception("Rate limiter unavailable; allowing request")
        allowed = True
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many requests")
    return user_id


# ---------- lifecycle ----------

@app.on_event("startup")
async def startup():
    await init_models()

@app.on_event("shutdown")
async def shutdown():
    global _redis
    if _processor is not None and isinstance(_processor.dispatcher, InlineDispatcher):
        await _processor.dispatcher.drain()
    try:
        await deepinfra.aclose()
    except Exception:
        logger.exception("Failed to close provider client on shutdown")
    if _redis is not None:
        try:
            await _redis.close()
        except Exception:
            logger.exception("Failed to close redis on shutdown")
        _redis = None
    await close_engine()


@app.get("/healthz")
async def healthz(session: AsyncSession = Depends(get_async_session)):
    ok = {"database": False, "redis": False, "qdrant": False}
    try:
        await session.execute(text("SELECT 1"))
        ok["database"] = True
    except Exception:
        logger.exception("Database health check failed")
    try:
        await get_redis().ping()
        ok["redis"] = True
    except Exception:
        logger.exception("Redis ping failed")
    try:
        client = get_qdrant_client()
        await asyncio.wait_for(asyncio.to_thread(lambda: client.get_collections()), timeout=2.0)
        ok["qdrant"] = True
    except Exception:
        logger.exception("Qdrant health check failed")
    status = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status)

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------- errors ----------

ERROR_STATUS = [
    (UnsupportedTypeError, 400),
    (ValidationError, 400),
    (DuplicateDocumentError, 409),
    (FolderCycleError, 409),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (ParseError, 422),
    (EmbeddingError, 502),
    (StorageError, 502),
]

@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)

@app.exception_handler(KnowledgeBaseError)
def knowledge_base_exception_handler(request: Request, exc: KnowledgeBaseError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    body = {"detail": str(exc)}
    if isinstance(exc, DuplicateDocumentError):
        body["existing_document_id"] = exc.existing_document_id
        body["existing_name"] = exc.existing_name
    if status >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(body, status_code=status)


# ---------- documents ----------

async def read_upload(file: UploadFile, max_size: int) -> bytes:
    chunks = []
    written = 0
    while True:
        chunk = await file.read(UPLOAD_READ_CHUNK)
        if not chunk:
            break
        written += len(chunk)
        if written > max_size:
            uploads_rejected.inc()
            raise HTTPException(status_code=413, detail="Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)

@app.post("/documents", status_code=202, response_model=DocumentOut)
async def upload_document(
    file: UploadFile = File(...),
    scope: str = Form("global"),
    thread_id: Optional[str] = Form(None),
    folder_id: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    processor: DocumentProcessor = Depends(get_processor),
):
    data = await read_upload(file, processor.max_upload_size)
    try:
        doc = await processor.upload_document(
            user_id=user_id,
            file_name=file.filename or "uploaded",
            data=data,
            mime_type=file.content_type,
            scope=scope,
            thread_id=thread_id or None,
            folder_id=folder_id or None,
        )
    except (UnsupportedTypeError, ValidationError, DuplicateDocumentError):
        uploads_rejected.inc()
        raise
    uploads_total.inc()
    return DocumentOut.model_validate(doc)

@app.get("/documents", response_model=DocumentList)
async def list_documents(
    scope: Optional[str] = None,
    thread_id: Optional[str] = None,
    status: Optional[str] = None,
    folder_id: Optional[str] = None,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    order_by: str = "created_at",
    order_dir: str = "desc",
    user_id: str = Depends(get_user_id),
    processor: DocumentProcessor = Depends(get_processor),
):
    documents, total = await processor.list_documents(
        user_id, scope=scope, thread_id=thread_id, status=status, folder_id=folder_id,
        limit=limit, offset=offset, order_by=order_by, order_dir=order_dir,
    )
    return DocumentList(documents=[DocumentOut.model_validate(d) for d in documents], total=total)

@app.get("/documents/{document_id}")
async def get_document(document_id: str, user_id: str = Depends(get_user_id),
                       processor: DocumentProcessor = Depends(get_processor)):
    return await processor.get_document_with_chunks(document_id, user_id)

@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, user_id: str = Depends(get_user_id),
                          processor: DocumentProcessor = Depends(get_processor)):
    await processor.delete_document(document_id, user_id)
    return {"deleted": document_id}

@app.post("/documents/{document_id}/process", status_code=202)
async def process_document(document_id: str, user_id: str = Depends(get_user_id),
                           processor: DocumentProcessor = Depends(get_processor)):
    process_requests_total.inc()
    handle = await processor.reprocess_document(document_id, user_id)
    return {"document_id": document_id, "queued": handle is not None}

@app.get("/documents/{document_id}/versions", response_model=VersionHistory)
async def list_versions(document_id: str, user_id: str = Depends(get_user_id),
                        processor: DocumentProcessor = Depends(get_processor)):
    root_id, versions = await processor.list_versions(document_id, user_id)
    return VersionHistory(
        root_document_id=root_id,
        versions=[DocumentVersion.model_validate(d) for d in versions],
    )

@app.post("/documents/{document_id}/versions", status_code=202, response_model=DocumentOut)
async def upload_version(
    document_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(get_user_id),
    processor: DocumentProcessor = Depends(get_processor),
):
    data = await read_upload(file, processor.max_upload_size)
    try:
        doc = await processor.upload_version(
            document_id, user_id, file.filename or "uploaded", data, mime_type=file.content_type,
        )
    except (UnsupportedTypeError, ValidationError, DuplicateDocumentError):
        uploads_rejected.inc()
        raise
    uploads_total.inc()
    return DocumentOut.model_validate(doc)

@app.post("/documents/{document_id}/move", response_model=DocumentOut)
async def move_document(document_id: str, body: DocumentMove, user_id: str = Depends(get_user_id),
                        folders: FolderService = Depends(get_folder_service)):
    return await folders.move_document(document_id, user_id, body.folder_id)


# ---------- retrieval ----------

@app.post("/search")
async def search(body: SearchRequest, user_id: str = Depends(rate_limited),
                 service: SearchService = Depends(get_search_service)):
    search_requests_total.inc()
    results = await service.search_documents(
        user_id,
        body.query,
        limit=body.limit,
        min_similarity=body.min_similarity,
        scope=body.scope,
        thread_id=body.thread_id,
        file_types=body.file_types,
        folder_id=body.folder_id,
    )
    return {"results": [r.model_dump() for r in results]}

@app.post("/context")
async def conversation_context(body: ContextRequest, user_id: str = Depends(rate_limited),
                               service: SearchService = Depends(get_search_service)):
    context_requests_total.inc()
    return await service.get_conversation_context(
        user_id, body.thread_id, body.query, max_tokens=body.max_tokens, min_similarity=body.min_similarity,
    )


# ---------- folders ----------

@app.post("/folders", status_code=201)
async def create_folder(body: FolderCreate, user_id: str = Depends(get_user_id),
                        folders: FolderService = Depends(get_folder_service)):
    return await folders.create_folder(user_id, body.name, parent_id=body.parent_id, color=body.color)

@app.get("/folders/tree")
async def folder_tree(user_id: str = Depends(get_user_id),
                      folders: FolderService = Depends(get_folder_service)):
    return {"folders": await folders.get_folder_tree(user_id)}

@app.get("/folders/{folder_id}")
async def folder_contents(
    folder_id: str,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    folders: FolderService = Depends(get_folder_service),
):
    return await folders.get_folder_contents(user_id, folder_id, limit=limit, offset=offset)

@app.get("/folders/{folder_id}/breadcrumb")
async def folder_breadcrumb(folder_id: str, user_id: str = Depends(get_user_id),
                            folders: FolderService = Depends(get_folder_service)):
    return {"breadcrumb": await folders.get_folder_breadcrumb(folder_id, user_id)}

@app.patch("/folders/{folder_id}")
async def update_folder(folder_id: str, body: FolderUpdate, user_id: str = Depends(get_user_id),
                        folders: FolderService = Depends(get_folder_service)):
    if "parent_id" in body.model_fields_set:
        await folders.move_folder(folder_id, user_id, body.parent_id)
    return await folders.update_folder(folder_id, user_id, name=body.name, color=body.color)

@app.delete("/folders/{folder_id}")
async def delete_folder(folder_id: str, user_id: str = Depends(get_user_id),
                        folders: FolderService = Depends(get_folder_service)):
    return await folders.delete_folder(folder_id, user_id)
