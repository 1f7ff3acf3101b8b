import asyncio
import os
import re
import zlib

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.test-knowledge.db")
os.environ.setdefault("PROCESSING_MODE", "inline")
os.environ.setdefault("DEEPINFRA_TOKEN", "")

import pytest
from qdrant_client import QdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from knowledge_base.db import init_models, make_engine
from knowledge_base.dispatch import InlineDispatcher
from knowledge_base.folders import FolderService
from knowledge_base.parsers import default_registry
from knowledge_base.processor import DocumentProcessor
from knowledge_base.repository import DocumentRepository
from knowledge_base.search import SearchService
from knowledge_base.storage import LocalBlobStorage
from knowledge_base.vector_index import VectorIndex

VECTOR_SIZE = 16
_WORD = re.compile(r"\w+")


class FakeEmbedder:
    """Deterministic bag-of-words vectors so identical texts score 1.0."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    def vector(self, text):
        vec = [0.0] * VECTOR_SIZE
        for word in _WORD.findall(text.lower()):
            vec[zlib.crc32(word.encode("utf-8")) % VECTOR_SIZE] += 1.0
        vec[0] += 0.01
        return vec

    async def embed_batch(self, texts):
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return [self.vector(t) if t and t.strip() else None for t in texts]

    async def embed(self, text):
        vectors = await self.embed_batch([text])
        return vectors[0]


class FakeVision:
    def __init__(self, available: bool = True, text: str = "## OCR Text\nInvoice 42\n\n## Description\nA scanned invoice."):
        self.available = available
        self.text = text
        self.error = None

    def is_available(self):
        return self.available

    def model_name(self):
        return "fake-vision"

    async def describe_and_transcribe(self, data, mime_type="image/png"):
        if self.error is not None:
            raise self.error
        return self.text


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'kb.db'}", poolclass=NullPool)
    run(init_models(bind=engine))
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    run(engine.dispose())


@pytest.fixture
def repository(session_factory):
    return DocumentRepository(session_factory, insert_batch=50)


@pytest.fixture
def index():
    return VectorIndex(client=QdrantClient(":memory:"), collection="test_chunks", vector_size=VECTOR_SIZE)


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(root=str(tmp_path / "blobs"), bucket="documents", allowed_mime_types=[])


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vision():
    return FakeVision()


@pytest.fixture
def processor(repository, storage, index, embedder, vision):
    processor = DocumentProcessor(
        repository=repository,
        storage=storage,
        index=index,
        embedder=embedder,
        registry=default_registry(vision=vision),
    )
    processor.dispatcher = InlineDispatcher(processor.process_document)
    return processor


@pytest.fixture
def folders(repository):
    return FolderService(repository)


@pytest.fixture
def search_service(repository, index, embedder):
    return SearchService(repository=repository, index=index, embedder=embedder)
