# knowledge_base/vector_index.py
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http import models as rest_models

from knowledge_base.config import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_client = None


def _create_collection_safe(client: QdrantClient, name: str, vector_size: int, distance: str = "Cosine"):
    """
    Create the collection with the configured vector size unless it already exists,
    and index the payload keys every search filters on.
    """
    try:
        if client.collection_exists(collection_name=name):
            logger.info("Qdrant collection '%s' already exists.", name)
            return
        logger.info("Qdrant collection '%s' not found; attempting to create.", name)
        vec_params = rest_models.VectorParams(size=vector_size, distance=rest_models.Distance[distance.upper()])
        client.create_collection(collection_name=name, vectors_config=vec_params)
        logger.info("Created qdrant collection '%s' with vector size %s", name, vector_size)
        for field in ("user_id", "document_id", "scope", "thread_id", "file_type"):
            try:
                client.create_payload_index(
                    collection_name=name,
                    field_name=field,
                    field_schema=rest_models.PayloadSchemaType.KEYWORD,
                )
            except Exception as e:
                # local (in-memory) mode has no payload indexes
                logger.debug("create_payload_index(%s) skipped: %s", field, e)
    except Exception:
        logger.exception("Unexpected error while ensuring qdrant collection '%s'", name)
        raise


def get_qdrant_client():
    global _client
    if _client is None:
        with _lock:
            if _client is None:
                _client = QdrantClient(url=settings.qdrant_url, timeout=30)
    return _client


@dataclass
class VectorHit:
    chunk_id: str
    document_id: str
    score: float
    payload: Dict[str, Any]


class VectorIndex:
    """
    Chunk embeddings in Qdrant. Point id is the chunk id; the payload carries the
    owning document and the fields search filters on. The sync client is driven
    through asyncio.to_thread.
    """

    def __init__(self, client: Optional[QdrantClient] = None, collection: Optional[str] = None,
                 vector_size: Optional[int] = None):
        self.client = client or get_qdrant_client()
        self.collection = collection or settings.collection
        self.vector_size = int(vector_size or settings.deepinfra_vector_size)
        self._ready = False

    def ensure_collection(self) -> None:
        if not self._ready:
            _create_collection_safe(self.client, self.collection, self.vector_size, distance="Cosine")
            self._ready = True

    def _upsert(self, points: List[rest_models.PointStruct]) -> None:
        self.ensure_collection()
        if points:
            self.client.upsert(collection_name=self.collection, points=points, wait=True)

    async def upsert(self, points: List[Dict[str, Any]]) -> int:
        """points: dicts with id, vector and payload. Returns the number written."""
        structs = [
            rest_models.PointStruct(id=p["id"], vector=p["vector"], payload=p["payload"])
            for p in points
        ]
        await asyncio.to_thread(self._upsert, structs)
        return len(structs)

    def _delete_document(self, document_id: str) -> None:
        self.ensure_collection()
        selector = rest_models.FilterSelector(
            filter=rest_models.Filter(must=[
                rest_models.FieldCondition(key="document_id", match=rest_models.MatchValue(value=document_id)),
            ])
        )
        self.client.delete(collection_name=self.collection, points_selector=selector, wait=True)

    async def delete_document(self, document_id: str) -> None:
        await asyncio.to_thread(self._delete_document, document_id)

    async def replace_document(self, document_id: str, points: List[Dict[str, Any]]) -> int:
        await self.delete_document(document_id)
        return await self.upsert(points)

    @staticmethod
    def build_filter(
        user_id: str,
        scope: Optional[str] = None,
        thread_id: Optional[str] = None,
        file_types: Optional[Sequence[str]] = None,
        context_thread_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> rest_models.Filter:
        """
        ``context_thread_id`` selects global documents plus the conversation
        documents of that thread, the set a conversation may draw context from.
        ``document_ids`` restricts hits to those documents (folder-scoped search).
        """
        must: List[Any] = [
            rest_models.FieldCondition(key="user_id", match=rest_models.MatchValue(value=user_id)),
        ]
        if scope:
            must.append(rest_models.FieldCondition(key="scope", match=rest_models.MatchValue(value=scope)))
        if thread_id:
            must.append(rest_models.FieldCondition(key="thread_id", match=rest_models.MatchValue(value=thread_id)))
        if file_types:
            must.append(rest_models.FieldCondition(key="file_type", match=rest_models.MatchAny(any=list(file_types))))
        if document_ids is not None:
            must.append(rest_models.FieldCondition(key="document_id", match=rest_models.MatchAny(any=list(document_ids))))
        if context_thread_id:
            must.append(rest_models.Filter(should=[
                rest_models.FieldCondition(key="scope", match=rest_models.MatchValue(value="global")),
                rest_models.FieldCondition(key="thread_id", match=rest_models.MatchValue(value=context_thread_id)),
            ]))
        return rest_models.Filter(must=must)

    def _search(self, vector: List[float], query_filter: rest_models.Filter, limit: int,
                score_threshold: Optional[float]) -> List[VectorHit]:
        self.ensure_collection()
        response = self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=query_filter,
            limit=limit,
            score_threshold=score_threshold,
            with_payload=True,
        )
        hits = []
        for point in response.points:
            payload = point.payload or {}
            hits.append(VectorHit(
                chunk_id=str(point.id),
                document_id=payload.get("document_id"),
                score=float(point.score),
                payload=payload,
            ))
        return hits

    async def search(self, vector: List[float], user_id: str, limit: int = 10,
                     score_threshold: Optional[float] = None, **filters) -> List[VectorHit]:
        query_filter = self.build_filter(user_id, **filters)
        return await asyncio.to_thread(self._search, vector, query_filter, limit, score_threshold)


_index: Optional[VectorIndex] = None

def get_vector_index() -> VectorIndex:
    global _index
    if _index is None:
        _index = VectorIndex()
    return _index
