# knowledge_base/search.py
"""
Hybrid retrieval over document chunks.

Qdrant returns candidates above the similarity threshold, restricted to the
folder's ready documents when a folder is given. Candidates are hydrated
from SQL (ready documents only) and re-scored:

    score = VECTOR_WEIGHT * similarity + KEYWORD_WEIGHT * keyword_overlap

Both public entrypoints degrade to empty results when the query cannot be
embedded or the index is unavailable.
"""
import logging
import re
from typing import List, Optional, Sequence

from knowledge_base import deepinfra
from knowledge_base.repository import DocumentRepository
from knowledge_base.schemas import ContextSource, ConversationContext, SearchResult
from knowledge_base.tokens import estimate_tokens
from knowledge_base.vector_index import VectorIndex, get_vector_index

logger = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3
OVERFETCH = 3
CONTEXT_CANDIDATES = 50
CONTEXT_SEPARATOR = "\n\n---\n\n"

_WORD = re.compile(r"\w+", re.UNICODE)


def keyword_overlap(query: str, text: str) -> float:
    """Fraction of distinct query terms that occur in ``text`` (case-insensitive)."""
    terms = {t for t in _WORD.findall((query or "").lower()) if len(t) > 1}
    if not terms:
        return 0.0
    words = set(_WORD.findall((text or "").lower()))
    return sum(1 for t in terms if t in words) / len(terms)


class SearchService:
    def __init__(self, repository: Optional[DocumentRepository] = None, index: Optional[VectorIndex] = None,
                 embedder=None):
        self.repository = repository or DocumentRepository()
        self.index = index or get_vector_index()
        # anything with ``async embed(text)``
        self.embedder = embedder or deepinfra

    async def _embed_query(self, query: str):
        try:
            return await self.embedder.embed(query)
        except Exception:
            logger.exception("Query embedding failed")
            return None

    async def _ranked(self, vector, user_id: str, query: str, limit: int, min_similarity: float,
                      folder_id: Optional[str] = None, **filters) -> List[SearchResult]:
        if folder_id:
            # folder scope is part of the vector query
            document_ids = await self.repository.ready_document_ids(user_id, folder_id)
            if not document_ids:
                return []
            filters["document_ids"] = document_ids
        hits = await self.index.search(
            vector, user_id, limit=limit * OVERFETCH, score_threshold=min_similarity, **filters
        )
        similarity = {h.chunk_id: h.score for h in hits}
        rows = await self.repository.get_chunks_with_documents(list(similarity), user_id, folder_id=folder_id)

        results: List[SearchResult] = []
        for chunk, doc in rows:
            sim = similarity.get(chunk.id, 0.0)
            kw = keyword_overlap(query, chunk.content)
            results.append(SearchResult(
                chunk_id=chunk.id,
                document_id=doc.id,
                document_name=doc.name,
                content=chunk.content,
                chunk_type=chunk.chunk_type,
                chunk_index=chunk.chunk_index,
                source_page=chunk.source_page,
                source_line_start=chunk.source_line_start,
                source_line_end=chunk.source_line_end,
                similarity=sim,
                keyword_score=kw,
                score=VECTOR_WEIGHT * sim + KEYWORD_WEIGHT * kw,
                metadata=chunk.chunk_metadata or {},
            ))
        results.sort(key=lambda r: (-r.score, r.document_id, r.chunk_index))
        return results[:limit]

    async def search_documents(
        self,
        user_id: str,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.7,
        scope: Optional[str] = None,
        thread_id: Optional[str] = None,
        file_types: Optional[Sequence[str]] = None,
        folder_id: Optional[str] = None,
    ) -> List[SearchResult]:
        if not query or not query.strip():
            return []
        vector = await self._embed_query(query)
        if not vector:
            return []
        try:
            return await self._ranked(
                vector, user_id, query, limit, min_similarity,
                folder_id=folder_id, scope=scope, thread_id=thread_id, file_types=file_types,
            )
        except Exception:
            logger.exception("Document search failed for user %s", user_id)
            return []

    async def get_conversation_context(
        self,
        user_id: str,
        thread_id: str,
        query: str,
        max_tokens: int = 4000,
        min_similarity: float = 0.6,
    ) -> ConversationContext:
        """
        Best chunks visible to ``thread_id`` (global documents and the thread's
        own), added in rank order while they fit in ``max_tokens``.
        """
        if not query or not query.strip():
            return ConversationContext()
        vector = await self._embed_query(query)
        if not vector:
            return ConversationContext()
        try:
            ranked = await self._ranked(
                vector, user_id, query, CONTEXT_CANDIDATES, min_similarity, context_thread_id=thread_id,
            )
        except Exception:
            logger.exception("Context retrieval failed for thread %s", thread_id)
            return ConversationContext()

        parts: List[str] = []
        sources: List[ContextSource] = []
        total = 0
        for result in ranked:
            tokens = estimate_tokens(result.content, result.chunk_type)
            if total + tokens > max_tokens:
                break
            parts.append(f"[From {result.document_name}]\n{result.content}")
            sources.append(ContextSource(
                document_id=result.document_id,
                document_name=result.document_name,
                chunk_id=result.chunk_id,
                chunk_index=result.chunk_index,
                source_page=result.source_page,
                score=result.score,
            ))
            total += tokens
        return ConversationContext(content=CONTEXT_SEPARATOR.join(parts), sources=sources, total_tokens=total)
