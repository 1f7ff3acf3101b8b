# knowledge_base/deepinfra.py
"""
DeepInfra client (OpenAI-compatible API) for embeddings and chat completions.

Calls are made once: retrying is the job queue's business, through an explicit
reprocessing request, not this layer's.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from knowledge_base.config import settings
from knowledge_base.errors import EmbeddingError

logger = logging.getLogger(__name__)

_default_client: Optional[httpx.AsyncClient] = None

def _get_client():
    global _default_client
    if _default_client is None:
        _default_client = httpx.AsyncClient(timeout=settings.provider_timeout)
    return _default_client

async def aclose() -> None:
    """Close the shared client (workers call this before their event loop ends)."""
    global _default_client
    if _default_client is not None:
        await _default_client.aclose()
        _default_client = None

def _headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {settings.deepinfra_token}", "Content-Type": "application/json"}

async def _post(path: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
    url = f"{settings.deepinfra_base.rstrip('/')}/{path}"
    resp = await _get_client().post(url, json=payload, headers=_headers(), timeout=timeout or settings.provider_timeout)
    resp.raise_for_status()
    return resp.json()

async def embed_batch(texts: List[str], model: Optional[str] = None, batch_size: Optional[int] = None) -> List[Optional[List[float]]]:
    """
    Embed ``texts`` preserving order. Blank texts and items missing from the
    provider response come back as None; a failed request raises EmbeddingError.
    """
    if not settings.deepinfra_token:
        raise EmbeddingError("Embedding provider is not configured (DEEPINFRA_TOKEN is empty)")

    model = model or settings.embedding_model
    batch_size = batch_size or max(1, settings.embed_batch or 64)
    embeddings: List[Optional[List[float]]] = [None] * len(texts)
    pending = [i for i, t in enumerate(texts) if t and t.strip()]

    for start in range(0, len(pending), batch_size):
        indices = pending[start:start + batch_size]
        payload = {"model": model, "input": [texts[i] for i in indices], "encoding_format": "float"}
        try:
            data = await _post("embeddings", payload)
        except Exception as e:
            logger.exception("Embedding request failed for batch of %d texts", len(indices))
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        for position, item in enumerate(data.get("data", [])):
            slot = item.get("index", position)
            vector = item.get("embedding")
            if isinstance(slot, int) and 0 <= slot < len(indices) and vector:
                embeddings[indices[slot]] = vector

    missing = sum(1 for i in pending if embeddings[i] is None)
    if missing:
        logger.warning("Embedding provider returned no vector for %d of %d texts", missing, len(pending))
    return embeddings

async def embed(text: str, model: Optional[str] = None) -> Optional[List[float]]:
    vectors = await embed_batch([text], model=model)
    return vectors[0] if vectors else None

async def chat_completion(messages, model: str, max_tokens: int = 600, timeout=60):
    payload = {"model": model, "messages": messages, "max_tokens": max_tokens}
    resp = await _post("chat/completions", payload, timeout=timeout)
    choices = resp.get("choices")
    if not choices or not choices[0].get("message"):
        raise RuntimeError("Invalid LLM response")
    return choices[0]["message"]["content"]
