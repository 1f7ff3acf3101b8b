import asyncio

from knowledge_base.search import CONTEXT_SEPARATOR, keyword_overlap
from knowledge_base.tokens import estimate_tokens

HANDBOOK = b"# Vacation policy\n\nEmployees receive twenty five vacation days per year.\n"
VACATION = "Employees receive twenty five vacation days per year."
FALCON = "Project Falcon launches in March with three pilot customers."
HERON = "Budget review for Project Heron is scheduled next Tuesday."


async def _seed(processor, folders):
    policies = await folders.create_folder("user-1", "Policies")
    await processor.upload_document("user-1", "handbook.md", HANDBOOK, "text/markdown", folder_id=policies.id)
    await processor.upload_document("user-1", "falcon.txt", FALCON.encode(), "text/plain",
                                    scope="conversation", thread_id="t-1")
    await processor.upload_document("user-1", "heron.txt", HERON.encode(), "text/plain",
                                    scope="conversation", thread_id="t-2")
    await processor.upload_document("user-2", "private.txt", VACATION.encode(), "text/plain")
    await processor.dispatcher.drain()
    return policies


def test_exact_chunk_ranks_first(processor, folders, search_service):
    async def scenario():
        await _seed(processor, folders)
        return await search_service.search_documents("user-1", VACATION, min_similarity=0.0)

    results = asyncio.run(scenario())
    assert results
    top = results[0]
    assert top.document_name == "handbook.md"
    assert top.content == VACATION
    assert top.keyword_score == 1.0
    assert top.similarity > 0.99
    assert abs(top.score - (0.7 * top.similarity + 0.3 * top.keyword_score)) < 1e-9
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
    # other users' documents never leak
    assert all(r.document_name != "private.txt" for r in results)


def test_search_filters(processor, folders, search_service):
    async def scenario():
        policies = await _seed(processor, folders)
        by_thread = await search_service.search_documents("user-1", HERON, min_similarity=0.0, thread_id="t-2")
        by_type = await search_service.search_documents("user-1", HERON, min_similarity=0.0, file_types=["md"])
        by_folder = await search_service.search_documents("user-1", HERON, min_similarity=0.0,
                                                          folder_id=policies.id)
        at_root = await search_service.search_documents("user-1", VACATION, min_similarity=0.0,
                                                        folder_id="root")
        limited = await search_service.search_documents("user-1", VACATION, min_similarity=0.0, limit=1)
        return by_thread, by_type, by_folder, at_root, limited

    by_thread, by_type, by_folder, at_root, limited = asyncio.run(scenario())
    assert {r.document_name for r in by_thread} == {"heron.txt"}
    assert {r.document_name for r in by_type} == {"handbook.md"}
    assert {r.document_name for r in by_folder} == {"handbook.md"}
    assert "handbook.md" not in {r.document_name for r in at_root}
    assert len(limited) == 1


def test_failed_query_embedding_returns_empty(processor, folders, search_service, embedder):
    async def scenario():
        await _seed(processor, folders)
        embedder.fail = True
        return (
            await search_service.search_documents("user-1", VACATION),
            await search_service.get_conversation_context("user-1", "t-1", VACATION),
        )

    results, context = asyncio.run(scenario())
    assert results == []
    assert context.content == "" and context.sources == [] and context.total_tokens == 0


def test_index_failure_returns_empty(search_service, monkeypatch):
    async def broken_search(*args, **kwargs):
        raise RuntimeError("qdrant unreachable")

    monkeypatch.setattr(search_service.index, "search", broken_search)
    assert asyncio.run(search_service.search_documents("user-1", VACATION)) == []


def test_conversation_context_scope(processor, folders, search_service):
    async def scenario():
        await _seed(processor, folders)
        return await search_service.get_conversation_context("user-1", "t-1", FALCON, min_similarity=0.0)

    context = asyncio.run(scenario())
    names = {s.document_name for s in context.sources}
    assert "falcon.txt" in names
    assert "heron.txt" not in names
    assert names <= {"falcon.txt", "handbook.md"}
    assert context.sources[0].document_name == "falcon.txt"
    entries = context.content.split(CONTEXT_SEPARATOR)
    assert entries[0] == f"[From falcon.txt]\n{FALCON}"
    assert len(entries) == len(context.sources)
    assert context.total_tokens <= 4000


def test_conversation_context_respects_budget(processor, folders, search_service):
    budget = estimate_tokens(FALCON, "text")

    async def scenario():
        await _seed(processor, folders)
        return await search_service.get_conversation_context(
            "user-1", "t-1", FALCON, max_tokens=budget, min_similarity=0.0
        )

    context = asyncio.run(scenario())
    assert [s.document_name for s in context.sources] == ["falcon.txt"]
    assert context.total_tokens == budget


def test_keyword_overlap():
    assert keyword_overlap("vacation days", "Employees receive vacation days") == 1.0
    assert keyword_overlap("vacation budget", "vacation days") == 0.5
    assert keyword_overlap("", "anything") == 0.0


def test_folder_search_not_crowded_out_by_other_documents(processor, folders, search_service):
    query = "quarterly budget review meeting"

    async def scenario():
        archive = await folders.create_folder("user-1", "Archive")
        for i in range(6):
            await processor.upload_document("user-1", f"root-{i}.txt", f"{query} {i}".encode(), "text/plain")
        await processor.upload_document("user-1", "in_folder.txt", b"budget review notes for the archive",
                                        "text/plain", folder_id=archive.id)
        await processor.dispatcher.drain()
        everywhere = await search_service.search_documents("user-1", query, limit=1, min_similarity=0.0)
        in_folder = await search_service.search_documents("user-1", query, limit=1, min_similarity=0.0,
                                                          folder_id=archive.id)
        empty = await folders.create_folder("user-1", "Empty")
        nothing = await search_service.search_documents("user-1", query, min_similarity=0.0, folder_id=empty.id)
        return everywhere, in_folder, nothing

    everywhere, in_folder, nothing = asyncio.run(scenario())
    assert everywhere[0].document_name.startswith("root-")
    assert [r.document_name for r in in_folder] == ["in_folder.txt"]
    assert nothing == []


def test_collection_is_created_with_cosine_distance(index):
    from qdrant_client.http import models as rest_models

    index.ensure_collection()
    info = index.client.get_collection(index.collection)
    assert info.config.params.vectors.distance == rest_models.Distance.COSINE
    assert info.config.params.vectors.size == index.vector_size
