import asyncio

import pytest

from knowledge_base.errors import (
    AuthorizationError,
    BlobMimeTypeError,
    DuplicateDocumentError,
    EmbeddingError,
    NotFoundError,
    ParseError,
    StorageError,
    UnsupportedTypeError,
    ValidationError,
)
from knowledge_base.processor import chunk_id, safe_file_name

MARKDOWN = (
    "# Onboarding\n\n"
    "Welcome to the team. This guide covers laptops, accounts and the first week.\n\n"
    "## Accounts\n\n"
    "Request VPN access from IT on day one. Password resets go through the helpdesk portal.\n"
).encode("utf-8")


def _record_statuses(processor, monkeypatch):
    statuses = []
    original = processor.repository.update_document

    async def recording(document_id, **values):
        if "status" in values:
            statuses.append(values["status"])
        return await original(document_id, **values)

    monkeypatch.setattr(processor.repository, "update_document", recording)
    return statuses


def _replace_statuses(processor, monkeypatch, statuses):
    original = processor.repository.replace_chunks

    async def recording(document_id, rows, document_values, before_commit=None):
        statuses.append(document_values["status"])
        return await original(document_id, rows, document_values, before_commit=before_commit)

    monkeypatch.setattr(processor.repository, "replace_chunks", recording)


def test_markdown_upload_is_processed_to_ready(processor, monkeypatch):
    statuses = _record_statuses(processor, monkeypatch)
    _replace_statuses(processor, monkeypatch, statuses)

    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        created_status = doc.status
        await processor.dispatcher.wait(doc.id)
        stored = await processor.repository.get_document(doc.id)
        chunks = await processor.repository.get_chunks(doc.id)
        return created_status, stored, chunks

    created_status, doc, chunks = asyncio.run(scenario())

    assert created_status == "pending"
    assert statuses == ["processing", "ready"]
    assert doc.status == "ready"
    assert doc.file_type == "md"
    assert doc.chunk_count == len(chunks) == 4
    assert doc.token_count == sum(c.token_count for c in chunks)
    assert doc.processed_at is not None
    assert doc.processing_error is None
    assert doc.doc_metadata["line_count"] == MARKDOWN.decode().count("\n") + 1
    assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]
    assert [c.chunk_type for c in chunks] == ["heading", "text", "heading", "text"]
    assert all(c.embedding is not None for c in chunks)


def test_corrupted_pdf_ends_in_error(processor):
    async def scenario():
        doc = await processor.upload_document("user-1", "broken.pdf", b"%PDF-1.4\ngarbage", "application/pdf")
        with pytest.raises(ParseError):
            await processor.dispatcher.wait(doc.id)
        return await processor.repository.get_document(doc.id), await processor.repository.count_chunks(doc.id)

    doc, chunk_count = asyncio.run(scenario())

    assert doc.status == "error"
    assert doc.processing_error.startswith("Failed to parse PDF document")
    assert doc.chunk_count == 0
    assert chunk_count == 0


def test_embedding_failure_marks_error_and_clears_chunks(processor, embedder):
    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        embedder.fail = True
        with pytest.raises(EmbeddingError):
            await processor.process_document(doc.id)
        return await processor.repository.get_document(doc.id), await processor.repository.count_chunks(doc.id)

    doc, chunk_count = asyncio.run(scenario())

    assert doc.status == "error"
    assert "embedding provider unavailable" in doc.processing_error
    assert doc.chunk_count == 0 and doc.token_count == 0
    assert chunk_count == 0


def test_missing_embeddings_do_not_block_ready(processor, embedder, monkeypatch):
    async def partial(texts):
        return [None for _ in texts]

    monkeypatch.setattr(embedder, "embed_batch", partial)

    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        return await processor.repository.get_document(doc.id), await processor.repository.get_chunks(doc.id)

    doc, chunks = asyncio.run(scenario())
    assert doc.status == "ready"
    assert len(chunks) == 4
    assert all(c.embedding is None for c in chunks)


def test_reprocessing_replaces_chunks(processor):
    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        first = [c.id for c in await processor.repository.get_chunks(doc.id)]
        await asyncio.gather(processor.process_document(doc.id), processor.process_document(doc.id))
        second = [c.id for c in await processor.repository.get_chunks(doc.id)]
        return first, second, await processor.repository.get_document(doc.id)

    first, second, doc = asyncio.run(scenario())
    assert first == second
    assert doc.chunk_count == len(second)
    assert doc.status == "ready"


def test_unsupported_types_are_rejected(processor):
    with pytest.raises(UnsupportedTypeError):
        asyncio.run(processor.upload_document("user-1", "archive.zip", b"PK\x03\x04", "application/zip"))
    with pytest.raises(UnsupportedTypeError):
        asyncio.run(processor.upload_document("user-1", "old.ppt", b"\xd0\xcf\x11\xe0", "application/vnd.ms-powerpoint"))


def test_magic_mismatch_rejected_before_storage(processor, storage, tmp_path):
    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(processor.upload_document("user-1", "fake.pdf", b"hello world", "application/pdf"))
    assert "PDF" in str(exc_info.value)
    assert not (tmp_path / "blobs").exists()


def test_conversation_scope_requires_thread(processor):
    with pytest.raises(ValidationError):
        asyncio.run(processor.upload_document("user-1", "a.txt", b"hi", "text/plain", scope="conversation"))


def test_oversized_upload_rejected(processor):
    processor.max_upload_size = 10
    with pytest.raises(ValidationError):
        asyncio.run(processor.upload_document("user-1", "a.txt", b"x" * 11, "text/plain"))


def test_duplicate_content_is_rejected(processor):
    async def scenario():
        first = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(first.id)
        with pytest.raises(DuplicateDocumentError) as exc_info:
            await processor.upload_document("user-1", "copy.md", MARKDOWN, "text/markdown")
        # another user may upload the same bytes
        other = await processor.upload_document("user-2", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.drain()
        return first, exc_info.value, other

    first, error, other = asyncio.run(scenario())
    assert error.existing_document_id == first.id
    assert other.id != first.id


def test_storage_mime_refusal_retries_as_octet_stream(processor, storage):
    storage.allowed_mime_types = ["application/pdf"]
    seen = []
    original_put = storage.put

    async def recording_put(path, data, content_type):
        seen.append(content_type)
        return await original_put(path, data, content_type)

    storage.put = recording_put

    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        return await processor.repository.get_document(doc.id)

    doc = asyncio.run(scenario())
    assert seen == ["text/markdown", "application/octet-stream"]
    assert doc.status == "ready"


def test_octet_stream_refusal_is_not_retried(processor, storage):
    async def refuse(path, data, content_type):
        raise BlobMimeTypeError("bucket policy")

    storage.put = refuse
    with pytest.raises(BlobMimeTypeError):
        asyncio.run(processor.upload_document("user-1", "blob.txt", b"hi", None))


def test_record_failure_removes_blob(processor, storage, monkeypatch):
    deleted = []
    original_delete = storage.delete

    async def recording_delete(path):
        deleted.append(path)
        return await original_delete(path)

    async def broken_add(doc):
        raise RuntimeError("db down")

    storage.delete = recording_delete
    monkeypatch.setattr(processor.repository, "add_document", broken_add)

    with pytest.raises(StorageError):
        asyncio.run(processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown"))
    assert len(deleted) == 1
    assert deleted[0].startswith("user-1/") and deleted[0].endswith("_guide.md")


def test_delete_checks_owner_and_removes_everything(processor, storage, index):
    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        with pytest.raises(AuthorizationError):
            await processor.delete_document(doc.id, "user-2")
        await processor.delete_document(doc.id, "user-1")
        with pytest.raises(NotFoundError):
            await processor.delete_document(doc.id, "user-1")
        with pytest.raises(StorageError):
            await storage.get(doc.storage_path)
        hits = await index.search([1.0] * 16, "user-1", limit=10)
        return await processor.repository.count_chunks(doc.id), hits

    chunk_count, hits = asyncio.run(scenario())
    assert chunk_count == 0
    assert hits == []


def test_get_document_with_chunks(processor):
    async def scenario():
        doc = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        await processor.dispatcher.wait(doc.id)
        return await processor.get_document_with_chunks(doc.id, "user-1")

    detail = asyncio.run(scenario())
    assert detail.document.status == "ready"
    assert detail.document.metadata["char_count"] > 0
    assert [c.chunk_index for c in detail.chunks] == [0, 1, 2, 3]
    assert all(c.has_embedding for c in detail.chunks)


def test_list_documents_filters_and_orders(processor):
    async def scenario():
        await processor.upload_document("user-1", "b.txt", b"bravo", "text/plain")
        await processor.upload_document("user-1", "a.txt", b"alpha", "text/plain")
        await processor.upload_document("user-1", "c.txt", b"charlie", "text/plain", scope="conversation",
                                        thread_id="t-1")
        await processor.dispatcher.drain()
        by_name, total = await processor.list_documents("user-1", order_by="name", order_dir="asc")
        in_thread, _ = await processor.list_documents("user-1", thread_id="t-1")
        page, _ = await processor.list_documents("user-1", limit=500)
        return [d.name for d in by_name], total, [d.name for d in in_thread], len(page)

    names, total, in_thread, page_size = asyncio.run(scenario())
    assert names == ["a.txt", "b.txt", "c.txt"]
    assert total == 3
    assert in_thread == ["c.txt"]
    assert page_size == 3


def test_chunk_ids_are_deterministic():
    doc_id = "6f1c3a52-3c1e-4a8c-9d57-0b1d2f8e1a10"
    assert chunk_id(doc_id, 0, "hello") == chunk_id(doc_id, 0, "hello")
    assert chunk_id(doc_id, 0, "hello") != chunk_id(doc_id, 1, "hello")


def test_safe_file_name():
    assert safe_file_name("../../etc/passwd") == "etc_passwd"
    assert safe_file_name("Q3 report (final).pdf") == "Q3_report_final_.pdf"
    assert safe_file_name("") == "file"


def test_versions_chain_to_the_first_upload(processor):
    async def scenario():
        first = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown",
                                                scope="conversation", thread_id="t-1")
        second = await processor.upload_version(first.id, "user-1", "guide-v2.md", MARKDOWN + b"\nv2\n", "text/markdown")
        # a version of a version still hangs off the first upload
        third = await processor.upload_version(second.id, "user-1", "guide-v3.md", MARKDOWN + b"\nv3\n", "text/markdown")
        await processor.dispatcher.drain()
        root_id, chain = await processor.list_versions(first.id, "user-1")
        return first, second, third, root_id, chain

    first, second, third, root_id, chain = asyncio.run(scenario())

    assert root_id == first.id
    assert (second.version, second.parent_document_id) == (2, first.id)
    assert (third.version, third.parent_document_id) == (3, first.id)
    assert (third.name, third.scope, third.thread_id) == ("guide.md", "conversation", "t-1")
    assert [(d.id, d.version, d.is_latest) for d in chain] == [
        (third.id, 3, True), (second.id, 2, False), (first.id, 1, False),
    ]
    assert all(d.status == "ready" for d in chain)


def test_rejected_version_keeps_current_latest(processor):
    async def scenario():
        first = await processor.upload_document("user-1", "guide.md", MARKDOWN, "text/markdown")
        with pytest.raises(ValidationError):
            await processor.upload_version(first.id, "user-1", "fake.pdf", b"not a pdf", "application/pdf")
        with pytest.raises(AuthorizationError):
            await processor.upload_version(first.id, "user-2", "guide.md", b"other", "text/markdown")
        with pytest.raises(NotFoundError):
            await processor.list_versions("missing", "user-1")
        await processor.dispatcher.drain()
        return await processor.list_versions(first.id, "user-1")

    root_id, chain = asyncio.run(scenario())
    assert [(d.version, d.is_latest) for d in chain] == [(1, True)]
