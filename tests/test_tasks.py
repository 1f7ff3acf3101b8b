import asyncio

import pytest

from knowledge_base.dispatch import CeleryDispatcher, InlineDispatcher, build_dispatcher
from knowledge_base.errors import KnowledgeBaseError
from knowledge_base.tasks import handle_document_job


def _upload_pending(processor, name, data, mime):
    processor.dispatcher = None

    async def upload():
        return await processor.upload_document("user-1", name, data, mime)

    return asyncio.run(upload())


def test_job_success_returns_content(processor):
    doc = _upload_pending(processor, "notes.txt", b"Meeting notes for Monday.", "text/plain")
    assert doc.status == "pending"

    async def scenario():
        result = await handle_document_job({"documentId": doc.id}, processor=processor)
        return result, await processor.repository.get_document(doc.id)

    result, stored = asyncio.run(scenario())
    assert result == {"success": True, "content": "Meeting notes for Monday."}
    assert stored.status == "ready"


def test_job_failure_reports_error_and_sets_status(processor):
    doc = _upload_pending(processor, "broken.pdf", b"%PDF-1.4\nnope", "application/pdf")

    async def scenario():
        result = await handle_document_job({"documentId": doc.id}, processor=processor)
        return result, await processor.repository.get_document(doc.id)

    result, stored = asyncio.run(scenario())
    assert result["success"] is False
    assert result["error"] == stored.processing_error
    assert stored.status == "error"


def test_job_for_unknown_document(processor):
    result = asyncio.run(handle_document_job({"documentId": "missing"}, processor=processor))
    assert result["success"] is False
    assert "not found" in result["error"].lower()


def test_job_without_document_id(processor):
    assert asyncio.run(handle_document_job({}, processor=processor)) == {
        "success": False,
        "error": "Missing documentId",
    }


class _FakeAsyncResult:
    def __init__(self, outcome):
        self.id = "task-1"
        self.outcome = outcome

    def get(self, timeout=None):
        return self.outcome


class _FakeTask:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def apply_async(self, args=None, queue=None):
        self.calls.append((args, queue))
        return _FakeAsyncResult(self.outcome)


def test_celery_dispatcher_sends_job_to_queue():
    task = _FakeTask({"success": True, "content": "ok"})
    dispatcher = CeleryDispatcher(task=task, queue="document_processing")

    async def scenario():
        handle = await dispatcher.submit("doc-1")
        return await handle.wait()

    assert asyncio.run(scenario()) == {"success": True, "content": "ok"}
    assert task.calls == [([{"documentId": "doc-1"}], "document_processing")]


def test_celery_dispatcher_surfaces_job_failure():
    dispatcher = CeleryDispatcher(task=_FakeTask({"success": False, "error": "boom"}))

    async def scenario():
        handle = await dispatcher.submit("doc-1")
        await handle.wait()

    with pytest.raises(KnowledgeBaseError, match="boom"):
        asyncio.run(scenario())


def test_inline_dispatcher_wait_and_drain():
    seen = []

    async def job(document_id):
        await asyncio.sleep(0)
        seen.append(document_id)
        return document_id.upper()

    dispatcher = InlineDispatcher(job)

    async def scenario():
        handle = await dispatcher.submit("a")
        await dispatcher.submit("b")
        first = await handle.wait()
        await dispatcher.drain()
        return first, await dispatcher.wait("b")

    first, after_drain = asyncio.run(scenario())
    assert first == "A"
    assert sorted(seen) == ["a", "b"]
    assert after_drain is None


def test_build_dispatcher_inline(processor):
    dispatcher = build_dispatcher(processor, mode="inline")
    assert isinstance(dispatcher, InlineDispatcher)
    assert dispatcher.job == processor.process_document


def test_worker_configuration_follows_settings():
    from knowledge_base.celery_app import PROCESS_TASK, celery_app
    from knowledge_base.config import settings
    from knowledge_base.tasks import process_document_task

    conf = celery_app.conf
    assert process_document_task.name == PROCESS_TASK
    assert conf.task_routes == {PROCESS_TASK: {"queue": settings.celery_queue}}
    assert conf.task_default_queue == settings.celery_queue
    assert conf.task_soft_time_limit == settings.celery_soft_time_limit
    assert conf.task_time_limit == settings.celery_time_limit
    assert conf.task_time_limit > conf.task_soft_time_limit
    assert conf.result_expires == settings.celery_result_expires
    assert conf.worker_prefetch_multiplier == settings.celery_prefetch_multiplier
    assert conf.task_acks_late and conf.task_reject_on_worker_lost


def test_hard_time_limit_must_exceed_soft_limit():
    from pydantic import ValidationError as SettingsError

    from knowledge_base.config import Settings

    with pytest.raises(SettingsError):
        Settings(celery_soft_time_limit=600, celery_time_limit=600)
