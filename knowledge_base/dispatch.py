# knowledge_base/dispatch.py
"""
Hand processing jobs to something that runs them.

 - InlineDispatcher: an asyncio task on the current loop (tests, single-process deployments)
 - CeleryDispatcher: the ``document_processing`` queue, executed by knowledge_base.tasks

submit() returns once the job is queued; the returned handle's wait() resolves
with the job result or raises the job's error.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from knowledge_base.config import settings
from knowledge_base.errors import KnowledgeBaseError

logger = logging.getLogger(__name__)


class DispatchHandle:
    def __init__(self, document_id: str, waiter: Callable[[], Awaitable[Any]]):
        self.document_id = document_id
        self._waiter = waiter

    async def wait(self) -> Any:
        return await self._waiter()


class Dispatcher:
    async def submit(self, document_id: str) -> DispatchHandle:
        raise NotImplementedError


class InlineDispatcher(Dispatcher):
    def __init__(self, job: Callable[[str], Awaitable[Any]]):
        self.job = job
        self._tasks: Dict[str, asyncio.Task] = {}

    def _done(self, document_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(document_id) is task:
            self._tasks.pop(document_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Inline processing of %s failed: %s", document_id, task.exception())

    async def submit(self, document_id: str) -> DispatchHandle:
        task = asyncio.create_task(self.job(document_id), name=f"process-document:{document_id}")
        self._tasks[document_id] = task
        task.add_done_callback(lambda t: self._done(document_id, t))
        logger.info("Queued inline processing for %s", document_id)
        return DispatchHandle(document_id, lambda: asyncio.shield(task))

    async def wait(self, document_id: str) -> Any:
        """Wait for the in-flight job of ``document_id``; None if there is none."""
        task = self._tasks.get(document_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for every in-flight job, ignoring their outcomes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)


class CeleryDispatcher(Dispatcher):
    def __init__(self, task=None, queue: Optional[str] = None, result_timeout: Optional[float] = None):
        if task is None:
            from knowledge_base.tasks import process_document_task
            task = process_document_task
        self.task = task
        self.queue = queue or settings.celery_queue
        self.result_timeout = result_timeout

    async def submit(self, document_id: str) -> DispatchHandle:
        result = await asyncio.to_thread(
            self.task.apply_async, args=[{"documentId": document_id}], queue=self.queue
        )
        logger.info("Queued %s on %s (task %s)", document_id, self.queue, result.id)

        async def _wait():
            outcome = await asyncio.to_thread(result.get, timeout=self.result_timeout)
            if not outcome.get("success"):
                raise KnowledgeBaseError(outcome.get("error") or "Document processing failed")
            return outcome

        return DispatchHandle(document_id, _wait)


def build_dispatcher(processor, mode: Optional[str] = None) -> Dispatcher:
    mode = mode or settings.processing_mode
    if mode == "inline":
        return InlineDispatcher(processor.process_document)
    return CeleryDispatcher()
