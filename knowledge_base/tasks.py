# knowledge_base/tasks.py
import asyncio
import logging
from typing import Any, Dict

from knowledge_base import deepinfra
from knowledge_base.celery_app import PROCESS_TASK, celery_app
from knowledge_base.db import close_engine
from knowledge_base.models import DocumentStatus

logger = logging.getLogger(__name__)


async def handle_document_job(job: Dict[str, Any], processor=None) -> Dict[str, Any]:
    """
    Run one processing job ``{"documentId": ...}``.
    Returns ``{"success": True, "content": ...}`` or ``{"success": False, "error": ...}``;
    a failed job also leaves the document in ``error`` status.
    """
    document_id = (job or {}).get("documentId")
    if not document_id:
        return {"success": False, "error": "Missing documentId"}

    if processor is None:
        from knowledge_base.processor import DocumentProcessor
        processor = DocumentProcessor()

    try:
        parsed = await processor.process_document(document_id)
        return {"success": True, "content": parsed.content}
    except Exception as e:
        logger.exception("Processing job failed for %s", document_id)
        try:
            await processor.repository.update_document(
                document_id, status=DocumentStatus.ERROR.value, processing_error=str(e)
            )
        except Exception:
            logger.exception("Failed to set error status for %s", document_id)
        return {"success": False, "error": str(e)}


async def _run_job(job: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return await handle_document_job(job)
    finally:
        # the event loop dies with this task; release loop-bound resources
        await deepinfra.aclose()
        await close_engine()


@celery_app.task(bind=True, name=PROCESS_TASK)
def process_document_task(self, job: Dict[str, Any]):
    logger.info("Worker picked up %s (task %s)", (job or {}).get("documentId"), self.request.id)
    return asyncio.run(_run_job(job))
