# knowledge_base/celery_app.py
from celery import Celery
from knowledge_base.config import settings

PROCESS_TASK = "knowledge_base.tasks.process_document_task"

celery_app = Celery(
    "knowledge_base",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["knowledge_base.tasks"],   # tasks register on worker start
)

celery_app.conf.task_routes = {
    PROCESS_TASK: {"queue": settings.celery_queue}
}
celery_app.conf.task_default_queue = settings.celery_queue

celery_app.conf.update(
    task_acks_late=True,
    # a worker killed mid-document puts the job back on the queue
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=settings.celery_prefetch_multiplier,
    worker_max_tasks_per_child=settings.celery_max_tasks_per_child,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_soft_time_limit=settings.celery_soft_time_limit,
    task_time_limit=settings.celery_time_limit,
    result_expires=settings.celery_result_expires,
)
