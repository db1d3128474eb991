import logging

from celery import Celery

from stageflow.automation.scheduler import scheduler_service
from stageflow.core.config import get_settings
from stageflow.core.database import SessionLocal

settings = get_settings()
logger = logging.getLogger("stageflow.scheduler")

celery_app = Celery("stageflow_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "stageflow-process-due-jobs": {
        "task": "stageflow.tasks.process_due_jobs",
        "schedule": 60.0,
    },
    "stageflow-enqueue-scheduled-workflows": {
        "task": "stageflow.tasks.process_scheduled_workflows",
        "schedule": 300.0,
    },
}


@celery_app.task(name="stageflow.tasks.ping")
def ping_task() -> str:
    return "pong"


@celery_app.task(name="stageflow.tasks.process_due_jobs")
def process_due_jobs_task() -> dict[str, int]:
    session = SessionLocal()
    try:
        summaries = scheduler_service.process_due_jobs(session)
    finally:
        session.close()
    logger.info("scheduler.tick", extra={"jobs": len(summaries)})
    return {"processed": len(summaries)}


@celery_app.task(name="stageflow.tasks.process_scheduled_workflows")
def process_scheduled_workflows_task() -> dict[str, int]:
    session = SessionLocal()
    try:
        job_ids = scheduler_service.process_scheduled_workflows(session)
    finally:
        session.close()
    return {"enqueued": len(job_ids)}
