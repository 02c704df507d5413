from celery import Celery

from leadflow.core.config import Settings, get_settings

RESUME_STALLED_TASK_NAME = "leadflow.automations.resume_stalled"


def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("leadflow", broker=settings.redis_url, backend=settings.redis_url)
    transport_options = {"visibility_timeout": settings.automation_job_visibility_timeout_seconds}
    app.conf.update(
        broker_transport_options=transport_options,
        result_backend_transport_options=transport_options,
        task_default_queue=settings.automation_queue_name,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        result_expires=settings.automation_job_keep_completed_seconds,
        worker_prefetch_multiplier=1,
        worker_hijack_root_logger=False,
    )
    if settings.automation_stalled_sweep_seconds > 0:
        app.conf.beat_schedule = {
            "automation-resume-stalled": {
                "task": RESUME_STALLED_TASK_NAME,
                "schedule": float(settings.automation_stalled_sweep_seconds),
            }
        }
    return app


celery_app = create_celery_app()
