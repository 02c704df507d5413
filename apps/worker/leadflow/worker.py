"""Celery worker entry point: ``celery -A leadflow.worker worker -Q automations``.

Run ``celery -A leadflow.worker beat`` alongside it to sweep stalled
enrollments every ``AUTOMATION_STALLED_SWEEP_SECONDS``. An enrollment stalls
when the enqueue of its next step fails after the step committed; without
beat, an operator recovers it with ``EnrollmentAdminService.resume``.
"""

from __future__ import annotations

import logging
from typing import Any

from celery.signals import worker_process_init, worker_process_shutdown

from leadflow.automations.runtime import get_runtime
from leadflow.core.celery_app import RESUME_STALLED_TASK_NAME, celery_app
from leadflow.core.config import get_settings
from leadflow.logging import configure_logging
from leadflow.metrics import start_metrics_server
from leadflow.otel import WORKER_SERVICE_NAME, setup_otel, shutdown_otel


settings = get_settings()
configure_logging(settings.log_level, service=WORKER_SERVICE_NAME)
logger = logging.getLogger("leadflow.lifecycle")

setup_otel(settings)
if settings.metrics_enabled:
    start_metrics_server(settings.metrics_port)

app = celery_app
# The task must exist when the worker imports this module, before any child process starts.
runtime = get_runtime()
logger.info("automation.worker.ready", extra={"status": settings.automation_queue_backend})


@celery_app.task(name=RESUME_STALLED_TASK_NAME)
def resume_stalled_enrollments() -> int:
    return len(runtime.resume_stalled())


@worker_process_init.connect
def _connect_queue(**_: Any) -> None:
    runtime.start()


@worker_process_shutdown.connect
def _close_queue(**_: Any) -> None:
    runtime.stop()
    shutdown_otel()
