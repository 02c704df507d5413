from __future__ import annotations

import heapq
import itertools
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from celery import Celery, Task
from pydantic import ValidationError

from leadflow.automations.schemas import AutomationJob
from leadflow.context import reset_job_id, set_job_id
from leadflow.core.config import Settings
from leadflow.metrics import observe_job_retry


logger = logging.getLogger("leadflow.automations.queue")

JobHandler = Callable[[AutomationJob], None]

PROCESS_JOB_TASK_NAME = "leadflow.automations.process_job"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_ms: int = 1000

    def delay_ms(self, failed_attempts: int) -> int:
        """Exponential backoff: 1x, 2x, 4x ... the base delay."""
        return self.backoff_ms * 2 ** max(failed_attempts - 1, 0)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.automation_job_max_attempts,
            backoff_ms=settings.automation_job_backoff_ms,
        )


@dataclass(frozen=True)
class RetentionPolicy:
    keep_completed: int = 1000
    keep_completed_seconds: int = 24 * 60 * 60
    keep_failed: int = 5000

    @classmethod
    def from_settings(cls, settings: Settings) -> RetentionPolicy:
        return cls(
            keep_completed=settings.automation_job_keep_completed,
            keep_completed_seconds=settings.automation_job_keep_completed_seconds,
            keep_failed=settings.automation_job_keep_failed,
        )


class JobQueue(Protocol):
    def enqueue(self, job: AutomationJob, delay_ms: int | None = None) -> None: ...

    def on_job(self, handler: JobHandler) -> None: ...

    def connect(self) -> None: ...

    def close(self) -> None: ...


def decode_job(payload: Any) -> AutomationJob | None:
    try:
        return AutomationJob.model_validate(payload)
    except ValidationError as exc:
        logger.error("automation.job.malformed", extra={"error": str(exc)[:500]})
        return None


@dataclass
class QueuedJob:
    job_id: str
    job: AutomationJob
    available_at_ms: int
    attempts: int = 0


@dataclass(frozen=True)
class FinishedJob:
    job_id: str
    job: AutomationJob
    attempts: int
    finished_at_ms: int
    error: str | None = None


class InMemoryJobQueue:
    """Single-process queue driven by an explicit millisecond clock.

    Nothing runs until ``run_due`` or ``drain`` is called. Delayed jobs become
    due when the clock is advanced past their ``available_at_ms``.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        retention: RetentionPolicy | None = None,
        start_ms: int = 0,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.retention = retention or RetentionPolicy()
        self.now_ms = start_ms
        self.completed: deque[FinishedJob] = deque(maxlen=self.retention.keep_completed)
        self.failed: deque[FinishedJob] = deque(maxlen=self.retention.keep_failed)
        self._heap: list[tuple[int, int, QueuedJob]] = []
        self._sequence = itertools.count()
        self._handler: JobHandler | None = None
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self._connected = True
        self._closed = False

    def close(self) -> None:
        self._connected = False
        self._closed = True

    def on_job(self, handler: JobHandler) -> None:
        self._handler = handler

    def enqueue(self, job: AutomationJob, delay_ms: int | None = None) -> None:
        if self._closed:
            raise RuntimeError("job queue is closed")
        delay = max(delay_ms or 0, 0)
        queued = QueuedJob(job_id=str(uuid.uuid4()), job=job, available_at_ms=self.now_ms + delay)
        self._push(queued)
        logger.info(
            "automation.job.enqueued",
            extra={"job_kind": job.kind, "delay_ms": delay, "lead_id": str(job.lead_id)},
        )

    @property
    def pending(self) -> list[QueuedJob]:
        return [item[2] for item in sorted(self._heap)]

    def advance(self, milliseconds: int) -> None:
        self.now_ms += milliseconds

    def run_due(self, max_jobs: int = 10_000) -> int:
        processed = 0
        while self._heap and self._heap[0][0] <= self.now_ms:
            if processed >= max_jobs:
                raise RuntimeError("job queue did not settle within max_jobs")
            _, _, queued = heapq.heappop(self._heap)
            self._run(queued)
            processed += 1
        self._prune_completed()
        return processed

    def drain(self, max_jobs: int = 10_000) -> int:
        """Runs until empty, jumping the clock forward to each delayed job."""
        processed = 0
        while self._heap:
            due_at = self._heap[0][0]
            if due_at > self.now_ms:
                self.now_ms = due_at
            processed += self.run_due(max_jobs - processed)
        return processed

    def _push(self, queued: QueuedJob) -> None:
        heapq.heappush(self._heap, (queued.available_at_ms, next(self._sequence), queued))

    def _run(self, queued: QueuedJob) -> None:
        if self._handler is None:
            raise RuntimeError("no job handler registered")
        queued.attempts += 1
        token = set_job_id(queued.job_id)
        try:
            self._handler(queued.job)
        except Exception as exc:
            self._handle_failure(queued, exc)
        else:
            self.completed.append(
                FinishedJob(
                    job_id=queued.job_id,
                    job=queued.job,
                    attempts=queued.attempts,
                    finished_at_ms=self.now_ms,
                )
            )
        finally:
            reset_job_id(token)

    def _handle_failure(self, queued: QueuedJob, exc: Exception) -> None:
        if queued.attempts < self.retry_policy.max_attempts:
            delay = self.retry_policy.delay_ms(queued.attempts)
            queued.available_at_ms = self.now_ms + delay
            self._push(queued)
            observe_job_retry(queued.job.kind)
            logger.warning(
                "automation.job.retry_scheduled",
                extra={
                    "job_kind": queued.job.kind,
                    "attempt": queued.attempts,
                    "delay_ms": delay,
                    "error": str(exc)[:500],
                },
            )
            return

        self.failed.append(
            FinishedJob(
                job_id=queued.job_id,
                job=queued.job,
                attempts=queued.attempts,
                finished_at_ms=self.now_ms,
                error=str(exc),
            )
        )
        logger.error(
            "automation.job.failed",
            extra={"job_kind": queued.job.kind, "attempt": queued.attempts, "error": str(exc)[:500]},
        )

    def _prune_completed(self) -> None:
        cutoff = self.now_ms - self.retention.keep_completed_seconds * 1000
        while self.completed and self.completed[0].finished_at_ms < cutoff:
            self.completed.popleft()


class CeleryJobQueue:
    """Delivers jobs through a Celery broker.

    Completed-result retention is age based (``result_expires``); the broker
    keeps no count-bounded history of completed or failed jobs.

    A delayed job is held unacknowledged by a worker until it is due, so the
    longest supported delay is the broker visibility timeout
    (``AUTOMATION_JOB_VISIBILITY_TIMEOUT_SECONDS``). Longer delays are still
    sent but may be delivered twice.
    """

    def __init__(
        self,
        celery_app: Celery,
        *,
        queue_name: str,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.celery_app = celery_app
        self.queue_name = queue_name
        self.retry_policy = retry_policy or RetryPolicy()
        transport_options = celery_app.conf.broker_transport_options or {}
        self.max_delay_ms: int | None = (
            int(transport_options["visibility_timeout"] * 1000)
            if "visibility_timeout" in transport_options
            else None
        )
        self.task: Task | None = None
        self._connection: Any = None

    def connect(self) -> None:
        if self._connection is not None:
            return
        connection = self.celery_app.connection_for_write()
        connection.ensure_connection(max_retries=3)
        self._connection = connection
        logger.info("automation.queue.connected", extra={"status": "connected"})

    def close(self) -> None:
        if self._connection is None:
            return
        self._connection.release()
        self._connection = None
        logger.info("automation.queue.closed", extra={"status": "closed"})

    def enqueue(self, job: AutomationJob, delay_ms: int | None = None) -> None:
        countdown = delay_ms / 1000 if delay_ms else None
        if delay_ms and self.max_delay_ms is not None and delay_ms >= self.max_delay_ms:
            logger.warning(
                "automation.job.delay_exceeds_visibility_timeout",
                extra={"job_kind": job.kind, "delay_ms": delay_ms, "lead_id": str(job.lead_id)},
            )
        self.celery_app.send_task(
            PROCESS_JOB_TASK_NAME,
            kwargs={"payload": job.model_dump(mode="json")},
            countdown=countdown,
            queue=self.queue_name,
            connection=self._connection,
        )
        logger.info(
            "automation.job.enqueued",
            extra={"job_kind": job.kind, "delay_ms": delay_ms or 0, "lead_id": str(job.lead_id)},
        )

    def on_job(self, handler: JobHandler) -> None:
        policy = self.retry_policy

        @self.celery_app.task(
            name=PROCESS_JOB_TASK_NAME,
            bind=True,
            acks_late=True,
            max_retries=max(policy.max_attempts - 1, 0),
        )
        def process_automation_job(task: Task, payload: dict[str, Any]) -> None:
            job = decode_job(payload)
            if job is None:
                return
            token = set_job_id(task.request.id)
            try:
                handler(job)
            except Exception as exc:
                attempt = task.request.retries + 1
                if attempt >= policy.max_attempts:
                    logger.error(
                        "automation.job.failed",
                        extra={"job_kind": job.kind, "attempt": attempt, "error": str(exc)[:500]},
                    )
                    raise
                observe_job_retry(job.kind)
                raise task.retry(exc=exc, countdown=policy.delay_ms(attempt) / 1000)
            finally:
                reset_job_id(token)

        self.task = process_automation_job


def build_job_queue(settings: Settings, celery_app: Celery | None = None) -> JobQueue:
    backend = settings.automation_queue_backend
    if backend == "inmemory":
        return InMemoryJobQueue(
            retry_policy=RetryPolicy.from_settings(settings),
            retention=RetentionPolicy.from_settings(settings),
        )
    if backend == "celery":
        if celery_app is None:
            from leadflow.core.celery_app import celery_app as default_app

            celery_app = default_app
        return CeleryJobQueue(
            celery_app,
            queue_name=settings.automation_queue_name,
            retry_policy=RetryPolicy.from_settings(settings),
        )
    raise ValueError(f"unknown automation queue backend: {backend}")
