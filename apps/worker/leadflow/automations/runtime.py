from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta
from functools import lru_cache
from typing import Any

from celery import Celery
from sqlalchemy.orm import Session

from leadflow.automations.messaging import MessageSender, build_message_senders
from leadflow.automations.queue import JobQueue, build_job_queue
from leadflow.automations.schemas import AutomationJob, EnrollmentRead, TriggerKind
from leadflow.automations.service import (
    AutomationDefinitionService,
    AutomationJobProcessor,
    EnrollmentAdminService,
    EnrollmentManager,
    StepExecutor,
    TriggerDispatcher,
)
from leadflow.context import get_correlation_id
from leadflow.core.config import Settings, get_settings
from leadflow.core.database import get_session_factory
from leadflow.core.events import (
    LEAD_AUTOMATION_REQUESTED,
    LEAD_CREATED,
    LEAD_STAGE_CHANGED,
    LEAD_STATUS_CHANGED,
    InProcessEventBus,
    InternalEvent,
    event_bus,
)


logger = logging.getLogger("leadflow.lifecycle")

# lead.created also starts time_delay automations; their enrollment is delayed by the dispatcher.
EVENT_TRIGGERS: dict[str, tuple[TriggerKind, ...]] = {
    LEAD_CREATED: ("lead_created", "time_delay"),
    LEAD_STAGE_CHANGED: ("stage_changed",),
    LEAD_STATUS_CHANGED: ("status_changed",),
    LEAD_AUTOMATION_REQUESTED: ("manual",),
}


class AutomationRuntime:
    """Wires the engine to one queue handle, a session factory and the senders."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        session_factory: Callable[[], Session],
        message_senders: Mapping[str, MessageSender],
        settings: Settings | None = None,
        bus: InProcessEventBus | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue = queue
        self.session_factory = session_factory
        self.message_senders = message_senders
        self.bus = bus or event_bus

        self.dispatcher = TriggerDispatcher(queue)
        self.enrollment_manager = EnrollmentManager(queue, self.settings)
        self.step_executor = StepExecutor(queue, message_senders, self.settings)
        self.processor = AutomationJobProcessor(
            session_factory,
            self.dispatcher,
            self.enrollment_manager,
            self.step_executor,
        )
        self.definitions = AutomationDefinitionService()
        self.enrollments = EnrollmentAdminService(queue)
        self._registered = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        celery_app: Celery | None = None,
    ) -> AutomationRuntime:
        settings = settings or get_settings()
        return cls(
            queue=build_job_queue(settings, celery_app),
            session_factory=get_session_factory(),
            message_senders=build_message_senders(settings),
            settings=settings,
        )

    def register(self) -> None:
        if self._registered:
            return
        self.queue.on_job(self.processor)
        for event_name in EVENT_TRIGGERS:
            self.bus.subscribe(event_name, self._on_lead_event)
        self._registered = True

    def start(self) -> None:
        self.register()
        self.queue.connect()
        logger.info("automation.runtime.started", extra={"status": "started"})

    def stop(self) -> None:
        for event_name in EVENT_TRIGGERS:
            self.bus.unsubscribe(event_name, self._on_lead_event)
        self._registered = False
        self.queue.close()
        for sender in self.message_senders.values():
            close = getattr(sender, "close", None)
            if callable(close):
                close()
        logger.info("automation.runtime.stopped", extra={"status": "stopped"})

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def dispatch_trigger(
        self,
        trigger_kind: TriggerKind,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> list[AutomationJob]:
        with self.session_scope() as session:
            return self.dispatcher.dispatch(session, trigger_kind, lead_id, organization_id)

    def resume_stalled(self) -> list[EnrollmentRead]:
        with self.session_scope() as session:
            return self.enrollments.resume_stalled(
                session,
                older_than=timedelta(seconds=self.settings.automation_stalled_after_seconds),
            )

    def _on_lead_event(self, event: InternalEvent) -> None:
        payload: dict[str, Any] = event.payload if isinstance(event.payload, dict) else {}
        try:
            lead_id = uuid.UUID(str(payload["lead_id"]))
            organization_id = uuid.UUID(str(payload["organization_id"]))
        except (KeyError, ValueError):
            logger.warning("automation.event.invalid_payload", extra={"event_name": event.name})
            return

        automation_id = payload.get("automation_id")
        try:
            if event.name == LEAD_AUTOMATION_REQUESTED and automation_id:
                # A manual request for one automation skips trigger matching.
                self.queue.enqueue(
                    AutomationJob(
                        kind="enroll_lead",
                        automation_id=uuid.UUID(str(automation_id)),
                        lead_id=lead_id,
                        organization_id=organization_id,
                        correlation_id=get_correlation_id(),
                    )
                )
                return
            for trigger_kind in EVENT_TRIGGERS[event.name]:
                self.dispatch_trigger(trigger_kind, lead_id, organization_id)
        except Exception as exc:
            logger.exception(
                "automation.event.dispatch_failed",
                extra={"event_name": event.name, "lead_id": str(lead_id), "error": str(exc)[:500]},
            )


@lru_cache
def get_runtime() -> AutomationRuntime:
    """Process-wide runtime, registered on first use.

    Registration subscribes the runtime to ``lead.*`` events on ``event_bus``.
    A process that publishes those events must call ``get_runtime().start()``
    once at startup; before that, published events reach no subscriber.
    """
    runtime = AutomationRuntime.from_settings()
    runtime.register()
    return runtime


def dispatch_trigger(
    trigger_kind: TriggerKind,
    lead_id: uuid.UUID,
    organization_id: uuid.UUID,
) -> list[AutomationJob]:
    return get_runtime().dispatch_trigger(trigger_kind, lead_id, organization_id)
