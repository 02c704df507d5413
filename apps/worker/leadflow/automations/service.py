from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.automations.actions import ActionContext, execute_action
from leadflow.automations.errors import AutomationNotFoundError, EnrollmentNotFoundError
from leadflow.automations.messaging import MessageSender
from leadflow.automations.models import Automation, AutomationEnrollment, AutomationStep, utcnow
from leadflow.automations.queue import JobQueue
from leadflow.automations.repositories import EngineStores
from leadflow.automations.schemas import (
    Advance,
    AdvanceAfterDelay,
    AutomationCreate,
    AutomationJob,
    AutomationRead,
    AutomationStepInput,
    AutomationUpdate,
    EnrollmentRead,
    StageChangedTrigger,
    StatusChangedTrigger,
    StepOutcome,
    Stop,
    TimeDelayTrigger,
    TriggerKind,
    dump_config,
    ensure_dense_position_values,
    parse_step_action,
    parse_trigger_config,
)
from leadflow.context import get_correlation_id, reset_correlation_id, set_correlation_id
from leadflow.core.config import Settings, get_settings
from leadflow.metrics import observe_enrollment_transition, observe_job, observe_job_skipped, observe_step
from leadflow.otel import mark_span_failed


logger = logging.getLogger("leadflow.automations")
tracer = trace.get_tracer("leadflow.automations.jobs")

StoresFactory = Callable[[Session], EngineStores]

ERROR_MESSAGE_MAX_LENGTH = 2000


class TriggerDispatcher:
    def __init__(self, queue: JobQueue, stores_factory: StoresFactory = EngineStores.for_session) -> None:
        self.queue = queue
        self.stores_factory = stores_factory

    def dispatch(
        self,
        session: Session,
        trigger_kind: TriggerKind,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> list[AutomationJob]:
        stores = self.stores_factory(session)
        automations = stores.automations.list_active_by_trigger(organization_id, trigger_kind)

        jobs: list[AutomationJob] = []
        for automation in automations:
            job = AutomationJob(
                kind="enroll_lead",
                automation_id=automation.id,
                lead_id=lead_id,
                organization_id=organization_id,
                correlation_id=get_correlation_id(),
            )
            self.queue.enqueue(job, delay_ms=self._enrollment_delay_ms(automation))
            jobs.append(job)

        logger.info(
            "automation.trigger.dispatched",
            extra={
                "trigger_kind": trigger_kind,
                "lead_id": str(lead_id),
                "organization_id": str(organization_id),
                "matched_count": len(jobs),
            },
        )
        return jobs

    def dispatch_deferred(
        self,
        trigger_kind: TriggerKind,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> AutomationJob:
        job = AutomationJob(
            kind="process_trigger",
            trigger_kind=trigger_kind,
            lead_id=lead_id,
            organization_id=organization_id,
            correlation_id=get_correlation_id(),
        )
        self.queue.enqueue(job)
        return job

    def _enrollment_delay_ms(self, automation: Automation) -> int | None:
        if automation.trigger_kind != "time_delay":
            return None
        try:
            trigger = parse_trigger_config(automation.trigger_kind, automation.trigger_config)
        except ValidationError as exc:
            logger.warning(
                "automation.trigger.invalid_config",
                extra={"automation_id": str(automation.id), "error": str(exc)[:500]},
            )
            return None
        if isinstance(trigger, TimeDelayTrigger) and trigger.delay_minutes:
            return trigger.delay_minutes * 60 * 1000
        return None


class EnrollmentManager:
    def __init__(
        self,
        queue: JobQueue,
        settings: Settings | None = None,
        stores_factory: StoresFactory = EngineStores.for_session,
    ) -> None:
        self.queue = queue
        self.settings = settings or get_settings()
        self.stores_factory = stores_factory

    def enroll(
        self,
        session: Session,
        automation_id: uuid.UUID,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> AutomationEnrollment | None:
        stores = self.stores_factory(session)
        log_extra = {
            "automation_id": str(automation_id),
            "lead_id": str(lead_id),
            "organization_id": str(organization_id),
        }

        automation = stores.automations.get_active_automation(automation_id)
        if automation is None or automation.organization_id != organization_id:
            return self._skip("automation_inactive", log_extra)

        if self.settings.automation_trigger_config_filtering:
            mismatch = self._trigger_mismatch(stores, automation, lead_id)
            if mismatch is not None:
                return self._skip(mismatch, log_extra)

        if stores.enrollments.find_active(automation_id, lead_id) is not None:
            return self._skip("already_enrolled", log_extra)

        try:
            enrollment = stores.enrollments.create(
                automation_id=automation_id,
                lead_id=lead_id,
                organization_id=organization_id,
            )
        except IntegrityError:
            # Another delivery inserted the active row between the check and the insert.
            session.rollback()
            return self._skip("already_enrolled", log_extra)

        stores.timeline.append(
            organization_id,
            lead_id,
            "automation",
            f"Enrolled in automation: {automation.name}",
            {"automationId": str(automation.id), "automationName": automation.name},
        )
        session.commit()
        enrollment_id = enrollment.id
        observe_enrollment_transition("active")
        logger.info("automation.enrollment.created", extra={**log_extra, "enrollment_id": str(enrollment_id)})

        stores.timeline.flush()
        self.queue.enqueue(
            AutomationJob(
                kind="execute_step",
                automation_id=automation_id,
                lead_id=lead_id,
                organization_id=organization_id,
                enrollment_id=enrollment_id,
                step_position=0,
                correlation_id=get_correlation_id(),
            )
        )
        return enrollment

    def _skip(self, reason: str, log_extra: dict[str, str]) -> None:
        observe_job_skipped(reason)
        logger.info("automation.enrollment.skipped", extra={**log_extra, "reason": reason})
        return None

    def _trigger_mismatch(self, stores: EngineStores, automation: Automation, lead_id: uuid.UUID) -> str | None:
        try:
            trigger = parse_trigger_config(automation.trigger_kind, automation.trigger_config)
        except ValidationError as exc:
            logger.warning(
                "automation.trigger.invalid_config",
                extra={"automation_id": str(automation.id), "error": str(exc)[:500]},
            )
            return "invalid_trigger_config"

        channel = trigger.channel or automation.applies_to_channel
        stage_id = trigger.stage_id if isinstance(trigger, StageChangedTrigger) else None
        status_value = trigger.status_value if isinstance(trigger, StatusChangedTrigger) else None
        if channel is None and stage_id is None and status_value is None:
            return None

        lead = stores.leads.get_by_id(lead_id)
        if lead is None:
            return "lead_not_found"
        if channel is not None and lead.channel != channel:
            return "channel_mismatch"
        if stage_id is not None and lead.current_stage_id != stage_id:
            return "stage_mismatch"
        if status_value is not None and lead.status != status_value:
            return "status_mismatch"
        return None


class StepExecutor:
    """Runs one step of an enrollment and schedules the next one.

    Every call re-reads the enrollment, so a job for a stopped enrollment, or
    one whose position has already moved on, is acknowledged without work.
    """

    def __init__(
        self,
        queue: JobQueue,
        message_senders: Mapping[str, MessageSender],
        settings: Settings | None = None,
        stores_factory: StoresFactory = EngineStores.for_session,
    ) -> None:
        self.queue = queue
        self.message_senders = message_senders
        self.settings = settings or get_settings()
        self.stores_factory = stores_factory

    def execute_step(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        automation_id: uuid.UUID,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
        step_position: int,
    ) -> StepOutcome:
        stores = self.stores_factory(session)
        log_extra: dict[str, str | int] = {
            "enrollment_id": str(enrollment_id),
            "automation_id": str(automation_id),
            "lead_id": str(lead_id),
            "step_position": step_position,
        }

        with tracer.start_as_current_span("automation.step.execute") as span:
            span.set_attribute("enrollment_id", str(enrollment_id))
            span.set_attribute("automation_id", str(automation_id))
            span.set_attribute("step_position", step_position)

            enrollment = stores.enrollments.get_by_id(enrollment_id)
            if enrollment is None or enrollment.status != "active":
                observe_job_skipped("enrollment_not_active")
                logger.info("automation.step.skipped", extra={**log_extra, "reason": "enrollment_not_active"})
                return "skipped"

            if self.settings.automation_step_position_check and enrollment.current_step_position != step_position:
                observe_job_skipped("stale_step_position")
                logger.warning(
                    "automation.step.stale",
                    extra={**log_extra, "live_step_position": enrollment.current_step_position},
                )
                return "skipped"

            step = stores.automations.get_step(automation_id, step_position)
            if step is None:
                stores.enrollments.update(
                    enrollment_id,
                    status="completed",
                    completed_at=utcnow(),
                    next_action_at=None,
                )
                session.commit()
                observe_enrollment_transition("completed")
                logger.info("automation.enrollment.completed", extra={**log_extra, "status": "completed"})
                return "completed"

            span.set_attribute("action_kind", step.action_kind)
            log_extra["action_kind"] = step.action_kind

            lead = stores.leads.get_by_id(lead_id)
            if lead is None or lead.organization_id != organization_id:
                stores.enrollments.update(
                    enrollment_id,
                    status="error",
                    error_message="lead not found",
                    next_action_at=None,
                )
                session.commit()
                observe_enrollment_transition("error")
                observe_step(step.action_kind, "error")
                logger.warning("automation.step.failed", extra={**log_extra, "error": "lead not found"})
                return "error"

            context = ActionContext(
                organization_id=organization_id,
                leads=stores.leads,
                templates=stores.templates,
                timeline=stores.timeline,
                message_senders=self.message_senders,
            )
            try:
                action = parse_step_action(step.action_kind, step.action_config)
                directive = execute_action(action, lead, context)
            except Exception as exc:
                if isinstance(exc, SQLAlchemyError):
                    session.rollback()
                    stores = self.stores_factory(session)
                message = (str(exc) or exc.__class__.__name__)[:ERROR_MESSAGE_MAX_LENGTH]
                stores.enrollments.update(
                    enrollment_id,
                    status="error",
                    error_message=message,
                    next_action_at=None,
                )
                session.commit()
                stores.timeline.flush()
                mark_span_failed(span, exc, message)
                observe_enrollment_transition("error")
                observe_step(step.action_kind, "error")
                logger.warning("automation.step.failed", extra={**log_extra, "error": message[:500]})
                return "error"

            next_position = step_position + 1
            now = utcnow()
            follow_up = AutomationJob(
                kind="execute_step",
                automation_id=automation_id,
                lead_id=lead_id,
                organization_id=organization_id,
                enrollment_id=enrollment_id,
                step_position=next_position,
                correlation_id=get_correlation_id(),
            )

            match directive:
                case Stop():
                    stores.enrollments.update(
                        enrollment_id,
                        current_step_position=next_position,
                        status="stopped",
                        completed_at=now,
                        next_action_at=None,
                    )
                    session.commit()
                    stores.timeline.flush()
                    observe_enrollment_transition("stopped")
                    outcome: StepOutcome = "stopped"
                case AdvanceAfterDelay():
                    stores.enrollments.update(
                        enrollment_id,
                        current_step_position=next_position,
                        next_action_at=now + timedelta(milliseconds=directive.delay_ms),
                    )
                    session.commit()
                    stores.timeline.flush()
                    self.queue.enqueue(follow_up, delay_ms=directive.delay_ms)
                    log_extra["delay_ms"] = directive.delay_ms
                    outcome = "delayed"
                case Advance():
                    stores.enrollments.update(
                        enrollment_id,
                        current_step_position=next_position,
                        next_action_at=now,
                    )
                    session.commit()
                    stores.timeline.flush()
                    self.queue.enqueue(follow_up)
                    outcome = "advanced"

            observe_step(step.action_kind, outcome)
            logger.info("automation.step.executed", extra={**log_extra, "status": outcome})
            return outcome


class AutomationJobProcessor:
    """Queue consumer: one session, one correlation id and one span per job."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: TriggerDispatcher,
        enrollment_manager: EnrollmentManager,
        step_executor: StepExecutor,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.enrollment_manager = enrollment_manager
        self.step_executor = step_executor

    def __call__(self, job: AutomationJob) -> None:
        self.process(job)

    def process(self, job: AutomationJob) -> str:
        correlation_id = job.correlation_id or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = "failed"
        log_extra = {
            "job_kind": job.kind,
            "lead_id": str(job.lead_id),
            "automation_id": str(job.automation_id) if job.automation_id else None,
        }

        with tracer.start_as_current_span("automation.job.run") as job_span:
            job_span.set_attribute("job_kind", job.kind)
            job_span.set_attribute("lead_id", str(job.lead_id))
            job_span.set_attribute("organization_id", str(job.organization_id))
            job_span.set_attribute("correlation_id", correlation_id)
            logger.info("job.started", extra={**log_extra, "status": "running", "duration_ms": 0.0})

            session = self.session_factory()
            try:
                final_status = self._route(session, job)
                job_span.set_attribute("status", final_status)
                logger.info(
                    "job.finished",
                    extra={
                        **log_extra,
                        "status": final_status,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )
                return final_status
            except Exception as exc:
                session.rollback()
                mark_span_failed(job_span, exc)
                logger.warning(
                    "job.finished",
                    extra={
                        **log_extra,
                        "status": "failed",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error": str(exc)[:500],
                    },
                )
                raise
            finally:
                session.close()
                observe_job(job_kind=job.kind, status=final_status, duration=time.perf_counter() - started)
                reset_correlation_id(token)

    def _route(self, session: Session, job: AutomationJob) -> str:
        match job.kind:
            case "process_trigger":
                if job.trigger_kind is None:
                    raise ValueError("process_trigger job is missing trigger_kind")
                self.dispatcher.dispatch(session, job.trigger_kind, job.lead_id, job.organization_id)
                return "dispatched"
            case "enroll_lead":
                if job.automation_id is None:
                    raise ValueError("enroll_lead job is missing automation_id")
                enrollment = self.enrollment_manager.enroll(
                    session,
                    job.automation_id,
                    job.lead_id,
                    job.organization_id,
                )
                return "enrolled" if enrollment is not None else "skipped"
            case "execute_step":
                if job.automation_id is None or job.enrollment_id is None or job.step_position is None:
                    raise ValueError("execute_step job is missing automation_id, enrollment_id or step_position")
                return self.step_executor.execute_step(
                    session,
                    job.enrollment_id,
                    job.automation_id,
                    job.lead_id,
                    job.organization_id,
                    job.step_position,
                )


class AutomationDefinitionService:
    def create(self, session: Session, payload: AutomationCreate) -> AutomationRead:
        automation = Automation(
            organization_id=payload.organization_id,
            team_id=payload.team_id,
            name=payload.name,
            description=payload.description,
            is_active=False,
            trigger_kind=payload.trigger.kind,
            trigger_config=dump_config(payload.trigger, "kind"),
            applies_to_channel=payload.applies_to_channel,
        )
        automation.steps = [
            self._build_step(payload.organization_id, step) for step in sorted(payload.steps, key=lambda s: s.position)
        ]
        session.add(automation)
        session.commit()
        session.refresh(automation)
        logger.info(
            "automation.definition.created",
            extra={"automation_id": str(automation.id), "organization_id": str(automation.organization_id)},
        )
        return AutomationRead.model_validate(automation)

    def get(self, session: Session, automation_id: uuid.UUID, organization_id: uuid.UUID) -> AutomationRead:
        return AutomationRead.model_validate(self._load(session, automation_id, organization_id))

    def list_for_scope(
        self,
        session: Session,
        organization_id: uuid.UUID,
        *,
        team_id: uuid.UUID | None = None,
        is_active: bool | None = None,
    ) -> list[AutomationRead]:
        stmt = select(Automation).where(Automation.organization_id == organization_id)
        if team_id is not None:
            stmt = stmt.where(Automation.team_id == team_id)
        if is_active is not None:
            stmt = stmt.where(Automation.is_active.is_(is_active))
        rows = session.scalars(stmt.order_by(Automation.created_at.desc())).all()
        return [AutomationRead.model_validate(row) for row in rows]

    def update(
        self,
        session: Session,
        automation_id: uuid.UUID,
        organization_id: uuid.UUID,
        payload: AutomationUpdate,
    ) -> AutomationRead:
        automation = self._load(session, automation_id, organization_id)
        provided = payload.model_fields_set

        if payload.name is not None:
            automation.name = payload.name
        if "description" in provided:
            automation.description = payload.description
        if payload.trigger is not None:
            automation.trigger_kind = payload.trigger.kind
            automation.trigger_config = dump_config(payload.trigger, "kind")
        if "applies_to_channel" in provided:
            automation.applies_to_channel = payload.applies_to_channel
        if payload.is_active is not None:
            automation.is_active = payload.is_active
        if payload.steps is not None:
            self._replace_steps(session, automation, payload.steps)

        session.add(automation)
        session.commit()
        session.refresh(automation)
        logger.info("automation.definition.updated", extra={"automation_id": str(automation.id)})
        return AutomationRead.model_validate(automation)

    def set_active(
        self,
        session: Session,
        automation_id: uuid.UUID,
        organization_id: uuid.UUID,
        is_active: bool,
    ) -> AutomationRead:
        automation = self._load(session, automation_id, organization_id)
        if is_active:
            ensure_dense_position_values([step.position for step in automation.steps])
        automation.is_active = is_active
        session.add(automation)
        session.commit()
        session.refresh(automation)
        logger.info(
            "automation.definition.activation_changed",
            extra={"automation_id": str(automation.id), "status": "active" if is_active else "inactive"},
        )
        return AutomationRead.model_validate(automation)

    def delete(self, session: Session, automation_id: uuid.UUID, organization_id: uuid.UUID) -> None:
        automation = self._load(session, automation_id, organization_id)
        # Queued jobs for removed enrollments find nothing and become no-ops.
        session.execute(delete(AutomationEnrollment).where(AutomationEnrollment.automation_id == automation.id))
        session.delete(automation)
        session.commit()
        logger.info("automation.definition.deleted", extra={"automation_id": str(automation_id)})

    def _load(self, session: Session, automation_id: uuid.UUID, organization_id: uuid.UUID) -> Automation:
        automation = session.scalar(
            select(Automation).where(
                and_(Automation.id == automation_id, Automation.organization_id == organization_id)
            )
        )
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    def _replace_steps(self, session: Session, automation: Automation, steps: list[AutomationStepInput]) -> None:
        affected = session.scalar(
            select(func.count())
            .select_from(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.automation_id == automation.id,
                    AutomationEnrollment.status == "active",
                )
            )
        )
        if affected:
            # Enrollments keep their position; the new step at that position runs next.
            logger.warning(
                "automation.definition.steps_replaced",
                extra={"automation_id": str(automation.id), "matched_count": affected},
            )

        # Old rows must be gone before inserts hit uq_automation_step_position.
        session.execute(delete(AutomationStep).where(AutomationStep.automation_id == automation.id))
        session.expire(automation, ["steps"])
        session.flush()
        for step in sorted(steps, key=lambda s: s.position):
            new_step = self._build_step(automation.organization_id, step)
            new_step.automation_id = automation.id
            session.add(new_step)
        session.flush()

    def _build_step(self, organization_id: uuid.UUID, step: AutomationStepInput) -> AutomationStep:
        return AutomationStep(
            organization_id=organization_id,
            position=step.position,
            action_kind=step.action.type,
            action_config=dump_config(step.action, "type"),
        )


class EnrollmentAdminService:
    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue

    def list_for_lead(self, session: Session, lead_id: uuid.UUID, organization_id: uuid.UUID) -> list[EnrollmentRead]:
        rows = session.scalars(
            select(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.lead_id == lead_id,
                    AutomationEnrollment.organization_id == organization_id,
                )
            )
            .order_by(AutomationEnrollment.started_at.desc())
        ).all()
        return [EnrollmentRead.model_validate(row) for row in rows]

    def stop(self, session: Session, enrollment_id: uuid.UUID, organization_id: uuid.UUID) -> EnrollmentRead:
        enrollment = self._load(session, enrollment_id, organization_id)
        if enrollment.status == "active":
            enrollment.status = "stopped"
            enrollment.completed_at = utcnow()
            enrollment.next_action_at = None
            session.add(enrollment)
            session.commit()
            session.refresh(enrollment)
            observe_enrollment_transition("stopped")
            logger.info(
                "automation.enrollment.stopped",
                extra={"enrollment_id": str(enrollment_id), "status": "stopped"},
            )
        return EnrollmentRead.model_validate(enrollment)

    def find_stalled(
        self,
        session: Session,
        *,
        older_than: timedelta = timedelta(minutes=15),
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[EnrollmentRead]:
        cutoff = (now or utcnow()) - older_than
        rows = session.scalars(
            select(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.status == "active",
                    AutomationEnrollment.next_action_at.is_not(None),
                    AutomationEnrollment.next_action_at < cutoff,
                )
            )
            .order_by(AutomationEnrollment.next_action_at.asc())
            .limit(limit)
        ).all()
        return [EnrollmentRead.model_validate(row) for row in rows]

    def resume(self, session: Session, enrollment_id: uuid.UUID, organization_id: uuid.UUID) -> EnrollmentRead:
        enrollment = self._load(session, enrollment_id, organization_id)
        if enrollment.status != "active":
            logger.info(
                "automation.enrollment.resume_skipped",
                extra={"enrollment_id": str(enrollment_id), "status": enrollment.status},
            )
            return EnrollmentRead.model_validate(enrollment)

        enrollment.next_action_at = utcnow()
        session.add(enrollment)
        session.commit()
        session.refresh(enrollment)
        self.queue.enqueue(
            AutomationJob(
                kind="execute_step",
                automation_id=enrollment.automation_id,
                lead_id=enrollment.lead_id,
                organization_id=enrollment.organization_id,
                enrollment_id=enrollment.id,
                step_position=enrollment.current_step_position,
                correlation_id=get_correlation_id(),
            )
        )
        logger.info(
            "automation.enrollment.resumed",
            extra={"enrollment_id": str(enrollment_id), "step_position": enrollment.current_step_position},
        )
        return EnrollmentRead.model_validate(enrollment)

    def resume_stalled(
        self,
        session: Session,
        *,
        older_than: timedelta = timedelta(minutes=15),
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[EnrollmentRead]:
        """Re-enqueues the current step of every overdue active enrollment.

        Covers an ``execute_step`` enqueue lost after its commit. When the
        original job was only late, whichever copy runs second is skipped by
        the position check.
        """
        stalled = self.find_stalled(session, older_than=older_than, now=now, limit=limit)
        resumed = [self.resume(session, item.id, item.organization_id) for item in stalled]
        if resumed:
            logger.warning("automation.enrollment.stalled_resumed", extra={"matched_count": len(resumed)})
        return resumed

    def _load(self, session: Session, enrollment_id: uuid.UUID, organization_id: uuid.UUID) -> AutomationEnrollment:
        enrollment = session.get(AutomationEnrollment, enrollment_id)
        if enrollment is None or enrollment.organization_id != organization_id:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment
