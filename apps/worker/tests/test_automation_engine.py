from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.automations.errors import MessageDeliveryError
from leadflow.automations.messaging import SendResult, SimulatedMessageSender
from leadflow.automations.models import Automation, AutomationEnrollment, AutomationStep
from leadflow.automations.queue import InMemoryJobQueue
from leadflow.automations.repositories import EngineStores, SqlEnrollmentStore, SqlLeadStore
from leadflow.automations.runtime import AutomationRuntime
from leadflow.automations.schemas import AutomationJob
from leadflow.automations.service import StepExecutor
from leadflow.core.config import Settings, get_settings
from leadflow.core.database import Base
from leadflow.core.events import InProcessEventBus
from leadflow.crm.models import CRMLead, CRMMessageTemplate, CRMTimelineEntry


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_QUEUE_BACKEND", "inmemory")
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture()
def email_sender() -> SimulatedMessageSender:
    return SimulatedMessageSender()


@pytest.fixture()
def runtime(
    queue: InMemoryJobQueue,
    session_factory: sessionmaker[Session],
    email_sender: SimulatedMessageSender,
) -> Generator[AutomationRuntime, None, None]:
    runtime = AutomationRuntime(
        queue=queue,
        session_factory=session_factory,
        message_senders={"email": email_sender},
        bus=InProcessEventBus(),
    )
    runtime.start()
    yield runtime
    runtime.stop()


def _create_lead(session: Session, organization_id: uuid.UUID, **overrides: Any) -> CRMLead:
    values: dict[str, Any] = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": None,
        "tags": [],
    }
    values.update(overrides)
    lead = CRMLead(organization_id=organization_id, **values)
    session.add(lead)
    session.commit()
    return lead


def _create_automation(
    session: Session,
    organization_id: uuid.UUID,
    steps: list[tuple[str, dict[str, Any] | None]],
    *,
    trigger_kind: str = "lead_created",
    trigger_config: dict[str, Any] | None = None,
    is_active: bool = True,
) -> Automation:
    automation = Automation(
        organization_id=organization_id,
        name="Nurture",
        trigger_kind=trigger_kind,
        trigger_config=trigger_config,
        is_active=is_active,
    )
    automation.steps = [
        AutomationStep(organization_id=organization_id, position=index, action_kind=kind, action_config=config)
        for index, (kind, config) in enumerate(steps)
    ]
    session.add(automation)
    session.commit()
    return automation


def _create_template(session: Session, organization_id: uuid.UUID, **overrides: Any) -> CRMMessageTemplate:
    values: dict[str, Any] = {
        "name": "Welcome",
        "subject": "Hi {{ firstName }}",
        "body_html": "<p>Hello {{first_name}} {{unknown}}</p>",
        "body_text": "Hello {{first_name}}",
    }
    values.update(overrides)
    template = CRMMessageTemplate(organization_id=organization_id, **values)
    session.add(template)
    session.commit()
    return template


def _enrollment_for(session: Session, automation_id: uuid.UUID, lead_id: uuid.UUID) -> AutomationEnrollment:
    session.expire_all()
    enrollment = session.scalar(
        select(AutomationEnrollment).where(
            AutomationEnrollment.automation_id == automation_id,
            AutomationEnrollment.lead_id == lead_id,
        )
    )
    assert enrollment is not None
    return enrollment


def _enroll_directly(
    session: Session, automation_id: uuid.UUID, lead_id: uuid.UUID, organization_id: uuid.UUID
) -> uuid.UUID:
    enrollment = SqlEnrollmentStore(session).create(
        automation_id=automation_id, lead_id=lead_id, organization_id=organization_id
    )
    session.commit()
    return enrollment.id


def _timeline_types(session: Session, lead_id: uuid.UUID) -> list[str]:
    return list(
        session.scalars(
            select(CRMTimelineEntry.entry_type)
            .where(CRMTimelineEntry.lead_id == lead_id)
            .order_by(CRMTimelineEntry.created_at.asc())
        ).all()
    )


def test_happy_path_moves_stage_tags_lead_and_stops(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    stage_a, stage_b = uuid.uuid4(), uuid.uuid4()
    lead = _create_lead(db_session, organization_id, current_stage_id=stage_a)
    automation = _create_automation(
        db_session,
        organization_id,
        [
            ("move_stage", {"stage_id": str(stage_b)}),
            ("add_tag", {"tag_name": "vip"}),
            ("stop_automation", None),
        ],
    )

    jobs = runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    assert [job.kind for job in jobs] == ["enroll_lead"]

    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "stopped"
    assert enrollment.current_step_position == 3
    assert enrollment.completed_at is not None
    assert enrollment.next_action_at is None

    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.current_stage_id == stage_b
    assert refreshed.tags == ["vip"]
    assert queue.pending == []

    timeline_types = _timeline_types(db_session, lead.id)
    assert "automation" in timeline_types
    assert "stage_change" in timeline_types


def test_positions_advance_by_one_until_steps_are_exhausted(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [
            ("add_tag", {"tag_name": "one"}),
            ("add_tag", {"tag_name": "two"}),
            ("add_tag", {"tag_name": "three"}),
        ],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    step_jobs = [finished.job for finished in queue.completed if finished.job.kind == "execute_step"]
    # Three step executions plus the delivery that finds no step and completes.
    assert [job.step_position for job in step_jobs] == [0, 1, 2, 3]

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "completed"
    assert enrollment.current_step_position == 3
    assert enrollment.completed_at is not None

    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["one", "two", "three"]


def test_stop_step_leaves_no_further_jobs(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [
            ("add_tag", {"tag_name": "before"}),
            ("stop_automation", None),
            ("add_tag", {"tag_name": "after"}),
        ],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "stopped"
    assert enrollment.current_step_position == 2
    assert queue.pending == []
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["before"]


def test_wait_step_delays_next_job_by_exact_minutes(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id, status="contacted")
    automation = _create_automation(
        db_session,
        organization_id,
        [("wait", {"delay_minutes": 5}), ("add_tag", {"tag_name": "followed-up"})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.run_due()

    assert len(queue.pending) == 1
    delayed = queue.pending[0]
    assert delayed.job.kind == "execute_step"
    assert delayed.job.step_position == 1
    assert delayed.available_at_ms - queue.now_ms == 300_000

    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == []
    assert refreshed.status == "contacted"

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "active"
    assert enrollment.current_step_position == 1
    assert enrollment.next_action_at is not None

    queue.advance(299_999)
    assert queue.run_due() == 0

    queue.advance(1)
    queue.run_due()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "completed"
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["followed-up"]


def test_wait_without_delay_advances_immediately(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(db_session, organization_id, [("wait", None), ("add_tag", {"tag_name": "x"})])

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.run_due()

    assert queue.pending == []
    assert _enrollment_for(db_session, automation.id, lead.id).status == "completed"


def test_missing_lead_marks_enrollment_error(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    lead_id = lead.id
    automation = _create_automation(db_session, organization_id, [("add_tag", {"tag_name": "vip"})])

    enrollment = runtime.enrollment_manager.enroll(db_session, automation.id, lead_id, organization_id)
    assert enrollment is not None

    db_session.delete(lead)
    db_session.commit()

    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead_id)
    assert enrollment.status == "error"
    assert enrollment.error_message == "lead not found"
    assert queue.pending == []


def test_stale_execute_step_redelivery_is_ignored(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("add_tag", {"tag_name": "first"}), ("wait", {"delay_minutes": 10}), ("add_tag", {"tag_name": "second"})],
    )
    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.run_due()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.current_step_position == 2

    redelivered = AutomationJob(
        kind="execute_step",
        automation_id=automation.id,
        lead_id=lead.id,
        organization_id=organization_id,
        enrollment_id=enrollment.id,
        step_position=0,
    )
    assert runtime.processor.process(redelivered) == "skipped"

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.current_step_position == 2
    assert len(queue.pending) == 1


def test_position_check_can_be_disabled(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
    email_sender: SimulatedMessageSender,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("add_tag", {"tag_name": "first"}), ("wait", {"delay_minutes": 10})],
    )
    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.run_due()
    enrollment = _enrollment_for(db_session, automation.id, lead.id)

    lenient = StepExecutor(queue, {"email": email_sender}, Settings(automation_step_position_check=False))
    outcome = lenient.execute_step(db_session, enrollment.id, automation.id, lead.id, organization_id, 0)

    assert outcome == "advanced"
    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.current_step_position == 1
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["first"]


def test_stopping_enrollment_cancels_queued_steps(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("wait", {"delay_minutes": 60}), ("add_tag", {"tag_name": "late"})],
    )
    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.run_due()
    enrollment = _enrollment_for(db_session, automation.id, lead.id)

    stopped = runtime.enrollments.stop(db_session, enrollment.id, organization_id)
    assert stopped.status == "stopped"

    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "stopped"
    assert enrollment.current_step_position == 1
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == []


def test_add_tag_is_idempotent(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id, tags=["vip", "warm"])
    _create_automation(
        db_session,
        organization_id,
        [("add_tag", {"tag_name": "vip"}), ("remove_tag", {"tag_name": "warm"}), ("remove_tag", {"tag_name": "absent"})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    db_session.expire_all()
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["vip"]


def test_send_message_renders_template_and_records_contact(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
    email_sender: SimulatedMessageSender,
) -> None:
    lead = _create_lead(db_session, organization_id)
    template = _create_template(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("send_message", {"template_id": str(template.id)})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    assert email_sender.sent == [
        {
            "to": "ada@example.com",
            "subject": "Hi Ada",
            "html": "<p>Hello Ada {{unknown}}</p>",
            "text": "Hello Ada",
        }
    ]
    assert _enrollment_for(db_session, automation.id, lead.id).status == "completed"
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.last_contacted_at is not None

    sent_entry = db_session.scalar(
        select(CRMTimelineEntry).where(
            CRMTimelineEntry.lead_id == lead.id,
            CRMTimelineEntry.entry_type == "email_sent",
        )
    )
    assert sent_entry is not None
    assert sent_entry.content == "Email sent: Hi Ada"
    assert sent_entry.metadata_json is not None
    assert sent_entry.metadata_json["simulated"] is True


@pytest.mark.parametrize(
    ("lead_overrides", "action_config", "expected_error"),
    [
        ({"email": None}, {"template_id": "TEMPLATE"}, "Lead has no email address"),
        ({}, {}, "send_message step is missing template_id"),
        ({}, {"template_id": str(uuid.UUID(int=7))}, "Message template not found"),
        ({"phone": "+15550100"}, {"template_id": "TEMPLATE", "channel": "sms"}, "No message sender configured for sms"),
    ],
)
def test_send_message_failures_mark_enrollment_error(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
    lead_overrides: dict[str, Any],
    action_config: dict[str, Any],
    expected_error: str,
) -> None:
    lead = _create_lead(db_session, organization_id, **lead_overrides)
    template = _create_template(db_session, organization_id)
    config = {
        key: (str(template.id) if value == "TEMPLATE" else value) for key, value in action_config.items()
    }
    automation = _create_automation(
        db_session,
        organization_id,
        [("add_tag", {"tag_name": "vip"}), ("send_message", config), ("add_tag", {"tag_name": "never"})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "error"
    assert enrollment.error_message == expected_error
    assert enrollment.current_step_position == 1
    assert queue.pending == []
    # Mutations from the steps before the failure are kept.
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["vip"]


def test_template_from_another_organization_is_not_used(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
    email_sender: SimulatedMessageSender,
) -> None:
    lead = _create_lead(db_session, organization_id)
    foreign_template = _create_template(db_session, uuid.uuid4())
    automation = _create_automation(
        db_session,
        organization_id,
        [("send_message", {"template_id": str(foreign_template.id)})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    assert email_sender.sent == []
    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.error_message == "Message template not found"


class _RejectingSender:
    def send(self, to: str, subject: str, html: str, text: str | None = None) -> SendResult:
        raise MessageDeliveryError("Failed to send message: domain not verified", provider_status=403)


def test_delivery_failure_is_recorded_without_job_retry(
    queue: InMemoryJobQueue,
    session_factory: sessionmaker[Session],
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    runtime = AutomationRuntime(
        queue=queue,
        session_factory=session_factory,
        message_senders={"email": _RejectingSender()},
        bus=InProcessEventBus(),
    )
    runtime.start()
    lead = _create_lead(db_session, organization_id)
    template = _create_template(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("send_message", {"template_id": str(template.id)})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()
    runtime.stop()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "error"
    assert enrollment.error_message == "Failed to send message: domain not verified"
    assert len(queue.failed) == 0
    assert all(finished.attempts == 1 for finished in queue.completed)


def test_invalid_stored_action_config_marks_enrollment_error(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("change_status", {"status_value": "not-a-status"})],
    )

    runtime.dispatch_trigger("lead_created", lead.id, organization_id)
    queue.drain()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "error"
    assert enrollment.error_message is not None
    assert "status_value" in enrollment.error_message
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.status == "new"


class _LockedLeadStore(SqlLeadStore):
    def update(self, lead_id: uuid.UUID, **fields: Any) -> None:
        super().update(lead_id, **fields)
        raise OperationalError("UPDATE crm_lead", {}, Exception("database is locked"))


def test_database_error_in_step_rolls_back_and_marks_enrollment_error(
    queue: InMemoryJobQueue,
    db_session: Session,
    session_factory: sessionmaker[Session],
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [("change_status", {"status_value": "qualified"}), ("add_tag", {"tag_name": "never"})],
    )
    enrollment_id = _enroll_directly(db_session, automation.id, lead.id, organization_id)
    built: list[EngineStores] = []

    def stores_factory(session: Session) -> EngineStores:
        stores = EngineStores.for_session(session)
        if not built:
            stores.leads = _LockedLeadStore(session)
        built.append(stores)
        return stores

    executor = StepExecutor(queue, {"email": SimulatedMessageSender()}, Settings(), stores_factory)
    session = session_factory()
    try:
        outcome = executor.execute_step(session, enrollment_id, automation.id, lead.id, organization_id, 0)
    finally:
        session.close()

    assert outcome == "error"
    assert len(built) == 2
    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "error"
    assert enrollment.current_step_position == 0
    assert enrollment.error_message is not None
    assert "database is locked" in enrollment.error_message
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.status == "new"
    assert _timeline_types(db_session, lead.id) == []
    assert queue.pending == []


def test_timeline_write_failure_does_not_undo_step_progress(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(
        db_session,
        organization_id,
        [
            ("change_status", {"status_value": "contacted"}),
            ("wait", {"delay_minutes": 5}),
            ("add_tag", {"tag_name": "followed-up"}),
        ],
    )
    db_session.execute(text("DROP TABLE crm_timeline_entry"))
    db_session.commit()

    with caplog.at_level(logging.WARNING, logger="leadflow.automations.repositories"):
        runtime.dispatch_trigger("lead_created", lead.id, organization_id)
        queue.run_due()

    enrollment = _enrollment_for(db_session, automation.id, lead.id)
    assert enrollment.status == "active"
    assert enrollment.current_step_position == 2
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.status == "contacted"

    assert len(queue.pending) == 1
    follow_up = queue.pending[0].job
    assert follow_up.kind == "execute_step"
    assert follow_up.step_position == 2
    assert queue.failed == []

    failures = [record for record in caplog.records if record.getMessage() == "crm.timeline.append_failed"]
    # The enrollment entry and the status change entry.
    assert len(failures) == 2
    assert all(record.lead_id == str(lead.id) for record in failures)


def test_runtime_sweep_recovers_enrollment_whose_step_enqueue_was_lost(
    runtime: AutomationRuntime,
    queue: InMemoryJobQueue,
    db_session: Session,
    organization_id: uuid.UUID,
) -> None:
    lead = _create_lead(db_session, organization_id)
    automation = _create_automation(db_session, organization_id, [("add_tag", {"tag_name": "recovered"})])
    enrollment_id = _enroll_directly(db_session, automation.id, lead.id, organization_id)
    enrollment = db_session.get(AutomationEnrollment, enrollment_id)
    assert enrollment is not None
    enrollment.next_action_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    db_session.commit()

    [resumed] = runtime.resume_stalled()
    assert resumed.id == enrollment_id
    queue.run_due()

    assert _enrollment_for(db_session, automation.id, lead.id).status == "completed"
    refreshed = db_session.get(CRMLead, lead.id)
    assert refreshed is not None
    assert refreshed.tags == ["recovered"]
