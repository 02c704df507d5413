from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import Select, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.automations.models import Automation, AutomationEnrollment, AutomationStep, utcnow
from leadflow.crm.models import CRMLead, CRMMessageTemplate, CRMTimelineEntry


logger = logging.getLogger("leadflow.automations.repositories")


class AutomationDefinitionStore(Protocol):
    def get_active_automation(self, automation_id: uuid.UUID) -> Automation | None: ...

    def get_step(self, automation_id: uuid.UUID, position: int) -> AutomationStep | None: ...

    def list_active_by_trigger(self, organization_id: uuid.UUID, trigger_kind: str) -> list[Automation]: ...


class EnrollmentStore(Protocol):
    def create(
        self,
        *,
        automation_id: uuid.UUID,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> AutomationEnrollment: ...

    def get_by_id(self, enrollment_id: uuid.UUID) -> AutomationEnrollment | None: ...

    def find_active(self, automation_id: uuid.UUID, lead_id: uuid.UUID) -> AutomationEnrollment | None: ...

    def update(self, enrollment_id: uuid.UUID, **fields: Any) -> None: ...


class LeadStore(Protocol):
    def get_by_id(self, lead_id: uuid.UUID) -> CRMLead | None: ...

    def update(self, lead_id: uuid.UUID, **fields: Any) -> None: ...


class TemplateStore(Protocol):
    def get_by_id(self, template_id: uuid.UUID) -> CRMMessageTemplate | None: ...


class TimelineSink(Protocol):
    def append(
        self,
        organization_id: uuid.UUID,
        lead_id: uuid.UUID,
        entry_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def flush(self) -> int: ...


class SqlAutomationDefinitionStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_active_automation(self, automation_id: uuid.UUID) -> Automation | None:
        return self.session.scalar(
            select(Automation).where(and_(Automation.id == automation_id, Automation.is_active.is_(True)))
        )

    def get_step(self, automation_id: uuid.UUID, position: int) -> AutomationStep | None:
        return self.session.scalar(
            select(AutomationStep).where(
                and_(
                    AutomationStep.automation_id == automation_id,
                    AutomationStep.position == position,
                )
            )
        )

    def list_active_by_trigger(self, organization_id: uuid.UUID, trigger_kind: str) -> list[Automation]:
        stmt: Select[tuple[Automation]] = select(Automation).where(
            and_(
                Automation.organization_id == organization_id,
                Automation.is_active.is_(True),
                Automation.trigger_kind == trigger_kind,
            )
        )
        return list(self.session.scalars(stmt.order_by(Automation.created_at.asc())).all())


class SqlEnrollmentStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(
        self,
        *,
        automation_id: uuid.UUID,
        lead_id: uuid.UUID,
        organization_id: uuid.UUID,
    ) -> AutomationEnrollment:
        now = utcnow()
        enrollment = AutomationEnrollment(
            organization_id=organization_id,
            automation_id=automation_id,
            lead_id=lead_id,
            current_step_position=0,
            status="active",
            next_action_at=now,
            started_at=now,
        )
        self.session.add(enrollment)
        # Surfaces a lost race on uq_automation_enrollment_active_pair as IntegrityError.
        self.session.flush()
        return enrollment

    def get_by_id(self, enrollment_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.get(AutomationEnrollment, enrollment_id, populate_existing=True)

    def find_active(self, automation_id: uuid.UUID, lead_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.scalar(
            select(AutomationEnrollment).where(
                and_(
                    AutomationEnrollment.automation_id == automation_id,
                    AutomationEnrollment.lead_id == lead_id,
                    AutomationEnrollment.status == "active",
                )
            )
        )

    def update(self, enrollment_id: uuid.UUID, **fields: Any) -> None:
        enrollment = self.session.get(AutomationEnrollment, enrollment_id)
        if enrollment is None:
            logger.warning("automation.enrollment.update_missing", extra={"enrollment_id": str(enrollment_id)})
            return
        for key, value in fields.items():
            setattr(enrollment, key, value)
        self.session.add(enrollment)
        self.session.flush()


class SqlLeadStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_id(self, lead_id: uuid.UUID) -> CRMLead | None:
        return self.session.get(CRMLead, lead_id)

    def update(self, lead_id: uuid.UUID, **fields: Any) -> None:
        lead = self.session.get(CRMLead, lead_id)
        if lead is None:
            logger.warning("crm.lead.update_missing", extra={"lead_id": str(lead_id)})
            return
        for key, value in fields.items():
            setattr(lead, key, value)
        lead.updated_at = utcnow()
        self.session.add(lead)
        self.session.flush()


class SqlTemplateStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_id(self, template_id: uuid.UUID) -> CRMMessageTemplate | None:
        return self.session.get(CRMMessageTemplate, template_id)


class SqlTimelineSink:
    """Buffers timeline entries and writes them in their own transaction.

    ``flush`` runs after the engine has committed its own state, so a failed
    timeline write is logged and dropped without undoing step progress.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._pending: list[CRMTimelineEntry] = []

    def append(
        self,
        organization_id: uuid.UUID,
        lead_id: uuid.UUID,
        entry_type: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._pending.append(
            CRMTimelineEntry(
                organization_id=organization_id,
                lead_id=lead_id,
                entry_type=entry_type,
                content=content,
                metadata_json=metadata,
            )
        )

    def flush(self) -> int:
        if not self._pending:
            return 0
        entries, self._pending = self._pending, []
        try:
            self.session.add_all(entries)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(
                "crm.timeline.append_failed",
                extra={"lead_id": str(entries[0].lead_id), "error": str(exc)},
            )
            return 0
        return len(entries)

    @property
    def pending(self) -> list[CRMTimelineEntry]:
        return list(self._pending)


@dataclass
class EngineStores:
    automations: AutomationDefinitionStore
    enrollments: EnrollmentStore
    leads: LeadStore
    templates: TemplateStore
    timeline: TimelineSink

    @classmethod
    def for_session(cls, session: Session) -> EngineStores:
        return cls(
            automations=SqlAutomationDefinitionStore(session),
            enrollments=SqlEnrollmentStore(session),
            leads=SqlLeadStore(session),
            templates=SqlTemplateStore(session),
            timeline=SqlTimelineSink(session),
        )
