from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Automation(Base):
    __tablename__ = "automation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    team_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    trigger_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    applies_to_channel: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    steps: Mapped[list[AutomationStep]] = relationship(
        "AutomationStep",
        back_populates="automation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AutomationStep.position",
    )


class AutomationStep(Base):
    __tablename__ = "automation_step"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    automation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    action_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    automation: Mapped[Automation] = relationship("Automation", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("automation_id", "position", name="uq_automation_step_position"),
    )


class AutomationEnrollment(Base):
    __tablename__ = "automation_enrollment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    automation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation.id", ondelete="CASCADE"),
        nullable=False,
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    current_step_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    next_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_automation_scope_trigger_active", Automation.organization_id, Automation.trigger_kind, Automation.is_active)
Index("ix_automation_step_automation_id", AutomationStep.automation_id)
Index("ix_automation_enrollment_lead_id", AutomationEnrollment.lead_id)
Index("ix_automation_enrollment_status_next_action", AutomationEnrollment.status, AutomationEnrollment.next_action_at)
Index(
    "uq_automation_enrollment_active_pair",
    AutomationEnrollment.automation_id,
    AutomationEnrollment.lead_id,
    unique=True,
    postgresql_where=AutomationEnrollment.status == "active",
    sqlite_where=AutomationEnrollment.status == "active",
)
