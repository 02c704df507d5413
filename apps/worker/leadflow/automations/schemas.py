from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from leadflow.automations.errors import InvalidAutomationDefinitionError


TriggerKind = Literal["lead_created", "stage_changed", "status_changed", "time_delay", "manual"]
ActionKind = Literal[
    "send_message",
    "assign_user",
    "move_stage",
    "change_status",
    "add_tag",
    "remove_tag",
    "wait",
    "stop_automation",
]
EnrollmentStatus = Literal["active", "completed", "stopped", "error"]
JobKind = Literal["enroll_lead", "execute_step", "process_trigger"]
StepOutcome = Literal["skipped", "completed", "advanced", "delayed", "stopped", "error"]
MessageChannel = Literal["email", "sms"]
LeadStatus = Literal["new", "contacted", "qualified", "negotiating", "signed", "lost", "archived"]


class LeadCreatedTrigger(BaseModel):
    kind: Literal["lead_created"] = "lead_created"
    channel: str | None = None


class StageChangedTrigger(BaseModel):
    kind: Literal["stage_changed"] = "stage_changed"
    stage_id: UUID | None = None
    channel: str | None = None


class StatusChangedTrigger(BaseModel):
    kind: Literal["status_changed"] = "status_changed"
    status_value: str | None = None
    channel: str | None = None


class TimeDelayTrigger(BaseModel):
    kind: Literal["time_delay"] = "time_delay"
    delay_minutes: int | None = Field(default=None, ge=1)
    channel: str | None = None


class ManualTrigger(BaseModel):
    kind: Literal["manual"] = "manual"
    channel: str | None = None


TriggerConfig = Annotated[
    LeadCreatedTrigger | StageChangedTrigger | StatusChangedTrigger | TimeDelayTrigger | ManualTrigger,
    Field(discriminator="kind"),
]

_trigger_adapter = TypeAdapter(TriggerConfig)


class SendMessageAction(BaseModel):
    type: Literal["send_message"] = "send_message"
    template_id: UUID | None = None
    channel: MessageChannel = "email"


class AssignUserAction(BaseModel):
    type: Literal["assign_user"] = "assign_user"
    user_id: UUID | None = None


class MoveStageAction(BaseModel):
    type: Literal["move_stage"] = "move_stage"
    stage_id: UUID | None = None


class ChangeStatusAction(BaseModel):
    type: Literal["change_status"] = "change_status"
    status_value: LeadStatus | None = None


class AddTagAction(BaseModel):
    type: Literal["add_tag"] = "add_tag"
    tag_name: str | None = None


class RemoveTagAction(BaseModel):
    type: Literal["remove_tag"] = "remove_tag"
    tag_name: str | None = None


class WaitAction(BaseModel):
    type: Literal["wait"] = "wait"
    delay_minutes: int | None = Field(default=None, ge=1)


class StopAutomationAction(BaseModel):
    type: Literal["stop_automation"] = "stop_automation"


StepAction = Annotated[
    SendMessageAction
    | AssignUserAction
    | MoveStageAction
    | ChangeStatusAction
    | AddTagAction
    | RemoveTagAction
    | WaitAction
    | StopAutomationAction,
    Field(discriminator="type"),
]

_action_adapter = TypeAdapter(StepAction)


def parse_trigger_config(trigger_kind: str, config: dict[str, Any] | None) -> TriggerConfig:
    payload = dict(config or {})
    payload["kind"] = trigger_kind
    return _trigger_adapter.validate_python(payload)


def parse_step_action(action_kind: str, config: dict[str, Any] | None) -> StepAction:
    payload = dict(config or {})
    payload["type"] = action_kind
    return _action_adapter.validate_python(payload)


def dump_config(model: BaseModel, discriminator: str) -> dict[str, Any] | None:
    payload = model.model_dump(mode="json", exclude_none=True)
    payload.pop(discriminator, None)
    return payload or None


class AutomationStepInput(BaseModel):
    position: int = Field(ge=0)
    action: StepAction


class AutomationCreate(BaseModel):
    organization_id: UUID
    team_id: UUID | None = None
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: TriggerConfig
    applies_to_channel: str | None = None
    steps: list[AutomationStepInput] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_step_positions(self) -> "AutomationCreate":
        ensure_dense_positions(self.steps)
        return self


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: TriggerConfig | None = None
    applies_to_channel: str | None = None
    is_active: bool | None = None
    steps: list[AutomationStepInput] | None = None

    @model_validator(mode="after")
    def validate_step_positions(self) -> "AutomationUpdate":
        if self.steps is not None:
            ensure_dense_positions(self.steps)
        return self


def ensure_dense_positions(steps: list[AutomationStepInput]) -> None:
    ensure_dense_position_values([step.position for step in steps])


def ensure_dense_position_values(positions: list[int]) -> None:
    if sorted(positions) != list(range(len(positions))):
        raise InvalidAutomationDefinitionError(
            "step positions must be a dense 0-based sequence without duplicates"
        )


class AutomationStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    action_kind: ActionKind
    action_config: dict[str, Any] | None = None


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    team_id: UUID | None = None
    name: str
    description: str | None = None
    is_active: bool
    trigger_kind: TriggerKind
    trigger_config: dict[str, Any] | None = None
    applies_to_channel: str | None = None
    steps: list[AutomationStepRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    automation_id: UUID
    lead_id: UUID
    current_step_position: int
    status: EnrollmentStatus
    next_action_at: datetime | None = None
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None


class AutomationJob(BaseModel):
    kind: JobKind
    automation_id: UUID | None = None
    lead_id: UUID
    organization_id: UUID
    enrollment_id: UUID | None = None
    step_position: int | None = Field(default=None, ge=0)
    trigger_kind: TriggerKind | None = None
    correlation_id: str | None = None

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "AutomationJob":
        if self.kind == "process_trigger":
            if self.trigger_kind is None:
                raise ValueError("process_trigger jobs require trigger_kind")
            return self
        if self.automation_id is None:
            raise ValueError(f"{self.kind} jobs require automation_id")
        if self.kind == "execute_step" and (self.enrollment_id is None or self.step_position is None):
            raise ValueError("execute_step jobs require enrollment_id and step_position")
        return self


@dataclass(frozen=True)
class Advance:
    pass


@dataclass(frozen=True)
class AdvanceAfterDelay:
    minutes: int

    @property
    def delay_ms(self) -> int:
        return self.minutes * 60 * 1000


@dataclass(frozen=True)
class Stop:
    pass


StepDirective = Advance | AdvanceAfterDelay | Stop
