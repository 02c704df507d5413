from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import assert_never

from leadflow.automations.errors import (
    MessageDeliveryError,
    MissingActionConfigError,
    MissingContactAddressError,
    TemplateNotFoundError,
)
from leadflow.automations.messaging import MessageSender
from leadflow.automations.models import utcnow
from leadflow.automations.repositories import LeadStore, TemplateStore, TimelineSink
from leadflow.automations.schemas import (
    AddTagAction,
    Advance,
    AdvanceAfterDelay,
    AssignUserAction,
    ChangeStatusAction,
    MoveStageAction,
    RemoveTagAction,
    SendMessageAction,
    StepAction,
    StepDirective,
    Stop,
    StopAutomationAction,
    WaitAction,
)
from leadflow.automations.templates import lead_template_variables, render_template
from leadflow.crm.models import CRMLead


logger = logging.getLogger("leadflow.automations.actions")


@dataclass
class ActionContext:
    organization_id: uuid.UUID
    leads: LeadStore
    templates: TemplateStore
    timeline: TimelineSink
    message_senders: Mapping[str, MessageSender]


def execute_action(action: StepAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    """Applies one step action to ``lead`` and says how the enrollment moves on.

    Handlers raise ``AutomationActionError`` subclasses for failures the
    executor records on the enrollment.
    """
    match action:
        case SendMessageAction():
            return send_message(action, lead, context)
        case AssignUserAction():
            return assign_user(action, lead, context)
        case MoveStageAction():
            return move_stage(action, lead, context)
        case ChangeStatusAction():
            return change_status(action, lead, context)
        case AddTagAction():
            return add_tag(action, lead, context)
        case RemoveTagAction():
            return remove_tag(action, lead, context)
        case WaitAction():
            return wait(action)
        case StopAutomationAction():
            return Stop()
        case _:
            assert_never(action)


def send_message(action: SendMessageAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    address = lead.email if action.channel == "email" else lead.phone
    if not address:
        raise MissingContactAddressError(action.channel)
    if action.template_id is None:
        raise MissingActionConfigError("send_message", "template_id")

    template = context.templates.get_by_id(action.template_id)
    if template is None or template.organization_id != context.organization_id:
        raise TemplateNotFoundError(action.template_id)

    sender = context.message_senders.get(action.channel)
    if sender is None:
        raise MessageDeliveryError(f"No message sender configured for {action.channel}")

    variables = lead_template_variables(lead)
    subject = render_template(template.subject, variables)
    html = render_template(template.body_html, variables)
    text = render_template(template.body_text, variables) if template.body_text else None

    result = sender.send(address, subject, html, text)

    context.leads.update(lead.id, last_contacted_at=utcnow())
    if action.channel == "email":
        entry_type, content = "email_sent", f"Email sent: {subject}"
    else:
        entry_type, content = "sms_sent", f"SMS sent: {subject}"
    context.timeline.append(
        context.organization_id,
        lead.id,
        entry_type,
        content,
        {
            "templateId": str(template.id),
            "subject": subject,
            "messageId": result.message_id,
            "simulated": result.simulated,
        },
    )
    return Advance()


def assign_user(action: AssignUserAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    if action.user_id is None:
        return Advance()
    previous = lead.assigned_user_id
    context.leads.update(lead.id, assigned_user_id=action.user_id)
    context.timeline.append(
        context.organization_id,
        lead.id,
        "assignment",
        "Lead assigned via automation",
        {"fromUser": str(previous) if previous else None, "toUser": str(action.user_id)},
    )
    return Advance()


def move_stage(action: MoveStageAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    if action.stage_id is None:
        return Advance()
    previous = lead.current_stage_id
    context.leads.update(lead.id, current_stage_id=action.stage_id)
    context.timeline.append(
        context.organization_id,
        lead.id,
        "stage_change",
        "Stage changed via automation",
        {"fromStage": str(previous) if previous else None, "toStage": str(action.stage_id)},
    )
    return Advance()


def change_status(action: ChangeStatusAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    if action.status_value is None:
        return Advance()
    previous = lead.status
    context.leads.update(lead.id, status=action.status_value)
    context.timeline.append(
        context.organization_id,
        lead.id,
        "status_change",
        f"Status changed to {action.status_value} via automation",
        {"fromStatus": previous, "toStatus": action.status_value},
    )
    return Advance()


def add_tag(action: AddTagAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    tags = list(lead.tags or [])
    if action.tag_name and action.tag_name not in tags:
        context.leads.update(lead.id, tags=[*tags, action.tag_name])
    return Advance()


def remove_tag(action: RemoveTagAction, lead: CRMLead, context: ActionContext) -> StepDirective:
    tags = list(lead.tags or [])
    if action.tag_name and action.tag_name in tags:
        context.leads.update(lead.id, tags=[tag for tag in tags if tag != action.tag_name])
    return Advance()


def wait(action: WaitAction) -> StepDirective:
    # No delay configured means the wait is a pass-through.
    if not action.delay_minutes:
        return Advance()
    return AdvanceAfterDelay(minutes=action.delay_minutes)
