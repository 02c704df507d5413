from __future__ import annotations


class AutomationError(Exception):
    """Base error for the automation engine."""


class InvalidAutomationDefinitionError(AutomationError, ValueError):
    """Raised when a definition or its step list cannot be stored."""


class AutomationNotFoundError(AutomationError):
    def __init__(self, automation_id: object) -> None:
        self.automation_id = automation_id
        super().__init__(f"automation not found: {automation_id}")


class EnrollmentNotFoundError(AutomationError):
    def __init__(self, enrollment_id: object) -> None:
        self.enrollment_id = enrollment_id
        super().__init__(f"enrollment not found: {enrollment_id}")


class AutomationActionError(AutomationError):
    """Raised by an action handler; the executor records it on the enrollment."""


class MissingActionConfigError(AutomationActionError):
    def __init__(self, action_kind: str, field_name: str) -> None:
        self.action_kind = action_kind
        self.field_name = field_name
        super().__init__(f"{action_kind} step is missing {field_name}")


class MissingContactAddressError(AutomationActionError):
    def __init__(self, channel: str) -> None:
        self.channel = channel
        label = "email address" if channel == "email" else "phone number"
        super().__init__(f"Lead has no {label}")


class TemplateNotFoundError(AutomationActionError):
    def __init__(self, template_id: object) -> None:
        self.template_id = template_id
        super().__init__("Message template not found")


class MessageDeliveryError(AutomationActionError):
    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        self.provider_status = provider_status
        super().__init__(message)
