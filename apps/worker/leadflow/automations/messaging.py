from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx
from opentelemetry import trace

from leadflow.automations.errors import MessageDeliveryError
from leadflow.context import get_correlation_id
from leadflow.core.config import Settings


logger = logging.getLogger("leadflow.automations.messaging")
tracer = trace.get_tracer("leadflow.automations.messaging")


@dataclass(frozen=True)
class SendResult:
    message_id: str
    simulated: bool = False


class MessageSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str | None = None) -> SendResult: ...


class SimulatedMessageSender:
    """Logs instead of delivering; used when no provider key is configured."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str | None]] = []

    def send(self, to: str, subject: str, html: str, text: str | None = None) -> SendResult:
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        logger.info("message.simulated", extra={"status": "simulated"})
        return SendResult(message_id=f"simulated-{uuid.uuid4()}", simulated=True)


class ResendMessageSender:
    def __init__(
        self,
        api_key: str,
        *,
        from_address: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.from_address = from_address
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    def send(self, to: str, subject: str, html: str, text: str | None = None) -> SendResult:
        body: dict[str, str] = {
            "from": self.from_address,
            "to": to,
            "subject": subject,
            "html": html,
        }
        if text is not None:
            body["text"] = text

        started = time.perf_counter()
        with tracer.start_as_current_span("automation.message.send") as span:
            span.set_attribute("provider", "resend")
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = self._client.post("/emails", json=body)
            except httpx.HTTPError as exc:
                raise MessageDeliveryError(f"Failed to send message: {exc}") from exc

            if response.status_code >= 400:
                detail = self._error_detail(response)
                raise MessageDeliveryError(
                    f"Failed to send message: {detail}",
                    provider_status=response.status_code,
                )

            message_id = str(response.json().get("id") or "")
            span.set_attribute("message_id", message_id)

        logger.info(
            "message.sent",
            extra={"status": "sent", "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return SendResult(message_id=message_id)

    def close(self) -> None:
        self._client.close()

    def _error_detail(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"HTTP {response.status_code}"


def build_message_senders(settings: Settings) -> dict[str, MessageSender]:
    # Only email has a provider; sms steps fail unless a sender is registered for it.
    if settings.resend_api_key:
        email_sender: MessageSender = ResendMessageSender(
            settings.resend_api_key,
            from_address=settings.email_from,
            base_url=settings.resend_api_url,
            timeout_seconds=settings.message_send_timeout_seconds,
        )
    else:
        logger.warning("message.sender.simulated", extra={"reason": "RESEND_API_KEY not set"})
        email_sender = SimulatedMessageSender()
    return {"email": email_sender}
