from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

import httpx
import structlog

from app.config import Settings
from shared.contracts.enums import DeliveryStatus
from shared.contracts.models import GatewayResult, clean_contact

logger = structlog.get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
MAX_SMS_LENGTH = 700


@dataclass(frozen=True)
class CallContext:
    medicine_name: str
    patient_identity: str


class NotificationGateway(Protocol):
    def place_call(self, contact: str, context: CallContext) -> GatewayResult: ...

    def send_sms(self, contact: str, text: str) -> GatewayResult: ...


def _safe_json(response: httpx.Response) -> Dict[str, object]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class TwilioGateway:
    """SMS and voice calls through the Twilio REST API.

    Never raises: missing credentials, provider errors, timeouts and network
    failures all come back as an unsuccessful ``GatewayResult``.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None) -> None:
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.api_timeout_seconds)

    def close(self) -> None:
        self.client.close()

    def place_call(self, contact: str, context: CallContext) -> GatewayResult:
        to = clean_contact(contact)
        if not self.settings.twilio_enabled:
            return GatewayResult(
                ok=False,
                provider="mock",
                status=DeliveryStatus.MISSING_CONFIG.value,
                message=f"Twilio config missing. Simulated escalation for {context.patient_identity} ({context.medicine_name}).",
            )

        return self._post(
            "Calls.json",
            {"To": to, "From": self.settings.twilio_phone_number, "Url": self.settings.twilio_twiml_url},
            success_message="Twilio call requested successfully.",
        )

    def send_sms(self, contact: str, text: str) -> GatewayResult:
        to = clean_contact(contact)
        body = (text or "").strip()[:MAX_SMS_LENGTH]
        if not to:
            return GatewayResult(
                ok=False,
                provider="mock",
                status=DeliveryStatus.MISSING_PHONE.value,
                message="Recipient phone is missing.",
            )
        if not (self.settings.twilio_enabled and self.settings.sms_sender):
            return GatewayResult(
                ok=False,
                provider="mock",
                status=DeliveryStatus.MISSING_CONFIG.value,
                message=f"Twilio SMS config missing. Simulated SMS to {to}.",
            )

        return self._post(
            "Messages.json",
            {"To": to, "From": self.settings.sms_sender, "Body": body},
            success_message="SMS requested successfully.",
        )

    def _post(self, resource: str, form: Dict[str, Optional[str]], success_message: str) -> GatewayResult:
        endpoint = f"{TWILIO_API_BASE}/Accounts/{self.settings.twilio_account_sid}/{resource}"
        try:
            response = self.client.post(
                endpoint,
                data=form,
                auth=(self.settings.twilio_account_sid or "", self.settings.twilio_auth_token or ""),
                timeout=self.settings.api_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.warning("gateway_request_timeout", resource=resource, error=str(exc))
            return GatewayResult(
                ok=False,
                provider="twilio",
                status=DeliveryStatus.TIMEOUT.value,
                message=f"Twilio request timed out after {self.settings.api_timeout_seconds:g}s",
            )
        except httpx.HTTPError as exc:
            logger.warning("gateway_request_failed", resource=resource, error=str(exc))
            return GatewayResult(ok=False, provider="twilio", status=DeliveryStatus.FAILED.value, message=str(exc))

        payload = _safe_json(response)
        if response.is_error:
            logger.warning("gateway_request_rejected", resource=resource, status_code=response.status_code)
            return GatewayResult(
                ok=False,
                provider="twilio",
                status=DeliveryStatus.FAILED.value,
                message=str(payload.get("message") or f"Twilio request failed ({response.status_code})"),
            )

        return GatewayResult(
            ok=True,
            provider="twilio",
            status=str(payload.get("status") or DeliveryStatus.QUEUED.value),
            reference=str(payload.get("sid") or ""),
            message=success_message,
        )


@dataclass
class GatewayMessage:
    channel: str
    to: str
    body: str


@dataclass
class FakeGateway:
    """Records every send; ``responder`` decides the result for each message."""

    sent: List[GatewayMessage] = field(default_factory=list)
    responder: Optional[Callable[[GatewayMessage], GatewayResult]] = None
    closed: bool = False

    def _deliver(self, message: GatewayMessage) -> GatewayResult:
        self.sent.append(message)
        if self.responder is not None:
            return self.responder(message)
        return GatewayResult(
            ok=True,
            provider="fake",
            status=DeliveryStatus.QUEUED.value,
            reference=f"fake-{len(self.sent)}",
            message="recorded",
        )

    def place_call(self, contact: str, context: CallContext) -> GatewayResult:
        return self._deliver(GatewayMessage(channel="voice", to=contact, body=context.medicine_name))

    def send_sms(self, contact: str, text: str) -> GatewayResult:
        return self._deliver(GatewayMessage(channel="sms", to=contact, body=text))

    def close(self) -> None:
        self.closed = True

    def calls(self) -> List[GatewayMessage]:
        return [m for m in self.sent if m.channel == "voice"]

    def sms(self) -> List[GatewayMessage]:
        return [m for m in self.sent if m.channel == "sms"]
