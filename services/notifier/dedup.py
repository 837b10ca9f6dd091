from __future__ import annotations

from typing import Callable, Union

import structlog

from app.db.stores import NotificationStore
from shared.contracts.enums import DeliveryStatus, EventType, RecipientRole, SkipReason
from shared.contracts.models import GatewayResult, SendOnceResult, clean_contact

from .outbound import MAX_SMS_LENGTH, NotificationGateway

logger = structlog.get_logger(__name__)

MessageSource = Union[str, Callable[[], str]]


class NotificationDeduplicator:
    """At most one delivery attempt per (schedule, day, event type, recipient).

    A stored record means the attempt happened, whatever its outcome, so a
    failed send is never retried for the same key.
    """

    def __init__(self, store: NotificationStore, gateway: NotificationGateway) -> None:
        self.store = store
        self.gateway = gateway

    def send_once(
        self,
        schedule_id: str,
        date_key: str,
        event_type: EventType,
        recipient_role: RecipientRole,
        recipient_contact: str,
        message: MessageSource,
        gateway: NotificationGateway | None = None,
    ) -> SendOnceResult:
        contact = clean_contact(recipient_contact)
        if not contact:
            return SendOnceResult(sent=False, skipped=True, reason=SkipReason.MISSING_PHONE)

        existing = self.store.get(schedule_id, date_key, event_type.value, contact)
        if existing is not None:
            return SendOnceResult(sent=False, skipped=True, reason=SkipReason.ALREADY_SENT, item=existing)

        text = (message() if callable(message) else message).strip()[:MAX_SMS_LENGTH]
        try:
            result = (gateway or self.gateway).send_sms(contact, text)
        except Exception as exc:
            logger.exception("notification_send_raised", schedule_id=schedule_id, event_type=event_type.value)
            result = GatewayResult(ok=False, provider="unknown", status=DeliveryStatus.FAILED.value, message=str(exc))

        item = self.store.insert_once(
            schedule_id=schedule_id,
            date_key=date_key,
            event_type=event_type.value,
            recipient_role=recipient_role.value,
            recipient_contact=contact,
            message=text,
            result=result,
        )
        if item is None:
            logger.warning(
                "notification_race_lost",
                schedule_id=schedule_id,
                date_key=date_key,
                event_type=event_type.value,
            )
            return SendOnceResult(
                sent=False,
                skipped=True,
                reason=SkipReason.ALREADY_SENT,
                result=result,
                item=self.store.get(schedule_id, date_key, event_type.value, contact),
            )

        logger.info(
            "notification_recorded",
            schedule_id=schedule_id,
            date_key=date_key,
            event_type=event_type.value,
            delivery_status=item.delivery_status,
            ok=result.ok,
        )
        return SendOnceResult(sent=result.ok, skipped=False, result=result, item=item)
