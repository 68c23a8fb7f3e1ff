"""Notification fan-out.

Services stage ``DomainEvent``s while they mutate state; the unit of work
publishes them only after its transaction commits, one delivery per event in
staging order. A rolled-back operation emits nothing. Delivery failures are
logged and never retried, blocked on, or allowed to undo the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from service_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from service_clearinghouse.domain.enums import NotificationType
    from service_clearinghouse.infrastructure.notification_channels import NotificationChannel

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    """``{recipient, entity, id, <new status fields>}`` plus optional user-facing text."""

    recipient_id: str
    entity: str
    entity_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    notification_type: NotificationType | None = None
    title: str | None = None
    message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "recipient": self.recipient_id,
            "entity": self.entity,
            "id": self.entity_id,
            **{k: str(v) if v is not None else None for k, v in self.fields.items()},
        }
        if self.notification_type is not None:
            payload["type"] = self.notification_type.value
            payload["title"] = self.title
            payload["message"] = self.message
        return payload


class NotificationFanout:
    """Collects events for one unit of work and publishes them after commit."""

    def __init__(self, channel: NotificationChannel) -> None:
        self._channel = channel
        self._staged: list[DomainEvent] = []

    @property
    def staged(self) -> tuple[DomainEvent, ...]:
        return tuple(self._staged)

    def status_changed(
        self,
        entity: str,
        entity_id: object,
        recipients: Iterable[str | None],
        **fields: Any,
    ) -> None:
        """Stage a status update for each distinct, known recipient."""
        seen: set[str] = set()
        for recipient_id in recipients:
            if recipient_id is None or recipient_id in seen:
                continue
            seen.add(recipient_id)
            self._staged.append(
                DomainEvent(
                    recipient_id=recipient_id,
                    entity=entity,
                    entity_id=str(entity_id),
                    fields=fields,
                )
            )

    def notify(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        *,
        entity: str,
        entity_id: object,
        **fields: Any,
    ) -> None:
        """Stage a user-facing notification."""
        self._staged.append(
            DomainEvent(
                recipient_id=recipient_id,
                entity=entity,
                entity_id=str(entity_id),
                fields=fields,
                notification_type=notification_type,
                title=title,
                message=message,
            )
        )

    def discard(self) -> None:
        self._staged.clear()

    async def publish(self) -> int:
        """Deliver every staged event once. Returns how many were delivered."""
        events, self._staged = self._staged, []
        delivered = 0
        for event in events:
            try:
                await self._channel.deliver(event.recipient_id, event.to_payload())
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "notification.delivery_failed",
                    channel=self._channel.name,
                    recipient=event.recipient_id,
                    entity=event.entity,
                    entity_id=event.entity_id,
                    error=str(exc),
                )
        return delivered
