"""Client notification sinks.

The orchestrator only records the intent to notify; delivering email or SMS
is someone else's job.
"""

import logging
from typing import TYPE_CHECKING, Optional, Protocol, Tuple

from fulfillment.orchestrator.models import Notification, Order

if TYPE_CHECKING:
    from fulfillment.db.store import RecordStore

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget client notification."""

    async def notify(
        self,
        order_id: str,
        client_id: str,
        subject: str,
        body: str,
        agent_id: Optional[str] = None,
    ) -> None: ...


class RecordingNotifier:
    """Stores each notification as an outbound interaction record."""

    def __init__(self, store: "RecordStore"):
        self.store = store

    async def notify(
        self,
        order_id: str,
        client_id: str,
        subject: str,
        body: str,
        agent_id: Optional[str] = None,
    ) -> None:
        await self.store.record_notification(
            Notification(
                order_id=order_id,
                client_id=client_id,
                agent_id=agent_id,
                subject=subject,
                body=body,
            )
        )


class LoggingNotifier:
    """Logs notifications instead of storing them."""

    async def notify(
        self,
        order_id: str,
        client_id: str,
        subject: str,
        body: str,
        agent_id: Optional[str] = None,
    ) -> None:
        logger.info(f"[Notify] {client_id} / {order_id}: {subject}")


def completion_message(order: Order) -> Tuple[str, str]:
    """Subject and body for a completed order."""
    service = order.category.value
    return (
        f"Your {service} is ready!",
        f"Great news! Your {service} order has been completed and is ready for review.",
    )


def failure_message(order: Order) -> Tuple[str, str]:
    """Subject and body for a failed order. Carries no internal error detail."""
    return (
        f"Issue with your {order.category.value} order",
        "We encountered an issue processing your order. "
        "Our team has been notified and will reach out shortly.",
    )
