"""Order state machine - lifecycle status and status history."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Sequence

from fulfillment.orchestrator.errors import InvalidTransition
from fulfillment.orchestrator.models import (
    SYSTEM_ACTOR,
    Order,
    OrderStatus,
    StatusHistoryEntry,
)

if TYPE_CHECKING:
    from fulfillment.db.store import RecordStore

logger = logging.getLogger(__name__)


class OrderStateMachine:
    """Validates and records order status transitions."""

    # Order valid transitions (forward only, FAILED reachable once work has started)
    ORDER_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
        OrderStatus.PENDING: [OrderStatus.PROCESSING],
        OrderStatus.PROCESSING: [OrderStatus.IN_PROGRESS, OrderStatus.FAILED],
        OrderStatus.IN_PROGRESS: [OrderStatus.COMPLETED, OrderStatus.FAILED],
        OrderStatus.COMPLETED: [],
        OrderStatus.FAILED: [],
    }

    def __init__(self, store: "RecordStore"):
        self.store = store

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        """Check if no transition leaves this status."""
        return not cls.ORDER_TRANSITIONS.get(status)

    def can_transition(self, order: Order, new_status: OrderStatus) -> bool:
        """Check if Order can transition to new status."""
        return new_status in self.ORDER_TRANSITIONS.get(order.status, [])

    async def transition(
        self,
        order: Order,
        new_status: OrderStatus,
        reason: str,
    ) -> StatusHistoryEntry:
        """Transition Order to new status and append its history entry.

        The status write and the history append are persisted together by
        ``RecordStore.transition_order``. ``order`` is updated in place once
        the store accepts the change.

        Args:
            order: Order to transition
            new_status: Target status
            reason: Human-readable reason kept in the history entry

        Returns:
            The appended history entry

        Raises:
            InvalidTransition: If the edge is not in the state graph, or the
                stored status no longer matches ``order.status``
        """
        if not self.can_transition(order, new_status):
            logger.error(
                f"[StateMachine] Rejected {order.id}: {order.status.value} -> {new_status.value}"
            )
            raise InvalidTransition(
                f"Cannot transition Order {order.id} from {order.status.value} to {new_status.value}"
            )

        entry = StatusHistoryEntry(
            order_id=order.id,
            from_status=order.status,
            to_status=new_status,
            reason=reason,
            actor=SYSTEM_ACTOR,
            timestamp=datetime.now(),
        )
        await self.store.transition_order(order.id, order.status, entry)

        order.status = new_status
        order.updated_at = entry.timestamp
        logger.info(
            f"[StateMachine] {order.id}: {entry.from_status.value} -> {new_status.value} ({reason})"
        )
        return entry

    def validate_history(self, entries: Sequence[StatusHistoryEntry]) -> bool:
        """Check that history entries form one valid path starting at PENDING."""
        current = OrderStatus.PENDING
        for entry in entries:
            if entry.from_status != current:
                return False
            if entry.to_status not in self.ORDER_TRANSITIONS.get(current, []):
                return False
            current = entry.to_status
        return True
