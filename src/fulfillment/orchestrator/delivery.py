"""Delivery assembler - bundle task outputs into the client deliverable."""

from datetime import datetime
from typing import Dict, List, Union

from fulfillment.orchestrator.models import (
    Delivery,
    DeliveryStatus,
    DeliveryType,
    Order,
    OrderCategory,
    Task,
)


DELIVERY_TYPES: Dict[OrderCategory, DeliveryType] = {
    OrderCategory.WEBSITE: DeliveryType.WEBSITE_URL,
    OrderCategory.CHATBOT: DeliveryType.CHATBOT_EMBED,
    OrderCategory.PHONE_ASSISTANT: DeliveryType.PHONE_NUMBER,
    OrderCategory.TAX_PREP: DeliveryType.DOCUMENT,
}


def delivery_type_for(category: Union[OrderCategory, str]) -> DeliveryType:
    """Get the delivery type for a category (DOCUMENT when unmapped)."""
    try:
        return DELIVERY_TYPES.get(OrderCategory(category), DeliveryType.DOCUMENT)
    except ValueError:
        return DeliveryType.DOCUMENT


class DeliveryAssembler:
    """Builds the Delivery record for a finished order."""

    def build(self, order: Order, tasks: List[Task]) -> Delivery:
        """Assemble a delivery from the order's tasks.

        Args:
            order: The order being delivered
            tasks: All tasks of the order, each in a terminal state

        Returns:
            Delivery marked DELIVERED

        Raises:
            ValueError: If a task has not finished
        """
        unfinished = [t.id for t in tasks if not t.is_terminal]
        if unfinished:
            raise ValueError(f"Cannot deliver order {order.id}: tasks not finished: {unfinished}")

        service = order.category.value
        ordered = sorted(tasks, key=lambda t: t.sequence)
        content = {
            "summary": f"Your {service} has been completed!",
            "tasks": [
                {
                    "type": t.type.value,
                    "description": t.description,
                    "result": t.output,
                }
                for t in ordered
            ],
        }

        return Delivery(
            order_id=order.id,
            type=delivery_type_for(order.category),
            title=f"{service} Delivery",
            description=f"Your {service} is ready!",
            content=content,
            status=DeliveryStatus.DELIVERED,
            delivered_at=datetime.now(),
        )
