"""Order fulfillment orchestrator.

Drives one order from PENDING to a terminal state:

1. Mark PROCESSING
2. Assign an agent (capacity-bounded)
3. Plan and persist tasks
4. Mark IN_PROGRESS and execute tasks in plan order
5. Assemble the delivery, release the agent, mark COMPLETED, notify

Any failure after step 1 releases the agent (once), marks the order FAILED
with the reason in its status history, and sends a generic failure notice.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Union

from fulfillment.orchestrator.delivery import DeliveryAssembler
from fulfillment.orchestrator.errors import (
    InvalidTransition,
    OrderNotFound,
    PlanningFailure,
)
from fulfillment.orchestrator.executor import RetryPolicy, TaskExecutor
from fulfillment.orchestrator.models import (
    Agent,
    Order,
    OrderCategory,
    OrderStatus,
    ProcessResult,
    Task,
)
from fulfillment.orchestrator.notifier import (
    Notifier,
    RecordingNotifier,
    completion_message,
    failure_message,
)
from fulfillment.orchestrator.planner import TaskPlanner
from fulfillment.orchestrator.registry import AgentRegistry
from fulfillment.orchestrator.state_machine import OrderStateMachine

if TYPE_CHECKING:
    from fulfillment.core.completion import CompletionProvider
    from fulfillment.db.store import RecordStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Processes orders end to end."""

    def __init__(
        self,
        store: "RecordStore",
        provider: "CompletionProvider",
        notifier: Optional[Notifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[TaskExecutor] = None,
    ):
        """Initialize orchestrator.

        Args:
            store: Record store shared by all components
            provider: Completion provider used by the task executor
            notifier: Notification sink (default: record in the store)
            retry_policy: Task retry settings
            executor: Pre-built executor (overrides provider/retry_policy)
        """
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.state_machine = OrderStateMachine(store)
        self.registry = AgentRegistry(store)
        self.planner = TaskPlanner()
        self.executor = executor or TaskExecutor(store, provider, self.retry_policy)
        self.assembler = DeliveryAssembler()
        self.notifier = notifier or RecordingNotifier(store)
        self._background: Set[asyncio.Task] = set()

    async def submit_order(
        self,
        client_id: str,
        category: Union[OrderCategory, str],
        requirements: Dict[str, Any],
        priority: int = 5,
    ) -> Order:
        """Create a PENDING order.

        Raises:
            ValueError: If the category is unknown or requirements are missing
        """
        if not client_id:
            raise ValueError("client_id is required")
        if not requirements:
            raise ValueError("requirements are required")

        order = Order(
            client_id=client_id,
            category=OrderCategory(category),
            requirements=requirements,
            priority=priority,
        )
        await self.store.create_order(order)
        logger.info(f"[Orchestrator] Order {order.id} ({order.order_number}) submitted")
        return order

    async def process_order(self, order_id: str) -> ProcessResult:
        """Process an order to a terminal status.

        Returns:
            ProcessResult with the final status

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: If a status change breaks the state graph
        """
        order = await self.store.find_order(order_id)
        if order is None:
            logger.error(f"[Orchestrator] Order {order_id} not found")
            raise OrderNotFound(order_id)

        await self.state_machine.transition(
            order, OrderStatus.PROCESSING, "Order received and being processed"
        )

        held: Optional[Agent] = None
        tasks: List[Task] = []
        try:
            held = await self.registry.assign(order)
            agent = held

            specs = self.planner.plan(order.category, order.requirements)
            if not specs:
                raise PlanningFailure(f"No task template for category {order.category.value}")
            tasks = await self.store.create_tasks(
                self.planner.build_tasks(order, agent, specs, self.retry_policy.max_retries)
            )

            await self.state_machine.transition(
                order, OrderStatus.IN_PROGRESS, "AI agent is working on your order"
            )

            for task in tasks:
                await self.executor.execute(task, agent, order)

            delivery = self.assembler.build(order, tasks)
            delivery = await self.store.create_delivery(delivery)

            held = None
            await self.registry.release(agent)

            await self.state_machine.transition(
                order, OrderStatus.COMPLETED, "Order completed successfully"
            )
        except (InvalidTransition, asyncio.CancelledError):
            if held is not None:
                await self.registry.release(held)
            raise
        except Exception as e:
            logger.exception(f"[Orchestrator] Error processing order {order_id}")
            return await self._fail(order, held, e, tasks)

        await self._notify(order, *completion_message(order))
        logger.info(f"[Orchestrator] Order {order_id} completed")
        return ProcessResult(
            order_id=order.id,
            status=order.status,
            agent_id=agent.id,
            delivery=delivery,
            tasks=tasks,
        )

    async def _fail(
        self,
        order: Order,
        held: Optional[Agent],
        error: Exception,
        tasks: List[Task],
    ) -> ProcessResult:
        if held is not None:
            try:
                await self.registry.release(held)
            except Exception:
                logger.exception(f"[Orchestrator] Could not release agent {held.id}")

        message = str(error) or error.__class__.__name__
        await self.state_machine.transition(
            order, OrderStatus.FAILED, f"Order failed: {message}"
        )
        await self._notify(order, *failure_message(order))
        return ProcessResult(
            order_id=order.id,
            status=order.status,
            agent_id=order.agent_id,
            error=message,
            tasks=tasks,
        )

    async def _notify(self, order: Order, subject: str, body: str) -> None:
        try:
            await self.notifier.notify(
                order.id, order.client_id, subject, body, agent_id=order.agent_id
            )
        except Exception:
            logger.exception(f"[Orchestrator] Notification for order {order.id} failed")

    def process_in_background(self, order_id: str) -> "asyncio.Task":
        """Schedule ``process_order`` without awaiting it.

        Errors are logged, not raised.
        """
        task = asyncio.get_running_loop().create_task(self._process_logged(order_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _process_logged(self, order_id: str) -> Optional[ProcessResult]:
        try:
            return await self.process_order(order_id)
        except Exception:
            logger.exception(f"[Orchestrator] Failed to process order {order_id}")
            return None

    async def get_order_details(self, order_id: str) -> Dict[str, Any]:
        """Get an order with its tasks, deliveries, notifications and history.

        History is newest first.

        Raises:
            OrderNotFound: If the order does not exist
        """
        order = await self.store.find_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        tasks = await self.store.list_tasks(order_id)
        deliveries = await self.store.list_deliveries(order_id)
        history = await self.store.list_status_history(order_id)
        notifications = await self.store.list_notifications(order_id)
        agent = await self.store.find_agent(order.agent_id) if order.agent_id else None

        return {
            "order": order.to_dict(),
            "agent": agent.to_dict() if agent else None,
            "tasks": [t.to_dict() for t in tasks],
            "deliveries": [d.to_dict() for d in deliveries],
            "notifications": [n.to_dict() for n in notifications],
            "status_history": [h.to_dict() for h in reversed(history)],
        }
