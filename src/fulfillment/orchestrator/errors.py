"""Error taxonomy for order fulfillment."""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for orchestrator errors."""
    pass


class OrderNotFound(OrchestrationError):
    """Raised when an order id does not resolve to a record."""

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class NoAgentAvailable(OrchestrationError):
    """Raised when no active agent of the required type has spare capacity."""

    def __init__(self, agent_type: str):
        super().__init__(f"No available {agent_type} agent found")
        self.agent_type = agent_type


class PlanningFailure(OrchestrationError):
    """Raised when an order category has no task template."""
    pass


class CompletionError(OrchestrationError):
    """Transient failure of the completion provider (timeout, rate limit, 5xx)."""
    pass


# Name the executor retries on
TaskProviderError = CompletionError


class TaskExhausted(OrchestrationError):
    """Raised when a task failed on its last allowed attempt."""

    def __init__(self, task_id: str, attempts: int, error: Optional[str] = None):
        super().__init__(error or f"Task {task_id} failed after {attempts} attempts")
        self.task_id = task_id
        self.attempts = attempts
        self.error = error


class InvalidTransition(OrchestrationError):
    """Raised when an order status change violates the state graph."""
    pass
