"""Orchestrator module - State machine, Registry, Planner, Executor for order fulfillment."""

from fulfillment.orchestrator.models import (
    Agent,
    AgentType,
    Delivery,
    Order,
    OrderCategory,
    OrderStatus,
    ProcessResult,
    Task,
    TaskStatus,
)
from fulfillment.orchestrator.errors import (
    InvalidTransition,
    NoAgentAvailable,
    OrchestrationError,
    OrderNotFound,
    PlanningFailure,
    TaskExhausted,
)
from fulfillment.orchestrator.state_machine import OrderStateMachine
from fulfillment.orchestrator.registry import AgentRegistry
from fulfillment.orchestrator.planner import TaskPlanner
from fulfillment.orchestrator.executor import RetryPolicy, TaskExecutor
from fulfillment.orchestrator.service import Orchestrator

__all__ = [
    "Agent",
    "AgentType",
    "Delivery",
    "Order",
    "OrderCategory",
    "OrderStatus",
    "ProcessResult",
    "Task",
    "TaskStatus",
    "InvalidTransition",
    "NoAgentAvailable",
    "OrchestrationError",
    "OrderNotFound",
    "PlanningFailure",
    "TaskExhausted",
    "OrderStateMachine",
    "AgentRegistry",
    "TaskPlanner",
    "RetryPolicy",
    "TaskExecutor",
    "Orchestrator",
]
