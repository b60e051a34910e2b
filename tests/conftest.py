"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

from fulfillment.db.store import InMemoryStore
from fulfillment.orchestrator.errors import CompletionError
from fulfillment.orchestrator.executor import RetryPolicy
from fulfillment.orchestrator.models import (
    Agent,
    AgentType,
    Order,
    OrderCategory,
)
from fulfillment.orchestrator.service import Orchestrator

# Set test environment
os.environ["OPENAI_API_KEY"] = "test-key"


class FakeProvider:
    """Scripted completion provider.

    Args:
        output: Text returned on success
        fail_times: Number of leading calls that raise CompletionError
        fail_when: Prompts containing this text always raise CompletionError
        gate: If set, every call waits on this event first
    """

    def __init__(
        self,
        output: str = "Task done",
        fail_times: int = 0,
        fail_when: Optional[str] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.output = output
        self.fail_times = fail_times
        self.fail_when = fail_when
        self.gate = gate
        self.calls: List[Tuple[str, str, str]] = []

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((model, system_prompt, user_prompt))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_when and self.fail_when in user_prompt:
            raise CompletionError("provider unavailable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise CompletionError("rate limited")
        return self.output


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory record store."""
    return InMemoryStore()


@pytest.fixture
def provider() -> FakeProvider:
    """Provider that always succeeds."""
    return FakeProvider()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without backoff waits."""
    return RetryPolicy(max_retries=3, backoff_base=0, jitter=0, timeout_seconds=5)


@pytest.fixture
def orchestrator(store, provider, fast_policy) -> Orchestrator:
    """Orchestrator over the in-memory store and fake provider."""
    return Orchestrator(store, provider, retry_policy=fast_policy)


@pytest.fixture
def make_agent(store):
    """Factory that registers an agent in the store."""

    async def _make_agent(
        agent_id: str = "agent-web-1",
        agent_type: AgentType = AgentType.WEBSITE_BUILDER,
        max_load: int = 1,
        **kwargs: Any,
    ) -> Agent:
        agent = Agent(
            id=agent_id,
            name=agent_id,
            type=agent_type,
            max_load=max_load,
            model=kwargs.pop("model", "gpt-4o-mini"),
            system_prompt=kwargs.pop("system_prompt", "You are a careful builder."),
            **kwargs,
        )
        return await store.create_agent(agent)

    return _make_agent


@pytest.fixture
def make_order(store):
    """Factory that creates a PENDING order in the store."""

    async def _make_order(
        category: OrderCategory = OrderCategory.WEBSITE,
        client_id: str = "client-1",
        requirements: Optional[Dict[str, Any]] = None,
    ) -> Order:
        order = Order(
            client_id=client_id,
            category=category,
            requirements=requirements or {"business": "Bakery", "pages": ["home", "menu"]},
        )
        return await store.create_order(order)

    return _make_order
