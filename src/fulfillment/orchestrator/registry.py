"""Agent registry - select, assign and release capacity-bounded agents."""

import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Union

from fulfillment.orchestrator.errors import NoAgentAvailable
from fulfillment.orchestrator.models import (
    Agent,
    AgentStatus,
    AgentType,
    Order,
    OrderCategory,
)

if TYPE_CHECKING:
    from fulfillment.db.store import RecordStore

logger = logging.getLogger(__name__)


# Worker type required by each order category
REQUIRED_AGENT_TYPES: Dict[OrderCategory, AgentType] = {
    OrderCategory.WEBSITE: AgentType.WEBSITE_BUILDER,
    OrderCategory.CHATBOT: AgentType.CHATBOT_CREATOR,
    OrderCategory.PHONE_ASSISTANT: AgentType.PHONE_AI,
    OrderCategory.TAX_PREP: AgentType.TAX_SPECIALIST,
    OrderCategory.LEGAL: AgentType.LEGAL_AI,
    OrderCategory.ACCOUNTING: AgentType.GENERAL,
}

_missing = set(OrderCategory) - set(REQUIRED_AGENT_TYPES)
if _missing:
    raise RuntimeError(f"No agent type mapped for categories: {sorted(c.value for c in _missing)}")


def required_agent_type(category: Union[OrderCategory, str]) -> AgentType:
    """Get the agent type that serves a category (GENERAL when unmapped)."""
    try:
        return REQUIRED_AGENT_TYPES[OrderCategory(category)]
    except (KeyError, ValueError):
        return AgentType.GENERAL


def select_agent(
    agents: List[Agent],
    agent_type: AgentType,
    client_id: Optional[str] = None,
) -> Optional[Agent]:
    """Pick the agent for a new assignment.

    1. An agent dedicated to ``client_id`` with spare capacity
    2. Otherwise the least-loaded agent with spare capacity, ties by id

    Args:
        agents: Candidate agents
        agent_type: Required agent type
        client_id: Client placing the order

    Returns:
        Selected agent or None
    """
    eligible = [a for a in agents if a.type == agent_type and a.has_capacity]
    if client_id:
        dedicated = sorted((a for a in eligible if a.client_id == client_id), key=lambda a: a.id)
        if dedicated:
            return dedicated[0]
    if not eligible:
        return None
    return min(eligible, key=lambda a: (a.current_load, a.id))


class AgentRegistry:
    """Tracks agent load and hands out agents to orders."""

    def __init__(self, store: "RecordStore"):
        self.store = store

    async def assign(self, order: Order) -> Agent:
        """Assign an agent to the order and take one unit of its capacity.

        Selection and the load increment run inside one ``lock_agents``
        block, so concurrent assignments cannot push an agent past max_load.

        Raises:
            NoAgentAvailable: If no active agent of the required type has capacity
        """
        agent_type = required_agent_type(order.category)

        async with self.store.lock_agents(agent_type) as session:
            agent = select_agent(session.agents, agent_type, order.client_id)
            if agent is None:
                logger.warning(f"[Registry] No {agent_type.value} agent free for order {order.id}")
                raise NoAgentAvailable(agent_type.value)

            agent.current_load += 1
            if agent.current_load >= agent.max_load:
                agent.status = AgentStatus.BUSY
            await session.save(agent)

        try:
            await self.store.update_order(order.id, agent_id=agent.id)
        except Exception:
            # The caller never sees this agent, so it cannot release it
            await self.release(agent)
            raise
        order.agent_id = agent.id
        logger.info(
            f"[Registry] Assigned {agent.id} to order {order.id} "
            f"(load {agent.current_load}/{agent.max_load})"
        )
        return agent

    async def release(self, agent: Agent) -> Agent:
        """Give back one unit of the agent's capacity.

        Returns:
            The agent as stored after the release
        """
        async with self.store.lock_agents(agent.type) as session:
            current = next((a for a in session.agents if a.id == agent.id), None)
            if current is None:
                raise KeyError(f"Agent {agent.id} not found")

            if current.current_load == 0:
                logger.warning(f"[Registry] Release of idle agent {agent.id}")
            current.current_load = max(0, current.current_load - 1)
            if current.current_load < current.max_load:
                current.status = AgentStatus.AVAILABLE
            await session.save(current)

        agent.current_load = current.current_load
        agent.status = current.status
        logger.info(
            f"[Registry] Released {agent.id} (load {current.current_load}/{current.max_load})"
        )
        return current
