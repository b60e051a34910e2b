"""Record store for orders, agents, tasks, deliveries and status history.

Two implementations share the ``RecordStore`` protocol:

1. ``InMemoryStore`` - process-local, guarded by asyncio locks (tests, local runs)
2. ``PostgresStore`` - asyncpg-backed, row locks and transactions

Every call is atomic at the single-record level. The two multi-record
operations that must not be observed half-done run as one unit:

- ``transition_order``: status write + history append
- ``lock_agents``: agent selection + load update
"""

import asyncio
import copy
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

from fulfillment.db.pool import Database
from fulfillment.orchestrator.errors import InvalidTransition
from fulfillment.orchestrator.models import (
    Agent,
    AgentStatus,
    AgentType,
    Delivery,
    DeliveryStatus,
    DeliveryType,
    Notification,
    Order,
    OrderCategory,
    OrderStatus,
    StatusHistoryEntry,
    Task,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger(__name__)


class AgentSession:
    """Agents of one type, locked for the duration of a ``lock_agents`` block."""

    def __init__(self, agents: List[Agent], saver: Callable[[Agent], Awaitable[None]]):
        self.agents = agents
        self._saver = saver

    async def save(self, agent: Agent) -> None:
        """Persist load/status changes made to one of the locked agents."""
        await self._saver(agent)


class RecordStore(Protocol):
    """Persistence boundary of the orchestrator."""

    async def create_order(self, order: Order) -> Order: ...

    async def find_order(self, order_id: str) -> Optional[Order]: ...

    async def update_order(self, order_id: str, **patch: Any) -> None: ...

    async def transition_order(
        self, order_id: str, from_status: OrderStatus, entry: StatusHistoryEntry
    ) -> None: ...

    async def list_status_history(self, order_id: str) -> List[StatusHistoryEntry]: ...

    async def create_tasks(self, tasks: List[Task]) -> List[Task]: ...

    async def update_task(self, task_id: str, **patch: Any) -> None: ...

    async def list_tasks(self, order_id: str) -> List[Task]: ...

    async def create_delivery(self, delivery: Delivery) -> Delivery: ...

    async def list_deliveries(self, order_id: str) -> List[Delivery]: ...

    async def create_agent(self, agent: Agent) -> Agent: ...

    async def find_agent(self, agent_id: str) -> Optional[Agent]: ...

    def lock_agents(self, agent_type: AgentType) -> AsyncContextManager[AgentSession]: ...

    async def find_service_template(self, category: OrderCategory) -> Optional[str]: ...

    async def upsert_service_template(self, category: OrderCategory, instructions: str) -> None: ...

    async def record_notification(self, notification: Notification) -> None: ...

    async def list_notifications(self, order_id: str) -> List[Notification]: ...


ORDER_COLUMNS = {"status", "agent_id", "priority", "requirements", "updated_at"}
TASK_COLUMNS = {
    "status", "output", "error", "retry_count", "duration",
    "started_at", "completed_at", "agent_id",
}


def _check_patch(patch: Dict[str, Any], allowed: set, record: str) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Cannot update {record} fields: {sorted(unknown)}")


# ==================== In-memory ====================


class InMemoryStore:
    """Process-local store. Records are copied on the way in and out."""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._history: Dict[str, List[StatusHistoryEntry]] = {}
        self._tasks: Dict[str, Task] = {}
        self._deliveries: Dict[str, Delivery] = {}
        self._agents: Dict[str, Agent] = {}
        self._templates: Dict[OrderCategory, str] = {}
        self._notifications: List[Notification] = []
        self._order_lock = asyncio.Lock()
        self._agent_locks: Dict[AgentType, asyncio.Lock] = {}

    # ---------- orders ----------

    async def create_order(self, order: Order) -> Order:
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} already exists")
        self._orders[order.id] = copy.deepcopy(order)
        self._history[order.id] = []
        return copy.deepcopy(order)

    async def find_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def update_order(self, order_id: str, **patch: Any) -> None:
        _check_patch(patch, ORDER_COLUMNS, "order")
        order = self._require_order(order_id)
        for key, value in patch.items():
            setattr(order, key, copy.deepcopy(value))
        if "updated_at" not in patch:
            order.updated_at = datetime.now()

    async def transition_order(
        self, order_id: str, from_status: OrderStatus, entry: StatusHistoryEntry
    ) -> None:
        async with self._order_lock:
            order = self._require_order(order_id)
            if order.status != from_status:
                raise InvalidTransition(
                    f"Order {order_id} is {order.status.value}, expected {from_status.value}"
                )
            order.status = entry.to_status
            order.updated_at = entry.timestamp
            self._history[order_id].append(entry)

    async def list_status_history(self, order_id: str) -> List[StatusHistoryEntry]:
        return list(self._history.get(order_id, []))

    def _require_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise KeyError(f"Order {order_id} not found")
        return order

    # ---------- tasks ----------

    async def create_tasks(self, tasks: List[Task]) -> List[Task]:
        for task in tasks:
            self._tasks[task.id] = copy.deepcopy(task)
        return [copy.deepcopy(t) for t in tasks]

    async def update_task(self, task_id: str, **patch: Any) -> None:
        _check_patch(patch, TASK_COLUMNS, "task")
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found")
        for key, value in patch.items():
            setattr(task, key, value)

    async def list_tasks(self, order_id: str) -> List[Task]:
        tasks = [t for t in self._tasks.values() if t.order_id == order_id]
        tasks.sort(key=lambda t: t.sequence)
        return [copy.deepcopy(t) for t in tasks]

    # ---------- deliveries ----------

    async def create_delivery(self, delivery: Delivery) -> Delivery:
        for existing in self._deliveries.values():
            if existing.order_id == delivery.order_id and existing.status == DeliveryStatus.DELIVERED:
                existing.status = DeliveryStatus.SUPERSEDED
        self._deliveries[delivery.id] = copy.deepcopy(delivery)
        return copy.deepcopy(delivery)

    async def list_deliveries(self, order_id: str) -> List[Delivery]:
        return [copy.deepcopy(d) for d in self._deliveries.values() if d.order_id == order_id]

    # ---------- agents ----------

    async def create_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = copy.deepcopy(agent)
        return copy.deepcopy(agent)

    async def find_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return copy.deepcopy(agent) if agent else None

    @asynccontextmanager
    async def lock_agents(self, agent_type: AgentType) -> AsyncIterator[AgentSession]:
        lock = self._agent_locks.setdefault(agent_type, asyncio.Lock())
        async with lock:
            agents = [
                copy.deepcopy(a) for a in sorted(self._agents.values(), key=lambda a: a.id)
                if a.type == agent_type
            ]
            yield AgentSession(agents, self._save_agent)

    async def _save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = copy.deepcopy(agent)

    # ---------- templates & notifications ----------

    async def find_service_template(self, category: OrderCategory) -> Optional[str]:
        return self._templates.get(category)

    async def upsert_service_template(self, category: OrderCategory, instructions: str) -> None:
        self._templates[category] = instructions

    async def record_notification(self, notification: Notification) -> None:
        self._notifications.append(replace(notification))

    async def list_notifications(self, order_id: str) -> List[Notification]:
        return [n for n in self._notifications if n.order_id == order_id]


# ==================== PostgreSQL ====================


async def ensure_tables(db: Database) -> None:
    """Create orchestrator tables if they do not exist."""
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            order_number TEXT UNIQUE NOT NULL,
            client_id TEXT NOT NULL,
            category TEXT NOT NULL,
            requirements JSONB DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'PENDING',
            agent_id TEXT,
            priority INT DEFAULT 5,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_status_history (
            id BIGSERIAL PRIMARY KEY,
            order_id TEXT NOT NULL REFERENCES orders(id),
            from_status TEXT,
            to_status TEXT NOT NULL,
            reason TEXT,
            actor TEXT NOT NULL DEFAULT 'SYSTEM',
            timestamp TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_status_history_order ON order_status_history(order_id)"
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT DEFAULT '',
            type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'AVAILABLE',
            current_load INT NOT NULL DEFAULT 0,
            max_load INT NOT NULL DEFAULT 1,
            model TEXT DEFAULT '',
            system_prompt TEXT DEFAULT '',
            client_id TEXT,
            is_active BOOLEAN DEFAULT TRUE,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT agents_load_bounds CHECK (current_load >= 0 AND current_load <= max_load)
        )
        """
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_agents_type ON agents(type)")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_tasks (
            id TEXT PRIMARY KEY,
            order_id TEXT NOT NULL REFERENCES orders(id),
            agent_id TEXT,
            type TEXT NOT NULL,
            description TEXT DEFAULT '',
            input JSONB DEFAULT '{}',
            sequence INT NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'PENDING',
            output TEXT,
            error TEXT,
            retry_count INT DEFAULT 0,
            max_retries INT DEFAULT 3,
            duration INT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ
        )
        """
    )
    await db.execute("CREATE INDEX IF NOT EXISTS idx_order_tasks_order ON order_tasks(order_id)")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS deliveries (
            id TEXT PRIMARY KEY,
            order_id TEXT NOT NULL REFERENCES orders(id),
            type TEXT NOT NULL,
            title TEXT DEFAULT '',
            description TEXT DEFAULT '',
            content JSONB DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'DELIVERED',
            delivered_at TIMESTAMPTZ
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS service_templates (
            category TEXT PRIMARY KEY,
            instructions TEXT NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_notifications (
            id TEXT PRIMARY KEY,
            order_id TEXT NOT NULL,
            client_id TEXT NOT NULL,
            agent_id TEXT,
            channel TEXT NOT NULL,
            direction TEXT NOT NULL,
            subject TEXT,
            body TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )
    logger.info("[Store] Ensured orchestrator tables exist")


def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _row_to_order(row) -> Order:
    """Convert DB row to Order object."""
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        client_id=row["client_id"],
        category=OrderCategory(row["category"]),
        requirements=_json_value(row["requirements"], {}),
        status=OrderStatus(row["status"]),
        agent_id=row["agent_id"],
        priority=row["priority"] if row["priority"] is not None else 5,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_task(row) -> Task:
    """Convert DB row to Task object."""
    return Task(
        id=row["id"],
        order_id=row["order_id"],
        agent_id=row["agent_id"] or "",
        type=TaskType(row["type"]),
        description=row["description"] or "",
        input=_json_value(row["input"], {}),
        sequence=row["sequence"],
        status=TaskStatus(row["status"]),
        output=row["output"],
        error=row["error"],
        retry_count=row["retry_count"] or 0,
        max_retries=row["max_retries"] if row["max_retries"] is not None else 3,
        duration=row["duration"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _row_to_agent(row) -> Agent:
    """Convert DB row to Agent object."""
    return Agent(
        id=row["id"],
        name=row["name"] or "",
        type=AgentType(row["type"]),
        status=AgentStatus(row["status"]),
        current_load=row["current_load"],
        max_load=row["max_load"],
        model=row["model"] or "",
        system_prompt=row["system_prompt"] or "",
        client_id=row["client_id"],
        is_active=row["is_active"],
    )


def _row_to_delivery(row) -> Delivery:
    """Convert DB row to Delivery object."""
    return Delivery(
        id=row["id"],
        order_id=row["order_id"],
        type=DeliveryType(row["type"]),
        title=row["title"] or "",
        description=row["description"] or "",
        content=_json_value(row["content"], {}),
        status=DeliveryStatus(row["status"]),
        delivered_at=row["delivered_at"],
    )


def _row_to_history(row) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        order_id=row["order_id"],
        from_status=OrderStatus(row["from_status"]) if row["from_status"] else None,
        to_status=OrderStatus(row["to_status"]),
        reason=row["reason"] or "",
        actor=row["actor"],
        timestamp=row["timestamp"],
    )


class PostgresStore:
    """RecordStore on PostgreSQL via the shared asyncpg pool."""

    def __init__(self, db: Database):
        self.db = db

    # ---------- orders ----------

    async def create_order(self, order: Order) -> Order:
        await self.db.execute(
            """
            INSERT INTO orders (id, order_number, client_id, category, requirements, status, agent_id, priority, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            order.id, order.order_number, order.client_id, order.category.value,
            json.dumps(order.requirements), order.status.value, order.agent_id,
            order.priority, order.created_at, order.updated_at,
        )
        return order

    async def find_order(self, order_id: str) -> Optional[Order]:
        row = await self.db.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def update_order(self, order_id: str, **patch: Any) -> None:
        _check_patch(patch, ORDER_COLUMNS, "order")
        patch.setdefault("updated_at", datetime.now())
        await self._update("orders", order_id, patch)

    async def transition_order(
        self, order_id: str, from_status: OrderStatus, entry: StatusHistoryEntry
    ) -> None:
        async with self.db.transaction() as conn:
            result = await conn.execute(
                "UPDATE orders SET status = $1, updated_at = $2 WHERE id = $3 AND status = $4",
                entry.to_status.value, entry.timestamp, order_id, from_status.value,
            )
            if result == "UPDATE 0":
                raise InvalidTransition(
                    f"Order {order_id} is no longer {from_status.value}"
                )
            await conn.execute(
                """
                INSERT INTO order_status_history (order_id, from_status, to_status, reason, actor, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                order_id,
                entry.from_status.value if entry.from_status else None,
                entry.to_status.value,
                entry.reason,
                entry.actor,
                entry.timestamp,
            )

    async def list_status_history(self, order_id: str) -> List[StatusHistoryEntry]:
        rows = await self.db.fetch(
            "SELECT * FROM order_status_history WHERE order_id = $1 ORDER BY id ASC",
            order_id,
        )
        return [_row_to_history(r) for r in rows]

    # ---------- tasks ----------

    async def create_tasks(self, tasks: List[Task]) -> List[Task]:
        async with self.db.transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO order_tasks (id, order_id, agent_id, type, description, input, sequence, status, retry_count, max_retries, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                [
                    (
                        t.id, t.order_id, t.agent_id, t.type.value, t.description,
                        json.dumps(t.input), t.sequence, t.status.value,
                        t.retry_count, t.max_retries, t.created_at,
                    )
                    for t in tasks
                ],
            )
        return tasks

    async def update_task(self, task_id: str, **patch: Any) -> None:
        _check_patch(patch, TASK_COLUMNS, "task")
        await self._update("order_tasks", task_id, patch)

    async def list_tasks(self, order_id: str) -> List[Task]:
        rows = await self.db.fetch(
            "SELECT * FROM order_tasks WHERE order_id = $1 ORDER BY sequence ASC",
            order_id,
        )
        return [_row_to_task(r) for r in rows]

    async def _update(self, table: str, record_id: str, patch: Dict[str, Any]) -> None:
        # Column names come from the ORDER_COLUMNS / TASK_COLUMNS whitelists
        columns = list(patch)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, 1))
        values = [_column_value(patch[col]) for col in columns]
        await self.db.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ${len(columns) + 1}",
            *values, record_id,
        )

    # ---------- deliveries ----------

    async def create_delivery(self, delivery: Delivery) -> Delivery:
        async with self.db.transaction() as conn:
            await conn.execute(
                "UPDATE deliveries SET status = $1 WHERE order_id = $2 AND status = $3",
                DeliveryStatus.SUPERSEDED.value, delivery.order_id, DeliveryStatus.DELIVERED.value,
            )
            await conn.execute(
                """
                INSERT INTO deliveries (id, order_id, type, title, description, content, status, delivered_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                delivery.id, delivery.order_id, delivery.type.value, delivery.title,
                delivery.description, json.dumps(delivery.content), delivery.status.value,
                delivery.delivered_at,
            )
        return delivery

    async def list_deliveries(self, order_id: str) -> List[Delivery]:
        rows = await self.db.fetch("SELECT * FROM deliveries WHERE order_id = $1", order_id)
        return [_row_to_delivery(r) for r in rows]

    # ---------- agents ----------

    async def create_agent(self, agent: Agent) -> Agent:
        await self.db.execute(
            """
            INSERT INTO agents (id, name, type, status, current_load, max_load, model, system_prompt, client_id, is_active)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            agent.id, agent.name, agent.type.value, agent.status.value, agent.current_load,
            agent.max_load, agent.model, agent.system_prompt, agent.client_id, agent.is_active,
        )
        return agent

    async def find_agent(self, agent_id: str) -> Optional[Agent]:
        row = await self.db.fetchrow("SELECT * FROM agents WHERE id = $1", agent_id)
        return _row_to_agent(row) if row else None

    @asynccontextmanager
    async def lock_agents(self, agent_type: AgentType) -> AsyncIterator[AgentSession]:
        async with self.db.transaction() as conn:
            rows = await conn.fetch(
                "SELECT * FROM agents WHERE type = $1 ORDER BY id ASC FOR UPDATE",
                agent_type.value,
            )

            async def save(agent: Agent) -> None:
                await conn.execute(
                    "UPDATE agents SET current_load = $1, status = $2, updated_at = NOW() WHERE id = $3",
                    agent.current_load, agent.status.value, agent.id,
                )

            yield AgentSession([_row_to_agent(r) for r in rows], save)

    # ---------- templates & notifications ----------

    async def find_service_template(self, category: OrderCategory) -> Optional[str]:
        row = await self.db.fetchrow(
            "SELECT instructions FROM service_templates WHERE category = $1",
            category.value,
        )
        return row["instructions"] if row else None

    async def upsert_service_template(self, category: OrderCategory, instructions: str) -> None:
        await self.db.execute(
            """
            INSERT INTO service_templates (category, instructions, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (category) DO UPDATE SET instructions = $2, updated_at = NOW()
            """,
            category.value, instructions,
        )

    async def record_notification(self, notification: Notification) -> None:
        await self.db.execute(
            """
            INSERT INTO order_notifications (id, order_id, client_id, agent_id, channel, direction, subject, body, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            notification.id, notification.order_id, notification.client_id,
            notification.agent_id, notification.channel, notification.direction,
            notification.subject, notification.body, notification.created_at,
        )

    async def list_notifications(self, order_id: str) -> List[Notification]:
        rows = await self.db.fetch(
            "SELECT * FROM order_notifications WHERE order_id = $1 ORDER BY created_at ASC",
            order_id,
        )
        return [
            Notification(
                id=r["id"],
                order_id=r["order_id"],
                client_id=r["client_id"],
                agent_id=r["agent_id"],
                channel=r["channel"],
                direction=r["direction"],
                subject=r["subject"] or "",
                body=r["body"] or "",
                created_at=r["created_at"],
            )
            for r in rows
        ]
