"""Data models for the fulfillment orchestrator - Order, Agent, Task, Delivery."""

import copy
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


SYSTEM_ACTOR = "SYSTEM"


class OrderCategory(str, Enum):
    """Service type a client can order."""
    WEBSITE = "WEBSITE"
    CHATBOT = "CHATBOT"
    PHONE_ASSISTANT = "PHONE_ASSISTANT"
    TAX_PREP = "TAX_PREP"
    LEGAL = "LEGAL"
    ACCOUNTING = "ACCOUNTING"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AgentType(str, Enum):
    """Kind of work an agent is provisioned for."""
    WEBSITE_BUILDER = "WEBSITE_BUILDER"
    CHATBOT_CREATOR = "CHATBOT_CREATOR"
    PHONE_AI = "PHONE_AI"
    TAX_SPECIALIST = "TAX_SPECIALIST"
    LEGAL_AI = "LEGAL_AI"
    GENERAL = "GENERAL"


class AgentStatus(str, Enum):
    """Agent availability."""
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"


class TaskType(str, Enum):
    """Task type enum."""
    ANALYZE = "ANALYZE"
    DESIGN = "DESIGN"
    CODE = "CODE"
    DEPLOY = "DEPLOY"
    TEST = "TEST"
    REVIEW = "REVIEW"


class TaskStatus(str, Enum):
    """Task status enum."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DeliveryType(str, Enum):
    """Shape of the artifact handed to the client."""
    WEBSITE_URL = "WEBSITE_URL"
    CHATBOT_EMBED = "CHATBOT_EMBED"
    PHONE_NUMBER = "PHONE_NUMBER"
    DOCUMENT = "DOCUMENT"


class DeliveryStatus(str, Enum):
    """Delivery status enum."""
    DELIVERED = "DELIVERED"
    SUPERSEDED = "SUPERSEDED"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def generate_order_id() -> str:
    """Generate Order ID: ORD-NNNNNNNN."""
    return f"ORD-{str(uuid4())[:8].upper()}"


def generate_order_number() -> str:
    """Generate client-facing order number: ORD-<epoch ms>-<9 chars>."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def generate_task_id() -> str:
    """Generate Task ID: T-NNNNNN."""
    return f"T-{str(uuid4())[:6].upper()}"


def generate_delivery_id() -> str:
    """Generate Delivery ID: D-NNNNNNNN."""
    return f"D-{str(uuid4())[:8].upper()}"


def generate_notification_id() -> str:
    """Generate Notification ID: N-NNNNNNNN."""
    return f"N-{str(uuid4())[:8].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Order:
    """Client service request."""

    id: str = field(default_factory=generate_order_id)
    order_number: str = field(default_factory=generate_order_number)
    client_id: str = ""
    category: OrderCategory = OrderCategory.WEBSITE
    requirements: Dict[str, Any] = field(default_factory=dict)
    status: OrderStatus = OrderStatus.PENDING
    agent_id: Optional[str] = None
    priority: int = 5
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_number": self.order_number,
            "client_id": self.client_id,
            "category": self.category.value,
            "requirements": self.requirements,
            "status": self.status.value,
            "agent_id": self.agent_id,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        """Create from dictionary."""
        return cls(
            id=data.get("id", generate_order_id()),
            order_number=data.get("order_number", generate_order_number()),
            client_id=data.get("client_id", ""),
            category=OrderCategory(data.get("category", "WEBSITE")),
            requirements=data.get("requirements", {}),
            status=OrderStatus(data.get("status", "PENDING")),
            agent_id=data.get("agent_id"),
            priority=data.get("priority", 5),
            created_at=_parse(data.get("created_at")) or datetime.now(),
            updated_at=_parse(data.get("updated_at")) or datetime.now(),
        )


@dataclass
class Agent:
    """Worker with bounded concurrent capacity."""

    id: str
    name: str = ""
    type: AgentType = AgentType.GENERAL
    status: AgentStatus = AgentStatus.AVAILABLE
    current_load: int = 0
    max_load: int = 1
    model: str = ""
    system_prompt: str = ""
    client_id: Optional[str] = None
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.max_load <= 0:
            raise ValueError(f"Agent {self.id}: max_load must be positive, got {self.max_load}")
        if not 0 <= self.current_load <= self.max_load:
            raise ValueError(
                f"Agent {self.id}: current_load {self.current_load} outside 0..{self.max_load}"
            )

    @property
    def has_capacity(self) -> bool:
        """Check if agent can take a new order."""
        return self.is_active and self.current_load < self.max_load

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "current_load": self.current_load,
            "max_load": self.max_load,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "client_id": self.client_id,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agent":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=AgentType(data.get("type", "GENERAL")),
            status=AgentStatus(data.get("status", "AVAILABLE")),
            current_load=data.get("current_load", 0),
            max_load=data.get("max_load", 1),
            model=data.get("model", ""),
            system_prompt=data.get("system_prompt", ""),
            client_id=data.get("client_id"),
            is_active=data.get("is_active", True),
        )


@dataclass
class TaskSpec:
    """One planned step, before it becomes a Task record."""
    type: TaskType
    description: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Task:
    """Executable task - one unit of an order's plan."""

    id: str = field(default_factory=generate_task_id)
    order_id: str = ""
    agent_id: str = ""
    type: TaskType = TaskType.ANALYZE
    description: str = ""
    input: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    status: TaskStatus = TaskStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    duration: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "agent_id": self.agent_id,
            "type": self.type.value,
            "description": self.description,
            "input": self.input,
            "sequence": self.sequence,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "duration": self.duration,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary."""
        return cls(
            id=data.get("id", generate_task_id()),
            order_id=data.get("order_id", ""),
            agent_id=data.get("agent_id", ""),
            type=TaskType(data.get("type", "ANALYZE")),
            description=data.get("description", ""),
            input=data.get("input", {}),
            sequence=data.get("sequence", 0),
            status=TaskStatus(data.get("status", "PENDING")),
            output=data.get("output"),
            error=data.get("error"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            duration=data.get("duration"),
            created_at=_parse(data.get("created_at")) or datetime.now(),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
        )


@dataclass
class Delivery:
    """Client-facing output bundle for a completed order."""

    id: str = field(default_factory=generate_delivery_id)
    order_id: str = ""
    type: DeliveryType = DeliveryType.DOCUMENT
    title: str = ""
    description: str = ""
    content: Dict[str, Any] = field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.DELIVERED
    delivered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "content": copy.deepcopy(self.content),
            "status": self.status.value,
            "delivered_at": _iso(self.delivered_at),
        }


@dataclass(frozen=True)
class StatusHistoryEntry:
    """Append-only audit record of one order status transition."""
    order_id: str
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    reason: str = ""
    actor: str = SYSTEM_ACTOR
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "reason": self.reason,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Notification:
    """Recorded intent to contact a client."""
    order_id: str
    client_id: str
    subject: str
    body: str
    agent_id: Optional[str] = None
    channel: str = "EMAIL"
    direction: str = "OUTBOUND"
    id: str = field(default_factory=generate_notification_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "client_id": self.client_id,
            "agent_id": self.agent_id,
            "channel": self.channel,
            "direction": self.direction,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TaskResult:
    """Result of a successful task execution."""
    task_id: str
    output: str
    duration_seconds: int
    attempts: int = 1


@dataclass
class ProcessResult:
    """Outcome of processing one order."""
    order_id: str
    status: OrderStatus
    agent_id: Optional[str] = None
    delivery: Optional[Delivery] = None
    error: Optional[str] = None
    tasks: List[Task] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == OrderStatus.COMPLETED
