"""Task executor - runs one task against the completion provider.

This module provides:
1. Prompt construction from the task and the category's service instructions
2. A bounded retry loop with exponential backoff
3. Per-attempt timeout and duration measurement
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from fulfillment.orchestrator.errors import TaskExhausted, TaskProviderError
from fulfillment.orchestrator.models import (
    Agent,
    Order,
    Task,
    TaskResult,
    TaskStatus,
)

if TYPE_CHECKING:
    from fulfillment.core.completion import CompletionProvider
    from fulfillment.db.store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "No specific instructions available"


@dataclass(frozen=True)
class RetryPolicy:
    """Task retry behaviour.

    Delay before retry ``n`` (1-based) is ``backoff_base * 2 ** (n - 1)``,
    capped at ``backoff_max`` and randomized by +/- ``jitter``.
    """
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    jitter: float = 0.2
    timeout_seconds: Optional[float] = 120.0

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before the given retry."""
        if self.backoff_base <= 0:
            return 0.0
        delay = min(self.backoff_max, self.backoff_base * (2 ** max(0, retry_number - 1)))
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


class TaskExecutor:
    """Executes tasks and records their progress on the task record."""

    def __init__(
        self,
        store: "RecordStore",
        provider: "CompletionProvider",
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize executor.

        Args:
            store: Record store for task updates and service templates
            provider: Completion provider
            retry_policy: Backoff and timeout settings (the retry limit
                itself is each task's ``max_retries``)
            sleep: Coroutine used to wait between attempts
        """
        self.store = store
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def execute(self, task: Task, agent: Agent, order: Order) -> TaskResult:
        """Execute a task, retrying provider failures up to ``task.max_retries``.

        Only provider failures and timeouts are retried. Any other error
        from the provider marks the task FAILED and propagates. Store errors
        propagate on the spot.

        Args:
            task: Task to execute (updated in place)
            agent: Agent whose model and system prompt are used
            order: Order the task belongs to

        Returns:
            TaskResult with the provider output and duration

        Raises:
            TaskExhausted: If the last allowed attempt failed
        """
        if task.is_terminal:
            raise ValueError(f"Task {task.id} is already {task.status.value}")

        instructions = await self.store.find_service_template(order.category)
        prompt = self._build_prompt(task, instructions)
        attempts = 0

        while True:
            started_at = datetime.now()
            await self.store.update_task(
                task.id, status=TaskStatus.IN_PROGRESS, started_at=started_at
            )
            task.status = TaskStatus.IN_PROGRESS
            task.started_at = started_at
            attempts += 1

            try:
                output = await self._complete(agent, prompt)
            except (TaskProviderError, asyncio.TimeoutError) as e:
                error = str(e) or f"Completion timed out after {self.retry_policy.timeout_seconds}s"
                logger.warning(
                    f"[Executor] Task {task.id} attempt {attempts} failed: {error}"
                )

                if task.retry_count < task.max_retries:
                    task.retry_count += 1
                    await self.store.update_task(
                        task.id, status=TaskStatus.PENDING, retry_count=task.retry_count
                    )
                    task.status = TaskStatus.PENDING
                    delay = self.retry_policy.delay(task.retry_count)
                    if delay > 0:
                        await self._sleep(delay)
                    continue

                await self._mark_failed(task, error)
                logger.error(f"[Executor] Task {task.id} failed after {attempts} attempts")
                raise TaskExhausted(task.id, attempts, error) from e
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error(
                    f"[Executor] Task {task.id} attempt {attempts} raised {type(e).__name__}: {error}"
                )
                await self._mark_failed(task, error)
                raise

            completed_at = datetime.now()
            duration = int((completed_at - started_at).total_seconds())
            await self.store.update_task(
                task.id,
                status=TaskStatus.COMPLETED,
                output=output,
                duration=duration,
                completed_at=completed_at,
            )
            task.status = TaskStatus.COMPLETED
            task.output = output
            task.duration = duration
            task.completed_at = completed_at
            logger.info(f"[Executor] Task {task.id} ({task.type.value}) completed in {duration}s")
            return TaskResult(
                task_id=task.id,
                output=output,
                duration_seconds=duration,
                attempts=attempts,
            )

    async def _mark_failed(self, task: Task, error: str) -> None:
        completed_at = datetime.now()
        await self.store.update_task(
            task.id,
            status=TaskStatus.FAILED,
            error=error,
            completed_at=completed_at,
        )
        task.status = TaskStatus.FAILED
        task.error = error
        task.completed_at = completed_at

    async def _complete(self, agent: Agent, prompt: str) -> str:
        call = self.provider.complete(agent.model, agent.system_prompt, prompt)
        timeout = self.retry_policy.timeout_seconds
        if timeout:
            return await asyncio.wait_for(call, timeout=timeout)
        return await call

    def _build_prompt(self, task: Task, instructions: Optional[str] = None) -> str:
        """Build the user prompt for a task.

        Args:
            task: Task to build prompt for
            instructions: Service instructions for the order's category

        Returns:
            Prompt string
        """
        requirements = json.dumps(task.input or {}, indent=2, ensure_ascii=False, default=str)

        return f"""
# Task: {task.description}
# Task Type: {task.type.value}

## Service Instructions
{instructions or DEFAULT_INSTRUCTIONS}

## Client Requirements
{requirements}

## Your Task
{task.description}

Please complete this task following the service instructions above. Provide a detailed response with:
1. What you did
2. The result/output
3. Any files or URLs created
4. Next steps (if applicable)

Be thorough and professional. This is for a real client.
"""
