"""Task planner - fixed task templates per order category."""

import copy
from typing import Any, Dict, List, Tuple, Union

from fulfillment.orchestrator.models import (
    Agent,
    Order,
    OrderCategory,
    Task,
    TaskSpec,
    TaskType,
)


# (task type, description) in execution order. Every category must be listed;
# an empty tuple means the category has no template yet.
TASK_TEMPLATES: Dict[OrderCategory, Tuple[Tuple[TaskType, str], ...]] = {
    OrderCategory.WEBSITE: (
        (TaskType.ANALYZE, "Analyze website requirements"),
        (TaskType.DESIGN, "Create design system and mockups"),
        (TaskType.CODE, "Build website with Next.js"),
        (TaskType.DEPLOY, "Deploy to Vercel"),
        (TaskType.TEST, "Test website functionality"),
    ),
    OrderCategory.CHATBOT: (
        (TaskType.ANALYZE, "Analyze chatbot requirements"),
        (TaskType.DESIGN, "Design conversation flows"),
        (TaskType.CODE, "Build and train chatbot"),
        (TaskType.DEPLOY, "Deploy chatbot service"),
        (TaskType.TEST, "Test chatbot responses"),
    ),
    OrderCategory.PHONE_ASSISTANT: (
        (TaskType.ANALYZE, "Analyze phone assistant requirements"),
        (TaskType.DESIGN, "Design call flows"),
        (TaskType.CODE, "Configure voice AI"),
        (TaskType.DEPLOY, "Set up phone number and routing"),
        (TaskType.TEST, "Test phone assistant"),
    ),
    OrderCategory.TAX_PREP: (
        (TaskType.ANALYZE, "Review tax documents"),
        (TaskType.CODE, "Prepare tax return"),
        (TaskType.REVIEW, "Review for accuracy"),
        (TaskType.DEPLOY, "E-file tax return"),
    ),
    OrderCategory.LEGAL: (),
    OrderCategory.ACCOUNTING: (),
}

_missing = set(OrderCategory) - set(TASK_TEMPLATES)
if _missing:
    raise RuntimeError(f"No task template entry for categories: {sorted(c.value for c in _missing)}")


class TaskPlanner:
    """Turns an order category into its ordered task list."""

    def plan(
        self,
        category: Union[OrderCategory, str],
        requirements: Dict[str, Any],
    ) -> List[TaskSpec]:
        """Plan the tasks for a category.

        Args:
            category: Order category (unknown names plan to nothing)
            requirements: Client requirements, given in full to every task

        Returns:
            Ordered task specs; empty when the category has no template
        """
        try:
            template = TASK_TEMPLATES[OrderCategory(category)]
        except ValueError:
            return []

        return [
            TaskSpec(type=task_type, description=description, input=copy.deepcopy(requirements))
            for task_type, description in template
        ]

    def build_tasks(
        self,
        order: Order,
        agent: Agent,
        specs: List[TaskSpec],
        max_retries: int = 3,
    ) -> List[Task]:
        """Create PENDING task records for a plan, bound to the assigned agent."""
        return [
            Task(
                order_id=order.id,
                agent_id=agent.id,
                type=spec.type,
                description=spec.description,
                input=spec.input,
                sequence=index,
                max_retries=max_retries,
            )
            for index, spec in enumerate(specs)
        ]
