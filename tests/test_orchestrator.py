"""Tests for the order fulfillment orchestrator end to end."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from fulfillment.orchestrator.errors import InvalidTransition, OrderNotFound
from fulfillment.orchestrator.models import (
    AgentStatus,
    AgentType,
    DeliveryType,
    OrderCategory,
    OrderStatus,
    TaskStatus,
)
from fulfillment.orchestrator.service import Orchestrator
from fulfillment.orchestrator.state_machine import OrderStateMachine

from conftest import FakeProvider


async def _statuses(store, order_id):
    return [(h.from_status, h.to_status) for h in await store.list_status_history(order_id)]


class TestProcessOrder:
    """Tests for the main processing flow."""

    @pytest.mark.asyncio
    async def test_website_order_completes(self, orchestrator, store, provider, make_agent, make_order):
        """Happy path: five tasks, one delivery, agent freed, client told."""
        await make_agent("agent-web-1", max_load=1)
        order = await make_order(OrderCategory.WEBSITE)

        result = await orchestrator.process_order(order.id)

        assert result.success
        assert result.status == OrderStatus.COMPLETED
        assert result.agent_id == "agent-web-1"
        assert len(provider.calls) == 5

        stored = await store.find_order(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.agent_id == "agent-web-1"

        assert await _statuses(store, order.id) == [
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.IN_PROGRESS),
            (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED),
        ]

        tasks = await store.list_tasks(order.id)
        assert len(tasks) == 5
        assert all(t.status == TaskStatus.COMPLETED for t in tasks)

        [delivery] = await store.list_deliveries(order.id)
        assert delivery.type == DeliveryType.WEBSITE_URL
        assert len(delivery.content["tasks"]) == 5
        assert result.delivery.id == delivery.id

        agent = await store.find_agent("agent-web-1")
        assert agent.current_load == 0
        assert agent.status == AgentStatus.AVAILABLE

        [notification] = await store.list_notifications(order.id)
        assert notification.subject == "Your WEBSITE is ready!"
        assert notification.agent_id == "agent-web-1"

    @pytest.mark.asyncio
    async def test_no_agent_available(self, orchestrator, store, provider, make_order):
        """Without an eligible agent the order fails with the reason recorded."""
        order = await make_order(OrderCategory.WEBSITE)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert "No available WEBSITE_BUILDER agent" in result.error
        assert await _statuses(store, order.id) == [
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.FAILED),
        ]
        history = await store.list_status_history(order.id)
        assert "No available WEBSITE_BUILDER agent" in history[-1].reason
        assert await store.list_tasks(order.id) == []
        assert provider.calls == []

        [notification] = await store.list_notifications(order.id)
        assert notification.subject == "Issue with your WEBSITE order"

    @pytest.mark.asyncio
    async def test_task_exhaustion_fails_order(self, store, fast_policy, make_agent, make_order):
        """A task that keeps failing stops the order; earlier work is kept."""
        provider = FakeProvider(fail_when="Deploy to Vercel")
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1")
        order = await make_order(OrderCategory.WEBSITE)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert len(provider.calls) == 3 + 4

        tasks = await store.list_tasks(order.id)
        assert [t.status for t in tasks] == [
            TaskStatus.COMPLETED,
            TaskStatus.COMPLETED,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.PENDING,
        ]
        assert tasks[3].retry_count == 3
        assert tasks[3].error == "provider unavailable"
        assert await store.list_deliveries(order.id) == []

        assert (await store.find_agent("agent-web-1")).current_load == 0
        assert await _statuses(store, order.id) == [
            (OrderStatus.PENDING, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.IN_PROGRESS),
            (OrderStatus.IN_PROGRESS, OrderStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_transient_failures_recovered(self, store, fast_policy, make_agent, make_order):
        provider = FakeProvider(fail_times=2)
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1")
        order = await make_order(OrderCategory.WEBSITE)

        result = await orchestrator.process_order(order.id)

        assert result.success
        assert len(provider.calls) == 7

    @pytest.mark.asyncio
    async def test_category_without_template(self, orchestrator, store, provider, make_agent, make_order):
        """A LEGAL order takes an agent, finds no plan, fails and gives the agent back."""
        await make_agent("agent-legal-1", AgentType.LEGAL_AI)
        order = await make_order(OrderCategory.LEGAL, requirements={"matter": "lease review"})

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert "No task template" in result.error
        assert result.agent_id == "agent-legal-1"
        assert await store.list_tasks(order.id) == []
        assert provider.calls == []

        agent = await store.find_agent("agent-legal-1")
        assert agent.current_load == 0
        assert agent.status == AgentStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_unknown_order(self, orchestrator, store):
        with pytest.raises(OrderNotFound, match="Order ORD-MISSING not found"):
            await orchestrator.process_order("ORD-MISSING")

        assert await store.list_status_history("ORD-MISSING") == []

    @pytest.mark.asyncio
    async def test_finished_order_cannot_be_reprocessed(self, orchestrator, store, make_agent, make_order):
        await make_agent("agent-web-1")
        order = await make_order()
        await orchestrator.process_order(order.id)

        with pytest.raises(InvalidTransition):
            await orchestrator.process_order(order.id)

        assert (await store.find_agent("agent-web-1")).current_load == 0
        assert len(await store.list_status_history(order.id)) == 3

    @pytest.mark.asyncio
    async def test_dedicated_agent_preferred(self, orchestrator, store, make_agent, make_order):
        await make_agent("agent-web-a", max_load=5)
        await make_agent("agent-web-z", max_load=5, client_id="client-vip")
        order = await make_order(client_id="client-vip")

        result = await orchestrator.process_order(order.id)

        assert result.agent_id == "agent-web-z"

    @pytest.mark.asyncio
    async def test_invalid_transition_is_raised_and_agent_released(self, orchestrator, store, make_agent, make_order):
        """A broken state graph is a bug: surfaced to the caller, never turned into FAILED."""
        await make_agent("agent-web-1")
        order = await make_order()
        real_transition = store.transition_order

        async def conflicting(order_id, from_status, entry):
            if entry.to_status == OrderStatus.IN_PROGRESS:
                raise InvalidTransition("changed underneath")
            await real_transition(order_id, from_status, entry)

        store.transition_order = conflicting

        with pytest.raises(InvalidTransition, match="changed underneath"):
            await orchestrator.process_order(order.id)

        assert (await store.find_order(order.id)).status == OrderStatus.PROCESSING
        assert (await store.find_agent("agent-web-1")).current_load == 0

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_order(self, store, provider, fast_policy, make_agent, make_order, caplog):
        notifier = AsyncMock()
        notifier.notify.side_effect = RuntimeError("smtp down")
        orchestrator = Orchestrator(store, provider, notifier=notifier, retry_policy=fast_policy)
        await make_agent("agent-web-1")
        order = await make_order()

        result = await orchestrator.process_order(order.id)

        assert result.success
        assert (await store.find_order(order.id)).status == OrderStatus.COMPLETED
        notifier.notify.assert_awaited_once()
        assert "Notification for order" in caplog.text


class TestProcessingProperties:
    """Capacity, release symmetry and history properties across many orders."""

    @pytest.mark.asyncio
    async def test_concurrent_orders_respect_capacity(self, store, fast_policy, make_agent, make_order):
        """With max_load 2, two orders run and the rest fail fast."""
        gate = asyncio.Event()
        provider = FakeProvider(gate=gate)
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1", max_load=2)
        orders = [await make_order(client_id=f"client-{i}") for i in range(5)]

        running = [asyncio.create_task(orchestrator.process_order(o.id)) for o in orders]
        for _ in range(200):
            if len(provider.calls) == 2 and sum(t.done() for t in running) == 3:
                break
            await asyncio.sleep(0)

        agent = await store.find_agent("agent-web-1")
        assert agent.current_load == 2
        assert agent.status == AgentStatus.BUSY

        gate.set()
        results = await asyncio.gather(*running)

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["COMPLETED", "COMPLETED", "FAILED", "FAILED", "FAILED"]
        assert (await store.find_agent("agent-web-1")).current_load == 0

    @pytest.mark.asyncio
    async def test_history_valid_on_every_path(self, store, fast_policy, make_agent, make_order):
        """Each order's history is one forward path from PENDING."""
        provider = FakeProvider(fail_when="Prepare tax return")
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1", max_load=3)
        await make_agent("agent-tax-1", AgentType.TAX_SPECIALIST, max_load=3)
        await make_agent("agent-legal-1", AgentType.LEGAL_AI)
        orders = [
            await make_order(OrderCategory.WEBSITE),
            await make_order(OrderCategory.TAX_PREP),
            await make_order(OrderCategory.LEGAL),
            await make_order(OrderCategory.CHATBOT),
        ]

        for order in orders:
            await orchestrator.process_order(order.id)

        sm = OrderStateMachine(store)
        for order in orders:
            assert sm.validate_history(await store.list_status_history(order.id))
        for agent_id in ("agent-web-1", "agent-tax-1", "agent-legal-1"):
            assert (await store.find_agent(agent_id)).current_load == 0


class TestReleaseSymmetry:
    """Each assignment is released exactly once, whatever the outcome."""

    @staticmethod
    def _count_releases(orchestrator):
        release = AsyncMock(wraps=orchestrator.registry.release)
        orchestrator.registry.release = release
        return release

    @pytest.mark.asyncio
    async def test_success_releases_once(self, orchestrator, store, make_agent, make_order):
        await make_agent("agent-web-1", max_load=3, current_load=1)
        order = await make_order()
        release = self._count_releases(orchestrator)

        result = await orchestrator.process_order(order.id)

        assert result.success
        assert release.await_count == 1
        assert (await store.find_agent("agent-web-1")).current_load == 1

    @pytest.mark.asyncio
    async def test_no_agent_releases_nothing(self, orchestrator, make_order):
        order = await make_order()
        release = self._count_releases(orchestrator)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert release.await_count == 0

    @pytest.mark.asyncio
    async def test_planning_failure_releases_once(self, orchestrator, store, make_agent, make_order):
        await make_agent("agent-legal-1", AgentType.LEGAL_AI, max_load=3, current_load=1)
        order = await make_order(OrderCategory.LEGAL, requirements={"matter": "lease review"})
        release = self._count_releases(orchestrator)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert release.await_count == 1
        assert (await store.find_agent("agent-legal-1")).current_load == 1

    @pytest.mark.asyncio
    async def test_task_exhaustion_releases_once(self, store, fast_policy, make_agent, make_order):
        orchestrator = Orchestrator(store, FakeProvider(fail_when="Deploy to Vercel"), retry_policy=fast_policy)
        await make_agent("agent-web-1", max_load=3, current_load=1)
        order = await make_order()
        release = self._count_releases(orchestrator)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert release.await_count == 1
        assert (await store.find_agent("agent-web-1")).current_load == 1

    @pytest.mark.asyncio
    async def test_invalid_transition_releases_once(self, orchestrator, store, make_agent, make_order):
        await make_agent("agent-web-1", max_load=3, current_load=1)
        order = await make_order()
        release = self._count_releases(orchestrator)
        real_transition = store.transition_order

        async def conflicting(order_id, from_status, entry):
            if entry.to_status == OrderStatus.COMPLETED:
                raise InvalidTransition("changed underneath")
            await real_transition(order_id, from_status, entry)

        store.transition_order = conflicting

        with pytest.raises(InvalidTransition):
            await orchestrator.process_order(order.id)

        assert release.await_count == 1
        assert (await store.find_agent("agent-web-1")).current_load == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_fails_order_and_task(self, store, fast_policy, make_agent, make_order):
        """A provider bug fails the order, leaves the task FAILED and releases once."""
        provider = AsyncMock()
        provider.complete.side_effect = ConnectionResetError("connection reset by peer")
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1", max_load=3, current_load=1)
        order = await make_order()
        release = self._count_releases(orchestrator)

        result = await orchestrator.process_order(order.id)

        assert result.status == OrderStatus.FAILED
        assert "connection reset by peer" in result.error
        assert provider.complete.await_count == 1

        tasks = await store.list_tasks(order.id)
        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].error == "connection reset by peer"
        assert all(t.status == TaskStatus.PENDING for t in tasks[1:])

        assert release.await_count == 1
        assert (await store.find_agent("agent-web-1")).current_load == 1


class TestAgentReuse:
    """A saturated agent takes new work once it is released."""

    @pytest.mark.asyncio
    async def test_second_order_waits_for_release(self, store, fast_policy, make_agent, make_order):
        gate = asyncio.Event()
        provider = FakeProvider(gate=gate)
        orchestrator = Orchestrator(store, provider, retry_policy=fast_policy)
        await make_agent("agent-web-1", max_load=1)
        first = await make_order(client_id="client-1")
        second = await make_order(client_id="client-2")

        running = asyncio.create_task(orchestrator.process_order(first.id))
        for _ in range(200):
            if provider.calls:
                break
            await asyncio.sleep(0)

        blocked = await orchestrator.process_order(second.id)
        assert blocked.status == OrderStatus.FAILED
        assert "No available WEBSITE_BUILDER agent" in blocked.error

        gate.set()
        assert (await running).status == OrderStatus.COMPLETED

        third = await make_order(client_id="client-2")
        result = await orchestrator.process_order(third.id)

        assert result.status == OrderStatus.COMPLETED
        assert result.agent_id == "agent-web-1"
        assert (await store.find_agent("agent-web-1")).current_load == 0


class TestOrderApi:
    """Tests for submit, background processing and details."""

    @pytest.mark.asyncio
    async def test_submit_order(self, orchestrator, store):
        order = await orchestrator.submit_order("client-1", "CHATBOT", {"faq": ["hours"]}, priority=2)

        stored = await store.find_order(order.id)
        assert stored.status == OrderStatus.PENDING
        assert stored.category == OrderCategory.CHATBOT
        assert stored.priority == 2
        assert stored.order_number.startswith("ORD-")

    @pytest.mark.asyncio
    async def test_submit_rejects_bad_input(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.submit_order("client-1", "GARDENING", {"lawn": True})
        with pytest.raises(ValueError, match="requirements"):
            await orchestrator.submit_order("client-1", OrderCategory.WEBSITE, {})
        with pytest.raises(ValueError, match="client_id"):
            await orchestrator.submit_order("", OrderCategory.WEBSITE, {"a": 1})

    @pytest.mark.asyncio
    async def test_process_in_background(self, orchestrator, make_agent):
        await make_agent("agent-web-1")
        order = await orchestrator.submit_order("client-1", OrderCategory.WEBSITE, {"business": "Cafe"})

        task = orchestrator.process_in_background(order.id)
        result = await task

        assert result.status == OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_background_errors_are_logged(self, orchestrator, caplog):
        result = await orchestrator.process_in_background("ORD-MISSING")

        assert result is None
        assert "Failed to process order ORD-MISSING" in caplog.text

    @pytest.mark.asyncio
    async def test_order_details(self, orchestrator, make_agent, make_order):
        await make_agent("agent-web-1")
        order = await make_order()
        await orchestrator.process_order(order.id)

        details = await orchestrator.get_order_details(order.id)

        assert details["order"]["status"] == "COMPLETED"
        assert details["agent"]["id"] == "agent-web-1"
        assert len(details["tasks"]) == 5
        assert len(details["deliveries"]) == 1
        assert len(details["notifications"]) == 1
        assert [h["to_status"] for h in details["status_history"]] == [
            "COMPLETED",
            "IN_PROGRESS",
            "PROCESSING",
        ]

    @pytest.mark.asyncio
    async def test_order_details_unknown(self, orchestrator):
        with pytest.raises(OrderNotFound):
            await orchestrator.get_order_details("ORD-MISSING")
