"""
Unit tests for load classification, recommendations and rebalancing.
"""

import pytest

from agent_orchestrator.models.core import AgentState, CapabilityCategory, TaskSpec, TaskStatus
from agent_orchestrator.orchestration.capacity import TaskOutcome
from agent_orchestrator.orchestration.events import EventType
from agent_orchestrator.orchestration.load_balancer import LoadBalancer
from agent_orchestrator.utils.config import LoadBalancerConfig


async def add_agent(orchestrator, agent_factory, agent_id, max_concurrent_tasks, busy=0, **kwargs):
    """Register an agent and occupy ``busy`` of its slots with placeholder work."""
    agent = agent_factory(agent_id, max_concurrent_tasks=max_concurrent_tasks, **kwargs)
    await orchestrator.register_agent(agent)
    for i in range(busy):
        orchestrator.tracker.reserve(agent_id, f"{agent_id}-busy-{i}")
    return agent


async def queue_task(orchestrator, task_id, agent_id, **fields):
    """Submit a pending task and park it on an agent's queue."""
    task = await orchestrator.submit_task(TaskSpec(prompt=f"work on {task_id}", task_id=task_id, **fields))
    orchestrator.tracker.enqueue(agent_id, task_id)
    return task


class TestClassification:
    """Test utilization sampling and classification."""

    @pytest.mark.asyncio
    async def test_classify(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "hot", 2, busy=2)
        await add_agent(orchestrator, agent_factory, "warm", 2, busy=1)
        await add_agent(orchestrator, agent_factory, "cold", 2)

        classification = orchestrator.load_balancer.classify()
        assert classification.bottleneck == ["hot"]
        assert classification.underutilized == ["cold"]
        assert orchestrator.metrics.get_gauge("capacity.utilization", tags={"agent_id": "warm"}) == 50.0

    @pytest.mark.asyncio
    async def test_unschedulable_agent_not_underutilized(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "cold", 2)
        orchestrator.registry.set_state("cold", AgentState.OFFLINE)
        assert orchestrator.load_balancer.classify().underutilized == []

    @pytest.mark.asyncio
    async def test_whole_window_must_agree(self, orchestrator, agent_factory):
        balancer = LoadBalancer(orchestrator.scheduler, LoadBalancerConfig(window_size=3))
        await add_agent(orchestrator, agent_factory, "a", 1, busy=1)

        assert balancer.classify().bottleneck == ["a"]
        orchestrator.tracker.release("a", "a-busy-0", TaskOutcome.CANCELLED)

        mixed = balancer.classify()
        assert mixed.bottleneck == []
        assert mixed.underutilized == []

        balancer.classify()
        assert balancer.classify().underutilized == ["a"]

    @pytest.mark.asyncio
    async def test_capacity_metrics(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "a", 4, busy=3)
        await add_agent(orchestrator, agent_factory, "b", 2)
        await queue_task(orchestrator, "t1", "a")

        metrics = orchestrator.get_capacity_metrics()
        assert metrics.total_capacity == 6
        assert metrics.used_capacity == 3
        assert metrics.available_capacity == 3
        assert metrics.queued_tasks == 1
        assert metrics.agent_utilization == {"a": 75.0, "b": 0.0}
        assert metrics.underutilized_agents == ["b"]
        assert metrics.bottleneck_agents == []

    @pytest.mark.asyncio
    async def test_queries_do_not_sample(self, orchestrator, agent_factory):
        """Reading metrics or recommendations leaves the sampling window alone."""
        balancer = LoadBalancer(orchestrator.scheduler, LoadBalancerConfig(window_size=3))
        await add_agent(orchestrator, agent_factory, "a", 1)
        await balancer.run_cycle()
        await balancer.run_cycle()

        orchestrator.tracker.reserve("a", "a-busy-0")
        await queue_task(orchestrator, "t1", "a")
        for _ in range(3):
            assert balancer.capacity_metrics().bottleneck_agents == []
        assert balancer.recommend().scale_up == []

        metrics = await balancer.run_cycle()
        assert metrics.bottleneck_agents == []


class TestRecommendations:
    """Test load-balancing advice."""

    @pytest.mark.asyncio
    async def test_recommendations(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "hot", 2, busy=2)
        await add_agent(orchestrator, agent_factory, "cold", 2)
        await add_agent(orchestrator, agent_factory, "single", 1)
        await queue_task(orchestrator, "t1", "hot")

        recommendations = orchestrator.get_recommendations()
        assert recommendations.scale_up == ["hot"]
        assert recommendations.scale_down == ["cold"]
        assert len(recommendations.redistribute) == 1
        plan = recommendations.redistribute[0]
        assert (plan.from_agent, plan.to_agent, plan.task_ids) == ("hot", "cold", ["t1"])

    @pytest.mark.asyncio
    async def test_bottleneck_without_queue_needs_no_scale_up(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "hot", 1, busy=1)
        assert orchestrator.get_recommendations().scale_up == []


class TestRebalance:
    """Test migration of queued tasks."""

    @pytest.mark.asyncio
    async def test_queued_task_moves_to_idle_agent(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "b", 10, busy=9)
        await queue_task(orchestrator, "t4", "b")
        target = await add_agent(orchestrator, agent_factory, "c", 10, busy=1, auto_complete=True)

        moves = await orchestrator.rebalance()
        assert [(m.task_id, m.from_agent, m.to_agent) for m in moves] == [("t4", "b", "c")]

        task = orchestrator.get_task("t4")
        assert task.status == TaskStatus.PENDING
        assert orchestrator.tracker.queued_tasks("b") == []
        assert orchestrator.tracker.queued_tasks("c") == ["t4"]
        event = orchestrator.event_bus.history(EventType.TASK_REBALANCED)[0]
        assert event.payload["from_agent"] == "b"
        assert event.payload["to_agent"] == "c"

        assert await orchestrator.scheduler.tick() == 1
        done = await orchestrator.wait_for_task("t4", timeout=2)
        assert done.status == TaskStatus.COMPLETED
        assert done.assigned_agent_id == "c"
        assert len(target.requests) == 1

    @pytest.mark.asyncio
    async def test_second_rebalance_moves_nothing(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "b", 10, busy=9)
        await queue_task(orchestrator, "t4", "b")
        await add_agent(orchestrator, agent_factory, "c", 10, busy=1)
        assert len(await orchestrator.rebalance()) == 1
        assert await orchestrator.rebalance() == []

    @pytest.mark.asyncio
    async def test_rebalance_is_logged(self, orchestrator, agent_factory, mocker):
        error_spy = mocker.patch.object(orchestrator.load_balancer, "log_operation_error")
        success_spy = mocker.patch.object(orchestrator.load_balancer, "log_operation_success")
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        await queue_task(orchestrator, "t1", "b")
        mocker.patch.object(orchestrator.tracker, "move_queued", side_effect=RuntimeError("queue corrupted"))

        assert await orchestrator.rebalance() == []
        assert success_spy.call_args.args[0] == "rebalance"

        await add_agent(orchestrator, agent_factory, "c", 2)
        with pytest.raises(RuntimeError):
            await orchestrator.rebalance()
        assert error_spy.call_args.args[0] == "rebalance"

    @pytest.mark.asyncio
    async def test_incompatible_target_skipped(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        await queue_task(orchestrator, "t1", "b")
        await add_agent(orchestrator, agent_factory, "ops", 2, categories=(CapabilityCategory.DEPLOYMENT,))
        assert await orchestrator.rebalance() == []
        assert orchestrator.tracker.queued_tasks("b") == ["t1"]

    @pytest.mark.asyncio
    async def test_collaborative_tasks_not_moved(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        await queue_task(orchestrator, "t1", "b", collaboration={"strategy": "parallel", "min_agents": 1})
        await add_agent(orchestrator, agent_factory, "c", 2)
        assert await orchestrator.rebalance() == []

    @pytest.mark.asyncio
    async def test_free_slots_limit_moves(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        for task_id in ("t1", "t2", "t3"):
            await queue_task(orchestrator, task_id, "b")
        await add_agent(orchestrator, agent_factory, "c", 2)
        moves = await orchestrator.rebalance()
        assert [m.task_id for m in moves] == ["t1", "t2"]
        assert orchestrator.tracker.queued_tasks("b") == ["t3"]


class TestBalanceCycle:
    """Test the periodic balancing pass."""

    @pytest.mark.asyncio
    async def test_cycle_publishes_metrics_and_bottlenecks(self, orchestrator, agent_factory):
        await add_agent(orchestrator, agent_factory, "hot", 1, busy=1)
        metrics = await orchestrator.load_balancer.run_cycle()

        assert metrics.bottleneck_agents == ["hot"]
        assert orchestrator.event_bus.history(EventType.METRICS_UPDATED)[-1].payload["metrics"] == metrics
        bottleneck = orchestrator.event_bus.history(EventType.CAPACITY_BOTTLENECK)[-1]
        assert bottleneck.payload["agents"] == ["hot"]

    @pytest.mark.asyncio
    async def test_cycle_rebalances_when_queues_back_up(self, orchestrator, agent_factory):
        balancer = LoadBalancer(orchestrator.scheduler, LoadBalancerConfig(
            window_size=1, auto_rebalance_queue_threshold=0
        ))
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        await queue_task(orchestrator, "t1", "b")
        await add_agent(orchestrator, agent_factory, "c", 2)

        await balancer.run_cycle()
        assert orchestrator.tracker.queued_tasks("c") == ["t1"]

    @pytest.mark.asyncio
    async def test_cycle_respects_auto_rebalance_flag(self, orchestrator, agent_factory):
        balancer = LoadBalancer(orchestrator.scheduler, LoadBalancerConfig(
            window_size=1, auto_rebalance=False, auto_rebalance_queue_threshold=0
        ))
        await add_agent(orchestrator, agent_factory, "b", 2, busy=2)
        await queue_task(orchestrator, "t1", "b")
        await add_agent(orchestrator, agent_factory, "c", 2)

        await balancer.run_cycle()
        assert orchestrator.tracker.queued_tasks("b") == ["t1"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator):
        balancer = orchestrator.load_balancer
        await balancer.start()
        assert balancer.is_running
        await balancer.stop()
        assert not balancer.is_running
