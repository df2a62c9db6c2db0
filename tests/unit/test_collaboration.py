"""
Unit tests for multi-agent collaboration strategies.
"""

import pytest

from agent_orchestrator.models.collaboration import (
    Participant, ParticipantRole, ParticipantStatus, SessionStatus
)
from agent_orchestrator.models.core import CollaborationSpec, CollaborationStrategy, TaskSpec, TaskStatus
from agent_orchestrator.orchestration.collaboration import highest_confidence, majority_vote
from agent_orchestrator.orchestration.events import EventType
from agent_orchestrator.orchestration.orchestrator import AgentOrchestrator
from agent_orchestrator.utils.config import SchedulerConfig


def collaborative(task_id, strategy, min_agents=3, **options):
    return TaskSpec(
        prompt=f"collaborate on {task_id}",
        task_id=task_id,
        collaboration=CollaborationSpec(strategy=strategy, min_agents=min_agents, **options)
    )


def completed(agent_id, output, confidence=None):
    participant = Participant(agent_id=agent_id)
    participant.record(True, output=output, confidence=confidence)
    return participant


def failed(agent_id):
    participant = Participant(agent_id=agent_id)
    participant.record(False, error="boom")
    return participant


class TestAgreementPolicies:
    """Test the built-in agreement policies."""

    def test_majority_vote(self):
        winner, agreement = majority_vote([
            completed("a", {"answer": 1}), completed("b", {"answer": 1}), completed("c", {"answer": 2})
        ])
        assert winner == {"answer": 1}
        assert agreement == pytest.approx(2 / 3)

    def test_majority_counts_failures_in_denominator(self):
        winner, agreement = majority_vote([completed("a", "yes"), failed("b")])
        assert winner == "yes"
        assert agreement == 0.5

    def test_majority_tie_goes_to_first_proposal(self):
        winner, _ = majority_vote([completed("a", "x"), completed("b", "y")])
        assert winner == "x"

    def test_majority_without_successes(self):
        assert majority_vote([failed("a")]) == (None, 0.0)

    def test_highest_confidence(self):
        winner, agreement = highest_confidence([
            completed("a", "low", confidence=0.2), completed("b", "high", confidence=0.8), failed("c")
        ])
        assert winner == "high"
        assert agreement == 0.8


class TestCollaborationSessions:
    """Test strategies end to end through the scheduler."""

    async def add_trio(self, orchestrator, agent_factory):
        """Three identical agents; rank order is a, b, c."""
        agents = {}
        for agent_id in ("a", "b", "c"):
            agents[agent_id] = agent_factory(agent_id, auto_complete=True, result={f"part_{agent_id}": agent_id})
            await orchestrator.register_agent(agents[agent_id])
        return agents

    async def run(self, orchestrator, task_spec):
        await orchestrator.submit_task(task_spec)
        assert await orchestrator.scheduler.tick() == 1
        return await orchestrator.wait_for_task(task_spec.task_id, timeout=2)

    @pytest.mark.asyncio
    async def test_parallel_aggregates_results(self, orchestrator, agent_factory):
        trio = await self.add_trio(orchestrator, agent_factory)
        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.PARALLEL))

        assert task.status == TaskStatus.COMPLETED
        assert task.assigned_agent_id == "a"
        assert task.output["succeeded"] == ["a", "b", "c"]
        assert task.output["merged"] == {"part_a": "a", "part_b": "b", "part_c": "c"}
        assert task.output["agent_count"] == 3

        session = orchestrator.get_session(task.collaboration_session_id)
        assert session.status == SessionStatus.COMPLETED
        assert [p.role for p in session.participants] == [
            ParticipantRole.LEAD, ParticipantRole.MEMBER, ParticipantRole.MEMBER
        ]
        for agent_id, agent in trio.items():
            context = agent.requests[0].context["collaboration"]
            assert context["strategy"] == "parallel"
            assert context["participants"] == ["a", "b", "c"]
            snapshot = orchestrator.get_capacity_snapshot(agent_id)
            assert snapshot.running_tasks == []
            assert snapshot.successful_tasks == 1

    @pytest.mark.asyncio
    async def test_parallel_quorum_failure_is_not_retried(self, system_config, agent_factory):
        config = system_config.model_copy(update={
            "scheduler": SchedulerConfig(max_retries=2, tick_interval_seconds=0.05)
        })
        orchestrator = AgentOrchestrator(config)
        await orchestrator.register_agent(agent_factory("a", auto_complete=True, fail=True))
        await orchestrator.register_agent(agent_factory("b", auto_complete=True, fail=True))
        await orchestrator.register_agent(agent_factory("c", auto_complete=True))

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.PARALLEL))
        assert task.status == TaskStatus.FAILED
        assert task.error_code == "CollaborationQuorumFailure"
        assert "1 of 3 participants succeeded, 2 required" in task.error
        assert task.retry_count == 0
        assert orchestrator.coordinator.session_for_task("t").status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_parallel_quorum_fraction(self, orchestrator, agent_factory):
        await orchestrator.register_agent(agent_factory("a", auto_complete=True))
        await orchestrator.register_agent(agent_factory("b", auto_complete=True, fail=True))
        await orchestrator.register_agent(agent_factory("c", auto_complete=True, fail=True))
        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.PARALLEL, quorum=0.3))
        assert task.status == TaskStatus.COMPLETED
        assert task.output["failed"] == ["b", "c"]
        assert task.output["errors"] == {"b": "agent failure", "c": "agent failure"}

    @pytest.mark.asyncio
    async def test_waits_for_enough_agents(self, orchestrator, agent_factory):
        await orchestrator.register_agent(agent_factory("a", auto_complete=True))
        await orchestrator.register_agent(agent_factory("b", auto_complete=True))
        await orchestrator.submit_task(collaborative("t", CollaborationStrategy.PARALLEL))

        assert await orchestrator.scheduler.tick() == 0
        assert orchestrator.get_task("t").status == TaskStatus.PENDING
        assert orchestrator.tracker.running_tasks("a") == set()

        await orchestrator.register_agent(agent_factory("c", auto_complete=True))
        assert await orchestrator.scheduler.tick() == 1
        task = await orchestrator.wait_for_task("t", timeout=2)
        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_group_limited_to_max_agents(self, orchestrator, agent_factory):
        trio = await self.add_trio(orchestrator, agent_factory)
        task = await self.run(orchestrator, collaborative(
            "t", CollaborationStrategy.PARALLEL, min_agents=2, max_agents=2
        ))
        assert task.output["succeeded"] == ["a", "b"]
        assert trio["c"].requests == []

    @pytest.mark.asyncio
    async def test_member_releases_slot_before_session_ends(self, orchestrator, agent_factory, wait_until):
        lead = agent_factory("a")
        quick = agent_factory("b", auto_complete=True)
        await orchestrator.register_agent(lead)
        await orchestrator.register_agent(quick)
        await orchestrator.submit_task(collaborative("t", CollaborationStrategy.PARALLEL, min_agents=2))
        await orchestrator.scheduler.tick()

        await wait_until(lambda: not orchestrator.tracker.running_tasks("b"))
        assert orchestrator.tracker.running_tasks("a") == {"t"}
        assert orchestrator.get_task("t").status == TaskStatus.IN_PROGRESS

        lead.finish("t")
        task = await orchestrator.wait_for_task("t", timeout=2)
        assert task.status == TaskStatus.COMPLETED
        assert orchestrator.tracker.running_tasks("a") == set()

    @pytest.mark.asyncio
    async def test_sequential_chains_outputs(self, orchestrator, agent_factory):
        def chain(agent_id):
            def handler(request):
                previous = request.context["collaboration"]["previous_output"] or []
                return previous + [agent_id]
            return handler

        agents = [agent_factory(agent_id, handler=chain(agent_id)) for agent_id in ("a", "b", "c")]
        for agent in agents:
            await orchestrator.register_agent(agent)

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.SEQUENTIAL))
        assert task.status == TaskStatus.COMPLETED
        assert task.output == ["a", "b", "c"]

        second = agents[1].requests[0].context["collaboration"]
        assert second["step"] == 2
        assert second["total_steps"] == 3
        assert second["history"] == [{"agent_id": "a", "output": ["a"]}]

    @pytest.mark.asyncio
    async def test_sequential_failure_skips_remaining(self, orchestrator, agent_factory):
        await orchestrator.register_agent(agent_factory("a", auto_complete=True))
        await orchestrator.register_agent(agent_factory("b", auto_complete=True, fail=True))
        last = agent_factory("c", auto_complete=True)
        await orchestrator.register_agent(last)

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.SEQUENTIAL))
        assert task.status == TaskStatus.FAILED
        assert task.error_code == "CollaborationAborted"
        assert last.requests == []

        session = orchestrator.coordinator.session_for_task("t")
        assert [p.status for p in session.participants] == [
            ParticipantStatus.COMPLETED, ParticipantStatus.FAILED, ParticipantStatus.SKIPPED
        ]
        assert orchestrator.tracker.running_tasks("c") == set()
        assert orchestrator.get_capacity_snapshot("c").total_processed == 0

    @pytest.mark.asyncio
    async def test_hierarchical_plan_execute_aggregate(self, orchestrator, agent_factory):
        def lead(request):
            context = request.context["collaboration"]
            if context["phase"] == "plan":
                return {"assignments": ["write module x", {"prompt": "write module y"}]}
            return {"combined": context["worker_results"]}

        def worker(request):
            return request.prompt

        await orchestrator.register_agent(agent_factory("a", handler=lead))
        await orchestrator.register_agent(agent_factory("b", handler=worker))
        await orchestrator.register_agent(agent_factory("c", handler=worker))

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.HIERARCHICAL))
        assert task.status == TaskStatus.COMPLETED
        assert task.output == {"combined": {"b": "write module x", "c": "write module y"}}

        session = orchestrator.get_session(task.collaboration_session_id)
        assert [p.role for p in session.participants] == [
            ParticipantRole.LEAD, ParticipantRole.WORKER, ParticipantRole.WORKER
        ]

    @pytest.mark.asyncio
    async def test_hierarchical_fails_when_every_worker_fails(self, orchestrator, agent_factory):
        lead = agent_factory("a", auto_complete=True)
        await orchestrator.register_agent(lead)
        await orchestrator.register_agent(agent_factory("b", auto_complete=True, fail=True))
        await orchestrator.register_agent(agent_factory("c", auto_complete=True, fail=True))

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.HIERARCHICAL))
        assert task.status == TaskStatus.FAILED
        assert task.error_code == "CollaborationAborted"
        assert "every worker failed" in task.error
        # Plan phase only; no aggregation
        assert len(lead.requests) == 1

    @pytest.mark.asyncio
    async def test_consensus_majority(self, orchestrator, agent_factory):
        for agent_id, answer in (("a", "yes"), ("b", "yes"), ("c", "no")):
            await orchestrator.register_agent(agent_factory(agent_id, auto_complete=True, result=answer))

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.CONSENSUS))
        assert task.status == TaskStatus.COMPLETED
        assert task.output["consensus"] == "yes"
        assert task.output["agreement"] == pytest.approx(0.6667)
        assert task.output["rounds"] == 1
        assert task.output["policy"] == "majority"
        assert task.output["votes"] == {"a": "yes", "b": "yes", "c": "no"}

    @pytest.mark.asyncio
    async def test_consensus_exhausts_rounds(self, orchestrator, agent_factory):
        agents = []
        for agent_id in ("a", "b", "c"):
            agent = agent_factory(agent_id, auto_complete=True, result=f"answer-{agent_id}")
            agents.append(agent)
            await orchestrator.register_agent(agent)

        task = await self.run(orchestrator, collaborative("t", CollaborationStrategy.CONSENSUS, max_rounds=2))
        assert task.status == TaskStatus.FAILED
        assert task.error_code == "CollaborationQuorumFailure"
        assert len(agents[0].requests) == 2
        second_round = agents[0].requests[1].context["collaboration"]
        assert second_round["round"] == 2
        assert second_round["previous_proposals"]["b"] == "answer-b"
        assert orchestrator.coordinator.session_for_task("t").rounds == 2

    @pytest.mark.asyncio
    async def test_consensus_highest_confidence(self, orchestrator, agent_factory):
        await orchestrator.register_agent(agent_factory("a", auto_complete=True, result="A", confidence=0.9))
        await orchestrator.register_agent(agent_factory("b", auto_complete=True, result="B", confidence=0.4))

        task = await self.run(orchestrator, collaborative(
            "t", CollaborationStrategy.CONSENSUS, min_agents=2, agreement_policy="highest_confidence"
        ))
        assert task.output["consensus"] == "A"
        assert task.output["agreement"] == 0.9

    @pytest.mark.asyncio
    async def test_custom_agreement_policy(self, orchestrator, agent_factory):
        await self.add_trio(orchestrator, agent_factory)
        orchestrator.register_agreement_policy("first", lambda participants: (participants[0].output, 1.0))
        assert "first" in orchestrator.coordinator.policies

        task = await self.run(orchestrator, collaborative(
            "t", CollaborationStrategy.CONSENSUS, agreement_policy="first"
        ))
        assert task.output["consensus"] == {"part_a": "a"}

    @pytest.mark.asyncio
    async def test_unknown_policy_fails(self, orchestrator, agent_factory):
        await self.add_trio(orchestrator, agent_factory)
        task = await self.run(orchestrator, collaborative(
            "t", CollaborationStrategy.CONSENSUS, agreement_policy="coin_flip"
        ))
        assert task.status == TaskStatus.FAILED
        assert "unknown agreement policy coin_flip" in task.error

    @pytest.mark.asyncio
    async def test_cancel_running_session(self, orchestrator, agent_factory, wait_until):
        agents = [agent_factory(agent_id) for agent_id in ("a", "b", "c")]
        for agent in agents:
            await orchestrator.register_agent(agent)
        await orchestrator.submit_task(collaborative("t", CollaborationStrategy.PARALLEL))
        await orchestrator.scheduler.tick()
        await wait_until(lambda: all(agent.is_waiting("t") for agent in agents))

        await orchestrator.cancel_task("t", reason="stop")
        task = await orchestrator.wait_for_task("t", timeout=2)

        assert task.status == TaskStatus.FAILED
        assert task.error == "Cancelled: stop"
        assert all(agent.cancelled == ["t"] for agent in agents)
        session = orchestrator.coordinator.session_for_task("t")
        assert session.status == SessionStatus.ABANDONED
        for agent_id in ("a", "b", "c"):
            assert orchestrator.tracker.running_tasks(agent_id) == set()

    @pytest.mark.asyncio
    async def test_session_events(self, orchestrator, agent_factory):
        await self.add_trio(orchestrator, agent_factory)
        await self.run(orchestrator, collaborative("t", CollaborationStrategy.PARALLEL))
        created = orchestrator.event_bus.history(EventType.SESSION_CREATED)
        closed = orchestrator.event_bus.history(EventType.SESSION_COMPLETED)
        assert created[0].payload["participants"] == ["a", "b", "c"]
        assert closed[0].payload["session_id"] == created[0].payload["session_id"]
        assert orchestrator.list_sessions(SessionStatus.COMPLETED)[0].task_id == "t"
