"""
Collaboration coordinator: multi-agent execution of a single task.

A session reserves its whole agent group up front. The lead (first
participant) holds its slot until the session terminates and is the
task's assigned agent; every other participant releases its slot as soon
as its own work is done.
"""

import asyncio
import json
import math
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..agents.base import AgentResponse
from ..models.collaboration import (
    CollaborationSession, Participant, ParticipantRole, ParticipantStatus, SessionStatus
)
from ..models.core import CollaborationStrategy, Task
from ..models.errors import (
    CapacityExceeded, CollaborationAborted, CollaborationQuorumFailure, OrchestratorError
)
from ..utils.config import CollaborationConfig
from ..utils.logging import LoggerMixin
from .capacity import TaskOutcome
from .events import EventType
from .scheduler import Scheduler

AgreementPolicy = Callable[[List[Participant]], Tuple[Any, float]]


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def majority_vote(participants: List[Participant]) -> Tuple[Any, float]:
    """
    Most common output among successful participants.

    Agreement is the winner's vote count over all participants, failed ones
    included. Ties go to the output proposed first.
    """
    if not participants:
        return None, 0.0
    counts: Counter = Counter()
    first_seen: Dict[str, Any] = {}
    for participant in participants:
        if participant.status != ParticipantStatus.COMPLETED:
            continue
        key = _canonical(participant.output)
        counts[key] += 1
        first_seen.setdefault(key, participant.output)
    if not counts:
        return None, 0.0
    best_key = max(first_seen, key=lambda k: counts[k])
    return first_seen[best_key], counts[best_key] / len(participants)


def highest_confidence(participants: List[Participant]) -> Tuple[Any, float]:
    """Output of the most confident successful participant; agreement is that confidence."""
    successful = [p for p in participants if p.status == ParticipantStatus.COMPLETED]
    if not successful:
        return None, 0.0
    best = max(successful, key=lambda p: p.confidence or 0.0)
    return best.output, best.confidence or 0.0


AGREEMENT_POLICIES: Dict[str, AgreementPolicy] = {
    "majority": majority_vote,
    "highest_confidence": highest_confidence,
}


class CollaborationCoordinator(LoggerMixin):
    """Runs sequential, parallel, hierarchical and consensus sessions."""

    def __init__(self, scheduler: Scheduler, config: Optional[CollaborationConfig] = None):
        self.scheduler = scheduler
        self.selector = scheduler.selector
        self.tracker = scheduler.tracker
        self.dispatcher = scheduler.dispatcher
        self.event_bus = scheduler.event_bus
        self.store = scheduler.store
        self.config = config or CollaborationConfig()

        self._policies: Dict[str, AgreementPolicy] = dict(AGREEMENT_POLICIES)
        self._sessions: Dict[str, CollaborationSession] = {}
        self._active: Dict[str, str] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._cancel_requests: Dict[str, str] = {}
        self._strategies = {
            CollaborationStrategy.SEQUENTIAL: self._run_sequential,
            CollaborationStrategy.PARALLEL: self._run_parallel,
            CollaborationStrategy.HIERARCHICAL: self._run_hierarchical,
            CollaborationStrategy.CONSENSUS: self._run_consensus,
        }
        scheduler.attach_coordinator(self)

    def register_policy(self, name: str, policy: AgreementPolicy):
        """Add or replace a consensus agreement policy."""
        self._policies[name] = policy

    @property
    def policies(self) -> List[str]:
        return sorted(self._policies)

    # Session start (called by the scheduler under its lock)

    def try_start(self, task: Task) -> Optional[CollaborationSession]:
        """
        Reserve an agent group for a collaborative task.

        Returns:
            The new session, or None if fewer than the minimum agents have
            capacity (nothing stays reserved in that case)
        """
        spec = task.collaboration
        candidates = self.selector.rank(task, require_capacity=True)
        if len(candidates) < spec.min_agents:
            return None

        reserved: List[str] = []
        for candidate in candidates:
            if len(reserved) >= spec.group_size:
                break
            try:
                self.tracker.reserve(candidate.agent_id, task.task_id)
            except CapacityExceeded:
                continue
            reserved.append(candidate.agent_id)

        if len(reserved) < spec.min_agents:
            for agent_id in reserved:
                self.tracker.release(agent_id, task.task_id, TaskOutcome.CANCELLED)
            return None

        other_role = (ParticipantRole.WORKER if spec.strategy == CollaborationStrategy.HIERARCHICAL
                      else ParticipantRole.MEMBER)
        participants = [
            Participant(agent_id=agent_id, role=ParticipantRole.LEAD if index == 0 else other_role)
            for index, agent_id in enumerate(reserved)
        ]
        session = CollaborationSession(task_id=task.task_id, strategy=spec.strategy, participants=participants)
        self._sessions[session.session_id] = session
        self._active[task.task_id] = session.session_id

        self.event_bus.publish(
            EventType.SESSION_CREATED,
            session_id=session.session_id,
            task_id=task.task_id,
            strategy=spec.strategy.value,
            participants=session.agent_ids
        )
        return session

    def launch(self, task: Task, session: CollaborationSession):
        run = asyncio.create_task(self._run(task.task_id, session), name=f"collaboration-{task.task_id}")
        run.add_done_callback(lambda t: self._on_run_done(task.task_id, session, t))
        self._runs[task.task_id] = run

    def _on_run_done(self, task_id: str, session: CollaborationSession, run: asyncio.Task):
        # Cancelled before its first step, so _run never saw the CancelledError
        if run.cancelled() and task_id in self._cancel_requests and task_id in self._active:
            followup = asyncio.create_task(self._finish_cancelled(task_id, session))
            self.scheduler._background.add(followup)
            followup.add_done_callback(self.scheduler._background.discard)

    # Session execution

    async def _run(self, task_id: str, session: CollaborationSession):
        task = self.store.require(task_id)
        strategy = self._strategies[session.strategy]
        try:
            output = await strategy(task, session)
        except asyncio.CancelledError:
            if task_id not in self._cancel_requests:
                raise
            await self._finish_cancelled(task_id, session)
            return
        except OrchestratorError as e:
            self._close(session, SessionStatus.FAILED, error=e.message)
            await self.scheduler.finish_collaboration(
                task_id, session, False, error=e.message, error_code=e.error_code,
                retryable=not isinstance(e, CollaborationQuorumFailure)
            )
            return
        except Exception as e:
            self.log_operation_error("collaboration", e, task_id=task_id, session_id=session.session_id)
            self._close(session, SessionStatus.FAILED, error=str(e))
            await self.scheduler.finish_collaboration(
                task_id, session, False, error=str(e) or type(e).__name__, error_code=type(e).__name__
            )
            return

        self._close(session, SessionStatus.COMPLETED, result=output)
        await self.scheduler.finish_collaboration(task_id, session, True, output=output)

    async def _finish_cancelled(self, task_id: str, session: CollaborationSession):
        reason = self._cancel_requests.get(task_id, "cancelled")
        for participant in session.participants:
            if participant.status in (ParticipantStatus.PENDING, ParticipantStatus.IN_PROGRESS):
                participant.status = ParticipantStatus.SKIPPED
        self._close(session, SessionStatus.ABANDONED, error=f"Cancelled: {reason}")
        await self.scheduler.finish_collaboration(task_id, session, False, cancel_reason=reason)

    def _close(self, session: CollaborationSession, status: SessionStatus,
               result: Any = None, error: Optional[str] = None):
        session.finish(status, result=result, error=error)
        self._active.pop(session.task_id, None)
        self._runs.pop(session.task_id, None)
        self._cancel_requests.pop(session.task_id, None)

        event_type = EventType.SESSION_COMPLETED if status == SessionStatus.COMPLETED else EventType.SESSION_FAILED
        self.event_bus.publish(
            event_type,
            session_id=session.session_id,
            task_id=session.task_id,
            strategy=session.strategy.value,
            status=status.value,
            error=error
        )
        self.logger.info("Collaboration session closed", session_id=session.session_id,
                         task_id=session.task_id, status=status.value)

    async def _invoke(self, task: Task, session: CollaborationSession, participant: Participant,
                      extra: Dict[str, Any], prompt: Optional[str] = None) -> AgentResponse:
        participant.status = ParticipantStatus.IN_PROGRESS
        request = self.scheduler.build_request(task, extra_context={
            "collaboration": {
                "session_id": session.session_id,
                "strategy": session.strategy.value,
                "role": participant.role.value,
                "participants": session.agent_ids,
                **extra,
            }
        })
        if prompt:
            request.prompt = prompt
        response = await self.dispatcher.invoke(participant.agent_id, request)
        participant.record(response.success, response.result, response.error,
                           response.confidence, response.duration_ms)
        return response

    def _release_participant(self, task: Task, session: CollaborationSession, participant: Participant):
        """Free a non-lead participant's slot once its work is done."""
        if participant.released or participant.agent_id == session.lead_agent_id:
            return
        self._release(task.task_id, task.task_type.value, participant)
        self.scheduler.after_release(participant.agent_id)
        self.scheduler.wake()

    def _release(self, task_id: str, task_type: Optional[str], participant: Participant):
        if participant.status == ParticipantStatus.COMPLETED:
            outcome = TaskOutcome.COMPLETED
        elif participant.status == ParticipantStatus.FAILED:
            outcome = TaskOutcome.FAILED
        else:
            outcome = TaskOutcome.CANCELLED
        self.tracker.release(participant.agent_id, task_id, outcome, participant.duration_ms or None, task_type)
        participant.released = True

    def release_all(self, session: CollaborationSession, success: bool):
        """Release every slot the session still holds. Called by the scheduler under its lock."""
        task = self.store.get(session.task_id)
        task_type = task.task_type.value if task else None
        for participant in session.participants:
            if not participant.released:
                self._release(session.task_id, task_type, participant)

    # Strategies

    async def _run_sequential(self, task: Task, session: CollaborationSession) -> Any:
        previous_output = None
        history: List[Dict[str, Any]] = []
        total = len(session.participants)

        for index, participant in enumerate(session.participants):
            response = await self._invoke(task, session, participant, {
                "step": index + 1,
                "total_steps": total,
                "previous_output": previous_output,
                "history": list(history),
            })
            self._release_participant(task, session, participant)
            if not response.success:
                for later in session.participants[index + 1:]:
                    later.status = ParticipantStatus.SKIPPED
                    self._release_participant(task, session, later)
                raise CollaborationAborted(task.task_id, participant.agent_id, response.error or "failed")
            previous_output = response.result
            history.append({"agent_id": participant.agent_id, "output": response.result})

        return previous_output

    def required_successes(self, quorum: Optional[float], participant_count: int) -> int:
        """Participants that must succeed: ceil(quorum * n), or a strict majority when unset."""
        quorum = quorum if quorum is not None else self.config.default_quorum
        if quorum is None:
            return participant_count // 2 + 1
        return max(1, math.ceil(quorum * participant_count))

    async def _run_parallel(self, task: Task, session: CollaborationSession) -> Dict[str, Any]:
        async def run_one(participant: Participant):
            await self._invoke(task, session, participant, {"mode": "independent"})
            self._release_participant(task, session, participant)

        await asyncio.gather(*(run_one(p) for p in session.participants))

        succeeded = session.succeeded()
        failed = session.failed()
        merged: Dict[str, Any] = {}
        for participant in succeeded:
            if isinstance(participant.output, dict):
                merged.update(participant.output)

        aggregate = {
            "results": {p.agent_id: p.output for p in succeeded},
            "merged": merged,
            "succeeded": [p.agent_id for p in succeeded],
            "failed": [p.agent_id for p in failed],
            "errors": {p.agent_id: p.error for p in failed},
            "agent_count": len(session.participants),
            "total_duration_ms": round(sum(p.duration_ms for p in session.participants), 2),
        }

        required = self.required_successes(task.collaboration.quorum, len(session.participants))
        if len(succeeded) < required:
            raise CollaborationQuorumFailure(
                task.task_id, session.strategy.value,
                f"{len(succeeded)} of {len(session.participants)} participants succeeded, {required} required",
                aggregate=aggregate
            )
        return aggregate

    def _assignments(self, plan: Any) -> List[Any]:
        if isinstance(plan, dict):
            plan = plan.get("assignments", [])
        return list(plan) if isinstance(plan, (list, tuple)) else []

    async def _run_hierarchical(self, task: Task, session: CollaborationSession) -> Any:
        lead = session.participants[0]
        workers = session.participants[1:]

        plan = await self._invoke(task, session, lead, {
            "phase": "plan",
            "workers": [w.agent_id for w in workers],
        })
        if not plan.success:
            for worker in workers:
                worker.status = ParticipantStatus.SKIPPED
                self._release_participant(task, session, worker)
            raise CollaborationAborted(task.task_id, lead.agent_id, plan.error or "planning failed")

        assignments = self._assignments(plan.result)

        async def run_worker(index: int, worker: Participant):
            assignment = assignments[index] if index < len(assignments) else None
            prompt = None
            if isinstance(assignment, str):
                prompt = assignment
            elif isinstance(assignment, dict):
                prompt = assignment.get("prompt")
            await self._invoke(task, session, worker, {
                "phase": "execute",
                "lead": lead.agent_id,
                "assignment": assignment,
            }, prompt=prompt)
            self._release_participant(task, session, worker)

        await asyncio.gather(*(run_worker(i, w) for i, w in enumerate(workers)))

        worker_results = {w.agent_id: w.output for w in workers if w.status == ParticipantStatus.COMPLETED}
        worker_errors = {w.agent_id: w.error for w in workers if w.status == ParticipantStatus.FAILED}
        if workers and not worker_results:
            raise CollaborationAborted(task.task_id, lead.agent_id, "every worker failed")

        final = await self._invoke(task, session, lead, {
            "phase": "aggregate",
            "plan": plan.result,
            "worker_results": worker_results,
            "worker_errors": worker_errors,
        })
        if not final.success:
            raise CollaborationAborted(task.task_id, lead.agent_id, final.error or "aggregation failed")
        return final.result

    async def _run_consensus(self, task: Task, session: CollaborationSession) -> Dict[str, Any]:
        spec = task.collaboration
        policy_name = spec.agreement_policy or self.config.agreement_policy
        policy = self._policies.get(policy_name)
        if policy is None:
            raise CollaborationQuorumFailure(task.task_id, session.strategy.value,
                                             f"unknown agreement policy {policy_name}")
        threshold = spec.agreement_threshold or self.config.consensus_threshold
        max_rounds = spec.max_rounds or self.config.max_consensus_rounds

        proposals: Optional[Dict[str, Any]] = None
        agreement = 0.0
        for round_number in range(1, max_rounds + 1):
            session.rounds = round_number
            await asyncio.gather(*(
                self._invoke(task, session, p, {
                    "round": round_number,
                    "max_rounds": max_rounds,
                    "previous_proposals": proposals,
                })
                for p in session.participants
            ))

            winner, agreement = policy(session.participants)
            votes = {p.agent_id: p.output for p in session.succeeded()}
            if votes and agreement >= threshold:
                for participant in session.participants:
                    self._release_participant(task, session, participant)
                return {
                    "consensus": winner,
                    "agreement": round(agreement, 4),
                    "rounds": round_number,
                    "policy": policy_name,
                    "votes": votes,
                }

            self.logger.info("Consensus not reached", task_id=task.task_id, round=round_number,
                             agreement=round(agreement, 4), threshold=threshold)
            proposals = votes

        raise CollaborationQuorumFailure(
            task.task_id, session.strategy.value,
            f"agreement {agreement:.2f} below {threshold} after {max_rounds} rounds"
        )

    # Control and queries

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    def request_cancel(self, task_id: str, reason: str):
        """Ask a running session to stop; the task fails once its agents acknowledge."""
        self._cancel_requests[task_id] = reason
        run = self._runs.get(task_id)
        if run is not None and not run.done():
            run.cancel()
        self.logger.info("Collaboration cancellation requested", task_id=task_id, reason=reason)

    def active_runs(self) -> List[asyncio.Task]:
        return [run for run in self._runs.values() if not run.done()]

    def abandon_all(self) -> List[str]:
        """Release every active session's slots at shutdown. Returns the affected task IDs."""
        abandoned = []
        for task_id, session_id in list(self._active.items()):
            session = self._sessions[session_id]
            self.release_all(session, False)
            session.finish(SessionStatus.ABANDONED, error="orchestrator shutdown")
            abandoned.append(task_id)
        self._active.clear()
        self._runs.clear()
        self._cancel_requests.clear()
        return abandoned

    def get_session(self, session_id: str) -> Optional[CollaborationSession]:
        return self._sessions.get(session_id)

    def session_for_task(self, task_id: str) -> Optional[CollaborationSession]:
        sessions = [s for s in self._sessions.values() if s.task_id == task_id]
        return max(sessions, key=lambda s: s.created_at) if sessions else None

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[CollaborationSession]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        return [s for s in sessions if status is None or s.status == status]
