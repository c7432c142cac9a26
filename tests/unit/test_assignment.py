"""Tests for the agent assignment manager."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from agent_fleet.core.agent import Agent, AgentStatus
from agent_fleet.core.task import (
    Artifact,
    ArtifactType,
    Persona,
    Task,
    TaskOutcome,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from agent_fleet.errors import AgentTimeout, AssignmentRace


def _make_task(task_id, persona=Persona.DEVELOPER, depends_on=None, title=None, **overrides):
    return Task(
        id=task_id,
        title=title or f"Task {task_id}",
        description="Implement the thing",
        persona=persona,
        depends_on=list(depends_on or []),
        **overrides,
    )


def _artifact(name):
    return Artifact(id=name, type=ArtifactType.FILE, name=name, path=f"out/{name}", size=10)


def _assert_partial_bijection(ctx):
    bound = [a for a in ctx.agents.values() if a.current_task_id is not None]
    task_ids = [a.current_task_id for a in bound]
    assert len(task_ids) == len(set(task_ids))
    for agent in bound:
        assert ctx.tasks[agent.current_task_id].assigned_agent == agent.id
    for task in ctx.tasks.values():
        if task.status == TaskStatus.IN_PROGRESS:
            holders = [a.id for a in bound if a.current_task_id == task.id]
            assert holders == [task.assigned_agent]


@pytest.fixture
def fleet(ctx, assignments):
    for agent_id, persona in (("dev-1", Persona.DEVELOPER), ("dev-2", Persona.DEVELOPER), ("qa-1", Persona.QA)):
        assignments.register_agent(Agent(id=agent_id, persona=persona))
    return assignments


class TestAssign:
    def test_binds_by_persona_in_ready_order(self, ctx, scheduler, fleet):
        scheduler.register_tasks([
            _make_task("t-low", priority=TaskPriority.LOW),
            _make_task("t-high", priority=TaskPriority.HIGH),
            _make_task("t-med"),
            _make_task("q-1", persona=Persona.QA),
        ])

        assignments = fleet.assign()

        pairs = {(a.agent_id, a.task_id) for a in assignments}
        assert pairs == {("dev-1", "t-high"), ("dev-2", "t-med"), ("qa-1", "q-1")}
        assert ctx.tasks["t-low"].status == TaskStatus.READY
        assert ctx.agents["dev-1"].status == AgentStatus.BUSY
        assert ctx.tasks["t-high"].status == TaskStatus.IN_PROGRESS
        assert ctx.tasks["t-high"].fingerprint is not None
        assert ctx.cache.is_in_flight(ctx.tasks["t-high"].fingerprint)
        _assert_partial_bijection(ctx)

    def test_backlog_is_not_an_error(self, ctx, scheduler, fleet):
        scheduler.register_tasks([_make_task(f"t{i}") for i in range(4)])

        assert len(fleet.assign()) == 2
        assert fleet.assign() == []
        assert fleet.backlog() == 2
        _assert_partial_bijection(ctx)

    def test_no_agent_for_persona(self, ctx, scheduler, fleet):
        scheduler.register_task(_make_task("ops", persona=Persona.DEVOPS))
        assert fleet.assign() == []
        assert ctx.tasks["ops"].status == TaskStatus.READY

    def test_offline_agents_are_skipped(self, ctx, scheduler, fleet):
        fleet.set_offline("qa-1")
        scheduler.register_task(_make_task("q-1", persona=Persona.QA))
        assert fleet.assign() == []
        assert fleet.capacity() == 2

        fleet.set_online("qa-1")
        assert [a.agent_id for a in fleet.assign()] == ["qa-1"]

    def test_assignment_is_logged_as_milestone(self, ctx, scheduler, fleet):
        scheduler.register_task(_make_task("t1"))
        fleet.assign()
        messages = [(e.message, e.milestone) for e in ctx.execution_log.entries("t1")]
        assert ("Assigned to agent dev-1", True) in messages

    def test_double_binding_detected_before_mutation(self, ctx, scheduler, fleet):
        scheduler.register_task(_make_task("t1"))
        ctx.tasks["t1"].assigned_agent = "ghost"

        with pytest.raises(AssignmentRace):
            fleet.assign()

        assert ctx.tasks["t1"].status == TaskStatus.READY
        assert ctx.agents["dev-1"].is_idle

    def test_duplicate_agent_registration(self, fleet):
        with pytest.raises(ValueError):
            fleet.register_agent(Agent(id="dev-1", persona=Persona.DEVELOPER))


class TestRelease:
    def test_release_completes_and_frees_agent(self, ctx, scheduler, fleet):
        start = utcnow()
        scheduler.register_tasks([_make_task("A"), _make_task("B", depends_on=["A"])])
        fleet.assign(now=start)

        task = fleet.release(
            "dev-1", TaskOutcome.succeeded([_artifact("a.py")]), task_id="A", now=start + timedelta(seconds=30),
        )

        assert task.id == "A"
        assert task.status == TaskStatus.COMPLETED
        assert task.elapsed_seconds == 30
        assert ctx.agents["dev-1"].is_idle
        assert ctx.agents["dev-1"].active_seconds == 30
        assert ctx.tasks["B"].status == TaskStatus.READY
        assert [a.task_id for a in fleet.assign()] == ["B"]

    def test_failure_blocks_dependents(self, ctx, scheduler, fleet):
        scheduler.register_tasks([_make_task("A"), _make_task("B", depends_on=["A"])])
        fleet.assign()

        fleet.release("dev-1", TaskOutcome.failed("tests red"))

        assert ctx.tasks["A"].status == TaskStatus.FAILED
        assert ctx.tasks["B"].status == TaskStatus.BLOCKED
        assert ctx.agents["dev-1"].is_idle

    def test_stale_release_is_ignored(self, ctx, scheduler, fleet):
        scheduler.register_tasks([_make_task("A")])
        fleet.assign()

        assert fleet.release("dev-1", TaskOutcome.succeeded(), task_id="other") is None
        assert fleet.release("dev-2", TaskOutcome.succeeded()) is None
        assert ctx.tasks["A"].status == TaskStatus.IN_PROGRESS
        assert ctx.agents["dev-1"].current_task_id == "A"

    def test_release_after_cancel_request(self, ctx, scheduler, fleet):
        scheduler.register_tasks([_make_task("A"), _make_task("B", depends_on=["A"])])
        fleet.assign()
        assert scheduler.cancel("A", "descoped") is False

        fleet.release("dev-1", TaskOutcome(success=False, cancelled=True))

        assert ctx.tasks["A"].status == TaskStatus.CANCELLED
        assert ctx.tasks["B"].status == TaskStatus.BLOCKED
        assert ctx.agents["dev-1"].is_idle


class TestContextCacheIntegration:
    def test_recorded_fingerprint_completes_without_agent(self, ctx, scheduler, fleet):
        task = _make_task("fresh")
        outcome = TaskOutcome.succeeded([_artifact("cached.py")], summary="from an earlier run")
        ctx.cache.record(ctx.cache.compute_fingerprint(task.inputs([])), outcome)

        scheduler.register_task(task)
        assignments = fleet.assign()

        assert assignments == []
        assert task.status == TaskStatus.COMPLETED
        assert [a.name for a in task.artifacts] == ["cached.py"]
        assert task.result_summary == "from an earlier run"
        assert all(a.is_idle for a in ctx.agents.values())

    def test_shared_in_flight_fingerprint_dispatches_once(self, ctx, scheduler, fleet):
        scheduler.register_tasks([
            _make_task("dup-1", title="Generate client"),
            _make_task("dup-2", title="Generate client"),
        ])

        assignments = fleet.assign()

        assert [a.task_id for a in assignments] == ["dup-1"]
        assert ctx.tasks["dup-2"].status == TaskStatus.READY
        assert ctx.agents["dev-2"].is_idle
        assert fleet.assign() == []

        fleet.release("dev-1", TaskOutcome.succeeded([_artifact("client.py")]))

        assert ctx.tasks["dup-2"].status == TaskStatus.COMPLETED
        assert [a.name for a in ctx.tasks["dup-2"].artifacts] == ["client.py"]
        assert ctx.agents["dev-2"].is_idle

    def test_waiter_runs_after_owner_failure(self, ctx, scheduler, fleet):
        scheduler.register_tasks([
            _make_task("dup-1", title="Generate client"),
            _make_task("dup-2", title="Generate client"),
        ])
        fleet.assign()
        fleet.release("dev-1", TaskOutcome.failed("network"))

        assignments = fleet.assign()

        assert [a.task_id for a in assignments] == ["dup-2"]


class TestTimeouts:
    def test_reap_blocks_task_and_frees_agent(self, ctx, scheduler, fleet):
        start = utcnow()
        scheduler.register_tasks([_make_task("A"), _make_task("B", depends_on=["A"])])
        fleet.assign(now=start)

        assert fleet.reap_timeouts(now=start + timedelta(seconds=30)) == []

        reaped = fleet.reap_timeouts(now=start + timedelta(seconds=61))

        assert len(reaped) == 1
        assert isinstance(reaped[0], AgentTimeout)
        assert reaped[0].task_id == "A"
        assert ctx.tasks["A"].status == TaskStatus.BLOCKED
        assert ctx.tasks["A"].blockers == ["agent dev-1 timed out after 61s"]
        assert ctx.tasks["B"].status == TaskStatus.BLOCKED
        assert ctx.agents["dev-1"].is_idle
        assert not ctx.cache.is_in_flight(ctx.tasks["A"].fingerprint)

    def test_late_release_after_reap_is_ignored(self, ctx, scheduler, fleet):
        start = utcnow()
        scheduler.register_task(_make_task("A"))
        fleet.assign(now=start)
        fleet.reap_timeouts(now=start + timedelta(seconds=120))

        assert fleet.release("dev-1", TaskOutcome.succeeded(), task_id="A") is None
        assert ctx.tasks["A"].status == TaskStatus.BLOCKED

    def test_timeout_disabled(self, ctx, scheduler):
        from agent_fleet.core.assignment import AgentAssignmentManager

        manager = AgentAssignmentManager(ctx, scheduler, agent_timeout_seconds=None)
        manager.register_agent(Agent(id="dev-1", persona=Persona.DEVELOPER))
        scheduler.register_task(_make_task("A"))
        start = utcnow()
        manager.assign(now=start)
        assert manager.reap_timeouts(now=start + timedelta(days=2)) == []


class TestConcurrentAssignment:
    def test_racing_assign_and_release_never_double_binds(self, ctx, scheduler, fleet):
        for i in range(3, 7):
            fleet.register_agent(Agent(id=f"dev-{i}", persona=Persona.DEVELOPER))
        scheduler.register_tasks(
            [_make_task(f"t{i}") for i in range(40)]
            + [_make_task(f"q{i}", persona=Persona.QA) for i in range(10)]
        )
        bound = []
        violations = []
        start = threading.Barrier(8)

        def check_bindings():
            with ctx.lock:
                held = [a.current_task_id for a in ctx.agents.values() if a.current_task_id is not None]
                if len(held) != len(set(held)):
                    violations.append(held)
                for task_id in held:
                    holders = [a.id for a in ctx.agents.values() if a.current_task_id == task_id]
                    if holders != [ctx.tasks[task_id].assigned_agent]:
                        violations.append((task_id, holders))

        def worker():
            start.wait()
            for _ in range(500):
                if all(t.status == TaskStatus.COMPLETED for t in list(ctx.tasks.values())):
                    return
                for assignment in fleet.assign():
                    bound.append(assignment.task_id)
                    check_bindings()
                    fleet.release(assignment.agent_id, TaskOutcome.succeeded(), task_id=assignment.task_id)
                check_bindings()

        with ThreadPoolExecutor(max_workers=8) as pool:
            for future in [pool.submit(worker) for _ in range(8)]:
                future.result()

        assert violations == []
        assert sorted(bound) == sorted(ctx.tasks)
        assert all(t.status == TaskStatus.COMPLETED for t in ctx.tasks.values())
        assert all(a.is_idle for a in ctx.agents.values())
        _assert_partial_bijection(ctx)
