"""Tests for the execution engine graph walk."""

import pytest

from salesflow.models.core import ExecutionLogStatus


@pytest.fixture
def engine(components):
    return components.execution_engine


def store(components, flow):
    flow_id = components.flow_manager.create_flow(flow)
    return components.flow_manager.get_flow(flow_id)


def statuses(components, run_id):
    return [(entry.node_id, entry.status) for entry in components.execution_log.list_entries(run_id=run_id)]


class TestScenarios:
    """End-to-end runs over small flows."""

    def test_vip_branching_flow(self, components, engine, seed, gateway, make_flow):
        seed.tag("t-vip", "vip")
        seed.tag("t-priority", "priority")
        seed.tag("t-standard", "standard")
        seed.lead(tags=["t-vip"])
        flow = store(components, make_flow(
            nodes=[
                {"id": "greet", "type": "send_message", "data": {"message": "Hi"}},
                {"id": "check", "type": "condition",
                 "data": {"field": "tags", "operator": "contains", "value": "vip"}},
                {"id": "prio", "type": "tag", "data": {"action": "add", "tag_name": "priority"}},
                {"id": "std", "type": "tag", "data": {"action": "add", "tag_name": "standard"}},
            ],
            edges=[
                {"source": "greet", "target": "check"},
                {"source": "check", "target": "prio", "label": "true"},
                {"source": "check", "target": "std", "sourceHandle": "false"},
            ],
        ))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.nodes_executed == 3
        assert len(gateway.sent) == 1
        assert seed.lead_tag_names("lead-1") == {"vip", "priority"}
        assert statuses(components, result.run_id) == [
            ("greet", ExecutionLogStatus.RUNNING),
            ("greet", ExecutionLogStatus.SUCCESS),
            ("check", ExecutionLogStatus.RUNNING),
            ("check", ExecutionLogStatus.SUCCESS),
            ("prio", ExecutionLogStatus.RUNNING),
            ("prio", ExecutionLogStatus.SUCCESS),
        ]

    def test_insecure_webhook_fails_without_calls(self, components, engine, seed, transport, make_flow):
        seed.lead()
        flow = store(components, make_flow(
            nodes=[{"id": "hook", "type": "webhook", "data": {"url": "http://insecure.test"}}],
        ))

        result = engine.execute(flow, "lead-1")

        assert not result.success
        assert result.nodes_executed == 1
        assert transport.calls == []
        entries = components.execution_log.list_entries(run_id=result.run_id)
        terminal = [entry for entry in entries if entry.status != ExecutionLogStatus.RUNNING]
        assert len(terminal) == 1
        assert terminal[0].status == ExecutionLogStatus.ERROR
        assert "https" in terminal[0].message
        assert result.errors[0].startswith("webhook: Invalid webhook configuration")


class TestTermination:

    def test_zero_node_flow_is_noop(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(nodes=[]))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.nodes_executed == 0
        assert components.flow_manager.get_flow(flow.id).executions_count == 0

    def test_node_without_edge_ends_run(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(
            nodes=[{"id": "a", "type": "wait"}, {"id": "b", "type": "wait"}],
        ))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.nodes_executed == 1

    def test_failure_stops_run(self, components, engine, seed, gateway, make_flow):
        seed.lead()
        flow = store(components, make_flow(
            nodes=[
                {"id": "a", "type": "wait"},
                {"id": "b", "type": "tag", "data": {"action": "add", "tag_name": "missing"}},
                {"id": "c", "type": "send_message", "data": {"message": "never"}},
            ],
            edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "c"}],
        ))

        result = engine.execute(flow, "lead-1")

        assert not result.success
        assert result.nodes_executed == 2
        assert result.errors == ["tag: Tag not found: missing"]
        assert gateway.sent == []

    def test_missing_condition_branch_ends_successfully(self, components, engine, seed, make_flow):
        seed.lead(source="facebook")
        flow = store(components, make_flow(
            nodes=[
                {"id": "check", "type": "condition",
                 "data": {"field": "source", "operator": "equals", "value": "instagram"}},
                {"id": "yes", "type": "wait"},
            ],
            edges=[{"source": "check", "target": "yes", "label": "true"}],
        ))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.nodes_executed == 1

    def test_first_unlabeled_edge_wins(self, components, engine, seed, make_flow):
        seed.tag("t-a", "first")
        seed.tag("t-b", "second")
        seed.lead()
        flow = store(components, make_flow(
            nodes=[
                {"id": "start", "type": "wait"},
                {"id": "a", "type": "tag", "data": {"action": "add", "tag_id": "t-a"}},
                {"id": "b", "type": "tag", "data": {"action": "add", "tag_id": "t-b"}},
            ],
            edges=[{"source": "start", "target": "a"}, {"source": "start", "target": "b"}],
        ))

        engine.execute(flow, "lead-1")

        assert seed.lead_tag_names("lead-1") == {"first"}

    def test_step_guard_halts_cycle(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(
            nodes=[{"id": "a", "type": "wait"}, {"id": "b", "type": "wait"}],
            edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        ))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.halted_by_step_limit
        assert result.nodes_executed == 2 * engine.max_visits_per_node
        last = components.execution_log.list_entries(run_id=result.run_id)[-1]
        assert last.status == ExecutionLogStatus.SKIPPED
        assert "Step limit" in last.message


class TestStateVisibility:

    def test_move_stage_visible_to_following_condition(self, components, engine, seed, make_flow):
        seed.stage("stage-new", "New")
        seed.stage("stage-qualified", "Qualified")
        seed.tag("t-ok", "moved")
        seed.lead(stage_id="stage-new")
        flow = store(components, make_flow(
            nodes=[
                {"id": "move", "type": "move_stage", "data": {"stage_id": "stage-qualified"}},
                {"id": "check", "type": "condition",
                 "data": {"field": "stage_id", "operator": "equals", "value": "stage-qualified"}},
                {"id": "mark", "type": "tag", "data": {"action": "add", "tag_id": "t-ok"}},
            ],
            edges=[
                {"source": "move", "target": "check"},
                {"source": "check", "target": "mark", "label": "true"},
            ],
        ))

        result = engine.execute(flow, "lead-1")

        assert result.nodes_executed == 3
        assert seed.lead_tag_names("lead-1") == {"moved"}


class TestCountersAndDataErrors:

    def test_counter_increments_once_per_run(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(nodes=[{"id": "a", "type": "wait"}]))

        engine.execute(flow, "lead-1")
        engine.execute(flow, "lead-1")

        assert components.flow_manager.get_flow(flow.id).executions_count == 2

    def test_counter_increments_on_failed_run(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(
            nodes=[{"id": "hook", "type": "webhook", "data": {"url": "http://insecure.test"}}],
        ))

        engine.execute(flow, "lead-1")

        assert components.flow_manager.get_flow(flow.id).executions_count == 1

    def test_missing_lead_aborts_before_nodes(self, components, engine, make_flow):
        flow = store(components, make_flow(nodes=[{"id": "a", "type": "wait"}]))

        result = engine.execute(flow, "ghost")

        assert not result.success
        assert result.nodes_executed == 0
        assert components.flow_manager.get_flow(flow.id).executions_count == 0
        assert components.execution_log.list_entries(flow_id=flow.id) == []

    def test_missing_flow_aborts(self, engine, seed):
        seed.lead()
        result = engine.execute_by_id("no-such-flow", "lead-1")
        assert not result.success
        assert result.nodes_executed == 0
        assert "Flow not found" in result.errors[0]

    def test_inactive_flow_is_noop(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(nodes=[{"id": "a", "type": "wait"}], is_active=False))

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert result.nodes_executed == 0

    def test_unsaved_flow_runs_without_counter(self, components, engine, seed, make_flow):
        seed.lead()
        flow = make_flow(nodes=[{"id": "a", "type": "wait"}])

        result = engine.execute(flow, "lead-1")

        assert result.success
        assert components.execution_log.list_entries(flow_id="unsaved")[0].node_id == "a"

    def test_submit_runs_on_pool(self, components, engine, seed, make_flow):
        seed.lead()
        flow = store(components, make_flow(nodes=[{"id": "a", "type": "wait"}]))

        result = engine.submit(flow.id, "lead-1").result(timeout=10)

        assert result.success
        assert result.nodes_executed == 1
        assert engine.get_active_runs() == []
