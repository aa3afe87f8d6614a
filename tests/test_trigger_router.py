"""Tests for the trigger router: stage transitions, rules and inbound messages."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from salesflow.core.exceptions import EntityNotFoundError, StorageError
from salesflow.models.core import (
    AutomationRule,
    ExecutionLogStatus,
    LogSource,
    QueueStatus,
    utc_now,
)


@pytest.fixture
def router(components):
    return components.trigger_router


def add_rule(components, **fields):
    rule = AutomationRule(**fields)
    rule.id = components.rule_manager.create_rule(rule)
    return rule


class TestStageRules:

    def test_high_value_condition_not_met(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.tag("t-high", "high-value")
        seed.lead(value=500)
        rule = add_rule(
            components,
            stage_id="stage-s",
            trigger="on_enter",
            action_type="add_tag",
            action_config={"tag_name": "high-value"},
            conditions=[{"field": "value", "operator": "greater_than", "value": "1000"}],
        )

        report = router.move_lead("lead-1", "stage-s")

        assert [outcome.status for outcome in report.rule_outcomes] == [ExecutionLogStatus.SKIPPED]
        assert seed.lead_tag_names("lead-1") == set()
        entries = components.execution_log.list_entries(flow_id=rule.id)
        assert [(entry.source, entry.status) for entry in entries] == [
            (LogSource.AUTOMATION, ExecutionLogStatus.SKIPPED)
        ]

    def test_high_value_condition_met(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.tag("t-high", "high-value")
        seed.lead(value=5000)
        add_rule(
            components,
            stage_id="stage-s",
            trigger="on_enter",
            action_type="add_tag",
            action_config={"tag_id": "t-high"},
            conditions=[{"field": "value", "operator": "greater_than", "value": "1000"}],
        )

        report = router.move_lead("lead-1", "stage-s")

        assert report.rule_outcomes[0].status == ExecutionLogStatus.SUCCESS
        assert seed.lead_tag_names("lead-1") == {"high-value"}

    def test_execution_order(self, components, router, seed, make_flow):
        """on_exit of the old stage, bound flow, on_enter by position, then after_time enqueue."""
        seed.stage("stage-a", "A")
        seed.stage("stage-b", "B")
        seed.lead(stage_id="stage-a", responsible_user="user-1")
        flow_id = components.flow_manager.create_flow(
            make_flow(nodes=[{"id": "w", "type": "wait"}], name="Stage B bot")
        )
        seed.bind_flow("stage-b", flow_id)

        exit_rule = add_rule(components, stage_id="stage-a", trigger="on_exit",
                             action_type="create_task", action_config={"title": "Exit"})
        second = add_rule(components, stage_id="stage-b", trigger="on_enter", position=2,
                          action_type="create_task", action_config={"title": "Second"})
        first = add_rule(components, stage_id="stage-b", trigger="on_enter", position=1,
                         action_type="create_task", action_config={"title": "First"})
        add_rule(components, stage_id="stage-b", trigger="on_enter", is_active=False,
                 action_type="create_task", action_config={"title": "Inactive"})
        delayed = add_rule(components, stage_id="stage-b", trigger="after_time",
                           trigger_delay_hours=2, action_type="notify_responsible")

        report = router.move_lead("lead-1", "stage-b", performed_by="user-1")

        assert [outcome.rule_id for outcome in report.rule_outcomes] == [exit_rule.id, first.id, second.id]
        assert len(report.flow_results) == 1 and report.flow_results[0].success
        assert [entry.automation_id for entry in report.queued] == [delayed.id]

        tasks = components.entity_store.list_history("lead-1", "task_created")
        assert [task["details"]["title"] for task in tasks] == ["Exit", "First", "Second"]

        flow_entries = components.execution_log.list_entries(flow_id=flow_id)
        first_entries = components.execution_log.list_entries(flow_id=first.id)
        exit_entries = components.execution_log.list_entries(flow_id=exit_rule.id)
        assert exit_entries[-1].id < flow_entries[0].id < first_entries[0].id

    def test_failing_rule_does_not_stop_later_rules(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.lead()
        add_rule(components, stage_id="stage-s", trigger="on_enter", position=1,
                 action_type="add_tag", action_config={"tag_name": "does-not-exist"})
        add_rule(components, stage_id="stage-s", trigger="on_enter", position=2,
                 action_type="create_task", action_config={"title": "Call"})

        report = router.move_lead("lead-1", "stage-s")

        assert [outcome.status for outcome in report.rule_outcomes] == [
            ExecutionLogStatus.ERROR,
            ExecutionLogStatus.SUCCESS,
        ]
        assert len(components.entity_store.list_history("lead-1", "task_created")) == 1

    def test_after_time_enqueued_even_without_on_enter(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.lead()
        rule = add_rule(components, stage_id="stage-s", trigger="after_time",
                        trigger_delay_hours=0, action_type="create_task")

        before = utc_now()
        report = router.move_lead("lead-1", "stage-s")

        assert report.rule_outcomes == []
        entry = report.queued[0]
        assert entry.automation_id == rule.id
        assert entry.status == QueueStatus.PENDING
        # Non-positive delays fall back to the default of one hour
        assert before + timedelta(hours=1) <= entry.execute_at <= utc_now() + timedelta(hours=1)

    def test_move_to_unknown_stage_raises(self, router, seed):
        seed.lead()
        with pytest.raises(EntityNotFoundError):
            router.move_lead("lead-1", "nowhere")

    def test_move_to_same_stage_is_noop(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.lead(stage_id="stage-s")
        add_rule(components, stage_id="stage-s", trigger="on_enter", action_type="create_task")

        report = router.move_lead("lead-1", "stage-s")

        assert report.rule_outcomes == []
        assert components.entity_store.list_history("lead-1") == []

    def test_move_lead_records_history(self, components, router, seed):
        seed.stage("stage-a", "A")
        seed.stage("stage-b", "B")
        seed.lead(stage_id="stage-a")

        router.move_lead("lead-1", "stage-b", performed_by="user-7")

        history = components.entity_store.list_history("lead-1", "stage_changed")
        assert history[0]["performed_by"] == "user-7"
        assert history[0]["from_stage_id"] == "stage-a"

    def test_history_failure_rolls_back_move(self, components, router, seed, monkeypatch):
        seed.stage("stage-a", "A")
        seed.stage("stage-b", "B")
        seed.lead(stage_id="stage-a")
        add_rule(components, stage_id="stage-b", trigger="on_enter", action_type="create_task")

        def broken_history(**fields):
            raise OperationalError("INSERT INTO lead_history", {}, Exception("disk I/O error"))

        with monkeypatch.context() as patched:
            patched.setattr("salesflow.core.entity_store.LeadHistoryModel", broken_history)
            with pytest.raises(StorageError):
                router.move_lead("lead-1", "stage-b")

        assert seed.lead_stage("lead-1") == "stage-a"
        assert components.entity_store.list_history("lead-1") == []


class TestChainedTriggers:

    def test_flow_stage_move_triggers_next_stage(self, components, router, seed, make_flow):
        seed.stage("stage-a", "A")
        seed.stage("stage-b", "B")
        seed.lead()
        flow_id = components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "move", "type": "move_stage", "data": {"stage_id": "stage-b"}}],
        ))
        seed.bind_flow("stage-a", flow_id)
        add_rule(components, stage_id="stage-b", trigger="on_enter",
                 action_type="create_task", action_config={"title": "Arrived in B"})

        router.move_lead("lead-1", "stage-a")

        assert seed.lead_stage("lead-1") == "stage-b"
        tasks = components.entity_store.list_history("lead-1", "task_created")
        assert [task["details"]["title"] for task in tasks] == ["Arrived in B"]

    def test_ping_pong_stages_are_bounded(self, components, router, seed, make_flow):
        seed.stage("stage-a", "A")
        seed.stage("stage-b", "B")
        seed.lead()
        to_b = components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "move", "type": "move_stage", "data": {"stage_id": "stage-b"}}], name="A to B"
        ))
        to_a = components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "move", "type": "move_stage", "data": {"stage_id": "stage-a"}}], name="B to A"
        ))
        seed.bind_flow("stage-a", to_b)
        seed.bind_flow("stage-b", to_a)

        router.move_lead("lead-1", "stage-a")

        runs = (
            components.flow_manager.get_flow(to_b).executions_count
            + components.flow_manager.get_flow(to_a).executions_count
        )
        # Hops 0..max_trigger_hops each run one flow; the next transition is dropped
        assert runs == components.config.max_trigger_hops + 1

    def test_transition_beyond_hop_limit_dropped(self, components, router, seed):
        seed.stage("stage-s", "S")
        seed.lead()
        add_rule(components, stage_id="stage-s", trigger="on_enter", action_type="create_task")

        report = router.handle_stage_transition("lead-1", None, "stage-s",
                                                hop=components.config.max_trigger_hops + 1)

        assert report.dropped
        assert report.rule_outcomes == []


class TestRuleActions:

    def test_round_robin_picks_next_member(self, components, router, seed):
        now = utc_now()
        seed.stage("stage-s", "S")
        seed.member("owner-1", role="owner", created_at=now - timedelta(days=3))
        seed.member("seller-1", role="seller", created_at=now - timedelta(days=2))
        seed.member("manager-1", role="manager", created_at=now - timedelta(days=1))
        seed.lead(responsible_user="seller-1")
        rule = add_rule(components, stage_id="stage-s", trigger="on_enter",
                        action_type="change_responsible", action_config={"round_robin": True})

        outcome = router.run_rule(rule, "lead-1")

        assert outcome.status == ExecutionLogStatus.SUCCESS
        assert components.entity_store.get_lead_snapshot("lead-1").responsible_user == "manager-1"

        router.run_rule(rule, "lead-1")
        assert components.entity_store.get_lead_snapshot("lead-1").responsible_user == "seller-1"

    def test_change_responsible_to_user(self, components, router, seed):
        seed.lead()
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="change_responsible",
                              action_config={"user_id": "user-9"})
        assert router.run_rule(rule, "lead-1").status == ExecutionLogStatus.SUCCESS
        assert components.entity_store.get_lead_snapshot("lead-1").responsible_user == "user-9"

    def test_notify_without_responsible_is_skipped(self, router, seed):
        seed.lead()
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="notify_responsible")
        assert router.run_rule(rule, "lead-1").status == ExecutionLogStatus.SKIPPED

    def test_notify_records_rendered_message(self, components, router, seed):
        seed.lead(name="Joao", responsible_user="user-1")
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="notify_responsible",
                              action_config={"message": "{{lead.name}} needs attention"})

        router.run_rule(rule, "lead-1")

        notification = components.entity_store.list_history("lead-1", "notification")[0]
        assert notification["details"]["message"] == "Joao needs attention"
        assert notification["details"]["user_id"] == "user-1"

    def test_create_task_due_date(self, components, router, seed):
        seed.lead(responsible_user="user-1")
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="create_task",
                              action_config={"title": "Send proposal", "due_days": 3})

        router.run_rule(rule, "lead-1")

        task = components.entity_store.list_history("lead-1", "task_created")[0]["details"]
        assert task["title"] == "Send proposal"
        assert task["assignee_id"] == "user-1"
        assert task["due_date"] == (utc_now() + timedelta(days=3)).date().isoformat()

    def test_run_bot_skip_if_executed(self, components, router, seed, make_flow):
        seed.lead()
        flow_id = components.flow_manager.create_flow(make_flow(nodes=[{"id": "w", "type": "wait"}]))
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="run_bot",
                              action_config={"bot_id": flow_id, "skip_if_executed": True})

        assert router.run_rule(rule, "lead-1").status == ExecutionLogStatus.SUCCESS
        assert router.run_rule(rule, "lead-1").status == ExecutionLogStatus.SKIPPED
        assert components.flow_manager.get_flow(flow_id).executions_count == 1

    def test_run_bot_missing_flow_is_error(self, router, seed):
        seed.lead()
        rule = AutomationRule(stage_id="s", trigger="on_enter", action_type="run_bot",
                              action_config={"bot_id": "gone"})
        outcome = router.run_rule(rule, "lead-1")
        assert outcome.status == ExecutionLogStatus.ERROR
        assert "Flow not found" in outcome.message


class TestMessageReceived:

    def test_keyword_flow_runs_once_within_cooldown(self, components, router, seed, gateway, make_flow):
        seed.lead()
        components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "reply", "type": "send_message", "data": {"message": "Prices attached"}}],
            trigger_type="keyword",
            trigger_config={"keyword": "Price"},
        ))

        first = router.handle_message_received("lead-1", "what is the PRICE?")
        second = router.handle_message_received("lead-1", "price again")

        assert len(first.flow_results) == 1
        assert second.flow_results == []
        assert len(gateway.sent) == 1

    def test_instance_filter_and_order(self, components, router, seed, make_flow):
        seed.lead(instance_name="sales-01")
        components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "w", "type": "wait"}], name="Other channel",
            trigger_type="message_received", trigger_config={"instance_name": "support-02"},
        ))
        expected = components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "w", "type": "wait"}], name="Any message", trigger_type="message_received",
        ))

        report = router.handle_message_received("lead-1", "hello")

        assert report.flow_results[0].flow_id == expected

    def test_new_lead_flow_requires_flag(self, components, router, seed, make_flow):
        seed.lead()
        components.flow_manager.create_flow(make_flow(
            nodes=[{"id": "w", "type": "wait"}], trigger_type="new_lead",
        ))

        assert router.handle_message_received("lead-1", "hi").flow_results == []
        assert len(router.handle_message_received("lead-1", "hi", is_new_lead=True).flow_results) == 1

    def test_unknown_lead(self, router, temp_db):
        report = router.handle_message_received("ghost", "hi")
        assert report.flow_results == []
        assert "Lead not found" in report.message
