"""Trigger Router: maps lead events to flows and stage automation rules."""

import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import AppConfig, get_config
from ..models.core import (
    AutomationRule,
    ExecutionLogStatus,
    FlowDefinition,
    FlowTriggerType,
    LeadSnapshot,
    LogSource,
    NodeOutcome,
    RuleActionType,
    RuleOutcome,
    RuleTrigger,
    TriggerReport,
    utc_now,
)
from .actions import BOT_ACTOR, ActionDispatcher, render_template
from .conditions import evaluate_all
from .entity_store import EntityStore
from .exceptions import AutomationEngineError, EntityNotFoundError
from .execution_engine import ExecutionEngine
from .execution_log import ExecutionLog
from .flow_manager import FlowManager
from .logging import get_logger
from .rule_manager import RuleManager
from .trigger_queue import TriggerQueue

logger = get_logger(__name__)

# Anti-loop windows: a flow does not re-run for the same lead inside these
MESSAGE_TRIGGER_COOLDOWNS = {
    FlowTriggerType.MESSAGE_RECEIVED: timedelta(minutes=5),
    FlowTriggerType.KEYWORD: timedelta(minutes=60),
    FlowTriggerType.NEW_LEAD: timedelta(hours=24),
}

ROUND_ROBIN_ROLES = ("seller", "manager")

DEFAULT_NOTIFICATION = "Automation update for lead {{lead.name}}"


class TriggerRouter:
    """
    Routes stage transitions, inbound messages and elapsed timers to work.

    For a stage transition the order is fixed: on_exit rules of the old
    stage, the flow bound to the new stage, on_enter rules of the new stage,
    then one queue entry per after_time rule of the new stage. A failing
    rule is recorded and the remaining rules still run.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        flow_manager: FlowManager,
        rule_manager: RuleManager,
        entity_store: EntityStore,
        dispatcher: ActionDispatcher,
        execution_log: ExecutionLog,
        trigger_queue: TriggerQueue,
        config: Optional[AppConfig] = None,
    ):
        self.engine = engine
        self.flow_manager = flow_manager
        self.rule_manager = rule_manager
        self.entity_store = entity_store
        self.dispatcher = dispatcher
        self.execution_log = execution_log
        self.trigger_queue = trigger_queue
        self.config = config or get_config()

        # Stage moves made by flows come back through the router one hop deeper
        self.dispatcher.on_stage_changed = self.handle_stage_transition

        self._rule_actions = {
            RuleActionType.RUN_BOT: self._run_bot,
            RuleActionType.ADD_TAG: self._add_tag,
            RuleActionType.REMOVE_TAG: self._remove_tag,
            RuleActionType.CHANGE_RESPONSIBLE: self._change_responsible,
            RuleActionType.NOTIFY_RESPONSIBLE: self._notify_responsible,
            RuleActionType.CREATE_TASK: self._create_task,
        }

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def move_lead(self, lead_id: str, stage_id: str, performed_by: Optional[str] = None) -> TriggerReport:
        """Persist a stage move made outside a flow, then trigger automations for it."""
        stage = self.entity_store.get_stage(stage_id)
        if stage is None:
            raise EntityNotFoundError(f"Stage not found: {stage_id}", entity_type="stage", entity_id=stage_id)

        previous = self.entity_store.move_stage(lead_id, stage_id, performed_by=performed_by)
        if previous == stage_id:
            return TriggerReport(trigger="stage_transition", lead_id=lead_id, stage_id=stage_id,
                                 message="Lead already in stage")

        return self.handle_stage_transition(lead_id, previous, stage_id)

    def handle_stage_transition(
        self,
        lead_id: str,
        from_stage_id: Optional[str],
        to_stage_id: str,
        hop: int = 0,
    ) -> TriggerReport:
        report = TriggerReport(trigger="stage_transition", lead_id=lead_id, stage_id=to_stage_id, hop=hop)

        if hop > self.config.max_trigger_hops:
            report.dropped = True
            report.message = (
                f"Stage transition dropped: hop {hop} exceeds the limit of {self.config.max_trigger_hops}"
            )
            logger.warning(f"Lead {lead_id} -> stage {to_stage_id}: {report.message}")
            return report

        if from_stage_id == to_stage_id:
            report.message = "Lead did not change stage"
            return report

        snapshot = self.entity_store.get_lead_snapshot(lead_id)
        if snapshot is None:
            report.message = f"Lead not found: {lead_id}"
            logger.warning(report.message)
            return report

        logger.info(f"Stage transition for lead {lead_id}: {from_stage_id} -> {to_stage_id} (hop {hop})")

        if from_stage_id:
            report.rule_outcomes.extend(self._run_stage_rules(from_stage_id, RuleTrigger.ON_EXIT, lead_id, hop))

        flow = self.flow_manager.get_flow_for_stage(to_stage_id)
        if flow is not None and flow.is_active:
            report.flow_results.append(self.engine.execute(flow, lead_id, hop=hop))

        report.rule_outcomes.extend(self._run_stage_rules(to_stage_id, RuleTrigger.ON_ENTER, lead_id, hop))

        for rule in self.rule_manager.list_rules(to_stage_id, RuleTrigger.AFTER_TIME):
            delay_hours = rule.trigger_delay_hours if rule.trigger_delay_hours > 0 else self.config.default_delay_hours
            report.queued.append(self.trigger_queue.enqueue(
                rule.id, lead_id, snapshot.workspace_id, utc_now() + timedelta(hours=delay_hours)
            ))

        return report

    def _run_stage_rules(self, stage_id: str, trigger: RuleTrigger, lead_id: str, hop: int) -> List[RuleOutcome]:
        return [self.run_rule(rule, lead_id, hop) for rule in self.rule_manager.list_rules(stage_id, trigger)]

    # ------------------------------------------------------------------
    # Rule execution
    # ------------------------------------------------------------------

    def run_rule(self, rule: AutomationRule, lead_id: str, hop: int = 0) -> RuleOutcome:
        """Evaluate a rule's conditions on a fresh snapshot and run its action."""
        run_id = str(uuid.uuid4())
        owner_id = rule.id or "unsaved"
        node_id = rule.action_type.value

        def log(status: ExecutionLogStatus, message: Optional[str] = None):
            self.execution_log.record(run_id, LogSource.AUTOMATION, owner_id, lead_id, node_id, status, message)

        snapshot = self.entity_store.get_lead_snapshot(lead_id)
        if snapshot is None:
            message = f"Lead not found: {lead_id}"
            log(ExecutionLogStatus.ERROR, message)
            return RuleOutcome(rule_id=rule.id, action_type=rule.action_type,
                               status=ExecutionLogStatus.ERROR, message=message)

        if not evaluate_all(rule.conditions, snapshot):
            message = "Conditions not met"
            log(ExecutionLogStatus.SKIPPED, message)
            return RuleOutcome(rule_id=rule.id, action_type=rule.action_type,
                               status=ExecutionLogStatus.SKIPPED, message=message)

        log(ExecutionLogStatus.RUNNING)
        handler = self._rule_actions[rule.action_type]
        try:
            outcome = handler(rule, snapshot, hop)
        except AutomationEngineError as e:
            outcome = NodeOutcome.fail(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error in rule {owner_id}")
            outcome = NodeOutcome.fail(f"Unexpected error: {str(e)}")

        if outcome.skipped:
            status = ExecutionLogStatus.SKIPPED
        elif outcome.success:
            status = ExecutionLogStatus.SUCCESS
        else:
            status = ExecutionLogStatus.ERROR
            logger.warning(f"Rule {owner_id} ({rule.action_type.value}) failed for lead {lead_id}: {outcome.message}")
        log(status, outcome.message)

        return RuleOutcome(rule_id=rule.id, action_type=rule.action_type, status=status, message=outcome.message)

    def _run_bot(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        config = rule.action_config
        flow_id = config.get("bot_id") or config.get("flow_id")
        if not flow_id:
            return NodeOutcome.fail("run_bot rule has no bot_id")

        if config.get("skip_if_executed") and self.execution_log.has_entries(flow_id, snapshot.id):
            return NodeOutcome.skip(f"Flow {flow_id} already executed for this lead")

        result = self.engine.execute_by_id(flow_id, snapshot.id, hop=hop)
        if not result.success:
            return NodeOutcome.fail("; ".join(result.errors) or f"Flow {flow_id} failed")
        return NodeOutcome.ok(f"Flow {flow_id} executed ({result.nodes_executed} nodes)")

    def _add_tag(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        config = rule.action_config
        return self.dispatcher.apply_tag(snapshot.id, "add", tag_id=config.get("tag_id"),
                                         tag_name=config.get("tag_name"))

    def _remove_tag(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        config = rule.action_config
        return self.dispatcher.apply_tag(snapshot.id, "remove", tag_id=config.get("tag_id"),
                                         tag_name=config.get("tag_name"))

    def _change_responsible(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        config = rule.action_config
        if config.get("round_robin") or config.get("mode") == "round_robin":
            members = self.entity_store.list_members(snapshot.workspace_id, ROUND_ROBIN_ROLES)
            if not members:
                return NodeOutcome.fail("No sellers or managers available for round robin")
            user_id = self._next_in_rotation(members, snapshot.responsible_user)
        else:
            user_id = config.get("user_id")
            if not user_id:
                return NodeOutcome.fail("change_responsible rule has no user_id")

        self.entity_store.set_responsible(snapshot.id, user_id)
        return NodeOutcome.ok(f"Responsible set to {user_id}")

    @staticmethod
    def _next_in_rotation(members: List[str], current: Optional[str]) -> str:
        if current in members:
            return members[(members.index(current) + 1) % len(members)]
        return members[0]

    def _notify_responsible(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        if not snapshot.responsible_user:
            return NodeOutcome.skip("Lead has no responsible user to notify")

        message = render_template(rule.action_config.get("message") or DEFAULT_NOTIFICATION, snapshot)
        self.entity_store.append_history(
            snapshot.id,
            "notification",
            performed_by=BOT_ACTOR,
            details={"message": message, "user_id": snapshot.responsible_user, "automation_id": rule.id},
        )
        return NodeOutcome.ok(f"Notified {snapshot.responsible_user}")

    def _create_task(self, rule: AutomationRule, snapshot: LeadSnapshot, hop: int) -> NodeOutcome:
        config = rule.action_config
        title = config.get("title") or "Follow up"
        try:
            due_days = int(config.get("due_days", 1))
        except (TypeError, ValueError):
            return NodeOutcome.fail(f"Invalid due_days: {config.get('due_days')}")
        assignee = config.get("assignee_id") or snapshot.responsible_user
        due_date = (utc_now() + timedelta(days=due_days)).date().isoformat()

        details: Dict[str, Any] = {
            "title": title,
            "due_date": due_date,
            "due_days": due_days,
            "assignee_id": assignee,
            "automation_id": rule.id,
        }
        self.entity_store.append_history(snapshot.id, "task_created", performed_by=BOT_ACTOR, details=details)
        return NodeOutcome.ok(f"Task '{title}' created, due {due_date}")

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def handle_message_received(
        self,
        lead_id: str,
        text: str,
        channel: Optional[str] = None,
        is_new_lead: bool = False,
    ) -> TriggerReport:
        """Run the first matching message-triggered flow that is not cooling down for this lead."""
        report = TriggerReport(trigger="message_received", lead_id=lead_id)

        snapshot = self.entity_store.get_lead_snapshot(lead_id)
        if snapshot is None:
            report.message = f"Lead not found: {lead_id}"
            logger.warning(report.message)
            return report

        channel = channel or snapshot.instance_name
        trigger_types = [FlowTriggerType.MESSAGE_RECEIVED, FlowTriggerType.KEYWORD, FlowTriggerType.NEW_LEAD]
        flows = self.flow_manager.list_flows(
            workspace_id=snapshot.workspace_id, trigger_types=trigger_types, active_only=True
        )

        now = utc_now()
        for flow in flows:
            if not self._message_flow_matches(flow, text, channel, is_new_lead):
                continue
            cooldown = MESSAGE_TRIGGER_COOLDOWNS[flow.trigger_type]
            if self.execution_log.has_recent_run(flow.id, lead_id, now - cooldown):
                logger.info(f"Flow {flow.id} ran for lead {lead_id} within {cooldown}; skipping")
                continue

            report.flow_results.append(self.engine.execute(flow, lead_id))
            report.message = f"Flow '{flow.name}' matched"
            return report

        report.message = "No flow matched"
        return report

    @staticmethod
    def _message_flow_matches(flow: FlowDefinition, text: str, channel: Optional[str], is_new_lead: bool) -> bool:
        instance_name = flow.trigger_config.get("instance_name")
        if instance_name and instance_name != channel:
            return False

        if flow.trigger_type == FlowTriggerType.MESSAGE_RECEIVED:
            return True
        if flow.trigger_type == FlowTriggerType.KEYWORD:
            keyword = (flow.trigger_config.get("keyword") or "").strip().lower()
            return bool(keyword) and keyword in (text or "").lower()
        if flow.trigger_type == FlowTriggerType.NEW_LEAD:
            return is_new_lead
        return False
