"""Node handlers for flow execution."""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..config import AppConfig, get_config
from ..models.core import (
    ConditionConfig,
    FlowDefinition,
    FlowNode,
    LeadSnapshot,
    MoveStageConfig,
    NodeOutcome,
    NodeType,
    SendMessageConfig,
    TagAction,
    TagConfig,
    WaitConfig,
    WebhookConfig,
    utc_now,
)
from .conditions import evaluate
from .entity_store import EntityStore
from .exceptions import AutomationEngineError, NodeConfigurationError
from .gateways import MessagingGateway, WebhookTransport, normalize_phone
from .logging import get_logger

logger = get_logger(__name__)

BOT_ACTOR = "SalesBot"

_TEMPLATE_PATTERN = re.compile(r"\{\{\s*(lead\.[a-z_]+|instance)\s*\}\}")

# (lead_id, from_stage_id, to_stage_id, hop)
StageChangedCallback = Callable[[str, Optional[str], str, int], Any]


@dataclass
class DispatchContext:
    """Where a node is being dispatched: which run, flow, lead and trigger hop."""
    run_id: str
    flow: FlowDefinition
    lead_id: str
    hop: int = 0


def render_template(text: str, snapshot: LeadSnapshot) -> str:
    """Substitute ``{{lead.<field>}}`` and ``{{instance}}`` placeholders.

    Placeholders for unknown fields are left untouched.
    """
    lead_values = snapshot.model_dump(exclude={"tags"})

    def substitute(match):
        key = match.group(1)
        if key == "instance":
            return snapshot.instance_name or ""
        field = key.split(".", 1)[1]
        if field not in lead_values:
            return match.group(0)
        value = lead_values[field]
        return "" if value is None else str(value)

    return _TEMPLATE_PATTERN.sub(substitute, text)


def build_webhook_payload(config: WebhookConfig, snapshot: LeadSnapshot, flow_id: Optional[str]) -> Dict[str, Any]:
    """Lead data sent by a webhook node: everything, or the configured subset."""
    lead_values = snapshot.model_dump(exclude={"tags"})
    tags = [{"id": tag.id, "name": tag.name} for tag in snapshot.tags]

    if config.send_all:
        payload = dict(lead_values)
        payload["tags"] = tags
    else:
        payload = {}
        for field in config.fields:
            if field in ("tags", "tag"):
                payload["tags"] = tags
            elif field in lead_values:
                payload[field] = lead_values[field]

    payload["flow_id"] = flow_id
    payload["lead_id"] = snapshot.id
    payload["executed_at"] = utc_now().isoformat()
    return payload


class ActionDispatcher:
    """Runs one node against a lead and reports a NodeOutcome.

    Handlers never raise. Engine errors become failed outcomes carrying the
    error message; anything unexpected is logged and reported the same way.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        messaging_gateway: MessagingGateway,
        webhook_transport: WebhookTransport,
        config: Optional[AppConfig] = None,
        on_stage_changed: Optional[StageChangedCallback] = None,
    ):
        self.entity_store = entity_store
        self.messaging_gateway = messaging_gateway
        self.webhook_transport = webhook_transport
        self.config = config or get_config()
        self.on_stage_changed = on_stage_changed

        self._handlers = {
            NodeType.SEND_MESSAGE.value: self._send_message,
            NodeType.CONDITION.value: self._condition,
            NodeType.WAIT.value: self._wait,
            NodeType.TAG.value: self._tag,
            NodeType.MOVE_STAGE.value: self._move_stage,
            NodeType.WEBHOOK.value: self._webhook,
        }

    def dispatch(self, node: FlowNode, context: DispatchContext) -> NodeOutcome:
        handler = self._handlers.get(node.type)
        if handler is None:
            return NodeOutcome.skip(f"Unknown node type '{node.type}', skipped")
        try:
            if node.config_error:
                raise NodeConfigurationError(node.config_error, node_id=node.id, node_type=node.type)
            return handler(node.config, context)
        except AutomationEngineError as e:
            return NodeOutcome.fail(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error in {node.type} node {node.id}")
            return NodeOutcome.fail(f"Unexpected error: {str(e)}")

    def _send_message(self, config: SendMessageConfig, context: DispatchContext) -> NodeOutcome:
        snapshot = self.entity_store.require_lead(context.lead_id)

        address = snapshot.whatsapp_jid or normalize_phone(snapshot.phone, self.config.default_country_code)
        if not address:
            return NodeOutcome.fail("Lead has no WhatsApp address or valid phone number")
        if not snapshot.instance_name:
            return NodeOutcome.fail("Lead has no messaging channel (instance_name)")

        text = render_template(config.message, snapshot)
        if not text.strip():
            return NodeOutcome.fail("Message text is empty after substitution")

        if not self.messaging_gateway.send_text(snapshot.instance_name, address, text):
            return NodeOutcome.fail(f"Message to {address} was not accepted")
        return NodeOutcome.ok(f"Message sent to {address} via {snapshot.instance_name}")

    def _condition(self, config: ConditionConfig, context: DispatchContext) -> NodeOutcome:
        # Reloaded so writes made earlier in the run are visible
        snapshot = self.entity_store.require_lead(context.lead_id)
        result = evaluate(config.field, config.operator, config.value, snapshot)
        return NodeOutcome.ok(
            f"Condition {config.field} {config.operator.value} '{config.value}' is {str(result).lower()}",
            branch_result=result,
        )

    def _wait(self, config: WaitConfig, context: DispatchContext) -> NodeOutcome:
        return NodeOutcome.ok(
            f"Wait of {config.total_seconds():g}s noted; delays are not applied during inline execution"
        )

    def _tag(self, config: TagConfig, context: DispatchContext) -> NodeOutcome:
        return self.apply_tag(context.lead_id, config.action, tag_id=config.tag_id, tag_name=config.tag_name)

    def apply_tag(self, lead_id: str, action: Any, tag_id: Optional[str] = None,
                  tag_name: Optional[str] = None) -> NodeOutcome:
        """Add or remove one tag. Adding a tag the lead already has succeeds unchanged."""
        if not (tag_id or tag_name):
            return NodeOutcome.fail("Tag is not configured")
        try:
            action = TagAction(str(getattr(action, "value", action) or "").strip().lower())
        except ValueError:
            return NodeOutcome.fail(f"Unknown tag action: {action}")

        snapshot = self.entity_store.require_lead(lead_id)
        if tag_id:
            tag = self.entity_store.get_tag(tag_id)
        else:
            tag = self.entity_store.find_tag_by_name(snapshot.workspace_id, tag_name)
        if tag is None:
            return NodeOutcome.fail(f"Tag not found: {tag_id or tag_name}")

        if action == TagAction.ADD:
            if self.entity_store.add_tag(lead_id, tag.id):
                return NodeOutcome.ok(f"Tag '{tag.name}' added")
            return NodeOutcome.ok(f"Lead already has tag '{tag.name}'")

        if self.entity_store.remove_tag(lead_id, tag.id):
            return NodeOutcome.ok(f"Tag '{tag.name}' removed")
        return NodeOutcome.ok(f"Lead did not have tag '{tag.name}'")

    def _move_stage(self, config: MoveStageConfig, context: DispatchContext) -> NodeOutcome:
        snapshot = self.entity_store.require_lead(context.lead_id)
        if config.stage_id:
            stage = self.entity_store.get_stage(config.stage_id)
        else:
            stage = self.entity_store.find_stage_by_name(snapshot.workspace_id, config.stage_name)
        if stage is None:
            return NodeOutcome.fail(f"Stage not found: {config.stage_id or config.stage_name}")

        if snapshot.stage_id == stage.id:
            return NodeOutcome.ok(f"Lead already in stage '{stage.name}'")

        previous = self.entity_store.move_stage(
            context.lead_id,
            stage.id,
            performed_by=BOT_ACTOR,
            details={"flow_id": context.flow.id, "run_id": context.run_id},
        )

        if self.on_stage_changed is not None:
            try:
                self.on_stage_changed(context.lead_id, previous, stage.id, context.hop + 1)
            except Exception as e:
                # The move itself succeeded; chained automations report their own failures
                logger.error(f"Chained trigger after stage move of lead {context.lead_id} failed: {str(e)}")

        return NodeOutcome.ok(f"Lead moved to stage '{stage.name}'")

    def _webhook(self, config: WebhookConfig, context: DispatchContext) -> NodeOutcome:
        snapshot = self.entity_store.require_lead(context.lead_id)

        payload = build_webhook_payload(config, snapshot, context.flow.id)
        status_code = self.webhook_transport.request(
            config.method.value, config.url, payload, config.headers, self.config.node_timeout
        )
        if 200 <= status_code < 300:
            return NodeOutcome.ok(f"Webhook {config.method.value} {config.url} returned {status_code}")
        return NodeOutcome.fail(f"Webhook {config.method.value} {config.url} returned HTTP {status_code}")
