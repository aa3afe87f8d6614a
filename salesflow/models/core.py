"""Core Pydantic models for the automation engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)


def utc_now() -> datetime:
    """Naive UTC timestamp, the form timestamps are stored and compared in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class NodeType(str, Enum):
    """Kinds of blocks a flow can contain."""
    SEND_MESSAGE = "send_message"
    CONDITION = "condition"
    WAIT = "wait"
    TAG = "tag"
    MOVE_STAGE = "move_stage"
    WEBHOOK = "webhook"


class ConditionOperator(str, Enum):
    """Operators supported by the condition evaluator."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class TagAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class WebhookMethod(str, Enum):
    GET = "GET"
    POST = "POST"


class FlowTriggerType(str, Enum):
    """Event classes a flow can be bound to."""
    MANUAL = "manual"
    STAGE = "stage"
    MESSAGE_RECEIVED = "message_received"
    KEYWORD = "keyword"
    NEW_LEAD = "new_lead"


class RuleTrigger(str, Enum):
    """When a stage automation rule fires."""
    ON_ENTER = "on_enter"
    ON_EXIT = "on_exit"
    AFTER_TIME = "after_time"


class RuleActionType(str, Enum):
    """Actions a stage automation rule can perform."""
    RUN_BOT = "run_bot"
    NOTIFY_RESPONSIBLE = "notify_responsible"
    CHANGE_RESPONSIBLE = "change_responsible"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    CREATE_TASK = "create_task"


class ExecutionLogStatus(str, Enum):
    """Status recorded for one node visit transition."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class LogSource(str, Enum):
    FLOW = "flow"
    AUTOMATION = "automation"


class QueueStatus(str, Enum):
    """State of a delayed trigger. Only pending -> done and pending -> failed are allowed."""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class ValidationResult(BaseModel):
    """Result of flow validation."""
    is_valid: bool = Field(..., description="Whether the flow can be stored")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


def _coerce_to_str(value: Any) -> Any:
    """Accept numeric comparison values authored as numbers."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return value


# ---------------------------------------------------------------------------
# Typed node payloads
# ---------------------------------------------------------------------------

class SendMessageConfig(BaseModel):
    """Payload of a send_message node."""
    model_config = ConfigDict(extra="ignore")

    message: str = Field(..., min_length=1, validation_alias=AliasChoices("message", "text"))

    @field_validator("message")
    @classmethod
    def validate_message(cls, message):
        if not message.strip():
            raise ValueError("Message text cannot be blank")
        return message


class ConditionConfig(BaseModel):
    """Payload of a condition node."""
    model_config = ConfigDict(extra="ignore")

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, value):
        return _coerce_to_str(value)


class WaitConfig(BaseModel):
    """Payload of a wait node. Informational only during inline execution."""
    model_config = ConfigDict(extra="ignore")

    seconds: Optional[float] = Field(None, ge=0)
    minutes: Optional[float] = Field(None, ge=0)
    hours: Optional[float] = Field(None, ge=0)

    def total_seconds(self) -> float:
        return (self.hours or 0) * 3600 + (self.minutes or 0) * 60 + (self.seconds or 0)


class TagConfig(BaseModel):
    """Payload of a tag node."""
    model_config = ConfigDict(extra="ignore")

    action: TagAction
    tag_id: Optional[str] = Field(None, validation_alias=AliasChoices("tag_id", "tagId"))
    tag_name: Optional[str] = Field(None, validation_alias=AliasChoices("tag_name", "tagName"))

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, action):
        return action.strip().lower() if isinstance(action, str) else action

    @model_validator(mode="after")
    def require_tag(self):
        if not (self.tag_id or self.tag_name):
            raise ValueError("Tag is not configured (tag_id or tag_name required)")
        return self


class MoveStageConfig(BaseModel):
    """Payload of a move_stage node."""
    model_config = ConfigDict(extra="ignore")

    stage_id: Optional[str] = Field(None, validation_alias=AliasChoices("stage_id", "stageId"))
    stage_name: Optional[str] = Field(None, validation_alias=AliasChoices("stage_name", "stageName"))

    @model_validator(mode="after")
    def require_stage(self):
        if not (self.stage_id or self.stage_name):
            raise ValueError("Target stage is not configured (stage_id or stage_name required)")
        return self


class WebhookConfig(BaseModel):
    """Payload of a webhook node."""
    model_config = ConfigDict(extra="ignore")

    url: str = Field(..., validation_alias=AliasChoices("url", "webhook_url"))
    method: WebhookMethod = WebhookMethod.POST
    send_all: bool = True
    fields: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, method):
        return method.strip().upper() if isinstance(method, str) else method

    @field_validator("url")
    @classmethod
    def validate_url(cls, url):
        """Only https targets are accepted."""
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme.lower() != "https":
            raise ValueError(f"Webhook URL must use https: {url or '<empty>'}")
        if not parsed.netloc:
            raise ValueError(f"Webhook URL has no host: {url}")
        return url


NodeConfig = Union[
    SendMessageConfig, ConditionConfig, WaitConfig, TagConfig, MoveStageConfig, WebhookConfig
]

NODE_CONFIG_MODELS = {
    NodeType.SEND_MESSAGE.value: SendMessageConfig,
    NodeType.CONDITION.value: ConditionConfig,
    NodeType.WAIT.value: WaitConfig,
    NodeType.TAG.value: TagConfig,
    NodeType.MOVE_STAGE.value: MoveStageConfig,
    NodeType.WEBHOOK.value: WebhookConfig,
}


def format_validation_error(error: ValidationError) -> str:
    """Render a pydantic error as a short single-line message."""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "__root__")
        message = item.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Flow graph
# ---------------------------------------------------------------------------

class FlowNode(BaseModel):
    """One block of a flow.

    ``data`` is kept as authored. The typed payload is parsed once when the
    node is loaded; a payload that does not parse leaves ``config`` empty and
    records ``config_error`` so the node fails on dispatch instead of the whole
    flow failing to load.
    """
    id: str = Field(..., description="Node identifier, unique within the flow")
    type: str = Field(..., description="Node kind")
    data: Dict[str, Any] = Field(default_factory=dict, description="Authored node payload")
    position: Optional[Dict[str, Any]] = Field(None, description="Canvas position, passed through untouched")

    config: Optional[NodeConfig] = Field(default=None, exclude=True)
    config_error: Optional[str] = Field(default=None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def take_type_from_data(cls, values):
        # Older canvases stored the kind inside data
        if isinstance(values, dict) and not values.get("type"):
            data = values.get("data") or {}
            if isinstance(data, dict) and data.get("type"):
                values = {**values, "type": data["type"]}
        return values

    @field_validator("id")
    @classmethod
    def validate_id(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode="after")
    def parse_config(self):
        config_model = NODE_CONFIG_MODELS.get(self.type)
        if config_model is None:
            return self
        try:
            self.config = config_model.model_validate(self.data)
            self.config_error = None
        except ValidationError as e:
            self.config = None
            self.config_error = f"Invalid {self.type} configuration: {format_validation_error(e)}"
        return self

    @property
    def node_type(self) -> Optional[NodeType]:
        """The known node kind, or None for types this engine does not handle."""
        try:
            return NodeType(self.type)
        except ValueError:
            return None


class FlowEdge(BaseModel):
    """Directed connection between two nodes."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    label: Optional[str] = None
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")

    @model_validator(mode="after")
    def default_id(self):
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self

    @property
    def branch_label(self) -> str:
        """Label used for condition branching; the canvas stores it as a handle id."""
        return (self.label or self.source_handle or "").strip().lower()


class FlowDefinition(BaseModel):
    """A user-authored automation flow."""
    id: Optional[str] = Field(None, description="Flow ID, assigned on storage")
    workspace_id: Optional[str] = Field(None, description="Owning workspace")
    name: str = Field(default="Untitled flow", description="Flow name")
    description: Optional[str] = None
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    is_active: bool = True
    executions_count: int = 0
    trigger_type: FlowTriggerType = FlowTriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name.strip():
            raise ValueError("Flow name cannot be empty")
        return name.strip()

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        """Outgoing edges of a node, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def entry_node(self) -> Optional[FlowNode]:
        """First node, in declaration order, that no edge targets.

        A fully cyclic graph falls back to the first declared node.
        """
        if not self.nodes:
            return None
        targets = {edge.target for edge in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node
        return self.nodes[0]

    def _adjacency(self) -> Dict[str, List[str]]:
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)
        return graph

    def _find_reachable_nodes(self, entry_point: str) -> Set[str]:
        """Find all nodes reachable from the entry point."""
        edge_map = self._adjacency()
        reachable = {entry_point}
        queue = [entry_point]
        while queue:
            current = queue.pop(0)
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        if not self.edges:
            return False

        graph = self._adjacency()
        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)
            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True
            rec_stack.remove(node)
            return False

        for node in self.nodes:
            if node.id not in visited:
                if has_cycle_util(node.id):
                    return True
        return False


# ---------------------------------------------------------------------------
# Stage automation rules
# ---------------------------------------------------------------------------

class Condition(BaseModel):
    """A single field/operator/value test against a lead."""
    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, value):
        if value is None:
            return ""
        return _coerce_to_str(value)


class AutomationRule(BaseModel):
    """Stage-scoped trigger, conditions and a single action."""
    id: Optional[str] = None
    workspace_id: Optional[str] = None
    stage_id: str
    trigger: RuleTrigger
    trigger_delay_hours: float = Field(default=0, ge=0)
    action_type: RuleActionType
    action_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    is_active: bool = True
    position: int = 0
    created_at: Optional[datetime] = None


class Stage(BaseModel):
    """A pipeline stage; ``flow_id`` binds at most one flow to it."""
    id: str
    workspace_id: Optional[str] = None
    name: str
    position: int = 0
    flow_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Lead snapshot
# ---------------------------------------------------------------------------

class TagRef(BaseModel):
    id: str
    name: str


class LeadSnapshot(BaseModel):
    """Point-in-time read of a lead, including its resolved tags."""
    id: str
    workspace_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    status: Optional[str] = None
    value: Optional[float] = None
    stage_id: Optional[str] = None
    responsible_user: Optional[str] = None
    whatsapp_jid: Optional[str] = None
    instance_name: Optional[str] = None
    tags: List[TagRef] = Field(default_factory=list)

    def tag_values(self) -> Set[str]:
        """Lower-cased tag names and tag ids."""
        values = set()
        for tag in self.tags:
            values.add(tag.id.lower())
            values.add(tag.name.lower())
        return values


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

class NodeOutcome(BaseModel):
    """Structured result of dispatching one node."""
    success: bool
    message: str = ""
    branch_result: Optional[bool] = None
    skipped: bool = False

    @classmethod
    def ok(cls, message: str, branch_result: Optional[bool] = None) -> "NodeOutcome":
        return cls(success=True, message=message, branch_result=branch_result)

    @classmethod
    def fail(cls, message: str) -> "NodeOutcome":
        return cls(success=False, message=message)

    @classmethod
    def skip(cls, message: str) -> "NodeOutcome":
        return cls(success=True, message=message, skipped=True)


class ExecutionResult(BaseModel):
    """Result of one engine run."""
    run_id: str
    flow_id: Optional[str] = None
    lead_id: Optional[str] = None
    success: bool = True
    nodes_executed: int = 0
    errors: List[str] = Field(default_factory=list)
    halted_by_step_limit: bool = False


class ExecutionLogEntry(BaseModel):
    """One append-only audit record of a node visit transition."""
    id: Optional[int] = None
    run_id: str
    source: LogSource = LogSource.FLOW
    flow_or_automation_id: str
    lead_id: str
    node_id: str
    status: ExecutionLogStatus
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class QueuedTrigger(BaseModel):
    """Durable request to run an after_time rule against a lead at a given time."""
    id: Optional[int] = None
    automation_id: str
    lead_id: str
    workspace_id: Optional[str] = None
    execute_at: datetime
    status: QueueStatus = QueueStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class RuleOutcome(BaseModel):
    """Result of evaluating and dispatching one automation rule."""
    rule_id: Optional[str] = None
    action_type: RuleActionType
    status: ExecutionLogStatus
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status != ExecutionLogStatus.ERROR


class TriggerReport(BaseModel):
    """Everything a single trigger invocation did."""
    trigger: str
    lead_id: str
    stage_id: Optional[str] = None
    hop: int = 0
    dropped: bool = False
    message: str = ""
    flow_results: List[ExecutionResult] = Field(default_factory=list)
    rule_outcomes: List[RuleOutcome] = Field(default_factory=list)
    queued: List[QueuedTrigger] = Field(default_factory=list)


class SweepReport(BaseModel):
    """Summary of one delayed queue sweep."""
    swept_at: datetime
    processed: int = 0
    done: int = 0
    failed: int = 0
    entries: List[QueuedTrigger] = Field(default_factory=list)
