"""FastAPI REST endpoints for the automation engine."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.exceptions import AutomationEngineError, create_error_response
from ..core.execution_engine import ExecutionEngine
from ..core.execution_log import ExecutionLog
from ..core.flow_manager import FlowManager
from ..core.logging import get_logger
from ..core.middleware import get_status_code_for_error
from ..core.rule_manager import RuleManager
from ..core.trigger_queue import TriggerQueue
from ..core.trigger_router import TriggerRouter
from ..models.core import (
    AutomationRule,
    ExecutionLogEntry,
    ExecutionResult,
    FlowDefinition,
    RuleTrigger,
    SweepReport,
    TriggerReport,
    ValidationResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["automation"])

# Global instances (initialized by the application factory)
_flow_manager: Optional[FlowManager] = None
_rule_manager: Optional[RuleManager] = None
_execution_engine: Optional[ExecutionEngine] = None
_trigger_router: Optional[TriggerRouter] = None
_trigger_queue: Optional[TriggerQueue] = None
_execution_log: Optional[ExecutionLog] = None


def init_dependencies(
    flow_manager: FlowManager,
    rule_manager: RuleManager,
    execution_engine: ExecutionEngine,
    trigger_router: TriggerRouter,
    trigger_queue: TriggerQueue,
    execution_log: ExecutionLog,
):
    """Initialize the global dependencies."""
    global _flow_manager, _rule_manager, _execution_engine, _trigger_router, _trigger_queue, _execution_log
    _flow_manager = flow_manager
    _rule_manager = rule_manager
    _execution_engine = execution_engine
    _trigger_router = trigger_router
    _trigger_queue = trigger_queue
    _execution_log = execution_log


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_flow_manager() -> FlowManager:
    return _require(_flow_manager, "Flow manager")


def get_rule_manager() -> RuleManager:
    return _require(_rule_manager, "Rule manager")


def get_execution_engine() -> ExecutionEngine:
    return _require(_execution_engine, "Execution engine")


def get_trigger_router() -> TriggerRouter:
    return _require(_trigger_router, "Trigger router")


def get_trigger_queue() -> TriggerQueue:
    return _require(_trigger_queue, "Trigger queue")


def get_execution_log() -> ExecutionLog:
    return _require(_execution_log, "Execution log")


def _http_error(error: AutomationEngineError) -> HTTPException:
    return HTTPException(status_code=get_status_code_for_error(error), detail=create_error_response(error))


# Request/Response models
class CreateFlowRequest(BaseModel):
    """Request model for creating a flow."""
    flow: FlowDefinition = Field(..., description="Flow definition to store")


class CreateFlowResponse(BaseModel):
    """Response model for flow creation."""
    flow_id: str = Field(..., description="Identifier of the stored flow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class ExecuteFlowRequest(BaseModel):
    lead_id: str = Field(..., description="Lead to run the flow against")


class CreateAutomationRequest(BaseModel):
    rule: AutomationRule = Field(..., description="Stage automation rule to store")


class CreateAutomationResponse(BaseModel):
    automation_id: str
    message: str


class MoveLeadRequest(BaseModel):
    stage_id: str = Field(..., description="Target stage")
    performed_by: Optional[str] = Field(None, description="User making the move")


class StageTransitionEvent(BaseModel):
    """A stage move that was already persisted elsewhere."""
    lead_id: str
    from_stage_id: Optional[str] = None
    to_stage_id: str
    hop: int = Field(default=0, ge=0)


class MessageReceivedEvent(BaseModel):
    lead_id: str
    text: str = ""
    channel: Optional[str] = Field(None, description="Messaging instance the message arrived on")
    is_new_lead: bool = False


class SweepRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Sweep as of this time instead of the current time")
    batch_size: Optional[int] = Field(None, ge=1)


class RetryResponse(BaseModel):
    entry_id: int
    retried: bool


# Endpoints

@router.post(
    "/flows",
    response_model=CreateFlowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a flow",
)
def create_flow(
    request: CreateFlowRequest,
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> CreateFlowResponse:
    """Validate and store a flow. Warnings are returned, errors reject the flow."""
    try:
        validation_result = flow_manager.validate_flow(request.flow)
        flow_id = flow_manager.create_flow(request.flow)
        return CreateFlowResponse(
            flow_id=flow_id,
            message=f"Flow '{request.flow.name}' created successfully",
            validation_warnings=validation_result.warnings,
        )
    except AutomationEngineError as e:
        logger.warning(f"Flow creation failed: {e.message}")
        raise _http_error(e)


@router.post("/flows/validate", response_model=ValidationResult, summary="Validate a flow without storing it")
def validate_flow(
    request: CreateFlowRequest,
    flow_manager: FlowManager = Depends(get_flow_manager)
) -> ValidationResult:
    return flow_manager.validate_flow(request.flow)


@router.get("/flows/{flow_id}", response_model=FlowDefinition, summary="Get a flow")
def get_flow(flow_id: str, flow_manager: FlowManager = Depends(get_flow_manager)) -> FlowDefinition:
    try:
        return flow_manager.get_flow(flow_id)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post(
    "/flows/{flow_id}/execute",
    response_model=ExecutionResult,
    summary="Run a flow against a lead",
)
def execute_flow(
    flow_id: str,
    request: ExecuteFlowRequest,
    flow_manager: FlowManager = Depends(get_flow_manager),
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
) -> ExecutionResult:
    """
    Run a stored flow synchronously.

    Node failures are reported in the result body, not as HTTP errors.
    """
    try:
        flow = flow_manager.get_flow(flow_id)
        return execution_engine.execute(flow, request.lead_id)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post(
    "/automations",
    response_model=CreateAutomationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a stage automation rule",
)
def create_automation(
    request: CreateAutomationRequest,
    rule_manager: RuleManager = Depends(get_rule_manager)
) -> CreateAutomationResponse:
    try:
        automation_id = rule_manager.create_rule(request.rule)
    except AutomationEngineError as e:
        raise _http_error(e)
    return CreateAutomationResponse(automation_id=automation_id, message="Automation rule created successfully")


@router.get(
    "/stages/{stage_id}/automations",
    response_model=List[AutomationRule],
    summary="List a stage's automation rules in execution order",
)
def list_stage_automations(
    stage_id: str,
    trigger: Optional[RuleTrigger] = Query(None),
    active_only: bool = Query(False),
    rule_manager: RuleManager = Depends(get_rule_manager)
) -> List[AutomationRule]:
    try:
        return rule_manager.list_rules(stage_id, trigger, active_only=active_only)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post("/leads/{lead_id}/stage", response_model=TriggerReport, summary="Move a lead and run its automations")
def move_lead(
    lead_id: str,
    request: MoveLeadRequest,
    trigger_router: TriggerRouter = Depends(get_trigger_router)
) -> TriggerReport:
    try:
        return trigger_router.move_lead(lead_id, request.stage_id, request.performed_by)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post("/events/stage-transition", response_model=TriggerReport, summary="Report a persisted stage move")
def stage_transition(
    event: StageTransitionEvent,
    trigger_router: TriggerRouter = Depends(get_trigger_router)
) -> TriggerReport:
    try:
        return trigger_router.handle_stage_transition(
            event.lead_id, event.from_stage_id, event.to_stage_id, hop=event.hop
        )
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post("/events/message-received", response_model=TriggerReport, summary="Report an inbound message")
def message_received(
    event: MessageReceivedEvent,
    trigger_router: TriggerRouter = Depends(get_trigger_router)
) -> TriggerReport:
    try:
        return trigger_router.handle_message_received(
            event.lead_id, event.text, channel=event.channel, is_new_lead=event.is_new_lead
        )
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post("/queue/sweep", response_model=SweepReport, summary="Run due delayed triggers")
def sweep_queue(
    request: Optional[SweepRequest] = None,
    trigger_queue: TriggerQueue = Depends(get_trigger_queue),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> SweepReport:
    request = request or SweepRequest()
    try:
        return trigger_queue.sweep(trigger_router, now=request.now, batch_size=request.batch_size)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.post("/queue/{entry_id}/retry", response_model=RetryResponse, summary="Put a failed entry back to pending")
def retry_queue_entry(entry_id: int, trigger_queue: TriggerQueue = Depends(get_trigger_queue)) -> RetryResponse:
    try:
        return RetryResponse(entry_id=entry_id, retried=trigger_queue.retry(entry_id))
    except AutomationEngineError as e:
        raise _http_error(e)


@router.get("/executions/logs", response_model=List[ExecutionLogEntry], summary="Read the execution log")
def get_execution_logs(
    flow_id: Optional[str] = Query(None),
    lead_id: Optional[str] = Query(None),
    run_id: Optional[str] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    execution_log: ExecutionLog = Depends(get_execution_log)
) -> List[ExecutionLogEntry]:
    try:
        return execution_log.list_entries(flow_id=flow_id, lead_id=lead_id, run_id=run_id, limit=limit)
    except AutomationEngineError as e:
        raise _http_error(e)


@router.get("/health", summary="Health check")
def health(execution_engine: ExecutionEngine = Depends(get_execution_engine)):
    return {
        "status": "healthy",
        "active_runs": len(execution_engine.get_active_runs()),
        "max_concurrent_executions": execution_engine.max_concurrent_executions,
    }
