"""Execution Engine for running flows against leads."""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from ..config import get_config
from ..models.core import (
    ExecutionLogStatus,
    ExecutionResult,
    FlowDefinition,
    FlowNode,
    LogSource,
    NodeOutcome,
    NodeType,
)
from .actions import ActionDispatcher, DispatchContext
from .entity_store import EntityStore
from .execution_log import ExecutionLog
from .flow_manager import FlowManager
from .logging import get_logger, logging_context

logger = get_logger(__name__)

UNSAVED_FLOW_ID = "unsaved"


class ExecutionEngine:
    """Walks a flow graph node by node against a single lead.

    A run is sequential. Independent runs may execute concurrently through
    ``submit``; they share no mutable engine state.
    """

    def __init__(
        self,
        flow_manager: FlowManager,
        entity_store: EntityStore,
        dispatcher: ActionDispatcher,
        execution_log: ExecutionLog,
        max_concurrent_executions: Optional[int] = None,
        max_visits_per_node: Optional[int] = None,
    ):
        config = get_config()
        self.flow_manager = flow_manager
        self.entity_store = entity_store
        self.dispatcher = dispatcher
        self.execution_log = execution_log
        self.max_concurrent_executions = max_concurrent_executions or config.max_concurrent_executions
        self.max_visits_per_node = max_visits_per_node or config.max_visits_per_node

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_executions,
            thread_name_prefix="flow-run",
        )
        self._active_runs = set()
        self._active_lock = threading.Lock()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={self.max_concurrent_executions}")

    def execute_by_id(self, flow_id: str, lead_id: str, hop: int = 0) -> ExecutionResult:
        """Load a flow and run it. A missing flow aborts before any node runs."""
        flow = self.flow_manager.find_flow(flow_id)
        if flow is None:
            logger.warning(f"Flow {flow_id} not found; nothing executed for lead {lead_id}")
            return ExecutionResult(
                run_id=str(uuid.uuid4()),
                flow_id=flow_id,
                lead_id=lead_id,
                success=False,
                errors=[f"Flow not found: {flow_id}"],
            )
        return self.execute(flow, lead_id, hop=hop)

    def execute(self, flow: FlowDefinition, lead_id: str, hop: int = 0) -> ExecutionResult:
        """
        Run a flow against a lead from its entry node.

        Args:
            flow: Flow to run
            lead_id: Lead the nodes act on
            hop: Chained trigger depth this run was started at

        Returns:
            ExecutionResult: Node count, errors and whether the step guard stopped the run
        """
        run_id = str(uuid.uuid4())
        result = ExecutionResult(run_id=run_id, flow_id=flow.id, lead_id=lead_id)

        if not flow.is_active:
            logger.info(f"Flow {flow.id} is inactive; skipping run for lead {lead_id}")
            return result
        if not flow.nodes:
            logger.debug(f"Flow {flow.id} has no nodes; nothing to run")
            return result

        if self.entity_store.get_lead_snapshot(lead_id) is None:
            message = f"Lead not found: {lead_id}"
            logger.warning(f"Run {run_id} of flow {flow.id} aborted: {message}")
            result.success = False
            result.errors.append(message)
            return result

        with self._active_lock:
            self._active_runs.add(run_id)
        with logging_context(run_id=run_id, flow_id=flow.id, lead_id=lead_id):
            logger.info(f"Starting run {run_id} of flow '{flow.name}' for lead {lead_id} (hop {hop})")
            try:
                self._run(flow, lead_id, hop, result)
            finally:
                if result.nodes_executed > 0 and flow.id:
                    try:
                        self.flow_manager.increment_executions(flow.id)
                    except Exception as e:
                        logger.error(f"Failed to increment executions for flow {flow.id}: {str(e)}")
                with self._active_lock:
                    self._active_runs.discard(run_id)

        logger.info(
            f"Run {run_id} finished: success={result.success}, nodes_executed={result.nodes_executed}"
            + (", halted by step limit" if result.halted_by_step_limit else "")
        )
        return result

    def _run(self, flow: FlowDefinition, lead_id: str, hop: int, result: ExecutionResult) -> None:
        context = DispatchContext(run_id=result.run_id, flow=flow, lead_id=lead_id, hop=hop)
        max_steps = len(flow.nodes) * self.max_visits_per_node
        current = flow.entry_node()

        while current is not None:
            if result.nodes_executed >= max_steps:
                result.halted_by_step_limit = True
                logger.warning(
                    f"Run {result.run_id} of flow {flow.id} hit the step limit ({max_steps}) "
                    f"before node {current.id}"
                )
                self._log_step(
                    result.run_id, flow, lead_id, current.id, ExecutionLogStatus.SKIPPED,
                    f"Step limit of {max_steps} reached; run halted"
                )
                return

            self._log_step(result.run_id, flow, lead_id, current.id, ExecutionLogStatus.RUNNING)
            logger.debug(f"Dispatching {current.type} node {current.id}")
            outcome = self.dispatcher.dispatch(current, context)
            result.nodes_executed += 1

            if outcome.skipped:
                status = ExecutionLogStatus.SKIPPED
            elif outcome.success:
                status = ExecutionLogStatus.SUCCESS
            else:
                status = ExecutionLogStatus.ERROR
            self._log_step(result.run_id, flow, lead_id, current.id, status, outcome.message)

            if not outcome.success:
                result.success = False
                result.errors.append(f"{current.type}: {outcome.message}")
                logger.warning(f"Node {current.id} failed in run {result.run_id}: {outcome.message}")
                return

            current = self._get_next_node(flow, current, outcome)

    def _get_next_node(self, flow: FlowDefinition, node: FlowNode, outcome: NodeOutcome) -> Optional[FlowNode]:
        """Follow the matching branch of a condition node, or the first edge of any other node."""
        edges = flow.outgoing_edges(node.id)

        if node.type == NodeType.CONDITION.value:
            branch = "true" if outcome.branch_result else "false"
            edge = next((e for e in edges if e.branch_label == branch), None)
            if edge is None:
                logger.debug(f"Condition node {node.id} has no '{branch}' branch; run ends")
                return None
        else:
            if not edges:
                return None
            edge = edges[0]

        next_node = flow.get_node(edge.target)
        if next_node is None:
            logger.warning(f"Edge {edge.id} of flow {flow.id} points to missing node {edge.target}; run ends")
        return next_node

    def _log_step(self, run_id: str, flow: FlowDefinition, lead_id: str, node_id: str,
                  status: ExecutionLogStatus, message: Optional[str] = None) -> None:
        # Sink failures are reported by the log itself and never stop the run
        self.execution_log.record(
            run_id, LogSource.FLOW, flow.id or UNSAVED_FLOW_ID, lead_id, node_id, status, message
        )

    def submit(self, flow_id: str, lead_id: str, hop: int = 0) -> Future:
        """Run a stored flow on the worker pool."""
        return self._executor.submit(self.execute_by_id, flow_id, lead_id, hop)

    def get_active_runs(self):
        with self._active_lock:
            return list(self._active_runs)

    def shutdown(self, wait: bool = True) -> None:
        logger.info("Shutting down ExecutionEngine")
        try:
            self._executor.shutdown(wait=wait)
            logger.info("ExecutionEngine shutdown completed")
        except Exception as e:
            logger.error(f"Error during ExecutionEngine shutdown: {str(e)}")
