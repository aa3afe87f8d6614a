"""Flow Manager for automation flow storage and validation."""

import uuid
from collections import Counter
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import (
    FlowDefinition,
    FlowTriggerType,
    NodeType,
    ValidationResult,
    utc_now,
)
from ..storage.database import session_scope
from ..storage.models import FlowModel, StageModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import FlowNotFoundError, FlowValidationError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


def _flow_from_model(model: FlowModel) -> FlowDefinition:
    definition = model.definition or {}
    return FlowDefinition(
        id=model.id,
        workspace_id=model.workspace_id,
        name=model.name,
        description=model.description,
        nodes=definition.get("nodes", []),
        edges=definition.get("edges", []),
        is_active=model.is_active,
        executions_count=model.executions_count or 0,
        trigger_type=model.trigger_type or FlowTriggerType.MANUAL.value,
        trigger_config=model.trigger_config or {},
    )


class FlowManager:
    """Manages flow definitions, validation, and storage."""

    def __init__(self, db_session: Optional[Session] = None):
        """Initialize FlowManager with optional database session."""
        self._db_session = db_session

    def create_flow(self, flow: FlowDefinition) -> str:
        """
        Validate and store a flow, returning its identifier.

        Args:
            flow: The flow definition to store. A provided ``id`` is kept.

        Returns:
            str: Flow identifier

        Raises:
            FlowValidationError: If the flow has structural errors
            StorageError: If the storage operation fails
        """
        logger.info(f"Creating flow: {flow.name}")

        validation_result = self.validate_flow(flow)
        if not validation_result.is_valid:
            error_msg = f"Flow validation failed: {'; '.join(validation_result.errors)}"
            logger.error(error_msg)
            raise FlowValidationError(error_msg, validation_errors=validation_result.errors, flow_name=flow.name)

        if validation_result.warnings:
            logger.warning(f"Flow validation warnings: {'; '.join(validation_result.warnings)}")

        flow_id = flow.id or str(uuid.uuid4())

        with session_scope(self._db_session) as db:
            try:
                db.add(FlowModel(
                    id=flow_id,
                    workspace_id=flow.workspace_id,
                    name=flow.name,
                    description=flow.description,
                    definition={
                        "nodes": [node.model_dump() for node in flow.nodes],
                        "edges": [edge.model_dump(by_alias=True) for edge in flow.edges],
                    },
                    is_active=flow.is_active,
                    executions_count=0,
                    trigger_type=flow.trigger_type.value,
                    trigger_config=flow.trigger_config,
                    created_at=utc_now(),
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while creating flow: {str(e)}")
                raise StorageError(f"Failed to store flow: {str(e)}", operation="write", table="flows")

        logger.info(f"Stored flow '{flow.name}' with ID: {flow_id}")
        return flow_id

    def get_flow(self, flow_id: str) -> FlowDefinition:
        """
        Load a flow by ID.

        Raises:
            FlowNotFoundError: If no flow has this ID
            StorageError: If the storage operation fails
        """
        try:
            with session_scope(self._db_session) as db:
                model = db.query(FlowModel).filter(FlowModel.id == flow_id).first()
                if model is None:
                    raise FlowNotFoundError(f"Flow not found: {flow_id}", flow_id=flow_id)
                return _flow_from_model(model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading flow: {str(e)}")
            raise StorageError(f"Failed to load flow: {str(e)}", operation="read", table="flows")

    def find_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        try:
            return self.get_flow(flow_id)
        except FlowNotFoundError:
            return None

    def list_flows(
        self,
        workspace_id: Optional[str] = None,
        trigger_types: Optional[Sequence[FlowTriggerType]] = None,
        active_only: bool = False,
    ) -> List[FlowDefinition]:
        """Flows matching the filters, oldest first."""
        try:
            with session_scope(self._db_session) as db:
                query = db.query(FlowModel)
                if workspace_id:
                    query = query.filter(FlowModel.workspace_id == workspace_id)
                if trigger_types:
                    query = query.filter(FlowModel.trigger_type.in_([t.value for t in trigger_types]))
                if active_only:
                    query = query.filter(FlowModel.is_active.is_(True))
                rows = query.order_by(FlowModel.created_at, FlowModel.id).all()
                return [_flow_from_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list flows: {str(e)}", operation="read", table="flows")

    def get_flow_for_stage(self, stage_id: str) -> Optional[FlowDefinition]:
        """The flow bound to a stage, if the stage has one and it still exists."""
        with session_scope(self._db_session) as db:
            stage = db.query(StageModel).filter(StageModel.id == stage_id).first()
            flow_id = stage.flow_id if stage else None
        if not flow_id:
            return None
        flow = self.find_flow(flow_id)
        if flow is None:
            logger.warning(f"Stage {stage_id} is bound to missing flow {flow_id}")
        return flow

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5))
    def increment_executions(self, flow_id: str) -> None:
        """Atomically add one to the flow's executions counter."""
        with session_scope(self._db_session) as db:
            try:
                db.execute(
                    update(FlowModel)
                    .where(FlowModel.id == flow_id)
                    .values(executions_count=FlowModel.executions_count + 1)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to increment executions: {str(e)}",
                                   operation="update", table="flows")

    def validate_flow(self, flow: FlowDefinition) -> ValidationResult:
        """
        Check a flow for structural problems.

        Errors block storage; warnings describe graphs that run with a
        documented fallback (first edge wins, missing branch ends the run).
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not flow.nodes:
            warnings.append("Flow has no nodes and will never run")

        self._validate_node_ids(flow, errors)
        self._validate_edge_references(flow, errors)
        self._validate_nodes(flow, warnings)
        self._validate_branching(flow, warnings)

        if flow._has_cycles():
            warnings.append("Flow contains cycles; runs are bounded by the step limit")

        if not errors:
            self._validate_unreachable_nodes(flow, warnings)

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Flow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return result

    def _validate_node_ids(self, flow: FlowDefinition, errors: List[str]):
        counts = Counter(node.id for node in flow.nodes)
        for node_id, count in counts.items():
            if count > 1:
                errors.append(f"Duplicate node ID '{node_id}' ({count} nodes)")

    def _validate_edge_references(self, flow: FlowDefinition, errors: List[str]):
        node_ids = {node.id for node in flow.nodes}
        for edge in flow.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge '{edge.id}' references unknown source node '{edge.source}'")
            if edge.target not in node_ids:
                errors.append(f"Edge '{edge.id}' references unknown target node '{edge.target}'")

    def _validate_nodes(self, flow: FlowDefinition, warnings: List[str]):
        for node in flow.nodes:
            if node.node_type is None:
                warnings.append(f"Node '{node.id}' has unknown type '{node.type}' and will be skipped")
            elif node.config_error:
                warnings.append(f"Node '{node.id}': {node.config_error}")

    def _validate_branching(self, flow: FlowDefinition, warnings: List[str]):
        for node in flow.nodes:
            edges = flow.outgoing_edges(node.id)
            if node.node_type == NodeType.CONDITION:
                labels = {edge.branch_label for edge in edges}
                for branch in ("true", "false"):
                    if branch not in labels:
                        warnings.append(f"Condition node '{node.id}' has no '{branch}' branch")
                continue

            unlabeled = [edge for edge in edges if not edge.branch_label]
            if len(unlabeled) > 1:
                warnings.append(
                    f"Node '{node.id}' has {len(unlabeled)} unlabeled outgoing edges; "
                    f"only the first ('{unlabeled[0].target}') is followed"
                )

    def _validate_unreachable_nodes(self, flow: FlowDefinition, warnings: List[str]):
        entry = flow.entry_node()
        if entry is None:
            return
        reachable = flow._find_reachable_nodes(entry.id)
        unreachable = [node.id for node in flow.nodes if node.id not in reachable]
        if unreachable:
            warnings.append(f"Unreachable nodes from entry '{entry.id}': {', '.join(unreachable)}")
