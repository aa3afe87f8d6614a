"""Append-only node visit log with audit and replay queries."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import ExecutionLogEntry, ExecutionLogStatus, LogSource
from ..storage.database import session_scope
from ..storage.models import ExecutionLogModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


def _entry_from_model(model: ExecutionLogModel) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        id=model.id,
        run_id=model.run_id,
        source=LogSource(model.source),
        flow_or_automation_id=model.flow_or_automation_id,
        lead_id=model.lead_id,
        node_id=model.node_id,
        status=ExecutionLogStatus(model.status),
        message=model.message,
        timestamp=model.timestamp,
    )


class ExecutionLog:
    """Execution log sink.

    Writes are retried on transient storage failures. A write that still
    fails is reported to the application log and dropped, so a broken sink
    never aborts a run.
    """

    def __init__(self, db_session: Optional[Session] = None):
        self._db_session = db_session

    def record(
        self,
        run_id: str,
        source: LogSource,
        owner_id: str,
        lead_id: str,
        node_id: str,
        status: ExecutionLogStatus,
        message: Optional[str] = None,
    ) -> bool:
        """Append one entry. Returns False if it could not be persisted."""
        entry = ExecutionLogEntry(
            run_id=run_id,
            source=source,
            flow_or_automation_id=owner_id,
            lead_id=lead_id,
            node_id=node_id,
            status=status,
            message=message,
        )
        return self.append(entry)

    def append(self, entry: ExecutionLogEntry) -> bool:
        try:
            self._write(entry)
            return True
        except Exception as e:
            logger.error(
                f"Failed to write execution log entry for run {entry.run_id}, "
                f"node {entry.node_id}: {str(e)}"
            )
            return False

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5))
    def _write(self, entry: ExecutionLogEntry) -> None:
        with session_scope(self._db_session) as db:
            try:
                db.add(ExecutionLogModel(
                    run_id=entry.run_id,
                    source=entry.source.value,
                    flow_or_automation_id=entry.flow_or_automation_id,
                    lead_id=entry.lead_id,
                    node_id=entry.node_id,
                    status=entry.status.value,
                    message=entry.message,
                    timestamp=entry.timestamp,
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to write log entry: {str(e)}",
                                   operation="write", table="execution_logs")

    def list_entries(
        self,
        flow_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[ExecutionLogEntry]:
        """Entries matching every given filter, in write order."""
        try:
            with session_scope(self._db_session) as db:
                query = db.query(ExecutionLogModel)
                if flow_id:
                    query = query.filter(ExecutionLogModel.flow_or_automation_id == flow_id)
                if lead_id:
                    query = query.filter(ExecutionLogModel.lead_id == lead_id)
                if run_id:
                    query = query.filter(ExecutionLogModel.run_id == run_id)
                rows = query.order_by(ExecutionLogModel.id).limit(limit).all()
                return [_entry_from_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read execution logs: {str(e)}",
                               operation="read", table="execution_logs")

    def has_entries(self, flow_or_automation_id: str, lead_id: str) -> bool:
        """Whether this flow or rule has ever run against the lead."""
        return self.last_run_at(flow_or_automation_id, lead_id) is not None

    def last_run_at(self, flow_or_automation_id: str, lead_id: str) -> Optional[datetime]:
        try:
            with session_scope(self._db_session) as db:
                row = (
                    db.query(ExecutionLogModel)
                    .filter(
                        ExecutionLogModel.flow_or_automation_id == flow_or_automation_id,
                        ExecutionLogModel.lead_id == lead_id,
                    )
                    .order_by(ExecutionLogModel.id.desc())
                    .first()
                )
                return row.timestamp if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read execution logs: {str(e)}",
                               operation="read", table="execution_logs")

    def has_recent_run(self, flow_id: str, lead_id: str, since: datetime) -> bool:
        """Whether the flow wrote anything for the lead at or after ``since``."""
        last = self.last_run_at(flow_id, lead_id)
        return last is not None and last >= since
