"""Durable queue of delayed (after_time) rule triggers and the sweep that drains it."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_config
from ..models.core import ExecutionLogStatus, QueuedTrigger, QueueStatus, SweepReport, utc_now
from ..storage.database import session_scope
from ..storage.models import AutomationQueueModel
from .entity_store import EntityStore
from .exceptions import StorageError
from .logging import get_logger
from .rule_manager import RuleManager

if TYPE_CHECKING:
    from .trigger_router import TriggerRouter

logger = get_logger(__name__)


def _as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _entry_from_model(model: AutomationQueueModel) -> QueuedTrigger:
    return QueuedTrigger(
        id=model.id,
        automation_id=model.automation_id,
        lead_id=model.lead_id,
        workspace_id=model.workspace_id,
        execute_at=model.execute_at,
        status=QueueStatus(model.status),
        created_at=model.created_at,
        processed_at=model.processed_at,
        error_message=model.error_message,
    )


class TriggerQueue:
    """
    Stores "run rule R against lead L at time T" entries.

    Entries move ``pending -> done`` or ``pending -> failed`` exactly once.
    A sweep claims an entry with a conditional update before running its
    rule, so two overlapping sweeps never both run the same entry. Failed
    entries stay failed until ``retry`` is called for them.
    """

    def __init__(self, rule_manager: RuleManager, entity_store: EntityStore,
                 db_session: Optional[Session] = None):
        self.rule_manager = rule_manager
        self.entity_store = entity_store
        self._db_session = db_session

    def enqueue(self, automation_id: str, lead_id: str, workspace_id: Optional[str],
                execute_at: datetime) -> QueuedTrigger:
        with session_scope(self._db_session) as db:
            try:
                model = AutomationQueueModel(
                    automation_id=automation_id,
                    lead_id=lead_id,
                    workspace_id=workspace_id,
                    execute_at=_as_naive_utc(execute_at),
                    status=QueueStatus.PENDING.value,
                    created_at=utc_now(),
                )
                db.add(model)
                db.commit()
                db.refresh(model)
                entry = _entry_from_model(model)
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to enqueue delayed trigger: {str(e)}",
                                   operation="write", table="automation_queue")

        logger.info(f"Queued rule {automation_id} for lead {lead_id} at {entry.execute_at.isoformat()}")
        return entry

    def get(self, entry_id: int) -> Optional[QueuedTrigger]:
        with session_scope(self._db_session) as db:
            model = db.query(AutomationQueueModel).filter(AutomationQueueModel.id == entry_id).first()
            return _entry_from_model(model) if model else None

    def list_entries(self, status: Optional[QueueStatus] = None,
                     lead_id: Optional[str] = None) -> List[QueuedTrigger]:
        with session_scope(self._db_session) as db:
            query = db.query(AutomationQueueModel)
            if status is not None:
                query = query.filter(AutomationQueueModel.status == status.value)
            if lead_id:
                query = query.filter(AutomationQueueModel.lead_id == lead_id)
            return [_entry_from_model(row) for row in query.order_by(AutomationQueueModel.id).all()]

    def due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[QueuedTrigger]:
        """Pending entries whose time has come, oldest first."""
        now = _as_naive_utc(now) if now else utc_now()
        limit = limit or get_config().sweep_batch_size
        try:
            with session_scope(self._db_session) as db:
                rows = (
                    db.query(AutomationQueueModel)
                    .filter(
                        AutomationQueueModel.status == QueueStatus.PENDING.value,
                        AutomationQueueModel.execute_at <= now,
                        AutomationQueueModel.claimed_at.is_(None),
                    )
                    .order_by(AutomationQueueModel.execute_at, AutomationQueueModel.id)
                    .limit(limit)
                    .all()
                )
                return [_entry_from_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read due triggers: {str(e)}",
                               operation="read", table="automation_queue")

    def sweep(self, router: "TriggerRouter", now: Optional[datetime] = None,
              batch_size: Optional[int] = None) -> SweepReport:
        """Run every due entry once through the router's rule path."""
        now = _as_naive_utc(now) if now else utc_now()
        report = SweepReport(swept_at=now)

        for entry in self.due(now, batch_size):
            if not self._claim(entry.id):
                logger.info(f"Queue entry {entry.id} was claimed by another sweep")
                continue
            status, message = self._process(router, entry)
            if not self._transition(entry.id, status, message if status == QueueStatus.FAILED else None):
                logger.warning(f"Queue entry {entry.id} left pending before its result was recorded")
                continue

            report.processed += 1
            if status == QueueStatus.DONE:
                report.done += 1
            else:
                report.failed += 1
            report.entries.append(entry.model_copy(update={
                "status": status,
                "processed_at": utc_now(),
                "error_message": message if status == QueueStatus.FAILED else None,
            }))

        if report.processed:
            logger.info(f"Sweep processed {report.processed} entries: {report.done} done, {report.failed} failed")
        return report

    def _process(self, router: "TriggerRouter", entry: QueuedTrigger):
        """Decide the terminal status of one entry, running its rule if it still applies."""
        try:
            rule = self.rule_manager.get_rule(entry.automation_id)
            if rule is None:
                return QueueStatus.FAILED, f"Automation rule not found: {entry.automation_id}"

            snapshot = self.entity_store.get_lead_snapshot(entry.lead_id)
            if snapshot is None:
                return QueueStatus.FAILED, f"Lead not found: {entry.lead_id}"

            if not rule.is_active:
                logger.info(f"Queue entry {entry.id} skipped: rule {rule.id} is inactive")
                return QueueStatus.DONE, "Rule inactive"
            if snapshot.stage_id != rule.stage_id:
                logger.info(f"Queue entry {entry.id} skipped: lead {entry.lead_id} left stage {rule.stage_id}")
                return QueueStatus.DONE, "Lead no longer in stage"

            outcome = router.run_rule(rule, entry.lead_id)
            if outcome.status == ExecutionLogStatus.ERROR:
                return QueueStatus.FAILED, outcome.message
            return QueueStatus.DONE, outcome.message
        except Exception as e:
            logger.error(f"Queue entry {entry.id} failed: {str(e)}")
            return QueueStatus.FAILED, str(e)

    def _claim(self, entry_id: int) -> bool:
        """Mark a pending entry as taken by this sweep. Only one sweep can win."""
        with session_scope(self._db_session) as db:
            try:
                result = db.execute(
                    update(AutomationQueueModel)
                    .where(
                        AutomationQueueModel.id == entry_id,
                        AutomationQueueModel.status == QueueStatus.PENDING.value,
                        AutomationQueueModel.claimed_at.is_(None),
                    )
                    .values(claimed_at=utc_now())
                )
                db.commit()
                return result.rowcount == 1
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to claim queue entry: {str(e)}",
                                   operation="update", table="automation_queue")

    def _transition(self, entry_id: int, status: QueueStatus, error_message: Optional[str] = None) -> bool:
        with session_scope(self._db_session) as db:
            try:
                result = db.execute(
                    update(AutomationQueueModel)
                    .where(
                        AutomationQueueModel.id == entry_id,
                        AutomationQueueModel.status == QueueStatus.PENDING.value,
                    )
                    .values(status=status.value, error_message=error_message, processed_at=utc_now())
                )
                db.commit()
                return result.rowcount == 1
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update queue entry: {str(e)}",
                                   operation="update", table="automation_queue")

    def retry(self, entry_id: int, execute_at: Optional[datetime] = None) -> bool:
        """Put a failed entry back to pending. Returns False if it was not failed."""
        execute_at = _as_naive_utc(execute_at) if execute_at else utc_now()
        with session_scope(self._db_session) as db:
            try:
                result = db.execute(
                    update(AutomationQueueModel)
                    .where(
                        AutomationQueueModel.id == entry_id,
                        AutomationQueueModel.status == QueueStatus.FAILED.value,
                    )
                    .values(
                        status=QueueStatus.PENDING.value,
                        execute_at=execute_at,
                        claimed_at=None,
                        processed_at=None,
                        error_message=None,
                    )
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to retry queue entry: {str(e)}",
                                   operation="update", table="automation_queue")
        if result.rowcount == 1:
            logger.info(f"Queue entry {entry_id} put back to pending")
            return True
        return False
