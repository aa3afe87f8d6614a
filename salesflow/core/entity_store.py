"""SQLAlchemy-backed access to leads, stages, tags and lead history."""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import LeadSnapshot, Stage, TagRef, utc_now
from ..storage.database import session_scope
from ..storage.models import (
    LeadHistoryModel,
    LeadModel,
    LeadTagAssignmentModel,
    StageModel,
    TagModel,
    WorkspaceMemberModel,
)
from .exceptions import EntityNotFoundError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


def _stage_from_model(model: StageModel) -> Stage:
    return Stage(
        id=model.id,
        workspace_id=model.workspace_id,
        name=model.name,
        position=model.position or 0,
        flow_id=model.flow_id,
    )


class EntityStore:
    """Reads and writes the CRM records automations operate on.

    Every call opens its own short session unless one was injected, so a
    snapshot taken by one node always reflects writes made by earlier nodes.
    """

    def __init__(self, db_session: Optional[Session] = None):
        self._db_session = db_session

    def get_lead_snapshot(self, lead_id: str) -> Optional[LeadSnapshot]:
        """Load a lead with its resolved tags, or None if it does not exist."""
        try:
            with session_scope(self._db_session) as db:
                lead = db.query(LeadModel).filter(LeadModel.id == lead_id).first()
                if lead is None:
                    return None

                tags = (
                    db.query(TagModel)
                    .join(LeadTagAssignmentModel, LeadTagAssignmentModel.tag_id == TagModel.id)
                    .filter(LeadTagAssignmentModel.lead_id == lead_id)
                    .order_by(LeadTagAssignmentModel.id)
                    .all()
                )

                return LeadSnapshot(
                    id=lead.id,
                    workspace_id=lead.workspace_id,
                    name=lead.name,
                    phone=lead.phone,
                    email=lead.email,
                    company=lead.company,
                    source=lead.source,
                    status=lead.status,
                    value=lead.value,
                    stage_id=lead.stage_id,
                    responsible_user=lead.responsible_user,
                    whatsapp_jid=lead.whatsapp_jid,
                    instance_name=lead.instance_name,
                    tags=[TagRef(id=tag.id, name=tag.name) for tag in tags],
                )
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading lead {lead_id}: {str(e)}")
            raise StorageError(f"Failed to load lead: {str(e)}", operation="read", table="leads")

    def require_lead(self, lead_id: str) -> LeadSnapshot:
        snapshot = self.get_lead_snapshot(lead_id)
        if snapshot is None:
            raise EntityNotFoundError(f"Lead not found: {lead_id}", entity_type="lead", entity_id=lead_id)
        return snapshot

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        try:
            with session_scope(self._db_session) as db:
                model = db.query(StageModel).filter(StageModel.id == stage_id).first()
                return _stage_from_model(model) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load stage: {str(e)}", operation="read", table="stages")

    def find_stage_by_name(self, workspace_id: Optional[str], name: str) -> Optional[Stage]:
        """Case-insensitive stage lookup within a workspace."""
        wanted = name.strip().lower()
        try:
            with session_scope(self._db_session) as db:
                query = db.query(StageModel)
                if workspace_id:
                    query = query.filter(StageModel.workspace_id == workspace_id)
                for model in query.order_by(StageModel.position, StageModel.id).all():
                    if (model.name or "").strip().lower() == wanted:
                        return _stage_from_model(model)
                return None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up stage: {str(e)}", operation="read", table="stages")

    def get_tag(self, tag_id: str) -> Optional[TagRef]:
        try:
            with session_scope(self._db_session) as db:
                model = db.query(TagModel).filter(TagModel.id == tag_id).first()
                return TagRef(id=model.id, name=model.name) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load tag: {str(e)}", operation="read", table="tags")

    def find_tag_by_name(self, workspace_id: Optional[str], name: str) -> Optional[TagRef]:
        """Case-insensitive tag lookup within a workspace."""
        wanted = name.strip().lower()
        try:
            with session_scope(self._db_session) as db:
                query = db.query(TagModel)
                if workspace_id:
                    query = query.filter(TagModel.workspace_id == workspace_id)
                for model in query.order_by(TagModel.id).all():
                    if (model.name or "").strip().lower() == wanted:
                        return TagRef(id=model.id, name=model.name)
                return None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up tag: {str(e)}", operation="read", table="tags")

    def add_tag(self, lead_id: str, tag_id: str) -> bool:
        """Assign a tag to a lead. Returns False when the lead already had it."""
        with session_scope(self._db_session) as db:
            try:
                exists = (
                    db.query(LeadTagAssignmentModel)
                    .filter(
                        LeadTagAssignmentModel.lead_id == lead_id,
                        LeadTagAssignmentModel.tag_id == tag_id,
                    )
                    .first()
                )
                if exists:
                    return False
                db.add(LeadTagAssignmentModel(lead_id=lead_id, tag_id=tag_id, created_at=utc_now()))
                db.commit()
                return True
            except IntegrityError:
                # A concurrent writer assigned the same tag first
                db.rollback()
                return False
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to add tag: {str(e)}", operation="write", table="lead_tag_assignments")

    def remove_tag(self, lead_id: str, tag_id: str) -> bool:
        """Remove a tag from a lead. Returns False when the lead did not have it."""
        with session_scope(self._db_session) as db:
            try:
                deleted = (
                    db.query(LeadTagAssignmentModel)
                    .filter(
                        LeadTagAssignmentModel.lead_id == lead_id,
                        LeadTagAssignmentModel.tag_id == tag_id,
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
                return deleted > 0
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to remove tag: {str(e)}", operation="write", table="lead_tag_assignments")

    def move_stage(
        self,
        lead_id: str,
        stage_id: str,
        performed_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Move a lead to a stage and record the ``stage_changed`` history entry.

        The stage write and the history insert share one commit. Returns the
        stage the lead was in before; a move to the current stage writes nothing.
        """
        with session_scope(self._db_session) as db:
            try:
                lead = db.query(LeadModel).filter(LeadModel.id == lead_id).first()
                if lead is None:
                    raise EntityNotFoundError(f"Lead not found: {lead_id}", entity_type="lead", entity_id=lead_id)
                previous = lead.stage_id
                if previous == stage_id:
                    return previous
                lead.stage_id = stage_id
                lead.updated_at = utc_now()
                db.add(LeadHistoryModel(
                    lead_id=lead_id,
                    action="stage_changed",
                    performed_by=performed_by,
                    from_stage_id=previous,
                    to_stage_id=stage_id,
                    details=details or {},
                    created_at=utc_now(),
                ))
                db.commit()
                return previous
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update stage: {str(e)}", operation="write", table="leads")

    def set_responsible(self, lead_id: str, user_id: str) -> None:
        with session_scope(self._db_session) as db:
            try:
                updated = (
                    db.query(LeadModel)
                    .filter(LeadModel.id == lead_id)
                    .update({LeadModel.responsible_user: user_id, LeadModel.updated_at: utc_now()},
                            synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to update responsible: {str(e)}", operation="write", table="leads")
        if not updated:
            raise EntityNotFoundError(f"Lead not found: {lead_id}", entity_type="lead", entity_id=lead_id)

    def append_history(
        self,
        lead_id: str,
        action: str,
        performed_by: Optional[str] = None,
        from_stage_id: Optional[str] = None,
        to_stage_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with session_scope(self._db_session) as db:
            try:
                db.add(LeadHistoryModel(
                    lead_id=lead_id,
                    action=action,
                    performed_by=performed_by,
                    from_stage_id=from_stage_id,
                    to_stage_id=to_stage_id,
                    details=details or {},
                    created_at=utc_now(),
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to write lead history: {str(e)}", operation="write", table="lead_history")

    def list_history(self, lead_id: str, action: Optional[str] = None) -> List[Dict[str, Any]]:
        """History records of a lead, oldest first."""
        with session_scope(self._db_session) as db:
            query = db.query(LeadHistoryModel).filter(LeadHistoryModel.lead_id == lead_id)
            if action:
                query = query.filter(LeadHistoryModel.action == action)
            return [
                {
                    "action": row.action,
                    "performed_by": row.performed_by,
                    "from_stage_id": row.from_stage_id,
                    "to_stage_id": row.to_stage_id,
                    "details": row.details or {},
                    "created_at": row.created_at,
                }
                for row in query.order_by(LeadHistoryModel.id).all()
            ]

    def list_members(self, workspace_id: Optional[str], roles: Sequence[str]) -> List[str]:
        """User ids of workspace members with one of ``roles``, in a stable order."""
        try:
            with session_scope(self._db_session) as db:
                rows = (
                    db.query(WorkspaceMemberModel)
                    .filter(
                        WorkspaceMemberModel.workspace_id == workspace_id,
                        WorkspaceMemberModel.role.in_(list(roles)),
                    )
                    .order_by(WorkspaceMemberModel.created_at, WorkspaceMemberModel.id)
                    .all()
                )
                return [row.user_id for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list members: {str(e)}", operation="read", table="workspace_members")
