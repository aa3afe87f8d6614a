"""Storage for stage automation rules."""

import uuid
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import AutomationRule, RuleTrigger, utc_now
from ..storage.database import session_scope
from ..storage.models import AutomationRuleModel
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


class RuleManager:
    """Stores automation rules and lists them per stage in execution order."""

    def __init__(self, db_session: Optional[Session] = None):
        self._db_session = db_session

    def create_rule(self, rule: AutomationRule) -> str:
        rule_id = rule.id or str(uuid.uuid4())
        with session_scope(self._db_session) as db:
            try:
                db.add(AutomationRuleModel(
                    id=rule_id,
                    workspace_id=rule.workspace_id,
                    stage_id=rule.stage_id,
                    trigger=rule.trigger.value,
                    trigger_delay_hours=rule.trigger_delay_hours,
                    action_type=rule.action_type.value,
                    action_config=rule.action_config,
                    conditions=[condition.model_dump(mode="json") for condition in rule.conditions],
                    is_active=rule.is_active,
                    position=rule.position,
                    created_at=rule.created_at or utc_now(),
                ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error while creating rule: {str(e)}")
                raise StorageError(f"Failed to store automation rule: {str(e)}",
                                   operation="write", table="automation_rules")
        logger.info(f"Stored {rule.trigger.value} rule {rule_id} ({rule.action_type.value}) on stage {rule.stage_id}")
        return rule_id

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        try:
            with session_scope(self._db_session) as db:
                model = db.query(AutomationRuleModel).filter(AutomationRuleModel.id == rule_id).first()
                return self._to_rule(model) if model else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load automation rule: {str(e)}",
                               operation="read", table="automation_rules")

    def list_rules(
        self,
        stage_id: str,
        trigger: Optional[RuleTrigger] = None,
        active_only: bool = True,
    ) -> List[AutomationRule]:
        """Rules of a stage ordered by ``position``, ties broken by creation time."""
        try:
            with session_scope(self._db_session) as db:
                query = db.query(AutomationRuleModel).filter(AutomationRuleModel.stage_id == stage_id)
                if trigger is not None:
                    query = query.filter(AutomationRuleModel.trigger == trigger.value)
                if active_only:
                    query = query.filter(AutomationRuleModel.is_active.is_(True))
                rows = query.order_by(
                    AutomationRuleModel.position,
                    AutomationRuleModel.created_at,
                    AutomationRuleModel.id,
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list automation rules: {str(e)}",
                               operation="read", table="automation_rules")

        rules = []
        for row in rows:
            rule = self._to_rule(row)
            if rule is not None:
                rules.append(rule)
        return rules

    def _to_rule(self, model: AutomationRuleModel) -> Optional[AutomationRule]:
        try:
            return AutomationRule(
                id=model.id,
                workspace_id=model.workspace_id,
                stage_id=model.stage_id,
                trigger=model.trigger,
                trigger_delay_hours=model.trigger_delay_hours or 0,
                action_type=model.action_type,
                action_config=model.action_config or {},
                conditions=model.conditions or [],
                is_active=model.is_active,
                position=model.position or 0,
                created_at=model.created_at,
            )
        except ValidationError as e:
            # One corrupt row must not hide the stage's other rules
            logger.warning(f"Ignoring malformed automation rule {model.id}: {str(e)}")
            return None
