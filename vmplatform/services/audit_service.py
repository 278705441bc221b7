import json
import logging
from typing import Any, Dict, Optional

from vmplatform.database import models
from vmplatform.repositories.interfaces import IAuditRepository

logger = logging.getLogger(__name__)


class AuditService:
    """Writes ``system_logs`` entries. Fire-and-forget: a failed write never fails the action."""

    def __init__(self, audit_repo: IAuditRepository):
        self.audit_repo = audit_repo

    def record(self, actor_id: Optional[int], action: str, resource_type: str = "vm",
               resource_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
               origin: Optional[str] = None) -> None:
        try:
            self.audit_repo.create(models.AuditLog(
                user_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=json.dumps(details or {}, default=str),
                origin=origin or "unknown",
            ))
        except Exception as e:
            logger.error(f"Failed to write audit entry '{action}' for {resource_type}/{resource_id}: {e}")
