import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vmplatform.services.action_service import BULK_ACTIONS, ActionService
from vmplatform.services.audit_service import AuditService
from vmplatform.services.exceptions import (
    PartialBulkFailureError,
    PlatformError,
    VmValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """Per-VM outcomes of one batch, in the order the ids were given."""
    action: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0

    @property
    def success(self) -> bool:
        return self.error_count == 0

    @property
    def message(self) -> str:
        return f"Bulk action completed: {self.success_count} successful, {self.error_count} failed"

    def add_success(self, vm_id: str, outcome: Dict[str, Any]):
        self.results.append({**outcome, "vm_id": vm_id, "success": True})
        self.success_count += 1

    def add_failure(self, vm_id: str, message: str, error: str):
        self.results.append({"vm_id": vm_id, "success": False, "message": message, "error": error})
        self.error_count += 1

    def raise_for_failures(self):
        if self.error_count:
            raise PartialBulkFailureError(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "results": self.results,
            "success_count": self.success_count,
            "error_count": self.error_count,
        }


class BulkOperationService:
    """Applies one action to many VMs; each VM succeeds or fails on its own."""

    def __init__(self, action_service: ActionService, audit_service: AuditService):
        self.action_service = action_service
        self.audit = audit_service

    def apply_to_all(self, caller_id: int, action: str, vm_ids: List[str],
                     origin: Optional[str] = None) -> BulkResult:
        """
        Runs ``action`` on every id sequentially.

        A failing VM (not found, not owned, busy, launch failure, anything) is
        recorded in its result entry and the batch moves on, so
        ``success_count + error_count == len(vm_ids)`` always holds.

        Raises:
            VmValidationError: empty id list or an action batches do not support.
        """
        if not vm_ids:
            raise VmValidationError("No VMs selected")
        if action not in BULK_ACTIONS:
            raise VmValidationError("Invalid action")

        result = BulkResult(action=action)
        for vm_id in vm_ids:
            try:
                outcome = self.action_service.perform_action(caller_id, vm_id, action, origin=origin,
                                                             name_prefix="Bulk ")
                result.add_success(vm_id, outcome)
            except PlatformError as e:
                result.add_failure(vm_id, str(e), e.code)
            except Exception as e:
                logger.exception(f"Unexpected error during bulk {action} on {vm_id}")
                result.add_failure(vm_id, f"Unexpected error: {e}", "internal_error")

        self.audit.record(caller_id, f"bulk_vm_{action}", details={
            "vm_ids": list(vm_ids),
            "action": action,
            "success_count": result.success_count,
            "error_count": result.error_count,
        }, origin=origin)
        logger.info(f"Bulk {action} by user {caller_id}: {result.message}")
        return result
