import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from vmplatform.database import models
from vmplatform.services.audit_service import AuditService
from vmplatform.services.compute_service import ComputeService
from vmplatform.services.exceptions import ForbiddenError, VmValidationError
from vmplatform.services.monitoring_service import MonitoringService

logger = logging.getLogger(__name__)

VM_ACTIONS = ("start", "stop", "restart", "delete", "snapshot", "backup", "console", "restore")
BULK_ACTIONS = ("start", "stop", "restart", "delete", "snapshot", "backup")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_vm(vm: models.VM) -> Dict[str, Any]:
    return {
        "vm_id": vm.vm_id,
        "name": vm.name,
        "description": vm.description,
        "template": vm.template,
        "cpu_cores": vm.cpu_cores,
        "memory": vm.memory_gb,
        "disk_size": vm.disk_size_gb,
        "network_type": vm.network_type,
        "ip_address": vm.ip_address,
        "vnc_display": vm.vnc_display,
        "status": vm.status,
        "created_at": _isoformat(vm.created_at),
    }


def serialize_snapshot(snapshot: models.Snapshot) -> Dict[str, Any]:
    return {
        "snapshot_id": snapshot.snapshot_handle,
        "name": snapshot.name,
        "description": snapshot.description,
        "created_at": _isoformat(snapshot.created_at),
    }


def serialize_backup(backup: models.Backup) -> Dict[str, Any]:
    return {
        "name": backup.name,
        "path": backup.path,
        "size": backup.size_bytes,
        "status": backup.status,
        "created_at": _isoformat(backup.created_at),
    }


class ActionService:
    """
    The caller-facing operation surface.

    Every operation takes the caller's identity explicitly, checks ownership
    before touching the VM, and records completed actions in the audit log.
    """

    def __init__(self, compute_service: ComputeService, monitoring_service: MonitoringService,
                 audit_service: AuditService, clock=datetime.now):
        self.compute = compute_service
        self.monitoring = monitoring_service
        self.audit = audit_service
        self.clock = clock

    def _owned_vm(self, caller_id: int, vm_id: str) -> models.VM:
        vm = self.compute.get_vm(vm_id)
        if vm.owner_id != caller_id:
            raise ForbiddenError("Access denied")
        return vm

    def _timestamp(self) -> str:
        return self.clock().strftime("%Y-%m-%d %H:%M:%S")

    def create_vm(self, caller_id: int, data: Dict[str, Any], origin: Optional[str] = None) -> Dict[str, Any]:
        vm = self.compute.create_vm(caller_id, data)
        self.audit.record(caller_id, "vm_create", resource_id=vm.vm_id, details={
            "name": vm.name,
            "template": vm.template,
            "cpu_cores": vm.cpu_cores,
            "memory": vm.memory_gb,
            "disk_size": vm.disk_size_gb,
        }, origin=origin)
        return {"success": True, "vm_id": vm.vm_id, "message": "VM created successfully", "vm": serialize_vm(vm)}

    def perform_action(self, caller_id: int, vm_id: str, action: str, params: Optional[Dict[str, Any]] = None,
                       origin: Optional[str] = None, name_prefix: str = "") -> Dict[str, Any]:
        """
        Runs one lifecycle action on a VM the caller owns.

        Args:
            caller_id: user on whose behalf the action runs.
            vm_id: target VM.
            action: one of VM_ACTIONS.
            params: snapshot_name / description / backup_name / snapshot_id, by action.
            origin: caller address for the audit log.
            name_prefix: prefix of generated snapshot/backup names ("Bulk " for batches).

        Returns:
            {"success": True, "message": ...} plus action specific fields.

        Raises:
            VmValidationError: unknown action.
            VmNotFoundError, ForbiddenError: lookup / ownership.
            PlatformError: whatever the lifecycle operation raised.
        """
        if action not in VM_ACTIONS:
            raise VmValidationError("Invalid action")
        params = params or {}
        vm = self._owned_vm(caller_id, vm_id)

        if action == "start":
            self.compute.start_vm(vm_id)
            result = {"message": "VM started successfully"}
        elif action == "stop":
            self.compute.stop_vm(vm_id)
            result = {"message": "VM stopped successfully"}
        elif action == "restart":
            self.compute.restart_vm(vm_id)
            result = {"message": "VM restarted successfully"}
        elif action == "delete":
            self.compute.delete_vm(vm_id)
            result = {"message": "VM deleted successfully"}
        elif action == "snapshot":
            name = params.get("snapshot_name") or f"{name_prefix}Snapshot {self._timestamp()}"
            description = params.get("description") or ("Bulk operation" if name_prefix else "")
            snapshot = self.compute.create_snapshot(vm_id, name, description)
            result = {"message": "Snapshot created successfully", "snapshot": serialize_snapshot(snapshot)}
        elif action == "backup":
            name = params.get("backup_name") or f"{name_prefix}Backup {self._timestamp()}"
            backup = self.compute.create_backup(vm_id, name)
            result = {"message": "Backup created successfully", "backup": serialize_backup(backup)}
        elif action == "restore":
            handle = params.get("snapshot_id")
            if not handle:
                raise VmValidationError("snapshot_id is required")
            self.compute.restore_snapshot(vm_id, handle)
            result = {"message": "Snapshot restored successfully"}
        else:
            result = {"message": "Console opened", **self.compute.console_info(vm_id)}

        self.audit.record(caller_id, f"vm_{action}", resource_id=vm_id,
                          details={"vm_id": vm_id, "action": action, "vm_pk": vm.id}, origin=origin)
        return {"success": True, **result}

    def list_vms(self, caller_id: int) -> List[Dict[str, Any]]:
        return [serialize_vm(vm) for vm in self.compute.list_vms(caller_id)]

    def list_snapshots(self, caller_id: int, vm_id: str) -> List[Dict[str, Any]]:
        self._owned_vm(caller_id, vm_id)
        return [serialize_snapshot(s) for s in self.compute.list_snapshots(vm_id)]

    def list_backups(self, caller_id: int, vm_id: str) -> List[Dict[str, Any]]:
        self._owned_vm(caller_id, vm_id)
        return [serialize_backup(b) for b in self.compute.list_backups(vm_id)]

    def get_monitoring_snapshot(self, caller_id: int, vm_id: str) -> Dict[str, Any]:
        return self.monitoring.vm_snapshot(self._owned_vm(caller_id, vm_id))

    def get_host_stats(self) -> Dict[str, Any]:
        return self.monitoring.host_snapshot()

    def get_dashboard_stats(self, caller_id: int) -> Dict[str, Any]:
        return self.monitoring.dashboard_stats(caller_id)
