import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import psutil

from vmplatform.config import Settings
from vmplatform.database import models
from vmplatform.repositories.interfaces import IAuditRepository, IBackupRepository, IVMRepository
from vmplatform.services.image_service import ImageService
from vmplatform.services.process_supervisor import ProcessSupervisor
from vmplatform.services.resource_allocator import ResourceAllocator
from vmplatform.utils.formatting import format_bytes

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

EMPTY_NETWORK = {
    "bytes_received": 0,
    "bytes_transmitted": 0,
    "packets_received": 0,
    "packets_transmitted": 0,
}


class MonitoringService:
    """
    Point-in-time telemetry for single VMs, the host, and one owner's dashboard.

    Nothing here raises because a measurement failed: each figure is sampled on
    its own and reads 0 when its source is unavailable.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        backup_repo: IBackupRepository,
        audit_repo: IAuditRepository,
        image_service: ImageService,
        supervisor: ProcessSupervisor,
        allocator: ResourceAllocator,
        settings: Settings,
    ):
        self.vm_repo = vm_repo
        self.backup_repo = backup_repo
        self.audit_repo = audit_repo
        self.image_service = image_service
        self.supervisor = supervisor
        self.allocator = allocator
        self.settings = settings

    # ------------------------------------------------------------------
    # VM
    # ------------------------------------------------------------------

    def vm_snapshot(self, vm: models.VM) -> Dict[str, Any]:
        """
        Samples one VM.

        A VM without a live hypervisor process reports ``status="stopped"`` and
        zero figures, whatever its persisted status says.

        Returns:
            {vm_id, status, cpu, memory, disk, network}; cpu/memory/disk in percent.
        """
        try:
            stats = self.supervisor.process_stats(vm.vm_id, vm.pid)
        except Exception as e:
            logger.debug(f"Process stats for {vm.vm_id} unavailable: {e}")
            stats = None

        if stats is None:
            return {
                "vm_id": vm.vm_id,
                "status": models.VMStatus.STOPPED.value,
                "cpu": 0,
                "memory": 0,
                "disk": 0,
                "network": dict(EMPTY_NETWORK),
            }

        return {
            "vm_id": vm.vm_id,
            # a live process keeps a paused VM paused
            "status": self._live_status(vm),
            "cpu": stats.cpu_percent or 0,
            "memory": stats.memory_percent or 0,
            "disk": self._disk_percent(vm),
            "network": self._network_stats(),
        }

    @staticmethod
    def _live_status(vm: models.VM) -> str:
        if vm.status in (models.VMStatus.STOPPED.value, models.VMStatus.ERROR.value, None):
            return models.VMStatus.RUNNING.value
        return vm.status

    def _disk_percent(self, vm: models.VM) -> float:
        try:
            capacity = (vm.disk_size_gb or 0) * GIB
            if not capacity:
                return 0
            return round(min(100.0, self.image_service.image_size(vm.vm_id) / capacity * 100), 1)
        except Exception as e:
            logger.debug(f"Disk usage for {vm.vm_id} unavailable: {e}")
            return 0

    def _network_stats(self) -> Dict[str, int]:
        # VM-level counters need the tap device; host counters are reported instead
        try:
            counters = psutil.net_io_counters()
            return {
                "bytes_received": counters.bytes_recv,
                "bytes_transmitted": counters.bytes_sent,
                "packets_received": counters.packets_recv,
                "packets_transmitted": counters.packets_sent,
            }
        except Exception as e:
            logger.debug(f"Network counters unavailable: {e}")
            return dict(EMPTY_NETWORK)

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------

    def _cpu_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=self.settings.cpu_sample_interval)
        except Exception as e:
            logger.debug(f"CPU usage unavailable: {e}")
            return 0

    def _memory(self):
        try:
            return psutil.virtual_memory()
        except Exception as e:
            logger.debug(f"Memory usage unavailable: {e}")
            return None

    def _disk_usage(self):
        path = self.settings.base_dir if os.path.isdir(self.settings.base_dir) else "/"
        try:
            return psutil.disk_usage(path)
        except Exception as e:
            logger.debug(f"Disk usage of {path} unavailable: {e}")
            return None

    def _network_percent(self) -> float:
        # traffic since boot relative to 1 GiB, the panel's historic scale
        network = self._network_stats()
        total = network["bytes_received"] + network["bytes_transmitted"]
        return round(min(100.0, total / GIB * 100), 1)

    def _uptime(self) -> str:
        try:
            seconds = int(time.time() - psutil.boot_time())
        except Exception as e:
            logger.debug(f"Uptime unavailable: {e}")
            return ""
        days, seconds = divmod(seconds, 86400)
        hours, seconds = divmod(seconds, 3600)
        minutes = seconds // 60
        parts = []
        if days:
            parts.append(f"{days} day{'s' if days != 1 else ''}")
        if hours:
            parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
        return "up " + ", ".join(parts)

    def _load_average(self) -> str:
        try:
            return ", ".join(f"{load:.2f}" for load in os.getloadavg())
        except (OSError, AttributeError):
            return ""

    def _interfaces(self):
        try:
            return sorted(psutil.net_if_addrs().keys())
        except Exception as e:
            logger.debug(f"Network interfaces unavailable: {e}")
            return []

    def _running_vms(self) -> int:
        try:
            return self.supervisor.count_running()
        except Exception as e:
            logger.debug(f"Running VM count unavailable: {e}")
            return 0

    def host_snapshot(self) -> Dict[str, Any]:
        """Host utilisation plus platform-wide counters."""
        memory = self._memory()
        disk = self._disk_usage()

        try:
            vms = self.vm_repo.list_all()
        except Exception as e:
            logger.debug(f"VM list unavailable: {e}")
            vms = []
        total_vm_size = sum(self.image_service.image_size(vm.vm_id) for vm in vms)

        try:
            total_backups = self.backup_repo.count_completed()
        except Exception as e:
            logger.debug(f"Backup count unavailable: {e}")
            total_backups = 0

        try:
            since = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=24)
            recent_activity = self.audit_repo.count_since(since)
        except Exception as e:
            logger.debug(f"Recent activity unavailable: {e}")
            recent_activity = 0

        return {
            "cpu_usage": self._cpu_percent(),
            "memory_usage": round(memory.percent, 1) if memory else 0,
            "disk_usage": round(disk.percent) if disk else 0,
            "network_usage": self._network_percent(),
            "total_memory": round(memory.total / GIB, 1) if memory else 0,
            "total_cpus": psutil.cpu_count() or 0,
            "total_disk": int(disk.total / GIB) if disk else 0,
            "running_vms": self._running_vms(),
            "uptime": self._uptime(),
            "load_average": self._load_average(),
            "network_interfaces": self._interfaces(),
            "total_vms": len(vms),
            "total_vm_size": format_bytes(total_vm_size),
            "total_backups": total_backups,
            "recent_activity": recent_activity,
            "hypervisor": self.supervisor.name,
        }

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def dashboard_stats(self, owner_id: int) -> Dict[str, Any]:
        """
        Per-owner totals against host capacity.

        Allocation is not capped by host capacity, so ``memoryUsage`` and
        ``cpuUsage`` may exceed 100.
        """
        vms = self.vm_repo.list_by_owner_id(owner_id)
        running = sum(1 for vm in vms if vm.status == models.VMStatus.RUNNING.value)
        used_memory = sum(vm.memory_gb for vm in vms)
        used_cpus = sum(vm.cpu_cores for vm in vms)

        memory = self._memory()
        total_memory = round(memory.total / GIB, 1) if memory else 0
        total_cpus = psutil.cpu_count() or 0
        disk = self._disk_usage()

        return {
            "totalVMs": len(vms),
            "runningVMs": running,
            "stoppedVMs": len(vms) - running,
            "totalMemory": total_memory,
            "usedMemory": used_memory,
            "totalCPUs": total_cpus,
            "usedCPUs": used_cpus,
            "memoryUsage": round(used_memory / total_memory * 100, 1) if total_memory else 0,
            "cpuUsage": round(used_cpus / total_cpus * 100, 1) if total_cpus else 0,
            "diskUsage": round(disk.percent) if disk else 0,
            "networkStats": self._network_stats(),
            "hypervisor": self.supervisor.name,
        }
