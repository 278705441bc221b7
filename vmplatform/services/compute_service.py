import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from vmplatform.config import Settings
from vmplatform.database import models
from vmplatform.repositories.interfaces import (
    IBackupRepository,
    ISnapshotRepository,
    ITemplateRepository,
    IVMRepository,
)
from vmplatform.schemas import LaunchProfile, VMCreateSpec
from vmplatform.services.exceptions import (
    ConfigMissingError,
    LaunchFailedError,
    OperationTimedOutError,
    PlatformError,
    SnapshotNotFoundError,
    VmAlreadyExistsError,
    VmBusyError,
    VmCreationError,
    VmNotFoundError,
    VmValidationError,
)
from vmplatform.services.image_service import ImageService
from vmplatform.services.process_supervisor import ProcessSupervisor
from vmplatform.services.resource_allocator import ResourceAllocator
from vmplatform.utils.qemu_args import mac_address_for

logger = logging.getLogger(__name__)

Status = models.VMStatus

BOUNDS_MESSAGES = {
    "cpu_cores": "CPU cores must be between 1 and 32",
    "memory": "Memory must be between 1 and 128 GB",
    "disk_size": "Disk size must be between 10 and 2048 GB",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_handle(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:13]}"


class ComputeService:
    """
    Owns the lifecycle status of every VM and turns lifecycle transitions into
    image and hypervisor-process operations.

    Each mutating operation holds the VM's lease for its whole duration, so two
    overlapping requests against one VM fail fast with VmBusyError instead of racing.
    """

    def __init__(
        self,
        vm_repo: IVMRepository,
        snapshot_repo: ISnapshotRepository,
        backup_repo: IBackupRepository,
        template_repo: ITemplateRepository,
        image_service: ImageService,
        supervisor: ProcessSupervisor,
        allocator: ResourceAllocator,
        settings: Settings,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.vm_repo = vm_repo
        self.snapshot_repo = snapshot_repo
        self.backup_repo = backup_repo
        self.template_repo = template_repo
        self.image_service = image_service
        self.supervisor = supervisor
        self.allocator = allocator
        self.settings = settings
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_vm(self, vm_id: str) -> models.VM:
        vm = self.vm_repo.find_by_vm_id(vm_id)
        if not vm:
            raise VmNotFoundError()
        return vm

    def list_vms(self, owner_id: int) -> List[models.VM]:
        return self.vm_repo.list_by_owner_id(owner_id)

    def list_snapshots(self, vm_id: str) -> List[models.Snapshot]:
        return self.snapshot_repo.list_by_vm(self.get_vm(vm_id).id)

    def list_backups(self, vm_id: str) -> List[models.Backup]:
        return self.backup_repo.list_by_vm(self.get_vm(vm_id).id)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create_vm(self, owner_id: int, spec) -> models.VM:
        """
        Creates a VM record in ``stopped`` state together with its disk image and vm.conf.

        Validation happens before anything touches the disk. The record is
        persisted first (its primary key seeds the VNC display), then storage is
        provisioned; if provisioning fails the files and the record are removed
        again so no orphan metadata survives.

        Args:
            owner_id: the creating user; becomes the VM's owner.
            spec: a VMCreateSpec or a dict with name, template, cpu_cores,
                memory (GiB), disk_size (GiB), network and description.

        Returns:
            The persisted VM record.

        Raises:
            VmValidationError: out-of-bounds resources or unknown template.
            VmAlreadyExistsError: the owner already has a VM with this name.
            ImageOperationFailedError: the image could not be provisioned.
            VmCreationError: any other failure during provisioning.
        """
        spec = self._validate_spec(spec)

        if self.vm_repo.find_by_name_and_owner_id(spec.name, owner_id):
            raise VmAlreadyExistsError("A VM with this name already exists")

        template = self.template_repo.find_by_name(spec.template)
        if not template:
            raise VmValidationError(f"Template '{spec.template}' not found")
        if spec.cpu_cores < (template.min_cpu or 1) or spec.memory < (template.min_memory or 1) \
                or spec.disk_size < (template.min_disk or 10):
            raise VmValidationError(
                f"Template '{template.name}' requires at least {template.min_cpu} CPU cores, "
                f"{template.min_memory} GB memory and {template.min_disk} GB disk"
            )

        vm_id = _new_handle("vm")
        record = models.VM(
            vm_id=vm_id,
            owner_id=owner_id,
            name=spec.name,
            description=spec.description,
            template=template.name,
            cpu_cores=spec.cpu_cores,
            memory_gb=spec.memory,
            disk_size_gb=spec.disk_size,
            network_type=spec.network,
            network_bridge=self.settings.network_bridge,
            ip_address=self.allocator.allocate_address(self.vm_repo.list_active_addresses()),
            status=Status.STOPPED.value,
        )
        try:
            record = self.vm_repo.create(record)
        except IntegrityError as e:
            raise VmAlreadyExistsError("A VM with this name already exists") from e

        try:
            record.vnc_display = self.allocator.allocate_display_index(record.id)
            record = self.vm_repo.update(record)
            self.image_service.provision(vm_id, spec.disk_size, template.image_source)
            self.image_service.write_config(vm_id, self._profile(record))
        except Exception as e:
            logger.error(f"VM '{spec.name}' ({vm_id}) creation failed: {e}. Starting rollback...")
            self._rollback_vm_creation(record)
            if isinstance(e, PlatformError):
                raise
            raise VmCreationError(f"Failed to create VM '{spec.name}'. Original error: {e}") from e

        logger.info(f"VM '{spec.name}' created as {vm_id} for user {owner_id}")
        return record

    def _validate_spec(self, spec) -> VMCreateSpec:
        if isinstance(spec, VMCreateSpec):
            return spec
        try:
            return VMCreateSpec(**(spec or {}))
        except ValidationError as e:
            error = e.errors()[0]
            field = error["loc"][0] if error.get("loc") else ""
            message = BOUNDS_MESSAGES.get(field) or f"Field '{field}': {error['msg']}"
            raise VmValidationError(message) from e

    def _rollback_vm_creation(self, record: models.VM):
        self.image_service.remove_vm_files(record.vm_id)
        try:
            self.vm_repo.delete(record)
        except SQLAlchemyError as e:
            logger.error(f"Rollback Warning: failed to delete record of {record.vm_id}: {e}")

    def _profile(self, vm: models.VM) -> LaunchProfile:
        return LaunchProfile(
            vm_id=vm.vm_id,
            cpu_cores=vm.cpu_cores,
            memory_mb=vm.memory_gb * 1024,
            disk_path=self.allocator.disk_path(vm.vm_id),
            bridge=vm.network_bridge,
            mac_address=mac_address_for(vm.vm_id),
            vnc_display=vm.vnc_display,
        )

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    @contextmanager
    def _vm_lease(self, vm: models.VM):
        token = uuid.uuid4().hex
        now = _utcnow()
        expires_at = now + timedelta(seconds=self.settings.lease_ttl_seconds)
        if not self.vm_repo.acquire_lease(vm.vm_id, token, now, expires_at):
            raise VmBusyError(f"VM {vm.vm_id} is busy with another operation")
        try:
            yield
        finally:
            try:
                self.vm_repo.release_lease(vm.vm_id, token)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to release lease on {vm.vm_id}: {e}")

    # ------------------------------------------------------------------
    # start / stop / restart
    # ------------------------------------------------------------------

    def start_vm(self, vm_id: str) -> models.VM:
        """
        Raises:
            VmNotFoundError, ConfigMissingError, LaunchFailedError, VmBusyError
        """
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            return self._start(vm)

    def _start(self, vm: models.VM) -> models.VM:
        if not self.image_service.config_exists(vm.vm_id):
            raise ConfigMissingError("VM configuration not found")

        if self.supervisor.is_running(vm.vm_id, vm.pid):
            logger.info(f"VM {vm.vm_id} is already running; not launching a second process.")
            if vm.status not in (Status.RUNNING.value, Status.PAUSED.value):
                vm.status = Status.RUNNING.value
                vm = self.vm_repo.update(vm)
            return vm

        try:
            pid = self.supervisor.launch(vm.vm_id, self._profile(vm))
        except (LaunchFailedError, OperationTimedOutError):
            vm.status = Status.ERROR.value
            vm.pid = None
            self.vm_repo.update(vm)
            raise

        vm.pid = pid
        vm.status = Status.RUNNING.value
        return self.vm_repo.update(vm)

    def stop_vm(self, vm_id: str) -> models.VM:
        """Idempotent: stopping a stopped VM succeeds and changes nothing."""
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            return self._stop(vm)

    def _stop(self, vm: models.VM) -> models.VM:
        self.supervisor.terminate(vm.vm_id, vm.pid)
        if vm.status != Status.STOPPED.value or vm.pid is not None:
            vm.status = Status.STOPPED.value
            vm.pid = None
            vm = self.vm_repo.update(vm)
        return vm

    def restart_vm(self, vm_id: str) -> models.VM:
        """
        Stop, wait ``restart_settle_seconds`` for the OS to release the VNC display
        and network device, then start. A failed stop aborts before start.
        """
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            vm = self._stop(vm)
            self.sleep(self.settings.restart_settle_seconds)
            return self._start(vm)

    def _wait_until_stopped(self, vm: models.VM, pid: Optional[int] = None):
        deadline = self.clock() + self.settings.stop_timeout_seconds
        while self.supervisor.is_running(vm.vm_id, pid):
            if self.clock() >= deadline:
                raise OperationTimedOutError(
                    f"VM {vm.vm_id} still running {self.settings.stop_timeout_seconds}s after stop"
                )
            self.sleep(self.settings.stop_poll_interval_seconds)

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    def delete_vm(self, vm_id: str) -> bool:
        """
        Releases external resources best-effort, then removes the record and its
        snapshots/backups in one transaction.

        The record is removed even when the process could not be stopped or the
        directory could not be deleted; those failures are only logged.
        """
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            try:
                try:
                    self._stop(vm)
                except PlatformError as e:
                    logger.warning(f"Could not stop {vm_id} before delete: {e}. Proceeding cleanup.")
                self.supervisor.release(vm_id)
                if not self.image_service.remove_vm_files(vm_id):
                    logger.warning(f"Files of {vm_id} were left on disk.")
            finally:
                self.vm_repo.delete(vm)
                logger.info(f"Record for VM '{vm_id}' deleted.")
        return True

    # ------------------------------------------------------------------
    # snapshots / backups
    # ------------------------------------------------------------------

    def create_snapshot(self, vm_id: str, name: str, description: str = "") -> models.Snapshot:
        """
        Adds an internal snapshot to the VM image under a fresh handle. The VM keeps
        running. The record is only written once qemu-img reported success.
        """
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            if not self.image_service.image_exists(vm_id):
                raise ConfigMissingError("VM disk image not found")

            handle = _new_handle("snap")
            self.image_service.snapshot(vm_id, handle)
            try:
                return self.snapshot_repo.create(models.Snapshot(
                    vm_pk=vm.id,
                    name=name,
                    description=description or "",
                    snapshot_handle=handle,
                ))
            except SQLAlchemyError:
                self.image_service.delete_snapshot(vm_id, handle)
                raise

    def restore_snapshot(self, vm_id: str, handle: str) -> models.Snapshot:
        """Stops the VM and reverts its image to the snapshot."""
        vm = self.get_vm(vm_id)
        snapshot = self.snapshot_repo.find_by_handle(vm.id, handle)
        if not snapshot:
            raise SnapshotNotFoundError(f"Snapshot '{handle}' not found")

        with self._vm_lease(vm):
            pid = vm.pid
            self._stop(vm)
            self._wait_until_stopped(vm, pid)
            self.image_service.restore_snapshot(vm_id, handle)
        return snapshot

    def create_backup(self, vm_id: str, name: str) -> models.Backup:
        """
        Takes a full copy of the VM image.

        A running VM is stopped first and the supervisor is polled until the
        process is really gone, so the copy is never taken from an image that is
        still being written. The backup record is ``pending`` during the copy and
        ends as ``completed`` or ``failed`` before this returns; a failed copy's
        partial file is removed.

        Raises:
            ConfigMissingError: the VM has no image.
            OperationTimedOutError: the process did not exit in time.
            ImageOperationFailedError: the copy failed.
        """
        vm = self.get_vm(vm_id)
        with self._vm_lease(vm):
            if not self.image_service.image_exists(vm_id):
                raise ConfigMissingError("VM disk image not found")

            pid = vm.pid
            self._stop(vm)
            self._wait_until_stopped(vm, pid)

            handle = _new_handle("backup")
            destination = self.allocator.backup_path(handle)
            backup = self.backup_repo.create(models.Backup(
                vm_pk=vm.id,
                name=name,
                path=destination,
                status=models.BackupStatus.PENDING.value,
            ))

            try:
                size = self.image_service.backup(vm_id, destination)
            except Exception:
                # the record never stays pending
                backup.status = models.BackupStatus.FAILED.value
                self.backup_repo.update(backup)
                self.image_service.remove_file(destination)
                raise

            backup.size_bytes = size
            backup.status = models.BackupStatus.COMPLETED.value
            return self.backup_repo.update(backup)

    # ------------------------------------------------------------------
    # console / reconcile
    # ------------------------------------------------------------------

    def console_info(self, vm_id: str) -> Dict[str, Any]:
        vm = self.get_vm(vm_id)
        assignment = self.allocator.assignment(vm)
        return {
            "console_url": f"console?vm_id={vm.vm_id}",
            "vnc_host": self.settings.vnc_host,
            "vnc_display": assignment.vnc_display,
            "vnc_port": self.allocator.vnc_port(assignment.vnc_display),
            "ip_address": assignment.ip_address,
        }

    def reconcile_vms(self) -> List[Dict[str, str]]:
        """
        Brings persisted statuses back in line with the process table, e.g. after
        a host restart killed every hypervisor process.

        Returns:
            One entry per VM whose status was corrected.
        """
        changed = []
        for vm in self.vm_repo.list_all():
            running = self.supervisor.is_running(vm.vm_id, vm.pid)
            if running and vm.status in (Status.STOPPED.value, Status.ERROR.value):
                new_status = Status.RUNNING.value
            elif not running and vm.status in (Status.RUNNING.value, Status.PAUSED.value):
                new_status = Status.STOPPED.value
            else:
                continue
            changed.append({"vm_id": vm.vm_id, "old_status": vm.status, "new_status": new_status})
            vm.status = new_status
            if not running:
                vm.pid = None
            self.vm_repo.update(vm)
        return changed
