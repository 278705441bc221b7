# tests/services/test_compute_service.py
import random
import re
from unittest.mock import MagicMock, ANY

import pytest

from vmplatform.database import models
from vmplatform.repositories.interfaces import (
    IBackupRepository, ISnapshotRepository, ITemplateRepository, IVMRepository
)
from vmplatform.schemas import LaunchProfile
from vmplatform.services.compute_service import ComputeService
from vmplatform.services.exceptions import (
    ConfigMissingError, ImageOperationFailedError, LaunchFailedError, OperationTimedOutError,
    SnapshotNotFoundError, TerminateFailedError, VmAlreadyExistsError, VmBusyError,
    VmCreationError, VmNotFoundError, VmValidationError,
)
from vmplatform.services.image_service import ImageService
from vmplatform.services.process_supervisor import ProcessSupervisor
from vmplatform.services.resource_allocator import ResourceAllocator

# ===================================================================
#  Fixtures
# ===================================================================

@pytest.fixture
def mock_vm_repo() -> MagicMock:
    repo = MagicMock(spec=IVMRepository)
    repo.acquire_lease.return_value = True
    repo.update.side_effect = lambda vm: vm
    return repo

@pytest.fixture
def mock_snapshot_repo() -> MagicMock:
    repo = MagicMock(spec=ISnapshotRepository)
    repo.create.side_effect = lambda snapshot: snapshot
    return repo

@pytest.fixture
def mock_backup_repo() -> MagicMock:
    repo = MagicMock(spec=IBackupRepository)
    repo.create.side_effect = lambda backup: backup
    repo.update.side_effect = lambda backup: backup
    return repo

@pytest.fixture
def mock_template_repo() -> MagicMock:
    repo = MagicMock(spec=ITemplateRepository)
    repo.find_by_name.return_value = models.Template(
        name="Ubuntu 22.04 LTS", min_cpu=1, min_memory=1, min_disk=10,
        image_source="https://images.example.com/jammy.img",
    )
    return repo

@pytest.fixture
def mock_image_service() -> MagicMock:
    image_service = MagicMock(spec=ImageService)
    image_service.config_exists.return_value = True
    image_service.image_exists.return_value = True
    image_service.remove_vm_files.return_value = True
    return image_service

@pytest.fixture
def mock_supervisor() -> MagicMock:
    supervisor = MagicMock(spec=ProcessSupervisor)
    supervisor.is_running.return_value = False
    return supervisor

@pytest.fixture
def allocator(settings) -> ResourceAllocator:
    return ResourceAllocator(settings, rng=random.Random(0))

@pytest.fixture
def mock_sleep() -> MagicMock:
    return MagicMock()

@pytest.fixture
def compute_service(mock_vm_repo, mock_snapshot_repo, mock_backup_repo, mock_template_repo,
                    mock_image_service, mock_supervisor, allocator, settings, mock_sleep) -> ComputeService:
    return ComputeService(
        vm_repo=mock_vm_repo,
        snapshot_repo=mock_snapshot_repo,
        backup_repo=mock_backup_repo,
        template_repo=mock_template_repo,
        image_service=mock_image_service,
        supervisor=mock_supervisor,
        allocator=allocator,
        settings=settings,
        sleep=mock_sleep,
    )

# ===================================================================
#  create_vm
# ===================================================================

class TestCreateVm:
    SPEC = {
        "name": "web-01",
        "template": "Ubuntu 22.04 LTS",
        "cpu_cores": 2,
        "memory": 4,
        "disk_size": 20,
        "network": "default",
        "description": "frontend",
    }

    @pytest.fixture(autouse=True)
    def _empty_host(self, mock_vm_repo):
        mock_vm_repo.find_by_name_and_owner_id.return_value = None
        mock_vm_repo.list_active_addresses.return_value = []

        def _insert(vm):
            vm.id = 7
            return vm
        mock_vm_repo.create.side_effect = _insert

    def test_create_vm_success(self, compute_service, mock_vm_repo, mock_image_service, mock_supervisor):
        """A new VM is persisted stopped with exactly the requested resources."""
        # === Act ===
        vm = compute_service.create_vm(owner_id=1, spec=dict(self.SPEC))

        # === Assert ===
        assert re.match(r"^vm_[0-9a-f]{13}$", vm.vm_id)
        assert vm.status == "stopped"
        assert (vm.cpu_cores, vm.memory_gb, vm.disk_size_gb) == (2, 4, 20)
        assert vm.owner_id == 1
        assert vm.vnc_display == 7
        assert vm.ip_address.startswith("192.168.100.")

        mock_vm_repo.create.assert_called_once_with(ANY)
        mock_image_service.provision.assert_called_once_with(vm.vm_id, 20, "https://images.example.com/jammy.img")
        mock_image_service.write_config.assert_called_once_with(vm.vm_id, ANY)
        profile = mock_image_service.write_config.call_args[0][1]
        assert profile.memory_mb == 4096
        assert profile.mac_address.startswith("52:54:00:")
        mock_supervisor.launch.assert_not_called()

    @pytest.mark.parametrize("field, value, message", [
        ("cpu_cores", 0, "CPU cores must be between 1 and 32"),
        ("cpu_cores", 33, "CPU cores must be between 1 and 32"),
        ("memory", 0, "Memory must be between 1 and 128 GB"),
        ("memory", 129, "Memory must be between 1 and 128 GB"),
        ("disk_size", 9, "Disk size must be between 10 and 2048 GB"),
        ("disk_size", 2049, "Disk size must be between 10 and 2048 GB"),
    ])
    def test_out_of_range_resources_are_rejected(self, compute_service, mock_vm_repo, mock_image_service,
                                                 field, value, message):
        # === Arrange ===
        spec = dict(self.SPEC, **{field: value})

        # === Act & Assert ===
        with pytest.raises(VmValidationError, match=message):
            compute_service.create_vm(owner_id=1, spec=spec)

        # no record and no image for a rejected spec
        mock_vm_repo.create.assert_not_called()
        mock_image_service.provision.assert_not_called()

    def test_boundary_values_are_accepted(self, compute_service):
        spec = dict(self.SPEC, cpu_cores=32, memory=128, disk_size=2048)

        vm = compute_service.create_vm(owner_id=1, spec=spec)

        assert (vm.cpu_cores, vm.memory_gb, vm.disk_size_gb) == (32, 128, 2048)

    def test_create_vm_fails_if_name_exists(self, compute_service, mock_vm_repo):
        # === Arrange ===
        mock_vm_repo.find_by_name_and_owner_id.return_value = models.VM(name="web-01", owner_id=1)

        # === Act & Assert ===
        with pytest.raises(VmAlreadyExistsError):
            compute_service.create_vm(owner_id=1, spec=dict(self.SPEC))
        mock_vm_repo.create.assert_not_called()

    def test_unknown_template_is_rejected(self, compute_service, mock_template_repo, mock_vm_repo):
        mock_template_repo.find_by_name.return_value = None

        with pytest.raises(VmValidationError, match="not found"):
            compute_service.create_vm(owner_id=1, spec=dict(self.SPEC, template="Plan 9"))
        mock_vm_repo.create.assert_not_called()

    def test_spec_below_template_minimum_is_rejected(self, compute_service, mock_template_repo, mock_vm_repo):
        # === Arrange ===
        mock_template_repo.find_by_name.return_value = models.Template(
            name="Windows 10", min_cpu=2, min_memory=4, min_disk=50, image_source=None,
        )

        # === Act & Assert ===
        with pytest.raises(VmValidationError, match="requires at least"):
            compute_service.create_vm(owner_id=1, spec=dict(self.SPEC, template="Windows 10", cpu_cores=1))
        mock_vm_repo.create.assert_not_called()

    def test_image_failure_rolls_back_record_and_files(self, compute_service, mock_vm_repo, mock_image_service):
        """Provisioning failure leaves neither a record nor a directory behind."""
        # === Arrange ===
        mock_image_service.provision.side_effect = ImageOperationFailedError(["qemu-img", "create"], "No space left")

        # === Act & Assert ===
        with pytest.raises(ImageOperationFailedError, match="No space left"):
            compute_service.create_vm(owner_id=1, spec=dict(self.SPEC))

        created = mock_vm_repo.create.call_args[0][0]
        mock_image_service.remove_vm_files.assert_called_once_with(created.vm_id)
        mock_vm_repo.delete.assert_called_once_with(created)

    def test_unexpected_failure_is_wrapped(self, compute_service, mock_vm_repo, mock_image_service):
        mock_image_service.write_config.side_effect = RuntimeError("disk vanished")

        with pytest.raises(VmCreationError, match="disk vanished"):
            compute_service.create_vm(owner_id=1, spec=dict(self.SPEC))
        mock_vm_repo.delete.assert_called_once()

# ===================================================================
#  start / stop / restart
# ===================================================================

class TestStartVm:
    def test_start_launches_and_persists_pid(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        # === Arrange ===
        vm = vm_factory()
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_supervisor.launch.return_value = 4242

        # === Act ===
        result = compute_service.start_vm(vm.vm_id)

        # === Assert ===
        assert result.status == "running"
        assert result.pid == 4242
        profile = mock_supervisor.launch.call_args[0][1]
        assert isinstance(profile, LaunchProfile)
        assert profile.memory_mb == 2048
        assert profile.disk_path.endswith(f"{vm.vm_id}/disk.qcow2")

    def test_missing_vm_raises_not_found(self, compute_service, mock_vm_repo):
        mock_vm_repo.find_by_vm_id.return_value = None

        with pytest.raises(VmNotFoundError, match="VM not found"):
            compute_service.start_vm("vm_ffffffffffff0")

    def test_missing_config_blocks_launch(self, compute_service, mock_vm_repo, mock_image_service,
                                          mock_supervisor, vm_factory):
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_image_service.config_exists.return_value = False

        with pytest.raises(ConfigMissingError, match="VM configuration not found"):
            compute_service.start_vm("vm_0123456789abc")
        mock_supervisor.launch.assert_not_called()

    def test_already_running_vm_is_not_launched_twice(self, compute_service, mock_vm_repo, mock_supervisor,
                                                      vm_factory):
        # === Arrange ===
        vm = vm_factory(status="stopped")
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_supervisor.is_running.return_value = True

        # === Act ===
        result = compute_service.start_vm(vm.vm_id)

        # === Assert ===
        assert result.status == "running"
        mock_supervisor.launch.assert_not_called()

    def test_launch_failure_sets_error_status(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        # === Arrange ===
        vm = vm_factory()
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_supervisor.launch.side_effect = LaunchFailedError("Could not access KVM kernel module")

        # === Act & Assert ===
        with pytest.raises(LaunchFailedError, match="Failed to start VM: Could not access KVM"):
            compute_service.start_vm(vm.vm_id)
        assert vm.status == "error"
        assert vm.pid is None

    def test_busy_vm_is_rejected_without_touching_the_hypervisor(self, compute_service, mock_vm_repo,
                                                                 mock_supervisor, vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_vm_repo.acquire_lease.return_value = False

        # === Act & Assert ===
        with pytest.raises(VmBusyError):
            compute_service.start_vm("vm_0123456789abc")
        mock_supervisor.is_running.assert_not_called()
        mock_supervisor.launch.assert_not_called()
        mock_vm_repo.release_lease.assert_not_called()

    def test_lease_is_released_after_failure(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_supervisor.launch.side_effect = LaunchFailedError("boom")

        # === Act ===
        with pytest.raises(LaunchFailedError):
            compute_service.start_vm("vm_0123456789abc")

        # === Assert ===
        token = mock_vm_repo.acquire_lease.call_args[0][1]
        mock_vm_repo.release_lease.assert_called_once_with("vm_0123456789abc", token)


class TestStopVm:
    def test_stop_running_vm(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        # === Arrange ===
        vm = vm_factory(status="running", pid=4242)
        mock_vm_repo.find_by_vm_id.return_value = vm

        # === Act ===
        result = compute_service.stop_vm(vm.vm_id)

        # === Assert ===
        mock_supervisor.terminate.assert_called_once_with(vm.vm_id, 4242)
        assert result.status == "stopped"
        assert result.pid is None

    def test_stop_is_idempotent(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        """Stopping a stopped VM succeeds and leaves the record untouched."""
        vm = vm_factory(status="stopped")
        mock_vm_repo.find_by_vm_id.return_value = vm

        result = compute_service.stop_vm(vm.vm_id)

        assert result.status == "stopped"
        mock_vm_repo.update.assert_not_called()


class TestRestartVm:
    def test_restart_stops_waits_then_starts(self, compute_service, mock_vm_repo, mock_supervisor,
                                             mock_sleep, settings, vm_factory):
        # === Arrange ===
        vm = vm_factory(status="running", pid=100)
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_supervisor.launch.return_value = 200

        # === Act ===
        result = compute_service.restart_vm(vm.vm_id)

        # === Assert ===
        mock_supervisor.terminate.assert_called_once_with(vm.vm_id, 100)
        mock_sleep.assert_called_once_with(settings.restart_settle_seconds)
        mock_supervisor.launch.assert_called_once()
        assert result.status == "running"
        assert result.pid == 200

    def test_restart_never_starts_when_stop_fails(self, compute_service, mock_vm_repo, mock_supervisor,
                                                  mock_sleep, vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory(status="running", pid=100)
        mock_supervisor.terminate.side_effect = TerminateFailedError("Permission denied")

        # === Act & Assert ===
        with pytest.raises(TerminateFailedError):
            compute_service.restart_vm("vm_0123456789abc")
        mock_sleep.assert_not_called()
        mock_supervisor.launch.assert_not_called()

# ===================================================================
#  delete_vm
# ===================================================================

class TestDeleteVm:
    def test_delete_releases_everything(self, compute_service, mock_vm_repo, mock_supervisor,
                                        mock_image_service, vm_factory):
        vm = vm_factory(status="running", pid=4242)
        mock_vm_repo.find_by_vm_id.return_value = vm

        assert compute_service.delete_vm(vm.vm_id) is True

        mock_supervisor.terminate.assert_called_once_with(vm.vm_id, 4242)
        mock_supervisor.release.assert_called_once_with(vm.vm_id)
        mock_image_service.remove_vm_files.assert_called_once_with(vm.vm_id)
        mock_vm_repo.delete.assert_called_once_with(vm)

    def test_record_removed_even_if_directory_removal_fails(self, compute_service, mock_vm_repo,
                                                            mock_image_service, vm_factory):
        # === Arrange ===
        vm = vm_factory()
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_image_service.remove_vm_files.return_value = False

        # === Act ===
        result = compute_service.delete_vm(vm.vm_id)

        # === Assert ===
        assert result is True
        mock_vm_repo.delete.assert_called_once_with(vm)

    def test_record_removed_even_if_stop_fails(self, compute_service, mock_vm_repo, mock_supervisor, vm_factory):
        vm = vm_factory(status="running", pid=4242)
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_supervisor.terminate.side_effect = TerminateFailedError("Permission denied")

        assert compute_service.delete_vm(vm.vm_id) is True
        mock_vm_repo.delete.assert_called_once_with(vm)

# ===================================================================
#  snapshots / backups
# ===================================================================

class TestSnapshots:
    def test_same_name_yields_distinct_handles(self, compute_service, mock_vm_repo, mock_image_service,
                                               vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()

        # === Act ===
        first = compute_service.create_snapshot("vm_0123456789abc", "before-upgrade")
        second = compute_service.create_snapshot("vm_0123456789abc", "before-upgrade")

        # === Assert ===
        assert first.snapshot_handle != second.snapshot_handle
        assert first.snapshot_handle.startswith("snap_")
        assert mock_image_service.snapshot.call_count == 2

    def test_snapshot_requires_image(self, compute_service, mock_vm_repo, mock_image_service,
                                     mock_snapshot_repo, vm_factory):
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_image_service.image_exists.return_value = False

        with pytest.raises(ConfigMissingError):
            compute_service.create_snapshot("vm_0123456789abc", "snap")
        mock_image_service.snapshot.assert_not_called()
        mock_snapshot_repo.create.assert_not_called()

    def test_failed_snapshot_leaves_no_record(self, compute_service, mock_vm_repo, mock_image_service,
                                              mock_snapshot_repo, vm_factory):
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_image_service.snapshot.side_effect = ImageOperationFailedError(["qemu-img"], "lock held")

        with pytest.raises(ImageOperationFailedError):
            compute_service.create_snapshot("vm_0123456789abc", "snap")
        mock_snapshot_repo.create.assert_not_called()

    def test_restore_unknown_snapshot(self, compute_service, mock_vm_repo, mock_snapshot_repo, vm_factory):
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_snapshot_repo.find_by_handle.return_value = None

        with pytest.raises(SnapshotNotFoundError):
            compute_service.restore_snapshot("vm_0123456789abc", "snap_deadbeef")

    def test_restore_stops_vm_then_applies_snapshot(self, compute_service, mock_vm_repo, mock_snapshot_repo,
                                                    mock_supervisor, mock_image_service, vm_factory):
        # === Arrange ===
        vm = vm_factory(status="running", pid=4242)
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_snapshot_repo.find_by_handle.return_value = models.Snapshot(snapshot_handle="snap_deadbeef")

        # === Act ===
        compute_service.restore_snapshot(vm.vm_id, "snap_deadbeef")

        # === Assert ===
        mock_snapshot_repo.find_by_handle.assert_called_once_with(vm.id, "snap_deadbeef")
        mock_supervisor.terminate.assert_called_once()
        mock_image_service.restore_snapshot.assert_called_once_with(vm.vm_id, "snap_deadbeef")
        assert vm.status == "stopped"


class TestBackups:
    def test_backup_stops_vm_and_completes(self, compute_service, mock_vm_repo, mock_supervisor,
                                           mock_image_service, vm_factory):
        # === Arrange ===
        vm = vm_factory(status="running", pid=4242)
        mock_vm_repo.find_by_vm_id.return_value = vm
        mock_image_service.backup.return_value = 1234

        # === Act ===
        backup = compute_service.create_backup(vm.vm_id, "nightly")

        # === Assert ===
        mock_supervisor.terminate.assert_called_once_with(vm.vm_id, 4242)
        assert vm.status == "stopped"
        assert backup.status == "completed"
        assert backup.size_bytes == 1234
        assert re.search(r"/backups/backup_[0-9a-f]+\.qcow2$", backup.path)
        mock_image_service.backup.assert_called_once_with(vm.vm_id, backup.path)

    def test_backup_waits_until_process_is_gone(self, compute_service, mock_vm_repo, mock_supervisor,
                                                mock_image_service, mock_sleep, vm_factory):
        mock_vm_repo.find_by_vm_id.return_value = vm_factory(status="running", pid=4242)
        mock_supervisor.is_running.side_effect = [True, True, False]
        mock_image_service.backup.return_value = 10

        compute_service.create_backup("vm_0123456789abc", "nightly")

        assert mock_sleep.call_count == 2
        mock_image_service.backup.assert_called_once()

    def test_backup_times_out_when_process_does_not_exit(self, mock_vm_repo, mock_snapshot_repo,
                                                         mock_backup_repo, mock_template_repo,
                                                         mock_image_service, mock_supervisor, allocator,
                                                         settings, mock_sleep, vm_factory):
        # === Arrange ===
        service = ComputeService(
            mock_vm_repo, mock_snapshot_repo, mock_backup_repo, mock_template_repo, mock_image_service,
            mock_supervisor, allocator, settings, sleep=mock_sleep, clock=MagicMock(side_effect=[0, 0, 11]),
        )
        mock_vm_repo.find_by_vm_id.return_value = vm_factory(status="running", pid=4242)
        mock_supervisor.is_running.return_value = True

        # === Act & Assert ===
        with pytest.raises(OperationTimedOutError):
            service.create_backup("vm_0123456789abc", "nightly")
        mock_backup_repo.create.assert_not_called()
        mock_image_service.backup.assert_not_called()

    def test_failed_copy_marks_backup_failed(self, compute_service, mock_vm_repo, mock_image_service,
                                             mock_backup_repo, vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_image_service.backup.side_effect = ImageOperationFailedError(["qemu-img", "convert"], "I/O error")

        # === Act & Assert ===
        with pytest.raises(ImageOperationFailedError):
            compute_service.create_backup("vm_0123456789abc", "nightly")

        failed = mock_backup_repo.update.call_args[0][0]
        assert failed.status == "failed"
        mock_image_service.remove_file.assert_called_once_with(failed.path)

    def test_os_error_during_copy_marks_backup_failed(self, compute_service, mock_vm_repo, mock_image_service,
                                                      mock_backup_repo, vm_factory):
        # === Arrange ===
        mock_vm_repo.find_by_vm_id.return_value = vm_factory()
        mock_image_service.backup.side_effect = OSError("No space left on device")

        # === Act & Assert ===
        with pytest.raises(OSError):
            compute_service.create_backup("vm_0123456789abc", "nightly")

        failed = mock_backup_repo.update.call_args[0][0]
        assert failed.status == "failed"
        mock_image_service.remove_file.assert_called_once_with(failed.path)

# ===================================================================
#  console / reconcile
# ===================================================================

def test_console_info(compute_service, mock_vm_repo, vm_factory):
    mock_vm_repo.find_by_vm_id.return_value = vm_factory(vnc_display=3)

    info = compute_service.console_info("vm_0123456789abc")

    assert info["vnc_port"] == 5903
    assert info["vnc_display"] == 3
    assert info["vnc_host"] == "127.0.0.1"
    assert info["console_url"] == "console?vm_id=vm_0123456789abc"


def test_reconcile_vms_corrects_stale_statuses(compute_service, mock_vm_repo, mock_supervisor, vm_factory):
    # === Arrange ===
    crashed = vm_factory(vm_id="vm_aaa", status="running", pid=11)
    revived = vm_factory(vm_id="vm_bbb", status="stopped")
    steady = vm_factory(vm_id="vm_ccc", status="stopped")
    mock_vm_repo.list_all.return_value = [crashed, revived, steady]
    mock_supervisor.is_running.side_effect = lambda vm_id, pid=None: vm_id == "vm_bbb"

    # === Act ===
    changed = compute_service.reconcile_vms()

    # === Assert ===
    assert changed == [
        {"vm_id": "vm_aaa", "old_status": "running", "new_status": "stopped"},
        {"vm_id": "vm_bbb", "old_status": "stopped", "new_status": "running"},
    ]
    assert crashed.pid is None
    assert mock_vm_repo.update.call_count == 2
