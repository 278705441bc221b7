import ipaddress
import logging
import os
import random
import re
from dataclasses import dataclass
from typing import Iterable

from vmplatform.config import Settings
from vmplatform.services.exceptions import ResourceExhaustedError, VmValidationError

logger = logging.getLogger(__name__)

VM_ID_PATTERN = re.compile(r"^vm_[0-9a-f]+$")
HANDLE_PATTERN = re.compile(r"^(snap|backup)_[0-9a-f]+$")


@dataclass(frozen=True)
class ResourceAssignment:
    ip_address: str
    vnc_display: int
    vm_dir: str


class ResourceAllocator:
    """Hands out network addresses, VNC displays and filesystem paths per VM."""

    RANDOM_ATTEMPTS = 32

    def __init__(self, settings: Settings, rng: random.Random = None):
        self.settings = settings
        self.network = ipaddress.ip_network(settings.address_pool, strict=False)
        self.rng = rng or random.Random()
        self.base_dir = settings.base_dir

    def allocate_address(self, in_use: Iterable[str]) -> str:
        """
        Picks an address from the configured pool that no existing VM holds.

        Random picks keep allocation spread across the pool; a pick that collides
        is discarded. After RANDOM_ATTEMPTS collisions the pool is scanned in order
        so a nearly full pool still yields its last free address.

        Args:
            in_use: addresses currently assigned to VMs on this host.

        Returns:
            The chosen address as a string.

        Raises:
            ResourceExhaustedError: every address in the range is taken.
        """
        taken = set(in_use)
        start, end = self.settings.address_range_start, self.settings.address_range_end
        max_offset = self.network.num_addresses - 1
        if start < 1 or end > max_offset - 1 or start > end:
            raise VmValidationError(
                f"Address range {start}-{end} does not fit in pool {self.settings.address_pool}."
            )

        for _ in range(self.RANDOM_ATTEMPTS):
            candidate = str(self.network.network_address + self.rng.randint(start, end))
            if candidate not in taken:
                return candidate
            logger.debug(f"Address collision on {candidate}, retrying.")

        for offset in range(start, end + 1):
            candidate = str(self.network.network_address + offset)
            if candidate not in taken:
                return candidate

        raise ResourceExhaustedError(f"No free address left in pool {self.settings.address_pool}.")

    def allocate_display_index(self, vm_record_id: int) -> int:
        """The record's primary key is unique, so the derived display is too."""
        return vm_record_id + self.settings.vnc_display_offset

    def vnc_port(self, display_index: int) -> int:
        return self.settings.vnc_base_port + display_index

    # --- paths ---

    def vm_dir(self, vm_id: str) -> str:
        if not VM_ID_PATTERN.match(vm_id or ""):
            raise VmValidationError(f"Invalid VM identifier '{vm_id}'.")
        return os.path.join(self.base_dir, "vms", vm_id)

    def disk_path(self, vm_id: str) -> str:
        return os.path.join(self.vm_dir(vm_id), "disk.qcow2")

    def config_path(self, vm_id: str) -> str:
        return os.path.join(self.vm_dir(vm_id), "vm.conf")

    def pid_path(self, vm_id: str) -> str:
        return os.path.join(self.vm_dir(vm_id), "qemu.pid")

    def backup_dir(self) -> str:
        return os.path.join(self.base_dir, "backups")

    def backup_path(self, backup_handle: str) -> str:
        if not HANDLE_PATTERN.match(backup_handle or ""):
            raise VmValidationError(f"Invalid backup handle '{backup_handle}'.")
        return os.path.join(self.backup_dir(), f"{backup_handle}.qcow2")

    def assignment(self, vm) -> ResourceAssignment:
        return ResourceAssignment(
            ip_address=vm.ip_address,
            vnc_display=vm.vnc_display,
            vm_dir=self.vm_dir(vm.vm_id),
        )
