from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from vmplatform.database import models

class IVMRepository(ABC):
    @abstractmethod
    def create(self, vm_model: models.VM) -> models.VM:
        """Inserts a new VM record."""
        pass

    @abstractmethod
    def update(self, vm_model: models.VM) -> models.VM:
        """Persists changes made to a loaded VM record."""
        pass

    @abstractmethod
    def find_by_vm_id(self, vm_id: str) -> Optional[models.VM]:
        """Looks a VM up by its opaque vm_id."""
        pass

    @abstractmethod
    def find_by_name_and_owner_id(self, name: str, owner_id: int) -> Optional[models.VM]:
        """Looks a VM up by name within one owner's VMs."""
        pass

    @abstractmethod
    def list_by_owner_id(self, owner_id: int) -> List[models.VM]:
        """Lists one owner's VMs, newest first."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.VM]:
        """Lists every VM on the host."""
        pass

    @abstractmethod
    def list_active_addresses(self) -> List[str]:
        """Returns the network addresses currently assigned to existing VMs."""
        pass

    @abstractmethod
    def delete(self, vm: models.VM) -> bool:
        """Deletes the VM together with its snapshots and backups in one transaction."""
        pass

    @abstractmethod
    def acquire_lease(self, vm_id: str, token: str, now: datetime, expires_at: datetime) -> bool:
        """Atomically takes the VM lease if it is free or expired. Returns False when held by someone else."""
        pass

    @abstractmethod
    def release_lease(self, vm_id: str, token: str) -> None:
        """Releases the lease if it is still held with this token."""
        pass
