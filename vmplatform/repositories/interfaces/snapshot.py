from abc import ABC, abstractmethod
from typing import List, Optional
from vmplatform.database import models

class ISnapshotRepository(ABC):
    @abstractmethod
    def create(self, snapshot_model: models.Snapshot) -> models.Snapshot:
        """Inserts a snapshot record."""
        pass

    @abstractmethod
    def find_by_handle(self, vm_pk: int, handle: str) -> Optional[models.Snapshot]:
        """Looks a snapshot up by handle within one VM."""
        pass

    @abstractmethod
    def list_by_vm(self, vm_pk: int) -> List[models.Snapshot]:
        """Lists a VM's snapshots, newest first."""
        pass
