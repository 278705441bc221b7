from abc import ABC, abstractmethod
from typing import List
from vmplatform.database import models

class IBackupRepository(ABC):
    @abstractmethod
    def create(self, backup_model: models.Backup) -> models.Backup:
        """Inserts a backup record."""
        pass

    @abstractmethod
    def update(self, backup_model: models.Backup) -> models.Backup:
        """Persists status/size changes of a backup record."""
        pass

    @abstractmethod
    def list_by_vm(self, vm_pk: int) -> List[models.Backup]:
        """Lists a VM's backups, newest first."""
        pass

    @abstractmethod
    def count_completed(self) -> int:
        """Counts completed backups on the host."""
        pass
