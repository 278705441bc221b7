from abc import ABC, abstractmethod
from datetime import datetime
from vmplatform.database import models

class IAuditRepository(ABC):
    @abstractmethod
    def create(self, entry: models.AuditLog) -> models.AuditLog:
        """Appends an audit entry."""
        pass

    @abstractmethod
    def count_since(self, since: datetime) -> int:
        """Counts audit entries created after ``since``."""
        pass
