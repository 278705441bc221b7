from abc import ABC, abstractmethod
from typing import Optional
from vmplatform.database import models

class IUserRepository(ABC):
    """Owners of VMs and holders of API tokens."""

    @abstractmethod
    def create(self, user_model: models.User) -> models.User:
        """Persists the user. A taken username surfaces as the store's integrity error."""
        pass

    @abstractmethod
    def find_by_id(self, user_id: int) -> Optional[models.User]:
        pass

    @abstractmethod
    def find_by_username(self, username: str) -> Optional[models.User]:
        pass
