from abc import ABC, abstractmethod
from typing import Optional
from vmplatform.database import models

class ITemplateRepository(ABC):
    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Template]:
        """Looks a template up by its name."""
        pass
