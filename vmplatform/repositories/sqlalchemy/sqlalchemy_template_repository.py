from typing import Optional
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import ITemplateRepository

class SqlalchemyTemplateRepository(ITemplateRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_name(self, name: str) -> Optional[models.Template]:
        return self.db.query(models.Template).filter(models.Template.name == name).first()
