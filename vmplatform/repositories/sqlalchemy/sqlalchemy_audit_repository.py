from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import IAuditRepository

class SqlalchemyAuditRepository(IAuditRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, entry: models.AuditLog) -> models.AuditLog:
        self.db.add(entry)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return entry

    def count_since(self, since: datetime) -> int:
        return self.db.query(models.AuditLog).filter(models.AuditLog.created_at >= since).count()
