from typing import List
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import IBackupRepository

class SqlalchemyBackupRepository(IBackupRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, backup_model: models.Backup) -> models.Backup:
        return self._save(backup_model)

    def update(self, backup_model: models.Backup) -> models.Backup:
        return self._save(backup_model)

    def list_by_vm(self, vm_pk: int) -> List[models.Backup]:
        return self.db.query(models.Backup).filter(models.Backup.vm_pk == vm_pk).order_by(
            models.Backup.created_at.desc(), models.Backup.id.desc()
        ).all()

    def count_completed(self) -> int:
        return self.db.query(models.Backup).filter(
            models.Backup.status == models.BackupStatus.COMPLETED.value
        ).count()

    def _save(self, backup_model: models.Backup) -> models.Backup:
        self.db.add(backup_model)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(backup_model)
        return backup_model
