from typing import List, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import ISnapshotRepository

class SqlalchemySnapshotRepository(ISnapshotRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, snapshot_model: models.Snapshot) -> models.Snapshot:
        self.db.add(snapshot_model)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(snapshot_model)
        return snapshot_model

    def find_by_handle(self, vm_pk: int, handle: str) -> Optional[models.Snapshot]:
        return self.db.query(models.Snapshot).filter(
            models.Snapshot.vm_pk == vm_pk,
            models.Snapshot.snapshot_handle == handle
        ).first()

    def list_by_vm(self, vm_pk: int) -> List[models.Snapshot]:
        return self.db.query(models.Snapshot).filter(models.Snapshot.vm_pk == vm_pk).order_by(
            models.Snapshot.created_at.desc(), models.Snapshot.id.desc()
        ).all()
