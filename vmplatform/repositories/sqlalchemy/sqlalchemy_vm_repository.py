from datetime import datetime
from typing import List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import IVMRepository

class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, vm_model: models.VM) -> models.VM:
        self.db.add(vm_model)
        self._commit()
        self.db.refresh(vm_model)
        return vm_model

    def update(self, vm_model: models.VM) -> models.VM:
        self.db.add(vm_model)
        self._commit()
        self.db.refresh(vm_model)
        return vm_model

    def find_by_vm_id(self, vm_id: str) -> Optional[models.VM]:
        return self.db.query(models.VM).filter(models.VM.vm_id == vm_id).first()

    def find_by_name_and_owner_id(self, name: str, owner_id: int) -> Optional[models.VM]:
        return self.db.query(models.VM).filter(
            models.VM.name == name,
            models.VM.owner_id == owner_id
        ).first()

    def list_by_owner_id(self, owner_id: int) -> List[models.VM]:
        return self.db.query(models.VM).filter(models.VM.owner_id == owner_id).order_by(
            models.VM.created_at.desc(), models.VM.id.desc()
        ).all()

    def list_all(self) -> List[models.VM]:
        return self.db.query(models.VM).order_by(models.VM.id.asc()).all()

    def list_active_addresses(self) -> List[str]:
        rows = self.db.query(models.VM.ip_address).filter(models.VM.ip_address.isnot(None)).all()
        return [row[0] for row in rows]

    def delete(self, vm: models.VM) -> bool:
        if vm:
            # snapshots/backups go with the VM through the relationship cascade
            self.db.delete(vm)
            self._commit()
            return True
        return False

    def acquire_lease(self, vm_id: str, token: str, now: datetime, expires_at: datetime) -> bool:
        updated = self.db.query(models.VM).filter(
            models.VM.vm_id == vm_id,
            or_(models.VM.lease_token.is_(None), models.VM.lease_expires_at < now)
        ).update(
            {models.VM.lease_token: token, models.VM.lease_expires_at: expires_at},
            synchronize_session=False
        )
        self._commit()
        return updated == 1

    def release_lease(self, vm_id: str, token: str) -> None:
        self.db.query(models.VM).filter(
            models.VM.vm_id == vm_id,
            models.VM.lease_token == token
        ).update(
            {models.VM.lease_token: None, models.VM.lease_expires_at: None},
            synchronize_session=False
        )
        self._commit()

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
