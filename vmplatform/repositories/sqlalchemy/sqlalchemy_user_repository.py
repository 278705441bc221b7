from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from vmplatform.database import models
from vmplatform.repositories.interfaces import IUserRepository

class SqlalchemyUserRepository(IUserRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, user_model: models.User) -> models.User:
        self.db.add(user_model)
        try:
            self.db.commit()
        except SQLAlchemyError:
            # a concurrent signup may have taken the username
            self.db.rollback()
            raise
        self.db.refresh(user_model)
        return user_model

    def find_by_id(self, user_id: int) -> Optional[models.User]:
        return self.db.get(models.User, user_id)

    def find_by_username(self, username: str) -> Optional[models.User]:
        return self.db.query(models.User).filter_by(username=username).first()
