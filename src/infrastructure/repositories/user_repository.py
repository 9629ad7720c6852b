# src/infrastructure/repositories/user_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import User

STAFF_ROLES = frozenset({"admin", "organizer", "owner", "head"})


class UserRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> User | None:
        stmt = select(User).where(User.id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def is_staff(self, user_id: str) -> bool:
        user = self.get_by_id(user_id)
        return bool(user) and (user.role or "").lower() in STAFF_ROLES
