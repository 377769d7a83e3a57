from __future__ import annotations

from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTable

from app.core.db.base import Base


class User(SQLAlchemyBaseUserTable[int], Base):
    """Account table backing bearer auth; ``is_superuser`` marks admins.

    Quiz tables reference users by ``str(id)`` so the session core stays
    independent of the identity provider.
    """

    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)


__all__ = ["User"]
