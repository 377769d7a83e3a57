from app.core.db.schemas.auth import User
from .users import (
    UserCreate,
    UserRead,
    UserUpdate,
    UserManager,
    get_jwt_strategy,
    get_user_db,
    get_user_manager,
    auth_backend,
    fastapi_users,
)

__all__ = [
    "User",
    "UserCreate",
    "UserRead",
    "UserUpdate",
    "UserManager",
    "get_jwt_strategy",
    "get_user_db",
    "get_user_manager",
    "auth_backend",
    "fastapi_users",
]
