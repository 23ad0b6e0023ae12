from fastapi import Depends

from .core.errors import ForbiddenError
from .core.security import get_current_user
from .models.user import User


def admin_required(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Admin required")
    return user
