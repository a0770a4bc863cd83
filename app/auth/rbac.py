import logging
from typing import Awaitable, Callable, Dict

from fastapi import Depends, HTTPException, status

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("SUPER_ADMIN", "PLATFORM_ADMIN")


def has_permission(user: CurrentUser, module: str, action: str) -> bool:
    if user.role in ADMIN_ROLES:
        return True
    permissions: Dict[str, Dict[str, bool]] = user.permissions or {}
    return bool(permissions.get(module, {}).get(action, False))


def check_permission(module: str, action: str) -> Callable[..., Awaitable[CurrentUser]]:
    """
    Dependency factory: 403 unless the token grants `action` on `module`.
    Admin roles always pass.

    Example:
        Depends(check_permission("fees", "create"))
    """

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_permission(current_user, module, action):
            logger.warning(
                "Permission %s.%s denied for role %s",
                module,
                action,
                current_user.role,
                extra={"tenant_id": current_user.tenant_id, "user_id": current_user.id},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission {module}.{action}",
            )
        return current_user

    return _checker
