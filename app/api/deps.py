from typing import Callable, Optional

from fastapi import Depends, Header, Request

from app.api.responses import ApiError, ApiErrors
from app.cache import Cache, NullCache
from app.config import settings
from app.fsm.states import UserRole
from app.services.identity import AuthenticatedUser
from app.services.paymob_service import PaymobService


async def get_current_user(
    x_session_key: Optional[str] = Header(None, alias="X-Session-Key"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
    x_user_phone: Optional[str] = Header(None, alias="X-User-Phone"),
) -> AuthenticatedUser:
    """
    Identity asserted by the session proxy.
    Raises 401 unless the shared proxy key matches and a user id and role are present.
    """
    valid_key = settings.session_proxy_key
    if not valid_key or not x_session_key or x_session_key != valid_key:
        raise ApiError.from_code(ApiErrors.UNAUTHORIZED)

    if not x_user_id or not x_user_role:
        raise ApiError.from_code(ApiErrors.UNAUTHORIZED)

    try:
        role = UserRole(x_user_role.upper())
    except ValueError:
        raise ApiError.from_code(ApiErrors.UNAUTHORIZED)

    return AuthenticatedUser(
        id=x_user_id,
        role=role,
        email=x_user_email,
        name=x_user_name,
        phone=x_user_phone,
    )


def require_roles(*roles: UserRole) -> Callable:
    """Dependency factory: 403 unless the caller has one of the roles."""

    async def dependency(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in roles:
            raise ApiError.from_code(ApiErrors.FORBIDDEN)
        return user

    return dependency


require_admin = require_roles(UserRole.ADMIN)


def get_cache(request: Request) -> Cache:
    """Cache built during startup (Redis when configured)."""
    return getattr(request.app.state, "cache", None) or NullCache()


def get_paymob_service() -> PaymobService:
    return PaymobService()
