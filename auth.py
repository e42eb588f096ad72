"""Session resolution and role guards.

Routes depend on ``require_user`` or ``require_admin`` and receive a typed
``RequestContext`` describing who is calling.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request

from config import Settings
from errors import AuthenticationError, AuthorizationError, ValidationError
from models import User, UserRole
from repository import Repository
from sessions import SessionInfo, read_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    email: str
    name: str
    role: UserRole

    @classmethod
    def from_model(cls, user: User) -> "AuthenticatedUser":
        return cls(id=user.id, email=user.email, name=user.name, role=user.role)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class RequestContext:
    user: AuthenticatedUser
    session: SessionInfo


@dataclass(frozen=True)
class EditPermission:
    allowed: bool
    restrictions: tuple[str, ...] = ()
    error: Optional[str] = None


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> Repository:
    return request.app.state.repository


def session_token_from_request(request: Request, settings: Settings) -> Optional[str]:
    token = request.cookies.get(settings.session_cookie)
    return token or None


def get_authenticated_user(
    token: Optional[str], settings: Settings, repository: Repository
) -> Optional[RequestContext]:
    if not token:
        return None
    session = read_session_token(settings, token)
    if session is None:
        logger.info("auth: rejected invalid or expired session token")
        return None
    user = repository.find_user(session.user_id)
    if not user:
        logger.info(f"auth: session refers to missing user_id={session.user_id}")
        return None
    return RequestContext(user=AuthenticatedUser.from_model(user), session=session)


def get_request_context(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    repository: Repository = Depends(get_repository),
) -> RequestContext:
    token = session_token_from_request(request, settings)
    context = get_authenticated_user(token, settings, repository)
    if context is None:
        raise AuthenticationError()
    return context


def require_role(*allowed_roles: UserRole) -> Callable[..., RequestContext]:
    allowed = frozenset(allowed_roles)

    def _dep(context: RequestContext = Depends(get_request_context)) -> RequestContext:
        if context.user.role not in allowed:
            logger.warning(
                f"auth: forbidden user_id={context.user.id} role={context.user.role.value}"
            )
            raise AuthorizationError()
        return context

    return _dep


require_user = require_role(UserRole.USER, UserRole.ADMIN)
require_admin = require_role(UserRole.ADMIN)


def is_self_role_change(
    target_user_id: int, current_user: AuthenticatedUser, new_role: Optional[UserRole]
) -> bool:
    return (
        target_user_id == current_user.id
        and new_role is not None
        and new_role != current_user.role
    )


def prevent_self_role_change(
    target_user_id: int, current_user: AuthenticatedUser, new_role: Optional[UserRole]
) -> None:
    if is_self_role_change(target_user_id, current_user, new_role):
        raise ValidationError(
            "You cannot change your own role",
            details=[{"field": "role", "message": "You cannot change your own role"}],
        )


def can_edit_user(editor: AuthenticatedUser, target_user_id: int) -> EditPermission:
    if editor.role == UserRole.ADMIN:
        restrictions = ("role",) if target_user_id == editor.id else ()
        return EditPermission(allowed=True, restrictions=restrictions)
    if editor.role == UserRole.USER:
        if editor.id == target_user_id:
            return EditPermission(allowed=True, restrictions=("role",))
        return EditPermission(
            allowed=False, error="You do not have permission to edit this user"
        )
    raise ValueError(f"Unknown role: {editor.role}")
