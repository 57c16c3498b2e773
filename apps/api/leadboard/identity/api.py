from __future__ import annotations

from fastapi import APIRouter, Depends, Request, WebSocket, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadboard.api.errors import crm_error_response
from leadboard.context import get_correlation_id
from leadboard.core.auth import AuthUser, decode_token, get_current_user as get_auth_user
from leadboard.core.database import get_db
from leadboard.core.errors import CRMError, PermissionDenied
from leadboard.identity.schemas import (
    PresenceRead,
    ProfileRead,
    SetActiveRequest,
    SubUserCreate,
    SubUserCreated,
    SubUserDeleted,
    TeamMemberRead,
    UserStatsRead,
)
from leadboard.identity.service import identity_service, is_online
from leadboard.identity.models import Profile
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_all_assignable_users, get_user_stats

users_router = APIRouter(prefix="/api/users", tags=["users"])


def get_principal(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> Principal | None:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return identity_service.resolve_principal(db, auth_user, correlation_id=correlation_id)


def get_ws_principal(websocket: WebSocket, db: Session = Depends(get_db)) -> Principal | None:
    token = websocket.query_params.get("token") or ""
    auth_header = websocket.headers.get("authorization", "")
    if not token and auth_header.startswith("Bearer "):
        token = auth_header.replace("Bearer ", "")
    return identity_service.resolve_principal(db, decode_token(token))


def require_principal(principal: Principal | None) -> Principal:
    if principal is None:
        raise PermissionDenied("Authentication required")
    return principal


@users_router.post("", response_model=SubUserCreated, status_code=status.HTTP_201_CREATED)
def create_sub_user(
    request: Request,
    dto: SubUserCreate,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> SubUserCreated | JSONResponse:
    try:
        caller = require_principal(principal)
        if not caller.is_master:
            raise PermissionDenied("Only masters can create users")
        return SubUserCreated(user=identity_service.create_sub_user(db, caller.user_id, dto))
    except CRMError as exc:
        return crm_error_response(request, exc, "user_create_failed")


@users_router.get("/team", response_model=list[TeamMemberRead])
def list_team(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[TeamMemberRead] | JSONResponse:
    try:
        return identity_service.list_team(db, require_principal(principal))
    except CRMError as exc:
        return crm_error_response(request, exc, "user_team_failed")


@users_router.get("/assignable", response_model=list[ProfileRead])
def list_assignable(
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> list[ProfileRead]:
    return [ProfileRead.model_validate(profile) for profile in get_all_assignable_users(db, principal)]


@users_router.get("/stats", response_model=UserStatsRead)
def user_stats(
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> UserStatsRead:
    return UserStatsRead(**get_user_stats(db, principal))


@users_router.post("/heartbeat", response_model=PresenceRead)
def heartbeat(
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> PresenceRead | JSONResponse:
    try:
        caller = require_principal(principal)
        seen_at = identity_service.touch_presence(db, caller.user_id)
        profile = db.get(Profile, caller.user_id)
        return PresenceRead(
            user_id=caller.user_id,
            last_seen_at=seen_at,
            is_online=profile is not None and is_online(profile),
        )
    except CRMError as exc:
        return crm_error_response(request, exc, "user_heartbeat_failed")


@users_router.patch("/{user_id}/active", response_model=ProfileRead)
def set_active(
    request: Request,
    user_id: str,
    dto: SetActiveRequest,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> ProfileRead | JSONResponse:
    try:
        return identity_service.set_active(db, principal, user_id, dto.is_active)
    except CRMError as exc:
        return crm_error_response(request, exc, "user_update_failed")


@users_router.delete("/{user_id}", response_model=SubUserDeleted)
def delete_sub_user(
    request: Request,
    user_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_principal),
) -> SubUserDeleted | JSONResponse:
    try:
        identity_service.delete_sub_user(db, principal, user_id)
        return SubUserDeleted(message="User removed")
    except CRMError as exc:
        return crm_error_response(request, exc, "user_delete_failed")
