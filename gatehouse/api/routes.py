from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from gatehouse.api.dependencies import (
    apply_credential_cookies,
    clear_credential_cookies,
    client_address,
    current_identity,
    extract_refresh_token,
    get_runtime,
    rate_limit,
    require_owner_or_roles,
    require_roles,
)
from gatehouse.api.schemas import (
    ChangePasswordRequest,
    CreateUserRequest,
    CredentialResponse,
    Envelope,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    RoleRequest,
    UpdateUserRequest,
)
from gatehouse.service.errors import MalformedCredentialError
from gatehouse.service.runtime import Runtime
from gatehouse.service.tokens import CredentialPair, Identity
from gatehouse.storage.models import Role

router = APIRouter()

_ADMIN = Role.ADMIN


def _credentials(pair: CredentialPair) -> dict:
    return CredentialResponse(**pair.as_dict()).model_dump()


# -- auth ------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def register(
    body: RegisterRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    user, pair = await runtime.accounts.register(body.email, body.password, body.name)
    apply_credential_cookies(response, pair, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"user": user, **_credentials(pair)})


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    user, pair = await runtime.accounts.login(
        body.email,
        body.password,
        ip=client_address(request),
        user_agent=request.headers.get("User-Agent"),
    )
    apply_credential_cookies(response, pair, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"user": user, **_credentials(pair)})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    token = (body.refresh_token if body else None) or extract_refresh_token(request)
    if not token:
        raise MalformedCredentialError("refresh credential required")
    pair = await runtime.accounts.refresh(token)
    apply_credential_cookies(response, pair, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data=_credentials(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    identity: Identity = Depends(current_identity),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.logout(identity)
    clear_credential_cookies(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    identity: Identity = Depends(current_identity),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.accounts.get_profile(identity, identity.subject_id)
    return Envelope(status="ok", data=user)


@router.post(
    "/auth/change-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("password_reset"))],
)
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    identity: Identity = Depends(current_identity),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.change_password(
        identity, body.current_password, body.new_password
    )
    clear_credential_cookies(response)
    return Envelope(
        status="ok", data={"message": "password changed, please log in again"}
    )


# -- users -----------------------------------------------------------------


@router.get(
    "/users",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("global"))],
)
async def list_users(
    include_inactive: bool = False,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    users = await runtime.accounts.list_users(identity, include_inactive=include_inactive)
    return Envelope(status="ok", data={"users": users, "count": len(users)})


@router.post(
    "/users",
    response_model=Envelope,
    status_code=201,
    tags=["users"],
    dependencies=[Depends(rate_limit("heavy"))],
)
async def create_user(
    body: CreateUserRequest,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.accounts.create_user(
        identity,
        body.email,
        body.password,
        name=body.name,
        role=body.role,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=user)


@router.get(
    "/users/{user_id}",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("global"))],
)
async def get_user(
    user_id: str,
    identity: Identity = Depends(require_owner_or_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=await runtime.accounts.get_profile(identity, user_id))


@router.patch(
    "/users/{user_id}",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("global"))],
)
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    identity: Identity = Depends(require_owner_or_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.accounts.update_profile(
        identity, user_id, name=body.name, email=body.email, role=body.role
    )
    return Envelope(status="ok", data=user)


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def set_role(
    user_id: str,
    body: RoleRequest,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(
        status="ok", data=await runtime.accounts.set_role(identity, user_id, body.role)
    )


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.accounts.deactivate(identity, user_id)
    return Envelope(status="ok", data=user)


@router.delete("/users/{user_id}/permanent", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.accounts.delete(identity, user_id)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.post("/users/{user_id}/restore", response_model=Envelope, tags=["users"])
async def restore_user(
    user_id: str,
    identity: Identity = Depends(require_roles(_ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=await runtime.accounts.restore(identity, user_id))
