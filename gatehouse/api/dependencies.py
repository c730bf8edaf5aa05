from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import Depends, Request, Response

from gatehouse.logging import get_logger
from gatehouse.service.errors import MalformedCredentialError
from gatehouse.service.rate_limit import address_key, subject_key
from gatehouse.service.runtime import Runtime
from gatehouse.service.tokens import CredentialPair, Identity

logger = get_logger(__name__)

ACCESS_COOKIES = ("access_token", "accessToken")
REFRESH_COOKIES = ("refresh_token", "refreshToken")


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("application runtime is not configured")
    return runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _first_cookie(request: Request, names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = request.cookies.get(name)
        if value:
            return value
    return None


def extract_access_token(request: Request) -> Optional[str]:
    """Bearer header wins over the cookie when both are present."""
    return _bearer_token(request.headers.get("Authorization")) or _first_cookie(
        request, ACCESS_COOKIES
    )


def extract_refresh_token(request: Request) -> Optional[str]:
    return _first_cookie(request, REFRESH_COOKIES)


def client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def current_identity(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> Identity:
    token = extract_access_token(request)
    if not token:
        raise MalformedCredentialError("authentication required")
    identity = await runtime.tokens.verify_access(token)
    request.state.identity = identity
    return identity


def require_roles(*roles: Any) -> Callable[..., Any]:
    """Dependency admitting only identities holding one of ``roles``."""

    async def _dependency(
        identity: Identity = Depends(current_identity),
        runtime: Runtime = Depends(get_runtime),
    ) -> Identity:
        runtime.policy.authorize(identity, roles)
        return identity

    return _dependency


def require_owner_or_roles(*roles: Any, param: str = "user_id") -> Callable[..., Any]:
    """Dependency admitting the owner named by path parameter ``param``, or ``roles``."""

    async def _dependency(
        request: Request,
        identity: Identity = Depends(current_identity),
        runtime: Runtime = Depends(get_runtime),
    ) -> Identity:
        owner_id = request.path_params.get(param)
        runtime.policy.authorize_owner_or_role(identity, owner_id, roles)
        return identity

    return _dependency


def rate_limit(name: str) -> Callable[..., Any]:
    """Dependency admitting the request against the named policy.

    Authenticated callers are keyed by subject, anonymous ones by address.
    The token is only peeked at here; authentication happens separately.
    """

    async def _dependency(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ) -> None:
        limiter = runtime.limiters[name]
        subject = runtime.tokens.peek_subject(extract_access_token(request))
        key = subject_key(subject) if subject else address_key(client_address(request))
        decision = await limiter.admit(key)
        response.headers["X-RateLimit-Limit"] = str(limiter.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)

    return _dependency


def apply_credential_cookies(
    response: Response, pair: CredentialPair, *, secure: bool = True
) -> None:
    response.set_cookie(
        "access_token",
        pair.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.access_expires_at,
        path="/",
    )
    response.set_cookie(
        "refresh_token",
        pair.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.refresh_expires_at,
        path="/",
    )


def clear_credential_cookies(response: Response) -> None:
    for name in ("access_token", "refresh_token"):
        response.delete_cookie(name, path="/")
