from __future__ import annotations

from typing import Any, Iterable, Optional

from gatehouse.logging import get_logger
from gatehouse.service.errors import ForbiddenError
from gatehouse.service.tokens import Identity

logger = get_logger(__name__)


def _role_names(roles: Iterable[Any]) -> frozenset[str]:
    return frozenset(getattr(role, "value", role) for role in roles)


class AuthorizationPolicy:
    """Role and ownership checks over an already verified ``Identity``.

    Stateless and free of I/O; callers must obtain the identity from
    ``TokenService.verify_access`` first.
    """

    def is_authorized(self, identity: Identity, required_roles: Iterable[Any]) -> bool:
        return identity.role in _role_names(required_roles)

    def is_owner_or_role(
        self,
        identity: Identity,
        owner_id: Optional[str],
        required_roles: Iterable[Any],
    ) -> bool:
        if owner_id is not None and identity.subject_id == owner_id:
            return True
        return self.is_authorized(identity, required_roles)

    def authorize(self, identity: Identity, required_roles: Iterable[Any]) -> None:
        roles = _role_names(required_roles)
        if identity.role not in roles:
            logger.warning(
                "authorization_denied",
                user_id=identity.subject_id,
                role=identity.role,
                required_roles=sorted(roles),
            )
            raise ForbiddenError(
                "insufficient role", detail={"required_roles": sorted(roles)}
            )

    def authorize_owner_or_role(
        self,
        identity: Identity,
        owner_id: Optional[str],
        required_roles: Iterable[Any],
    ) -> None:
        roles = _role_names(required_roles)
        if self.is_owner_or_role(identity, owner_id, roles):
            return
        logger.warning(
            "authorization_denied",
            user_id=identity.subject_id,
            role=identity.role,
            owner_id=owner_id,
            required_roles=sorted(roles),
        )
        raise ForbiddenError(
            "not the resource owner and insufficient role",
            detail={"required_roles": sorted(roles)},
        )
