from __future__ import annotations

import asyncio
import secrets
from typing import Any, Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger
from gatehouse.service.authorization import AuthorizationPolicy
from gatehouse.service.clock import Clock, SystemClock
from gatehouse.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from gatehouse.service.events import EventBus, EventType
from gatehouse.service.identity_cache import IdentityCache, identity_key, listing_key
from gatehouse.service.tokens import CredentialPair, Identity, TokenService, call_store
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import IdentityRecord, Role

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
ADMIN_ONLY = frozenset({Role.ADMIN.value})


def _normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValidationError("a valid email address is required", detail={"field": "email"})
    return normalized


def _require_password(password: str, field: str = "password") -> str:
    if not password:
        raise ValidationError(f"{field} is required", detail={"field": field})
    return password


def _validate_role(role: Any) -> str:
    value = getattr(role, "value", role)
    if value not in {r.value for r in Role}:
        raise ValidationError("unknown role", detail={"field": "role", "role": value})
    return value


class AccountService:
    """Account flows built on the token, policy, cache and event pieces.

    Every write goes to the record store first and publishes its event
    afterwards; cache eviction happens when the bus delivers the event.
    """

    def __init__(
        self,
        store: Any,
        tokens: TokenService,
        policy: AuthorizationPolicy,
        cache: IdentityCache,
        bus: EventBus,
        clock: Optional[Clock] = None,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.policy = policy
        self.cache = cache
        self.bus = bus
        self.clock = clock or SystemClock()
        self.store_timeout = store_timeout
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against on unknown emails so both login failures cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    async def _store(self, func, *args, **kwargs):
        return await call_store(func, *args, timeout=self.store_timeout, **kwargs)

    # -- passwords ---------------------------------------------------------

    async def _save_password(self, user_id: str, password: str) -> None:
        digest = await asyncio.to_thread(self._pwd_hasher.hash, password)
        await self._store(
            self.store.save_password, user_id, digest, PASSWORD_ALGO, at=self.clock.now()
        )

    async def _password_matches(self, user_id: str, password: str) -> bool:
        record = await self._store(self.store.get_password_record, user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def _burn_verify(self, password: str) -> None:
        try:
            await asyncio.to_thread(self._pwd_hasher.verify, self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            # A mismatch is the expected outcome
            return

    # -- lookups -----------------------------------------------------------

    async def _require_user(self, user_id: str) -> IdentityRecord:
        record = await self._store(self.store.load_identity, user_id)
        if record is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return record

    async def _create(
        self, email: str, password: str, name: Optional[str], role: str, is_active: bool
    ) -> IdentityRecord:
        try:
            record = await self._store(
                self.store.create_user,
                email,
                name,
                role=role,
                is_active=is_active,
                at=self.clock.now(),
            )
        except ConstraintViolation as exc:
            raise ConflictError("user with this email already exists", detail=exc.detail)
        try:
            await self._save_password(record.id, password)
        except Exception:
            # A row without a credential would block the email for good
            await self._remove_orphan(record.id)
            raise
        return record

    async def _remove_orphan(self, user_id: str) -> None:
        try:
            await self._store(self.store.delete_user, user_id)
        except ServiceUnavailableError as exc:
            logger.error("orphan_user_cleanup_failed", user_id=user_id, error=exc.message)
            return
        logger.warning("orphan_user_removed", user_id=user_id)

    # -- credential flows --------------------------------------------------

    async def register(
        self, email: str, password: str, name: Optional[str] = None
    ) -> Tuple[Dict[str, Any], CredentialPair]:
        """Self-service signup; always creates a plain user."""
        email = _normalize_email(email)
        _require_password(password)
        record = await self._create(email, password, name, Role.USER.value, True)
        pair = await self.tokens.issue(record.id, record.role)
        self.bus.publish(
            EventType.USER_REGISTERED, {"user_id": record.id, "email": record.email}
        )
        logger.info("user_registered", user_id=record.id)
        return record.to_public(), pair

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], CredentialPair]:
        normalized = (email or "").strip().lower()
        record = (
            await self._store(self.store.get_user_by_email, normalized)
            if normalized
            else None
        )
        if record is None:
            await self._burn_verify(password or "")
            self._auth_failed(normalized, ip, "user_not_found")
            raise AuthenticationError("invalid email or password")
        if not record.is_active:
            self._auth_failed(normalized, ip, "account_deactivated")
            raise AccountInactiveError(
                "your account has been deactivated, please contact support"
            )
        if not await self._password_matches(record.id, password or ""):
            self._auth_failed(normalized, ip, "invalid_password")
            raise AuthenticationError("invalid email or password")

        pair = await self.tokens.issue(record.id, record.role)
        self.bus.publish(
            EventType.USER_LOGGED_IN,
            {"user_id": record.id, "ip": ip, "user_agent": user_agent},
        )
        return record.to_public(), pair

    def _auth_failed(self, email: str, ip: Optional[str], reason: str) -> None:
        logger.warning("login_failed", email=email, ip=ip, reason=reason)
        self.bus.publish(EventType.AUTH_FAILED, {"email": email, "ip": ip, "reason": reason})

    async def logout(self, identity: Identity) -> None:
        await self.tokens.revoke(identity.subject_id)
        self.bus.publish(EventType.USER_LOGGED_OUT, {"user_id": identity.subject_id})

    async def refresh(self, refresh_token: str) -> CredentialPair:
        identity, pair = await self.tokens.refresh(refresh_token)
        self.bus.publish(EventType.AUTH_TOKEN_REFRESHED, {"user_id": identity.subject_id})
        return pair

    async def change_password(
        self, identity: Identity, current_password: str, new_password: str
    ) -> None:
        """Replace the password and void every credential issued before now."""
        _require_password(new_password, "new_password")
        record = await self._require_user(identity.subject_id)
        if not await self._password_matches(record.id, current_password or ""):
            raise AuthenticationError("current password is incorrect")
        if await self._password_matches(record.id, new_password):
            raise ValidationError("new password must be different from current password")
        # Void existing credentials before the new password can be used; if the
        # hash write then fails the old password still works and no session survives
        await self._store(self.store.mark_password_changed, record.id, self.clock.now())
        await self._save_password(record.id, new_password)
        self.bus.publish(EventType.USER_PASSWORD_CHANGED, {"user_id": record.id})
        logger.info("password_changed", user_id=record.id)

    # -- profile reads (cached) --------------------------------------------

    async def get_profile(self, actor: Identity, user_id: str) -> Dict[str, Any]:
        self.policy.authorize_owner_or_role(actor, user_id, ADMIN_ONLY)

        async def _load() -> Optional[Dict[str, Any]]:
            record = await self._store(self.store.load_identity, user_id)
            return record.to_public() if record else None

        user = await self.cache.get(identity_key(user_id), _load)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def list_users(
        self, actor: Identity, *, include_inactive: bool = False, limit: int = 100
    ) -> List[Dict[str, Any]]:
        self.policy.authorize(actor, ADMIN_ONLY)

        async def _load() -> List[Dict[str, Any]]:
            records = await self._store(
                self.store.list_users, include_inactive=include_inactive, limit=limit
            )
            return [r.to_public() for r in records]

        key = listing_key({"include_inactive": include_inactive, "limit": limit})
        return await self.cache.get(key, _load)

    # -- administration ----------------------------------------------------

    async def create_user(
        self,
        actor: Identity,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: Any = Role.USER,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        self.policy.authorize(actor, ADMIN_ONLY)
        record = await self._create(
            _normalize_email(email),
            _require_password(password),
            name,
            _validate_role(role),
            is_active,
        )
        self.bus.publish(
            EventType.USER_REGISTERED, {"user_id": record.id, "email": record.email}
        )
        return record.to_public()

    async def update_profile(
        self,
        actor: Identity,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Any = None,
    ) -> Dict[str, Any]:
        self.policy.authorize_owner_or_role(actor, user_id, ADMIN_ONLY)
        if role is not None:
            if actor.role != Role.ADMIN.value:
                raise ForbiddenError("only admins can change user roles")
            role = _validate_role(role)
        fields: List[str] = []
        record: Optional[IdentityRecord] = None
        if name is not None or email is not None:
            try:
                record = await self._store(
                    self.store.update_user,
                    user_id,
                    name=name,
                    email=_normalize_email(email) if email is not None else None,
                    at=self.clock.now(),
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already in use", detail=exc.detail)
            fields += [f for f, v in (("name", name), ("email", email)) if v is not None]
        if role is not None:
            record = await self._store(
                self.store.update_user_role, user_id, role, at=self.clock.now()
            )
            fields.append("role")
        if record is None:
            record = await self._require_user(user_id)
            return record.to_public()
        self.bus.publish(EventType.USER_UPDATED, {"user_id": user_id, "fields": fields})
        return record.to_public()

    async def set_role(self, actor: Identity, user_id: str, role: Any) -> Dict[str, Any]:
        """Change a user's role; takes effect on their next request."""
        self.policy.authorize(actor, ADMIN_ONLY)
        return await self.update_profile(actor, user_id, role=role)

    async def deactivate(self, actor: Identity, user_id: str) -> Dict[str, Any]:
        """Soft delete: the account stays but can no longer authenticate."""
        self.policy.authorize(actor, ADMIN_ONLY)
        if actor.subject_id == user_id:
            raise ValidationError("you cannot deactivate your own account")
        record = await self._store(
            self.store.set_active, user_id, False, at=self.clock.now()
        )
        if record is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.bus.publish(EventType.USER_DEACTIVATED, {"user_id": user_id})
        return record.to_public()

    async def restore(self, actor: Identity, user_id: str) -> Dict[str, Any]:
        """Reactivate a deactivated account.

        The password-change epoch is left as it was; tokens issued before
        deactivation were not refreshable, and access tokens from that time
        have already expired or will within one access lifetime.
        """
        self.policy.authorize(actor, ADMIN_ONLY)
        record = await self._require_user(user_id)
        if record.is_active:
            raise ValidationError("user is already active")
        record = await self._store(
            self.store.set_active, user_id, True, at=self.clock.now()
        )
        if record is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.bus.publish(EventType.USER_RESTORED, {"user_id": user_id})
        return record.to_public()

    async def delete(self, actor: Identity, user_id: str) -> None:
        self.policy.authorize(actor, ADMIN_ONLY)
        if actor.subject_id == user_id:
            raise ValidationError("you cannot delete your own account")
        deleted = await self._store(self.store.delete_user, user_id)
        if not deleted:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.bus.publish(EventType.USER_DELETED, {"user_id": user_id, "permanent": True})
