from __future__ import annotations

import asyncio
import base64
import functools
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.clock import Clock, SystemClock
from gatehouse.service.errors import (
    AccountInactiveError,
    ExpiredCredentialError,
    MalformedCredentialError,
    NotFoundError,
    RevokedCredentialError,
    ServiceUnavailableError,
    StaleCredentialError,
)
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.models import ANY_REFRESH_TOKEN, IdentityRecord

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class IdentityStore(Protocol):
    def load_identity(self, user_id: str) -> Optional[IdentityRecord]: ...

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Any, new_token: Optional[str]
    ) -> bool: ...

    def clear_refresh_token(self, user_id: str) -> bool: ...


@dataclass
class Identity:
    """A verified credential: who presented it and with which authority."""

    subject_id: str
    role: str
    token_type: str
    issued_at: float
    expires_at: float
    token_id: str
    token: str = field(repr=False, default="")


@dataclass
class CredentialPair:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


async def call_store(func: Callable[..., Any], *args: Any, timeout: float, **kwargs: Any) -> Any:
    """Run a blocking store call off the event loop, bounded by ``timeout``.

    Timeouts and store outages become ``ServiceUnavailableError`` so the
    request is denied rather than let through.
    """
    name = getattr(func, "__name__", "store_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=name, timeout_seconds=timeout)
        raise ServiceUnavailableError(
            "identity store timed out", detail={"operation": name}
        )
    except StoreUnavailable as exc:
        logger.error("store_call_failed", operation=name, error=exc.message)
        raise ServiceUnavailableError(
            "identity store unavailable", detail={"operation": name}
        ) from exc


class TokenService:
    """Issues, verifies, rotates and revokes access/refresh credential pairs.

    Access tokens are checked by signature plus a read of the identity
    record (active flag and password-change epoch). Refresh tokens are also
    compared against the single refresh token stored for the subject, and
    every write to that field is a compare-and-set in the store.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        clock: Optional[Clock] = None,
        *,
        store_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.store_timeout = (
            store_timeout if store_timeout is not None else settings.store_timeout_seconds
        )
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }
        self._leeway = float(settings.token_leeway_seconds)

    # -- encoding ----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise MalformedCredentialError("credential missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedCredentialError("credential is not a signed token")

        # Reject anything but HS256 so the header cannot pick the algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedCredentialError("credential header unreadable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedCredentialError("unsupported credential algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedCredentialError("credential signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedCredentialError("credential payload unreadable")
        if not isinstance(payload, dict):
            raise MalformedCredentialError("credential payload unreadable")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedCredentialError("credential issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedCredentialError("credential audience mismatch")
        if payload.get("typ") != token_type:
            raise MalformedCredentialError(f"expected a {token_type} credential")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise MalformedCredentialError("credential subject missing")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            raise MalformedCredentialError("credential timestamps missing")

        if exp_ts <= self.clock.time() - self._leeway:
            raise ExpiredCredentialError(
                f"{token_type} credential expired", detail={"refreshable": True}
            )
        payload["exp"] = exp_ts
        payload["iat"] = iat_ts
        return payload

    # -- record checks -----------------------------------------------------

    async def _load(self, subject_id: str) -> Optional[IdentityRecord]:
        return await call_store(
            self.store.load_identity, subject_id, timeout=self.store_timeout
        )

    @staticmethod
    def _check_record(
        record: Optional[IdentityRecord], payload: dict[str, Any]
    ) -> IdentityRecord:
        if record is None:
            raise RevokedCredentialError("credential subject no longer exists")
        if not record.is_active:
            raise AccountInactiveError("account is deactivated")
        changed_at = record.password_changed_at
        if changed_at is not None:
            if changed_at.tzinfo is None:
                changed_at = changed_at.replace(tzinfo=timezone.utc)
            if changed_at.timestamp() > payload["iat"]:
                raise StaleCredentialError(
                    "credential predates the most recent password change"
                )
        return record

    @staticmethod
    def _identity(record: IdentityRecord, payload: dict[str, Any], token: str) -> Identity:
        # The record's role is the current authority; the claim may be stale
        return Identity(
            subject_id=record.id,
            role=record.role,
            token_type=payload["typ"],
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            token_id=str(payload.get("jti", "")),
            token=token,
        )

    # -- public operations -------------------------------------------------

    def _build_pair(self, subject_id: str, role: str) -> CredentialPair:
        now = self.clock.now()
        tokens: dict[str, str] = {}
        expiries: dict[str, datetime] = {}
        for token_type in (ACCESS, REFRESH):
            expires_at = now + self._ttls[token_type]
            payload = {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": subject_id,
                "role": role,
                "typ": token_type,
                "jti": str(uuid.uuid4()),
                "iat": now.timestamp(),
                "exp": expires_at.timestamp(),
            }
            tokens[token_type] = self._encode_jwt(payload, token_type)
            expiries[token_type] = expires_at
        return CredentialPair(
            access_token=tokens[ACCESS],
            refresh_token=tokens[REFRESH],
            access_expires_at=expiries[ACCESS],
            refresh_expires_at=expiries[REFRESH],
        )

    async def issue(self, subject_id: str, role: Any) -> CredentialPair:
        """Mint a new pair and make its refresh token the only live one."""
        role_value = getattr(role, "value", role)
        pair = self._build_pair(subject_id, role_value)
        stored = await call_store(
            self.store.compare_and_set_refresh_token,
            subject_id,
            ANY_REFRESH_TOKEN,
            pair.refresh_token,
            timeout=self.store_timeout,
        )
        if not stored:
            raise NotFoundError("subject not found", detail={"subject_id": subject_id})
        logger.info("tokens_issued", user_id=subject_id, role=role_value)
        return pair

    async def verify_access(self, token: str) -> Identity:
        payload = self._decode_jwt(token, ACCESS)
        record = self._check_record(await self._load(payload["sub"]), payload)
        return self._identity(record, payload, token)

    async def verify_refresh(self, token: str) -> Identity:
        payload = self._decode_jwt(token, REFRESH)
        record = self._check_record(await self._load(payload["sub"]), payload)
        stored = record.refresh_token
        if not stored or not hmac.compare_digest(stored.encode(), token.encode()):
            logger.warning(
                "refresh_token_not_current",
                user_id=record.id,
                token_id=payload.get("jti"),
            )
            raise RevokedCredentialError("refresh credential has been revoked")
        return self._identity(record, payload, token)

    async def rotate(self, identity: Identity) -> CredentialPair:
        """Exchange a verified refresh identity for a fresh pair.

        The store swaps the refresh token only if it still holds the one this
        identity presented, so two rotations of the same token cannot both win.
        """
        if identity.token_type != REFRESH or not identity.token:
            raise MalformedCredentialError("rotation requires a verified refresh credential")
        pair = self._build_pair(identity.subject_id, identity.role)
        swapped = await call_store(
            self.store.compare_and_set_refresh_token,
            identity.subject_id,
            identity.token,
            pair.refresh_token,
            timeout=self.store_timeout,
        )
        if not swapped:
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=identity.subject_id,
                token_id=identity.token_id,
            )
            raise RevokedCredentialError("refresh credential has been revoked")
        logger.info("tokens_rotated", user_id=identity.subject_id)
        return pair

    async def refresh(self, refresh_token: str) -> tuple[Identity, CredentialPair]:
        identity = await self.verify_refresh(refresh_token)
        return identity, await self.rotate(identity)

    async def revoke(self, subject_id: str) -> bool:
        cleared = await call_store(
            self.store.clear_refresh_token, subject_id, timeout=self.store_timeout
        )
        logger.info("refresh_token_revoked", user_id=subject_id, cleared=cleared)
        return cleared

    def peek_subject(self, token: Optional[str]) -> Optional[str]:
        """Subject of a well-formed, unexpired access token; no store access."""
        if not token:
            return None
        try:
            return self._decode_jwt(token, ACCESS)["sub"]
        except (MalformedCredentialError, ExpiredCredentialError):
            return None
