import asyncio
import json
import time

import pytest

from gatehouse.config import Settings
from gatehouse.service.errors import (
    AccountInactiveError,
    ExpiredCredentialError,
    MalformedCredentialError,
    NotFoundError,
    RevokedCredentialError,
    ServiceUnavailableError,
    StaleCredentialError,
)
from gatehouse.service.tokens import REFRESH, CredentialPair, TokenService
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import Role


def _user(store, clock, email="alice@example.com", role=Role.USER.value):
    return store.create_user(email, "Alice", role=role, at=clock.now())


async def test_issue_then_verify_access(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    identity = await tokens.verify_access(pair.access_token)
    assert identity.subject_id == user.id
    assert identity.role == "user"
    assert identity.token_type == "access"
    assert pair.access_expires_at < pair.refresh_expires_at
    assert store.load_identity(user.id).refresh_token == pair.refresh_token


async def test_role_comes_from_current_record(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    store.update_user_role(user.id, Role.ADMIN.value)

    identity = await tokens.verify_access(pair.access_token)
    assert identity.role == "admin"


async def test_access_and_refresh_tokens_are_not_interchangeable(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    with pytest.raises(MalformedCredentialError):
        await tokens.verify_access(pair.refresh_token)
    with pytest.raises(MalformedCredentialError):
        await tokens.verify_refresh(pair.access_token)


@pytest.mark.parametrize("bad", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
async def test_garbage_is_malformed(tokens, bad):
    with pytest.raises(MalformedCredentialError):
        await tokens.verify_access(bad)


async def test_tampered_signature_is_malformed(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    header, payload, sig = pair.access_token.split(".")
    forged = json.loads(tokens._decode_segment(payload))
    forged["role"] = "admin"
    forged_payload = tokens._encode_segment(json.dumps(forged).encode())

    with pytest.raises(MalformedCredentialError):
        await tokens.verify_access(f"{header}.{forged_payload}.{sig}")


async def test_alg_none_is_malformed(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    _, payload, _ = pair.access_token.split(".")
    header = tokens._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())

    with pytest.raises(MalformedCredentialError):
        await tokens.verify_access(f"{header}.{payload}.")


async def test_token_signed_with_other_secret_is_malformed(store, tokens, clock):
    user = _user(store, clock)
    other = TokenService(
        store,
        Settings(access_token_secret="x" * 40, refresh_token_secret="y" * 40),
        clock,
    )
    pair = await other.issue(user.id, user.role)

    with pytest.raises(MalformedCredentialError):
        await tokens.verify_access(pair.access_token)


async def test_access_token_expires(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    clock.advance(15 * 60 - 1)
    await tokens.verify_access(pair.access_token)

    clock.advance(2)
    with pytest.raises(ExpiredCredentialError) as excinfo:
        await tokens.verify_access(pair.access_token)
    assert excinfo.value.refreshable is True

    # The refresh token is still good and yields a fresh pair
    _, fresh = await tokens.refresh(pair.refresh_token)
    await tokens.verify_access(fresh.access_token)


async def test_refresh_rotates_and_old_token_is_revoked(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    identity, rotated = await tokens.refresh(pair.refresh_token)
    assert identity.subject_id == user.id
    assert rotated.refresh_token != pair.refresh_token
    assert store.load_identity(user.id).refresh_token == rotated.refresh_token

    with pytest.raises(RevokedCredentialError):
        await tokens.refresh(pair.refresh_token)
    # A replayed token does not disturb the live one
    await tokens.verify_refresh(rotated.refresh_token)


async def test_concurrent_rotation_has_exactly_one_winner(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    first = await tokens.verify_refresh(pair.refresh_token)
    second = await tokens.verify_refresh(pair.refresh_token)

    results = await asyncio.gather(
        tokens.rotate(first), tokens.rotate(second), return_exceptions=True
    )

    winners = [r for r in results if isinstance(r, CredentialPair)]
    losers = [r for r in results if isinstance(r, RevokedCredentialError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert store.load_identity(user.id).refresh_token == winners[0].refresh_token


async def test_rotate_rejects_access_identity(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    identity = await tokens.verify_access(pair.access_token)

    with pytest.raises(MalformedCredentialError):
        await tokens.rotate(identity)


async def test_password_change_makes_earlier_tokens_stale(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    clock.advance(1)
    store.mark_password_changed(user.id, clock.now())

    with pytest.raises(StaleCredentialError):
        await tokens.verify_access(pair.access_token)
    with pytest.raises(StaleCredentialError):
        await tokens.verify_refresh(pair.refresh_token)

    # Tokens issued at the change instant or later are accepted
    fresh = await tokens.issue(user.id, user.role)
    await tokens.verify_access(fresh.access_token)
    assert (await tokens.verify_refresh(fresh.refresh_token)).token_type == REFRESH


async def test_inactive_account_is_rejected(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    store.set_active(user.id, False)

    with pytest.raises(AccountInactiveError):
        await tokens.verify_access(pair.access_token)
    with pytest.raises(AccountInactiveError):
        await tokens.verify_refresh(pair.refresh_token)


async def test_deleted_subject_is_revoked(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)
    store.delete_user(user.id)

    with pytest.raises(RevokedCredentialError):
        await tokens.verify_access(pair.access_token)


async def test_revoke_kills_refresh_but_not_access(store, tokens, clock):
    user = _user(store, clock)
    pair = await tokens.issue(user.id, user.role)

    assert await tokens.revoke(user.id) is True
    with pytest.raises(RevokedCredentialError):
        await tokens.verify_refresh(pair.refresh_token)
    await tokens.verify_access(pair.access_token)


async def test_issue_for_unknown_subject(tokens):
    with pytest.raises(NotFoundError):
        await tokens.issue("missing", "user")


async def test_reissue_replaces_previous_refresh_token(store, tokens, clock):
    user = _user(store, clock)
    first = await tokens.issue(user.id, user.role)
    second = await tokens.issue(user.id, user.role)

    with pytest.raises(RevokedCredentialError):
        await tokens.verify_refresh(first.refresh_token)
    await tokens.verify_refresh(second.refresh_token)


class _SlowStore(MemoryStore):
    def load_identity(self, user_id):
        time.sleep(0.3)
        return super().load_identity(user_id)


class _DownStore(MemoryStore):
    def load_identity(self, user_id):
        raise StoreUnavailable("connection refused", backend="test")


async def test_store_timeout_denies(settings, clock):
    store = _SlowStore()
    user = _user(store, clock)
    tokens = TokenService(store, settings, clock, store_timeout=0.05)
    pair = await tokens.issue(user.id, user.role)

    with pytest.raises(ServiceUnavailableError):
        await tokens.verify_access(pair.access_token)


async def test_store_outage_denies(settings, clock):
    store = _DownStore()
    user = _user(store, clock)
    tokens = TokenService(store, settings, clock)
    pair = await tokens.issue(user.id, user.role)

    with pytest.raises(ServiceUnavailableError):
        await tokens.verify_access(pair.access_token)


async def test_peek_subject_does_not_touch_store(settings, clock):
    store = _DownStore()
    user = _user(store, clock)
    tokens = TokenService(store, settings, clock)
    pair = await tokens.issue(user.id, user.role)

    assert tokens.peek_subject(pair.access_token) == user.id
    assert tokens.peek_subject(pair.refresh_token) is None
    assert tokens.peek_subject("junk") is None
    assert tokens.peek_subject(None) is None
    clock.advance(16 * 60)
    assert tokens.peek_subject(pair.access_token) is None
