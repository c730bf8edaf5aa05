import stat
from datetime import datetime, timedelta, timezone

import pytest

from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import ANY_REFRESH_TOKEN


def test_duplicate_email_rejected(store):
    store.create_user("a@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("a@example.com")


def test_returned_records_are_copies(store):
    user = store.create_user("a@example.com")
    user.role = "admin"
    assert store.load_identity(user.id).role == "user"


def test_compare_and_set_refresh_token(store):
    user = store.create_user("a@example.com")
    assert store.compare_and_set_refresh_token(user.id, ANY_REFRESH_TOKEN, "t1")
    assert not store.compare_and_set_refresh_token(user.id, "stale", "t2")
    assert store.load_identity(user.id).refresh_token == "t1"
    assert store.compare_and_set_refresh_token(user.id, "t1", "t2")
    assert store.load_identity(user.id).refresh_token == "t2"
    assert not store.compare_and_set_refresh_token("missing", ANY_REFRESH_TOKEN, "t3")


def test_deactivation_and_password_change_clear_refresh_token(store):
    user = store.create_user("a@example.com")
    store.compare_and_set_refresh_token(user.id, ANY_REFRESH_TOKEN, "t1")
    store.set_active(user.id, False)
    record = store.load_identity(user.id)
    assert record.is_active is False
    assert record.refresh_token is None

    store.set_active(user.id, True)
    store.compare_and_set_refresh_token(user.id, ANY_REFRESH_TOKEN, "t2")
    changed = datetime(2024, 2, 1, tzinfo=timezone.utc)
    record = store.mark_password_changed(user.id, changed)
    assert record.password_changed_at == changed
    assert record.refresh_token is None


def test_update_user_checks_email_conflicts(store):
    first = store.create_user("a@example.com")
    store.create_user("b@example.com")
    with pytest.raises(ConstraintViolation):
        store.update_user(first.id, email="b@example.com")
    updated = store.update_user(first.id, name="Alice")
    assert updated.name == "Alice"
    assert updated.email == "a@example.com"
    assert store.update_user("missing", name="x") is None


def test_list_users_filters_and_orders(store):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old = store.create_user("old@example.com", at=base)
    new = store.create_user("new@example.com", at=base + timedelta(minutes=1))
    gone = store.create_user("gone@example.com", at=base + timedelta(minutes=2))
    store.set_active(gone.id, False)

    assert [u.id for u in store.list_users()] == [new.id, old.id]
    assert [u.id for u in store.list_users(include_inactive=True)] == [gone.id, new.id, old.id]
    assert len(store.list_users(limit=1)) == 1


def test_delete_removes_credentials(store):
    user = store.create_user("a@example.com")
    store.save_password(user.id, "hash", "argon2id")
    assert store.get_password_record(user.id) == ("hash", "argon2id")
    assert store.delete_user(user.id) is True
    assert store.get_password_record(user.id) is None
    assert store.delete_user(user.id) is False


def test_save_password_requires_user(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("a@example.com", "Alice", role="moderator")
    store.save_password(user.id, "hash", "argon2id")
    store.compare_and_set_refresh_token(user.id, ANY_REFRESH_TOKEN, "t1")
    changed = datetime(2024, 2, 1, tzinfo=timezone.utc)
    store.mark_password_changed(user.id, changed)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    record = reloaded.load_identity(user.id)
    assert record.email == "a@example.com"
    assert record.role == "moderator"
    assert record.password_changed_at == changed
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert (tmp_path / "state" / "identity_store.json").exists()


def test_state_file_is_replaced_atomically(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("a@example.com")
    store.save_password(user.id, "hash", "argon2id")

    state_dir = tmp_path / "state"
    assert [p.name for p in state_dir.iterdir()] == ["identity_store.json"]
    mode = stat.S_IMODE((state_dir / "identity_store.json").stat().st_mode)
    assert mode == 0o600
