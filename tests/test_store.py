"""Tests for the SQLite store."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from addonsync.store import NotFoundError, SQLiteStore
from addonsync.sync.models import AccountSettings, AddOn, CatalogSelection, Group, SyncMode, User
from addonsync.vault import CredentialVault, DecryptionError


@pytest.fixture
def vault():
    return CredentialVault(b"s" * 32, scrypt_n=1 << 4)


@pytest.fixture
def store(tmp_path, vault):
    db = SQLiteStore(tmp_path / "nested" / "addonsync.db", vault)
    db.initialize()
    yield db
    db.close()


def _addon(addon_id: str, url: str = "", account: str = "acct") -> AddOn:
    return AddOn(
        id=addon_id,
        account_id=account,
        name=addon_id.title(),
        manifest_url=url or f"https://{addon_id}.example.com/manifest.json",
        original_manifest={"id": f"org.{addon_id}", "catalogs": [{"type": "movie", "id": "top"}]},
        manifest={"id": f"org.{addon_id}", "catalogs": []},
        manifest_hash="h",
        resources=["stream"],
        catalogs=[CatalogSelection("movie", "top", search=True)],
    )


def _group_with(store: SQLiteStore, *addon_ids: str) -> Group:
    group = Group(id="g1", account_id="acct", name="Family")
    store.save_group(group)
    for addon_id in addon_ids:
        store.save_addon(_addon(addon_id))
        store.attach_addon("acct", "g1", addon_id)
    return group


def _positions(store: SQLiteStore, group_id: str) -> dict:
    rows = sqlite3.connect(str(store.db_path)).execute(
        "SELECT addon_id, position FROM group_addons WHERE group_id = ?", (group_id,)
    ).fetchall()
    return {addon_id: position for addon_id, position in rows}


def test_uninitialized_store_raises():
    db = SQLiteStore(":memory:", None)
    with pytest.raises(RuntimeError, match="Store not initialized"):
        db.list_groups("acct")


def test_addon_round_trip_seals_secrets(store):
    addon = _addon("alpha")
    store.save_addon(addon)

    loaded = store.get_addon("acct", "alpha")
    assert loaded.manifest_url == addon.manifest_url
    assert loaded.original_manifest == addon.original_manifest
    assert loaded.catalogs == [CatalogSelection("movie", "top", search=True)]
    assert loaded.resources == ["stream"]

    raw = sqlite3.connect(str(store.db_path)).execute(
        "SELECT manifest_url, original_manifest FROM addons"
    ).fetchone()
    assert "alpha.example.com" not in raw[0]
    assert "org.alpha" not in raw[1]


def test_addons_are_tenant_scoped(store):
    store.save_addon(_addon("alpha"))
    with pytest.raises(NotFoundError):
        store.get_addon("other", "alpha")
    assert store.list_addons("other") == []


def test_find_addon_by_url_uses_canonical_form(store):
    store.save_addon(_addon("alpha"))

    found = store.find_addon_by_url("acct", "HTTP://Alpha.example.com/manifest.json?x=1")

    assert found is not None and found.id == "alpha"
    assert store.find_addon_by_url("acct", "https://beta.example.com") is None
    assert store.find_addon_by_url("other", "https://alpha.example.com") is None


def test_attach_detach_keep_positions_contiguous(store):
    _group_with(store, "a", "b", "c")
    store.save_addon(_addon("d"))

    store.attach_addon("acct", "g1", "d", position=1)
    assert store.group_addon_ids("g1") == ["a", "d", "b", "c"]

    store.detach_addon("acct", "g1", "b")
    assert _positions(store, "g1") == {"a": 0, "d": 1, "c": 2}

    store.attach_addon("acct", "g1", "c", position=99)
    assert store.group_addon_ids("g1") == ["a", "d", "c"]

    with pytest.raises(NotFoundError):
        store.detach_addon("acct", "g1", "b")


def test_reorder_group(store):
    _group_with(store, "a", "b", "c")

    order = store.reorder_group("acct", "g1", ["c", "ghost", "a"])

    assert order == ["c", "a", "b"]
    assert [a.id for a in store.group_addons("acct", "g1")] == ["c", "a", "b"]
    assert sorted(_positions(store, "g1").values()) == [0, 1, 2]


def test_delete_addon_removes_memberships(store):
    _group_with(store, "a", "b", "c")

    store.delete_addon("acct", "b")

    assert _positions(store, "g1") == {"a": 0, "c": 1}
    assert store.groups_with_addon("b") == []
    with pytest.raises(NotFoundError):
        store.delete_addon("acct", "b")


def test_delete_group_keeps_addons_and_unassigns_users(store):
    _group_with(store, "a")
    store.save_user(User(id="u1", account_id="acct", username="kid"), group_id="g1")

    store.delete_group("acct", "g1")

    assert store.get_addon("acct", "a").id == "a"
    assert store.groups_with_addon("a") == []
    assert store.user_group_id("acct", "u1") is None
    with pytest.raises(NotFoundError):
        store.get_group("acct", "g1")


def test_save_user_keeps_existing_group(store):
    _group_with(store)
    user = User(
        id="u1",
        account_id="acct",
        username="kid",
        auth_key="secret-token",
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
        excluded_addons=["a"],
        protected_addons=["My Addon"],
    )
    store.save_user(user, group_id="g1")

    user.username = "kiddo"
    store.save_user(user)

    loaded = store.get_user("acct", "u1")
    assert loaded.username == "kiddo"
    assert loaded.auth_key == "secret-token"
    assert loaded.expires_at == datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert loaded.excluded_addons == ["a"]
    assert loaded.protected_addons == ["My Addon"]
    assert store.user_group_id("acct", "u1") == "g1"
    assert store.user_ids("acct", group_id="g1") == ["u1"]

    raw = sqlite3.connect(str(store.db_path)).execute("SELECT auth_key FROM users").fetchone()
    assert "secret-token" not in raw[0]


def test_assign_user(store):
    _group_with(store)
    store.save_user(User(id="u1", account_id="acct", username="kid"))

    store.assign_user("acct", "u1", "g1")
    assert store.user_group_id("acct", "u1") == "g1"

    store.assign_user("acct", "u1", None)
    assert store.user_ids("acct", group_id="g1") == []

    with pytest.raises(NotFoundError):
        store.assign_user("acct", "ghost", None)
    with pytest.raises(NotFoundError):
        store.assign_user("acct", "u1", "missing-group")


def test_user_secret_from_closed_session_is_unusable(store, vault):
    vault.open_session("acct", "owner@example.com", "pw")
    store.save_user(User(id="u1", account_id="acct", username="kid", auth_key="token"))
    vault.close_session("acct")

    with pytest.raises(DecryptionError):
        store.get_user("acct", "u1")


def test_account_settings(store):
    with pytest.raises(NotFoundError):
        store.get_account_settings("acct")

    store.save_account_settings(AccountSettings(account_id="acct", frequency="5m", mode=SyncMode.ADVANCED))
    stamped = store.record_last_run("acct", when="2026-01-01T00:00:00+00:00")

    loaded = store.get_account_settings("acct")
    assert loaded.frequency == "5m"
    assert loaded.mode is SyncMode.ADVANCED
    assert loaded.last_run_at == stamped.last_run_at == "2026-01-01T00:00:00+00:00"
    assert [a.account_id for a in store.list_accounts()] == ["acct"]
