"""Tests for the per-tenant credential vault."""

from __future__ import annotations

import base64

import pytest

from addonsync.vault import (
    CredentialVault,
    DecryptionError,
    DekStore,
    VaultError,
    load_server_key,
)

# Small scrypt cost keeps the suite fast.
FAST_N = 1 << 4


def _vault(store: DekStore = None) -> CredentialVault:
    return CredentialVault(b"k" * 32, store or DekStore(), scrypt_n=FAST_N)


def test_load_server_key_accepts_base64():
    raw = bytes(range(32))
    encoded = base64.b64encode(raw).decode("ascii")
    assert load_server_key(encoded) == raw


def test_load_server_key_pads_plain_text():
    key = load_server_key("short-secret")
    assert len(key) == 32
    assert key.startswith(b"short-secret")
    assert key.endswith(b"0")


def test_load_server_key_requires_value():
    with pytest.raises(VaultError):
        load_server_key("")


def test_from_config_reads_key_from_environment():
    vault = CredentialVault.from_config(
        {"key_env": "MY_KEY", "dek_ttl_hours": 1, "scrypt_n": FAST_N},
        env={"MY_KEY": "s3cret"},
    )
    assert vault.deks.ttl == 3600
    assert vault.decrypt(vault.encrypt("x", "t"), "t") == "x"


def test_round_trip_without_session_uses_fallback_key():
    vault = _vault()
    blob = vault.encrypt("auth-token", "tenant-a")

    assert blob != "auth-token"
    assert vault.decrypt(blob, "tenant-a") == "auth-token"


def test_round_trip_with_session_key():
    vault = _vault()
    vault.open_session("tenant-a", "Owner@Example.com", "hunter2")

    blob = vault.encrypt("auth-token", "tenant-a")

    assert vault.has_session("tenant-a")
    assert vault.decrypt(blob, "tenant-a") == "auth-token"


def test_nonce_is_fresh_per_call():
    vault = _vault()
    assert vault.encrypt("same", "t") != vault.encrypt("same", "t")


def test_blob_from_one_tenant_never_opens_for_another():
    vault = _vault()
    blob = vault.encrypt("auth-token", "tenant-a")

    with pytest.raises(DecryptionError):
        vault.decrypt(blob, "tenant-b")

    vault.open_session("tenant-a", "a@example.com", "pw")
    vault.open_session("tenant-b", "a@example.com", "pw")
    session_blob = vault.encrypt("auth-token", "tenant-a")
    with pytest.raises(DecryptionError):
        vault.decrypt(session_blob, "tenant-b")


def test_session_blob_is_unusable_after_session_closes():
    vault = _vault()
    vault.open_session("tenant-a", "a@example.com", "pw")
    blob = vault.encrypt("auth-token", "tenant-a")

    vault.close_session("tenant-a")

    with pytest.raises(DecryptionError):
        vault.decrypt(blob, "tenant-a")


def test_same_credentials_derive_same_session_key():
    vault = _vault()
    vault.open_session("tenant-a", "a@example.com", "pw")
    blob = vault.encrypt("value", "tenant-a")

    vault.close_session("tenant-a")
    vault.open_session("tenant-a", "A@Example.com ", "pw")

    assert vault.decrypt(blob, "tenant-a") == "value"


def test_tampered_or_garbage_blobs_fail():
    vault = _vault()
    blob = vault.encrypt("value", "t")
    raw = bytearray(base64.urlsafe_b64decode(blob))
    raw[-1] ^= 0x01
    tampered = base64.urlsafe_b64encode(bytes(raw)).decode("ascii")

    with pytest.raises(DecryptionError):
        vault.decrypt(tampered, "t")
    with pytest.raises(DecryptionError):
        vault.decrypt("not-a-blob", "t")


def test_json_helpers_round_trip():
    vault = _vault()
    blob = vault.encrypt_json(["Cinemeta", "https://x.io/manifest.json"], "t")
    assert vault.decrypt_json(blob, "t") == ["Cinemeta", "https://x.io/manifest.json"]


def test_fingerprint_is_stable_and_tenant_scoped():
    vault = _vault()
    first = vault.fingerprint("x.io", "t1")

    vault.open_session("t1", "a@example.com", "pw")
    assert vault.fingerprint("x.io", "t1") == first
    assert vault.fingerprint("x.io", "t2") != first


def test_dek_store_expires_entries():
    now = [1000.0]
    store = DekStore(ttl=10, clock=lambda: now[0])
    store.set("t1", b"k" * 32)
    store.set("t2", b"k" * 32, ttl=100)

    now[0] = 1011.0
    assert store.get("t1") is None
    assert store.get("t2") is not None

    now[0] = 2000.0
    assert store.purge_expired() == 1
    assert len(store) == 0


def test_dek_store_clear():
    store = DekStore()
    store.set("t1", b"k" * 32)
    store.clear("t1")
    assert store.get("t1") is None
