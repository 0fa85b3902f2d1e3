"""SQLite persistence for accounts, add-ons, groups and users.

Secrets (add-on URLs and manifests, remote auth keys, protected add-on
lists) are sealed with the tenant's vault before they reach the database.
Add-on URLs are additionally stored as a keyed fingerprint so they can be
looked up without decrypting every row.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from .sync.manifest import canonicalize_manifest_url
from .sync.models import AccountSettings, AddOn, Group, User, parse_catalog_selection
from .vault import CredentialVault

logger = logging.getLogger("addonsync.store")


class NotFoundError(LookupError):
    """Raised when a referenced row does not exist for the tenant."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", value)
        return None


class SQLiteStore:
    """Tenant-scoped storage backed by a single SQLite file."""

    def __init__(self, db_path: Path, vault: CredentialVault):
        self.db_path = db_path
        self.vault = vault
        self._conn: Optional[sqlite3.Connection] = None

    def initialize(self) -> None:
        """Open the database and create tables."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _create_tables(self) -> None:
        cursor = self._conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id TEXT PRIMARY KEY,
                sync_settings TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS addons (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                manifest_url TEXT NOT NULL,
                url_fingerprint TEXT NOT NULL,
                original_manifest TEXT,
                manifest TEXT,
                manifest_hash TEXT,
                resources TEXT NOT NULL DEFAULT '[]',
                catalogs TEXT NOT NULL DEFAULT '[]',
                version TEXT,
                logo TEXT,
                custom_logo TEXT,
                stremio_addon_id TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                updated_at TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_addons_fingerprint ON addons(account_id, url_fingerprint)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS group_addons (
                group_id TEXT NOT NULL,
                addon_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                PRIMARY KEY (group_id, addon_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                username TEXT NOT NULL,
                email TEXT,
                auth_key TEXT,
                expires_at TEXT,
                excluded_addons TEXT NOT NULL DEFAULT '[]',
                protected_addons TEXT,
                group_id TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        self._conn.commit()

    def _require(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Store not initialized")
        return self._conn

    # -- accounts ----------------------------------------------------------

    def save_account_settings(self, settings: AccountSettings) -> None:
        conn = self._require()
        conn.execute(
            """
            INSERT INTO accounts (id, sync_settings) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET sync_settings = excluded.sync_settings
            """,
            (settings.account_id, json.dumps(settings.to_dict())),
        )
        conn.commit()

    def get_account_settings(self, account_id: str) -> AccountSettings:
        row = self._require().execute(
            "SELECT sync_settings FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Account {account_id} not found")
        return AccountSettings.from_dict(account_id, json.loads(row["sync_settings"] or "{}"))

    def list_accounts(self) -> List[AccountSettings]:
        rows = self._require().execute("SELECT id, sync_settings FROM accounts ORDER BY created_at, id").fetchall()
        return [AccountSettings.from_dict(row["id"], json.loads(row["sync_settings"] or "{}")) for row in rows]

    def record_last_run(self, account_id: str, when: Optional[str] = None) -> AccountSettings:
        settings = self.get_account_settings(account_id)
        settings.last_run_at = when or _now()
        self.save_account_settings(settings)
        return settings

    # -- add-ons -----------------------------------------------------------

    def save_addon(self, addon: AddOn) -> None:
        """Insert or fully replace an add-on row."""
        conn = self._require()
        tenant = addon.account_id
        seal = self.vault.encrypt_json
        conn.execute(
            """
            INSERT OR REPLACE INTO addons (
                id, account_id, name, description, manifest_url, url_fingerprint,
                original_manifest, manifest, manifest_hash, resources, catalogs,
                version, logo, custom_logo, stremio_addon_id, is_active, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                addon.id,
                tenant,
                addon.name,
                addon.description,
                self.vault.encrypt(addon.manifest_url, tenant),
                self.url_fingerprint(addon.manifest_url, tenant),
                seal(addon.original_manifest, tenant) if addon.original_manifest is not None else None,
                seal(addon.manifest, tenant) if addon.manifest is not None else None,
                addon.manifest_hash,
                json.dumps(list(addon.resources)),
                json.dumps([c.to_dict() for c in addon.catalogs]),
                addon.version,
                addon.logo,
                addon.custom_logo,
                addon.stremio_addon_id,
                1 if addon.is_active else 0,
                _now(),
            ),
        )
        conn.commit()

    def get_addon(self, account_id: str, addon_id: str) -> AddOn:
        row = self._require().execute(
            "SELECT * FROM addons WHERE id = ? AND account_id = ?", (addon_id, account_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Add-on {addon_id} not found")
        return self._row_to_addon(row)

    def list_addons(self, account_id: str) -> List[AddOn]:
        rows = self._require().execute(
            "SELECT * FROM addons WHERE account_id = ? ORDER BY name", (account_id,)
        ).fetchall()
        return [self._row_to_addon(row) for row in rows]

    def find_addon_by_url(self, account_id: str, url: str) -> Optional[AddOn]:
        row = self._require().execute(
            "SELECT * FROM addons WHERE account_id = ? AND url_fingerprint = ? LIMIT 1",
            (account_id, self.url_fingerprint(url, account_id)),
        ).fetchone()
        return self._row_to_addon(row) if row else None

    def delete_addon(self, account_id: str, addon_id: str) -> None:
        """Delete an add-on and its group memberships."""
        conn = self._require()
        groups = self.groups_with_addon(addon_id)
        cursor = conn.execute(
            "DELETE FROM addons WHERE id = ? AND account_id = ?", (addon_id, account_id)
        )
        if cursor.rowcount == 0:
            conn.rollback()
            raise NotFoundError(f"Add-on {addon_id} not found")
        conn.execute("DELETE FROM group_addons WHERE addon_id = ?", (addon_id,))
        for group_id in groups:
            self._renumber(group_id)
        conn.commit()

    def url_fingerprint(self, url: str, account_id: str) -> str:
        return self.vault.fingerprint(canonicalize_manifest_url(url), account_id)

    def _row_to_addon(self, row: sqlite3.Row) -> AddOn:
        tenant = row["account_id"]
        open_json = self.vault.decrypt_json
        return AddOn(
            id=row["id"],
            account_id=tenant,
            name=row["name"],
            description=row["description"] or "",
            manifest_url=self.vault.decrypt(row["manifest_url"], tenant),
            original_manifest=open_json(row["original_manifest"], tenant) if row["original_manifest"] else None,
            manifest=open_json(row["manifest"], tenant) if row["manifest"] else None,
            manifest_hash=row["manifest_hash"],
            resources=json.loads(row["resources"] or "[]"),
            catalogs=parse_catalog_selection(json.loads(row["catalogs"] or "[]")),
            version=row["version"],
            logo=row["logo"],
            custom_logo=row["custom_logo"],
            stremio_addon_id=row["stremio_addon_id"],
            is_active=bool(row["is_active"]),
        )

    # -- groups ------------------------------------------------------------

    def save_group(self, group: Group) -> None:
        conn = self._require()
        conn.execute(
            "INSERT OR REPLACE INTO groups (id, account_id, name, is_active) VALUES (?, ?, ?, ?)",
            (group.id, group.account_id, group.name, 1 if group.is_active else 0),
        )
        conn.commit()

    def get_group(self, account_id: str, group_id: str) -> Group:
        row = self._require().execute(
            "SELECT * FROM groups WHERE id = ? AND account_id = ?", (group_id, account_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Group {group_id} not found")
        return Group(id=row["id"], account_id=row["account_id"], name=row["name"], is_active=bool(row["is_active"]))

    def list_groups(self, account_id: str) -> List[Group]:
        rows = self._require().execute(
            "SELECT * FROM groups WHERE account_id = ? ORDER BY name", (account_id,)
        ).fetchall()
        return [
            Group(id=r["id"], account_id=r["account_id"], name=r["name"], is_active=bool(r["is_active"]))
            for r in rows
        ]

    def delete_group(self, account_id: str, group_id: str) -> None:
        """Delete a group, its memberships and user assignments; add-ons stay."""
        self.get_group(account_id, group_id)
        conn = self._require()
        conn.execute("DELETE FROM group_addons WHERE group_id = ?", (group_id,))
        conn.execute("UPDATE users SET group_id = NULL WHERE group_id = ?", (group_id,))
        conn.execute("DELETE FROM groups WHERE id = ?", (group_id,))
        conn.commit()

    def attach_addon(self, account_id: str, group_id: str, addon_id: str, position: Optional[int] = None) -> None:
        """Add an add-on to a group at ``position`` (appended when omitted)."""
        self.get_group(account_id, group_id)
        self.get_addon(account_id, addon_id)
        order = self.group_addon_ids(group_id)
        if addon_id in order:
            order.remove(addon_id)
        index = len(order) if position is None else max(0, min(position, len(order)))
        order.insert(index, addon_id)
        self._write_order(group_id, order)

    def detach_addon(self, account_id: str, group_id: str, addon_id: str) -> None:
        self.get_group(account_id, group_id)
        order = self.group_addon_ids(group_id)
        if addon_id not in order:
            raise NotFoundError(f"Add-on {addon_id} is not in group {group_id}")
        order.remove(addon_id)
        self._write_order(group_id, order)

    def reorder_group(self, account_id: str, group_id: str, addon_ids: List[str]) -> List[str]:
        """Apply a new order; unknown ids are ignored, unlisted members keep their relative order at the end."""
        self.get_group(account_id, group_id)
        current = self.group_addon_ids(group_id)
        members = set(current)
        order: List[str] = []
        for addon_id in addon_ids:
            if addon_id in members and addon_id not in order:
                order.append(addon_id)
        order.extend(a for a in current if a not in order)
        self._write_order(group_id, order)
        return order

    def group_addon_ids(self, group_id: str) -> List[str]:
        rows = self._require().execute(
            "SELECT addon_id FROM group_addons WHERE group_id = ? ORDER BY position", (group_id,)
        ).fetchall()
        return [r["addon_id"] for r in rows]

    def group_addons(self, account_id: str, group_id: str) -> List[AddOn]:
        """Add-ons of a group in position order."""
        rows = self._require().execute(
            """
            SELECT a.* FROM group_addons ga
            JOIN addons a ON a.id = ga.addon_id
            WHERE ga.group_id = ? AND a.account_id = ?
            ORDER BY ga.position
            """,
            (group_id, account_id),
        ).fetchall()
        return [self._row_to_addon(row) for row in rows]

    def groups_with_addon(self, addon_id: str) -> List[str]:
        rows = self._require().execute(
            "SELECT group_id FROM group_addons WHERE addon_id = ?", (addon_id,)
        ).fetchall()
        return [r["group_id"] for r in rows]

    def _write_order(self, group_id: str, order: List[str]) -> None:
        conn = self._require()
        conn.execute("DELETE FROM group_addons WHERE group_id = ?", (group_id,))
        conn.executemany(
            "INSERT INTO group_addons (group_id, addon_id, position) VALUES (?, ?, ?)",
            [(group_id, addon_id, index) for index, addon_id in enumerate(order)],
        )
        conn.commit()

    def _renumber(self, group_id: str) -> None:
        order = self.group_addon_ids(group_id)
        self._require().executemany(
            "UPDATE group_addons SET position = ? WHERE group_id = ? AND addon_id = ?",
            [(index, group_id, addon_id) for index, addon_id in enumerate(order)],
        )

    # -- users -------------------------------------------------------------

    def save_user(self, user: User, group_id: Optional[str] = None) -> None:
        """Insert or update a user; an existing group assignment is kept unless ``group_id`` is given."""
        conn = self._require()
        tenant = user.account_id
        conn.execute(
            """
            INSERT INTO users (
                id, account_id, username, email, auth_key, expires_at,
                excluded_addons, protected_addons, group_id, is_active
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                email = excluded.email,
                auth_key = excluded.auth_key,
                expires_at = excluded.expires_at,
                excluded_addons = excluded.excluded_addons,
                protected_addons = excluded.protected_addons,
                group_id = COALESCE(excluded.group_id, users.group_id),
                is_active = excluded.is_active
            """,
            (
                user.id,
                tenant,
                user.username,
                user.email,
                self.vault.encrypt(user.auth_key, tenant) if user.auth_key else None,
                user.expires_at.isoformat() if user.expires_at else None,
                json.dumps(list(user.excluded_addons)),
                self.vault.encrypt_json(list(user.protected_addons), tenant),
                group_id,
                1 if user.is_active else 0,
            ),
        )
        conn.commit()

    def get_user(self, account_id: str, user_id: str) -> User:
        """Load a user; raises ``DecryptionError`` when its secrets cannot be opened."""
        row = self._require().execute(
            "SELECT * FROM users WHERE id = ? AND account_id = ?", (user_id, account_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return self._row_to_user(row)

    def user_ids(self, account_id: str, group_id: Optional[str] = None) -> List[str]:
        if group_id is None:
            rows = self._require().execute(
                "SELECT id FROM users WHERE account_id = ? ORDER BY username", (account_id,)
            ).fetchall()
        else:
            rows = self._require().execute(
                "SELECT id FROM users WHERE account_id = ? AND group_id = ? ORDER BY username",
                (account_id, group_id),
            ).fetchall()
        return [r["id"] for r in rows]

    def user_group_id(self, account_id: str, user_id: str) -> Optional[str]:
        row = self._require().execute(
            "SELECT group_id FROM users WHERE id = ? AND account_id = ?", (user_id, account_id)
        ).fetchone()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return row["group_id"]

    def assign_user(self, account_id: str, user_id: str, group_id: Optional[str]) -> None:
        """Put a user in a group (or none); a user belongs to at most one group."""
        if group_id is not None:
            self.get_group(account_id, group_id)
        conn = self._require()
        cursor = conn.execute(
            "UPDATE users SET group_id = ? WHERE id = ? AND account_id = ?", (group_id, user_id, account_id)
        )
        if cursor.rowcount == 0:
            conn.rollback()
            raise NotFoundError(f"User {user_id} not found")
        conn.commit()

    def _row_to_user(self, row: sqlite3.Row) -> User:
        tenant = row["account_id"]
        protected: List[Any] = []
        if row["protected_addons"]:
            opened = self.vault.decrypt_json(row["protected_addons"], tenant)
            protected = opened if isinstance(opened, list) else []
        return User(
            id=row["id"],
            account_id=tenant,
            username=row["username"],
            email=row["email"],
            auth_key=self.vault.decrypt(row["auth_key"], tenant) if row["auth_key"] else None,
            expires_at=_parse_time(row["expires_at"]),
            excluded_addons=json.loads(row["excluded_addons"] or "[]"),
            protected_addons=[str(p) for p in protected],
            is_active=bool(row["is_active"]),
        )


__all__ = ["NotFoundError", "SQLiteStore"]
