"""Data structures shared by the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Outcome(str, Enum):
    """Typed result of a reload or sync attempt."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """Externally visible per-user status."""
    CONNECT = "connect"
    STALE = "stale"
    SYNCED = "synced"
    UNSYNCED = "unsynced"
    ERROR = "error"


class SyncMode(str, Enum):
    NORMAL = "normal"
    ADVANCED = "advanced"  # reload group add-ons before syncing users


@dataclass(frozen=True)
class CatalogSelection:
    """Operator's choice for one catalog: identity plus search toggle."""

    type: str
    id: str
    search: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "search": self.search}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CatalogSelection"]:
        if isinstance(data, str):
            # Legacy rows stored bare catalog ids.
            return cls(type="", id=data) if data else None
        if not isinstance(data, dict):
            return None
        catalog_id = data.get("id")
        if not catalog_id:
            return None
        search = data.get("search", data.get("searchEnabled", False))
        return cls(type=str(data.get("type") or ""), id=str(catalog_id), search=bool(search))


def parse_catalog_selection(raw: Any) -> List[CatalogSelection]:
    if not isinstance(raw, list):
        return []
    parsed = (CatalogSelection.from_dict(item) for item in raw)
    return [item for item in parsed if item is not None]


@dataclass
class AddOn:
    """An add-on as curated by an operator."""

    id: str
    account_id: str
    name: str
    manifest_url: str
    description: str = ""
    original_manifest: Optional[Dict[str, Any]] = None
    manifest: Optional[Dict[str, Any]] = None
    manifest_hash: Optional[str] = None
    resources: List[str] = field(default_factory=list)
    catalogs: List[CatalogSelection] = field(default_factory=list)
    version: Optional[str] = None
    logo: Optional[str] = None
    custom_logo: Optional[str] = None
    stremio_addon_id: Optional[str] = None
    is_active: bool = True

    def to_remote(self, use_custom_fields: bool = True) -> Dict[str, Any]:
        """Render the add-on in the remote collection shape."""
        manifest = dict(self.manifest or self.original_manifest or {})
        manifest.pop("manifestUrl", None)
        if use_custom_fields:
            if self.name:
                manifest["name"] = self.name
            if self.description is not None and self.description != "":
                manifest["description"] = self.description
        if self.custom_logo and self.custom_logo.strip():
            manifest["logo"] = self.custom_logo.strip()
        return {
            "transportUrl": self.manifest_url,
            "transportName": "",
            "manifest": manifest,
        }


@dataclass
class Group:
    id: str
    account_id: str
    name: str
    is_active: bool = True


@dataclass
class User:
    """One remote-platform identity managed by a tenant."""

    id: str
    account_id: str
    username: str
    auth_key: Optional[str] = None
    email: Optional[str] = None
    expires_at: Optional[datetime] = None
    excluded_addons: List[str] = field(default_factory=list)
    protected_addons: List[str] = field(default_factory=list)
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(timezone.utc)
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return current >= expires


@dataclass
class AccountSettings:
    """Per-tenant sync configuration."""

    account_id: str
    enabled: bool = True
    frequency: str = "0"
    mode: SyncMode = SyncMode.NORMAL
    safe: bool = True
    use_custom_fields: bool = True
    webhook_url: str = ""
    last_run_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "frequency": self.frequency,
            "mode": self.mode.value,
            "safe": self.safe,
            "useCustomFields": self.use_custom_fields,
            "webhookUrl": self.webhook_url,
            "lastRunAt": self.last_run_at,
        }

    @classmethod
    def from_dict(cls, account_id: str, data: Optional[Dict[str, Any]]) -> "AccountSettings":
        raw = data or {}
        mode = SyncMode.ADVANCED if raw.get("mode") == SyncMode.ADVANCED.value else SyncMode.NORMAL
        if isinstance(raw.get("safe"), bool):
            safe = raw["safe"]
        else:
            safe = not bool(raw.get("unsafe", False))
        if isinstance(raw.get("useCustomFields"), bool):
            use_custom_fields = raw["useCustomFields"]
        else:
            # Older rows used useCustomNames.
            use_custom_fields = bool(raw.get("useCustomNames", True))
        return cls(
            account_id=account_id,
            enabled=raw.get("enabled", True) is not False,
            frequency=str(raw.get("frequency") or "0").strip(),
            mode=mode,
            safe=safe,
            use_custom_fields=use_custom_fields,
            webhook_url=str(raw.get("webhookUrl") or ""),
            last_run_at=raw.get("lastRunAt"),
        )


@dataclass
class ReloadDiff:
    """Capabilities that appeared or disappeared in a manifest reload."""

    added_resources: List[str] = field(default_factory=list)
    removed_resources: List[str] = field(default_factory=list)
    added_catalogs: List[str] = field(default_factory=list)
    removed_catalogs: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.added_resources or self.removed_resources
            or self.added_catalogs or self.removed_catalogs
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "addedResources": list(self.added_resources),
            "removedResources": list(self.removed_resources),
            "addedCatalogs": list(self.added_catalogs),
            "removedCatalogs": list(self.removed_catalogs),
        }


@dataclass
class ReloadResult:
    """Outcome of reloading one add-on. Nothing is persisted by the reconciler."""

    addon_id: str
    name: str
    outcome: Outcome
    manifest: Optional[Dict[str, Any]] = None
    original_manifest: Optional[Dict[str, Any]] = None
    manifest_hash: Optional[str] = None
    resources: List[str] = field(default_factory=list)
    catalogs: List[CatalogSelection] = field(default_factory=list)
    diff: ReloadDiff = field(default_factory=ReloadDiff)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.addon_id,
            "name": self.name,
            "outcome": self.outcome.value,
            "manifestHash": self.manifest_hash,
            "resources": list(self.resources),
            "catalogs": [c.to_dict() for c in self.catalogs],
            "diffs": self.diff.to_dict(),
            "reason": self.reason,
        }


@dataclass
class UserSyncResult:
    user_id: str
    outcome: Outcome
    pushed: bool = False
    total: int = 0
    reason: str = ""


@dataclass
class BatchResult:
    """Aggregate counts for a batch of reloads or syncs."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    reload_diffs: List[ReloadResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def record(self, outcome: Outcome, reason: str = "") -> None:
        if outcome is Outcome.SUCCESS:
            self.succeeded += 1
        elif outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            if reason:
                self.errors.append(reason)

    def merge(self, other: "BatchResult") -> None:
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.reload_diffs.extend(other.reload_diffs)
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "errors": list(self.errors),
        }


__all__ = [
    "AccountSettings",
    "AddOn",
    "BatchResult",
    "CatalogSelection",
    "Group",
    "Outcome",
    "ReloadDiff",
    "ReloadResult",
    "SyncMode",
    "SyncStatus",
    "User",
    "UserSyncResult",
    "parse_catalog_selection",
]
