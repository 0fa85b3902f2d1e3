"""Add-on reconciliation engine."""

from __future__ import annotations

from .models import (
    AccountSettings,
    AddOn,
    BatchResult,
    CatalogSelection,
    Group,
    Outcome,
    ReloadDiff,
    ReloadResult,
    SyncMode,
    SyncStatus,
    User,
    UserSyncResult,
)
from .manifest import (
    apply_selection,
    canonicalize_manifest_url,
    filter_by_catalogs,
    filter_by_resources,
    manifest_hash,
    sanitize_manifest_url,
)
from .fetcher import ManifestFetcher, ManifestFetchError
from .reload import ReloadPlan, ReloadReconciler
from .planner import ProtectionSet, SyncPlan, SyncPlanner
from .client import RemoteAPIError, StremioClient

__all__ = [
    # Models
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
    # Manifest
    "apply_selection",
    "canonicalize_manifest_url",
    "filter_by_catalogs",
    "filter_by_resources",
    "manifest_hash",
    "sanitize_manifest_url",
    # Fetch / reload
    "ManifestFetcher",
    "ManifestFetchError",
    "ReloadPlan",
    "ReloadReconciler",
    # Planner
    "ProtectionSet",
    "SyncPlan",
    "SyncPlanner",
    # Client
    "RemoteAPIError",
    "StremioClient",
]
