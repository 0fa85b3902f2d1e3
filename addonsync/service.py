"""Orchestrates reloads and syncs across a tenant's groups and users.

Work is strictly sequential: one add-on, one user at a time. A failure on
one item is counted and the batch moves on.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .notify import WebhookNotifier, summarize
from .store import NotFoundError, SQLiteStore
from .sync.client import RemoteAPIError, StremioClient
from .sync.manifest import apply_selection, manifest_hash, sanitize_manifest_url
from .sync.models import (
    AccountSettings,
    AddOn,
    BatchResult,
    CatalogSelection,
    Outcome,
    ReloadResult,
    SyncMode,
    SyncStatus,
    UserSyncResult,
)
from .sync.planner import ProtectionSet, SyncPlan, SyncPlanner
from .sync.reload import Capabilities, ReloadReconciler
from .vault import DecryptionError

logger = logging.getLogger("addonsync.service")


class DuplicateAddonError(ValueError):
    """Raised when an add-on with the same manifest URL already exists."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncService:
    """Ties the store, remote client, reconciler and planner together."""

    def __init__(
        self,
        store: SQLiteStore,
        client: StremioClient,
        reconciler: ReloadReconciler,
        planner: SyncPlanner,
        notifier: Optional[WebhookNotifier] = None,
        protection_config: Optional[Dict[str, Any]] = None,
        sync_defaults: Optional[Dict[str, Any]] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.client = client
        self.reconciler = reconciler
        self.planner = planner
        self.notifier = notifier
        self.protection_config = protection_config or {}
        self.sync_defaults = sync_defaults or {}
        self._now = now

    # -- settings ------------------------------------------------------------

    def settings_for(self, account_id: str) -> AccountSettings:
        """Stored account settings, or the configured defaults for new accounts."""
        try:
            return self.store.get_account_settings(account_id)
        except NotFoundError:
            defaults = self.sync_defaults
            return AccountSettings.from_dict(account_id, {
                "frequency": defaults.get("frequency", "0"),
                "mode": defaults.get("mode", SyncMode.NORMAL.value),
                "safe": defaults.get("safe", True),
                "useCustomFields": defaults.get("use_custom_fields", True),
                "webhookUrl": defaults.get("webhook_url", ""),
            })

    def protection_for(self, protected: Iterable[str], safe: bool) -> ProtectionSet:
        return ProtectionSet.from_config(self.protection_config, protected, safe)

    # -- add-ons ---------------------------------------------------------------

    def create_addon(
        self,
        account_id: str,
        manifest_url: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> AddOn:
        """Fetch a manifest and store a new add-on with everything selected."""
        url = sanitize_manifest_url(manifest_url)
        if self.store.find_addon_by_url(account_id, url) is not None:
            raise DuplicateAddonError(f"An add-on for {url} already exists")

        fetcher = self.reconciler.fetcher
        fetcher.invalidate(url)
        fresh = fetcher.fetch(url)
        offered = Capabilities.of(fresh)
        filtered = apply_selection(fresh, offered.resources, offered.catalogs)
        addon = AddOn(
            id=uuid.uuid4().hex,
            account_id=account_id,
            name=(name or fresh.get("name") or url).strip(),
            manifest_url=url,
            description=description if description is not None else str(fresh.get("description") or ""),
            original_manifest=fresh,
            manifest=filtered,
            manifest_hash=manifest_hash(filtered),
            resources=offered.resources,
            catalogs=offered.catalogs,
            version=_str_or_none(fresh.get("version")),
            logo=_str_or_none(fresh.get("logo")),
            stremio_addon_id=_str_or_none(fresh.get("id")),
        )
        self.store.save_addon(addon)
        if group_id:
            self.store.attach_addon(account_id, group_id, addon.id)
        logger.info("Created add-on %s (%s)", addon.name, addon.id)
        return addon

    def set_addon_selection(
        self,
        account_id: str,
        addon_id: str,
        resources: Iterable[str],
        catalogs: Iterable[Any],
    ) -> AddOn:
        """Replace the operator's selection and recompute the filtered manifest."""
        addon = self.store.get_addon(account_id, addon_id)
        parsed = [c if isinstance(c, CatalogSelection) else CatalogSelection.from_dict(c) for c in catalogs]
        source = addon.original_manifest if addon.original_manifest is not None else addon.manifest
        addon.resources = list(resources)
        addon.catalogs = [c for c in parsed if c is not None]
        addon.manifest = apply_selection(source, addon.resources, addon.catalogs)
        addon.manifest_hash = manifest_hash(addon.manifest)
        self.store.save_addon(addon)
        return addon

    def reload_addon(self, account_id: str, addon_id: str) -> ReloadResult:
        """Reload one add-on; only a successful result is persisted."""
        try:
            addon = self.store.get_addon(account_id, addon_id)
        except DecryptionError as exc:
            return ReloadResult(addon_id=addon_id, name="", outcome=Outcome.FAILED, reason=str(exc))
        result = self.reconciler.reload(addon)
        if result.outcome is Outcome.SUCCESS:
            self._apply_reload(addon, result)
        return result

    def reload_group(self, account_id: str, group_id: str) -> BatchResult:
        self.store.get_group(account_id, group_id)
        batch = BatchResult()
        for addon_id in self.store.group_addon_ids(group_id):
            try:
                result = self.reload_addon(account_id, addon_id)
            except Exception as exc:
                logger.exception("Reload of add-on %s failed", addon_id)
                batch.record(Outcome.FAILED, f"{addon_id}: {exc}")
                continue
            batch.record(result.outcome, f"{result.name or addon_id}: {result.reason}")
            if result.outcome is Outcome.SUCCESS and result.diff.has_changes:
                batch.reload_diffs.append(result)
        logger.info(
            "Reloaded group %s: %d ok, %d failed, %d skipped",
            group_id, batch.succeeded, batch.failed, batch.skipped,
        )
        return batch

    def _apply_reload(self, addon: AddOn, result: ReloadResult) -> None:
        fresh = result.original_manifest or {}
        addon.original_manifest = fresh
        addon.manifest = result.manifest
        addon.manifest_hash = result.manifest_hash
        addon.resources = list(result.resources)
        addon.catalogs = list(result.catalogs)
        addon.version = _str_or_none(fresh.get("version")) or addon.version
        addon.logo = _str_or_none(fresh.get("logo")) or addon.logo
        addon.stremio_addon_id = _str_or_none(fresh.get("id")) or addon.stremio_addon_id
        self.store.save_addon(addon)

    # -- users -----------------------------------------------------------------

    def user_status(self, account_id: str, user_id: str) -> Tuple[SyncStatus, Optional[SyncPlan]]:
        """Externally visible status of a user, with the plan when one was computed."""
        try:
            user = self.store.get_user(account_id, user_id)
        except DecryptionError:
            return SyncStatus.CONNECT, None
        if not user.auth_key:
            return SyncStatus.CONNECT, None
        group_id = self.store.user_group_id(account_id, user_id)
        if group_id is None:
            return SyncStatus.STALE, None

        settings = self.settings_for(account_id)
        try:
            plan = self._plan(account_id, group_id, user, settings)
        except RemoteAPIError as exc:
            if exc.is_auth_error:
                return SyncStatus.CONNECT, None
            logger.warning("Could not read collection for user %s: %s", user.username, exc)
            return SyncStatus.ERROR, None
        except DecryptionError:
            return SyncStatus.ERROR, None
        return plan.status, plan

    def sync_user(
        self,
        account_id: str,
        user_id: str,
        settings: Optional[AccountSettings] = None,
    ) -> UserSyncResult:
        settings = settings or self.settings_for(account_id)
        try:
            user = self.store.get_user(account_id, user_id)
        except DecryptionError:
            logger.warning("Credentials for user %s cannot be decrypted", user_id)
            return UserSyncResult(user_id, Outcome.FAILED, reason="credential unusable")

        if not user.is_active or user.is_expired(self._now()):
            return UserSyncResult(user_id, Outcome.SKIPPED, reason="inactive or expired")
        if not user.auth_key:
            return UserSyncResult(user_id, Outcome.FAILED, reason="not connected")
        # Without a group only the protected entries stay on the remote.
        group_id = self.store.user_group_id(account_id, user_id)

        try:
            plan = self._plan(account_id, group_id, user, settings)
            if plan.synced:
                logger.debug("User %s already synced", user.username)
                return UserSyncResult(user_id, Outcome.SUCCESS, pushed=False, total=len(plan.push))
            self.client.set_collection(user.auth_key, plan.push)
        except RemoteAPIError as exc:
            logger.warning("Sync failed for user %s: %s", user.username, exc)
            return UserSyncResult(user_id, Outcome.FAILED, reason=str(exc))
        except DecryptionError as exc:
            logger.warning("Group %s add-ons cannot be decrypted: %s", group_id, exc)
            return UserSyncResult(user_id, Outcome.FAILED, reason="credential unusable")

        logger.info("Synced user %s (%d add-ons)", user.username, len(plan.push))
        return UserSyncResult(user_id, Outcome.SUCCESS, pushed=True, total=len(plan.push))

    def _plan(self, account_id: str, group_id: Optional[str], user: Any, settings: AccountSettings) -> SyncPlan:
        addons: List[AddOn] = []
        if group_id is not None and self.store.get_group(account_id, group_id).is_active:
            addons = self.store.group_addons(account_id, group_id)
        remote = self.client.get_collection(user.auth_key)
        return self.planner.plan(
            remote,
            addons,
            excluded=user.excluded_addons,
            protection=self.protection_for(user.protected_addons, settings.safe),
            use_custom_fields=settings.use_custom_fields,
        )

    # -- batches ---------------------------------------------------------------

    def sync_group(
        self,
        account_id: str,
        group_id: str,
        settings: Optional[AccountSettings] = None,
    ) -> BatchResult:
        """Sync every user of a group; advanced mode reloads the group's add-ons first."""
        settings = settings or self.settings_for(account_id)
        self.store.get_group(account_id, group_id)
        batch = BatchResult()
        if settings.mode is SyncMode.ADVANCED:
            reloaded = self.reload_group(account_id, group_id)
            batch.reload_diffs.extend(reloaded.reload_diffs)
            batch.errors.extend(reloaded.errors)

        for user_id in self.store.user_ids(account_id, group_id):
            try:
                result = self.sync_user(account_id, user_id, settings)
            except Exception as exc:
                logger.exception("Sync of user %s failed", user_id)
                batch.record(Outcome.FAILED, f"{user_id}: {exc}")
                continue
            batch.record(result.outcome, f"{user_id}: {result.reason}" if result.reason else "")
        return batch

    def sync_account(self, account_id: str, group_id: Optional[str] = None) -> BatchResult:
        """Sync all active groups of a tenant, record the run and notify."""
        settings = self.settings_for(account_id)
        if group_id is not None:
            groups = [self.store.get_group(account_id, group_id)]
        else:
            groups = [g for g in self.store.list_groups(account_id) if g.is_active]

        logger.info(
            "Starting %s sync for account %s (%d groups)",
            settings.mode.value, account_id, len(groups),
        )
        total = BatchResult()
        users = 0
        for group in groups:
            users += len(self.store.user_ids(account_id, group.id))
            total.merge(self.sync_group(account_id, group.id, settings))

        try:
            self.store.record_last_run(account_id)
        except NotFoundError:
            logger.debug("Account %s has no stored settings; last run not recorded", account_id)

        webhook_url = settings.webhook_url or self.sync_defaults.get("webhook_url")
        if self.notifier and webhook_url and groups:
            self.notifier.send(webhook_url, summarize(len(groups), users, settings.mode, total))
        return total


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


__all__ = ["DuplicateAddonError", "SyncService"]
