"""Reload an add-on's manifest and carry the operator's selection forward."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .fetcher import ManifestFetcher, ManifestFetchError
from .manifest import (
    SEARCH,
    apply_selection,
    canonicalize_manifest_url,
    catalog_has_search,
    catalog_key,
    catalog_label,
    catalogs_in_order,
    manifest_hash,
    resource_labels,
)
from .models import AddOn, CatalogSelection, Outcome, ReloadDiff, ReloadResult

logger = logging.getLogger("addonsync.sync.reload")


@dataclass
class Capabilities:
    """Resources and catalogs a manifest offers, in manifest order."""

    resources: List[str] = field(default_factory=list)
    catalogs: List[CatalogSelection] = field(default_factory=list)
    labels: Dict[Tuple[str, str], str] = field(default_factory=dict)

    @classmethod
    def of(cls, manifest: Any) -> "Capabilities":
        resources = resource_labels(manifest)
        catalogs: List[CatalogSelection] = []
        labels: Dict[Tuple[str, str], str] = {}
        searchable = False
        for catalog in catalogs_in_order(manifest):
            has_search = catalog_has_search(catalog)
            searchable = searchable or has_search
            type_, id_ = catalog_key(catalog)
            catalogs.append(CatalogSelection(type=type_, id=id_, search=has_search))
            labels[(type_, id_)] = catalog_label(catalog)
        if searchable and SEARCH not in resources:
            resources.append(SEARCH)
        return cls(resources=resources, catalogs=catalogs, labels=labels)

    @property
    def catalog_keys(self) -> List[Tuple[str, str]]:
        return [c.key for c in self.catalogs]


@dataclass
class ReloadPlan:
    """Selection and derived manifest computed from a fresh manifest."""

    original_manifest: Dict[str, Any]
    manifest: Dict[str, Any]
    manifest_hash: str
    resources: List[str]
    catalogs: List[CatalogSelection]
    diff: ReloadDiff


class ReloadReconciler:
    """Merge a freshly fetched manifest with the stored selection.

    ``reconcile`` is pure; ``reload`` fetches and reconciles but never
    persists anything.
    """

    def __init__(
        self,
        fetcher: Optional[ManifestFetcher] = None,
        auto_select: bool = True,
        local_urls: Optional[Iterable[str]] = None,
    ):
        self.fetcher = fetcher or ManifestFetcher()
        self.auto_select = auto_select
        self._local = {canonicalize_manifest_url(u) for u in (local_urls or []) if u}

    @classmethod
    def from_config(cls, manifests_config: Dict[str, Any], fetcher: Optional[ManifestFetcher] = None) -> "ReloadReconciler":
        return cls(
            fetcher=fetcher or ManifestFetcher.from_config(manifests_config),
            auto_select=bool(manifests_config.get("auto_select", True)),
            local_urls=manifests_config.get("local_urls") or [],
        )

    def is_local(self, url: str) -> bool:
        return canonicalize_manifest_url(url) in self._local

    def reload(self, addon: AddOn) -> ReloadResult:
        if self.is_local(addon.manifest_url):
            logger.info("Skipping reload of local add-on %s", addon.name)
            return ReloadResult(
                addon_id=addon.id,
                name=addon.name,
                outcome=Outcome.SKIPPED,
                reason="Local add-on cannot be reloaded",
            )

        try:
            fresh = self.fetcher.fetch(addon.manifest_url)
        except ManifestFetchError as exc:
            logger.warning("Reload of %s failed: %s", addon.name, exc.reason)
            return ReloadResult(
                addon_id=addon.id,
                name=addon.name,
                outcome=Outcome.FAILED,
                reason=exc.reason,
            )

        plan = self.reconcile(addon, fresh)
        if plan.manifest_hash == addon.manifest_hash and not plan.diff.has_changes:
            logger.debug("Add-on %s unchanged after reload", addon.name)
        return ReloadResult(
            addon_id=addon.id,
            name=addon.name,
            outcome=Outcome.SUCCESS,
            manifest=plan.manifest,
            original_manifest=plan.original_manifest,
            manifest_hash=plan.manifest_hash,
            resources=plan.resources,
            catalogs=plan.catalogs,
            diff=plan.diff,
        )

    def reconcile(self, addon: AddOn, fresh: Dict[str, Any]) -> ReloadPlan:
        current = Capabilities.of(fresh)
        has_history = addon.original_manifest is not None
        # Without a stored original, nothing is treated as new or gone.
        previous = Capabilities.of(addon.original_manifest) if has_history else current

        diff = _diff(previous, current)

        if not has_history and not addon.resources and not addon.catalogs:
            resources = list(current.resources)
            catalogs = list(current.catalogs)
        else:
            resources = self._merge_resources(addon.resources, previous, current)
            catalogs = self._merge_catalogs(addon.catalogs, previous, current)

        filtered = apply_selection(fresh, resources, catalogs)
        return ReloadPlan(
            original_manifest=fresh,
            manifest=filtered,
            manifest_hash=manifest_hash(filtered),
            resources=resources,
            catalogs=catalogs,
            diff=diff,
        )

    def _merge_resources(
        self,
        selected: Iterable[str],
        previous: Capabilities,
        current: Capabilities,
    ) -> List[str]:
        chosen = set(selected or [])
        offered_before = set(previous.resources)
        merged: List[str] = []
        for label in current.resources:
            if label in chosen:
                merged.append(label)
            elif self.auto_select and label not in offered_before:
                merged.append(label)
        return merged

    def _merge_catalogs(
        self,
        selected: Iterable[CatalogSelection],
        previous: Capabilities,
        current: Capabilities,
    ) -> List[CatalogSelection]:
        typed: Dict[Tuple[str, str], bool] = {}
        untyped: Dict[str, bool] = {}
        for item in selected or []:
            if item.type:
                typed[item.key] = item.search
            else:
                untyped[item.id] = item.search
        offered_before: Set[Tuple[str, str]] = set(previous.catalog_keys)

        merged: List[CatalogSelection] = []
        for offered in current.catalogs:
            if offered.key in typed:
                search = typed[offered.key]
            elif offered.id in untyped:
                search = untyped[offered.id]
            elif self.auto_select and offered.key not in offered_before:
                search = offered.search
            else:
                continue
            merged.append(CatalogSelection(type=offered.type, id=offered.id, search=search and offered.search))
        return merged


def _diff(previous: Capabilities, current: Capabilities) -> ReloadDiff:
    before_res, after_res = set(previous.resources), set(current.resources)
    before_cat, after_cat = set(previous.catalog_keys), set(current.catalog_keys)
    return ReloadDiff(
        added_resources=[r for r in current.resources if r not in before_res],
        removed_resources=[r for r in previous.resources if r not in after_res],
        added_catalogs=[current.labels[k] for k in current.catalog_keys if k not in before_cat],
        removed_catalogs=[previous.labels[k] for k in previous.catalog_keys if k not in after_cat],
    )


__all__ = ["Capabilities", "ReloadPlan", "ReloadReconciler"]
