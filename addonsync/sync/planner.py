"""Compare a user's remote collection with the desired group collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from .manifest import (
    canonicalize_manifest_url,
    manifest_hash,
    remote_manifest_id,
    remote_name,
    remote_url,
)
from .models import AddOn, SyncStatus

logger = logging.getLogger("addonsync.sync.planner")

RemoteEntry = Dict[str, Any]


def _normalize_name(name: Optional[str]) -> str:
    return " ".join(str(name or "").split()).lower()


def _looks_like_url(value: str) -> bool:
    return "://" in value or value.startswith("@") or "/" in value


@dataclass
class ProtectionSet:
    """Names, manifest URLs and manifest ids of entries that must not be touched."""

    names: Set[str] = field(default_factory=set)
    urls: Set[str] = field(default_factory=set)
    ids: Set[str] = field(default_factory=set)

    @classmethod
    def build(
        cls,
        user_protected: Iterable[str] = (),
        safe: bool = True,
        default_names: Iterable[str] = (),
        default_ids: Iterable[str] = (),
        default_urls: Iterable[str] = (),
    ) -> "ProtectionSet":
        """User protections always apply; platform defaults only in safe mode."""
        protection = cls()
        for value in user_protected or []:
            if not value:
                continue
            value = str(value).strip()
            if _looks_like_url(value):
                protection.urls.add(canonicalize_manifest_url(value))
            else:
                protection.names.add(_normalize_name(value))
        if safe:
            protection.names.update(_normalize_name(n) for n in default_names if n)
            protection.ids.update(str(i) for i in default_ids if i)
            protection.urls.update(canonicalize_manifest_url(u) for u in default_urls if u)
        return protection

    @classmethod
    def from_config(cls, protection_config: Dict[str, Any], user_protected: Iterable[str], safe: bool) -> "ProtectionSet":
        return cls.build(
            user_protected,
            safe=safe,
            default_names=protection_config.get("names") or [],
            default_ids=protection_config.get("ids") or [],
            default_urls=protection_config.get("manifest_urls") or [],
        )

    def covers(self, entry: RemoteEntry) -> bool:
        if canonicalize_manifest_url(remote_url(entry)) in self.urls:
            return True
        if self.names and _normalize_name(remote_name(entry)) in self.names:
            return True
        manifest_id = remote_manifest_id(entry)
        return bool(manifest_id) and manifest_id in self.ids


@dataclass
class SyncPlan:
    """What a sync would do for one user."""

    desired: List[RemoteEntry]
    missing: List[RemoteEntry]
    extra: List[RemoteEntry]
    drifted: List[RemoteEntry]
    order_matches: bool
    push: List[RemoteEntry]

    @property
    def synced(self) -> bool:
        return not self.missing and not self.extra and not self.drifted and self.order_matches

    @property
    def status(self) -> SyncStatus:
        return SyncStatus.SYNCED if self.synced else SyncStatus.UNSYNCED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "isSynced": self.synced,
            "orderMatches": self.order_matches,
            "missing": [remote_url(e) for e in self.missing],
            "extra": [remote_url(e) for e in self.extra],
            "drifted": [remote_url(e) for e in self.drifted],
            "total": len(self.push),
        }


class SyncPlanner:
    """Compute the desired collection and the list to push for a user."""

    def __init__(self, use_custom_fields: bool = True, compare_manifests: bool = False):
        self.use_custom_fields = use_custom_fields
        self.compare_manifests = compare_manifests

    def desired_entries(
        self,
        group_addons: Sequence[AddOn],
        excluded: Iterable[str] = (),
        use_custom_fields: Optional[bool] = None,
    ) -> List[RemoteEntry]:
        """Group add-ons minus exclusions, in position order, one per canonical URL."""
        custom = self.use_custom_fields if use_custom_fields is None else use_custom_fields
        excluded_ids = {str(x) for x in (excluded or [])}
        entries: List[RemoteEntry] = []
        seen: Set[str] = set()
        for addon in group_addons:
            if not addon.is_active or addon.id in excluded_ids:
                continue
            key = canonicalize_manifest_url(addon.manifest_url)
            if not key:
                logger.warning("Add-on %s has no manifest URL; leaving it out", addon.id)
                continue
            if key in seen:
                continue
            seen.add(key)
            entries.append(addon.to_remote(custom))
        return entries

    def plan(
        self,
        remote: Sequence[RemoteEntry],
        group_addons: Sequence[AddOn],
        excluded: Iterable[str] = (),
        protection: Optional[ProtectionSet] = None,
        use_custom_fields: Optional[bool] = None,
    ) -> SyncPlan:
        protection = protection or ProtectionSet()
        desired = self.desired_entries(group_addons, excluded, use_custom_fields)
        desired_keys = [canonicalize_manifest_url(remote_url(e)) for e in desired]
        desired_set = set(desired_keys)

        remote_entries = [e for e in (remote or []) if isinstance(e, dict)]
        remote_by_key: Dict[str, RemoteEntry] = {}
        locked: Set[str] = set()
        for entry in remote_entries:
            key = canonicalize_manifest_url(remote_url(entry))
            remote_by_key.setdefault(key, entry)
            if protection.covers(entry):
                locked.add(key)

        missing = [e for e, k in zip(desired, desired_keys) if k not in remote_by_key]
        extra = [
            e for e in remote_entries
            if canonicalize_manifest_url(remote_url(e)) not in desired_set and not protection.covers(e)
        ]

        expected_order = [k for k in desired_keys if k not in locked]
        actual_order = [
            canonicalize_manifest_url(remote_url(e)) for e in remote_entries
            if not protection.covers(e) and canonicalize_manifest_url(remote_url(e)) in desired_set
        ]
        order_matches = expected_order == actual_order

        drifted: List[RemoteEntry] = []
        if self.compare_manifests:
            for entry, key in zip(desired, desired_keys):
                live = remote_by_key.get(key)
                if live is None or key in locked:
                    continue
                if manifest_hash(entry.get("manifest")) != manifest_hash(live.get("manifest")):
                    drifted.append(entry)

        push = self._merge_locked(remote_entries, desired, desired_keys, protection)
        return SyncPlan(
            desired=desired,
            missing=missing,
            extra=extra,
            drifted=drifted,
            order_matches=order_matches,
            push=push,
        )

    @staticmethod
    def _merge_locked(
        remote_entries: Sequence[RemoteEntry],
        desired: Sequence[RemoteEntry],
        desired_keys: Sequence[str],
        protection: ProtectionSet,
    ) -> List[RemoteEntry]:
        """Protected remote entries keep their index; desired entries fill the rest."""
        slots: List[Optional[RemoteEntry]] = [None] * len(remote_entries)
        locked_keys: Set[str] = set()
        for index, entry in enumerate(remote_entries):
            if not protection.covers(entry):
                continue
            key = canonicalize_manifest_url(remote_url(entry))
            if key in locked_keys:
                continue
            locked_keys.add(key)
            slots[index] = entry

        fillers = [e for e, k in zip(desired, desired_keys) if k not in locked_keys]
        pending = iter(fillers)
        placed = 0
        for index, slot in enumerate(slots):
            if slot is not None:
                continue
            nxt = next(pending, None)
            if nxt is None:
                break
            slots[index] = nxt
            placed += 1

        merged = [s for s in slots if s is not None]
        merged.extend(fillers[placed:])
        return merged


__all__ = ["ProtectionSet", "SyncPlan", "SyncPlanner"]
