"""Manifest filtering, hashing and URL canonicalization.

Every function here is pure: inputs are never mutated, and malformed
sections (a ``resources`` or ``catalogs`` value that is not a list) are
treated as empty instead of raising.
"""

from __future__ import annotations

import copy
import hashlib
import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .models import CatalogSelection


SEARCH = "search"
CATALOG_RESOURCE = "catalog"
ADDON_CATALOG_RESOURCE = "addon_catalog"

CatalogKey = Tuple[str, str]
SelectionItem = Union[str, Mapping[str, Any], CatalogSelection]


# -- small accessors -------------------------------------------------------

def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def resource_label(entry: Any) -> Optional[str]:
    """Label of a resource entry: the string itself, else its name or type."""
    if isinstance(entry, str):
        return entry or None
    if isinstance(entry, Mapping):
        label = entry.get("name") or entry.get("type")
        return str(label) if label else None
    return None


def resource_labels(manifest: Any) -> List[str]:
    """Ordered, de-duplicated resource labels of a manifest."""
    if not isinstance(manifest, Mapping):
        return []
    seen: Set[str] = set()
    labels: List[str] = []
    for entry in _list(manifest.get("resources")):
        label = resource_label(entry)
        if label and label not in seen:
            seen.add(label)
            labels.append(label)
    return labels


def catalogs_of(manifest: Any) -> List[Dict[str, Any]]:
    if not isinstance(manifest, Mapping):
        return []
    return [c for c in _list(manifest.get("catalogs")) if isinstance(c, Mapping) and c.get("id")]


def catalog_key(catalog: Mapping[str, Any]) -> CatalogKey:
    return (str(catalog.get("type") or ""), str(catalog.get("id") or ""))


def catalog_label(catalog: Mapping[str, Any]) -> str:
    """Human label used in diffs: ``name (type)``."""
    name = catalog.get("name") or catalog.get("id") or ""
    return f"{name} ({catalog.get('type') or ''})"


def _extra_name(extra: Any) -> Optional[str]:
    if isinstance(extra, str):
        return extra
    if isinstance(extra, Mapping):
        name = extra.get("name")
        return str(name) if name is not None else None
    return None


def catalog_has_search(catalog: Mapping[str, Any]) -> bool:
    if any(_extra_name(e) == SEARCH for e in _list(catalog.get("extra"))):
        return True
    return SEARCH in _list(catalog.get("extraSupported"))


def strip_search(catalog: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of the catalog without its search capability."""
    stripped = copy.deepcopy(dict(catalog))
    if isinstance(stripped.get("extra"), list):
        stripped["extra"] = [e for e in stripped["extra"] if _extra_name(e) != SEARCH]
    for key in ("extraSupported", "extraRequired"):
        if isinstance(stripped.get(key), list):
            stripped[key] = [e for e in stripped[key] if e != SEARCH]
    return stripped


# -- filters ---------------------------------------------------------------

def filter_by_resources(manifest: Any, selected: Iterable[Any]) -> Dict[str, Any]:
    """Keep only the selected resources.

    ``catalogs`` is cleared unless ``catalog`` is selected and
    ``addonCatalogs`` unless ``addon_catalog`` is.
    """
    if not isinstance(manifest, Mapping):
        return {}
    names = {label for label in (resource_label(r) for r in (selected or [])) if label}
    clone = copy.deepcopy(dict(manifest))
    clone["resources"] = [r for r in _list(clone.get("resources")) if resource_label(r) in names]
    if CATALOG_RESOURCE not in names:
        clone["catalogs"] = []
    if ADDON_CATALOG_RESOURCE not in names:
        clone["addonCatalogs"] = []
    return clone


def _selection_index(selection: Iterable[SelectionItem]) -> Tuple[Dict[CatalogKey, bool], Dict[str, bool]]:
    """Index a catalog selection by (type, id); untyped entries by id only."""
    typed: Dict[CatalogKey, bool] = {}
    untyped: Dict[str, bool] = {}
    for item in selection or []:
        if not isinstance(item, CatalogSelection):
            item = CatalogSelection.from_dict(dict(item) if isinstance(item, Mapping) else item)
            if item is None:
                continue
        if item.type:
            typed[item.key] = item.search
        else:
            untyped[item.id] = item.search
    return typed, untyped


def filter_by_catalogs(manifest: Any, selection: Iterable[SelectionItem]) -> Dict[str, Any]:
    """Keep only selected catalogs; strip search where it is not enabled."""
    if not isinstance(manifest, Mapping):
        return {}
    typed, untyped = _selection_index(selection)
    clone = copy.deepcopy(dict(manifest))
    kept: List[Any] = []
    for catalog in _list(clone.get("catalogs")):
        if not isinstance(catalog, Mapping):
            continue
        key = catalog_key(catalog)
        if key in typed:
            search_enabled = typed[key]
        elif key[1] in untyped:
            search_enabled = untyped[key[1]]
        else:
            continue
        if catalog_has_search(catalog) and not search_enabled:
            # Search-only catalogs stay listed; only the capability goes.
            catalog = strip_search(catalog)
        kept.append(catalog)
    clone["catalogs"] = kept
    return clone


def apply_selection(
    manifest: Any,
    resources: Iterable[Any],
    catalogs: Iterable[SelectionItem],
) -> Dict[str, Any]:
    """Derive the filtered manifest from an original manifest and a selection."""
    if not isinstance(manifest, Mapping):
        return {}
    return filter_by_catalogs(filter_by_resources(manifest, resources), catalogs)


# -- hashing ---------------------------------------------------------------

def _sorted_strings(values: Any) -> List[str]:
    return sorted(str(v) for v in _list(values))


def normalize_manifest(manifest: Any) -> Dict[str, Any]:
    """Deterministic projection of the sync-relevant manifest fields."""
    if not isinstance(manifest, Mapping):
        return {}
    picked: Dict[str, Any] = {}
    for key in ("id", "name", "version"):
        if manifest.get(key) is not None:
            picked[key] = str(manifest[key])

    if isinstance(manifest.get("types"), list):
        picked["types"] = _sorted_strings(manifest["types"])

    if isinstance(manifest.get("resources"), list):
        picked["resources"] = sorted(
            label for label in (resource_label(r) for r in manifest["resources"]) if label
        )

    catalogs = []
    for catalog in _list(manifest.get("catalogs")):
        if not isinstance(catalog, Mapping):
            continue
        entry: Dict[str, Any] = {
            "id": catalog.get("id") or "",
            "name": catalog.get("name") or "",
            "type": catalog.get("type") or "",
        }
        if isinstance(catalog.get("genres"), list):
            entry["genres"] = _sorted_strings(catalog["genres"])
        if isinstance(catalog.get("extra"), list):
            extras = [e if isinstance(e, Mapping) else {"name": str(e)} for e in catalog["extra"]]
            entry["extra"] = sorted(extras, key=lambda e: str(e.get("name") or ""))
        for key in ("extraSupported", "extraRequired"):
            if isinstance(catalog.get(key), list):
                entry[key] = _sorted_strings(catalog[key])
        catalogs.append(entry)
    if catalogs:
        picked["catalogs"] = catalogs

    if isinstance(manifest.get("behaviorHints"), Mapping):
        picked["behaviorHints"] = dict(manifest["behaviorHints"])

    if isinstance(manifest.get("idPrefixes"), list):
        picked["idPrefixes"] = _sorted_strings(manifest["idPrefixes"])

    if isinstance(manifest.get("addonCatalogs"), list):
        addon_catalogs = [
            {"id": ac.get("id") or "", "name": ac.get("name") or "", "type": ac.get("type") or ""}
            for ac in manifest["addonCatalogs"]
            if isinstance(ac, Mapping)
        ]
        picked["addonCatalogs"] = sorted(addon_catalogs, key=lambda ac: str(ac["id"]) + str(ac["type"]))

    return picked


def manifest_hash(manifest: Any) -> str:
    """SHA-256 of the normalized manifest; for change detection only."""
    encoded = json.dumps(
        normalize_manifest(manifest),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# -- URLs --------------------------------------------------------------------

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_MANIFEST_SUFFIX_RE = re.compile(r"/manifest\.json$", re.IGNORECASE)


def sanitize_manifest_url(url: Optional[str]) -> str:
    """User-facing form of a pasted URL: no leading ``@``, ``stremio://`` as https."""
    if not url:
        return ""
    cleaned = str(url).strip().lstrip("@")
    if cleaned.lower().startswith("stremio://"):
        cleaned = "https://" + cleaned[len("stremio://"):]
    return cleaned


def canonicalize_manifest_url(url: Optional[str]) -> str:
    """Comparison key for manifest URLs.

    Scheme, case, query, fragment, trailing slashes and a trailing
    ``manifest.json`` do not affect the key.
    """
    if not url:
        return ""
    value = re.sub(r"\s+", "", str(url)).lstrip("@")
    value = _SCHEME_RE.sub("", value).lower()
    value = value.split("?", 1)[0].split("#", 1)[0]
    value = value.rstrip("/")
    value = _MANIFEST_SUFFIX_RE.sub("", value)
    return value.rstrip("/")


def remote_url(entry: Any) -> str:
    """Source URL of a remote collection entry or desired entry."""
    if not isinstance(entry, Mapping):
        return ""
    return str(entry.get("transportUrl") or entry.get("manifestUrl") or entry.get("url") or "")


def remote_name(entry: Any) -> str:
    if not isinstance(entry, Mapping):
        return ""
    manifest = entry.get("manifest")
    name = None
    if isinstance(manifest, Mapping):
        name = manifest.get("name")
    return str(name or entry.get("transportName") or entry.get("name") or "")


def remote_manifest_id(entry: Any) -> str:
    if not isinstance(entry, Mapping):
        return ""
    manifest = entry.get("manifest")
    if isinstance(manifest, Mapping) and manifest.get("id"):
        return str(manifest["id"])
    return ""


def catalogs_in_order(manifest: Any) -> Sequence[Dict[str, Any]]:
    """Catalogs de-duplicated by (type, id), first occurrence wins."""
    seen: Set[CatalogKey] = set()
    ordered: List[Dict[str, Any]] = []
    for catalog in catalogs_of(manifest):
        key = catalog_key(catalog)
        if key not in seen:
            seen.add(key)
            ordered.append(catalog)
    return ordered


__all__ = [
    "apply_selection",
    "canonicalize_manifest_url",
    "catalog_has_search",
    "catalog_key",
    "catalog_label",
    "catalogs_in_order",
    "filter_by_catalogs",
    "filter_by_resources",
    "manifest_hash",
    "normalize_manifest",
    "remote_manifest_id",
    "remote_name",
    "remote_url",
    "resource_label",
    "resource_labels",
    "sanitize_manifest_url",
    "strip_search",
]
