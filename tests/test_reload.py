"""Tests for the manifest reload reconciler and fetcher."""

from __future__ import annotations

import http.client
import io
import json
from typing import Dict, List
from urllib.error import HTTPError, URLError

import pytest

from addonsync.sync.fetcher import ManifestFetcher, ManifestFetchError
from addonsync.sync.manifest import apply_selection, manifest_hash
from addonsync.sync.models import AddOn, CatalogSelection, Outcome
from addonsync.sync.reload import Capabilities, ReloadReconciler


class _FakeFetcher:
    def __init__(self, manifests: Dict[str, dict], error: str = ""):
        self.manifests = manifests
        self.error = error
        self.calls: List[str] = []

    def fetch(self, url: str, use_cache: bool = True) -> dict:
        self.calls.append(url)
        if self.error:
            raise ManifestFetchError(url, self.error)
        return json.loads(json.dumps(self.manifests[url]))


def _catalog(type_: str, id_: str, search: bool = False) -> dict:
    catalog = {"type": type_, "id": id_, "name": id_.title()}
    if search:
        catalog["extra"] = [{"name": "search"}]
    return catalog


def _manifest(catalogs: List[dict], resources=("catalog", "stream")) -> dict:
    return {"id": "org.example", "name": "Example", "version": "1.0.0", "resources": list(resources), "catalogs": catalogs}


def _addon(original: dict, resources: List[str], catalogs: List[CatalogSelection]) -> AddOn:
    filtered = apply_selection(original, resources, catalogs)
    return AddOn(
        id="a1",
        account_id="acct",
        name="Example",
        manifest_url="https://example.org/manifest.json",
        original_manifest=original,
        manifest=filtered,
        manifest_hash=manifest_hash(filtered),
        resources=list(resources),
        catalogs=list(catalogs),
    )


def test_auto_select_adds_only_new_capabilities():
    previous = _manifest([_catalog("movie", "a"), _catalog("movie", "b")])
    addon = _addon(previous, ["catalog", "stream"], [CatalogSelection("movie", "a")])
    fresh = _manifest([_catalog("movie", "a"), _catalog("movie", "b"), _catalog("movie", "c")])

    plan = ReloadReconciler(fetcher=_FakeFetcher({})).reconcile(addon, fresh)

    assert [c.id for c in plan.catalogs] == ["a", "c"]
    assert plan.diff.added_catalogs == ["C (movie)"]
    assert plan.diff.removed_catalogs == []
    assert plan.manifest_hash == manifest_hash(plan.manifest)
    assert [c["id"] for c in plan.manifest["catalogs"]] == ["a", "c"]


def test_auto_select_disabled_keeps_previous_selection_only():
    previous = _manifest([_catalog("movie", "a"), _catalog("movie", "b")])
    addon = _addon(previous, ["catalog"], [CatalogSelection("movie", "a")])
    fresh = _manifest([_catalog("movie", "a"), _catalog("movie", "c")], resources=("catalog", "stream", "meta"))

    plan = ReloadReconciler(fetcher=_FakeFetcher({}), auto_select=False).reconcile(addon, fresh)

    assert [c.id for c in plan.catalogs] == ["a"]
    assert plan.resources == ["catalog"]
    assert plan.diff.added_resources == ["meta"]
    assert plan.diff.removed_catalogs == ["B (movie)"]


def test_removed_capabilities_drop_out_of_selection():
    previous = _manifest([_catalog("movie", "a"), _catalog("series", "b")], resources=("catalog", "meta"))
    addon = _addon(previous, ["catalog", "meta"], [CatalogSelection("movie", "a"), CatalogSelection("series", "b")])
    fresh = _manifest([_catalog("movie", "a")], resources=("catalog",))

    plan = ReloadReconciler(fetcher=_FakeFetcher({})).reconcile(addon, fresh)

    assert plan.resources == ["catalog"]
    assert [c.key for c in plan.catalogs] == [("movie", "a")]
    assert plan.diff.removed_resources == ["meta"]
    assert plan.diff.removed_catalogs == ["B (series)"]


def test_deselected_items_are_not_reselected():
    previous = _manifest([_catalog("movie", "a"), _catalog("movie", "b")])
    addon = _addon(previous, ["catalog"], [CatalogSelection("movie", "a")])

    plan = ReloadReconciler(fetcher=_FakeFetcher({})).reconcile(addon, previous)

    assert [c.id for c in plan.catalogs] == ["a"]
    assert plan.resources == ["catalog"]
    assert not plan.diff.has_changes


def test_search_toggle_is_carried_forward():
    previous = _manifest([_catalog("movie", "a", search=True)])
    addon = _addon(previous, ["catalog"], [CatalogSelection("movie", "a", search=False)])

    plan = ReloadReconciler(fetcher=_FakeFetcher({})).reconcile(addon, previous)

    assert plan.catalogs == [CatalogSelection("movie", "a", search=False)]
    assert plan.manifest["catalogs"][0]["extra"] == []


def test_synthetic_search_resource_appears_when_catalogs_offer_search():
    fresh = _manifest([_catalog("movie", "a", search=True)])
    offered = Capabilities.of(fresh)
    assert offered.resources == ["catalog", "stream", "search"]
    assert offered.catalogs == [CatalogSelection("movie", "a", search=True)]


def test_missing_history_selects_everything_without_diff():
    fresh = _manifest([_catalog("movie", "a"), _catalog("movie", "b")])
    addon = AddOn(id="a1", account_id="acct", name="Example", manifest_url="https://example.org/manifest.json")

    plan = ReloadReconciler(fetcher=_FakeFetcher({})).reconcile(addon, fresh)

    assert plan.resources == ["catalog", "stream"]
    assert [c.id for c in plan.catalogs] == ["a", "b"]
    assert not plan.diff.has_changes


def test_reload_skips_local_addons():
    fetcher = _FakeFetcher({})
    reconciler = ReloadReconciler(fetcher=fetcher, local_urls=["http://127.0.0.1:11470/local-addon/manifest.json"])
    addon = AddOn(id="l", account_id="acct", name="Local Files", manifest_url="http://127.0.0.1:11470/local-addon/")

    result = reconciler.reload(addon)

    assert result.outcome is Outcome.SKIPPED
    assert fetcher.calls == []


def test_reload_failure_leaves_addon_untouched():
    previous = _manifest([_catalog("movie", "a")])
    addon = _addon(previous, ["catalog"], [CatalogSelection("movie", "a")])
    before = (addon.manifest_hash, list(addon.catalogs), dict(addon.original_manifest))

    result = ReloadReconciler(fetcher=_FakeFetcher({}, error="HTTP 500")).reload(addon)

    assert result.outcome is Outcome.FAILED
    assert result.reason == "HTTP 500"
    assert (addon.manifest_hash, list(addon.catalogs), dict(addon.original_manifest)) == before


def test_reload_success_returns_new_state():
    previous = _manifest([_catalog("movie", "a")])
    fresh = _manifest([_catalog("movie", "a"), _catalog("movie", "n")])
    addon = _addon(previous, ["catalog"], [CatalogSelection("movie", "a")])
    fetcher = _FakeFetcher({addon.manifest_url: fresh})

    result = ReloadReconciler(fetcher=fetcher).reload(addon)

    assert result.outcome is Outcome.SUCCESS
    assert result.original_manifest == fresh
    assert [c.id for c in result.catalogs] == ["a", "n"]
    assert result.diff.added_catalogs == ["N (movie)"]
    assert addon.catalogs == [CatalogSelection("movie", "a")]


class _Response(io.BytesIO):
    status = 200

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def test_fetcher_caches_within_ttl():
    now = [0.0]
    calls: List[str] = []

    def opener(req, timeout):
        calls.append(req.full_url)
        return _Response(json.dumps({"id": "x", "resources": []}).encode("utf-8"))

    fetcher = ManifestFetcher(timeout=3, cache_ttl=60, clock=lambda: now[0], opener=opener)

    first = fetcher.fetch("https://x.io/manifest.json")
    first["id"] = "mutated"
    second = fetcher.fetch("https://x.io/manifest.json")
    assert second["id"] == "x"
    assert len(calls) == 1

    now[0] = 61.0
    fetcher.fetch("https://x.io/manifest.json")
    assert len(calls) == 2


@pytest.mark.parametrize(
    "body, reason",
    [
        (b"not json", "Response is not valid JSON"),
        (b"[1, 2]", "Manifest is not a JSON object"),
    ],
)
def test_fetcher_rejects_bad_documents(body, reason):
    fetcher = ManifestFetcher(opener=lambda req, timeout: _Response(body))
    with pytest.raises(ManifestFetchError) as excinfo:
        fetcher.fetch("https://x.io/manifest.json")
    assert excinfo.value.reason == reason


def test_fetcher_wraps_http_and_network_errors():
    def http_error(req, timeout):
        raise HTTPError(req.full_url, 404, "Not Found", hdrs=None, fp=None)

    def url_error(req, timeout):
        raise URLError("refused")

    with pytest.raises(ManifestFetchError, match="HTTP 404"):
        ManifestFetcher(opener=http_error).fetch("https://x.io/manifest.json")
    with pytest.raises(ManifestFetchError, match="Connection error"):
        ManifestFetcher(opener=url_error).fetch("https://x.io/manifest.json")


def test_fetcher_does_not_cache_failures():
    attempts = []

    def flaky(req, timeout):
        attempts.append(1)
        if len(attempts) == 1:
            raise URLError("down")
        return _Response(b'{"id": "ok"}')

    fetcher = ManifestFetcher(opener=flaky)
    with pytest.raises(ManifestFetchError):
        fetcher.fetch("https://x.io/manifest.json")
    assert fetcher.fetch("https://x.io/manifest.json")["id"] == "ok"


def test_fetcher_wraps_truncated_and_reset_reads():
    class _Truncated(_Response):
        def read(self, *args):
            raise http.client.IncompleteRead(b"")

    class _Reset(_Response):
        def read(self, *args):
            raise ConnectionResetError("reset by peer")

    for response in (_Truncated, _Reset):
        fetcher = ManifestFetcher(opener=lambda req, timeout, r=response: r(b""))
        with pytest.raises(ManifestFetchError) as excinfo:
            fetcher.fetch("https://x.io/manifest.json")
        assert excinfo.value.reason.startswith("Connection error")


def test_fetcher_invalidate_forces_refetch():
    calls: List[str] = []

    def opener(req, timeout):
        calls.append(req.full_url)
        return _Response(b'{"id": "x"}')

    fetcher = ManifestFetcher(cache_ttl=60, clock=lambda: 0.0, opener=opener)
    fetcher.fetch("https://x.io/manifest.json")
    fetcher.fetch("https://y.io/manifest.json")

    fetcher.invalidate("https://x.io/manifest.json")
    fetcher.fetch("https://x.io/manifest.json")
    fetcher.fetch("https://y.io/manifest.json")
    assert len(calls) == 3

    fetcher.invalidate()
    fetcher.fetch("https://y.io/manifest.json")
    assert len(calls) == 4
