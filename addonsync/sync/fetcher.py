"""HTTP retrieval of add-on manifests with a short-lived cache."""

from __future__ import annotations

import copy
import http.client
import json
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger("addonsync.sync.fetcher")

DEFAULT_TIMEOUT = 15.0
DEFAULT_CACHE_TTL = 60.0
USER_AGENT = "addonsync/0.1"


class ManifestFetchError(Exception):
    """Raised when a manifest cannot be retrieved or is not a JSON object."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason


@dataclass
class _CacheEntry:
    manifest: Dict[str, Any]
    expires_at: float


class ManifestFetcher:
    """Fetch manifests over HTTP.

    Successful responses are cached per URL for ``cache_ttl`` seconds so a
    bulk reload of add-ons sharing a source only hits the network once.
    Failures are never cached.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        opener: Callable[..., Any] = urlopen,
    ):
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._opener = opener
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, manifests_config: Dict[str, Any]) -> "ManifestFetcher":
        return cls(
            timeout=float(manifests_config.get("fetch_timeout", DEFAULT_TIMEOUT)),
            cache_ttl=float(manifests_config.get("cache_ttl", DEFAULT_CACHE_TTL)),
        )

    def fetch(self, url: str, use_cache: bool = True) -> Dict[str, Any]:
        """Return the manifest at ``url`` as a dict (a private copy)."""
        if not url:
            raise ManifestFetchError(url, "Manifest URL is empty")

        if use_cache:
            cached = self._cached(url)
            if cached is not None:
                logger.debug("Manifest cache hit for %s", url)
                return copy.deepcopy(cached)

        manifest = self._download(url)
        if self.cache_ttl > 0:
            with self._lock:
                self._cache[url] = _CacheEntry(manifest, self._clock() + self.cache_ttl)
        return copy.deepcopy(manifest)

    def invalidate(self, url: Optional[str] = None) -> None:
        with self._lock:
            if url is None:
                self._cache.clear()
            else:
                self._cache.pop(url, None)

    def _cached(self, url: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._cache.get(url)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._cache[url]
                return None
            return entry.manifest

    def _download(self, url: str) -> Dict[str, Any]:
        req = Request(
            url,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            method="GET",
        )
        try:
            with self._opener(req, timeout=self.timeout) as resp:
                status = getattr(resp, "status", 200)
                if status < 200 or status >= 300:
                    raise ManifestFetchError(url, f"HTTP {status}")
                body = resp.read()
        except HTTPError as e:
            raise ManifestFetchError(url, f"HTTP {e.code} {e.reason}") from e
        except URLError as e:
            raise ManifestFetchError(url, f"Connection error: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise ManifestFetchError(url, "Timed out") from e
        except (OSError, http.client.HTTPException) as e:
            raise ManifestFetchError(url, f"Connection error: {e}") from e

        try:
            document = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestFetchError(url, "Response is not valid JSON") from e

        if not isinstance(document, dict):
            raise ManifestFetchError(url, "Manifest is not a JSON object")

        logger.debug("Fetched manifest %s from %s", document.get("id"), url)
        return document


__all__ = ["ManifestFetcher", "ManifestFetchError"]
