"""Client for the remote add-on collection API."""

from __future__ import annotations

import http.client
import json
import logging
import socket
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger("addonsync.sync.client")

DEFAULT_ENDPOINT = "https://api.strem.io"
DEFAULT_TIMEOUT = 30.0

_AUTH_MARKERS = ("session does not exist", "invalid authkey", "authkey", "unauthorized", "not logged in")


class RemoteAPIError(Exception):
    """Raised when the remote platform rejects or fails a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def is_auth_error(self) -> bool:
        if self.status in (401, 403):
            return True
        text = str(self).lower()
        return any(marker in text for marker in _AUTH_MARKERS)


class StremioClient:
    """Read and replace a user's add-on collection.

    The collection is replaced wholesale on every write; there is no
    partial update.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT,
        opener: Callable[..., Any] = urlopen,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._opener = opener

    @classmethod
    def from_config(cls, remote_config: Dict[str, Any]) -> "StremioClient":
        return cls(
            endpoint=str(remote_config.get("endpoint") or DEFAULT_ENDPOINT),
            timeout=float(remote_config.get("timeout", DEFAULT_TIMEOUT)),
        )

    def get_collection(self, auth_key: str) -> List[Dict[str, Any]]:
        """Return the user's collection as a list of entries."""
        result = self._call("addonCollectionGet", {"type": "AddonCollectionGet", "authKey": auth_key, "update": True})

        if _is_null_collection(result):
            # A null collection cannot be edited remotely until it is reset.
            logger.warning("Remote collection is null; resetting it")
            self.set_collection(auth_key, [])
            result = self._call("addonCollectionGet", {"type": "AddonCollectionGet", "authKey": auth_key, "update": True})

        return _entries_of(result)

    def set_collection(self, auth_key: str, addons: List[Dict[str, Any]]) -> None:
        self._call("addonCollectionSet", {"type": "AddonCollectionSet", "authKey": auth_key, "addons": list(addons)})
        logger.debug("Pushed %d add-ons to remote collection", len(addons))

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        endpoint = f"{self.endpoint}/api/{method}"
        data = json.dumps(payload).encode("utf-8")
        req = Request(
            endpoint,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with self._opener(req, timeout=self.timeout) as resp:
                body = json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            raise RemoteAPIError(f"HTTP error: {e.code} {e.reason}", status=e.code) from e
        except URLError as e:
            raise RemoteAPIError(f"Connection error: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise RemoteAPIError(f"Timed out calling {method}") from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RemoteAPIError(f"Invalid response from {method}") from e
        except (OSError, http.client.HTTPException) as e:
            raise RemoteAPIError(f"Connection error calling {method}: {e!r}") from e

        if not isinstance(body, dict):
            raise RemoteAPIError(f"Unexpected response from {method}")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RemoteAPIError(f"{method} failed: {message}")
        return body.get("result")


def _is_null_collection(result: Any) -> bool:
    return isinstance(result, dict) and "addons" in result and result["addons"] is None


def _entries_of(result: Any) -> List[Dict[str, Any]]:
    if isinstance(result, dict) and "addons" in result:
        return _as_list(result["addons"])
    # Some responses carry the collection itself as the result.
    return _as_list(result)


def _as_list(addons: Any) -> List[Dict[str, Any]]:
    if isinstance(addons, list):
        return [a for a in addons if isinstance(a, dict)]
    if isinstance(addons, dict):
        # Some accounts return the collection keyed by position or id.
        return [a for a in addons.values() if isinstance(a, dict)]
    return []


__all__ = ["RemoteAPIError", "StremioClient"]
