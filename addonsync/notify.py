"""Webhook notifications for completed sync runs."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .sync.models import BatchResult, ReloadResult, SyncMode

logger = logging.getLogger("addonsync.notify")


def summarize(
    groups: int,
    users: int,
    mode: SyncMode,
    result: BatchResult,
    source: str = "Auto-Sync",
) -> Dict[str, Any]:
    """Build the JSON payload describing one sync run."""
    diffs = [r for r in result.reload_diffs if r.diff.has_changes]
    return {
        "content": _render_text(groups, users, mode, result, diffs, source),
        "source": source,
        "groups": groups,
        "users": users,
        "mode": mode.value,
        "result": result.to_dict(),
        "diffs": [r.to_dict() for r in diffs],
    }


def _render_text(
    groups: int,
    users: int,
    mode: SyncMode,
    result: BatchResult,
    diffs: List[ReloadResult],
    source: str,
) -> str:
    label = "Advanced sync" if mode is SyncMode.ADVANCED else "Sync"
    lines = [
        f"{source}: {label} finished for {groups} group(s), {users} user(s)",
        f"succeeded {result.succeeded}, failed {result.failed}, skipped {result.skipped}",
    ]
    for reloaded in diffs:
        lines.append(f"{reloaded.name}:")
        diff = reloaded.diff
        lines.extend(f"+ {item}" for item in diff.added_resources + diff.added_catalogs)
        lines.extend(f"- {item}" for item in diff.removed_resources + diff.removed_catalogs)
    return "\n".join(lines)


class WebhookNotifier:
    """Post run summaries to a webhook. Delivery failures are logged, never raised."""

    def __init__(self, timeout: float = 10.0, opener: Callable[..., Any] = urlopen):
        self.timeout = timeout
        self._opener = opener

    @classmethod
    def from_config(cls, notify_config: Dict[str, Any]) -> "WebhookNotifier":
        return cls(timeout=float(notify_config.get("timeout", 10)))

    def send(self, webhook_url: Optional[str], payload: Dict[str, Any]) -> bool:
        if not webhook_url:
            return False
        req = Request(
            webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with self._opener(req, timeout=self.timeout) as resp:
                resp.read()
        except HTTPError as e:
            logger.warning("Webhook rejected notification: %s %s", e.code, e.reason)
            return False
        except URLError as e:
            logger.warning("Webhook unreachable: %s", e.reason)
            return False
        except Exception:
            logger.exception("Webhook notification failed")
            return False
        return True


__all__ = ["WebhookNotifier", "summarize"]
