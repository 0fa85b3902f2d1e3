# addonsync/app.py
"""
Command-line entry point for addonsync.

Subcommands share one bootstrap: load configuration, set up logging, open
the store and wire the sync service. Results are rendered as Rich tables.
"""

from __future__ import annotations

import argparse
from io import StringIO
import logging
import os
from pathlib import Path
import shutil
import threading
from typing import Callable, Mapping, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
)
from .logging_utils import resolve_log_settings, setup_logging
from .notify import WebhookNotifier
from .scheduler import Scheduler
from .service import SyncService
from .store import SQLiteStore
from .sync.client import StremioClient
from .sync.fetcher import ManifestFetcher
from .sync.models import BatchResult, Outcome, ReloadResult, SyncStatus
from .sync.planner import SyncPlanner
from .sync.reload import ReloadReconciler
from .vault import CredentialVault

logger = logging.getLogger("addonsync")

STATUS_STYLES = {
    SyncStatus.SYNCED: "green",
    SyncStatus.UNSYNCED: "yellow",
    SyncStatus.STALE: "dim",
    SyncStatus.CONNECT: "magenta",
    SyncStatus.ERROR: "red",
}


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(100, 24))
    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=max(40, terminal_size.columns),
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Log diagnostics so operators can correct issues quickly."""

    if not config.diagnostics:
        logger.info("Loaded %d configuration file(s)", len(config.files_loaded))
        return
    for diag in config.diagnostics:
        level = logging.ERROR if diag.level == "error" else logging.WARNING if diag.level == "warning" else logging.INFO
        logger.log(level, "[config] %s [%s]", diag.message, diag.source or config.data_dir)


def build_service(
    config: ConfigurationBundle,
    env: Optional[Mapping[str, str]] = None,
) -> SyncService:
    """Wire the store, vault, remote client and engine from configuration."""

    vault = CredentialVault.from_config(config.section("vault"), env)
    database = Path(config.section("storage").get("database", "state/addonsync.db"))
    if not database.is_absolute():
        database = config.data_dir / database
    store = SQLiteStore(database, vault)
    store.initialize()

    sync_cfg = config.section("sync")
    manifests_cfg = config.section("manifests")
    notify_cfg = config.section("notify")
    defaults = dict(sync_cfg)
    defaults["webhook_url"] = notify_cfg.get("webhook_url", "")

    return SyncService(
        store=store,
        client=StremioClient.from_config(config.section("remote")),
        reconciler=ReloadReconciler.from_config(manifests_cfg, ManifestFetcher.from_config(manifests_cfg)),
        planner=SyncPlanner(
            use_custom_fields=bool(sync_cfg.get("use_custom_fields", True)),
            compare_manifests=bool(sync_cfg.get("compare_manifests", False)),
        ),
        notifier=WebhookNotifier.from_config(notify_cfg),
        protection_config=config.section("protection"),
        sync_defaults=defaults,
    )


# -- renderers -------------------------------------------------------------------

def render_status(service: SyncService, account_id: str) -> str:
    rows = []
    for user_id in service.store.user_ids(account_id):
        status, plan = service.user_status(account_id, user_id)
        rows.append((user_id, status, plan))

    def _render(console: Console) -> None:
        table = Table(title=f"Sync status: {account_id}", show_header=True, header_style="bold cyan")
        table.add_column("User", style="bold")
        table.add_column("Status")
        table.add_column("Missing", justify="right")
        table.add_column("Extra", justify="right")
        table.add_column("Order")
        for user_id, status, plan in rows:
            style = STATUS_STYLES.get(status, "")
            table.add_row(
                user_id,
                f"[{style}]{status.value}[/{style}]" if style else status.value,
                str(len(plan.missing)) if plan else "-",
                str(len(plan.extra)) if plan else "-",
                ("ok" if plan.order_matches else "differs") if plan else "-",
            )
        if not rows:
            table.add_row("(no users)", "", "", "", "")
        console.print(table)

    return render_rich(_render)


def render_batch(title: str, result: BatchResult) -> str:
    def _render(console: Console) -> None:
        table = Table(title=title, show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")
        table.add_row("Succeeded", str(result.succeeded))
        table.add_row("Failed", str(result.failed))
        table.add_row("Skipped", str(result.skipped))
        table.add_row("Total", str(result.total))
        console.print(table)
        for reloaded in result.reload_diffs:
            console.print(_diff_table(reloaded))
        for error in result.errors[:20]:
            console.print(f"[red]- {escape(error)}[/red]")

    return render_rich(_render)


def render_reload(result: ReloadResult) -> str:
    def _render(console: Console) -> None:
        console.print(f"[bold]{result.name or result.addon_id}[/bold]: {result.outcome.value}")
        if result.reason:
            console.print(f"  {escape(result.reason)}")
        if result.diff.has_changes:
            console.print(_diff_table(result))

    return render_rich(_render)


def _diff_table(result: ReloadResult) -> Table:
    table = Table(title=f"Changes: {result.name}", show_header=True)
    table.add_column("", width=1)
    table.add_column("Item")
    diff = result.diff
    for item in diff.added_resources + diff.added_catalogs:
        table.add_row("[green]+[/green]", item)
    for item in diff.removed_resources + diff.removed_catalogs:
        table.add_row("[red]-[/red]", item)
    return table


# -- commands --------------------------------------------------------------------

def cmd_status(service: SyncService, args: argparse.Namespace) -> int:
    print(render_status(service, args.account))
    return 0


def cmd_sync(service: SyncService, args: argparse.Namespace) -> int:
    result = service.sync_account(args.account, group_id=args.group)
    print(render_batch(f"Sync: {args.account}", result))
    return 0 if result.failed == 0 else 1


def cmd_reload(service: SyncService, args: argparse.Namespace) -> int:
    if args.group:
        batch = service.reload_group(args.account, args.group)
        print(render_batch(f"Reload: group {args.group}", batch))
        return 0 if batch.failed == 0 else 1
    if not args.addon:
        print("[reload] Pass an add-on id or --group.")
        return 2
    result = service.reload_addon(args.account, args.addon)
    print(render_reload(result))
    return 0 if result.outcome is not Outcome.FAILED else 1


def cmd_schedule(service: SyncService, args: argparse.Namespace) -> int:
    sync_cfg = service.sync_defaults
    scheduler = Scheduler(
        job=lambda account_id: service.sync_account(account_id),
        jitter=float(sync_cfg.get("jitter_seconds", 5)),
    )
    for settings in service.store.list_accounts():
        if not settings.enabled:
            continue
        frequency = settings.frequency if settings.frequency not in ("", "0") else str(sync_cfg.get("frequency", "0"))
        if scheduler.add(settings.account_id, frequency):
            logger.info("Scheduled account %s (frequency %s)", settings.account_id, frequency)

    if not len(scheduler):
        print("[schedule] No accounts have a sync frequency; nothing to do.")
        return 0

    stop = threading.Event()
    try:
        scheduler.run(stop_event=stop, max_runs=args.max_runs)
    except KeyboardInterrupt:
        stop.set()
        print("\n[schedule] Stopped")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="addonsync", description="Keep remote add-on collections in sync.")
    parser.add_argument("--data-dir", type=Path, default=None, help="Override ADDONSYNC_DATA_DIR")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show per-user sync status")
    status.add_argument("account")
    status.set_defaults(handler=cmd_status)

    sync = sub.add_parser("sync", help="Sync an account (or one group)")
    sync.add_argument("account")
    sync.add_argument("--group", default=None)
    sync.set_defaults(handler=cmd_sync)

    reload = sub.add_parser("reload", help="Reload add-on manifests")
    reload.add_argument("account")
    reload.add_argument("addon", nargs="?")
    reload.add_argument("--group", default=None)
    reload.set_defaults(handler=cmd_reload)

    schedule = sub.add_parser("schedule", help="Run scheduled syncs for all enabled accounts")
    schedule.add_argument("--max-runs", type=int, default=None)
    schedule.set_defaults(handler=cmd_schedule)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for `python -m addonsync`."""

    args = build_parser().parse_args(argv)
    config_bundle = load_runtime_configuration(args.data_dir)
    if config_bundle.status == "missing":
        print(f"[config] Data directory '{config_bundle.data_dir}' does not exist.")
        return 2

    level_name, console_enabled = resolve_log_settings(config_bundle.section("logging"))
    log_path = setup_logging(
        config_bundle.data_dir,
        level_name,
        structured=bool(config_bundle.section("logging").get("structured", True)),
        console=console_enabled,
    )
    config_bundle.log_path = log_path
    if not _within(log_path, config_bundle.data_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Data log directory is not writable; logging to fallback path '{log_path}'.",
                source=log_path,
            )
        )
    emit_configuration_report(config_bundle)

    service = build_service(config_bundle, os.environ)
    try:
        return args.handler(service, args)
    finally:
        service.store.close()


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


__all__ = [
    "build_parser",
    "build_service",
    "main",
    "render_batch",
    "render_reload",
    "render_rich",
    "render_status",
]
