"""Entry point for the macmon command line tool."""

import argparse
import json
import logging
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

from macmon.config import MonitorConfig
from macmon.engine import Engine, ScanTarget
from macmon.errors import ConfirmationMissing, MacmonError, OperationBusy
from macmon.formatting import LEVEL_STYLES, format_bytes, format_rate
from macmon.models import (
    CleanableCategory,
    CleanablePath,
    CleanupPlan,
    CleanupResult,
    MetricKind,
    PathOutcome,
    SortKey,
)
from macmon.rates import estimate_temperature

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

OUTCOME_STYLES = {
    PathOutcome.REMOVED: "green",
    PathOutcome.SKIPPED_PROTECTED: "yellow",
    PathOutcome.SKIPPED_ERROR: "red",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return asdict(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def _print_json(payload: Any) -> None:
    if is_dataclass(payload):
        payload = asdict(payload)
    elif isinstance(payload, list):
        payload = [asdict(item) if is_dataclass(item) else item for item in payload]
    print(json.dumps(payload, default=_json_default, ensure_ascii=False, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macmon",
        description="Live resource monitor and safe cache cleaner for macOS.",
    )
    parser.add_argument("--config", help="path to macmon.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output to stderr")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("dashboard", help="interactive dashboard (default)")

    p = sub.add_parser("sample", help="sample counters twice and print classified rates")
    p.add_argument("--interval", type=float, default=1.0, help="seconds between the two samples")
    p.add_argument("--json", action="store_true")

    categories = [c.value for c in CleanableCategory if c is not CleanableCategory.APPLICATION]
    for name, help_text in (("scan", "list what a cleanup would remove"), ("clean", "move cache files to the trash")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--category", action="append", choices=categories, help="limit to a category (repeatable)")
        p.add_argument("--leftovers", action="store_true", help="look for files of uninstalled apps instead")
        p.add_argument("--json", action="store_true")
        if name == "clean":
            p.add_argument("--yes", action="store_true", help="confirm the removal")

    p = sub.add_parser("apps", help="list removable applications")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("leftovers", help="list files an application left behind")
    p.add_argument("bundle_id")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("uninstall", help="move an application and its leftovers to the trash")
    p.add_argument("bundle_id")
    p.add_argument("--yes", action="store_true", help="confirm the removal")
    p.add_argument("--acknowledge-warnings", action="store_true", help="proceed despite plan warnings")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("ps", help="list processes")
    p.add_argument("--sort", choices=[k.value for k in SortKey], default=SortKey.CPU.value)
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--user-only", action="store_true", help="hide system processes")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("kill", help="terminate a process")
    p.add_argument("pid", type=int)
    p.add_argument("--force", action="store_true", help="send SIGKILL instead of SIGTERM")

    p = sub.add_parser("startup", help="list or change login and boot jobs")
    p.add_argument("action", nargs="?", choices=("list", "enable", "disable", "remove"), default="list")
    p.add_argument("label", nargs="?", help="job label, required for every action but list")
    p.add_argument("--yes", action="store_true", help="confirm the removal")
    p.add_argument("--json", action="store_true")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = MonitorConfig.load(args.config)
    except ValueError as exc:
        err_console.print(f"[red]{exc}[/red]")
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.logging.level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    command = args.command or "dashboard"
    if command == "dashboard":
        from macmon.app import MacmonApp

        MacmonApp(Engine(config)).run()
        return 0

    handlers = {
        "sample": _cmd_sample,
        "scan": _cmd_scan,
        "clean": _cmd_clean,
        "apps": _cmd_apps,
        "leftovers": _cmd_leftovers,
        "uninstall": _cmd_uninstall,
        "ps": _cmd_ps,
        "kill": _cmd_kill,
        "startup": _cmd_startup,
    }
    with Engine(config) as engine:
        try:
            return handlers[command](engine, args)
        except (MacmonError, KeyError, ValueError) as exc:
            message = exc.args[0] if isinstance(exc, KeyError) and exc.args else exc
            err_console.print(f"[red]{message}[/red]")
            return 1


def _cmd_sample(engine: Engine, args: argparse.Namespace) -> int:
    first = engine.sample()
    time.sleep(max(0.1, args.interval))
    second = engine.sample()
    rates = engine.get_rates(first, second)
    cpu = next(rate.value for rate in rates if rate.kind is MetricKind.CPU)
    rates.append(estimate_temperature(cpu))
    levels = [engine.classify(rate.kind, rate.value) for rate in rates]

    if args.json:
        _print_json([
            {**asdict(rate), "level": level.name.lower()} for rate, level in zip(rates, levels)
        ])
        return 0

    table = Table(title="Sample", box=box.ROUNDED)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_column("Health")
    for rate, level in zip(rates, levels):
        style = LEVEL_STYLES[level]
        table.add_row(rate.kind.value, format_rate(rate), f"[{style}]{level.name.lower()}[/{style}]")
    console.print(table)
    return 0


def _scan(engine: Engine, args: argparse.Namespace) -> CleanupPlan:
    if args.leftovers:
        job = engine.scan(ScanTarget.LEFTOVERS)
    else:
        categories = [CleanableCategory(c) for c in args.category] if args.category else None
        job = engine.scan(ScanTarget.CACHES, categories)
    with console.status("Scanning..."):
        return job.result()


def _path_table(title: str, entries: tuple[CleanablePath, ...], show_reason: bool = False) -> Table:
    table = Table(title=title, box=box.SIMPLE)
    table.add_column("Path", overflow="fold")
    table.add_column("Category")
    table.add_column("Size", justify="right")
    if show_reason:
        table.add_column("Reason")
    for entry in entries:
        row = [entry.path, entry.category.value, format_bytes(entry.size_bytes)]
        if show_reason:
            row.append(f"{entry.protection.value}: {entry.reason}")
        table.add_row(*row)
    return table


def _print_plan(plan: CleanupPlan) -> None:
    if plan.paths:
        console.print(_path_table("Removable", plan.paths))
    if plan.excluded:
        console.print(_path_table("Kept", plan.excluded, show_reason=True))
    for error in plan.scan_errors:
        console.print(f"[red]unreadable[/red] {error.path}: {error.reason}")
    for warning in plan.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    console.print(f"[bold]{len(plan.paths)} items, {format_bytes(plan.total_bytes)} removable[/bold]")


def _print_result(result: CleanupResult) -> None:
    table = Table(title="Cleanup", box=box.SIMPLE)
    table.add_column("Path", overflow="fold")
    table.add_column("Outcome")
    table.add_column("Size", justify="right")
    for item in (*result.outcomes, *result.scan_errors):
        style = OUTCOME_STYLES[item.outcome]
        outcome = item.outcome.value + (f" ({item.reason})" if item.reason else "")
        table.add_row(item.path, f"[{style}]{outcome}[/{style}]", format_bytes(item.size_bytes))
    console.print(table)
    console.print(
        f"[bold]removed {result.removed_count}, skipped {result.skipped_count}, "
        f"freed {format_bytes(result.bytes_freed)}[/bold]"
    )


def _cmd_scan(engine: Engine, args: argparse.Namespace) -> int:
    plan = _scan(engine, args)
    if args.json:
        _print_json(plan)
    else:
        _print_plan(plan)
    return 0


def _execute(engine: Engine, plan: CleanupPlan, args: argparse.Namespace, acknowledge: bool = False) -> int:
    if not args.yes:
        if not args.json:
            _print_plan(plan)
        err_console.print("[yellow]Nothing removed. Re-run with --yes to move these items to the trash.[/yellow]")
        return 1
    try:
        job = engine.execute(plan, confirmed=True, acknowledge_warnings=acknowledge)
        with console.status("Moving to trash..."):
            result = job.result()
    except ConfirmationMissing as exc:
        err_console.print(f"[yellow]{exc}[/yellow]")
        return 1
    except OperationBusy as exc:
        err_console.print(f"[red]{exc}[/red]")
        return 1

    if args.json:
        _print_json(result)
    else:
        _print_result(result)
    return 0


def _cmd_clean(engine: Engine, args: argparse.Namespace) -> int:
    return _execute(engine, _scan(engine, args), args)


def _cmd_apps(engine: Engine, args: argparse.Namespace) -> int:
    apps = engine.list_apps()
    if args.json:
        _print_json(apps)
        return 0

    table = Table(title="Applications", box=box.ROUNDED)
    table.add_column("Name")
    table.add_column("Bundle ID")
    table.add_column("Size", justify="right")
    table.add_column("Running")
    for app in apps:
        table.add_row(app.display_name, app.bundle_identifier, format_bytes(app.size_bytes), "yes" if app.is_running else "")
    console.print(table)
    return 0


def _cmd_leftovers(engine: Engine, args: argparse.Namespace) -> int:
    leftovers = engine.resolve_leftovers(args.bundle_id)
    if args.json:
        _print_json(leftovers)
        return 0
    if not leftovers:
        console.print(f"No leftovers found for {args.bundle_id}")
        return 0
    console.print(_path_table(f"Leftovers of {args.bundle_id}", tuple(leftovers), show_reason=True))
    return 0


def _cmd_uninstall(engine: Engine, args: argparse.Namespace) -> int:
    plan = engine.plan_uninstall(args.bundle_id)
    return _execute(engine, plan, args, acknowledge=args.acknowledge_warnings)


def _cmd_ps(engine: Engine, args: argparse.Namespace) -> int:
    processes = engine.list_processes(SortKey(args.sort), include_system=not args.user_only)[: args.limit]
    if args.json:
        _print_json(processes)
        return 0

    table = Table(box=box.SIMPLE)
    for column in ("PID", "USER", "CPU%", "MEM%", "RES", "THR", "Command"):
        table.add_column(column, justify="right" if column not in ("USER", "Command") else "left")
    for proc in processes:
        table.add_row(
            str(proc.pid),
            proc.username[:10],
            f"{proc.cpu_percent:.1f}",
            f"{proc.memory_percent:.1f}",
            format_bytes(proc.memory_rss),
            str(proc.threads),
            proc.command_line[:60],
        )
    console.print(table)
    return 0


def _cmd_kill(engine: Engine, args: argparse.Namespace) -> int:
    engine.terminate(args.pid, force=args.force)
    console.print(f"Sent {'SIGKILL' if args.force else 'SIGTERM'} to {args.pid}")
    return 0


def _cmd_startup(engine: Engine, args: argparse.Namespace) -> int:
    if args.action == "list":
        items = engine.list_startup_items()
        if args.json:
            _print_json(items)
            return 0
        table = Table(title="Startup items", box=box.ROUNDED)
        table.add_column("Label", overflow="fold")
        table.add_column("Name")
        table.add_column("Kind")
        table.add_column("Scope")
        table.add_column("Enabled")
        table.add_column("Locked")
        for item in items:
            table.add_row(
                item.label,
                item.name,
                item.kind.value,
                item.scope,
                "yes" if item.enabled else "",
                item.reason,
            )
        console.print(table)
        return 0

    if not args.label:
        err_console.print(f"[red]{args.action} needs a label[/red]")
        return 2
    if args.action == "remove":
        if not args.yes:
            err_console.print("[yellow]Nothing removed. Re-run with --yes to move this item to the trash.[/yellow]")
            return 1
        item = engine.remove_startup_item(args.label)
        message = f"Moved {item.path} to the trash"
    else:
        item = engine.set_startup_item_enabled(args.label, args.action == "enable")
        message = f"{item.label} {args.action}d"

    if args.json:
        _print_json(item)
    else:
        console.print(message)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
