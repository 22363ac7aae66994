"""Operator CLI for the PageForge billing backend."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import configure_logging, env_int, env_text, load_env_file
from .license_store import PLANS, LicenseRecord, normalize_email, open_license_store
from .prices import PriceCatalog
from .stripe_api import StripeClient


CYAN = "cyan"
BRIGHT_CYAN = "bright_cyan"
DIM = "dim"

console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _print_json(payload: dict[str, Any]):
    print(json.dumps(payload, indent=2))


def _print_record(record: LicenseRecord, *, title: str):
    table = Table(show_header=False, box=None, padding=(0, 1))
    for key, value in record.to_dict().items():
        table.add_row(key, "" if value is None else str(value))
    border = "green" if record.active else "yellow"
    console.print(Panel(table, border_style=border, title=f"[bold {border}]{title}[/]"))


def _cmd_serve(args: argparse.Namespace) -> int:
    from .server import serve

    serve(args.host, args.port)
    return 0


def _cmd_prices(args: argparse.Namespace) -> int:
    catalog = PriceCatalog.from_env(StripeClient.from_env())
    resolved, errors = catalog.warm()

    if args.json:
        _print_json({"prices": resolved, "errors": errors})
        return 1 if errors else 0

    table = Table(title=f"[bold {BRIGHT_CYAN}]PageForge Prices[/]", border_style=CYAN)
    table.add_column("plan")
    table.add_column("product")
    table.add_column("price id")
    for plan, definition in catalog.plans.items():
        price = resolved.get(plan) or f"[red]{errors.get(plan, 'unresolved')}[/]"
        table.add_row(plan, definition.product_name, price)
    console.print(table)
    return 1 if errors else 0


def _cmd_license_show(args: argparse.Namespace) -> int:
    store = open_license_store()
    record = store.get(args.email)
    if record is None:
        console.print(f"[yellow]No license found for {normalize_email(args.email)}.[/]")
        return 1
    if args.json:
        _print_json(record.to_dict())
    else:
        _print_record(record, title="License")
    return 0


def _cmd_license_grant(args: argparse.Namespace) -> int:
    store = open_license_store()
    fields: dict[str, Any] = {
        "plan": args.plan,
        "active": True,
        "activated_at": _now_iso(),
    }
    if str(args.customer_id or "").strip():
        fields["customer_id"] = args.customer_id.strip()
    record = store.upsert(args.email, fields)
    _print_record(record, title="License Granted")
    return 0


def _cmd_license_revoke(args: argparse.Namespace) -> int:
    store = open_license_store()
    if store.get(args.email) is None:
        console.print(f"[yellow]No license found for {normalize_email(args.email)}.[/]")
        return 1
    record = store.upsert(args.email, {"active": False})
    _print_record(record, title="License Revoked")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pageforge-billing",
        description="PageForge billing backend",
    )
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    default_port = env_int("PORT", 0) or env_int("PAGEFORGE_PORT", 3000)
    default_host = env_text("PAGEFORGE_HOST") or ("0.0.0.0" if env_text("PORT") else "127.0.0.1")
    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=default_host)
    serve.add_argument("--port", type=int, default=default_port)

    prices = sub.add_parser("prices", help="Resolve (and create if missing) Stripe prices for every plan")
    prices.add_argument("--json", action="store_true")

    license_parser = sub.add_parser("license", help="Inspect or edit license records")
    license_sub = license_parser.add_subparsers(dest="license_command", required=True)

    show = license_sub.add_parser("show", help="Show the license for an email")
    show.add_argument("email")
    show.add_argument("--json", action="store_true")

    grant = license_sub.add_parser("grant", help="Activate a license by hand")
    grant.add_argument("email")
    grant.add_argument("--plan", choices=list(PLANS), default=PLANS[0])
    grant.add_argument("--customer-id", default="")

    revoke = license_sub.add_parser("revoke", help="Deactivate a license")
    revoke.add_argument("email")
    return parser


def main(argv: list[str] | None = None):
    load_env_file()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "license":
        handlers = {
            "show": _cmd_license_show,
            "grant": _cmd_license_grant,
            "revoke": _cmd_license_revoke,
        }
        code = handlers[args.license_command](args)
    else:
        handlers = {
            "serve": _cmd_serve,
            "prices": _cmd_prices,
        }
        code = handlers[args.command](args)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
