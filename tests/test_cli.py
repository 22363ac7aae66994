from __future__ import annotations

import json

import pytest

from pageforge_billing import cli
from pageforge_billing.license_store import open_license_store


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return int(exc.value.code)


def test_parser_defaults(monkeypatch):
    args = cli.build_parser().parse_args(["serve"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 3000

    monkeypatch.setenv("PORT", "8080")
    args = cli.build_parser().parse_args(["serve"])
    assert args.host == "0.0.0.0"
    assert args.port == 8080

    args = cli.build_parser().parse_args(["license", "grant", "a@b.com", "--plan", "lifetime"])
    assert args.license_command == "grant"
    assert args.plan == "lifetime"


def test_parser_rejects_unknown_plan():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["license", "grant", "a@b.com", "--plan", "yearly"])


def test_license_grant_show_revoke(capsys):
    assert _run(["license", "grant", "Owner@Example.com", "--plan", "lifetime", "--customer-id", "cus_cli"]) == 0
    record = open_license_store().get("owner@example.com")
    assert record.active is True
    assert record.plan == "lifetime"
    assert record.customer_id == "cus_cli"
    capsys.readouterr()

    assert _run(["license", "show", "owner@example.com", "--json"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["email"] == "owner@example.com"
    assert shown["active"] is True

    assert _run(["license", "revoke", "owner@example.com"]) == 0
    assert open_license_store().get("owner@example.com").active is False


def test_license_show_and_revoke_missing_record():
    assert _run(["license", "show", "ghost@example.com"]) == 1
    assert _run(["license", "revoke", "ghost@example.com"]) == 1


def test_prices_with_configured_ids_needs_no_network(monkeypatch, capsys):
    monkeypatch.setenv("PAGEFORGE_STRIPE_PRICE_MONTHLY", "price_month")
    monkeypatch.setenv("PAGEFORGE_STRIPE_PRICE_LIFETIME", "price_life")

    assert _run(["prices", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"prices": {"monthly": "price_month", "lifetime": "price_life"}, "errors": {}}


def test_prices_without_stripe_key_reports_errors(capsys):
    assert _run(["prices", "--json"]) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["errors"]["monthly"] == "stripe_secret_key_missing"
