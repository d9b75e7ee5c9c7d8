"""Operator-CLI für den NFC-e-Nummernkreis (allocate, stats, sweep)."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from typing import Iterable

import anyio

from agents.nfce import LedgerStore, NumberingKey, SequenceAllocator
from backend.core.config import settings


def _iso_datetime(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _add_key_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tax-id", required=True, help="CNPJ des Emittenten")
    parser.add_argument("--jurisdiction", required=True, help="UF (SP) oder IBGE-Code (35)")
    parser.add_argument("--series", default="1", help="Serie (default: 1)")
    parser.add_argument(
        "--environment",
        choices=["homologation", "production"],
        default="homologation",
        help="Umgebung (default: homologation)",
    )


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="NFC-e numbering administration")
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="SQLAlchemy-URL des Ledgers (default: DATABASE_URL)",
    )
    parser.add_argument(
        "--create-schema", action="store_true", help="Tabellen anlegen, falls nicht vorhanden"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    allocate = sub.add_parser("allocate", help="Nächste Nummer und cNF vergeben")
    _add_key_arguments(allocate)
    allocate.add_argument(
        "--mode", choices=["reserve", "live"], default=None, help="Vergabemodus"
    )

    stats = sub.add_parser("stats", help="Statistik je Nummernkreis")
    _add_key_arguments(stats)

    sweep = sub.add_parser("sweep", help="Veraltete Reservierungen aufgeben")
    sweep.add_argument("--now", help="ISO-8601 Zeitstempel für deterministische Läufe")
    return parser.parse_args(argv)


def _key(args: argparse.Namespace) -> NumberingKey:
    return NumberingKey(args.tax_id, args.jurisdiction, args.series, args.environment)


def run(args: argparse.Namespace) -> dict:
    ledger = LedgerStore.from_url(args.database_url)
    if args.create_schema:
        ledger.create_schema()

    if args.command == "allocate":
        allocator = SequenceAllocator(ledger, mode=args.mode)
        key = _key(args)
        allocation = anyio.run(allocator.allocate, key)
        return {
            **key.as_dict(),
            "mode": allocator.mode,
            "ordinal": allocation.ordinal,
            "confirmation_code": allocation.confirmation_code,
        }
    if args.command == "stats":
        return ledger.stats(_key(args)).to_dict()
    if args.command == "sweep":
        allocator = SequenceAllocator(ledger)
        now = _iso_datetime(args.now) if args.now else None
        return {"abandoned": allocator.sweep_sync(now)}
    raise SystemExit(f"unknown command {args.command!r}")


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    print(json.dumps(run(args), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
