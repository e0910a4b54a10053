"""
Impound Rail CLI

Commands:
  serve     - Run the API server
  fee       - Compute the fee for a category and impound date
  tariffs   - Show the current tariff table
  verify    - Verify a receipt by number or payment id
  receipt   - Issue (or regenerate) the receipt for a payment
"""

import argparse
import json
import sys

from .config import configure_logging, load_settings
from .core.errors import ImpoundRailError
from .core.fees import compute_fee
from .receipts.renderer import format_amount


def _service(settings):
    from .service import ImpoundService
    return ImpoundService.from_settings(settings)


def cmd_serve(args, settings):
    """Run the API server."""
    import uvicorn

    port = args.port or settings.port
    print(f"Starting Impound Rail on {args.host}:{port}")

    uvicorn.run(
        "impound_rail.api.server:app",
        host=args.host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_fee(args, settings):
    """Compute a fee without touching the database."""
    table = settings.load_tariffs()
    fee = compute_fee(args.category, args.impounded_at, evaluated_at=args.at, tariffs=table)
    currency = settings.municipality.currency

    if args.json:
        print(json.dumps(fee.to_dict(), indent=2))
        return

    print(f"Category:      {fee.category}")
    print(f"Days elapsed:  {fee.days_elapsed}")
    print(f"Removal fee:   {format_amount(fee.removal_fee)} {currency}")
    print(f"Storage:       {fee.days_elapsed} x {format_amount(fee.daily_rate)} = {format_amount(fee.storage_fee)} {currency}")
    print(f"Total due:     {format_amount(fee.total_due)} {currency}")
    print(f"Tariff:        {fee.tariff_version}")


def cmd_tariffs(args, settings):
    """Show the tariff table."""
    table = settings.load_tariffs()
    if args.json:
        print(json.dumps(table.to_dict(), indent=2, ensure_ascii=False))
        return

    print(f"Tariff version {table.version}")
    print("=" * 60)
    for category, tariff in table.rates.items():
        print(
            f"{category.value:<16} {category.label:<24} "
            f"{format_amount(tariff.removal_fee):>9} + {format_amount(tariff.daily_rate):>7}/jour"
        )
    print(
        f"{'(default)':<16} {'':<24} "
        f"{format_amount(table.default.removal_fee):>9} + {format_amount(table.default.daily_rate):>7}/jour"
    )


def cmd_verify(args, settings):
    """Verify a receipt."""
    summary = _service(settings).verify_receipt(args.reference)
    print("Receipt valid")
    print(f"  Plate:  {summary.license_plate}")
    print(f"  Owner:  {summary.owner_name}")
    print(f"  Amount: {format_amount(summary.amount)} {settings.municipality.currency}")
    print(f"  Date:   {summary.date}")


def cmd_receipt(args, settings):
    """Issue or regenerate a receipt."""
    link = _service(settings).get_receipt(args.payment_id, regenerate=args.regenerate)
    print(f"Receipt {link.receipt_number}")
    print(f"  Document:     {link.receipt_url}")
    print(f"  Verify at:    {link.verification_url}")
    print(f"  Code:         {link.verification_code}")


COMMANDS = {
    "serve": cmd_serve,
    "fee": cmd_fee,
    "tariffs": cmd_tariffs,
    "verify": cmd_verify,
    "receipt": cmd_receipt,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="impound-rail",
        description="Impound Rail - impound fees, payments and receipts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # fee
    fee_parser = subparsers.add_parser("fee", help="Compute a fee")
    fee_parser.add_argument("category", help="Vehicle category, e.g. SMALL_VEHICLE")
    fee_parser.add_argument("impounded_at", help="Impound time (ISO-8601)")
    fee_parser.add_argument("--at", default=None, help="Evaluation time (ISO-8601), defaults to now")
    fee_parser.add_argument("--json", action="store_true")

    # tariffs
    tariffs_parser = subparsers.add_parser("tariffs", help="Show tariff table")
    tariffs_parser.add_argument("--json", action="store_true")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify a receipt")
    verify_parser.add_argument("reference", help="Receipt number or payment id")

    # receipt
    receipt_parser = subparsers.add_parser("receipt", help="Issue a receipt")
    receipt_parser.add_argument("payment_id")
    receipt_parser.add_argument("--regenerate", action="store_true")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)

    try:
        handler(args, settings)
    except ImpoundRailError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
