"""Operator entry points for cron and manual runs.

    python -m melodymint.jobs.settle aggregate [--hours 24] [--since 2026-01-01T00:00:00+00:00]
    python -m melodymint.jobs.settle reconcile PAYMENT_ID

Both print the JSON result on stdout and exit non-zero on failure.
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import json
import logging
import sys

from melodymint.features.payments.aggregation import StreamAggregator, run_scheduled_cycle
from melodymint.features.payments.errors import SettlementError, TransferExecutionError
from melodymint.features.payments.ledger import LedgerStore
from melodymint.features.payments.routes import aggregation_report_response
from melodymint.features.payments.withdrawal import WithdrawalService
from melodymint.platform.config import settings
from melodymint.platform.db.session import dispose_engine, get_session_factory
from melodymint.platform.services.solana import SolanaClient, sol_to_lamports


def _parse_since(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _aggregate(args: argparse.Namespace) -> dict:
    aggregator = StreamAggregator(
        LedgerStore(get_session_factory()),
        rate_lamports=sol_to_lamports(settings.per_stream_rate_sol),
    )
    report = await run_scheduled_cycle(
        aggregator,
        now=datetime.now(timezone.utc),
        window_hours=args.hours,
        lock_ttl_seconds=settings.aggregation_lock_ttl_seconds,
        window_start=args.since,
    )
    return aggregation_report_response(report, aggregator.rate_lamports).model_dump(mode="json")


async def _reconcile(args: argparse.Namespace) -> dict:
    try:
        chain = SolanaClient.from_settings()
    except (RuntimeError, ValueError) as exc:
        raise TransferExecutionError("Solana RPC is not configured", details=str(exc)) from None

    # Reconciliation never signs, so the platform key is not loaded.
    service = WithdrawalService(
        LedgerStore(get_session_factory()),
        chain,
        None,
        confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
        reservation_ttl_seconds=settings.withdrawal_reservation_ttl_seconds,
        fee_allowance_lamports=settings.transfer_fee_allowance_lamports,
        reconciliation_grace_seconds=settings.reconciliation_grace_seconds,
        cluster=settings.solana_cluster,
    )
    result = await service.reconcile(args.payment_id)
    return {
        "payment_id": result.payment_id,
        "transaction_signature": result.transaction_signature,
        "outcome": result.outcome.value,
        "completed_payment_id": result.completed_payment_id,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="melodymint.jobs.settle", description="Earnings settlement jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    aggregate = commands.add_parser("aggregate", help="Credit completed streams to artists")
    aggregate.add_argument("--hours", type=int, default=settings.aggregation_window_hours, help="Trailing window size")
    aggregate.add_argument("--since", type=_parse_since, default=None, help="Override the window start (ISO 8601)")
    aggregate.set_defaults(handler=_aggregate)

    reconcile = commands.add_parser("reconcile", help="Resolve a withdrawal whose outcome is unknown")
    reconcile.add_argument("payment_id")
    reconcile.set_defaults(handler=_reconcile)

    return parser


async def _run(args: argparse.Namespace) -> dict:
    try:
        return await args.handler(args)
    finally:
        await dispose_engine()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        result = asyncio.run(_run(args))
    except SettlementError as exc:
        print(json.dumps({"error": exc.message, "kind": exc.kind, "details": exc.details}), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
