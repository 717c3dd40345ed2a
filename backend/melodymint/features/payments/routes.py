from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Response

from melodymint.features.payments.aggregation import AggregationReport, StreamAggregator, run_scheduled_cycle
from melodymint.features.payments.errors import TransferExecutionError
from melodymint.features.payments.ledger import LedgerStore
from melodymint.features.payments.schemas import (
    AggregationFailureItem,
    AggregationReportResponse,
    ArtistCreditItem,
    ReconcileRequest,
    ReconcileResponse,
    WithdrawRequest,
    WithdrawResponse,
)
from melodymint.features.payments.withdrawal import WithdrawalService
from melodymint.platform.config import settings
from melodymint.platform.db.session import get_session_factory
from melodymint.platform.services.solana import PlatformKeypair, SolanaClient, lamports_to_sol, sol_to_lamports

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/payments")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_ledger_store() -> LedgerStore:
    return LedgerStore(get_session_factory())


def get_chain_client() -> SolanaClient:
    return SolanaClient.from_settings()


def get_platform_keypair() -> PlatformKeypair:
    try:
        return PlatformKeypair.from_settings()
    except (RuntimeError, ValueError) as exc:
        # The message never contains key material.
        logger.error("Platform signing key unavailable: %s", exc)
        raise TransferExecutionError("Withdrawals are not configured on this server") from None


def get_stream_aggregator(ledger: LedgerStore = Depends(get_ledger_store)) -> StreamAggregator:
    return StreamAggregator(ledger, rate_lamports=sol_to_lamports(settings.per_stream_rate_sol))


def get_withdrawal_service(
    ledger: LedgerStore = Depends(get_ledger_store),
    chain: SolanaClient = Depends(get_chain_client),
    keypair: PlatformKeypair = Depends(get_platform_keypair),
) -> WithdrawalService:
    return WithdrawalService(
        ledger,
        chain,
        keypair,
        confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
        reservation_ttl_seconds=settings.withdrawal_reservation_ttl_seconds,
        fee_allowance_lamports=settings.transfer_fee_allowance_lamports,
        reconciliation_grace_seconds=settings.reconciliation_grace_seconds,
        cluster=settings.solana_cluster,
    )


def get_reconciliation_service(
    ledger: LedgerStore = Depends(get_ledger_store),
    chain: SolanaClient = Depends(get_chain_client),
) -> WithdrawalService:
    # Reconciliation only reads signature statuses; it never signs.
    return WithdrawalService(
        ledger,
        chain,
        None,
        confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
        reservation_ttl_seconds=settings.withdrawal_reservation_ttl_seconds,
        fee_allowance_lamports=settings.transfer_fee_allowance_lamports,
        reconciliation_grace_seconds=settings.reconciliation_grace_seconds,
        cluster=settings.solana_cluster,
    )


def aggregation_report_response(report: AggregationReport, rate_lamports: int) -> AggregationReportResponse:
    return AggregationReportResponse(
        skipped=report.skipped,
        window_start=report.window_start,
        window_end=report.window_end,
        rate_lamports=rate_lamports,
        processed_artists=report.processed_artists,
        total_streams=report.total_streams,
        total_amount=report.total_amount,
        total_amount_sol=float(lamports_to_sol(report.total_amount)),
        payments=[
            ArtistCreditItem(
                artist_id=credit.artist_id,
                wallet=credit.wallet_address,
                stream_count=credit.stream_count,
                payment_amount=credit.payment_amount,
                payment_amount_sol=float(lamports_to_sol(credit.payment_amount)),
                payment_id=credit.payment_id,
            )
            for credit in report.credits
        ],
        failures=[AggregationFailureItem(artist_id=f.artist_id, error=f.error) for f in report.failures],
    )


@router.options("/aggregate", include_in_schema=False)
@router.options("/withdraw", include_in_schema=False)
@router.options("/reconcile", include_in_schema=False)
async def preflight() -> Response:
    return Response(status_code=200)


@router.post("/aggregate", response_model=AggregationReportResponse)
async def aggregate(aggregator: StreamAggregator = Depends(get_stream_aggregator)) -> AggregationReportResponse:
    report = await run_scheduled_cycle(
        aggregator,
        now=_utcnow(),
        window_hours=settings.aggregation_window_hours,
        lock_ttl_seconds=settings.aggregation_lock_ttl_seconds,
    )
    return aggregation_report_response(report, aggregator.rate_lamports)


@router.post("/withdraw", response_model=WithdrawResponse)
async def withdraw(
    body: WithdrawRequest,
    service: WithdrawalService = Depends(get_withdrawal_service),
) -> WithdrawResponse:
    result = await service.withdraw(body.artist_id, body.wallet_address)
    return WithdrawResponse(
        amount=result.amount,
        amount_sol=float(lamports_to_sol(result.amount)),
        transaction_signature=result.transaction_signature,
        payment_id=result.payment_id,
        explorer_url=result.explorer_url,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    body: ReconcileRequest,
    service: WithdrawalService = Depends(get_reconciliation_service),
) -> ReconcileResponse:
    result = await service.reconcile(body.payment_id)
    return ReconcileResponse(
        payment_id=result.payment_id,
        transaction_signature=result.transaction_signature,
        outcome=result.outcome.value,
        completed_payment_id=result.completed_payment_id,
    )
