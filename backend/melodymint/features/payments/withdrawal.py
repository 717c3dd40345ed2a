from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import enum
import logging
from typing import Callable
from uuid import UUID, uuid4

import httpx

from melodymint.features.payments.errors import (
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    InsufficientFundingError,
    PaymentNotFoundError,
    ReconciliationRequiredError,
    TransferExecutionError,
    ValidationError,
    WithdrawalConflictError,
)
from melodymint.features.payments.ledger import LedgerStore
from melodymint.platform.services.solana import (
    ConfirmationOutcome,
    PlatformKeypair,
    SolanaClient,
    SolanaRPCError,
    SubmissionError,
    build_signed_transfer,
    explorer_url,
    is_valid_address,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WithdrawalResult:
    amount: int
    transaction_signature: str
    payment_id: str
    explorer_url: str


class ReconciliationOutcome(str, enum.Enum):
    COMPLETED = "completed"
    NOT_LANDED = "not_landed"
    PENDING = "pending"


@dataclass(frozen=True)
class ReconciliationResult:
    payment_id: str
    transaction_signature: str
    outcome: ReconciliationOutcome
    completed_payment_id: str | None = None


def _require_uuid(value: str, field_name: str) -> str:
    try:
        return str(UUID(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be a UUID") from None


def _reconciliation_required(payment_id: str | None = None) -> ReconciliationRequiredError:
    return ReconciliationRequiredError(
        "A previous withdrawal is awaiting reconciliation",
        details=f"payment_id={payment_id}" if payment_id else None,
    )


class WithdrawalService:
    """Pays an artist's pending balance out to their wallet.

    ``requested -> reserved -> signed -> submitted -> confirmed | failed``. The pending
    balance is only debited after the transfer is confirmed on-chain.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        chain: SolanaClient,
        keypair: PlatformKeypair | None,
        *,
        confirmation_timeout_seconds: float,
        reservation_ttl_seconds: int,
        fee_allowance_lamports: int,
        reconciliation_grace_seconds: int,
        cluster: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._chain = chain
        self._keypair = keypair
        self._confirmation_timeout = confirmation_timeout_seconds
        self._reservation_ttl = timedelta(seconds=reservation_ttl_seconds)
        self._fee_allowance = fee_allowance_lamports
        self._reconciliation_grace = timedelta(seconds=reconciliation_grace_seconds)
        self._cluster = cluster
        self._clock = clock

    async def withdraw(self, artist_id: str | None, destination_wallet_address: str | None) -> WithdrawalResult:
        artist_id = (artist_id or "").strip()
        destination = (destination_wallet_address or "").strip()
        if not artist_id or not destination:
            raise ValidationError("Missing required fields: artist_id and wallet_address")
        artist_id = _require_uuid(artist_id, "artist_id")
        if not is_valid_address(destination):
            raise ValidationError("wallet_address is not a valid Solana address")

        artist = await self._ledger.get_artist_balance(artist_id)
        if artist is None:
            raise ValidationError("Artist not found")
        if artist.pending_withdrawal <= 0:
            raise InsufficientBalanceError("No funds available for withdrawal")
        if artist.wallet_address != destination:
            raise ValidationError("Wallet address does not match artist account")
        if self._keypair is None:
            raise TransferExecutionError("Withdrawals are not configured on this server")

        now = self._clock()
        stale_before = now - self._reservation_ttl
        if await self._ledger.has_unreconciled_withdrawal(artist_id):
            raise _reconciliation_required()
        if artist.withdrawal_signature and artist.withdrawal_reserved_at and artist.withdrawal_reserved_at < stale_before:
            flagged_id = await self._ledger.flag_orphaned_withdrawal(artist_id=artist_id, stale_before=stale_before, now=now)
            if flagged_id is not None:
                raise _reconciliation_required(flagged_id)

        amount = artist.pending_withdrawal
        reservation_id = str(uuid4())
        reserved = await self._ledger.reserve_withdrawal(
            artist_id=artist_id,
            amount=amount,
            reservation_id=reservation_id,
            now=now,
            stale_before=stale_before,
        )
        if not reserved:
            # The reservation guard also refuses while a payment awaits reconciliation.
            if await self._ledger.has_unreconciled_withdrawal(artist_id):
                raise _reconciliation_required()
            raise WithdrawalConflictError("Balance changed or another withdrawal is in progress; retry shortly")

        logger.info("Reserved %d lamports for withdrawal %s of artist %s", amount, reservation_id, artist_id)

        try:
            signature = await self._execute_transfer(
                artist_id=artist_id,
                reservation_id=reservation_id,
                amount=amount,
                destination=destination,
            )
        except (TransferExecutionError, ConfirmationTimeoutError) as exc:
            exc.payment_id = await self._ledger.release_withdrawal(
                artist_id=artist_id,
                reservation_id=reservation_id,
                amount=amount,
                error=exc.message,
                signature=exc.signature,
                reconciliation_required=exc.reconciliation_required,
                now=self._clock(),
            )
            raise

        try:
            payment_id = await self._ledger.complete_withdrawal(
                artist_id=artist_id,
                reservation_id=reservation_id,
                amount=amount,
                signature=signature,
                now=self._clock(),
            )
        except WithdrawalConflictError:
            raise
        except Exception:
            # The signed reservation stays in place and is flagged on the next attempt.
            logger.exception(
                "Transfer %s to artist %s confirmed but the ledger was not updated",
                signature,
                artist_id,
            )
            raise

        logger.info("Withdrawal %s paid %d lamports to %s in %s", reservation_id, amount, destination, signature)
        return WithdrawalResult(
            amount=amount,
            transaction_signature=signature,
            payment_id=payment_id,
            explorer_url=explorer_url(signature, self._cluster),
        )

    async def _execute_transfer(self, *, artist_id: str, reservation_id: str, amount: int, destination: str) -> str:
        try:
            funding_balance = await self._chain.get_balance(self._keypair.address)
        except (SolanaRPCError, httpx.HTTPError) as exc:
            raise TransferExecutionError("Could not read the platform funding balance", details=str(exc)) from exc

        if funding_balance < amount + self._fee_allowance:
            raise InsufficientFundingError(
                "Platform funding account cannot cover this withdrawal",
                details=f"balance={funding_balance} required={amount + self._fee_allowance}",
            )

        try:
            checkpoint = await self._chain.get_recent_checkpoint()
        except (SolanaRPCError, httpx.HTTPError) as exc:
            raise TransferExecutionError("Could not fetch a recent blockhash", details=str(exc)) from exc

        try:
            transfer = build_signed_transfer(
                keypair=self._keypair,
                to_address=destination,
                lamports=amount,
                recent_blockhash=checkpoint.blockhash,
            )
        except ValueError as exc:
            raise TransferExecutionError("Could not build or sign the transfer", details=str(exc)) from exc

        # Persisted before broadcast so a lost outcome can always be looked up.
        recorded = await self._ledger.record_withdrawal_signature(
            artist_id=artist_id,
            reservation_id=reservation_id,
            signature=transfer.signature,
        )
        if not recorded:
            raise WithdrawalConflictError("Withdrawal reservation expired before the transfer was sent")

        try:
            signature = await self._chain.send_signed_transfer(transfer)
        except SubmissionError as exc:
            raise TransferExecutionError(
                "Transfer submission failed",
                signature=exc.signature,
                reconciliation_required=exc.may_have_landed,
                details=str(exc),
            ) from exc

        logger.info("Submitted transfer %s; awaiting confirmation", signature)

        result = await self._chain.await_confirmation(signature, timeout=self._confirmation_timeout)
        if result.outcome is ConfirmationOutcome.CONFIRMED:
            return signature
        if result.outcome is ConfirmationOutcome.ERROR:
            raise TransferExecutionError("Transfer failed on-chain", signature=signature, details=result.error)

        logger.warning("Transfer %s not confirmed within %gs; flagged for reconciliation", signature, self._confirmation_timeout)
        raise ConfirmationTimeoutError(
            f"Transfer was not confirmed within {self._confirmation_timeout:g} seconds",
            signature=signature,
            details="The transfer may still land; reconcile this payment before retrying",
        )

    async def reconcile(self, payment_id: str | None) -> ReconciliationResult:
        payment_id = (payment_id or "").strip()
        if not payment_id:
            raise ValidationError("Missing required field: payment_id")
        payment_id = _require_uuid(payment_id, "payment_id")

        payment = await self._ledger.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError("Payment not found")
        if not payment.reconciliation_required or not payment.transaction_signature:
            raise ValidationError("Payment does not need reconciliation")

        signature = payment.transaction_signature
        try:
            status = await self._chain.get_signature_status(signature, search_history=True)
        except (SolanaRPCError, httpx.HTTPError) as exc:
            raise TransferExecutionError("Could not look up the transfer", signature=signature, details=str(exc)) from exc

        now = self._clock()

        if status is not None and status.is_confirmed:
            completed_id = await self._ledger.settle_reconciled_transfer(payment_id=payment_id, now=now)
            logger.info("Reconciled %s: transfer %s landed, booked as payment %s", payment_id, signature, completed_id)
            return ReconciliationResult(payment_id, signature, ReconciliationOutcome.COMPLETED, completed_id)

        if status is not None and status.err is not None:
            await self._ledger.clear_reconciliation(payment_id=payment_id, note=f"Transfer failed on-chain: {status.err}")
            logger.info("Reconciled %s: transfer %s failed on-chain", payment_id, signature)
            return ReconciliationResult(payment_id, signature, ReconciliationOutcome.NOT_LANDED)

        if status is None and now - payment.created_at >= self._reconciliation_grace:
            await self._ledger.clear_reconciliation(payment_id=payment_id, note="Transfer not found on-chain")
            logger.info("Reconciled %s: transfer %s never landed", payment_id, signature)
            return ReconciliationResult(payment_id, signature, ReconciliationOutcome.NOT_LANDED)

        return ReconciliationResult(payment_id, signature, ReconciliationOutcome.PENDING)
