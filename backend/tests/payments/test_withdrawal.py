import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
import uuid

import base58
import pytest
from sqlalchemy.exc import OperationalError

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
from melodymint.features.payments.ledger import ArtistBalance, PaymentRecord
from melodymint.features.payments.withdrawal import ReconciliationOutcome, WithdrawalService
from melodymint.platform.services.solana import (
    Checkpoint,
    ConfirmationOutcome,
    ConfirmationResult,
    PlatformKeypair,
    SignatureStatus,
    SignedTransfer,
    SubmissionError,
)

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
_ARTIST_ID = str(uuid.uuid4())
_WALLET = base58.b58encode(bytes([9]) * 32).decode("ascii")
_OTHER_WALLET = base58.b58encode(bytes([8]) * 32).decode("ascii")
_BLOCKHASH = base58.b58encode(bytes(range(32))).decode("ascii")
_KEYPAIR = PlatformKeypair(bytes([1]) * 32)

_NO_RESERVATION = {
    "withdrawal_reservation_id": None,
    "withdrawal_reserved_at": None,
    "withdrawal_amount": None,
    "withdrawal_signature": None,
}


def _decode_transfer(wire: bytes) -> tuple[str, int]:
    # one signature, then the message: 3-byte header, key count, from, to, system program
    to_pubkey = wire[65 + 4 + 32 : 65 + 4 + 64]
    return base58.b58encode(to_pubkey).decode("ascii"), int.from_bytes(wire[-8:], "little")


@dataclass
class _FakeLedger:
    """Mirrors the predicates LedgerStore evaluates in SQL."""

    balance: ArtistBalance | None
    payments: dict[str, dict] = field(default_factory=dict)
    reservations: list[str] = field(default_factory=list)
    released: list[dict] = field(default_factory=list)
    complete_error: Exception | None = None
    after_balance_read: Callable[[], None] | None = None
    after_unreconciled_check: Callable[[], Awaitable[None]] | None = None

    def _has_flagged_payment(self) -> bool:
        return any(p.get("reconciliation_required") for p in self.payments.values())

    def _add_payment(self, **record) -> str:
        payment_id = str(uuid.uuid4())
        self.payments[payment_id] = record
        return payment_id

    def _release_signed(self, signature: str | None) -> None:
        if signature and self.balance.withdrawal_signature == signature:
            self.balance = replace(self.balance, **_NO_RESERVATION)

    async def get_artist_balance(self, artist_id: str) -> ArtistBalance | None:
        snapshot = self.balance
        if self.after_balance_read is not None:
            self.after_balance_read()
        return snapshot

    async def has_unreconciled_withdrawal(self, artist_id: str) -> bool:
        flagged = self._has_flagged_payment()
        hook, self.after_unreconciled_check = self.after_unreconciled_check, None
        if hook is not None:
            await hook()
        return flagged

    async def reserve_withdrawal(self, *, artist_id, amount, reservation_id, now, stale_before) -> bool:
        current = self.balance
        reclaimable = current.withdrawal_reservation_id is None or (
            current.withdrawal_reserved_at < stale_before and current.withdrawal_signature is None
        )
        if current.pending_withdrawal != amount or not reclaimable or self._has_flagged_payment():
            return False
        self.reservations.append(reservation_id)
        self.balance = replace(
            current,
            withdrawal_reservation_id=reservation_id,
            withdrawal_reserved_at=now,
            withdrawal_amount=amount,
            withdrawal_signature=None,
        )
        return True

    async def record_withdrawal_signature(self, *, artist_id, reservation_id, signature) -> bool:
        if self.balance.withdrawal_reservation_id != reservation_id or self.balance.withdrawal_signature is not None:
            return False
        self.balance = replace(self.balance, withdrawal_signature=signature)
        return True

    async def complete_withdrawal(self, *, artist_id, reservation_id, amount, signature, now) -> str:
        if self.complete_error is not None:
            raise self.complete_error
        if self.balance.withdrawal_reservation_id != reservation_id:
            lost_id = self._add_payment(
                status="failed",
                amount=amount,
                signature=signature,
                reconciliation_required=True,
                created_at=now,
            )
            raise WithdrawalConflictError("reservation lost", details=f"payment_id={lost_id}")
        self.balance = replace(
            self.balance,
            pending_withdrawal=self.balance.pending_withdrawal - amount,
            **_NO_RESERVATION,
        )
        return self._add_payment(status="completed", amount=amount, signature=signature)

    async def release_withdrawal(self, *, artist_id, reservation_id, amount, error, signature, reconciliation_required, now) -> str:
        if not reconciliation_required and self.balance.withdrawal_reservation_id == reservation_id:
            self.balance = replace(self.balance, **_NO_RESERVATION)
        record = {
            "status": "failed",
            "amount": amount,
            "signature": signature,
            "error": error,
            "reconciliation_required": reconciliation_required,
            "created_at": now,
        }
        self.released.append(record)
        return self._add_payment(**record)

    async def flag_orphaned_withdrawal(self, *, artist_id, stale_before, now) -> str | None:
        current = self.balance
        if current.withdrawal_signature is None or not current.withdrawal_reserved_at < stale_before:
            return None
        for payment_id, record in self.payments.items():
            if record.get("signature") == current.withdrawal_signature and record.get("reconciliation_required"):
                return payment_id
        return self._add_payment(
            status="failed",
            amount=current.withdrawal_amount,
            signature=current.withdrawal_signature,
            error="Withdrawal was broadcast but never finalized",
            reconciliation_required=True,
            created_at=now,
        )

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        record = self.payments.get(payment_id)
        if record is None:
            return None
        return PaymentRecord(
            id=payment_id,
            artist_id=_ARTIST_ID,
            amount=record["amount"],
            status=record["status"],
            transaction_signature=record.get("signature"),
            reconciliation_required=record.get("reconciliation_required", False),
            created_at=record.get("created_at", _NOW),
        )

    async def settle_reconciled_transfer(self, *, payment_id, now) -> str | None:
        record = self.payments[payment_id]
        if not record.get("reconciliation_required"):
            return None
        record["reconciliation_required"] = False
        self.balance = replace(self.balance, pending_withdrawal=max(self.balance.pending_withdrawal - record["amount"], 0))
        self._release_signed(record["signature"])
        return self._add_payment(status="completed", amount=record["amount"], signature=record["signature"])

    async def clear_reconciliation(self, *, payment_id, note) -> bool:
        record = self.payments[payment_id]
        if not record.get("reconciliation_required"):
            return False
        record["reconciliation_required"] = False
        record["error"] = f"{record.get('error')}; {note}"
        self._release_signed(record["signature"])
        return True


class _FakeChain:
    def __init__(
        self,
        *,
        funding: int = 10**12,
        outcome: ConfirmationOutcome = ConfirmationOutcome.CONFIRMED,
        send_failure: str | None = None,
        status: SignatureStatus | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.funding = funding
        self.outcome = outcome
        self.send_failure = send_failure
        self.status = status
        self.gate = gate
        self.attempted: list[str] = []
        self.submitted: list[tuple[str, int]] = []
        self.broadcast = asyncio.Event()

    async def get_balance(self, address: str) -> int:
        assert address == _KEYPAIR.address
        return self.funding

    async def get_recent_checkpoint(self) -> Checkpoint:
        return Checkpoint(blockhash=_BLOCKHASH, last_valid_block_height=100)

    async def send_signed_transfer(self, transfer: SignedTransfer) -> str:
        self.attempted.append(transfer.signature)
        if self.send_failure is not None:
            raise SubmissionError(
                self.send_failure,
                signature=transfer.signature,
                may_have_landed=self.send_failure == "transport",
            )
        self.submitted.append(_decode_transfer(transfer.wire))
        self.broadcast.set()
        return transfer.signature

    async def await_confirmation(self, signature: str, timeout: float) -> ConfirmationResult:
        if self.gate is not None:
            await self.gate.wait()
        if self.outcome is ConfirmationOutcome.ERROR:
            return ConfirmationResult(self.outcome, error='{"InstructionError": [0, "Custom"]}')
        return ConfirmationResult(self.outcome)

    async def get_signature_status(self, signature: str, *, search_history: bool = False) -> SignatureStatus | None:
        assert search_history is True
        return self.status


def _balance(pending: int, wallet: str = _WALLET) -> ArtistBalance:
    return ArtistBalance(
        id=_ARTIST_ID,
        wallet_address=wallet,
        total_earnings=max(pending, 10_000_000),
        pending_withdrawal=pending,
        withdrawal_reservation_id=None,
        withdrawal_reserved_at=None,
    )


def _service(
    ledger: _FakeLedger,
    chain: _FakeChain,
    now: datetime = _NOW,
    keypair: PlatformKeypair | None = _KEYPAIR,
) -> WithdrawalService:
    return WithdrawalService(
        ledger,
        chain,
        keypair,
        confirmation_timeout_seconds=0.1,
        reservation_ttl_seconds=300,
        fee_allowance_lamports=5000,
        reconciliation_grace_seconds=180,
        cluster="devnet",
        clock=lambda: now,
    )


async def _timed_out_withdrawal(ledger: _FakeLedger) -> str:
    with pytest.raises(ConfirmationTimeoutError) as excinfo:
        await _service(ledger, _FakeChain(outcome=ConfirmationOutcome.TIMEOUT)).withdraw(_ARTIST_ID, _WALLET)
    return excinfo.value.payment_id


@pytest.mark.asyncio
async def test_successful_withdrawal_zeroes_pending() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    chain = _FakeChain()

    result = await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    assert result.amount == 3_000_000
    assert result.transaction_signature == chain.attempted[0]
    assert result.explorer_url == f"https://explorer.solana.com/tx/{result.transaction_signature}?cluster=devnet"
    assert chain.submitted == [(_WALLET, 3_000_000)]
    assert ledger.balance.pending_withdrawal == 0
    assert ledger.balance.total_earnings == 10_000_000
    assert ledger.balance.withdrawal_signature is None
    assert ledger.payments[result.payment_id]["status"] == "completed"
    assert ledger.payments[result.payment_id]["signature"] == result.transaction_signature


@pytest.mark.asyncio
async def test_missing_fields_are_rejected() -> None:
    service = _service(_FakeLedger(_balance(1)), _FakeChain())
    with pytest.raises(ValidationError):
        await service.withdraw(None, _WALLET)
    with pytest.raises(ValidationError):
        await service.withdraw(_ARTIST_ID, "  ")


@pytest.mark.asyncio
async def test_malformed_input_is_rejected() -> None:
    service = _service(_FakeLedger(_balance(1)), _FakeChain())
    with pytest.raises(ValidationError):
        await service.withdraw("not-a-uuid", _WALLET)
    with pytest.raises(ValidationError):
        await service.withdraw(_ARTIST_ID, "0xabc")


@pytest.mark.asyncio
async def test_unknown_artist_is_rejected() -> None:
    with pytest.raises(ValidationError):
        await _service(_FakeLedger(None), _FakeChain()).withdraw(_ARTIST_ID, _WALLET)


@pytest.mark.asyncio
async def test_zero_balance_is_rejected_without_transfer() -> None:
    chain = _FakeChain()
    with pytest.raises(InsufficientBalanceError):
        await _service(_FakeLedger(_balance(0)), chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []


@pytest.mark.asyncio
async def test_wallet_mismatch_is_rejected() -> None:
    chain = _FakeChain()
    ledger = _FakeLedger(_balance(5, wallet=_OTHER_WALLET))
    with pytest.raises(ValidationError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []
    assert ledger.reservations == []


@pytest.mark.asyncio
async def test_withdraw_without_signing_key_is_refused() -> None:
    ledger = _FakeLedger(_balance(5))
    with pytest.raises(TransferExecutionError):
        await _service(ledger, _FakeChain(), keypair=None).withdraw(_ARTIST_ID, _WALLET)
    assert ledger.reservations == []


@pytest.mark.asyncio
async def test_unreconciled_withdrawal_blocks_retry() -> None:
    ledger = _FakeLedger(_balance(5))
    ledger.payments[str(uuid.uuid4())] = {"status": "failed", "amount": 5, "signature": "x", "reconciliation_required": True}
    chain = _FakeChain()
    with pytest.raises(ReconciliationRequiredError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []


@pytest.mark.asyncio
async def test_live_reservation_conflicts() -> None:
    held = replace(_balance(5), withdrawal_reservation_id=str(uuid.uuid4()), withdrawal_reserved_at=_NOW)
    chain = _FakeChain()
    with pytest.raises(WithdrawalConflictError):
        await _service(_FakeLedger(held), chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []


@pytest.mark.asyncio
async def test_balance_change_after_read_conflicts() -> None:
    ledger = _FakeLedger(_balance(3_000_000))

    def credit_more() -> None:
        ledger.balance = replace(ledger.balance, pending_withdrawal=4_000_000)

    ledger.after_balance_read = credit_more
    chain = _FakeChain()

    with pytest.raises(WithdrawalConflictError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []
    assert ledger.balance.pending_withdrawal == 4_000_000


@pytest.mark.asyncio
async def test_stale_unsigned_reservation_is_reclaimed() -> None:
    abandoned = replace(
        _balance(2_000),
        withdrawal_reservation_id=str(uuid.uuid4()),
        withdrawal_reserved_at=_NOW - timedelta(minutes=10),
        withdrawal_amount=2_000,
    )
    chain = _FakeChain()

    result = await _service(_FakeLedger(abandoned), chain).withdraw(_ARTIST_ID, _WALLET)

    assert result.amount == 2_000
    assert chain.submitted == [(_WALLET, 2_000)]


@pytest.mark.asyncio
async def test_reservation_lost_before_broadcast_sends_nothing() -> None:
    ledger = _FakeLedger(_balance(2_000))
    chain = _FakeChain()
    original = ledger.record_withdrawal_signature

    async def taken_over(**kwargs) -> bool:
        ledger.balance = replace(ledger.balance, withdrawal_reservation_id=str(uuid.uuid4()))
        return await original(**kwargs)

    ledger.record_withdrawal_signature = taken_over

    with pytest.raises(WithdrawalConflictError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)
    assert chain.attempted == []
    assert ledger.released == []


@pytest.mark.asyncio
async def test_underfunded_platform_keeps_balance() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    chain = _FakeChain(funding=3_000_000)

    with pytest.raises(InsufficientFundingError) as excinfo:
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    assert chain.attempted == []
    assert ledger.balance.pending_withdrawal == 3_000_000
    assert ledger.balance.withdrawal_reservation_id is None
    assert excinfo.value.payment_id is not None
    assert ledger.released[0]["reconciliation_required"] is False


@pytest.mark.asyncio
async def test_rejected_submission_records_failure() -> None:
    ledger = _FakeLedger(_balance(2_000))
    chain = _FakeChain(send_failure="rejected")

    with pytest.raises(TransferExecutionError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    assert ledger.balance.pending_withdrawal == 2_000
    assert ledger.balance.withdrawal_reservation_id is None
    assert ledger.released[0]["signature"] == chain.attempted[0]
    assert ledger.released[0]["reconciliation_required"] is False


@pytest.mark.asyncio
async def test_lost_submission_is_flagged_and_keeps_reservation() -> None:
    ledger = _FakeLedger(_balance(2_000))
    chain = _FakeChain(send_failure="transport")

    with pytest.raises(TransferExecutionError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    assert ledger.released[0]["reconciliation_required"] is True
    assert ledger.balance.withdrawal_signature == chain.attempted[0]


@pytest.mark.asyncio
async def test_onchain_failure_keeps_balance() -> None:
    ledger = _FakeLedger(_balance(2_000))
    chain = _FakeChain(outcome=ConfirmationOutcome.ERROR)

    with pytest.raises(TransferExecutionError) as excinfo:
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    assert excinfo.value.signature == chain.attempted[0]
    assert ledger.balance.pending_withdrawal == 2_000
    assert ledger.balance.withdrawal_reservation_id is None
    assert ledger.released[0]["reconciliation_required"] is False


@pytest.mark.asyncio
async def test_confirmation_timeout_flags_payment_and_holds_reservation() -> None:
    ledger = _FakeLedger(_balance(3_000_000))

    payment_id = await _timed_out_withdrawal(ledger)

    record = ledger.payments[payment_id]
    assert record["status"] == "failed"
    assert record["reconciliation_required"] is True
    assert ledger.balance.pending_withdrawal == 3_000_000
    assert ledger.balance.withdrawal_reservation_id is not None
    assert ledger.balance.withdrawal_signature == record["signature"]


@pytest.mark.asyncio
async def test_timeout_during_concurrent_withdrawal_pays_once() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    gate = asyncio.Event()
    chain = _FakeChain(outcome=ConfirmationOutcome.TIMEOUT, gate=gate)
    service = _service(ledger, chain)

    first = asyncio.create_task(service.withdraw(_ARTIST_ID, _WALLET))
    await asyncio.wait_for(chain.broadcast.wait(), timeout=1)

    # The second request passed its reconciliation check just before the first timed out.
    async def first_times_out() -> None:
        gate.set()
        with pytest.raises(ConfirmationTimeoutError):
            await first

    ledger.after_unreconciled_check = first_times_out

    with pytest.raises(ReconciliationRequiredError):
        await service.withdraw(_ARTIST_ID, _WALLET)

    assert chain.submitted == [(_WALLET, 3_000_000)]
    assert ledger.balance.pending_withdrawal == 3_000_000


@pytest.mark.asyncio
async def test_unrecorded_debit_is_flagged_instead_of_paid_again() -> None:
    ledger = _FakeLedger(
        _balance(3_000_000),
        complete_error=OperationalError("UPDATE artists", {}, Exception("connection reset")),
    )
    chain = _FakeChain()

    with pytest.raises(OperationalError):
        await _service(ledger, chain).withdraw(_ARTIST_ID, _WALLET)

    signature = chain.attempted[0]
    assert ledger.balance.withdrawal_signature == signature
    ledger.complete_error = None

    later = _NOW + timedelta(minutes=10)
    with pytest.raises(ReconciliationRequiredError) as excinfo:
        await _service(ledger, chain, now=later).withdraw(_ARTIST_ID, _WALLET)

    flagged_id = excinfo.value.details.removeprefix("payment_id=")
    assert ledger.payments[flagged_id]["signature"] == signature
    assert ledger.payments[flagged_id]["amount"] == 3_000_000
    assert chain.submitted == [(_WALLET, 3_000_000)]

    chain.status = SignatureStatus(confirmation_status="finalized", err=None)
    result = await _service(ledger, chain, now=later, keypair=None).reconcile(flagged_id)

    assert result.outcome is ReconciliationOutcome.COMPLETED
    assert ledger.balance.pending_withdrawal == 0
    assert ledger.balance.withdrawal_reservation_id is None


@pytest.mark.asyncio
async def test_reconcile_landed_transfer_debits_balance() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    payment_id = await _timed_out_withdrawal(ledger)

    chain = _FakeChain(status=SignatureStatus(confirmation_status="finalized", err=None))
    result = await _service(ledger, chain, keypair=None).reconcile(payment_id)

    assert result.outcome is ReconciliationOutcome.COMPLETED
    assert result.completed_payment_id is not None
    assert ledger.balance.pending_withdrawal == 0
    assert ledger.balance.withdrawal_reservation_id is None
    assert ledger.payments[payment_id]["reconciliation_required"] is False


@pytest.mark.asyncio
async def test_reconcile_failed_transfer_frees_balance_for_retry() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    payment_id = await _timed_out_withdrawal(ledger)

    chain = _FakeChain(status=SignatureStatus(confirmation_status="confirmed", err={"InstructionError": [0, 1]}))
    result = await _service(ledger, chain).reconcile(payment_id)

    assert result.outcome is ReconciliationOutcome.NOT_LANDED
    assert ledger.balance.pending_withdrawal == 3_000_000
    assert ledger.balance.withdrawal_reservation_id is None
    assert ledger.payments[payment_id]["reconciliation_required"] is False

    retry = _FakeChain()
    await _service(ledger, retry).withdraw(_ARTIST_ID, _WALLET)
    assert retry.submitted == [(_WALLET, 3_000_000)]


@pytest.mark.asyncio
async def test_reconcile_unknown_transfer_waits_for_grace_period() -> None:
    ledger = _FakeLedger(_balance(3_000_000))
    payment_id = await _timed_out_withdrawal(ledger)

    early = await _service(ledger, _FakeChain(), now=_NOW + timedelta(seconds=30)).reconcile(payment_id)
    assert early.outcome is ReconciliationOutcome.PENDING
    assert ledger.payments[payment_id]["reconciliation_required"] is True
    assert ledger.balance.withdrawal_signature is not None

    late = await _service(ledger, _FakeChain(), now=_NOW + timedelta(minutes=10)).reconcile(payment_id)
    assert late.outcome is ReconciliationOutcome.NOT_LANDED
    assert ledger.payments[payment_id]["reconciliation_required"] is False
    assert ledger.balance.withdrawal_signature is None


@pytest.mark.asyncio
async def test_reconcile_rejects_bad_targets() -> None:
    ledger = _FakeLedger(_balance(1))
    service = _service(ledger, _FakeChain())

    with pytest.raises(ValidationError):
        await service.reconcile(None)
    with pytest.raises(PaymentNotFoundError):
        await service.reconcile(str(uuid.uuid4()))

    settled_id = str(uuid.uuid4())
    ledger.payments[settled_id] = {"status": "completed", "amount": 1, "signature": "sig"}
    with pytest.raises(ValidationError):
        await service.reconcile(settled_id)
