from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from melodymint.features.payments.errors import WithdrawalConflictError
from melodymint.platform.db.models import (
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    Artist,
    Payment,
    Stream,
    Track,
)

logger = logging.getLogger(__name__)

_CLEARED_RESERVATION = {
    "withdrawal_reservation_id": None,
    "withdrawal_reserved_at": None,
    "withdrawal_amount": None,
    "withdrawal_signature": None,
}


def _unreconciled_payment(artist_id: str) -> Select:
    return select(Payment.id).where(Payment.artist_id == artist_id, Payment.reconciliation_required.is_(True))


@dataclass(frozen=True)
class ArtistStreamCount:
    artist_id: str
    wallet_address: str
    stream_count: int


@dataclass(frozen=True)
class SettledBatch:
    payment_id: str
    stream_count: int
    amount: int


@dataclass(frozen=True)
class ArtistBalance:
    id: str
    wallet_address: str
    total_earnings: int
    pending_withdrawal: int
    withdrawal_reservation_id: str | None
    withdrawal_reserved_at: datetime | None
    withdrawal_amount: int | None = None
    withdrawal_signature: str | None = None


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    artist_id: str
    amount: int
    status: str
    transaction_signature: str | None
    reconciliation_required: bool
    created_at: datetime


class LedgerStore:
    """Transactional reads and writes against artists, streams and payments.

    Every balance mutation is a single UPDATE evaluated by the database
    against the stored value.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def unsettled_stream_counts(self, window_start: datetime, window_end: datetime) -> list[ArtistStreamCount]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Artist.id, Artist.wallet_address, func.count(Stream.id))
                .select_from(Stream)
                .join(Track, Track.id == Stream.track_id)
                .join(Artist, Artist.id == Track.artist_id)
                .where(
                    Stream.completed.is_(True),
                    Stream.settled_payment_id.is_(None),
                    Stream.streamed_at >= window_start,
                    Stream.streamed_at < window_end,
                )
                .group_by(Artist.id, Artist.wallet_address)
                .order_by(Artist.id)
            )

        return [
            ArtistStreamCount(artist_id=str(artist_id), wallet_address=str(wallet), stream_count=int(count))
            for artist_id, wallet, count in rows.all()
            if count
        ]

    async def settle_artist_streams(
        self,
        *,
        artist_id: str,
        window_start: datetime,
        window_end: datetime,
        rate_lamports: int,
        now: datetime,
    ) -> SettledBatch | None:
        """Claim the artist's unsettled streams in the window and credit them.

        Returns None when a concurrent cycle already claimed every row.
        """
        async with self._session_factory() as session:
            payment = Payment(
                artist_id=artist_id,
                amount=0,
                status=PAYMENT_STATUS_PENDING,
                transaction_signature=None,
                stream_count=0,
            )
            session.add(payment)
            await session.flush()

            claimed = await session.execute(
                update(Stream)
                .where(
                    Stream.settled_payment_id.is_(None),
                    Stream.completed.is_(True),
                    Stream.streamed_at >= window_start,
                    Stream.streamed_at < window_end,
                    Stream.track_id.in_(select(Track.id).where(Track.artist_id == artist_id)),
                )
                .values(settled_payment_id=payment.id, settled_at=now)
                .returning(Stream.id)
                .execution_options(synchronize_session=False)
            )
            stream_count = len(claimed.scalars().all())
            if stream_count == 0:
                await session.rollback()
                return None

            amount = stream_count * rate_lamports
            payment.amount = amount
            payment.stream_count = stream_count

            credited = await session.execute(
                update(Artist)
                .where(Artist.id == artist_id)
                .values(
                    total_streams=Artist.total_streams + stream_count,
                    total_earnings=Artist.total_earnings + amount,
                    pending_withdrawal=Artist.pending_withdrawal + amount,
                )
                .execution_options(synchronize_session=False)
            )
            if credited.rowcount != 1:
                await session.rollback()
                raise LookupError(f"Artist {artist_id} disappeared while crediting")

            await session.commit()
            return SettledBatch(payment_id=payment.id, stream_count=stream_count, amount=amount)

    async def get_artist_balance(self, artist_id: str) -> ArtistBalance | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Artist).where(Artist.id == artist_id))
            artist = result.scalar_one_or_none()

        if artist is None:
            return None
        return ArtistBalance(
            id=artist.id,
            wallet_address=artist.wallet_address,
            total_earnings=int(artist.total_earnings),
            pending_withdrawal=int(artist.pending_withdrawal),
            withdrawal_reservation_id=artist.withdrawal_reservation_id,
            withdrawal_reserved_at=artist.withdrawal_reserved_at,
            withdrawal_amount=artist.withdrawal_amount,
            withdrawal_signature=artist.withdrawal_signature,
        )

    async def has_unreconciled_withdrawal(self, artist_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(_unreconciled_payment(artist_id).exists()))
            return bool(result.scalar())

    async def reserve_withdrawal(
        self,
        *,
        artist_id: str,
        amount: int,
        reservation_id: str,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """Take the artist's withdrawal slot for ``amount``.

        Fails when the balance moved since it was read, when another live
        reservation exists, when an expired reservation already carries a
        broadcast signature, or while any payment awaits reconciliation.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Artist)
                .where(
                    Artist.id == artist_id,
                    Artist.pending_withdrawal == amount,
                    or_(
                        Artist.withdrawal_reservation_id.is_(None),
                        and_(
                            Artist.withdrawal_reserved_at < stale_before,
                            Artist.withdrawal_signature.is_(None),
                        ),
                    ),
                    ~_unreconciled_payment(artist_id).exists(),
                )
                .values(
                    withdrawal_reservation_id=reservation_id,
                    withdrawal_reserved_at=now,
                    withdrawal_amount=amount,
                    withdrawal_signature=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def record_withdrawal_signature(self, *, artist_id: str, reservation_id: str, signature: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Artist)
                .where(
                    Artist.id == artist_id,
                    Artist.withdrawal_reservation_id == reservation_id,
                    Artist.withdrawal_signature.is_(None),
                )
                .values(withdrawal_signature=signature)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def complete_withdrawal(
        self,
        *,
        artist_id: str,
        reservation_id: str,
        amount: int,
        signature: str,
        now: datetime,
    ) -> str:
        async with self._session_factory() as session:
            debited = await session.execute(
                update(Artist)
                .where(
                    Artist.id == artist_id,
                    Artist.withdrawal_reservation_id == reservation_id,
                    Artist.pending_withdrawal >= amount,
                )
                .values(pending_withdrawal=Artist.pending_withdrawal - amount, **_CLEARED_RESERVATION)
                .execution_options(synchronize_session=False)
            )

            if debited.rowcount != 1:
                # The transfer landed but the reservation is gone; park it for reconciliation.
                lost = Payment(
                    artist_id=artist_id,
                    amount=amount,
                    status=PAYMENT_STATUS_FAILED,
                    transaction_signature=signature,
                    error="Withdrawal reservation lost before finalization",
                    reconciliation_required=True,
                    processed_at=now,
                )
                session.add(lost)
                await session.commit()
                logger.error(
                    "Transfer %s for artist %s confirmed after its reservation was lost; payment %s needs reconciliation",
                    signature,
                    artist_id,
                    lost.id,
                )
                raise WithdrawalConflictError(
                    "Withdrawal reservation was lost before the balance could be settled",
                    details=f"payment_id={lost.id}",
                )

            payment = Payment(
                artist_id=artist_id,
                amount=amount,
                status=PAYMENT_STATUS_COMPLETED,
                transaction_signature=signature,
                processed_at=now,
            )
            session.add(payment)
            await session.commit()
            return payment.id

    async def release_withdrawal(
        self,
        *,
        artist_id: str,
        reservation_id: str,
        amount: int,
        error: str,
        signature: str | None,
        reconciliation_required: bool,
        now: datetime,
    ) -> str:
        """Record a failed withdrawal.

        A transfer whose outcome is unknown keeps its reservation, so the
        balance stays locked until reconciliation settles or clears it.
        """
        async with self._session_factory() as session:
            if not reconciliation_required:
                await session.execute(
                    update(Artist)
                    .where(Artist.id == artist_id, Artist.withdrawal_reservation_id == reservation_id)
                    .values(**_CLEARED_RESERVATION)
                    .execution_options(synchronize_session=False)
                )

            payment = Payment(
                artist_id=artist_id,
                amount=amount,
                status=PAYMENT_STATUS_FAILED,
                transaction_signature=signature,
                error=error,
                reconciliation_required=reconciliation_required,
                processed_at=now,
            )
            session.add(payment)
            await session.commit()
            return payment.id

    async def flag_orphaned_withdrawal(self, *, artist_id: str, stale_before: datetime, now: datetime) -> str | None:
        """Turn an expired, signed reservation with no payment row into a reconcilable payment.

        Covers transfers broadcast by a process that died or lost the
        database before finalizing. Returns the flagged payment id, or None
        when there is nothing to flag.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Artist)
                .where(
                    Artist.id == artist_id,
                    Artist.withdrawal_signature.is_not(None),
                    Artist.withdrawal_reserved_at < stale_before,
                )
                .with_for_update()
            )
            artist = result.scalar_one_or_none()
            if artist is None:
                return None

            existing = await session.execute(
                select(Payment.id).where(
                    Payment.transaction_signature == artist.withdrawal_signature,
                    Payment.reconciliation_required.is_(True),
                )
            )
            flagged_id = existing.scalars().first()
            if flagged_id is not None:
                return flagged_id

            payment = Payment(
                artist_id=artist_id,
                amount=int(artist.withdrawal_amount or 0),
                status=PAYMENT_STATUS_FAILED,
                transaction_signature=artist.withdrawal_signature,
                error="Withdrawal was broadcast but never finalized",
                reconciliation_required=True,
                processed_at=now,
            )
            session.add(payment)
            await session.commit()
            logger.warning(
                "Artist %s held an unfinished signed withdrawal %s; flagged as payment %s",
                artist_id,
                payment.transaction_signature,
                payment.id,
            )
            return payment.id

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.id == payment_id))
            payment = result.scalar_one_or_none()

        if payment is None:
            return None
        return PaymentRecord(
            id=payment.id,
            artist_id=payment.artist_id,
            amount=int(payment.amount),
            status=payment.status,
            transaction_signature=payment.transaction_signature,
            reconciliation_required=bool(payment.reconciliation_required),
            created_at=payment.created_at,
        )

    async def settle_reconciled_transfer(self, *, payment_id: str, now: datetime) -> str | None:
        """Book a transfer that reconciliation found on-chain. None if already handled."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.id == payment_id, Payment.reconciliation_required.is_(True))
                .with_for_update()
            )
            failed = result.scalar_one_or_none()
            if failed is None:
                return None

            await session.execute(
                update(Artist)
                .where(Artist.id == failed.artist_id)
                .values(pending_withdrawal=func.greatest(Artist.pending_withdrawal - failed.amount, 0))
                .execution_options(synchronize_session=False)
            )
            await self._release_signed_reservation(session, failed.artist_id, failed.transaction_signature)

            completed = Payment(
                artist_id=failed.artist_id,
                amount=failed.amount,
                status=PAYMENT_STATUS_COMPLETED,
                transaction_signature=failed.transaction_signature,
                processed_at=now,
            )
            session.add(completed)
            failed.reconciliation_required = False
            await session.commit()
            return completed.id

    async def clear_reconciliation(self, *, payment_id: str, note: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.reconciliation_required.is_(True))
                .values(
                    reconciliation_required=False,
                    error=func.concat_ws("; ", Payment.error, note),
                )
                .returning(Payment.artist_id, Payment.transaction_signature)
                .execution_options(synchronize_session=False)
            )
            row = result.one_or_none()
            if row is not None:
                await self._release_signed_reservation(session, row.artist_id, row.transaction_signature)
            await session.commit()
            return row is not None

    @staticmethod
    async def _release_signed_reservation(session: AsyncSession, artist_id: str, signature: str | None) -> None:
        if not signature:
            return
        await session.execute(
            update(Artist)
            .where(Artist.id == artist_id, Artist.withdrawal_signature == signature)
            .values(**_CLEARED_RESERVATION)
            .execution_options(synchronize_session=False)
        )
