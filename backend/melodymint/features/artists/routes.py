from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from melodymint.features.artists.schemas import (
    ArtistCreateRequest,
    ArtistDashboardResponse,
    ArtistResponse,
    PaymentItem,
)
from melodymint.platform.db.models import PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_FAILED, PAYMENT_STATUS_PENDING, Artist, Payment, Track
from melodymint.platform.db.session import get_session
from melodymint.platform.services.solana import is_valid_address, lamports_to_sol


router = APIRouter(prefix="/artists")


_DASHBOARD_RECENT_PAYMENTS = 10
_PAYMENT_STATUSES = {PAYMENT_STATUS_PENDING, PAYMENT_STATUS_COMPLETED, PAYMENT_STATUS_FAILED}


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Not found")


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=400, detail=detail)


def _parse_uuid(value: str) -> str:
    try:
        return str(UUID(value))
    except ValueError:
        raise _not_found() from None


def _artist_response(artist: Artist) -> ArtistResponse:
    return ArtistResponse(
        id=artist.id,
        user_id=artist.user_id,
        artist_name=artist.artist_name,
        bio=artist.bio,
        avatar_url=artist.avatar_url,
        verified=artist.verified,
        wallet_address=artist.wallet_address,
        total_streams=artist.total_streams,
        total_earnings=artist.total_earnings,
        pending_withdrawal=artist.pending_withdrawal,
        created_at=artist.created_at,
    )


def _payment_item(payment: Payment) -> PaymentItem:
    return PaymentItem(
        id=payment.id,
        track_id=payment.track_id,
        amount=payment.amount,
        amount_sol=float(lamports_to_sol(payment.amount)),
        status=payment.status,
        stream_count=payment.stream_count,
        transaction_signature=payment.transaction_signature,
        reconciliation_required=payment.reconciliation_required,
        error=payment.error,
        processed_at=payment.processed_at,
        created_at=payment.created_at,
    )


async def _get_artist_or_404(session: AsyncSession, artist_id: str) -> Artist:
    result = await session.execute(select(Artist).where(Artist.id == _parse_uuid(artist_id)))
    artist = result.scalar_one_or_none()
    if artist is None:
        raise _not_found()
    return artist


@router.post("", response_model=ArtistResponse)
async def create_artist(
    body: ArtistCreateRequest,
    session: AsyncSession = Depends(get_session),
) -> ArtistResponse:
    try:
        user_id = str(UUID(body.user_id))
    except ValueError:
        raise _bad_request("user_id must be a UUID") from None
    if not is_valid_address(body.wallet_address):
        raise _bad_request("wallet_address is not a valid Solana address")

    artist = Artist(
        user_id=user_id,
        artist_name=body.artist_name.strip(),
        bio=body.bio,
        avatar_url=body.avatar_url,
        wallet_address=body.wallet_address,
    )
    session.add(artist)
    await session.commit()
    await session.refresh(artist)

    return _artist_response(artist)


@router.get("/{artist_id}", response_model=ArtistResponse)
async def get_artist(artist_id: str, session: AsyncSession = Depends(get_session)) -> ArtistResponse:
    return _artist_response(await _get_artist_or_404(session, artist_id))


@router.get("/{artist_id}/dashboard", response_model=ArtistDashboardResponse)
async def artist_dashboard(artist_id: str, session: AsyncSession = Depends(get_session)) -> ArtistDashboardResponse:
    artist = await _get_artist_or_404(session, artist_id)

    track_count_row = await session.execute(
        select(func.count()).select_from(Track).where(Track.artist_id == artist.id)
    )
    track_count = int(track_count_row.scalar() or 0)

    result = await session.execute(
        select(Payment)
        .where(Payment.artist_id == artist.id)
        .order_by(desc(Payment.created_at))
        .limit(_DASHBOARD_RECENT_PAYMENTS)
    )
    payments = list(result.scalars().all())

    return ArtistDashboardResponse(
        artist_id=artist.id,
        artist_name=artist.artist_name,
        wallet_address=artist.wallet_address,
        total_streams=artist.total_streams,
        total_earnings=artist.total_earnings,
        total_earnings_sol=float(lamports_to_sol(artist.total_earnings)),
        pending_withdrawal=artist.pending_withdrawal,
        pending_withdrawal_sol=float(lamports_to_sol(artist.pending_withdrawal)),
        track_count=track_count,
        recent_payments=[_payment_item(p) for p in payments],
    )


@router.get("/{artist_id}/payments", response_model=list[PaymentItem])
async def artist_payments(
    artist_id: str,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> list[PaymentItem]:
    artist = await _get_artist_or_404(session, artist_id)
    if status is not None and status not in _PAYMENT_STATUSES:
        raise _bad_request("status must be one of pending, completed, failed")

    query = select(Payment).where(Payment.artist_id == artist.id)
    if status is not None:
        query = query.where(Payment.status == status)

    result = await session.execute(query.order_by(desc(Payment.created_at)).limit(limit))
    return [_payment_item(p) for p in result.scalars().all()]
