from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ArtistCreateRequest(BaseModel):
    user_id: str
    artist_name: str = Field(min_length=1, max_length=200)
    wallet_address: str
    bio: str | None = None
    avatar_url: str | None = None


class ArtistResponse(BaseModel):
    id: str
    user_id: str
    artist_name: str
    bio: str | None
    avatar_url: str | None
    verified: bool
    wallet_address: str
    total_streams: int
    total_earnings: int
    pending_withdrawal: int
    created_at: datetime


class PaymentItem(BaseModel):
    id: str
    track_id: str | None
    amount: int
    amount_sol: float
    status: str
    stream_count: int
    transaction_signature: str | None
    reconciliation_required: bool
    error: str | None
    processed_at: datetime | None
    created_at: datetime


class ArtistDashboardResponse(BaseModel):
    artist_id: str
    artist_name: str
    wallet_address: str
    total_streams: int
    total_earnings: int
    total_earnings_sol: float
    pending_withdrawal: int
    pending_withdrawal_sol: float
    track_count: int
    recent_payments: list[PaymentItem]
