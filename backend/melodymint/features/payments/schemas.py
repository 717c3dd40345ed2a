from datetime import datetime

from pydantic import BaseModel


class WithdrawRequest(BaseModel):
    artist_id: str | None = None
    wallet_address: str | None = None


class WithdrawResponse(BaseModel):
    success: bool = True
    amount: int
    amount_sol: float
    transaction_signature: str
    payment_id: str
    explorer_url: str


class ReconcileRequest(BaseModel):
    payment_id: str | None = None


class ReconcileResponse(BaseModel):
    payment_id: str
    transaction_signature: str
    outcome: str
    completed_payment_id: str | None


class ArtistCreditItem(BaseModel):
    artist_id: str
    wallet: str
    stream_count: int
    payment_amount: int
    payment_amount_sol: float
    payment_id: str


class AggregationFailureItem(BaseModel):
    artist_id: str
    error: str


class AggregationReportResponse(BaseModel):
    success: bool = True
    skipped: bool
    window_start: datetime
    window_end: datetime
    rate_lamports: int
    processed_artists: int
    total_streams: int
    total_amount: int
    total_amount_sol: float
    payments: list[ArtistCreditItem]
    failures: list[AggregationFailureItem]


class ErrorResponse(BaseModel):
    error: str
    kind: str
    details: str | None = None
