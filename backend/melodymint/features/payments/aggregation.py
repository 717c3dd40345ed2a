from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from melodymint.features.payments.errors import ValidationError
from melodymint.features.payments.ledger import LedgerStore
from melodymint.platform.redis import release_lock, try_acquire_lock

logger = logging.getLogger(__name__)


_AGGREGATION_LOCK_KEY = "settlement:aggregation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ArtistCredit:
    artist_id: str
    wallet_address: str
    stream_count: int
    payment_amount: int
    payment_id: str


@dataclass(frozen=True)
class AggregationPartialFailure:
    artist_id: str
    error: str


@dataclass
class AggregationReport:
    window_start: datetime
    window_end: datetime
    credits: list[ArtistCredit] = field(default_factory=list)
    failures: list[AggregationPartialFailure] = field(default_factory=list)
    skipped: bool = False

    @property
    def processed_artists(self) -> int:
        return len(self.credits)

    @property
    def total_streams(self) -> int:
        return sum(credit.stream_count for credit in self.credits)

    @property
    def total_amount(self) -> int:
        return sum(credit.payment_amount for credit in self.credits)


class StreamAggregator:
    def __init__(
        self,
        ledger: LedgerStore,
        *,
        rate_lamports: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if rate_lamports < 0:
            raise ValueError("rate_lamports must be non-negative")
        self._ledger = ledger
        self._rate_lamports = rate_lamports
        self._clock = clock

    @property
    def rate_lamports(self) -> int:
        return self._rate_lamports

    async def run_aggregation_cycle(self, window_start: datetime, window_end: datetime) -> AggregationReport:
        """Credit completed, unsettled streams with ``window_start <= streamed_at < window_end``.

        Each artist is settled in its own transaction, so one failing artist
        leaves the others credited and its own streams unclaimed for a later
        cycle.
        """
        if window_end <= window_start:
            raise ValidationError("Aggregation window end must be after its start")

        report = AggregationReport(window_start=window_start, window_end=window_end)
        candidates = await self._ledger.unsettled_stream_counts(window_start, window_end)

        for candidate in candidates:
            try:
                batch = await self._ledger.settle_artist_streams(
                    artist_id=candidate.artist_id,
                    window_start=window_start,
                    window_end=window_end,
                    rate_lamports=self._rate_lamports,
                    now=self._clock(),
                )
            except (SQLAlchemyError, LookupError, OSError) as exc:
                logger.exception("Crediting artist %s failed; their streams stay unsettled", candidate.artist_id)
                report.failures.append(AggregationPartialFailure(artist_id=candidate.artist_id, error=str(exc)))
                continue

            if batch is None:
                logger.info("Streams of artist %s were claimed by a concurrent cycle", candidate.artist_id)
                continue

            report.credits.append(
                ArtistCredit(
                    artist_id=candidate.artist_id,
                    wallet_address=candidate.wallet_address,
                    stream_count=batch.stream_count,
                    payment_amount=batch.amount,
                    payment_id=batch.payment_id,
                )
            )

        logger.info(
            "Aggregation [%s, %s): credited %d artists, %d streams, %d lamports; %d failures",
            window_start.isoformat(),
            window_end.isoformat(),
            report.processed_artists,
            report.total_streams,
            report.total_amount,
            len(report.failures),
        )
        return report


def default_window(now: datetime, hours: int) -> tuple[datetime, datetime]:
    if hours <= 0:
        raise ValidationError("Aggregation window must span at least one hour")
    return now - timedelta(hours=hours), now


async def run_scheduled_cycle(
    aggregator: StreamAggregator,
    *,
    now: datetime,
    window_hours: int,
    lock_ttl_seconds: int,
    window_start: datetime | None = None,
) -> AggregationReport:
    """Run one cycle over the trailing window unless another cycle holds the lock."""
    start, end = default_window(now, window_hours)
    if window_start is not None:
        start = window_start

    token = await try_acquire_lock(_AGGREGATION_LOCK_KEY, lock_ttl_seconds)
    if token is None:
        logger.info("Aggregation already running elsewhere; skipping this trigger")
        return AggregationReport(window_start=start, window_end=end, skipped=True)

    try:
        return await aggregator.run_aggregation_cycle(start, end)
    finally:
        await release_lock(_AGGREGATION_LOCK_KEY, token)
