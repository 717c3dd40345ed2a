import uuid

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from melodymint.platform.db.base import Base


PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_COMPLETED = "completed"
PAYMENT_STATUS_FAILED = "failed"


class Artist(Base):
    __tablename__ = "artists"
    __table_args__ = (
        CheckConstraint("pending_withdrawal >= 0", name="ck_artists_pending_withdrawal_non_negative"),
        CheckConstraint("pending_withdrawal <= total_earnings", name="ck_artists_pending_within_earnings"),
        CheckConstraint("total_streams >= 0", name="ck_artists_total_streams_non_negative"),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), index=True)

    artist_name: Mapped[str] = mapped_column(String(200))
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    wallet_address: Mapped[str] = mapped_column(String(64))

    # Lamports.
    total_streams: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    total_earnings: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    pending_withdrawal: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))

    withdrawal_reservation_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)
    withdrawal_reserved_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set before the transfer is broadcast; a reservation holding a signature is never reclaimed.
    withdrawal_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    withdrawal_signature: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Track(Base):
    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    artist_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("artists.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    genre: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration: Mapped[int] = mapped_column(Integer)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ipfs_cid: Mapped[str] = mapped_column(String(128))
    cover_art_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    stream_count: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Stream(Base):
    __tablename__ = "streams"
    __table_args__ = (
        Index("ix_streams_unsettled_window", "streamed_at", postgresql_where=text("completed AND settled_payment_id IS NULL")),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    track_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("tracks.id", ondelete="CASCADE"), index=True)
    listener_id: Mapped[str | None] = mapped_column(UUID(as_uuid=False), nullable=True)

    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    duration_listened: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    streamed_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Written once by the aggregator in the transaction that credits the artist.
    settled_payment_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    settled_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_payments_status"),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid.uuid4()))
    artist_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("artists.id", ondelete="CASCADE"), index=True)
    track_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tracks.id", ondelete="SET NULL"),
        nullable=True,
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'pending'"))
    transaction_signature: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    stream_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reconciliation_required: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))

    processed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
