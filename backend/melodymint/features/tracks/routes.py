from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from melodymint.features.tracks.schemas import (
    StreamRecordRequest,
    StreamRecordResponse,
    TrackCreateRequest,
    TrackResponse,
)
from melodymint.features.tracks.services import is_qualifying_playback
from melodymint.platform.db.models import Artist, Stream, Track
from melodymint.platform.db.session import get_session
from melodymint.platform.services.ipfs import IPFSClient

router = APIRouter(prefix="/tracks")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_ipfs_client() -> IPFSClient:
    return IPFSClient()


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Not found")


def _uuid_or(value: str, exc: HTTPException) -> str:
    try:
        return str(UUID(value))
    except ValueError:
        raise exc from None


def _track_response(track: Track, ipfs: IPFSClient) -> TrackResponse:
    return TrackResponse(
        id=track.id,
        artist_id=track.artist_id,
        title=track.title,
        description=track.description,
        genre=track.genre,
        duration=track.duration,
        file_size=track.file_size,
        ipfs_cid=track.ipfs_cid,
        playback_url=ipfs.resolve(track.ipfs_cid),
        cover_art_url=track.cover_art_url,
        stream_count=track.stream_count,
        created_at=track.created_at,
    )


@router.post("", response_model=TrackResponse)
async def create_track(
    body: TrackCreateRequest,
    session: AsyncSession = Depends(get_session),
    ipfs: IPFSClient = Depends(get_ipfs_client),
) -> TrackResponse:
    artist_id = _uuid_or(body.artist_id, HTTPException(status_code=400, detail="artist_id must be a UUID"))

    result = await session.execute(select(Artist.id).where(Artist.id == artist_id))
    if result.scalar_one_or_none() is None:
        raise HTTPException(status_code=400, detail="Artist not found")

    track = Track(
        artist_id=artist_id,
        title=body.title.strip(),
        description=body.description,
        genre=body.genre,
        duration=body.duration,
        file_size=body.file_size,
        ipfs_cid=body.ipfs_cid.strip(),
        cover_art_url=body.cover_art_url,
    )
    session.add(track)
    await session.commit()
    await session.refresh(track)

    return _track_response(track, ipfs)


@router.get("", response_model=list[TrackResponse])
async def list_tracks(
    artist_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    ipfs: IPFSClient = Depends(get_ipfs_client),
) -> list[TrackResponse]:
    query = select(Track)
    if artist_id is not None:
        query = query.where(Track.artist_id == _uuid_or(artist_id, HTTPException(status_code=400, detail="artist_id must be a UUID")))

    result = await session.execute(query.order_by(desc(Track.created_at)).limit(limit))
    return [_track_response(t, ipfs) for t in result.scalars().all()]


@router.get("/{track_id}", response_model=TrackResponse)
async def get_track(
    track_id: str,
    session: AsyncSession = Depends(get_session),
    ipfs: IPFSClient = Depends(get_ipfs_client),
) -> TrackResponse:
    result = await session.execute(select(Track).where(Track.id == _uuid_or(track_id, _not_found())))
    track = result.scalar_one_or_none()
    if track is None:
        raise _not_found()
    return _track_response(track, ipfs)


@router.post("/{track_id}/streams", response_model=StreamRecordResponse)
async def record_stream(
    track_id: str,
    body: StreamRecordRequest,
    session: AsyncSession = Depends(get_session),
) -> StreamRecordResponse:
    track_id = _uuid_or(track_id, _not_found())
    listener_id = None
    if body.listener_id is not None:
        listener_id = _uuid_or(body.listener_id, HTTPException(status_code=400, detail="listener_id must be a UUID"))

    result = await session.execute(select(Track.duration).where(Track.id == track_id))
    duration = result.scalar_one_or_none()
    if duration is None:
        raise _not_found()

    completed = is_qualifying_playback(body.duration_listened, int(duration))
    stream = Stream(
        track_id=track_id,
        listener_id=listener_id,
        completed=completed,
        duration_listened=body.duration_listened,
        streamed_at=_utcnow(),
    )
    session.add(stream)

    if completed:
        await session.execute(
            update(Track)
            .where(Track.id == track_id)
            .values(stream_count=Track.stream_count + 1)
            .execution_options(synchronize_session=False)
        )

    await session.commit()

    return StreamRecordResponse(
        id=stream.id,
        track_id=stream.track_id,
        listener_id=stream.listener_id,
        completed=stream.completed,
        duration_listened=stream.duration_listened,
        streamed_at=stream.streamed_at,
    )
