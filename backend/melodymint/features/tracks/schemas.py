from datetime import datetime

from pydantic import BaseModel, Field


class TrackCreateRequest(BaseModel):
    artist_id: str
    title: str = Field(min_length=1, max_length=200)
    duration: int = Field(gt=0)
    ipfs_cid: str = Field(min_length=1, max_length=128)
    description: str | None = None
    genre: str | None = Field(default=None, max_length=64)
    file_size: int | None = Field(default=None, ge=0)
    cover_art_url: str | None = None


class TrackResponse(BaseModel):
    id: str
    artist_id: str
    title: str
    description: str | None
    genre: str | None
    duration: int
    file_size: int | None
    ipfs_cid: str
    playback_url: str
    cover_art_url: str | None
    stream_count: int
    created_at: datetime


class StreamRecordRequest(BaseModel):
    listener_id: str | None = None
    duration_listened: int = Field(ge=0)


class StreamRecordResponse(BaseModel):
    id: str
    track_id: str
    listener_id: str | None
    completed: bool
    duration_listened: int
    streamed_at: datetime
