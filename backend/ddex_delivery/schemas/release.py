from typing import Optional
from pydantic import BaseModel, Field


class ReleaseTrack(BaseModel):
    sequence_number: Optional[int] = None
    disc_number: int = 1
    isrc: Optional[str] = None
    title: Optional[str] = None


class Release(BaseModel):
    """カタログ側のリリース (配信に必要な項目のみ)"""
    release_id: str
    upc: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    tracks: list[ReleaseTrack] = Field(default_factory=list)
    audio_urls: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)
