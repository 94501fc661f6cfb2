# gallery/schemas/forensics.py
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import List, Optional


class HlsMeta(BaseModel):
    ready: bool = False
    fingerprinted: bool = False
    layout: Optional[str] = None
    segment_seconds: Optional[int] = None
    segment_count: Optional[int] = None
    variants: List[str] = []
    generated_at: Optional[str] = None

    class Config:
        extra = "ignore"


class MediaItem(BaseModel):
    media_id: str = Field(..., pattern=r"^[A-Za-z0-9_-]+$")
    title: str = ""
    status: str = "queued"  # queued, processing, ready, failed
    source_path: Optional[str] = None
    hls: HlsMeta = Field(default_factory=HlsMeta)
    error_message: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        from_attributes = True
        extra = "ignore"


class FingerprintRecord(BaseModel):
    user_id: str
    media_id: str
    fingerprint_id: str
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    last_ip: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "ignore"


class PlaybackSessionOut(BaseModel):
    user_id: str
    media_id: str
    fingerprint_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    played_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        extra = "ignore"


class FingerprintListResponse(BaseModel):
    media_id: str
    fingerprints: List[FingerprintRecord]
    recent_sessions: List[PlaybackSessionOut]


class MatchCandidateOut(BaseModel):
    fingerprint_identity: str
    user_reference: Optional[str] = None
    best_offset: int
    mismatches: int
    compared: int
    match_ratio: float


class IdentifyMeta(BaseModel):
    media_id: str
    layout: str
    layout_source: str
    segment_seconds: int
    duration_seconds: float
    samples: int
    usable_samples: int
    attempts: List[int] = []


class ObservedVariants(BaseModel):
    variants: str
    confidences: List[float]


class IdentifyResponse(BaseModel):
    meta: IdentifyMeta
    observed: ObservedVariants
    candidates: List[MatchCandidateOut]


class PackageRequest(BaseModel):
    source_path: Optional[str] = None
    layout: Optional[str] = Field(default=None, pattern="^(v1_tiles|v2_pairs)$")


class PackageResponse(BaseModel):
    media_id: str
    status: str
    message: str
