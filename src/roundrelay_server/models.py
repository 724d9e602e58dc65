from __future__ import annotations

from pydantic import BaseModel
from typing import List, Optional


class ChannelOut(BaseModel):
    channel_id: str
    state: str
    subscribers: int = 0
    chunks_relayed: int = 0
    created_at: float


class ChannelList(BaseModel):
    channels: List[ChannelOut]
    count: int


class HealthOut(BaseModel):
    ok: bool = True
    service: str
    version: str
    uptime_seconds: int
    channels: int = 0
    subscribers: int = 0


class UpstreamFailure(BaseModel):
    detail: str
    status_code: Optional[int] = None
