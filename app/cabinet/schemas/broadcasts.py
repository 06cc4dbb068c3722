from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


BroadcastTarget = Literal['all', 'active', 'inactive', 'expiring']


class BroadcastCreateRequest(BaseModel):
    target_type: BroadcastTarget
    message_text: str = Field(..., min_length=1, max_length=4096)
    start: bool = True


class BroadcastResponse(BaseModel):
    id: int
    target_type: str
    message_text: str
    total_count: int
    sent_count: int
    failed_count: int
    status: str
    is_running: bool = False
    created_at: datetime | None = None
    completed_at: datetime | None = None


class BroadcastListResponse(BaseModel):
    items: list[BroadcastResponse] = Field(default_factory=list)
    total: int = 0


class BroadcastTargetCountResponse(BaseModel):
    target_type: str
    count: int
