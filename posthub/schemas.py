from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# --- Principal ---

@dataclass(frozen=True)
class Principal:
    """Authenticated caller handed over by the identity layer."""

    id: int
    role: str = "user"


# --- Post ---

class PostCreate(BaseModel):
    title: str = Field(max_length=300)
    content: str
    published: bool = False


class PostUpdate(BaseModel):
    title: str | None = Field(None, max_length=300)
    content: str | None = None
    published: bool | None = None


class PostRead(BaseModel):
    id: int
    title: str
    content: str
    published: bool
    owner_id: int
    created_at: datetime
    updated_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


# --- Jobs ---

class JobView(BaseModel):
    id: int
    type: str
    status: str
    attempts: int
    max_attempts: int
    enqueued_at: datetime
    next_visible_at: datetime
    last_error: str | None = None
    finished_at: datetime | None = None


class QueueStats(BaseModel):
    pending: int = 0
    in_flight: int = 0
    done: int = 0
    dead_lettered: int = 0


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_posts: int
    connections: int
    cache_info: dict = {}
    queue: QueueStats
