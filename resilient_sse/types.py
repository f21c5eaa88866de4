"""Type definitions for resilient-sse."""

from typing import Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


EVENT_STREAM_MEDIA_TYPE = "text/event-stream"


# ============================================================================
# Events
# ============================================================================

class Event(BaseModel):
    """One dispatched Server-Sent Event."""
    event_type: str = Field(default="", alias="eventType")
    data: str = ""
    last_event_id: str = Field(default="", alias="lastEventID")

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def name(self) -> str:
        """Event type as seen by consumers, an empty type means "message"."""
        return self.event_type or "message"

    def __str__(self) -> str:
        if self.last_event_id:
            return f"type={self.event_type} data={self.data} id={self.last_event_id}"
        return f"type={self.event_type} data={self.data}"


class StreamContext(BaseModel):
    """Continuation state carried from record to record and across reconnects."""
    last_event_id: str = ""
    retry: Optional[int] = None  # milliseconds, as sent by the server

    class Config:
        frozen = True

    def with_id(self, last_event_id: str) -> "StreamContext":
        return self.model_copy(update={"last_event_id": last_event_id})

    def with_retry(self, retry: int) -> "StreamContext":
        return self.model_copy(update={"retry": retry})


# ============================================================================
# Configuration
# ============================================================================

class ListenerConfig(BaseModel):
    """Tunables for one listening session (intervals in seconds)."""
    min_interval: float = Field(default=1.0, gt=0)
    max_interval: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=10, ge=0)
    max_bad_lines: int = Field(default=100, ge=0)
    retry_statuses: Tuple[int, ...] = (500, 502, 504)

    @model_validator(mode="after")
    def _check_interval_bounds(self) -> "ListenerConfig":
        if self.max_interval < self.min_interval:
            raise ValueError("max_interval must be >= min_interval")
        return self


ListenerState = Literal["idle", "opening", "streaming", "reconnecting", "terminated"]


# ============================================================================
# Lifecycle Payloads
# ============================================================================

class ErrorPayload(BaseModel):
    message: str


class DisconnectedPayload(BaseModel):
    reason: str


class ReconnectingPayload(BaseModel):
    attempt: int
    delay: float
