"""
Pydantic models for the reply queue.

QueueEntry is the unit of work shared by every worker process. Its status
field is a closed state machine: ALLOWED_TRANSITIONS lists every move a
store may perform and check_transition() rejects the rest.
"""
import re
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Optional

import pytz
from pydantic import BaseModel, Field, field_validator, model_validator

from clone_agent.core.errors import InvalidTransition

class QueueStatus(str, Enum):
    """Status of a queue entry."""
    COLLECTING = "collecting"  # Window open, items being appended
    READY = "ready"  # Failed once, waiting to be reclaimed
    PROCESSING = "processing"  # Leased by a processor, generation in progress
    COMPLETED = "completed"  # Reply generated, waiting for its send time
    FAILED = "failed"  # Terminal, retries exhausted or structural failure
    SENT = "sent"  # Terminal, reply delivered

# Statuses that count as "the" active entry of a conversation
ACTIVE_STATUSES = frozenset({
    QueueStatus.COLLECTING,
    QueueStatus.READY,
    QueueStatus.PROCESSING,
})

# Statuses a processor may claim from
CLAIMABLE_STATUSES = frozenset({QueueStatus.COLLECTING, QueueStatus.READY})

TERMINAL_STATUSES = frozenset({QueueStatus.FAILED, QueueStatus.SENT})

ALLOWED_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.COLLECTING: frozenset({QueueStatus.PROCESSING}),
    QueueStatus.READY: frozenset({QueueStatus.PROCESSING}),
    # processing -> processing is a reclaim of an abandoned lease
    QueueStatus.PROCESSING: frozenset({
        QueueStatus.PROCESSING,
        QueueStatus.COMPLETED,
        QueueStatus.READY,
        QueueStatus.FAILED,
    }),
    QueueStatus.COMPLETED: frozenset({QueueStatus.SENT}),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.SENT: frozenset(),
}

def check_transition(source: QueueStatus, target: QueueStatus) -> None:
    """
    Validate a status change against the transition table.

    Args:
        source: Current status of the entry
        target: Requested status

    Raises:
        InvalidTransition: If the move is not listed in ALLOWED_TRANSITIONS
    """
    source = QueueStatus(source)
    target = QueueStatus(target)
    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidTransition(source.value, target.value)

class MessageKind(str, Enum):
    """Declared kind of an inbound item."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"

class ConversationKey(BaseModel):
    """
    Who we are buffering for: one counterpart on one channel endpoint.

    Attributes:
        endpoint_id: Channel endpoint (WAHA session) that received the message
        counterpart: Phone number or chat id of the other side
        is_group: True when the counterpart is a group chat
    """
    endpoint_id: str = Field(min_length=1)
    counterpart: str = Field(min_length=1)
    is_group: bool = False

    class Config:
        frozen = True

    def as_string(self) -> str:
        """Stable string form used as the storage key."""
        return f"{self.endpoint_id}:{self.counterpart}"

    @classmethod
    def from_string(cls, value: str, is_group: bool = False) -> "ConversationKey":
        endpoint_id, _, counterpart = value.partition(":")
        if not counterpart:
            raise ValueError(f"Malformed conversation key: {value!r}")
        return cls(endpoint_id=endpoint_id, counterpart=counterpart, is_group=is_group)

class InboundItem(BaseModel):
    """
    Single collected inbound message.

    Attributes:
        content: Text content (transcription or description for media)
        received_at: When the message arrived
        kind: Declared kind of the original message
        event_id: Transport event id, used for de-duplication
        sender_name: Display name reported by the transport
        from_me: True when the message was sent by our own endpoint
    """
    content: str
    received_at: datetime
    kind: MessageKind = MessageKind.TEXT
    event_id: Optional[str] = None
    sender_name: Optional[str] = None
    from_me: bool = False

class Lease(BaseModel):
    """Time-bounded processing ownership of an entry."""
    owner_id: str
    acquired_at: datetime

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return self.acquired_at <= now - timeout

class QueueEntry(BaseModel):
    """
    One collection window for one conversation.

    window_end, reply and sent_at are write-once. consumed_count records
    how many payload items the current generation attempt saw, so items
    that arrive mid-processing can be carried into the next window.
    """
    id: str
    conversation_key: ConversationKey
    payload: list[InboundItem] = Field(default_factory=list)
    status: QueueStatus = QueueStatus.COLLECTING
    window_end: datetime
    window_seconds: int = 30
    lease: Optional[Lease] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    consumed_count: int = 0
    reply: Optional[str] = None
    scheduled_send_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivery_owner: Optional[str] = None
    delivery_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def short_id(self) -> str:
        return self.id[:8]

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

class OperatingHours(BaseModel):
    """Daily window in which replies may go out immediately."""
    start_time: str = "09:00"
    end_time: str = "21:00"
    timezone: str = "America/Sao_Paulo"

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        v = v.strip()
        if not _HHMM.match(v):
            raise ValueError(f"Expected HH:MM, got {v!r}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "OperatingHours":
        if self.start >= self.end:
            raise ValueError(
                f"start_time ({self.start_time}) must be before end_time ({self.end_time})"
            )
        return self

    @property
    def start(self) -> time:
        h, m = map(int, self.start_time.split(":"))
        return time(h, m)

    @property
    def end(self) -> time:
        h, m = map(int, self.end_time.split(":"))
        return time(h, m)

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

class AgentConfig(BaseModel):
    """Tunable parameters and collaborator credentials."""
    # Collection and retry
    collection_window_seconds: int = Field(default=30, ge=30)
    max_retries: int = Field(default=3, ge=1)
    lease_timeout_seconds: int = Field(default=300, ge=1)

    # Chunking
    hard_chunk_ceiling: int = 4000  # transport limit (~4096) minus margin
    pacing_ideal_chunk: int = 200
    pacing_before_split: int = 250

    # Pacing (seconds)
    inter_chunk_delay_seconds: float = 2.0
    pacing_base_delay_seconds: float = 5.0
    pacing_jitter_seconds: float = 2.0
    typing_duration_range: tuple[float, float] = (2.0, 6.0)

    operating_hours: OperatingHours = Field(default_factory=OperatingHours)

    # Loops
    processor_poll_seconds: float = 10.0
    sender_poll_seconds: float = 10.0
    batch_size: int = 20

    # Collaborators
    database_url: Optional[str] = None
    waha_url: Optional[str] = None
    waha_api_key: Optional[str] = None
    waha_session: Optional[str] = None
    generation_base_url: str = "https://ollama.com"
    generation_api_key: Optional[str] = None
    generation_model: str = "deepseek-v3.1:671b-cloud"
    generation_timeout_seconds: float = 120.0
    system_prompt: str = ""

    # Endpoints allowed to answer, empty means any endpoint
    enabled_endpoints: list[str] = Field(default_factory=list)
    # Group chats are only buffered for endpoints listed here (endpoint -> window seconds)
    group_windows: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_chunk_sizes(self) -> "AgentConfig":
        if not (
            0
            < self.pacing_ideal_chunk
            < self.pacing_before_split
            < self.hard_chunk_ceiling
        ):
            raise ValueError(
                "Chunk sizes must satisfy 0 < ideal < before_split < ceiling "
                f"(got {self.pacing_ideal_chunk}, "
                f"{self.pacing_before_split}, {self.hard_chunk_ceiling})"
            )
        low, high = self.typing_duration_range
        if low < 0 or low > high:
            raise ValueError(f"Invalid typing_duration_range: {self.typing_duration_range}")
        return self

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)
