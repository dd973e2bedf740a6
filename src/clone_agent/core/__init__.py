"""Core clone agent modules."""

from clone_agent.core.models import (
    ALLOWED_TRANSITIONS,
    ACTIVE_STATUSES,
    AgentConfig,
    ConversationKey,
    InboundItem,
    Lease,
    MessageKind,
    OperatingHours,
    QueueEntry,
    QueueStatus,
    check_transition,
)
from clone_agent.core.errors import (
    EntryNotFound,
    GenerationError,
    InvalidState,
    InvalidTransition,
    QueueError,
    SlotTaken,
    StructuralError,
    TransportError,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ACTIVE_STATUSES",
    "AgentConfig",
    "ConversationKey",
    "InboundItem",
    "Lease",
    "MessageKind",
    "OperatingHours",
    "QueueEntry",
    "QueueStatus",
    "check_transition",
    "EntryNotFound",
    "GenerationError",
    "InvalidState",
    "InvalidTransition",
    "QueueError",
    "SlotTaken",
    "StructuralError",
    "TransportError",
]
