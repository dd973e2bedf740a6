"""
Exception hierarchy for the reply queue.

Retryable failures (generation, transport) go back through the queue's
retry path. StructuralError is never retried: retrying cannot fix a
missing credential or a disabled endpoint.
"""

class QueueError(Exception):
    """Base class for reply queue errors."""

class EntryNotFound(QueueError):
    """The queue entry no longer exists."""

    def __init__(self, entry_id: str):
        super().__init__(f"Queue entry {entry_id} not found")
        self.entry_id = entry_id

class InvalidState(QueueError):
    """The entry is not in a state that allows the requested operation."""

class InvalidTransition(InvalidState):
    """A status change that is not in the transition table."""

    def __init__(self, source: str, target: str):
        super().__init__(f"Transition {source} -> {target} is not allowed")
        self.source = source
        self.target = target

class SlotTaken(QueueError):
    """Another unsent reply already occupies this calendar minute."""

    def __init__(self, minute_key: int):
        super().__init__(f"Send slot {minute_key} is already taken")
        self.minute_key = minute_key

class StructuralError(QueueError):
    """Non-retryable failure: missing configuration, disabled endpoint, bad payload."""

class GenerationError(QueueError):
    """Transient failure while generating a reply."""

class TransportError(QueueError):
    """Transient failure talking to the chat transport."""
