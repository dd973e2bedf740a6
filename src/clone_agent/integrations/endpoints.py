"""Channel endpoint enablement."""
from typing import Iterable, Optional

class EndpointRegistry:
    """
    Which channel endpoints may currently answer.

    An empty allow-list means every endpoint is enabled. Endpoints can be
    switched off at runtime; entries claimed for a disabled endpoint fail
    permanently.
    """

    def __init__(self, enabled: Optional[Iterable[str]] = None):
        self._allow = set(enabled or [])
        self._disabled: set[str] = set()

    def is_enabled(self, endpoint_id: str) -> bool:
        if endpoint_id in self._disabled:
            return False
        return not self._allow or endpoint_id in self._allow

    def disable(self, endpoint_id: str) -> None:
        self._disabled.add(endpoint_id)

    def enable(self, endpoint_id: str) -> None:
        self._disabled.discard(endpoint_id)
        if self._allow:
            self._allow.add(endpoint_id)
