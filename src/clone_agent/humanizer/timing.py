"""
Pacing timing for outbound replies.

Two human-latency simulations:
- the reply delay: how long after the burst a reply is scheduled
  (base delay plus jitter, clamped)
- the typing duration: how long the composing indicator runs before each chunk

Randomness comes from an injectable random.Random so tests can seed it.
"""
import random
from typing import Optional

# Clamp for the scheduling delay (seconds)
MIN_REPLY_DELAY = 1.0
MAX_REPLY_DELAY = 60.0

class PacingTiming:
    """
    Service for reply pacing.

    Avoids repeating nearly identical delays back to back, which looks robotic.

    Example:
        >>> timing = PacingTiming(base_delay=5.0, jitter=2.0)
        >>> 3.0 <= timing.get_reply_delay() <= 7.5
        True
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        jitter: float = 2.0,
        typing_range: tuple[float, float] = (2.0, 6.0),
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize timing service.

        Args:
            base_delay: Typical seconds between burst end and reply
            jitter: Maximum deviation (both directions) from base_delay
            typing_range: (min, max) seconds for the composing indicator
            rng: Random source, defaults to a private instance
        """
        self.base_delay = base_delay
        self.jitter = jitter
        self.typing_range = typing_range
        self._rng = rng or random.Random()
        self._last_delay: Optional[float] = None

    @classmethod
    def from_config(cls, config, rng: Optional[random.Random] = None) -> "PacingTiming":
        return cls(
            base_delay=config.pacing_base_delay_seconds,
            jitter=config.pacing_jitter_seconds,
            typing_range=tuple(config.typing_duration_range),
            rng=rng,
        )

    def get_reply_delay(self) -> float:
        """
        Seconds to wait before a reply goes out inside operating hours.

        Returns:
            base_delay +/- jitter, clamped to [1, 60]
        """
        delay = self.base_delay + self._rng.uniform(-self.jitter, self.jitter)

        if self._last_delay is not None and abs(delay - self._last_delay) < 0.5:
            delay += self._rng.uniform(-0.5, 0.5)

        delay = max(MIN_REPLY_DELAY, min(delay, MAX_REPLY_DELAY))
        self._last_delay = delay
        return delay

    def get_typing_duration(self) -> float:
        """Seconds the composing indicator runs before one chunk."""
        low, high = self.typing_range
        return self._rng.uniform(low, high)
