"""Human-like pacing modules (chunking, delays)."""

from clone_agent.humanizer.chunker import (
    Chunker,
    remove_final_period,
    split_by_sentences,
    split_into_chunks,
)
from clone_agent.humanizer.timing import PacingTiming

__all__ = [
    "Chunker",
    "remove_final_period",
    "split_by_sentences",
    "split_into_chunks",
    "PacingTiming",
]
