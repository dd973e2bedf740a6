"""
Reply chunking for outbound delivery.

Two modes:
- split_into_chunks(): transport-safe pieces under a hard ceiling, cut at the
  most natural boundary available (paragraph, line, sentence, word, hard cut).
- split_by_sentences(): short, sentence-aligned pieces so a reply reads like a
  sequence of human messages instead of one wall of text.

Both functions are pure and deterministic. Whitespace at chunk edges is
trimmed; no other character is ever dropped.
"""
import re

# Transport accepts ~4096 chars per message, keep a margin
DEFAULT_HARD_CEILING = 4000
DEFAULT_IDEAL_CHUNK = 200
DEFAULT_BEFORE_SPLIT = 250

# A boundary is only accepted if it leaves at least this share of the ceiling
MIN_SPLIT_RATIO = 0.5

# Sentence terminator followed by whitespace, an uppercase letter or end of text
_SENTENCE_END = re.compile(r"[.!?]+(?:\s+|(?=[A-ZÀÁÂÃÉÊÍÓÔÕÚÇ])|$)")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_WHITESPACE_RUN = re.compile(r"(\s+)")

def _find_split_point(text: str, ceiling: int) -> int:
    """
    Find where to cut text so the first piece fits under ceiling.

    Boundaries are tried in priority order and each is only accepted at or
    after MIN_SPLIT_RATIO of the ceiling. Falls back to a hard cut.
    """
    window = text[:ceiling]
    floor = ceiling * MIN_SPLIT_RATIO

    index = window.rfind("\n\n")
    if index >= floor:
        return index

    index = window.rfind("\n")
    if index >= floor:
        return index

    # Keep the period with the sentence it ends
    index = window.rfind(". ")
    if index >= floor:
        return index + 1

    index = window.rfind(" ")
    if index >= floor:
        return index

    return ceiling

def split_into_chunks(text: str, ceiling: int = DEFAULT_HARD_CEILING) -> list[str]:
    """
    Split text into pieces no longer than ceiling.

    Args:
        text: Text to split
        ceiling: Maximum characters per chunk

    Returns:
        List of trimmed, non-empty chunks. Empty or whitespace-only input
        returns an empty list.

    Example:
        >>> split_into_chunks("a" * 10, ceiling=4)
        ['aaaa', 'aaaa', 'aa']
    """
    if ceiling < 1:
        raise ValueError(f"ceiling must be positive, got {ceiling}")
    if not text or not text.strip():
        return []

    chunks: list[str] = []
    remaining = text.strip()

    while remaining:
        if len(remaining) <= ceiling:
            chunks.append(remaining)
            break

        cut = _find_split_point(remaining, ceiling)
        chunk = remaining[:cut].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].strip()

    return chunks

def split_sentences(text: str) -> list[str]:
    """Split text into trimmed sentences, terminators kept."""
    sentences = []
    last = 0
    for match in _SENTENCE_END.finditer(text):
        sentence = text[last:match.end()].strip()
        if sentence:
            sentences.append(sentence)
        last = match.end()

    tail = text[last:].strip()
    if tail:
        sentences.append(tail)
    return sentences

def _split_long_sentence(sentence: str, before_split: int) -> list[str]:
    """Break an overlong sentence on whitespace into pieces under before_split.

    Whitespace inside a piece is kept as written, so line breaks in lists survive.
    """
    pieces: list[str] = []
    current = ""
    separator = ""

    # Odd positions hold the whitespace runs between words
    for position, token in enumerate(_WHITESPACE_RUN.split(sentence)):
        if position % 2:
            separator = token
            continue
        if not token:
            continue

        if len(token) > before_split:
            # No whitespace to break on, fall back to hard cuts
            if current:
                pieces.append(current)
                current = ""
            pieces.extend(split_into_chunks(token, before_split))
            continue

        candidate = f"{current}{separator}{token}" if current else token
        if len(candidate) > before_split:
            pieces.append(current)
            current = token
        else:
            current = candidate

    if current:
        pieces.append(current)
    return pieces

def split_by_sentences(
    text: str,
    ideal_chunk: int = DEFAULT_IDEAL_CHUNK,
    before_split: int = DEFAULT_BEFORE_SPLIT,
    ceiling: int = DEFAULT_HARD_CEILING,
) -> list[str]:
    """
    Group text into short, sentence-aligned chunks for paced delivery.

    Sentences are accumulated while the chunk stays within ideal_chunk.
    Paragraph breaks always close the current chunk. A sentence longer than
    before_split is itself split on whitespace. Any chunk that still exceeds
    the hard ceiling is re-split with split_into_chunks().

    Args:
        text: Reply text
        ideal_chunk: Target chunk length
        before_split: Length past which a chunk is forced to close
        ceiling: Hard transport ceiling

    Returns:
        List of chunks in reading order. Text no longer than ideal_chunk
        comes back as a single chunk.
    """
    if not text or not text.strip():
        return []

    stripped = text.strip()
    if len(stripped) <= ideal_chunk:
        return [stripped]

    chunks: list[str] = []

    for paragraph in _PARAGRAPH_BREAK.split(stripped):
        current = ""
        for sentence in split_sentences(paragraph):
            if len(sentence) > before_split:
                if current:
                    chunks.append(current)
                    current = ""
                chunks.extend(_split_long_sentence(sentence, before_split))
                continue

            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) > ideal_chunk and current:
                chunks.append(current)
                current = sentence
            else:
                current = candidate

        if current:
            chunks.append(current)

    validated: list[str] = []
    for chunk in chunks:
        if len(chunk) > ceiling:
            validated.extend(split_into_chunks(chunk, ceiling))
        else:
            validated.append(chunk)

    if not validated:
        return split_into_chunks(stripped, ceiling)
    return validated

def remove_final_period(chunk: str) -> str:
    """Drop a single trailing period, chat messages rarely end with one."""
    return re.sub(r"\.$", "", chunk)

class Chunker:
    """
    Chunking settings bound together.

    Example:
        >>> chunker = Chunker(hard_ceiling=4000, ideal_chunk=200, before_split=250)
        >>> chunker.split_paced("Oi! Tudo bem?")
        ['Oi! Tudo bem?']
    """

    def __init__(
        self,
        hard_ceiling: int = DEFAULT_HARD_CEILING,
        ideal_chunk: int = DEFAULT_IDEAL_CHUNK,
        before_split: int = DEFAULT_BEFORE_SPLIT,
    ):
        if not 0 < ideal_chunk < before_split < hard_ceiling:
            raise ValueError(
                "Chunker requires 0 < ideal_chunk < before_split < hard_ceiling"
            )
        self.hard_ceiling = hard_ceiling
        self.ideal_chunk = ideal_chunk
        self.before_split = before_split

    @classmethod
    def from_config(cls, config) -> "Chunker":
        return cls(
            hard_ceiling=config.hard_chunk_ceiling,
            ideal_chunk=config.pacing_ideal_chunk,
            before_split=config.pacing_before_split,
        )

    def split(self, text: str) -> list[str]:
        return split_into_chunks(text, self.hard_ceiling)

    def split_paced(self, text: str) -> list[str]:
        return split_by_sentences(
            text,
            ideal_chunk=self.ideal_chunk,
            before_split=self.before_split,
            ceiling=self.hard_ceiling,
        )
