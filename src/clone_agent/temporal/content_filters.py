"""
Content filters applied before an inbound message is buffered.

Messages that carry nothing to answer (emoji-only reactions, "ok",
"obrigado", goodbyes) are dropped so they do not trigger a reply cycle.
Phrases are Brazilian Portuguese, the language the agent speaks.
"""
import re
import unicodedata

# Joiners and selectors that glue emoji sequences together
_EMOJI_GLUE = {"\u200d", "\ufe0f", "\ufe0e", "\u20e3"}

CLOSING_PHRASES = frozenset({
    "entendi", "entendi obrigado", "entendi obrigada",
    "obrigado", "obrigada",
    "ok", "ok obrigado", "ok obrigada",
    "tá certo", "ta certo",
    "beleza", "beleza valeu",
    "valeu", "combinado",
    "era só isso", "era so isso",
    "está bem", "esta bem",
    "está bem obrigado", "esta bem obrigado",
    "está bem obrigada", "esta bem obrigada",
    "tá bom", "ta bom",
    "tá bom obrigado", "ta bom obrigado",
    "tá bom obrigada", "ta bom obrigada",
    "agradeço", "agradeço pela ajuda", "agradeco", "agradeco pela ajuda",
    "ok até mais", "ok ate mais",
    "perfeito", "perfeito obrigado", "perfeito obrigada",
    "certo", "certo obrigado", "certo obrigada",
    "show", "show obrigado", "show obrigada",
    "tranquilo", "tranquilo obrigado", "tranquilo obrigada",
    "vlw", "vlw obrigado", "vlw obrigada",
    "blz", "blz obrigado", "blz obrigada",
    "de boa", "de boa obrigado", "de boa obrigada",
    "até mais", "ate mais",
    "abraço", "abraços", "abracos",
    "até logo", "ate logo",
    "tchau",
    "falou", "falou obrigado", "falou obrigada",
})

CLOSING_PATTERNS = [
    re.compile(r"^(ok|okay|beleza|valeu|vlw|blz)\s+(obrigad[oa]|valeu|vlw)$"),
    re.compile(r"^(entendi|entendido)\s+(obrigad[oa]|valeu|vlw)$"),
    re.compile(r"^(perfeito|show|tranquilo|certo)\s+(obrigad[oa]|valeu|vlw)$"),
    re.compile(r"^(t[aá]|est[aá])\s+(certo|bom|bem)\s*(obrigad[oa])?$"),
    re.compile(r"^era\s+(s[oó]|apenas)\s+(isso|isto)$"),
    re.compile(r"^(muito\s+)?obrigad[oa]\s+(pela\s+)?(ajuda|aten[çc][ãa]o|informa[çc][ãa]o)$"),
    re.compile(r"^agrade[çcs]s?o\s+(pela\s+)?(ajuda|aten[çc][ãa]o|informa[çc][ãa]o)$"),
    re.compile(r"^at[eé]\s+(mais|logo|breve)$"),
    re.compile(r"^(ok|beleza|certo|show)\s+at[eé]\s+(mais|logo)$"),
]

_PUNCTUATION = re.compile(r"[.,!;:]")
_WHITESPACE = re.compile(r"\s+")

def _is_emoji_char(char: str) -> bool:
    if char in _EMOJI_GLUE:
        return True
    # So: pictographs, flags (regional indicators); Sk: skin tone modifiers
    return unicodedata.category(char) in ("So", "Sk")

def is_only_emojis(message: str) -> bool:
    """
    True if the message has at least one emoji and nothing else but whitespace.

    Example:
        >>> is_only_emojis("👍🏽 ❤️")
        True
        >>> is_only_emojis("ok 👍")
        False
    """
    stripped = "".join(message.split())
    if not stripped:
        return False
    return all(_is_emoji_char(c) for c in stripped)

def normalize_phrase(message: str) -> str:
    """Lowercase, drop light punctuation and collapse whitespace."""
    cleaned = _PUNCTUATION.sub("", message.lower())
    return _WHITESPACE.sub(" ", cleaned).strip()

def is_conversation_closing(message: str) -> bool:
    """
    True if the message only acknowledges or ends the conversation.

    Anything containing "?" is a question ("beleza?", "ok?") and never a
    closing.
    """
    if "?" in message:
        return False

    cleaned = normalize_phrase(message)
    if not cleaned:
        return False
    if cleaned in CLOSING_PHRASES:
        return True
    return any(pattern.match(cleaned) for pattern in CLOSING_PATTERNS)

def should_ignore(message: str) -> bool:
    """True if the message should be dropped instead of buffered."""
    return is_only_emojis(message) or is_conversation_closing(message)
