"""
WAHA webhook normalization.

Turns a raw WAHA webhook body into a NormalizedEvent the Collector can
buffer. Only "message" and "message.any" events are considered; anything
else normalizes to None.

Phone extraction walks the known payload fields in priority order and
skips "@lid" values, which are WhatsApp internal ids rather than numbers.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from clone_agent.core.models import ConversationKey, InboundItem, MessageKind

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = ("message", "message.any")
GROUP_SUFFIX = "@g.us"
INTERNAL_ID_MARKER = "@lid"

# E.164 bounds for a usable phone number
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

class NormalizedEvent(BaseModel):
    """
    One inbound WhatsApp message in transport-neutral form.

    Attributes:
        event_id: WAHA message id, used for de-duplication
        endpoint_id: WAHA session that received the message
        counterpart: Phone digits, or the group chat id for groups
        is_group: True for group chats
        from_me: True for messages our own session sent
        is_sticker: True for stickers, which are never answered
        kind: Declared kind of the message
        content: Text, caption or a media placeholder
        media_url: Download URL for media messages
        sender_name: WhatsApp push name
        received_at: Message timestamp
    """
    event_id: Optional[str] = None
    endpoint_id: str
    counterpart: str
    is_group: bool = False
    from_me: bool = False
    is_sticker: bool = False
    kind: MessageKind = MessageKind.TEXT
    content: str = ""
    media_url: Optional[str] = None
    sender_name: Optional[str] = None
    received_at: datetime

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(
            endpoint_id=self.endpoint_id,
            counterpart=self.counterpart,
            is_group=self.is_group,
        )

    def to_item(self) -> InboundItem:
        return InboundItem(
            content=self.content,
            received_at=self.received_at,
            kind=self.kind,
            event_id=self.event_id,
            sender_name=self.sender_name,
            from_me=self.from_me,
        )

def _dig(data: Any, *path: str) -> Any:
    for part in path:
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data

def clean_phone_number(raw: str) -> Optional[str]:
    """
    Reduce a WhatsApp id to its phone digits.

    "5511944433996:70@s.whatsapp.net" -> "5511944433996". Returns None when
    the digits cannot be a phone number.
    """
    digits = re.sub(r"\D", "", raw.split("@")[0].split(":")[0])
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        logger.warning(f"Rejected phone candidate {raw!r} ({len(digits)} digits)")
        return None
    return digits

def extract_phone_number(payload: dict) -> Optional[str]:
    """First usable phone number in the payload, skipping internal @lid ids."""
    candidates = [
        _dig(payload, "_data", "Info", "Chat"),
        _dig(payload, "data", "_data", "Info", "Chat"),
        _dig(payload, "_data", "Info", "Sender"),
        _dig(payload, "data", "_data", "Info", "Sender"),
        _dig(payload, "_data", "Info", "SenderAlt"),
        _dig(payload, "data", "_data", "Info", "SenderAlt"),
        payload.get("phone"),
        _dig(payload, "data", "phone"),
        payload.get("chatId"),
        _dig(payload, "data", "chatId"),
        payload.get("from"),
        _dig(payload, "data", "from"),
        payload.get("fromChat"),
    ]
    for value in candidates:
        if not value or not isinstance(value, str):
            continue
        if INTERNAL_ID_MARKER in value:
            continue
        return clean_phone_number(value)
    return None

def _is_sticker(data: dict) -> bool:
    return (
        _dig(data, "_data", "Info", "MediaType") == "sticker"
        or _dig(data, "_data", "Message", "stickerMessage") is not None
        or data.get("type") == "sticker"
        or _dig(data, "_data", "isSticker") is True
        or _dig(data, "media", "isSticker") is True
        or _dig(data, "_data", "isAnimatedSticker") is True
    )

def _media_kind(mimetype: str) -> MessageKind:
    if mimetype.startswith("image/"):
        return MessageKind.IMAGE
    if mimetype.startswith("audio/"):
        return MessageKind.AUDIO
    return MessageKind.DOCUMENT

def _event_id(data: dict) -> Optional[str]:
    raw = data.get("id")
    if isinstance(raw, dict):
        raw = raw.get("_serialized")
    return str(raw) if raw else None

def _received_at(data: dict) -> datetime:
    raw = data.get("timestamp")
    if isinstance(raw, (int, float)) and raw > 0:
        # WAHA sends seconds; some engines send milliseconds
        seconds = raw / 1000 if raw > 1e11 else raw
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return datetime.now(timezone.utc)

def normalize_waha_event(payload: dict) -> Optional[NormalizedEvent]:
    """
    Normalize a WAHA webhook body.

    Args:
        payload: Parsed JSON body ({"event": ..., "session": ..., "payload": {...}})

    Returns:
        NormalizedEvent, or None for non-message events and messages without
        a usable counterpart.
    """
    event = payload.get("event")
    if event not in MESSAGE_EVENTS:
        logger.debug(f"Ignoring WAHA event {event!r}")
        return None

    data = payload.get("payload") or payload.get("data") or payload
    session = payload.get("session") or ""
    if not session:
        logger.warning("WAHA message event without session")
        return None

    from_chat = data.get("from") or data.get("chatId") or ""
    is_group = GROUP_SUFFIX in from_chat

    if is_group:
        counterpart = from_chat
    else:
        counterpart = extract_phone_number(data)
    if not counterpart:
        logger.info(f"No usable counterpart in WAHA message {data.get('id')!r}")
        return None

    kind = MessageKind.TEXT
    media_url = None
    text = data.get("body") or data.get("text") or data.get("message") or ""
    if not isinstance(text, str):
        text = ""
    content = text

    media = data.get("media") or {}
    if data.get("hasMedia") and isinstance(media, dict) and media.get("url"):
        media_url = media["url"]
        kind = _media_kind(media.get("mimetype") or "")
        if kind == MessageKind.IMAGE:
            content = f"[Imagem] {text}".strip()
        elif kind == MessageKind.AUDIO:
            content = "[Áudio]"
        else:
            content = f"[Documento: {media.get('filename') or 'arquivo'}] {text}".strip()

    sender_name = (
        _dig(data, "_data", "Info", "PushName")
        or data.get("pushName")
        or data.get("push_name")
        or data.get("notifyName")
        or None
    )

    return NormalizedEvent(
        event_id=_event_id(data),
        endpoint_id=session,
        counterpart=counterpart,
        is_group=is_group,
        from_me=bool(data.get("fromMe") or data.get("from_me")),
        is_sticker=_is_sticker(data),
        kind=kind,
        content=content,
        media_url=media_url,
        sender_name=sender_name,
        received_at=_received_at(data),
    )
