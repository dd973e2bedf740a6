"""External integrations (WAHA transport, webhook parsing, reply generation)."""

from clone_agent.integrations.endpoints import EndpointRegistry
from clone_agent.integrations.generation import OpenAICompatibleGenerator, ReplyGenerator
from clone_agent.integrations.generation_queue import GenerationQueue
from clone_agent.integrations.normalizer import NormalizedEvent, normalize_waha_event
from clone_agent.integrations.waha import ChatTransport, WahaClient, chat_id_for

__all__ = [
    "EndpointRegistry",
    "OpenAICompatibleGenerator",
    "ReplyGenerator",
    "GenerationQueue",
    "NormalizedEvent",
    "normalize_waha_event",
    "ChatTransport",
    "WahaClient",
    "chat_id_for",
]
