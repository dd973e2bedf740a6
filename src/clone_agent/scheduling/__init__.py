"""Worker loops (processing, dispatch scheduling, delivery)."""

from clone_agent.scheduling.dispatch_scheduler import DispatchScheduler
from clone_agent.scheduling.polling_daemon import PollingDaemon
from clone_agent.scheduling.processor import Processor, build_context
from clone_agent.scheduling.sender import Sender

__all__ = [
    "DispatchScheduler",
    "PollingDaemon",
    "Processor",
    "build_context",
    "Sender",
]
