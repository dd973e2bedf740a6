"""
Clone Agent - Burst-buffered WhatsApp reply agent.

This package collects bursts of inbound chat messages per conversation,
generates one reply per burst, and dispatches that reply as a paced
sequence of chunks. Coordination between worker processes goes entirely
through a leased queue in PostgreSQL.
"""

__version__ = "1.0.0"
