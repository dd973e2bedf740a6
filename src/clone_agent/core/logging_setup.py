"""Route stdlib logging through rich."""
import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

def configure_logging(level: str = "INFO", console: Optional[Console] = None) -> None:
    """Install a RichHandler on the root logger, replacing existing handlers."""
    handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
