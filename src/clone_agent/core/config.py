"""
Agent configuration loading.

Settings come from an optional JSON file (AGENT_CONFIG_FILE) and are then
overridden by environment variables, with .env loaded first. Validation is
done by the AgentConfig model, so a bad value fails at startup.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from clone_agent.core.models import AgentConfig

logger = logging.getLogger(__name__)

# Environment variable -> AgentConfig field
ENV_OVERRIDES = {
    "COLLECTION_WINDOW_SECONDS": "collection_window_seconds",
    "MAX_RETRIES": "max_retries",
    "LEASE_TIMEOUT_SECONDS": "lease_timeout_seconds",
    "HARD_CHUNK_CEILING": "hard_chunk_ceiling",
    "PACING_IDEAL_CHUNK": "pacing_ideal_chunk",
    "PACING_BEFORE_SPLIT": "pacing_before_split",
    "INTER_CHUNK_DELAY_SECONDS": "inter_chunk_delay_seconds",
    "PACING_BASE_DELAY_SECONDS": "pacing_base_delay_seconds",
    "PACING_JITTER_SECONDS": "pacing_jitter_seconds",
    "PROCESSOR_POLL_SECONDS": "processor_poll_seconds",
    "SENDER_POLL_SECONDS": "sender_poll_seconds",
    "DATABASE_URL": "database_url",
    "WAHA_URL": "waha_url",
    "WAHA_API_KEY": "waha_api_key",
    "WAHA_SESSION": "waha_session",
    "GENERATION_BASE_URL": "generation_base_url",
    "GENERATION_API_KEY": "generation_api_key",
    "GENERATION_MODEL": "generation_model",
    "SYSTEM_PROMPT": "system_prompt",
}

OPERATING_HOURS_OVERRIDES = {
    "OPERATING_START": "start_time",
    "OPERATING_END": "end_time",
    "OPERATING_TIMEZONE": "timezone",
}

def _read_config_file(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data

def load_config(path: Optional[Union[str, Path]] = None) -> AgentConfig:
    """
    Build the agent configuration.

    Args:
        path: JSON config file. Defaults to $AGENT_CONFIG_FILE when set.

    Returns:
        Validated AgentConfig.

    Raises:
        FileNotFoundError: If an explicit config file does not exist
        pydantic.ValidationError: If a value is out of range
    """
    load_dotenv()

    data: dict = {}
    config_path = path or os.getenv("AGENT_CONFIG_FILE")
    if config_path:
        config_path = Path(config_path)
        data = _read_config_file(config_path)
        logger.info(f"Loaded config file {config_path}")

    for env_name, field in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is not None and value != "":
            data[field] = value

    hours = dict(data.get("operating_hours") or {})
    for env_name, field in OPERATING_HOURS_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            hours[field] = value
    if hours:
        data["operating_hours"] = hours

    return AgentConfig(**data)
