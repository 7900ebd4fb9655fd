"""Settings via pydantic-settings with the AGENTLOOP_ env prefix.

Provider credentials also read the unprefixed variables the provider
SDKs use (OPENAI_API_KEY, ANTHROPIC_API_KEY).
"""

import logging
from enum import Enum

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ToolCallLimitBehavior(Enum):
    CONFIRM = "confirm"
    STOP = "stop"


class LoopSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTLOOP_", env_file=".env", extra="ignore")

    # Loop
    tool_call_limit: int = 15
    tool_call_limit_behavior: ToolCallLimitBehavior = ToolCallLimitBehavior.CONFIRM
    max_stop_hook_blocks: int = 8

    # Summarization
    summarization_enabled: bool = True
    summarization_threshold: float = 0.8
    model_max_prompt_tokens: int = 128_000

    # Telemetry
    telemetry_cache_capacity: int = 1000

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    # Providers
    request_timeout: float = 600.0
    openai_api_key: str = Field(
        "", validation_alias=AliasChoices("AGENTLOOP_OPENAI_API_KEY", "OPENAI_API_KEY")
    )
    openai_base_url: str | None = None
    openai_model: str = "gpt-4o"
    anthropic_api_key: str = Field(
        "", validation_alias=AliasChoices("AGENTLOOP_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY")
    )
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-sonnet-4-5"
    anthropic_max_tokens: int = 8192


def configure_logging(settings: LoopSettings | None = None) -> None:
    """Install the agentloop log format on the root logger.

    Applications call this once at startup; importing agentloop never
    touches logging configuration.
    """
    settings = settings or LoopSettings()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
