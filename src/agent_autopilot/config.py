"""
Settings and logging setup for Agent Autopilot.

Settings are read from environment variables prefixed with ``AUTOPILOT_``
and from an optional ``.env`` file.

Example:
    AUTOPILOT_STORAGE_PATH=/var/lib/autopilot/state.json
    AUTOPILOT_REASONING_ENDPOINT=https://llm.example.com/v1
    AUTOPILOT_REASONING_API_KEY=sk-...
"""

import logging
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .policies import PermissionLimits

if TYPE_CHECKING:
    from .decision import HttpReasoningProvider

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class AutopilotSettings(BaseSettings):
    """
    Configuration loaded from environment variables.

    Environment variables should be prefixed with AUTOPILOT_
    Example: AUTOPILOT_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core settings
    storage_path: Path = Field(default_factory=lambda: Path.home() / '.agent_autopilot' / 'state.json')
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Reasoning provider (OpenAI-compatible chat completions)
    reasoning_endpoint: Optional[str] = None
    reasoning_api_key: Optional[SecretStr] = None
    reasoning_model: str = "gaia-agent"
    reasoning_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    reasoning_max_tokens: int = Field(default=500, ge=1, le=4096)
    reasoning_timeout_seconds: float = Field(default=30.0, gt=0)

    # Scheduler
    scheduler_poll_seconds: float = Field(default=1.0, gt=0)
    schedule_retry_delay_seconds: float = Field(default=1.0, ge=0)

    # Optional product limits on new permissions
    enforce_permission_limits: bool = False
    min_spend_amount: Decimal = Decimal('0.001')
    max_spend_amount: Decimal = Decimal('1000')
    min_duration_hours: int = 1
    max_duration_days: int = 365
    max_allowed_contracts: int = 10

    def permission_limits(self) -> Optional[PermissionLimits]:
        """Limits to enforce on new permissions, or None when disabled."""
        if not self.enforce_permission_limits:
            return None
        return PermissionLimits(
            min_spend_amount=self.min_spend_amount,
            max_spend_amount=self.max_spend_amount,
            min_duration_hours=self.min_duration_hours,
            max_duration_days=self.max_duration_days,
            max_allowed_contracts=self.max_allowed_contracts,
        )

    def build_reasoning_provider(self) -> Optional['HttpReasoningProvider']:
        """
        Build the HTTP reasoning provider.

        Returns None when the endpoint or key is missing, in which case the
        decision engine uses its deterministic fallback.
        """
        if not self.reasoning_endpoint or self.reasoning_api_key is None:
            return None
        api_key = self.reasoning_api_key.get_secret_value()
        if not api_key:
            return None

        from .decision import HttpReasoningProvider

        return HttpReasoningProvider(
            endpoint=self.reasoning_endpoint,
            api_key=api_key,
            model=self.reasoning_model,
            temperature=self.reasoning_temperature,
            max_tokens=self.reasoning_max_tokens,
            timeout=self.reasoning_timeout_seconds,
        )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach a stream handler to the package logger.

    Safe to call more than once: the handler is only added the first time,
    later calls just update the level.
    """
    logger = logging.getLogger('agent_autopilot')
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
