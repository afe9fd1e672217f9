"""Configuration for the relay process.

Values come from the environment (prefix ``TASKRELAY_``) or an optional
``.env`` file. The controller URL and response target can also be overridden
at runtime through the settings store; see ``Orchestrator``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DESTRUCTIVE_KEYWORDS = [
    "delete", "remove", "reset", "format", "purchase",
    "buy", "unsubscribe", "deactivate", "terminate",
    "cancel subscription", "erase",
]

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class RelaySettings(BaseSettings):
    """Process settings."""

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Controller link
    controller_url: str = "ws://localhost:4545/automation"
    auto_connect: bool = True
    heartbeat_interval_seconds: float = 20.0
    reconnect_base_delay_seconds: float = 2.0
    reconnect_max_delay_seconds: float = 30.0
    max_reconnect_attempts: int = 50

    # Planning
    response_target: str = "chatgpt"
    response_timeout_seconds: float = 120.0
    max_plan_steps: int = Field(default=10, ge=1)
    destructive_keywords: List[str] = Field(
        default_factory=lambda: list(DEFAULT_DESTRUCTIVE_KEYWORDS)
    )
    remote_actions: List[str] = []

    # Triggers
    rule_cooldown_seconds: float = 30.0

    # Execution
    ledger_capacity: int = Field(default=50, ge=1)
    max_settle_seconds: float = 10.0

    # Storage / logging
    db_path: str = ":memory:"
    log_retention: int = Field(default=100, ge=1)
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Process-wide default settings, read once."""
    return RelaySettings()


def configure_logging(settings: RelaySettings) -> None:
    """Install a root handler unless the host application already has one."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(settings.log_level.upper())
        return
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
