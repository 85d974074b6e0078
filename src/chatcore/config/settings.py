# src/chatcore/config/settings.py
"""
Process-wide settings for ChatCore.

All settings can be overridden via environment variables with the
``CHATCORE_`` prefix; nested sections use double underscores, e.g.
``CHATCORE_CONVERSATIONS__MAX_SESSIONS=300``. An optional TOML file provides
base values below the environment.

Precedence (highest first): explicit overrides, environment, ``.env``,
TOML file, model defaults.

Usage:
    from chatcore.config import load_settings

    settings = load_settings("~/.config/chatcore/config.toml")
    print(settings.conversations.context_window)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from ..exceptions import ConfigError
from .models import (
    AnalyticsConfig,
    ChatHistoryConfig,
    ConversationConfig,
    EventBusConfig,
    LoggingConfig,
    ProviderRegistryConfig,
    StateStoreConfig,
    SyncConfig,
)

logger = logging.getLogger(__name__)


class ChatCoreSettings(BaseSettings):
    """Root configuration composed of one section per component."""

    model_config = SettingsConfigDict(
        env_prefix="CHATCORE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    events: EventBusConfig = Field(default_factory=EventBusConfig)
    state: StateStoreConfig = Field(default_factory=StateStoreConfig)
    chat_history: ChatHistoryConfig = Field(default_factory=ChatHistoryConfig)
    providers: ProviderRegistryConfig = Field(default_factory=ProviderRegistryConfig)
    conversations: ConversationConfig = Field(default_factory=ConversationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(
    config_file: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ChatCoreSettings:
    """
    Build the settings object.

    Args:
        config_file: Optional TOML file with base values. ``~`` is expanded.
        overrides: Section dictionaries that win over every other source,
            e.g. ``{"conversations": {"max_sessions": 10}}``.

    Returns:
        A validated ChatCoreSettings instance.

    Raises:
        ConfigError: If the file does not exist or a value fails validation.
    """
    settings_cls: type[ChatCoreSettings] = ChatCoreSettings
    if config_file is not None:
        path = Path(os.path.expanduser(str(config_file)))
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")

        class _FileBackedSettings(ChatCoreSettings):
            model_config = SettingsConfigDict(toml_file=path)

        settings_cls = _FileBackedSettings
        logger.debug(f"Loading settings from {path}")

    try:
        return settings_cls(**(overrides or {}))
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


__all__ = ["ChatCoreSettings", "load_settings"]
