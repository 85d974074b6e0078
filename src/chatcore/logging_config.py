# src/chatcore/logging_config.py
"""
Logging setup for applications embedding ChatCore.

ChatCore modules only ever call ``logging.getLogger(__name__)``; this module
is for the host application, which calls :func:`configure_logging` once at
startup to attach a console handler and a file handler to the root logger.

Key concepts:

    **Display filter**: When ``console_enabled=False`` the console handler
    still exists but only passes records carrying ``extra={"display": True}``
    (see :func:`log_display`). Everything else goes to the log file only.

    **File modes**: ``file_mode="per_run"`` (default) writes one timestamped
    file per process; ``file_mode="single"`` appends to one file rotated by
    ``RotatingFileHandler``.

Usage:
    from chatcore.logging_config import configure_logging

    configure_logging(app_name="chat-ui", config={"console_level": "INFO"})
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .config.models import LoggingConfig

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": True,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(name)s - %(message)s",
    "file_enabled": True,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/chatcore/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-32s - %(message)s",
    "rotation_max_bytes": 10 * 1024 * 1024,
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "chatcore": "INFO",
        "chatcore.events": "INFO",
        "asyncio": "WARNING",
    },
}


def _resolve_level(level: str | int, fallback: int) -> int:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    return level if isinstance(level, int) else fallback


class DisplayFilter(logging.Filter):
    """
    Gate for the console handler.

    With the console globally enabled every record passes and the handler's
    own level decides. Otherwise only records flagged ``display=True`` at or
    above ``display_min_level`` pass.
    """

    def __init__(self, console_globally_enabled: bool = False, display_min_level: int = logging.INFO) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        if self.console_globally_enabled:
            return True
        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level
        return False


class UnifiedLoggingManager:
    """
    Singleton manager for logging configuration.

    Ensures handlers are attached once and allows runtime level changes.
    """

    _instance: Optional["UnifiedLoggingManager"] = None
    _configured: bool = False
    _log_file_path: Path | None = None
    _console_handler: logging.Handler | None = None
    _file_handler: logging.Handler | None = None
    _display_filter: DisplayFilter | None = None

    def __new__(cls) -> "UnifiedLoggingManager":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def get_instance(cls) -> "UnifiedLoggingManager":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def is_configured(cls) -> bool:
        return cls._configured

    @classmethod
    def get_log_file_path(cls) -> Path | None:
        return cls._log_file_path

    def configure(
        self,
        app_name: str = "chatcore",
        config: LoggingConfig | dict[str, Any] | None = None,
        force_reconfigure: bool = False,
    ) -> Path | None:
        """
        Attach console and file handlers to the root logger.

        Args:
            app_name: Used in the log file name.
            config: A LoggingConfig section or a partial dictionary merged
                over DEFAULT_LOGGING_CONFIG.
            force_reconfigure: Replace existing handlers even if already configured.

        Returns:
            Path of the log file, or None when file logging is off or unavailable.
        """
        if self._configured and not force_reconfigure:
            return self._log_file_path

        log_config = self._merge_config(config)

        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()
        root_logger.setLevel(logging.DEBUG)

        console_enabled = bool(log_config.get("console_enabled", True))
        self._display_filter = DisplayFilter(
            console_globally_enabled=console_enabled,
            display_min_level=_resolve_level(log_config.get("display_min_level", "INFO"), logging.INFO),
        )
        self._console_handler = self._create_console_handler(log_config)
        if not console_enabled:
            # the filter alone decides which records reach the console
            self._console_handler.setLevel(logging.DEBUG)
        self._console_handler.addFilter(self._display_filter)
        root_logger.addHandler(self._console_handler)

        self._file_handler, self._log_file_path = (None, None)
        if log_config.get("file_enabled", True):
            self._file_handler, self._log_file_path = self._create_file_handler(log_config, app_name)
            if self._file_handler:
                root_logger.addHandler(self._file_handler)

        for component_name, level_str in log_config.get("components", {}).items():
            logging.getLogger(component_name).setLevel(_resolve_level(level_str, logging.INFO))

        UnifiedLoggingManager._configured = True
        UnifiedLoggingManager._log_file_path = self._log_file_path
        UnifiedLoggingManager._console_handler = self._console_handler
        UnifiedLoggingManager._file_handler = self._file_handler

        if self._log_file_path:
            logging.getLogger(__name__).debug(f"Logging configured. Log file: {self._log_file_path}")
        return self._log_file_path

    @staticmethod
    def _merge_config(config: LoggingConfig | dict[str, Any] | None) -> dict[str, Any]:
        if config is None:
            return dict(DEFAULT_LOGGING_CONFIG)
        if isinstance(config, LoggingConfig):
            config = config.model_dump()
            if not config.get("components"):
                config.pop("components", None)
        return {**DEFAULT_LOGGING_CONFIG, **config}

    def _create_console_handler(self, config: dict[str, Any]) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(_resolve_level(config.get("console_level", "WARNING"), logging.WARNING))
        handler.setFormatter(logging.Formatter(config.get("console_format", DEFAULT_LOGGING_CONFIG["console_format"])))
        return handler

    def _create_file_handler(
        self, config: dict[str, Any], app_name: str
    ) -> tuple[logging.Handler | None, Path | None]:
        log_dir = Path(os.path.expanduser(config.get("file_directory", DEFAULT_LOGGING_CONFIG["file_directory"])))
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
            return None, None

        handler: logging.Handler
        try:
            if config.get("file_mode", "per_run") == "single":
                log_file_path = log_dir / config.get("file_single_name", "{app}.log").format(app=app_name)
                handler = RotatingFileHandler(
                    log_file_path,
                    maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                    backupCount=config.get("rotation_backup_count", 5),
                    encoding="utf-8",
                )
            else:
                pattern = config.get("file_name_pattern", DEFAULT_LOGGING_CONFIG["file_name_pattern"])
                log_file_path = log_dir / pattern.format(app=app_name, timestamp=datetime.now())
                handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file in {log_dir}: {e}\n")
            return None, None

        handler.setLevel(_resolve_level(config.get("file_level", "DEBUG"), logging.DEBUG))
        handler.setFormatter(logging.Formatter(config.get("file_format", DEFAULT_LOGGING_CONFIG["file_format"])))
        return handler, log_file_path

    def set_console_level(self, level: str | int) -> None:
        if self._console_handler is not None:
            self._console_handler.setLevel(_resolve_level(level, logging.WARNING))

    def set_file_level(self, level: str | int) -> None:
        if self._file_handler is not None:
            self._file_handler.setLevel(_resolve_level(level, logging.DEBUG))

    def set_component_level(self, component: str, level: str | int) -> None:
        logging.getLogger(component).setLevel(_resolve_level(level, logging.INFO))

    def disable_console(self) -> None:
        """Detach the console handler; even ``display=True`` records stop appearing."""
        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)
            self._console_handler = None
            self._display_filter = None
            UnifiedLoggingManager._console_handler = None

    def enable_console(self, level: str = "WARNING") -> None:
        """Attach a console handler that passes every record at or above ``level``."""
        if self._display_filter is not None and self._display_filter.console_globally_enabled:
            return
        if self._console_handler is not None:
            logging.getLogger().removeHandler(self._console_handler)
        self._console_handler = self._create_console_handler({"console_level": level})
        self._display_filter = DisplayFilter(console_globally_enabled=True, display_min_level=logging.DEBUG)
        self._console_handler.addFilter(self._display_filter)
        logging.getLogger().addHandler(self._console_handler)
        UnifiedLoggingManager._console_handler = self._console_handler


def configure_logging(
    app_name: str = "chatcore",
    config: LoggingConfig | dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """Configure logging once for the host process. See :meth:`UnifiedLoggingManager.configure`."""
    return UnifiedLoggingManager.get_instance().configure(
        app_name=app_name, config=config, force_reconfigure=force_reconfigure
    )


def log_display(logger: logging.Logger, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
    """Log a message that also reaches the console when console logging is off."""
    extra = kwargs.pop("extra", None) or {}
    extra["display"] = True
    kwargs["extra"] = extra
    logger.log(level, msg, *args, **kwargs)


def get_log_file_path() -> Path | None:
    return UnifiedLoggingManager.get_log_file_path()


def set_console_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_console_level(level)


def set_file_level(level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_file_level(level)


def set_component_level(component: str, level: str | int) -> None:
    UnifiedLoggingManager.get_instance().set_component_level(component, level)


def disable_console_logging() -> None:
    UnifiedLoggingManager.get_instance().disable_console()


def enable_console_logging(level: str = "WARNING") -> None:
    UnifiedLoggingManager.get_instance().enable_console(level)


__all__ = [
    "DEFAULT_LOGGING_CONFIG",
    "DisplayFilter",
    "UnifiedLoggingManager",
    "configure_logging",
    "disable_console_logging",
    "enable_console_logging",
    "get_log_file_path",
    "log_display",
    "set_component_level",
    "set_console_level",
    "set_file_level",
]
