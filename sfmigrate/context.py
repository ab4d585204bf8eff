"""Run context threaded through job, tasks and API engines."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import Settings, get_settings
from .exceptions import JobAbortedError
from .messages import format_message
from .services.hooks import HookDispatcher


class MigrationLogger:
    """Structured logger: callers pass a message key and tokens."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("sfmigrate")

    def log(self, key: str, *tokens) -> None:
        self._logger.info(format_message(key, *tokens))

    def warn(self, key: str, *tokens) -> None:
        self._logger.warning(format_message(key, *tokens))

    def error(self, key: str, *tokens) -> None:
        self._logger.error(format_message(key, *tokens))

    def debug(self, key: str, *tokens) -> None:
        self._logger.debug(format_message(key, *tokens))


@dataclass
class RunContext:
    """Explicit per-run state: logger, hooks, settings and the cancel flag."""
    logger: MigrationLogger = field(default_factory=MigrationLogger)
    hooks: HookDispatcher = field(default_factory=HookDispatcher)
    settings: Settings = field(default_factory=get_settings)
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None

    def request_cancel(self, reason: str = "cancelled") -> None:
        if not self.cancel_requested:
            self.cancel_requested = True
            self.cancel_reason = reason
            self.logger.warn("jobCancelled", reason)

    def check_cancelled(self) -> None:
        """Raise at a task boundary when cancellation has been requested."""
        if self.cancel_requested:
            raise JobAbortedError(self.cancel_reason or "cancelled")
