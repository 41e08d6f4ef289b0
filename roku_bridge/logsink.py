import logging
from typing import Callable, Optional

LogCallback = Callable[[str], None]


class LogSinkMixin:
    """Mirrors step messages to an optional caller-supplied callback."""

    log_callback: Optional[LogCallback] = None
    _logger = logging.getLogger(__name__)

    def _log(self, message: str, level: int = logging.INFO, exc_info: bool = False):
        self._logger.log(level, message, exc_info=exc_info)
        if self.log_callback is None:
            return
        try:
            self.log_callback(message)
        except Exception:
            self._logger.exception("Log callback failed")
