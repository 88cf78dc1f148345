"""Queue-backed logging so the control loop never blocks on log I/O."""

import logging
import queue
from logging.handlers import QueueHandler, QueueListener


class AsyncLogHandler:
    """Reroute one logger through a QueueHandler drained by a QueueListener.

    The loop thread only enqueues records; formatting and writing happen on
    the listener thread using whatever handlers the logger would otherwise
    have reached (normally the root handlers installed by the CLI).
    """

    def __init__(self, logger_name: str = "dlsik"):
        self._queue: queue.Queue[logging.LogRecord] = queue.Queue(-1)
        self._logger = logging.getLogger(logger_name)
        self._listener: QueueListener | None = None

    @property
    def active(self) -> bool:
        return self._listener is not None

    def _effective_handlers(self) -> list[logging.Handler]:
        node: logging.Logger | None = self._logger
        while node is not None:
            if node.handlers:
                return node.handlers[:]
            if not node.propagate:
                break
            node = node.parent
        return []

    def start(self) -> None:
        """Install the queue handler. No-op if already started or nothing to wrap."""
        if self._listener is not None:
            return
        handlers = self._effective_handlers()
        if not handlers:
            return
        self._logger.handlers = [QueueHandler(self._queue)]
        self._logger.propagate = False
        self._listener = QueueListener(
            self._queue, *handlers, respect_handler_level=True
        )
        self._listener.start()

    def stop(self) -> None:
        """Flush queued records and restore propagation."""
        if self._listener is None:
            return
        self._listener.stop()
        self._listener = None
        self._logger.handlers = []
        self._logger.propagate = True
