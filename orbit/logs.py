"""Logging setup with a pre-configuration buffer.

Records emitted under the ``orbit`` logger before anything configures
logging are held in memory and replayed, in original order and exactly
once, when configure_logging() runs. The buffer is bounded; on overflow the
oldest records go and one summary warning replaces them.

A host that configures the root logger itself takes over as soon as it has
handlers: buffering stops, the backlog is replayed into the root handlers at
the root level, and the ``orbit`` logger returns to normal propagation.
"""

from __future__ import annotations

import logging
from collections import deque

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
DEFAULT_CAPACITY = 1000


class _BufferHandler(logging.Handler):
    """Forwards every record to the owning LogBuffer."""

    def __init__(self, owner: LogBuffer, capacity: int) -> None:
        super().__init__(level=logging.DEBUG)
        self._owner = owner
        self.records: deque[logging.LogRecord] = deque(maxlen=capacity)
        self.dropped = 0

    def emit(self, record: logging.LogRecord) -> None:
        self._owner._on_record(record)

    def keep(self, record: logging.LogRecord) -> None:
        if len(self.records) == self.records.maxlen:
            self.dropped += 1
        self.records.append(record)

    def drain(self) -> tuple[list[logging.LogRecord], int]:
        self.acquire()
        try:
            records, dropped = list(self.records), self.dropped
            self.records.clear()
            self.dropped = 0
        finally:
            self.release()
        return records, dropped


class LogBuffer:
    """Process-wide logging lifecycle: install -> buffer -> configure/flush."""

    def __init__(
        self,
        logger: logging.Logger,
        capacity: int = DEFAULT_CAPACITY,
        root: logging.Logger | None = None,
    ) -> None:
        self._logger = logger
        self._root = root if root is not None else logging.getLogger()
        self._handler = _BufferHandler(self, capacity)
        self._installed = False
        self._configured = False
        # Backlog already handed to the host; waiting for a record the host
        # level lets through before propagation is switched back on
        self._handing_off = False

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def pending(self) -> int:
        """Number of records waiting to be flushed."""
        return len(self._handler.records)

    @property
    def dropped(self) -> int:
        return self._handler.dropped

    def install(self) -> None:
        """Start buffering. Idempotent; a no-op once configured or when the
        root logger already has handlers."""
        if self._installed or self._configured:
            return
        if self._root.handlers:
            self._configured = True
            return
        self._logger.addHandler(self._handler)
        # Let DEBUG/INFO records be created at all while nothing is configured.
        # Propagation is off so they never reach root handlers added later
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        self._installed = True

    def _on_record(self, record: logging.LogRecord) -> None:
        if not self._handing_off:
            if not self._root.handlers:
                self._handler.keep(record)
                return
            self._hand_off()

        if record.levelno >= self._root.getEffectiveLevel():
            # Propagation delivers this record once the handler returns
            self._finish()

    def _hand_off(self) -> None:
        """The host configured the root logger: replay the backlog into it."""
        self._handing_off = True
        self._logger.setLevel(logging.NOTSET)
        threshold = self._root.getEffectiveLevel()
        for record in self._backlog():
            if record.levelno >= threshold:
                self._root.handle(record)

    def _finish(self) -> None:
        self._logger.removeHandler(self._handler)
        self._logger.propagate = True
        self._installed = False
        self._handing_off = False
        self._configured = True

    def _backlog(self) -> list[logging.LogRecord]:
        records, dropped = self._handler.drain()
        if dropped:
            summary = self._logger.makeRecord(
                self._logger.name,
                logging.WARNING,
                __file__,
                0,
                "%d early log record(s) dropped, buffer holds %d",
                (dropped, self._handler.records.maxlen),
                None,
            )
            records.insert(0, summary)
        return records

    def configure(self, level: str = "info", handler: logging.Handler | None = None) -> None:
        """Configure output and flush the buffer.

        Without a handler, the root logger is configured via basicConfig and
        buffered records are replayed into its handlers. A second call only
        adjusts the level.
        """
        numeric = getattr(logging, level.upper(), logging.INFO)
        if self._configured:
            self._logger.setLevel(numeric)
            return

        if handler is None:
            logging.basicConfig(level=numeric, format=LOG_FORMAT)
            targets = list(logging.getLogger().handlers)
        else:
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self._logger.addHandler(handler)
            targets = [handler]

        backlog = self._backlog()
        self._finish()
        self._logger.setLevel(numeric)

        for record in backlog:
            if record.levelno < numeric:
                continue
            for target in targets:
                if record.levelno >= target.level:
                    target.handle(record)


_default = LogBuffer(logging.getLogger("orbit"))


def install_buffer() -> None:
    _default.install()


def configure_logging(level: str = "info") -> None:
    """Configure process logging and flush anything logged before now."""
    _default.configure(level)
