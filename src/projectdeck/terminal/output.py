"""Observable session output and the pumps that feed it."""

from __future__ import annotations

import codecs
import logging as py_logging
import os
import selectors
import threading
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from typing import IO

from projectdeck.terminal.dispatch import DEFAULT_DISPATCHER, Dispatcher

logger = py_logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_LINES = 5000
DEFAULT_CHUNK_SIZE = 4096
DEFAULT_READ_POLL_SECONDS = 0.2


def timestamp_prefix(now: datetime | None = None) -> str:
    return f"[{(now or datetime.now()).strftime('%H:%M:%S')}] "


@dataclass(frozen=True)
class OutputChange:
    kind: str
    entries: tuple[str, ...] = ()


OutputListener = Callable[[OutputChange], None]


class OutputBuffer:
    """Append-only, bounded sequence of output entries.

    Mutations are posted to the dispatcher and applied there, so observers
    always run on the presentation context. Reads return snapshots.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher | None = None,
        max_lines: int = DEFAULT_MAX_OUTPUT_LINES,
    ) -> None:
        if max_lines < 1:
            raise ValueError(f"max_lines must be positive: {max_lines}")
        self._dispatcher = dispatcher or DEFAULT_DISPATCHER
        self._lock = threading.Lock()
        self._entries: deque[str] = deque(maxlen=max_lines)
        self._listeners: list[OutputListener] = []

    @property
    def max_lines(self) -> int:
        return self._entries.maxlen or 0

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def text(self) -> str:
        return "".join(entry if entry.endswith("\n") else f"{entry}\n" for entry in self.lines)

    def subscribe(self, listener: OutputListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def append(self, entry: str) -> None:
        if not entry:
            return
        self._dispatcher.post(lambda: self._apply(OutputChange(kind="append", entries=(entry,))))

    def clear(self) -> None:
        self._dispatcher.post(lambda: self._apply(OutputChange(kind="clear")))

    def _apply(self, change: OutputChange) -> None:
        with self._lock:
            if change.kind == "clear":
                self._entries.clear()
            else:
                self._entries.extend(change.entries)
            listeners = list(self._listeners)
        for listener in listeners:
            listener(change)


class OutputPump:
    """Drain one process stream on a daemon thread into ``sink``.

    Bytes are decoded as UTF-8 incrementally, so a character split across two
    reads is emitted whole. The pump ends at end-of-stream, on a read error or
    once ``cancel`` is set. The stream is closed when the pump ends.
    """

    def __init__(
        self,
        stream: IO[bytes],
        sink: Callable[[str], None],
        *,
        cancel: threading.Event | None = None,
        name: str = "output",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_seconds: float = DEFAULT_READ_POLL_SECONDS,
    ) -> None:
        self._stream = stream
        self._sink = sink
        self._cancel = cancel or threading.Event()
        self._name = name
        self._chunk_size = chunk_size
        self._poll_seconds = poll_seconds
        self._thread: threading.Thread | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def start(self) -> threading.Thread:
        if self._thread is not None:
            return self._thread
        self._thread = threading.Thread(target=self.run, name=f"pump-{self._name}", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        self._cancel.set()

    def run(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = _stream_fileno(self._stream)
        selector: selectors.BaseSelector | None = None
        if fd is not None and os.name != "nt":
            selector = selectors.DefaultSelector()
            selector.register(fd, selectors.EVENT_READ)
        try:
            while not self._cancel.is_set():
                chunk = self._read_chunk(fd, selector)
                if chunk is None:
                    continue
                if not chunk:
                    self._forward(decoder.decode(b"", final=True))
                    break
                self._forward(decoder.decode(chunk))
        except (OSError, ValueError):
            logger.debug("output pump %s stopped on read error", self._name, exc_info=True)
        finally:
            if selector is not None:
                selector.close()
            close = getattr(self._stream, "close", None)
            if close is not None:
                with suppress(OSError, ValueError):
                    close()
        logger.debug("output pump %s finished cancelled=%s", self._name, self._cancel.is_set())

    def _read_chunk(self, fd: int | None, selector: selectors.BaseSelector | None) -> bytes | None:
        if selector is not None and fd is not None:
            if not selector.select(timeout=self._poll_seconds):
                return None
            return os.read(fd, self._chunk_size)
        if fd is not None:
            return os.read(fd, self._chunk_size)
        read1 = getattr(self._stream, "read1", None)
        if read1 is not None:
            return bytes(read1(self._chunk_size))
        return bytes(self._stream.read(self._chunk_size))

    def _forward(self, text: str) -> None:
        if not text or self._cancel.is_set():
            return
        try:
            self._sink(text)
        except Exception:
            logger.exception("output sink failed pump=%s", self._name)


def _stream_fileno(stream: object) -> int | None:
    fileno = getattr(stream, "fileno", None)
    if fileno is None:
        return None
    try:
        return int(fileno())
    except (OSError, ValueError):
        return None
