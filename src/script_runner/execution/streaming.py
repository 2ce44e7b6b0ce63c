from __future__ import annotations

import codecs
import os
import select
import threading
import time
from collections import deque
from typing import Callable, Iterator

import structlog

from .types import ChannelClosedError

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_POLL_INTERVAL_SECONDS = 0.01
DEFAULT_CHANNEL_CAPACITY = 64

_IS_WINDOWS = os.name == "nt"


class OutputChannel:
    """Bounded, ordered, close-once channel of output chunks.

    Producers block in `send` while the channel is full. Consumers iterate the
    channel until it is closed and drained.

    Example:
        ```python
        channel = OutputChannel(capacity=16)
        text = "".join(channel)
        ```
    """

    def __init__(self, capacity: int = DEFAULT_CHANNEL_CAPACITY) -> None:
        """Create an empty channel holding at most `capacity` chunks.

        Example:
            ```python
            channel = OutputChannel(capacity=8)
            ```
        """
        if capacity < 1:
            raise ValueError("OutputChannel capacity must be at least 1")
        self._capacity = capacity
        self._items: deque[str] = deque()
        self._closed = False
        self._cond = threading.Condition(threading.Lock())

    @property
    def closed(self) -> bool:
        """Return True once `close` has been called.

        Example:
            ```python
            if channel.closed:
                ...
            ```
        """
        with self._cond:
            return self._closed

    def send(
        self,
        chunk: str,
        abort: threading.Event | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> bool:
        """Append one chunk, waiting for room while the channel is full.

        Returns False without delivering when `abort` is set before room
        frees up.

        Example:
            ```python
            delivered = channel.send("Hello\\n", abort=stop_event)
            ```
        """
        with self._cond:
            while True:
                if self._closed:
                    raise ChannelClosedError("Output channel is closed")
                if len(self._items) < self._capacity:
                    self._items.append(chunk)
                    self._cond.notify_all()
                    return True
                if abort is not None and abort.is_set():
                    return False
                self._cond.wait(poll_interval if abort is not None else None)

    def close(self) -> bool:
        """Close the channel; buffered chunks stay readable.

        Returns False when the channel was already closed.

        Example:
            ```python
            channel.close()
            ```
        """
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._cond.notify_all()
            return True

    def receive(self, timeout: float | None = None) -> str | None:
        """Pop the next chunk, or return None once closed and drained.

        Raises TimeoutError when `timeout` elapses with nothing to read.

        Example:
            ```python
            chunk = channel.receive(timeout=1.0)
            ```
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._items:
                if self._closed:
                    return None
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("No output chunk arrived in time")
                self._cond.wait(remaining)
            chunk = self._items.popleft()
            self._cond.notify_all()
            return chunk

    def __iter__(self) -> Iterator[str]:
        """Yield chunks in order until the channel is closed and empty.

        Example:
            ```python
            for chunk in channel:
                print(chunk, end="")
            ```
        """
        while True:
            chunk = self.receive()
            if chunk is None:
                return
            yield chunk


def _wait_readable(fd: int, timeout: float) -> bool:
    """Return True when `fd` has data (or EOF) ready within `timeout` seconds.

    Windows pipes cannot be selected on, so reads there simply block.

    Example:
        ```python
        ready = _wait_readable(proc.stdout.fileno(), 0.01)
        ```
    """
    if _IS_WINDOWS:
        return True
    ready, _, _ = select.select([fd], [], [], timeout)
    return bool(ready)


class OutputStreamer:
    """Drain one pipe incrementally into a sink until no more data can arrive.

    The drain ends on end-of-file, or when the writing process has died and
    nothing is left to read, whichever happens first.

    Example:
        ```python
        streamer = OutputStreamer(proc.stdout.fileno(), channel.send, lambda: proc.poll() is None)
        streamer.run()
        ```
    """

    def __init__(
        self,
        fd: int,
        sink: Callable[[str], object],
        is_alive: Callable[[], bool],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stop: threading.Event | None = None,
        name: str = "stream",
    ) -> None:
        """Configure the drain for a single file descriptor.

        Example:
            ```python
            streamer = OutputStreamer(fd, chunks.append, lambda: True, chunk_size=1024)
            ```
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._fd = fd
        self._sink = sink
        self._is_alive = is_alive
        self._chunk_size = chunk_size
        self._poll_interval = poll_interval
        self._stop = stop or threading.Event()
        self._name = name
        self._lock = threading.Lock()
        self._had_output = False
        self._finished = threading.Event()

    @property
    def had_output(self) -> bool:
        """Return whether any chunk was forwarded; final once `run` returns.

        Example:
            ```python
            streamer.run()
            printed = streamer.had_output
            ```
        """
        with self._lock:
            return self._had_output

    @property
    def finished(self) -> bool:
        """Return True after the drain loop has ended.

        Example:
            ```python
            assert streamer.finished
            ```
        """
        return self._finished.is_set()

    def run(self) -> None:
        """Run the drain loop on the current thread.

        Example:
            ```python
            threading.Thread(target=streamer.run, daemon=True).start()
            ```
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while not self._stop.is_set():
                # Sample liveness first: anything written before death is already readable.
                exited = not self._is_alive()
                try:
                    if not _wait_readable(self._fd, 0 if exited else self._poll_interval):
                        if exited:
                            break
                        continue
                    data = os.read(self._fd, self._chunk_size)
                except OSError as exc:
                    logger.debug("stream_read_failed", stream=self._name, error=str(exc))
                    break
                if not data:
                    break
                self._emit(decoder.decode(data))
            if not self._stop.is_set():
                self._emit(decoder.decode(b"", final=True))
        finally:
            self._finished.set()

    def _emit(self, text: str) -> None:
        """Forward a decoded chunk and record that output happened.

        Example:
            ```python
            streamer._emit("partial line")
            ```
        """
        if not text:
            return
        with self._lock:
            self._had_output = True
        self._sink(text)
