"""
Streaming pipeline - Bounded hand-off of chunks from generation threads to
asyncio consumers

Responsibilities:
- Bridge chunks produced on worker threads into an asyncio.Queue with
  backpressure (a producer waits while the buffer is full)
- Fail the producer when the consumer stays idle past the put timeout
- Tell the producer when the consumer has gone away
- Collect chunks into complete choices for non-streaming requests
"""

import abc
import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from errors import (
    StreamBufferFullError,
    StreamClosedError,
    StreamNotInitializedError,
)
from schemas import StreamChunk

logger = logging.getLogger(__name__)

_END = object()


class ChunkSink(abc.ABC):
    """Destination of generated chunks. `emit` is called from worker threads."""

    @abc.abstractmethod
    def emit(self, chunk: StreamChunk) -> None:
        """
        Deliver a chunk.

        Raises:
            StreamClosedError: If the consumer is gone
            StreamBufferFullError: If the consumer did not make room in time
        """

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        ...


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException):
        self.error = error


class StreamChannel(ChunkSink):
    """
    Bounded producer/consumer channel with an explicit closed state.

    Producers on worker threads call `emit`; one asyncio consumer iterates
    the channel. The buffer never holds more than `capacity` chunks. The end
    of the stream (or its failure) is recorded outside the buffer, so it is
    delivered after the queued chunks even when nobody made room for it.
    """

    def __init__(
        self,
        capacity: int,
        put_timeout: float,
        model_id: Optional[str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.put_timeout = put_timeout
        self.model_id = model_id
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = threading.Event()
        # Resolved once the stream ends or the consumer leaves
        self._wake: Optional[asyncio.Future] = None
        # _END or _Failure; kept outside the bounded queue so it never waits for room
        self._terminal = None
        if loop is not None:
            self.bind(loop)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the channel to the event loop its consumer runs on"""
        self._loop = loop
        self._queue = asyncio.Queue(maxsize=self.capacity)
        self._wake = loop.create_future()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def ended(self) -> bool:
        return self._terminal is not None

    def qsize(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # Producer side (worker threads)

    def emit(self, chunk: StreamChunk) -> None:
        if self._loop is None or self._queue is None:
            raise StreamNotInitializedError(self.model_id)
        if self.closed:
            raise StreamClosedError(self.model_id)

        future = asyncio.run_coroutine_threadsafe(self._queue.put(chunk), self._loop)
        try:
            future.result(timeout=self.put_timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            if self.closed:
                raise StreamClosedError(self.model_id)
            raise StreamBufferFullError(self.put_timeout, self.model_id)
        except concurrent.futures.CancelledError:
            raise StreamClosedError(self.model_id)

        # The consumer may have left while this put was waiting
        if self.closed:
            raise StreamClosedError(self.model_id)

    # Producer side (event loop)

    async def finish(self) -> None:
        """Signal the end of the stream after every producer finished"""
        self._set_terminal(_END)

    async def fail(self, error: BaseException) -> None:
        """Make the consumer raise `error` after the chunks already queued"""
        self._set_terminal(_Failure(error))

    def _set_terminal(self, item) -> None:
        if self._queue is None:
            raise StreamNotInitializedError(self.model_id)
        if self.closed or self._terminal is not None:
            return
        self._terminal = item
        self._notify()

    def _notify(self) -> None:
        if self._wake is not None and not self._wake.done():
            self._wake.set_result(None)

    # Consumer side

    def close(self) -> None:
        """Mark the consumer gone and drain the buffer so blocked producers wake"""
        if self.closed:
            return
        self._closed.set()
        self._notify()
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()

    async def get(self) -> Optional[StreamChunk]:
        """Next chunk, or None at the end of the stream"""
        if self._queue is None:
            raise StreamNotInitializedError(self.model_id)

        while not self.closed:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._terminal is not None:
                return self._finish_consumer()

            # Wake up when a chunk arrives, the stream ends or the consumer closes
            getter = asyncio.ensure_future(self._queue.get())
            try:
                await asyncio.wait({getter, self._wake}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()
        return None

    def _finish_consumer(self) -> None:
        if isinstance(self._terminal, _Failure):
            raise self._terminal.error
        return None

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        while True:
            chunk = await self.get()
            if chunk is None:
                return
            yield chunk


@dataclass
class _ChoiceBuffer:
    parts: List[str] = field(default_factory=list)
    token_ids: List[int] = field(default_factory=list)
    finished: bool = False
    finish_reason: Optional[str] = None


class CompletionAccumulator(ChunkSink):
    """Collects chunks per choice index for buffered (non-streaming) requests"""

    def __init__(self):
        self._lock = threading.Lock()
        self._choices: Dict[int, _ChoiceBuffer] = {}

    @property
    def closed(self) -> bool:
        return False

    def emit(self, chunk: StreamChunk) -> None:
        with self._lock:
            buffer = self._choices.setdefault(chunk.index, _ChoiceBuffer())
            if buffer.finished:
                raise StreamClosedError()
            if chunk.text:
                buffer.parts.append(chunk.text)
            if chunk.token_id is not None:
                buffer.token_ids.append(chunk.token_id)
            if chunk.finished:
                buffer.finished = True
                buffer.finish_reason = chunk.finish_reason

    def text(self, index: int) -> str:
        with self._lock:
            buffer = self._choices.get(index)
            return "".join(buffer.parts) if buffer else ""

    def finish_reason(self, index: int) -> Optional[str]:
        with self._lock:
            buffer = self._choices.get(index)
            return buffer.finish_reason if buffer else None

    def completion_tokens(self, index: int) -> int:
        with self._lock:
            buffer = self._choices.get(index)
            return len(buffer.token_ids) if buffer else 0

    def is_finished(self, index: int) -> bool:
        with self._lock:
            buffer = self._choices.get(index)
            return bool(buffer and buffer.finished)
