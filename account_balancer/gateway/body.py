from __future__ import annotations

import asyncio
from typing import AsyncIterable, AsyncIterator


class ReplayableBody:
    """Streams an inbound request body while keeping a bounded copy for failover.

    The first pass pulls from the client. A later pass (the next account)
    replays what was already read and then keeps pulling from the client.
    Once more than ``max_replay_bytes`` were read the copy is dropped and the
    body can no longer be resent.
    """

    def __init__(
        self,
        source: AsyncIterable[bytes] | None,
        *,
        max_replay_bytes: int,
    ) -> None:
        self._source: AsyncIterator[bytes] | None = (
            source.__aiter__() if source is not None else None
        )
        self._max_replay_bytes = max(0, int(max_replay_bytes))
        self._buffer: list[bytes] = []
        self._buffered_bytes = 0
        self._bytes_read = 0
        self._overflowed = False
        self._passes = 0
        self._exhausted = asyncio.Event()
        if self._source is None:
            self._exhausted.set()

    @property
    def has_body(self) -> bool:
        return self._source is not None

    @property
    def bytes_read(self) -> int:
        return self._bytes_read

    @property
    def replayable(self) -> bool:
        return not self._overflowed

    @property
    def exhausted(self) -> bool:
        return self._exhausted.is_set()

    async def wait_exhausted(self) -> None:
        await self._exhausted.wait()

    async def stream(self) -> AsyncIterator[bytes]:
        if self._passes > 0 and self._overflowed:
            raise RuntimeError("Request body was not buffered and cannot be replayed.")
        self._passes += 1
        for chunk in list(self._buffer):
            yield chunk
        if self._source is None:
            return
        while not self._exhausted.is_set():
            try:
                chunk = await anext(self._source)
            except StopAsyncIteration:
                self._exhausted.set()
                break
            if not chunk:
                continue
            self._remember(chunk)
            yield chunk

    def _remember(self, chunk: bytes) -> None:
        self._bytes_read += len(chunk)
        if self._overflowed:
            return
        if self._buffered_bytes + len(chunk) > self._max_replay_bytes:
            self._overflowed = True
            self._buffer.clear()
            self._buffered_bytes = 0
            return
        self._buffer.append(chunk)
        self._buffered_bytes += len(chunk)
