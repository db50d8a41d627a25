from __future__ import annotations

import asyncio
import logging


class LineBufferedLogger:
    """
    Turn a byte stream into log records, one per line.

    Bytes are buffered until a newline; carriage returns are dropped. Each
    stream gets its own instance so interleaved writers never share a buffer.
    """

    def __init__(
        self,
        logger: logging.Logger,
        level: int,
        *,
        prefix: str = "",
        encoding: str = "utf-8",
    ) -> None:
        self._logger = logger
        self._level = level
        self._prefix = prefix
        self._encoding = encoding
        self._buffer = bytearray()

    def write(self, data: bytes) -> None:
        *lines, rest = data.replace(b"\r", b"").split(b"\n")
        for line in lines:
            self._buffer += line
            self._emit()
        self._buffer += rest

    def flush(self) -> None:
        if self._buffer:
            self._emit()

    def _emit(self) -> None:
        line = self._buffer.decode(self._encoding, errors="replace")
        self._buffer.clear()
        self._logger.log(self._level, "%s%s", self._prefix, line)


async def pump_stream(stream: asyncio.StreamReader | None, sink: LineBufferedLogger) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            sink.write(chunk)
    finally:
        sink.flush()
