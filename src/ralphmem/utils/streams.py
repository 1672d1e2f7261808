from __future__ import annotations

from collections.abc import AsyncIterator
import logging

import anyio
from anyio.abc import ByteReceiveStream
from anyio.streams.text import TextReceiveStream

_LINE_ENDINGS = ("\n", "\r")


async def iter_text_lines(stream: ByteReceiveStream) -> AsyncIterator[str]:
    """Yield decoded lines with their endings; joining them restores the text."""
    pending = ""
    async for chunk in TextReceiveStream(stream, errors="replace"):
        lines = (pending + chunk).splitlines(keepends=True)
        pending = ""
        if lines and not lines[-1].endswith(_LINE_ENDINGS):
            pending = lines.pop()
        for line in lines:
            yield line
    if pending:
        yield pending


async def drain_text(
    stream: ByteReceiveStream | None,
    chunks: list[str],
    logger: logging.Logger,
    tag: str,
) -> None:
    """Collect a child's output into ``chunks`` until the pipe closes."""
    if stream is None:
        return
    try:
        async for line in iter_text_lines(stream):
            logger.debug("[%s] %s", tag, line.rstrip())
            chunks.append(line)
    except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as e:
        logger.debug("[%s] drain error: %s", tag, e)
