from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable

from provider_gateway.hooks.observability import EventLogger

from .errors import ProviderRequestFailedError, StreamFrameMalformedError

log = logging.getLogger("provider_gateway.streaming")

DeltaExtractor = Callable[[dict[str, Any]], "str | None"]


class FrameDialect(str, Enum):
    NDJSON = "ndjson"
    SSE = "sse"


def ndjson_message_content(payload: dict[str, Any]) -> str | None:
    message = payload.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None


def sse_delta_content(payload: dict[str, Any]) -> str | None:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    return None


@dataclass
class StreamOutcome:
    delivered: int = 0
    skipped: int = 0
    aborted: bool = False


class _EndOfStream(Exception):
    pass


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _read_or_abort(
    iterator: AsyncIterator[bytes],
    abort: asyncio.Event | None,
) -> bytes | None:
    """Next chunk, or None at end of stream or once abort is set mid-read."""
    if abort is None:
        return await _next_chunk(iterator)

    read_task = asyncio.ensure_future(_next_chunk(iterator))
    abort_task = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({read_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_task.cancel()
        if not read_task.done():
            read_task.cancel()
            # the source must finish unwinding before the response is closed
            await asyncio.wait({read_task})

    if read_task.cancelled():
        return None
    return read_task.result()


class StreamNormalizer:
    """Turns a provider's streamed body into plain text deltas.

    Each read is raced against the abort event, and the event is checked
    again before every delivery, so nothing read after an abort reaches
    ``on_chunk`` and a stalled upstream cannot hold the caller.
    """

    def __init__(
        self,
        dialect: FrameDialect,
        extract_delta: DeltaExtractor,
        *,
        provider: str = "",
        logger: EventLogger | None = None,
    ) -> None:
        self.dialect = dialect
        self.extract_delta = extract_delta
        self.provider = provider
        self.logger = logger or EventLogger()

    async def pump(
        self,
        chunks: AsyncIterable[bytes],
        on_chunk: Callable[[str], None],
        abort: asyncio.Event | None = None,
    ) -> StreamOutcome:
        outcome = StreamOutcome()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        iterator = chunks.__aiter__()

        try:
            while True:
                if abort is not None and abort.is_set():
                    outcome.aborted = True
                    break
                chunk = await _read_or_abort(iterator, abort)
                if chunk is None:
                    outcome.aborted = abort is not None and abort.is_set()
                    break

                buffer += decoder.decode(chunk)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    self._handle_line(line, on_chunk, abort, outcome)
                if outcome.aborted:
                    break

            if not outcome.aborted:
                tail = buffer + decoder.decode(b"", final=True)
                if tail.strip():
                    self._handle_line(tail, on_chunk, abort, outcome)
        except _EndOfStream:
            pass

        if outcome.aborted:
            self.logger.on_stream(self.provider, "aborted", delivered=outcome.delivered)
        return outcome

    def _handle_line(
        self,
        line: str,
        on_chunk: Callable[[str], None],
        abort: asyncio.Event | None,
        outcome: StreamOutcome,
    ) -> None:
        if outcome.aborted:
            return
        try:
            payload = self._parse_frame(line.strip())
        except StreamFrameMalformedError as exc:
            outcome.skipped += 1
            log.warning("Skipping malformed %s frame from %s: %s", self.dialect.value, self.provider, exc)
            self.logger.on_stream(self.provider, "frame_skipped", frame=exc.frame[:120])
            return
        if payload is None:
            return

        error = payload.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else error
            raise ProviderRequestFailedError(f"{self.provider} stream error: {detail}")

        delta = self.extract_delta(payload)
        if delta:
            if abort is not None and abort.is_set():
                outcome.aborted = True
                return
            on_chunk(delta)
            outcome.delivered += 1

        if self.dialect == FrameDialect.NDJSON and payload.get("done") is True:
            raise _EndOfStream()

    def _parse_frame(self, line: str) -> dict[str, Any] | None:
        if not line:
            return None
        if self.dialect == FrameDialect.SSE:
            if not line.startswith("data:"):
                return None
            data = line[5:].strip()
            if not data:
                return None
            if data == "[DONE]":
                raise _EndOfStream()
            line = data

        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise StreamFrameMalformedError(str(exc), frame=line) from exc
        if not isinstance(payload, dict):
            raise StreamFrameMalformedError("frame is not a JSON object", frame=line)
        return payload
