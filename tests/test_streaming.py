import asyncio
from typing import AsyncIterator

import pytest

from provider_gateway.hooks.observability import EventLogger
from provider_gateway.llm.errors import ProviderRequestFailedError
from provider_gateway.llm.streaming import (
    FrameDialect,
    StreamNormalizer,
    ndjson_message_content,
    sse_delta_content,
)


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


def _pump(normalizer: StreamNormalizer, chunks: AsyncIterator[bytes], abort: asyncio.Event | None = None):
    delivered: list[str] = []
    outcome = asyncio.run(normalizer.pump(chunks, delivered.append, abort))
    return delivered, outcome


def test_ndjson_skips_malformed_frame_between_good_frames() -> None:
    logger = EventLogger()
    normalizer = StreamNormalizer(
        FrameDialect.NDJSON, ndjson_message_content, provider="ollama", logger=logger
    )

    delivered, outcome = _pump(
        normalizer,
        _chunks(
            b'{"message":{"content":"Hel"}}\n',
            b"{not json}\n",
            b'{"message":{"content":"lo"}}\n',
        ),
    )

    assert delivered == ["Hel", "lo"]
    assert outcome.delivered == 2
    assert outcome.skipped == 1
    assert not outcome.aborted
    assert [event.name for event in logger.list_events("stream")] == ["frame_skipped"]


def test_ndjson_reassembles_lines_split_across_chunks() -> None:
    normalizer = StreamNormalizer(FrameDialect.NDJSON, ndjson_message_content)
    encoded = '{"message":{"content":"héllo"}}\n'.encode("utf-8")
    split_at = encoded.index("é".encode("utf-8")) + 1

    delivered, _ = _pump(
        normalizer,
        _chunks(encoded[:split_at], encoded[split_at:], b'{"message":{"content":" world"}}'),
    )

    assert delivered == ["héllo", " world"]


def test_ndjson_done_frame_ends_stream() -> None:
    normalizer = StreamNormalizer(FrameDialect.NDJSON, ndjson_message_content)

    delivered, outcome = _pump(
        normalizer,
        _chunks(
            b'{"message":{"content":"a"},"done":false}\n',
            b'{"message":{"content":""},"done":true}\n',
            b'{"message":{"content":"ignored"}}\n',
        ),
    )

    assert delivered == ["a"]
    assert outcome.delivered == 1


def test_ndjson_error_frame_raises() -> None:
    normalizer = StreamNormalizer(FrameDialect.NDJSON, ndjson_message_content, provider="ollama")

    with pytest.raises(ProviderRequestFailedError, match="model not found"):
        _pump(normalizer, _chunks(b'{"error":"model not found"}\n'))


def test_sse_parses_data_lines_and_stops_at_done() -> None:
    normalizer = StreamNormalizer(FrameDialect.SSE, sse_delta_content, provider="qwen")

    delivered, outcome = _pump(
        normalizer,
        _chunks(
            b": keep-alive\n",
            b"event: message\n",
            b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":"{\\"x\\""}}]}\n\n',
            b'data: {"choices":[{"delta":{"content":":1}"}}]}\n\ndata: [DONE]\n\n',
            b'data: {"choices":[{"delta":{"content":"after done"}}]}\n\n',
        ),
    )

    assert delivered == ['{"x"', ":1}"]
    assert outcome.delivered == 2
    assert outcome.skipped == 0


def test_sse_malformed_payload_is_skipped() -> None:
    normalizer = StreamNormalizer(FrameDialect.SSE, sse_delta_content)

    delivered, outcome = _pump(
        normalizer,
        _chunks(
            b'data: {"choices":[{"delta":{"content":"a"}}]}\n',
            b"data: {broken\n",
            b'data: {"choices":[{"delta":{"content":"b"}}]}\n',
        ),
    )

    assert delivered == ["a", "b"]
    assert outcome.skipped == 1


def test_abort_stops_reads_and_callbacks() -> None:
    logger = EventLogger()
    normalizer = StreamNormalizer(
        FrameDialect.NDJSON, ndjson_message_content, provider="ollama", logger=logger
    )
    abort = asyncio.Event()
    reads: list[int] = []
    delivered: list[str] = []

    async def source() -> AsyncIterator[bytes]:
        for index in range(5):
            reads.append(index)
            yield f'{{"message":{{"content":"part-{index}"}}}}\n'.encode("utf-8")

    def on_chunk(text: str) -> None:
        delivered.append(text)
        if len(delivered) == 2:
            abort.set()

    outcome = asyncio.run(normalizer.pump(source(), on_chunk, abort))

    assert delivered == ["part-0", "part-1"]
    assert reads == [0, 1]
    assert outcome.aborted
    assert [event.name for event in logger.list_events("stream")] == ["aborted"]


def test_abort_set_before_start_reads_nothing() -> None:
    normalizer = StreamNormalizer(FrameDialect.SSE, sse_delta_content)
    abort = asyncio.Event()
    abort.set()

    delivered, outcome = _pump(
        normalizer,
        _chunks(b'data: {"choices":[{"delta":{"content":"a"}}]}\n'),
        abort,
    )

    assert delivered == []
    assert outcome.aborted


def test_abort_between_frames_of_one_chunk_suppresses_rest() -> None:
    normalizer = StreamNormalizer(FrameDialect.NDJSON, ndjson_message_content)
    abort = asyncio.Event()
    delivered: list[str] = []

    def on_chunk(text: str) -> None:
        delivered.append(text)
        abort.set()

    outcome = asyncio.run(
        normalizer.pump(
            _chunks(b'{"message":{"content":"a"}}\n{"message":{"content":"b"}}\n'),
            on_chunk,
            abort,
        )
    )

    assert delivered == ["a"]
    assert outcome.aborted


def test_abort_interrupts_a_stalled_read() -> None:
    logger = EventLogger()
    normalizer = StreamNormalizer(
        FrameDialect.NDJSON, ndjson_message_content, provider="ollama", logger=logger
    )
    delivered: list[str] = []
    closed: list[bool] = []

    async def _run():
        abort = asyncio.Event()
        stalled = asyncio.Event()

        async def source() -> AsyncIterator[bytes]:
            try:
                yield b'{"message":{"content":"first"}}\n'
                await stalled.wait()
                yield b'{"message":{"content":"never"}}\n'
            finally:
                closed.append(True)

        def on_chunk(text: str) -> None:
            delivered.append(text)
            asyncio.get_running_loop().call_later(0.05, abort.set)

        return await asyncio.wait_for(normalizer.pump(source(), on_chunk, abort), 1.0)

    outcome = asyncio.run(_run())

    assert delivered == ["first"]
    assert outcome.aborted
    assert closed == [True]
    assert [event.name for event in logger.list_events("stream")] == ["aborted"]
