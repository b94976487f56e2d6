import asyncio
import unittest

from chatmux.errors import ProviderRequestError, ProviderTimeoutError, StreamConsumedError
from chatmux.streaming import (
    DeltaStream,
    assemble_stream,
    cooperative,
    gemini_content_deltas,
    iter_sse_events,
    openai_deltas,
)
from chatmux.timeouts import CancellationToken
from chatmux.types import DeltaChunk, ErrorCategory

from stubs import gemini_event, openai_text, word_count


async def lines_of(*lines: str):
    for line in lines:
        yield line


async def chunks_of(*texts: str, pause: float = 0):
    for text in texts:
        if pause:
            await asyncio.sleep(pause)
        yield DeltaChunk.content_delta(text)


async def events_of(*events):
    for event in events:
        yield event


async def drain(iterator) -> list:
    return [item async for item in iterator]


class SseTests(unittest.TestCase):
    def test_parses_data_lines_and_stops_at_done(self) -> None:
        lines = lines_of(
            ": keep-alive",
            "event: message",
            'data: {"a": 1}',
            "",
            "data: not json",
            'data:{"b": 2}',
            "data: [DONE]",
            'data: {"c": 3}',
        )
        self.assertEqual(asyncio.run(drain(iter_sse_events(lines))), [{"a": 1}, {"b": 2}])


class NormalizerTests(unittest.TestCase):
    def test_openai_content_in_order(self) -> None:
        events = events_of(*openai_text("Hel", "lo"), {"choices": []}, {"choices": [{"delta": {}}]})
        chunks = asyncio.run(drain(openai_deltas(events, provider="stub")))
        self.assertEqual([c.content for c in chunks], ["Hel", "lo"])

    def test_openai_tool_fragments_become_one_batch(self) -> None:
        events = events_of(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "f", "arguments": "{"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "}"}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "c2", "function": {"name": "g", "arguments": "{}"}}]}}]},
        )
        [chunk] = asyncio.run(drain(openai_deltas(events, provider="stub")))
        self.assertIsNone(chunk.content)
        self.assertEqual([(c.id, c.function.name, c.function.arguments) for c in chunk.tool_calls], [("c1", "f", "{}"), ("c2", "g", "{}")])

    def test_text_before_tool_calls_keeps_batch_last(self) -> None:
        events = events_of(
            *openai_text("Checking"),
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "f", "arguments": "{}"}}]}}]},
            *openai_text("..."),
        )
        chunks = asyncio.run(drain(openai_deltas(events, provider="stub")))
        self.assertEqual([c.content for c in chunks], ["Checking", "...", None])
        self.assertEqual([c.id for c in chunks[-1].tool_calls], ["c1"])
        self.assertTrue(all(c.tool_calls is None for c in chunks[:-1]))

    def test_list_content_is_joined(self) -> None:
        events = events_of({"choices": [{"delta": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]})
        [chunk] = asyncio.run(drain(openai_deltas(events, provider="stub")))
        self.assertEqual(chunk.content, "ab")

    def test_error_event_raises_categorized(self) -> None:
        events = events_of(*openai_text("partial"), {"error": {"message": "overloaded", "code": 503}})
        with self.assertRaises(ProviderRequestError) as ctx:
            asyncio.run(drain(openai_deltas(events, provider="stub")))
        self.assertEqual(ctx.exception.category, ErrorCategory.SERVER_ERROR)

    def test_gemini_content_starts_with_peeked_event(self) -> None:
        first = gemini_event({"text": "one "})
        rest = events_of(gemini_event({"text": "two"}), gemini_event({"functionCall": {"name": "late"}}))
        chunks = asyncio.run(drain(gemini_content_deltas(first, rest, provider="stub")))
        self.assertEqual([c.content for c in chunks], ["one ", "two", None])
        [call] = chunks[-1].tool_calls
        self.assertEqual((call.id, call.function.name, call.function.arguments), ("late", "late", "{}"))

    def test_cooperative_checks_token_between_chunks(self) -> None:
        async def scenario() -> list:
            token = CancellationToken()
            seen = []
            with self.assertRaises(ProviderTimeoutError) as ctx:
                async for chunk in cooperative(chunks_of("a", "b", "c"), token, provider="stub", timeout_ms=5):
                    seen.append(chunk.content)
                    token.cancel("timeout")
            self.assertIn("timed out after 5ms", str(ctx.exception))
            return seen

        self.assertEqual(asyncio.run(scenario()), ["a"])


class DeltaStreamTests(unittest.TestCase):
    def make(self, *texts: str, closed: list | None = None, pause: float = 0) -> DeltaStream:
        on_close = [lambda: closed.append(True)] if closed is not None else []
        return DeltaStream(
            "stub",
            "toy",
            chunks_of(*texts, pause=pause),
            on_close=on_close,
            input_tokens=3,
            token_counter=word_count,
        )

    def test_iterates_once_and_reports_usage(self) -> None:
        async def scenario() -> None:
            closed: list = []
            stream = self.make("hello ", "big ", "world", closed=closed)
            chunks = await drain(stream)
            self.assertEqual("".join(c.content for c in chunks), "hello big world")
            self.assertEqual(closed, [True])
            self.assertTrue(stream.closed)
            self.assertEqual((stream.usage.input_tokens, stream.usage.output_tokens), (3, 3))
            with self.assertRaises(StreamConsumedError):
                stream.__aiter__()
            await stream.aclose()
            self.assertEqual(closed, [True])

        asyncio.run(scenario())

    def test_cancel_mid_stream(self) -> None:
        async def scenario() -> None:
            closed: list = []
            stream = self.make("a", "b", "c", closed=closed)
            seen = []
            with self.assertRaises(ProviderTimeoutError) as ctx:
                async for chunk in stream:
                    seen.append(chunk.content)
                    stream.cancel()
            self.assertEqual(seen, ["a"])
            self.assertEqual(closed, [True])
            self.assertIn("Request was cancelled", str(ctx.exception))

        asyncio.run(scenario())

    def test_cancel_interrupts_pending_pull(self) -> None:
        async def scenario() -> None:
            closed: list = []
            stream = self.make("slow", closed=closed, pause=3600)
            asyncio.get_running_loop().call_later(0.01, stream.cancel, "timeout")
            stream.timeout_ms = 10
            with self.assertRaises(ProviderTimeoutError) as ctx:
                await drain(stream)
            self.assertIn("timed out after 10ms", str(ctx.exception))
            self.assertEqual(closed, [True])

        asyncio.run(asyncio.wait_for(scenario(), 5))

    def test_assemble_collects_content_and_tool_calls(self) -> None:
        async def scenario():
            received = []

            async def tail():
                yield DeltaChunk.content_delta("Hi")
                yield DeltaChunk.tool_call_batch([])

            stream = DeltaStream("stub", "toy", tail(), token_counter=word_count)
            response = await assemble_stream(stream, received.append)
            return response, received

        response, received = asyncio.run(scenario())
        self.assertEqual(response.content, "Hi")
        self.assertEqual(response.tool_calls, [])
        self.assertEqual(received, ["Hi"])
        self.assertEqual(response.usage.output_tokens, 1)
        self.assertEqual((response.provider, response.model), ("stub", "toy"))


if __name__ == "__main__":
    unittest.main()
