"""Tests for the structured output streamer.

Events are collected through the ``writer`` fixture and checked for order,
dedup and final-phase behaviour in both target modes.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncIterator
from types import SimpleNamespace

import pytest
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.messages import ModelMessage
from pydantic_ai.models.function import AgentInfo, FunctionModel

from errors.exceptions import StructuredBufferOverflowError
from models.messages import PARSED_BLOCKS_KEY
from models.ui_events import (
    UIContentStructuredEvent,
    UIContentTextEvent,
    UIStateFinalEvent,
    UIStateStreamingEvent,
)
from services.block_parser import BlockParser
from services.structured_output import (
    StructuredOutputStreamer,
    delta_text,
    split_namespace,
    stream_structured_output,
)
from services.transform_cache import TransformCache

E2E_CHUNKS = ("Hello ", 'world\n```json\n{"x":', "1}\n```\nbye")


class Ad(BaseModel):
    headline: str


# ── Helpers ──────────────────────────────────────────────────


class TestDeltaText:
    def test_string(self):
        assert delta_text("abc") == "abc"

    def test_mapping(self):
        assert delta_text({"content": "abc"}) == "abc"

    def test_attribute(self):
        assert delta_text(SimpleNamespace(content="abc")) == "abc"

    def test_list_content_keeps_text_parts(self):
        parts = [{"type": "text", "text": "a"}, {"type": "image_url"}, SimpleNamespace(type="text", text="b")]
        assert delta_text({"content": parts}) == "ab"

    def test_missing_content(self):
        assert delta_text({"role": "ai"}) == ""
        assert delta_text(object()) == ""


class TestSplitNamespace:
    def test_pipe_and_slash(self):
        assert split_namespace("parent|child/grand") == ["parent", "child", "grand"]

    def test_empty(self):
        assert split_namespace(None) is None
        assert split_namespace("") is None
        assert split_namespace(["a", ""]) == ["a"]


# ── Messages target ──────────────────────────────────────────


class TestMessagesTarget:
    @pytest.mark.asyncio
    async def test_text_only_stream(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer)
        result = await streamer.process_stream(deltas("Hello", " world"))

        assert [type(e) for e in events] == [UIContentTextEvent] * 3
        assert [e.text for e in events] == ["Hello", "Hello world", "Hello world"]
        assert [e.final for e in events] == [False, False, True]
        assert [e.seq for e in events] == [1, 2, 3]
        assert all(e.block_id == streamer.parser.text_id for e in events)
        assert all(e.message_id == streamer.message_id for e in events)

        assert result.message.type == "ai"
        assert result.message.content == "Hello world"
        assert result.parsed is None
        assert [b.type for b in result.blocks] == ["text"]

    @pytest.mark.asyncio
    async def test_final_text_keeps_trailing_backtick(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer)
        result = await streamer.process_stream(deltas("Run `ls`"))

        assert [(e.text, e.final) for e in events] == [("Run `ls", False), ("Run `ls`", True)]
        assert result.message.content == "Run `ls`"
        assert result.message.response_metadata[PARSED_BLOCKS_KEY][0]["text"] == "Run `ls`"

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer)
        result = await streamer.process_stream(deltas(*E2E_CHUNKS))

        assert [b.type for b in result.blocks] == ["text", "structured", "text"]
        assert result.parsed == {"x": 1}

        finals = [e for e in events if getattr(e, "final", False) or getattr(e, "partial", True) is False]
        assert [(type(e).__name__, e.index) for e in finals] == [
            ("UIContentTextEvent", 0),
            ("UIContentTextEvent", 2),
            ("UIContentStructuredEvent", 1),
        ]
        assert [e.seq for e in events] == list(range(1, len(events) + 1))

    @pytest.mark.asyncio
    async def test_partial_structured_events(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer)
        await streamer.process_stream(deltas('```json\n{"a": 1', "  ", ', "b": 2}\n```'))

        structured = [e for e in events if isinstance(e, UIContentStructuredEvent)]
        assert [(e.data, e.partial) for e in structured] == [
            ({"a": 1}, True),
            ({"a": 1, "b": 2}, False),
        ]
        assert structured[0].block_id == structured[1].block_id
        assert structured[0].source_text == '{"a": 1'

    @pytest.mark.asyncio
    async def test_whitespace_previews_not_emitted(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer)
        result = await streamer.process_stream(deltas("\n", "  \n"))
        assert events == []
        assert result.blocks == []
        assert result.message.content == "\n  \n"

    @pytest.mark.asyncio
    async def test_message_carries_parsed_blocks(self, deltas):
        streamer = StructuredOutputStreamer("messages")
        result = await streamer.process_stream(deltas(*E2E_CHUNKS))
        stored = result.message.response_metadata[PARSED_BLOCKS_KEY]
        assert [b["type"] for b in stored] == ["text", "structured", "text"]
        assert stored[1]["sourceText"] == '{"x":1}'
        assert result.message.parsed_blocks() == result.blocks

    @pytest.mark.asyncio
    async def test_namespace_on_every_event(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("messages", writer=writer, namespace="outer|inner")
        await streamer.process_stream(deltas("hi"))
        assert events and all(e.namespace == ["outer", "inner"] for e in events)

    @pytest.mark.asyncio
    async def test_async_writer(self, deltas):
        received = []

        async def sink(event):
            received.append(event)

        streamer = StructuredOutputStreamer("messages", writer=sink)
        await streamer.process_stream(deltas("hi"))
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_mixed_delta_shapes(self, deltas):
        streamer = StructuredOutputStreamer("messages")
        result = await streamer.process_stream(
            deltas(
                {"content": "Hi"},
                {"content": [{"type": "text", "text": " there"}, {"type": "image"}]},
                SimpleNamespace(content="!"),
                {"content": ""},
            )
        )
        assert result.message.content == "Hi there!"

    @pytest.mark.asyncio
    async def test_default_target_from_settings(self):
        assert StructuredOutputStreamer().target == "messages"


# ── State target ─────────────────────────────────────────────


class TestStateTarget:
    CHUNKS = ('```json\n{"title": "Hel', 'lo", "tags": ["a"', ', "b"]}\n```')

    @pytest.mark.asyncio
    async def test_per_key_events(self, writer, events, deltas):
        streamer = StructuredOutputStreamer("state", writer=writer, checkpoint_id="cp-1")
        result = await streamer.process_stream(deltas(*self.CHUNKS))

        streaming = [(e.key, e.value) for e in events if isinstance(e, UIStateStreamingEvent)]
        assert streaming == [("title", "Hel"), ("title", "Hello"), ("tags", ["a"])]

        finals = [e for e in events if isinstance(e, UIStateFinalEvent)]
        assert [(e.key, e.value) for e in finals] == [("title", "Hello"), ("tags", ["a", "b"])]
        assert all(e.checkpoint_id == "cp-1" for e in finals)
        assert not any(isinstance(e, UIContentStructuredEvent) for e in events)
        assert result.parsed == {"title": "Hello", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_raising_transform_skips_key_for_round(self, writer, events, deltas):
        def complete_title(value):
            if not value.endswith("o"):
                raise ValueError("not ready")
            return value.upper()

        streamer = StructuredOutputStreamer(
            "state",
            writer=writer,
            transforms={"title": complete_title, "tags": lambda v: [t.upper() for t in v]},
        )
        await streamer.process_stream(deltas(*self.CHUNKS))

        by_key = [(e.type, e.key, e.value) for e in events]
        assert by_key == [
            ("ui:state:streaming", "title", "HELLO"),
            ("ui:state:streaming", "tags", ["A"]),
            ("ui:state:final", "title", "HELLO"),
            ("ui:state:final", "tags", ["A", "B"]),
        ]

    @pytest.mark.asyncio
    async def test_final_transform_error_skips_only_that_key(self, writer, events, deltas):
        def broken(value):
            raise RuntimeError("always")

        streamer = StructuredOutputStreamer("state", writer=writer, transforms={"tags": broken})
        await streamer.process_stream(deltas(*self.CHUNKS))
        finals = [e.key for e in events if isinstance(e, UIStateFinalEvent)]
        assert finals == ["title"]

    @pytest.mark.asyncio
    async def test_cache_prevents_recomputing(self, writer, events, deltas):
        counter = itertools.count(1)

        def mint(items):
            return [{"id": f"gen-{next(counter)}", "v": v} for v in items]

        streamer = StructuredOutputStreamer(
            "state", writer=writer, transforms={"items": mint}, cache=TransformCache()
        )
        await streamer.process_stream(deltas('```json\n{"items": [1, 2]}', "\n```"))

        streaming = [e for e in events if isinstance(e, UIStateStreamingEvent)]
        final = [e for e in events if isinstance(e, UIStateFinalEvent)]
        assert streaming[-1].value == final[0].value == [
            {"id": "gen-1", "v": 1},
            {"id": "gen-2", "v": 2},
        ]


# ── Validation & errors ──────────────────────────────────────


class TestParsedValue:
    @pytest.mark.asyncio
    async def test_schema_success(self, deltas):
        streamer = StructuredOutputStreamer("messages", schema=Ad)
        result = await streamer.process_stream(deltas('```json\n{"headline": "Buy"}\n```'))
        assert result.parsed == Ad(headline="Buy")

    @pytest.mark.asyncio
    async def test_schema_failure_yields_none(self, deltas):
        streamer = StructuredOutputStreamer("messages", schema=Ad)
        result = await streamer.process_stream(deltas('```json\n{"title": "Buy"}\n```'))
        assert result.parsed is None
        assert result.blocks[0].data == {"title": "Buy"}

    @pytest.mark.asyncio
    async def test_predicate_schema(self, deltas):
        streamer = StructuredOutputStreamer("messages", schema=lambda v: "x" in v)
        result = await streamer.process_stream(deltas(*E2E_CHUNKS))
        assert result.parsed == {"x": 1}

    @pytest.mark.asyncio
    async def test_overflow_propagates(self, deltas):
        streamer = StructuredOutputStreamer("messages", parser=BlockParser(json_buffer_limit=5))
        with pytest.raises(StructuredBufferOverflowError):
            await streamer.process_stream(deltas("```json\n", '{"a": "long value"'))


# ── Agent integration ────────────────────────────────────────


async def _stream_reply(messages: list[ModelMessage], info: AgentInfo) -> AsyncIterator[str]:
    for chunk in E2E_CHUNKS:
        yield chunk


class TestStreamStructuredOutput:
    @pytest.mark.asyncio
    async def test_runs_agent_stream(self, writer, events):
        agent = Agent(FunctionModel(stream_function=_stream_reply))
        result = await stream_structured_output(agent, "give me x", writer=writer, target="messages")

        assert [b.type for b in result.blocks] == ["text", "structured", "text"]
        assert result.parsed == {"x": 1}
        assert result.message.content == "".join(E2E_CHUNKS)
        assert any(isinstance(e, UIContentStructuredEvent) and not e.partial for e in events)
