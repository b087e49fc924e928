"""Tests for the transcript store and thread loading."""

from __future__ import annotations

import asyncio

import pytest

from models.messages import PersistedMessage
from services.structured_output import StructuredOutputStreamer
from services.transcript_store import InMemoryTranscriptStore, load_thread


@pytest.fixture
def store() -> InMemoryTranscriptStore:
    return InMemoryTranscriptStore()


class TestInMemoryTranscriptStore:
    @pytest.mark.asyncio
    async def test_unknown_thread_is_empty(self, store):
        assert await store.get_messages("nope") == []

    @pytest.mark.asyncio
    async def test_append_and_read_in_order(self, store):
        await store.append("t1", PersistedMessage(id="u1", type="human", content="hi"))
        await store.append("t1", PersistedMessage(id="a1", type="ai", content="hello"))
        messages = await store.get_messages("t1")
        assert [m.id for m in messages] == ["u1", "a1"]
        assert store.size == 1

    @pytest.mark.asyncio
    async def test_assigns_missing_id(self, store):
        await store.append("t1", PersistedMessage(type="human", content="hi"))
        [message] = await store.get_messages("t1")
        assert message.id.startswith("msg-")

    @pytest.mark.asyncio
    async def test_returns_copies(self, store):
        original = PersistedMessage(id="a1", type="ai", content="x", response_metadata={"parsed_blocks": []})
        await store.append("t1", original)
        [read] = await store.get_messages("t1")
        read.response_metadata["parsed_blocks"].append({"type": "text"})
        [again] = await store.get_messages("t1")
        assert again.response_metadata == {"parsed_blocks": []}

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.append("t1", PersistedMessage(type="human", content="hi"))
        await store.delete("t1")
        assert await store.get_messages("t1") == []
        await store.delete("t1")

    @pytest.mark.asyncio
    async def test_concurrent_appends(self, store):
        await asyncio.gather(
            *(store.append("t1", PersistedMessage(id=f"m{i}", type="human", content=str(i))) for i in range(20))
        )
        assert len(await store.get_messages("t1")) == 20


class TestLoadThread:
    @pytest.mark.asyncio
    async def test_streamed_message_round_trips(self, store, deltas):
        streamer = StructuredOutputStreamer("state")
        result = await streamer.process_stream(
            deltas('Here you go\n```json\n{"headlines": ["a", "b"]}\n```')
        )
        await store.append("t1", PersistedMessage(id="u1", type="human", content="ads please"))
        await store.append("t1", result.message)

        messages, state = await load_thread(store, "t1")
        assert [m.role for m in messages] == ["user", "assistant"]
        assert [b.type for b in messages[1].blocks] == ["text", "structured"]
        assert messages[1].blocks[1].id == streamer.parser.structured_id
        assert state == {"headlines": ["a", "b"]}
