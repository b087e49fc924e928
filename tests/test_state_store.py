"""Tests for the consumer-side stream state store."""

from __future__ import annotations

import itertools

from models.blocks import TextBlock, ToolState
from models.ui_events import UIStateStreamingEvent, UIToolStartEvent
from services import merge
from services.event_processor import EventProcessor, ProcessedResult
from services.state_store import StreamStateStore


def _headline(raw):
    return {"id": raw["id"], "text": raw["text"], "rejected": raw.get("status") == "rejected"}


class TestStateMerging:
    def test_replace_without_reducer(self):
        store = StreamStateStore()
        store.update_state("count", 1)
        store.update_state("count", 2)
        assert store.get_state() == {"count": 2}

    def test_reducer_merges_against_pre_stream_base(self):
        store = StreamStateStore(merge={"items": merge.append_unique("id")})
        store.load_from_history([], {"items": [{"id": "h1"}]})
        store.reset_for_stream()

        # A stream re-sends its growing list on every update
        store.update_state("items", [{"id": "h2"}])
        store.update_state("items", [{"id": "h2"}, {"id": "h3"}])
        assert [i["id"] for i in store.get_state()["items"]] == ["h1", "h2", "h3"]

    def test_transform_then_merge(self):
        store = StreamStateStore(
            merge={"headlines": merge.append_unique("id")},
            transforms={"headlines": lambda raw: [_headline(r) for r in raw]},
        )
        store.load_from_history([], {"headlines": [{"id": "h1", "text": "Existing", "rejected": False}]})
        store.reset_for_stream()
        store.update_state("headlines", [{"id": "h2", "text": "New", "status": "rejected"}])

        headlines = store.get_state()["headlines"]
        assert [h["id"] for h in headlines] == ["h1", "h2"]
        assert headlines[1]["rejected"] is True

    def test_transform_only(self):
        store = StreamStateStore(transforms={"headlines": lambda raw: [_headline(r) for r in raw]})
        store.load_from_history([], {"headlines": [{"id": "h1", "text": "Old", "rejected": False}]})
        store.reset_for_stream()
        store.update_state("headlines", [{"id": "h2", "text": "Second"}])
        assert store.get_state()["headlines"] == [{"id": "h2", "text": "Second", "rejected": False}]

    def test_append_accumulates_across_streams(self):
        counter = itertools.count(1)
        store = StreamStateStore(
            merge={"items": merge.append()},
            transforms={"items": lambda raw: [{"id": f"g-{next(counter)}", **r} for r in raw]},
        )
        store.load_from_history([], {"items": []})
        store.reset_for_stream()
        store.update_state("items", [{"t": "a"}])
        store.reset_for_stream()
        store.update_state("items", [{"t": "b"}])
        assert [i["id"] for i in store.get_state()["items"]] == ["g-1", "g-2"]

    def test_failing_transform_drops_update(self):
        store = StreamStateStore(transforms={"n": lambda v: 1 / v})
        store.update_state("n", 2)
        store.update_state("n", 0)
        assert store.get_state() == {"n": 0.5}

    def test_subgraph_state(self):
        store = StreamStateStore()
        store.update_state("k", 1, ["outer", "inner"])
        assert store.get_subgraph_state(["outer", "inner"]) == {"k": 1}
        assert store.get_state() == {}
        store.reset_for_stream()
        assert store.get_subgraph_state(["outer", "inner"]) is None


class TestMessages:
    def test_blocks_upsert_into_assistant_message(self):
        store = StreamStateStore()
        store.add_user_message("hi")
        store.update_messages([TextBlock(id="b2", index=1, text="world")])
        store.update_messages([TextBlock(id="b1", index=0, text="hello"), TextBlock(id="b2", index=1, text="world!")])

        user, assistant = store.get_messages()
        assert user.role == "user"
        assert user.blocks[0].text == "hi"
        assert assistant.role == "assistant"
        assert [(b.id, b.text) for b in assistant.blocks] == [("b1", "hello"), ("b2", "world!")]

    def test_empty_update_is_noop(self):
        store = StreamStateStore()
        store.update_messages([])
        assert store.get_messages() == []


class TestApply:
    def test_folds_processor_results(self):
        store = StreamStateStore()
        processor = EventProcessor()
        store.apply(processor.process(UIStateStreamingEvent(seq=1, key="count", value=3)))
        store.apply(processor.process(UIToolStartEvent(seq=2, tool_call_id="t1", tool_name="search")))
        store.apply(ProcessedResult(subgraph_updates={"a|b": {"k": "v"}}))

        assert store.get_state() == {"count": 3}
        assert store.get_subgraph_state(["a", "b"]) == {"k": "v"}
        assert [t.id for t in store.get_tools()] == ["t1"]
        assert store.get_messages()[-1].blocks[0].type == "tool_call"

    def test_reset_for_stream_clears_tools(self):
        store = StreamStateStore()
        store.update_tools([ToolState(id="t1", name="search")])
        store.reset_for_stream()
        assert store.get_tools() == []
