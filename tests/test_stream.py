"""Tests for stream normalization."""

from __future__ import annotations

import json

import pytest

from codeloop.core.stream import StreamEvent, StreamNormalizer, StreamParserError, normalize_stream


def kinds(events):
    return [(e.type, e.id) for e in events if e.type.startswith("text") or e.type == "finish"]


def raising(events, error):
    yield from events
    raise error


class TestTextFraming:
    def test_well_formed_stream_unchanged(self):
        events = [
            StreamEvent("text-start", id="a"),
            StreamEvent("text-delta", id="a", text="hi"),
            StreamEvent("text-end", id="a"),
            StreamEvent("finish", finish_reason="stop"),
        ]
        assert list(normalize_stream(events)) == events

    def test_delta_before_start_gets_start(self):
        out = list(normalize_stream([
            StreamEvent("text-delta", id="a", text="hi"),
            StreamEvent("text-end", id="a"),
        ]))
        assert kinds(out) == [("text-start", "a"), ("text-delta", "a"), ("text-end", "a")]

    def test_duplicate_start_dropped(self):
        out = list(normalize_stream([
            StreamEvent("text-start", id="a"),
            StreamEvent("text-start", id="a"),
            StreamEvent("text-delta", id="a", text="x"),
            StreamEvent("text-end", id="a"),
        ]))
        assert kinds(out) == [("text-start", "a"), ("text-delta", "a"), ("text-end", "a")]

    def test_open_parts_closed_before_finish(self):
        out = list(normalize_stream([
            StreamEvent("text-start", id="a"),
            StreamEvent("text-delta", id="a", text="x"),
            StreamEvent("finish", finish_reason="stop"),
        ]))
        assert kinds(out) == [("text-start", "a"), ("text-delta", "a"), ("text-end", "a"), ("finish", None)]

    def test_open_parts_closed_at_end_of_stream(self):
        out = list(normalize_stream([StreamEvent("text-delta", id="b", text="x")]))
        assert kinds(out) == [("text-start", "b"), ("text-delta", "b"), ("text-end", "b")]

    def test_other_events_pass_through_in_order(self):
        call = StreamEvent("tool-call", tool_call_id="c1", tool_name="read", input={})
        out = list(normalize_stream([
            StreamEvent("reasoning-delta", id="r", text="thinking"),
            call,
            StreamEvent("finish", finish_reason="tool-calls"),
        ]))
        assert [e.type for e in out] == ["reasoning-delta", "tool-call", "finish"]

    def test_counters(self):
        normalizer = StreamNormalizer()
        normalizer.feed(StreamEvent("text-delta", id="a", text="x"))
        normalizer.feed(StreamEvent("text-start", id="a"))
        normalizer.feed(StreamEvent("finish"))
        assert normalizer.synthesized_starts == 1
        assert normalizer.dropped_starts == 1
        assert normalizer.synthesized_ends == 1


class TestParserErrors:
    def test_error_after_finish_is_ignored(self):
        events = [StreamEvent("text-delta", id="a", text="done"), StreamEvent("finish", finish_reason="stop")]
        out = list(normalize_stream(raising(events, StreamParserError("invalid chunk"))))
        assert out[-1].type == "finish"

    def test_json_error_after_finish_is_ignored(self):
        events = [StreamEvent("finish", finish_reason="stop")]
        out = list(normalize_stream(raising(events, json.JSONDecodeError("Expecting value", "", 0))))
        assert [e.type for e in out] == ["finish"]

    def test_error_event_after_finish_is_ignored(self):
        out = list(normalize_stream([
            StreamEvent("finish", finish_reason="stop"),
            StreamEvent("error", error=RuntimeError("stream parser lost state")),
        ]))
        assert [e.type for e in out] == ["finish"]

    def test_parser_error_before_finish_raises(self):
        events = [StreamEvent("text-delta", id="a", text="partial")]
        with pytest.raises(StreamParserError):
            list(normalize_stream(raising(events, RuntimeError("Incomplete chunked read"))))

    def test_parser_error_event_before_finish_is_wrapped(self):
        out = list(normalize_stream([StreamEvent("error", error=RuntimeError("invalid chunk"))]))
        assert out[0].type == "error"
        assert isinstance(out[0].error, StreamParserError)

    def test_other_errors_propagate_after_finish(self):
        events = [StreamEvent("finish", finish_reason="stop")]
        with pytest.raises(ValueError):
            list(normalize_stream(raising(events, ValueError("boom"))))
