"""Typed stream events and the normalizer that repairs their ordering."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from codeloop.core.history import TokenUsage

_log = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "text-start", "text-delta", "text-end",
    "reasoning-start", "reasoning-delta", "reasoning-end",
    "tool-call", "tool-result", "tool-error",
    "error", "finish",
})

_PARSER_ERROR_MARKERS = (
    "stream parser",
    "invalid chunk",
    "incomplete chunked read",
    "peer closed connection",
)


@dataclass(frozen=True)
class StreamEvent:
    type: str
    id: Any = None
    text: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


class StreamParserError(Exception):
    """The provider's stream decoder lost its framing state."""


def is_parser_state_error(error: BaseException) -> bool:
    if isinstance(error, (StreamParserError, json.JSONDecodeError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _PARSER_ERROR_MARKERS)


class StreamNormalizer:
    """Repairs text-part framing in a typed event stream.

    Every text id gets a start before its first delta or end, duplicate
    starts are dropped, and ids still open at ``finish`` (or end of stream)
    are closed just before it. Other events pass through in order.
    """

    def __init__(self) -> None:
        self._open: list[str] = []
        self.saw_finish = False
        self.synthesized_starts = 0
        self.dropped_starts = 0
        self.synthesized_ends = 0
        self.ignored_errors = 0

    def _close_all(self) -> list[StreamEvent]:
        closing = [StreamEvent("text-end", id=text_id) for text_id in self._open]
        self.synthesized_ends += len(closing)
        self._open.clear()
        return closing

    def feed(self, event: StreamEvent) -> list[StreamEvent]:
        kind = event.type
        if kind == "finish":
            self.saw_finish = True
            return [*self._close_all(), event]

        if kind not in ("text-start", "text-delta", "text-end") or not isinstance(event.id, str):
            return [event]

        is_open = event.id in self._open
        if kind == "text-start":
            if is_open:
                self.dropped_starts += 1
                return []
            self._open.append(event.id)
            return [event]

        out: list[StreamEvent] = []
        if not is_open:
            self.synthesized_starts += 1
            out.append(StreamEvent("text-start", id=event.id))
            if kind == "text-delta":
                self._open.append(event.id)
        elif kind == "text-end":
            self._open.remove(event.id)
        out.append(event)
        return out

    def flush(self) -> list[StreamEvent]:
        return self._close_all()

    def should_ignore(self, error: BaseException) -> bool:
        """Parser-state errors after ``finish`` are artifacts of a complete answer."""
        if self.saw_finish and is_parser_state_error(error):
            self.ignored_errors += 1
            return True
        return False

    def log_counters(self) -> None:
        if self.synthesized_starts or self.dropped_starts or self.synthesized_ends or self.ignored_errors:
            _log.debug(
                "Stream repaired: synthesized_starts=%d dropped_starts=%d synthesized_ends=%d ignored_errors=%d",
                self.synthesized_starts,
                self.dropped_starts,
                self.synthesized_ends,
                self.ignored_errors,
            )


def normalize_stream(events: Iterable[StreamEvent]) -> Iterator[StreamEvent]:
    """Yield ``events`` with text framing repaired.

    Parser-state errors (raised or emitted as ``error`` events) are swallowed
    once ``finish`` has been seen; before that they propagate as
    :class:`StreamParserError` so the retry logic can pick them up.
    """
    normalizer = StreamNormalizer()
    iterator = iter(events)
    try:
        while True:
            try:
                event = next(iterator)
            except StopIteration:
                break
            except Exception as exc:
                if normalizer.should_ignore(exc):
                    _log.debug("Ignoring post-finish stream error: %s", exc)
                    break
                if is_parser_state_error(exc) and not isinstance(exc, StreamParserError):
                    raise StreamParserError(str(exc)) from exc
                raise

            if event.type == "error" and event.error is not None:
                if normalizer.should_ignore(event.error):
                    _log.debug("Ignoring post-finish stream error: %s", event.error)
                    continue
                if is_parser_state_error(event.error) and not isinstance(event.error, StreamParserError):
                    yield StreamEvent("error", error=StreamParserError(str(event.error)))
                    continue
            yield from normalizer.feed(event)
        yield from normalizer.flush()
    finally:
        normalizer.log_counters()
