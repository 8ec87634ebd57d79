"""Decoding of memory failure trace events."""

from __future__ import annotations

from dataclasses import dataclass

from .events import RasContext, TraceEvent, _to_signed, format_timestamp

_PAGE_TYPES = (
    "reserved kernel page",
    "high-order kernel page",
    "kernel slab page",
    "different compound page after locking",
    "huge page",
    "free huge page",
    "unmapping failed page",
    "dirty swapcache page",
    "clean swapcache page",
    "dirty mlocked LRU page",
    "clean mlocked LRU page",
    "dirty unevictable LRU page",
    "clean unevictable LRU page",
    "dirty LRU page",
    "clean LRU page",
    "already truncated LRU page",
    "free buddy page",
    "dax page",
    "unsplit thp",
    "unknown page",
)

_ACTION_RESULTS = ("Ignored", "Failed", "Delayed", "Recovered")


@dataclass
class MemoryFailureEvent:
    """A decoded memory failure event."""

    timestamp: str
    pfn: str
    page_type: str
    action_result: str
    text: str


def page_type_name(code: int) -> str:
    """Return the description of a memory failure page type."""
    if 0 <= code < len(_PAGE_TYPES):
        return _PAGE_TYPES[code]
    return "unknown page"


def action_result_name(code: int) -> str:
    """Return the description of a memory failure action result."""
    if 0 <= code < len(_ACTION_RESULTS):
        return _ACTION_RESULTS[code]
    return "unknown"


def handle_memory_failure_event(event: TraceEvent, context: RasContext) -> MemoryFailureEvent:
    """Decode a memory_failure_event record."""
    timestamp = format_timestamp(context.event_time(event.ts))
    pfn = f"0x{event.value('pfn'):x}"
    page_type = page_type_name(_to_signed(event.value("type"), 32))
    action_result = action_result_name(_to_signed(event.value("result"), 32))
    text = (
        f"{timestamp} pfn={pfn} page_type={page_type} "
        f"action_result={action_result} "
    )
    return MemoryFailureEvent(
        timestamp=timestamp,
        pfn=pfn,
        page_type=page_type,
        action_result=action_result,
        text=text,
    )