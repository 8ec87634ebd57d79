"""Decoding of block layer request error trace events."""

from __future__ import annotations

from dataclasses import dataclass

from .events import RasContext, TraceEvent, _as_text, _to_signed, format_timestamp

# Kernel errno values are fixed by Linux, independent of the host platform.
_BLOCK_ERRORS = {
    -95: "operation not supported error",
    -110: "timeout error",
    -28: "critical space allocation error",
    -67: "recoverable transport error",
    -121: "critical target error",
    -52: "critical nexus error",
    -61: "critical medium error",
    -84: "protection error",
    -12: "kernel resource error",
    -16: "device resource error",
    -11: "nonblocking retry error",
    -78: "dm internal retry error",
    -5: "I/O error",
}


@dataclass
class DiskErrorEvent:
    """A decoded block request error."""

    timestamp: str
    dev: str
    sector: int
    nr_sector: int
    error: str
    rwbs: str
    cmd: str
    text: str


def block_error_name(error: int) -> str:
    """Return the description of a negative block error code."""
    return _BLOCK_ERRORS.get(error, "unknown block error")


def _major_minor(dev: int) -> tuple[int, int]:
    major = ((dev >> 8) & 0xFFF) | ((dev >> 32) & 0xFFFFF000)
    minor = (dev & 0xFF) | ((dev >> 12) & 0xFFFFFF00)
    return major, minor


def handle_diskerror_event(event: TraceEvent, context: RasContext) -> DiskErrorEvent:
    """Decode a block_rq_error or block_rq_complete record."""
    timestamp = format_timestamp(context.event_time(event.ts))
    major, minor = _major_minor(event.value("dev"))
    sector = event.value("sector")
    nr_sector = event.value("nr_sector") & 0xFFFFFFFF
    error = block_error_name(_to_signed(event.value("error"), 32))
    rwbs = _as_text(event.raw("rwbs"))
    cmd = _as_text(event.raw("cmd"))
    return DiskErrorEvent(
        timestamp=timestamp,
        dev=f"{major}:{minor}",
        sector=sector,
        nr_sector=nr_sector,
        error=error,
        rwbs=rwbs,
        cmd=cmd,
        text=f"{timestamp} ",
    )