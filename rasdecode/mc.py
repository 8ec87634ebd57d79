"""Decoding of EDAC memory controller trace events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .events import (
    FieldError,
    McErrorType,
    RasContext,
    TraceEvent,
    _as_text,
    _to_signed,
    format_timestamp,
)

logger = logging.getLogger(__name__)

_ERROR_TYPES = {
    McErrorType.CORRECTED: "Corrected",
    McErrorType.UNCORRECTED: "Uncorrected",
    McErrorType.DEFERRED: "Deferred",
    McErrorType.FATAL: "Fatal",
    McErrorType.INFO: "Info",
}


@dataclass
class McEvent:
    """A decoded memory controller event."""

    timestamp: str
    error_count: int
    error_type: str
    msg: str
    label: str
    mc_index: int
    top_layer: int
    middle_layer: int
    lower_layer: int
    address: int
    grain: int
    syndrome: int
    driver_detail: str
    text: str


def error_type_name(code: int) -> str:
    """Return the name of a memory controller error type."""
    return _ERROR_TYPES.get(code, "Info")


def _location(top: int, middle: int, lower: int) -> str:
    if lower >= 0:
        return f" location: {top}:{middle}:{lower}"
    if middle >= 0:
        return f" location: {top}:{middle}"
    if top >= 0:
        return f" location: {top}"
    return ""


def handle_mc_event(event: TraceEvent, context: RasContext) -> Optional[McEvent]:
    """Decode an mc_event record; return None if a field can't be parsed."""
    timestamp = format_timestamp(context.event_time(event.ts))
    parts = [f"{timestamp} "]
    parsed = 0
    try:
        error_count = _to_signed(event.value("error_count"), 32)
        parsed += 1
        parts.append(f"{error_count} ")

        error_type = error_type_name(event.value("error_type"))
        parsed += 1
        parts.append(error_type)
        parts.append(" errors:" if error_count > 1 else " error:")

        msg = _as_text(event.raw("msg"))
        parsed += 1
        if msg:
            parts.append(f" {msg}")

        label = _as_text(event.raw("label"))
        parsed += 1
        if label:
            parts.append(f" on {label}")

        parts.append(" (")
        mc_index = _to_signed(event.value("mc_index"), 32)
        parsed += 1
        parts.append(f"mc: {mc_index}")

        top = _to_signed(event.value("top_layer"), 8)
        parsed += 1
        middle = _to_signed(event.value("middle_layer"), 8)
        parsed += 1
        lower = _to_signed(event.value("lower_layer"), 8)
        parsed += 1
        parts.append(_location(top, middle, lower))

        address = event.value("address")
        parsed += 1
        if address:
            parts.append(f" address: 0x{address:08x}")

        grain = _to_signed(event.value("grain_bits"), 64)
        parsed += 1
        parts.append(f" grain: {grain}")

        syndrome = event.value("syndrome")
        parsed += 1
        if syndrome:
            parts.append(f" syndrome: 0x{syndrome:08x}")

        driver_detail = _as_text(event.raw("driver_detail"))
        parsed += 1
        if driver_detail:
            parts.append(f" {driver_detail}")
        parts.append(")")
    except FieldError:
        logger.error("MC error handler: can't parse field #%d", parsed)
        return None

    return McEvent(
        timestamp=timestamp,
        error_count=error_count,
        error_type=error_type,
        msg=msg,
        label=label,
        mc_index=mc_index,
        top_layer=top,
        middle_layer=middle,
        lower_layer=lower,
        address=address,
        grain=grain,
        syndrome=syndrome,
        driver_detail=driver_detail,
        text="".join(parts),
    )