"""Decoding of devlink health reports and network transmit timeouts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .events import RasContext, TraceEvent, _as_text, _to_signed, format_timestamp


@dataclass
class DevlinkEvent:
    """A decoded devlink health report."""

    timestamp: str
    bus_name: str
    dev_name: str
    driver_name: str
    reporter_name: str
    msg: str
    text: str


def handle_net_xmit_timeout(event: TraceEvent, context: RasContext) -> DevlinkEvent:
    """Decode a net_dev_xmit_timeout record as a devlink event."""
    timestamp = format_timestamp(context.event_time(event.ts))
    dev_name = _as_text(event.raw("name"))
    driver_name = _as_text(event.raw("driver"))
    queue = _to_signed(event.value("queue_index"), 32)
    return DevlinkEvent(
        timestamp=timestamp,
        bus_name="",
        dev_name=dev_name,
        driver_name=driver_name,
        reporter_name="",
        msg=f"TX timeout on queue: {queue}\n",
        text=f"{timestamp} ",
    )


def handle_devlink_event(
    event: TraceEvent,
    context: RasContext,
    skip: Optional[Callable[[TraceEvent], bool]] = None,
) -> Optional[DevlinkEvent]:
    """Decode a devlink_health_report record.

    Returns None when the skip filter matches the record.
    """
    if skip is not None and skip(event):
        return None
    timestamp = format_timestamp(context.event_time(event.ts))
    return DevlinkEvent(
        timestamp=timestamp,
        bus_name=_as_text(event.raw("bus_name")),
        dev_name=_as_text(event.raw("dev_name")),
        driver_name=_as_text(event.raw("driver_name")),
        reporter_name=_as_text(event.raw("reporter_name")),
        msg=_as_text(event.raw("msg")),
        text=f"{timestamp} ",
    )