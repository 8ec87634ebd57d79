"""Core types shared by the RAS trace event handlers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Callable, Mapping, Optional, Union

FieldValue = Union[int, bytes, str]

EPOCH_TIMESTAMP = "1970-01-01 00:00:00 +0000"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %z"

_U64_MASK = (1 << 64) - 1


class FieldError(LookupError):
    """A trace event field is missing or cannot be read."""

    def __init__(self, name: str) -> None:
        super().__init__(f"can't read field {name!r}")
        self.name = name


class EventId(IntEnum):
    """Kinds of trace events the daemon listens to."""

    MC_EVENT = 0
    MCE_EVENT = 1
    AER_EVENT = 2
    NON_STANDARD_EVENT = 3
    ARM_EVENT = 4
    EXTLOG_EVENT = 5
    DEVLINK_EVENT = 6
    DISKERROR_EVENT = 7
    MF_EVENT = 8
    CXL_POISON_EVENT = 9
    CXL_AER_UE_EVENT = 10
    CXL_AER_CE_EVENT = 11
    CXL_OVERFLOW_EVENT = 12
    CXL_GENERIC_EVENT = 13
    CXL_GENERAL_MEDIA_EVENT = 14
    CXL_DRAM_EVENT = 15
    CXL_MEMORY_MODULE_EVENT = 16


class GhesSeverity(IntEnum):
    """GHES error severities."""

    NO = 0
    CORRECTED = 1
    RECOVERABLE = 2
    PANIC = 3


class McErrorType(IntEnum):
    """Memory controller error types reported by EDAC."""

    CORRECTED = 0
    UNCORRECTED = 1
    DEFERRED = 2
    FATAL = 3
    INFO = 4


@dataclass
class TraceEvent:
    """One decoded trace record: its timestamp and named fields."""

    ts: int = 0
    fields: Mapping[str, FieldValue] = field(default_factory=dict)

    def value(self, name: str) -> int:
        """Return a numeric field as an unsigned 64-bit value."""
        found = self.fields.get(name)
        if found is None or isinstance(found, (bytes, str)):
            raise FieldError(name)
        return int(found) & _U64_MASK

    def raw(self, name: str) -> FieldValue:
        """Return a field's raw contents as stored."""
        found = self.fields.get(name)
        if found is None:
            raise FieldError(name)
        return found

    def optional_value(self, name: str) -> Optional[int]:
        """Return a numeric field, or None if it cannot be read."""
        try:
            return self.value(name)
        except FieldError:
            return None

    def optional_raw(self, name: str) -> Optional[FieldValue]:
        """Return a raw field, or None if it is absent."""
        return self.fields.get(name)


@dataclass
class RasContext:
    """State shared by the handlers: how to turn trace times into wall time."""

    use_uptime: bool = False
    uptime_diff: int = 0
    user_hz: int = 1_000_000_000
    clock: Callable[[], float] = time.time

    def event_time(self, ts: int) -> int:
        """Return the wall-clock second at which an event happened."""
        if self.use_uptime:
            return ts // self.user_hz + self.uptime_diff
        return int(self.clock())


def format_timestamp(when: float) -> str:
    """Format seconds since the epoch as local time with its UTC offset."""
    try:
        local = datetime.fromtimestamp(when).astimezone()
    except (OverflowError, OSError, ValueError):
        return EPOCH_TIMESTAMP
    return local.strftime(TIMESTAMP_FORMAT)


def _to_signed(value: int, bits: int) -> int:
    mask = (1 << bits) - 1
    value &= mask
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _as_text(value: Optional[FieldValue]) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).split(b"\0", 1)[0].decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value.split("\0", 1)[0]
    return str(value)