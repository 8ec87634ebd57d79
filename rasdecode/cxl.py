"""Decoding of CXL poison, AER and overflow trace events."""

from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

from .events import (
    EPOCH_TIMESTAMP,
    FieldValue,
    RasContext,
    TraceEvent,
    _as_text,
    _to_signed,
    format_timestamp,
)

NS_PER_SECOND = 1_000_000_000

CXL_POISON_FLAG_MORE = 1 << 0
CXL_POISON_FLAG_OVERFLOW = 1 << 1
CXL_POISON_FLAG_SCANNING = 1 << 2

# The header log is 512 bytes, read as 32-bit words.
HEADERLOG_SIZE_U32 = 512 // 4

_POISON_TRACE_TYPES = {0: "List", 1: "Inject", 2: "Clear"}

_POISON_SOURCES = {
    0: "Unknown",
    1: "External",
    2: "Internal",
    3: "Injected",
    7: "Vendor",
}

_LOG_TYPES = {0: "Informational", 1: "Warning", 2: "Failure", 3: "Fatal"}

AER_UE_ERRORS: Tuple[Tuple[int, str], ...] = (
    (1 << 0, "Cache Data Parity Error"),
    (1 << 1, "Cache Address Parity Error"),
    (1 << 2, "Cache Byte Enable Parity Error"),
    (1 << 3, "Cache Data ECC Error"),
    (1 << 4, "Memory Data Parity Error"),
    (1 << 5, "Memory Address Parity Error"),
    (1 << 6, "Memory Byte Enable Parity Error"),
    (1 << 7, "Memory Data ECC Error"),
    (1 << 8, "REINIT Threshold Hit"),
    (1 << 9, "Received Unrecognized Encoding"),
    (1 << 10, "Received Poison From Peer"),
    (1 << 11, "Receiver Overflow"),
    (1 << 14, "Component Specific Error"),
    (1 << 15, "IDE Tx Error"),
    (1 << 16, "IDE Rx Error"),
)

AER_CE_ERRORS: Tuple[Tuple[int, str], ...] = (
    (1 << 0, "Cache Data ECC Error"),
    (1 << 1, "Memory Data ECC Error"),
    (1 << 2, "CRC Threshold Hit"),
    (1 << 3, "Retry Threshold"),
    (1 << 4, "Received Cache Poison From Peer"),
    (1 << 5, "Received Memory Poison From Peer"),
    (1 << 6, "Received Error From Physical Layer"),
)


@dataclass
class CxlPoisonEvent:
    """A decoded cxl_poison event."""

    timestamp: str
    memdev: str
    host: str
    serial: int
    trace_type: str
    region: str
    uuid: str
    hpa: int
    dpa: int
    dpa_length: int
    source: str
    flags: int
    overflow_ts: str
    text: str


@dataclass
class CxlAerUeEvent:
    """A decoded CXL AER uncorrectable error."""

    timestamp: str
    memdev: str
    host: str
    serial: int
    error_status: int
    first_error: int
    header_log: Tuple[int, ...]
    text: str

    @property
    def header_log_be(self) -> bytes:
        """The header log words as big-endian bytes, as they are stored."""
        return struct.pack(f">{len(self.header_log)}I", *self.header_log)


@dataclass
class CxlAerCeEvent:
    """A decoded CXL AER correctable error."""

    timestamp: str
    memdev: str
    host: str
    serial: int
    error_status: int
    text: str


@dataclass
class CxlOverflowEvent:
    """A decoded CXL event log overflow."""

    timestamp: str
    memdev: str
    host: str
    serial: int
    log_type: str
    count: int
    first_ts: str
    last_ts: str
    text: str


def convert_timestamp(ns: int) -> str:
    """Format nanoseconds since the epoch; zero means no timestamp."""
    if not ns:
        return EPOCH_TIMESTAMP
    return format_timestamp(ns // NS_PER_SECOND)


def _event_timestamp(event: TraceEvent, context: RasContext) -> str:
    return format_timestamp(event.ts // context.user_hz + context.uptime_diff)


def _as_bytes(value: Optional[FieldValue], size: int) -> bytes:
    if value is None or isinstance(value, int):
        data = b""
    elif isinstance(value, str):
        data = value.encode("utf-8")
    else:
        data = bytes(value)
    return data[:size].ljust(size, b"\0")


def uuid_be(raw: Optional[FieldValue]) -> str:
    """Format 16 bytes, in order, as a UUID string."""
    return str(uuid.UUID(bytes=_as_bytes(raw, 16)))


def decode_flags(value: int, table: Iterable[Tuple[int, str]]) -> str:
    """Quote the name of every flag whose bit is set, each followed by a space."""
    return "".join(f"'{name}' " for bit, name in table if value & bit)


def type_name(names: Sequence[str], index: int) -> str:
    """Return names[index], or "Unknown" when it is out of range."""
    if 0 <= index < len(names):
        return names[index]
    return "Unknown"


def log_type_name(log_type: int) -> str:
    """Return the name of a CXL event log type."""
    return _LOG_TYPES.get(log_type, "Unknown")


def _device_prefix(event: TraceEvent, context: RasContext) -> Tuple[str, str, str, int, str]:
    timestamp = _event_timestamp(event, context)
    memdev = _as_text(event.raw("memdev"))
    host = _as_text(event.raw("host"))
    serial = event.value("serial")
    text = f"{timestamp} memdev:{memdev} host:{host} serial:0x{serial:x} "
    return timestamp, memdev, host, serial, text


def handle_poison_event(event: TraceEvent, context: RasContext) -> CxlPoisonEvent:
    """Decode a cxl_poison record."""
    timestamp, memdev, host, serial, prefix = _device_prefix(event, context)
    parts = [prefix]

    trace_type = _POISON_TRACE_TYPES.get(event.value("trace_type"), "Invalid")
    parts.append(f"trace_type:{trace_type} ")

    region = _as_text(event.raw("region"))
    parts.append(f"region:{region} ")
    region_uuid = _as_text(event.raw("uuid"))
    parts.append(f"region_uuid:{region_uuid} ")

    hpa = event.value("hpa")
    parts.append(f"poison list: hpa:0x{hpa:x} ")
    dpa = event.value("dpa")
    parts.append(f"dpa:0x{dpa:x} ")
    dpa_length = event.value("dpa_length") & 0xFFFFFFFF
    parts.append(f"dpa_length:0x{dpa_length:x} ")

    source = _POISON_SOURCES.get(event.value("source"), "Invalid")
    parts.append(f"source:{source} ")

    flags = _to_signed(event.value("flags"), 32)
    parts.append(f"flags:{flags} ")

    if flags & CXL_POISON_FLAG_OVERFLOW:
        overflow_ts = convert_timestamp(event.value("overflow_ts"))
    else:
        overflow_ts = EPOCH_TIMESTAMP
    parts.append(f"overflow timestamp:{overflow_ts}\n")

    return CxlPoisonEvent(
        timestamp=timestamp,
        memdev=memdev,
        host=host,
        serial=serial,
        trace_type=trace_type,
        region=region,
        uuid=region_uuid,
        hpa=hpa,
        dpa=dpa,
        dpa_length=dpa_length,
        source=source,
        flags=flags,
        overflow_ts=overflow_ts,
        text="".join(parts),
    )


def handle_aer_ue_event(event: TraceEvent, context: RasContext) -> CxlAerUeEvent:
    """Decode a cxl_aer_uncorrectable_error record."""
    timestamp, memdev, host, serial, prefix = _device_prefix(event, context)
    parts = [prefix]

    error_status = event.value("status") & 0xFFFFFFFF
    parts.append("error status:")
    parts.append(decode_flags(error_status, AER_UE_ERRORS))

    first_error = event.value("first_error") & 0xFFFFFFFF
    parts.append("first error:")
    parts.append(decode_flags(first_error, AER_UE_ERRORS))

    raw_log = _as_bytes(event.raw("header_log"), HEADERLOG_SIZE_U32 * 4)
    header_log = struct.unpack(f"={HEADERLOG_SIZE_U32}I", raw_log)
    parts.append("header log:\n")
    for index, word in enumerate(header_log):
        parts.append(f"{word:08x} ")
        if index > 0 and index % 20 == 0:
            parts.append("\n")

    return CxlAerUeEvent(
        timestamp=timestamp,
        memdev=memdev,
        host=host,
        serial=serial,
        error_status=error_status,
        first_error=first_error,
        header_log=tuple(header_log),
        text="".join(parts),
    )


def handle_aer_ce_event(event: TraceEvent, context: RasContext) -> CxlAerCeEvent:
    """Decode a cxl_aer_correctable_error record."""
    timestamp, memdev, host, serial, prefix = _device_prefix(event, context)
    error_status = event.value("status") & 0xFFFFFFFF
    text = prefix + "error status:" + decode_flags(error_status, AER_CE_ERRORS)
    return CxlAerCeEvent(
        timestamp=timestamp,
        memdev=memdev,
        host=host,
        serial=serial,
        error_status=error_status,
        text=text,
    )


def handle_overflow_event(event: TraceEvent, context: RasContext) -> CxlOverflowEvent:
    """Decode a cxl_overflow record."""
    timestamp, memdev, host, serial, prefix = _device_prefix(event, context)
    parts = [prefix]

    log_type = log_type_name(event.value("log"))
    parts.append(f"log type:{log_type} ")

    count = event.value("count") & 0xFFFFFFFF
    first_ts = convert_timestamp(event.value("first_ts"))
    last_ts = convert_timestamp(event.value("last_ts"))
    if count:
        parts.append(f"{count} errors from {first_ts} to {last_ts}\n")

    return CxlOverflowEvent(
        timestamp=timestamp,
        memdev=memdev,
        host=host,
        serial=serial,
        log_type=log_type,
        count=count,
        first_ts=first_ts,
        last_ts=last_ts,
        text="".join(parts),
    )