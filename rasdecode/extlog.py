"""Decoding of extended error log memory trace events."""

from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from typing import Optional

from .events import FieldValue, RasContext, TraceEvent, _as_text, _to_signed, format_timestamp

_U64_MASK = (1 << 64) - 1

_ERROR_TYPES = (
    "unknown",
    "no error",
    "single-bit ECC",
    "multi-bit ECC",
    "single-symbol chipkill ECC",
    "multi-symbol chipkill ECC",
    "master abort",
    "target abort",
    "parity error",
    "watchdog timeout",
    "invalid address",
    "mirror Broken",
    "memory sparing",
    "scrub corrected error",
    "scrub uncorrected error",
    "physical memory map-out event",
)

_SEVERITIES = ("recoverable", "fatal", "corrected", "informational")

# Compact CPER memory error record, host byte order.
_CPER_FORMAT = struct.Struct("=Q8H3Q3H")

# (validation bit, label, hex?) in output order
_CPER_FIELDS = (
    (0x0008, "node", False),
    (0x0010, "card", False),
    (0x0020, "module", False),
    (0x0040, "bank", False),
    (0x0080, "device", False),
    (0x0100, "row", False),
    (0x0200, "column", False),
    (0x0400, "bit_pos", False),
    (0x0800, "req_id", True),
    (0x1000, "resp_id", True),
    (0x2000, "tgt_id", True),
    (0x8000, "rank", False),
    (0x10000, "card_handle", False),
    (0x20000, "module_handle", False),
)


@dataclass
class ExtlogEvent:
    """A decoded extlog memory event."""

    timestamp: str
    error_seq: int
    etype: int
    severity: int
    address: int
    pa_mask_lsb: int
    cper_data: bytes
    fru_text: str
    fru_id: bytes
    text: str


def error_type_name(etype: int) -> str:
    """Return the name of a CPER memory error type."""
    if 0 <= etype < len(_ERROR_TYPES):
        return _ERROR_TYPES[etype]
    return "unknown-type"


def error_severity_name(severity: int) -> str:
    """Return the name of a CPER error severity."""
    if 0 <= severity < len(_SEVERITIES):
        return _SEVERITIES[severity]
    return "unknown-severity"


def error_mask(lsb: int) -> int:
    """Return the physical address mask for a least significant bit."""
    if lsb == 0xFF:
        return _U64_MASK
    return ~((1 << lsb) - 1) & _U64_MASK


def _as_bytes(value: Optional[FieldValue], size: int) -> bytes:
    if value is None:
        data = b""
    elif isinstance(value, str):
        data = value.encode("utf-8")
    elif isinstance(value, int):
        data = b""
    else:
        data = bytes(value)
    return data[:size].ljust(size, b"\0")


def decode_cper_data(data: Optional[bytes]) -> str:
    """Describe the valid fields of a compact CPER memory error record."""
    values = _CPER_FORMAT.unpack(_as_bytes(data, _CPER_FORMAT.size))
    validation_bits, fields = values[0], values[1:]
    if validation_bits == 0:
        return ""
    parts = [" ("]
    for (bit, label, as_hex), value in zip(_CPER_FIELDS, fields):
        if validation_bits & bit:
            parts.append(f"{label}: 0x{value:x} " if as_hex else f"{label}: {value} ")
    text = "".join(parts)
    # The closing parenthesis replaces the last character written.
    return text[:-1] + ")"


def uuid_le(raw: Optional[bytes]) -> str:
    """Format 16 bytes as a UUID with little-endian leading fields."""
    return str(uuid.UUID(bytes_le=_as_bytes(raw, 16)))


def handle_extlog_event(event: TraceEvent, context: RasContext) -> ExtlogEvent:
    """Decode an extlog_mem_event record."""
    timestamp = format_timestamp(context.event_time(event.ts))
    etype = _to_signed(event.value("etype"), 32)
    error_seq = _to_signed(event.value("err_seq"), 32)
    severity = _to_signed(event.value("sev"), 32)
    address = event.value("pa")
    pa_mask_lsb = _to_signed(event.value("pa_mask_lsb"), 32)

    raw_cper = event.optional_raw("data")
    cper_data = b"" if raw_cper is None or isinstance(raw_cper, int) else _as_bytes(
        raw_cper, len(raw_cper)
    )
    fru_text = _as_text(event.optional_raw("fru_text"))
    raw_fru_id = event.optional_raw("fru_id")
    fru_id = _as_bytes(raw_fru_id, 16)

    text = (
        f"{timestamp} "
        f"{error_seq} {error_severity_name(severity)} error: {error_type_name(etype)}"
        f" physical addr: 0x{address:x} mask: 0x{error_mask(pa_mask_lsb):x}"
        f"{decode_cper_data(cper_data)} {fru_text} {uuid_le(fru_id)}"
    )
    return ExtlogEvent(
        timestamp=timestamp,
        error_seq=error_seq,
        etype=etype,
        severity=severity,
        address=address,
        pa_mask_lsb=pa_mask_lsb,
        cper_data=cper_data,
        fru_text=fru_text,
        fru_id=fru_id,
        text=text,
    )