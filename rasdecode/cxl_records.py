"""Decoding of CXL event records that share the common record header."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .cxl import (
    _event_timestamp,
    convert_timestamp,
    decode_flags,
    log_type_name,
    type_name,
    uuid_be,
)
from .events import FieldError, FieldValue, RasContext, TraceEvent, _as_text

EVENT_RECORD_DATA_LENGTH = 0x50
GEN_MED_COMP_ID_SIZE = 0x10
DER_CORRECTION_MASK_SIZE = 0x20

HDR_FLAGS: Tuple[Tuple[int, str], ...] = (
    (1 << 2, "PERMANENT_CONDITION"),
    (1 << 3, "MAINTENANCE_NEEDED"),
    (1 << 4, "PERFORMANCE_DEGRADED"),
    (1 << 5, "HARDWARE_REPLACEMENT_NEEDED"),
)

DPA_FLAGS: Tuple[Tuple[int, str], ...] = (
    (1 << 0, "VOLATILE"),
    (1 << 1, "NOT_REPAIRABLE"),
)

GMER_DESCRIPTOR_FLAGS: Tuple[Tuple[int, str], ...] = (
    (1 << 0, "UNCORRECTABLE EVENT"),
    (1 << 1, "THRESHOLD EVENT"),
    (1 << 2, "POISON LIST OVERFLOW"),
)

HEALTH_STATUS_FLAGS: Tuple[Tuple[int, str], ...] = (
    (1 << 0, "MAINTENANCE_NEEDED"),
    (1 << 1, "PERFORMANCE_DEGRADED"),
    (1 << 2, "REPLACEMENT_NEEDED"),
)

GMER_VALID_CHANNEL = 1 << 0
GMER_VALID_RANK = 1 << 1
GMER_VALID_DEVICE = 1 << 2
GMER_VALID_COMPONENT = 1 << 3

DER_VALID_CHANNEL = 1 << 0
DER_VALID_RANK = 1 << 1
DER_VALID_NIBBLE = 1 << 2
DER_VALID_BANK_GROUP = 1 << 3
DER_VALID_BANK = 1 << 4
DER_VALID_ROW = 1 << 5
DER_VALID_COLUMN = 1 << 6
DER_VALID_CORRECTION_MASK = 1 << 7

MEM_EVENT_TYPES = ("ECC Error", "Invalid Address", "Data Path Error")

TRANSACTION_TYPES = (
    "Unknown",
    "Host Read",
    "Host Write",
    "Host Scan Media",
    "Host Inject Poison",
    "Internal Media Scrub",
    "Internal Media Management",
)

DEVICE_EVENT_TYPES = (
    "Health Status Change",
    "Media Status Change",
    "Life Used Change",
    "Temperature Change",
    "Data Path Error",
    "LSA Error",
)

MEDIA_STATUS = (
    "Normal",
    "Not Ready",
    "Write Persistency Lost",
    "All Data Lost",
    "Write Persistency Loss in the Event of Power Loss",
    "Write Persistency Loss in Event of Shutdown",
    "Write Persistency Loss Imminent",
    "All Data Loss in Event of Power Loss",
    "All Data loss in the Event of Shutdown",
    "All Data Loss Imminent",
)

TWO_BIT_STATUS = ("Normal", "Warning", "Critical")
ONE_BIT_STATUS = ("Normal", "Warning")


@dataclass
class CommonHeader:
    """The common header of a CXL event record."""

    timestamp: str
    memdev: str
    host: str
    serial: int
    log_type: str
    hdr_uuid: str
    hdr_flags: int
    hdr_handle: int
    hdr_related_handle: int
    hdr_timestamp: str
    hdr_length: int
    hdr_maint_op_class: int
    text: str


@dataclass
class CxlGenericEvent:
    """A CXL record whose payload is not decoded."""

    hdr: CommonHeader
    data: bytes
    text: str


@dataclass
class CxlGeneralMediaEvent:
    """A decoded CXL general media event record."""

    hdr: CommonHeader
    dpa: int = 0
    dpa_flags: int = 0
    descriptor: int = 0
    type: int = 0
    transaction_type: int = 0
    hpa: int = 0
    region: str = ""
    region_uuid: str = ""
    validity_flags: int = 0
    channel: int = 0
    rank: int = 0
    device: int = 0
    comp_id: bytes = b""
    text: str = ""


@dataclass
class CxlDramEvent:
    """A decoded CXL DRAM event record."""

    hdr: CommonHeader
    dpa: int = 0
    dpa_flags: int = 0
    descriptor: int = 0
    type: int = 0
    transaction_type: int = 0
    hpa: int = 0
    region: str = ""
    region_uuid: str = ""
    validity_flags: int = 0
    channel: int = 0
    rank: int = 0
    nibble_mask: int = 0
    bank_group: int = 0
    bank: int = 0
    row: int = 0
    column: int = 0
    cor_mask: bytes = b""
    text: str = ""


@dataclass
class CxlMemoryModuleEvent:
    """A decoded CXL memory module event record."""

    hdr: CommonHeader
    event_type: int = 0
    health_status: int = 0
    media_status: int = 0
    add_status: int = 0
    life_used: int = 0
    device_temp: int = 0
    dirty_shutdown_cnt: int = 0
    cor_vol_err_cnt: int = 0
    cor_per_err_cnt: int = 0
    text: str = ""


def _buffer(event: TraceEvent, name: str, size: int) -> bytes:
    found: Optional[FieldValue] = event.optional_raw(name)
    if found is None or isinstance(found, int):
        raise FieldError(name)
    data = found.encode("utf-8") if isinstance(found, str) else bytes(found)
    return data[:size].ljust(size, b"\0")


def _hex_bytes(data: bytes) -> str:
    return "".join(f"{byte:02x} " for byte in data)


def parse_common_header(event: TraceEvent, context: RasContext) -> CommonHeader:
    """Decode the header fields every CXL event record carries."""
    timestamp = _event_timestamp(event, context)
    memdev = _as_text(event.raw("memdev"))
    host = _as_text(event.raw("host"))
    serial = event.value("serial")
    log_type = log_type_name(event.value("log"))
    hdr_uuid = uuid_be(_buffer(event, "hdr_uuid", 16))
    hdr_flags = event.value("hdr_flags") & 0xFF
    hdr_handle = event.value("hdr_handle") & 0xFFFF
    hdr_related_handle = event.value("hdr_related_handle") & 0xFFFF
    hdr_timestamp = convert_timestamp(event.value("hdr_timestamp"))
    hdr_length = event.value("hdr_length") & 0xFF
    hdr_maint_op_class = event.value("hdr_maint_op_class") & 0xFF

    text = (
        f"{timestamp} memdev:{memdev} host:{host} serial:0x{serial:x} "
        f"log type:{log_type} hdr_uuid:{hdr_uuid} "
        f"{decode_flags(hdr_flags, HDR_FLAGS)}"
        f"hdr_handle:0x{hdr_handle:x} "
        f"hdr_related_handle:0x{hdr_related_handle:x} "
        f"hdr_timestamp:{hdr_timestamp} "
        f"hdr_length:{hdr_length} "
        f"hdr_maint_op_class:{hdr_maint_op_class} "
    )
    return CommonHeader(
        timestamp=timestamp,
        memdev=memdev,
        host=host,
        serial=serial,
        log_type=log_type,
        hdr_uuid=hdr_uuid,
        hdr_flags=hdr_flags,
        hdr_handle=hdr_handle,
        hdr_related_handle=hdr_related_handle,
        hdr_timestamp=hdr_timestamp,
        hdr_length=hdr_length,
        hdr_maint_op_class=hdr_maint_op_class,
        text=text,
    )


def handle_generic_event(event: TraceEvent, context: RasContext) -> CxlGenericEvent:
    """Decode a cxl_generic_event record, dumping its payload in hex."""
    hdr = parse_common_header(event, context)
    data = _buffer(event, "data", EVENT_RECORD_DATA_LENGTH)
    parts = [hdr.text, "\ndata:\n  00000000: "]
    for offset in range(0, EVENT_RECORD_DATA_LENGTH, 4):
        if offset > 0 and offset % 16 == 0:
            parts.append(f"\n  {offset:08x}: ")
        parts.append(data[offset : offset + 4].hex() + " ")
    return CxlGenericEvent(hdr=hdr, data=data, text="".join(parts))


def _media_common(event: TraceEvent, ev, region_field: str, parts: List[str]) -> None:
    ev.dpa = event.value("dpa")
    parts.append(f"dpa:0x{ev.dpa:x} ")
    ev.dpa_flags = event.value("dpa_flags") & 0xFF
    parts.append("dpa_flags:" + decode_flags(ev.dpa_flags, DPA_FLAGS))
    ev.descriptor = event.value("descriptor") & 0xFF
    parts.append("descriptor:" + decode_flags(ev.descriptor, GMER_DESCRIPTOR_FLAGS))
    ev.type = event.value("type") & 0xFF
    parts.append(f"type:{type_name(MEM_EVENT_TYPES, ev.type)} ")
    ev.transaction_type = event.value("transaction_type") & 0xFF
    parts.append(
        f"transaction_type:{type_name(TRANSACTION_TYPES, ev.transaction_type)} "
    )
    ev.hpa = event.value("hpa")
    parts.append(f"hpa:0x{ev.hpa:x} ")
    ev.region = _as_text(event.raw(region_field))
    parts.append(f"region:{ev.region} ")
    ev.region_uuid = uuid_be(_buffer(event, "region_uuid", 16))
    parts.append(f"region_uuid:{ev.region_uuid} ")
    ev.validity_flags = event.value("validity_flags") & 0xFFFF


def handle_general_media_event(
    event: TraceEvent, context: RasContext
) -> CxlGeneralMediaEvent:
    """Decode a cxl_general_media record."""
    ev = CxlGeneralMediaEvent(hdr=parse_common_header(event, context))
    parts = [ev.hdr.text]
    _media_common(event, ev, "region_name", parts)

    if ev.validity_flags & GMER_VALID_CHANNEL:
        ev.channel = event.value("channel") & 0xFF
        parts.append(f"channel:{ev.channel} ")
    if ev.validity_flags & GMER_VALID_RANK:
        ev.rank = event.value("rank") & 0xFF
        parts.append(f"rank:{ev.rank} ")
    if ev.validity_flags & GMER_VALID_DEVICE:
        ev.device = event.value("device") & 0xFFFFFFFF
        parts.append(f"device:{ev.device:x} ")
    if ev.validity_flags & GMER_VALID_COMPONENT:
        ev.comp_id = _buffer(event, "comp_id", GEN_MED_COMP_ID_SIZE)
        parts.append("comp_id:" + _hex_bytes(ev.comp_id))

    ev.text = "".join(parts)
    return ev


def handle_dram_event(event: TraceEvent, context: RasContext) -> CxlDramEvent:
    """Decode a cxl_dram record."""
    ev = CxlDramEvent(hdr=parse_common_header(event, context))
    parts = [ev.hdr.text]
    _media_common(event, ev, "region", parts)

    numeric = (
        (DER_VALID_CHANNEL, "channel", 0xFF),
        (DER_VALID_RANK, "rank", 0xFF),
        (DER_VALID_NIBBLE, "nibble_mask", 0xFFFFFFFF),
        (DER_VALID_BANK_GROUP, "bank_group", 0xFF),
        (DER_VALID_BANK, "bank", 0xFF),
        (DER_VALID_ROW, "row", 0xFFFFFFFF),
        (DER_VALID_COLUMN, "column", 0xFFFF),
    )
    for bit, name, mask in numeric:
        if ev.validity_flags & bit:
            value = event.value(name) & mask
            setattr(ev, name, value)
            parts.append(f"{name}:{value} ")

    if ev.validity_flags & DER_VALID_CORRECTION_MASK:
        ev.cor_mask = _buffer(event, "cor_mask", DER_CORRECTION_MASK_SIZE)
        parts.append("correction_mask:" + _hex_bytes(ev.cor_mask))

    ev.text = "".join(parts)
    return ev


def handle_memory_module_event(
    event: TraceEvent, context: RasContext
) -> CxlMemoryModuleEvent:
    """Decode a cxl_memory_module record."""
    ev = CxlMemoryModuleEvent(hdr=parse_common_header(event, context))
    parts = [ev.hdr.text]

    ev.event_type = event.value("event_type") & 0xFF
    parts.append(f"event_type:{type_name(DEVICE_EVENT_TYPES, ev.event_type)} ")
    ev.health_status = event.value("health_status") & 0xFF
    parts.append("health_status:" + decode_flags(ev.health_status, HEALTH_STATUS_FLAGS))
    ev.media_status = event.value("media_status") & 0xFF
    parts.append(f"media_status:{type_name(MEDIA_STATUS, ev.media_status)} ")

    ev.add_status = event.value("add_status") & 0xFF
    status = ev.add_status
    parts.append(f"as_life_used:{type_name(TWO_BIT_STATUS, status & 0x3)} ")
    parts.append(f"as_dev_temp:{type_name(TWO_BIT_STATUS, (status & 0xC) >> 2)} ")
    parts.append(
        f"as_cor_vol_err_cnt:{type_name(ONE_BIT_STATUS, (status & 0x10) >> 4)} "
    )
    parts.append(
        f"as_cor_per_err_cnt:{type_name(ONE_BIT_STATUS, (status & 0x20) >> 5)} "
    )

    for name, mask in (
        ("life_used", 0xFF),
        ("device_temp", 0xFFFF),
        ("dirty_shutdown_cnt", 0xFFFFFFFF),
        ("cor_vol_err_cnt", 0xFFFFFFFF),
        ("cor_per_err_cnt", 0xFFFFFFFF),
    ):
        value = event.value(name) & mask
        setattr(ev, name, value)
        parts.append(f"{name}:{value} ")

    ev.text = "".join(parts)
    return ev