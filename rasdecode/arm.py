"""Decoding of ARM processor error trace events."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .cpu_isolation import CpuIsolation, ErrorInfo
from .events import (
    FieldError,
    FieldValue,
    GhesSeverity,
    RasContext,
    TraceEvent,
    _to_signed,
    format_timestamp,
)

logger = logging.getLogger(__name__)

ARM_ERR_VALID_ERROR_COUNT = 1 << 0
ARM_ERR_VALID_FLAGS = 1 << 1

ARM_INFO_VALID_MULTI_ERR = 1 << 0
ARM_INFO_VALID_FLAGS = 1 << 1
ARM_INFO_VALID_ERR_INFO = 1 << 2
ARM_INFO_VALID_VIRT_ADDR = 1 << 3
ARM_INFO_VALID_PHYSICAL_ADDR = 1 << 4

ARM_CACHE_ERROR = 1 << 1
ARM_TLB_ERROR = 1 << 2
ARM_BUS_ERROR = 1 << 3
ARM_VENDOR_ERROR = 1 << 4

ARM_ERR_VALID_TRANSACTION_TYPE = 1 << 0
ARM_ERR_VALID_OPERATION_TYPE = 1 << 1
ARM_ERR_VALID_LEVEL = 1 << 2
ARM_ERR_VALID_PROC_CONTEXT_CORRUPT = 1 << 3
ARM_ERR_VALID_CORRECTED = 1 << 4
ARM_ERR_VALID_PRECISE_PC = 1 << 5
ARM_ERR_VALID_RESTARTABLE_PC = 1 << 6
ARM_ERR_VALID_PARTICIPATION_TYPE = 1 << 7
ARM_ERR_VALID_TIME_OUT = 1 << 8
ARM_ERR_VALID_ADDRESS_SPACE = 1 << 9
ARM_ERR_VALID_MEM_ATTRIBUTES = 1 << 10
ARM_ERR_VALID_ACCESS_MODE = 1 << 11

PROC_ERROR_TYPES = (
    "",
    "cache error",
    "TLB error",
    "bus error",
    "micro-architectural error",
)

PROC_ERROR_FLAGS = (
    "first error ",
    "last error",
    "propagated error",
    "overflow",
)

_TRANS_TYPES = ("Instruction", "Data Access", "Generic")

_BUS_OPS = (
    "Generic error (type cannot be determined)",
    "Generic read (type of instruction or data request cannot be determined)",
    "Generic write (type of instruction of data request cannot be determined)",
    "Data read",
    "Data write",
    "Instruction fetch",
    "Prefetch",
)

_CACHE_OPS = _BUS_OPS + (
    "Eviction",
    "Snooping (processor initiated a cache snoop that resulted in an error)",
    "Snooped (processor raised a cache error caused by another processor or device snooping its cache)",
    "Management",
)

_TLB_OPS = _BUS_OPS + (
    "Local management operation (processor initiated a TLB management operation that resulted in an error)",
    "External management operation (processor raised a TLB error caused by another processor or device broadcasting TLB operations)",
)

_PART_TYPES = (
    "Local processor originated request",
    "Local processor responded to request",
    "Local processor observed",
    "Generic",
)

_ADDR_SPACES = (
    "External Memory Access",
    "Internal Memory Access",
    "Unknown",
    "Device Memory Access",
)

_SEVERITY_NAMES = {
    GhesSeverity.NO: "Informational",
    GhesSeverity.CORRECTED: "Corrected",
    GhesSeverity.RECOVERABLE: "Recoverable",
    GhesSeverity.PANIC: "Fatal",
}

# ARM Processor Error Information structure (UEFI N.2.4.4), packed.
_ERR_INFO_FORMAT = struct.Struct("<BBHBHBQQQ")
ERR_INFO_SIZE = _ERR_INFO_FORMAT.size


@dataclass(frozen=True)
class ArmErrorInfo:
    """One ARM processor error information entry."""

    version: int
    length: int
    validation_bits: int
    type: int
    multiple_error: int
    flags: int
    error_info: int
    virt_fault_addr: int
    physical_fault_addr: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "ArmErrorInfo":
        """Unpack one entry from exactly its packed size of bytes."""
        if len(data) != ERR_INFO_SIZE:
            raise ValueError(
                f"ARM error info needs {ERR_INFO_SIZE} bytes, got {len(data)}"
            )
        return cls(*_ERR_INFO_FORMAT.unpack(data))

    def is_core_failure(self) -> bool:
        """Whether the flags show a failure of the core itself."""
        if self.validation_bits & ARM_ERR_VALID_FLAGS:
            return bool(self.flags & 0xF) and not self.flags & (1 << 2)
        return False


@dataclass
class ArmEvent:
    """A decoded arm_event record."""

    timestamp: str
    affinity: int = 0
    mpidr: int = 0
    midr: int = 0
    running_state: int = 0
    psci_state: int = 0
    pei_len: int = 0
    pei_error: bytes = b""
    ctx_len: int = 0
    ctx_error: bytes = b""
    oem_len: int = 0
    vsei_error: bytes = b""
    error_infos: List[ArmErrorInfo] = field(default_factory=list)
    error_count: int = 0
    error_types: str = ""
    error_flags: str = ""
    error_info: int = 0
    virt_fault_addr: int = 0
    phy_fault_addr: int = 0
    text: str = ""


def format_raw_data(buf: bytes, length: int) -> str:
    """Hex dump of whole little-endian 32-bit words, four to a line."""
    data = bytes(buf)[: max(0, min(length, len(buf)))]
    parts = ["  00000000: "]
    words = len(data) // 4
    for index in range(words):
        offset = index * 4
        (word,) = struct.unpack_from("<I", data, offset)
        parts.append(f"{word:08x}")
        if (index + 1) % 4 == 0:
            parts.append(f"\n  {offset + 4:08x}: ")
        else:
            parts.append(" ")
    return "".join(parts)


def decode_bits(value: int, names: Sequence[str]) -> str:
    """Join the names of the bits set in value, each preceded by a space."""
    return "".join(f" {name}" for bit, name in enumerate(names) if value & (1 << bit))


def _pick(names: Sequence[str], index: int) -> Optional[str]:
    return names[index] if index < len(names) else None


def decode_error_info(error_type: int, error_info: int) -> str:
    """Describe the error information field of an entry."""
    if error_type & ARM_VENDOR_ERROR:
        return ""
    parts: List[str] = []

    if error_info & ARM_ERR_VALID_TRANSACTION_TYPE:
        name = _pick(_TRANS_TYPES, (error_info >> 16) & 0x3)
        if name is not None:
            parts.append(f" transaction type:{name}")

    if error_info & ARM_ERR_VALID_OPERATION_TYPE:
        op_type = (error_info >> 18) & 0xF
        if error_type & ARM_CACHE_ERROR:
            name = _pick(_CACHE_OPS, op_type)
            if name is not None:
                parts.append(f" cache error, operation type:{name}")
        if error_type & ARM_TLB_ERROR:
            name = _pick(_TLB_OPS, op_type)
            if name is not None:
                parts.append(f" TLB error, operation type: {name}")
        if error_type & ARM_BUS_ERROR:
            name = _pick(_BUS_OPS, op_type)
            if name is not None:
                parts.append(f" bus error, operation type: {name}")

    if error_info & ARM_ERR_VALID_LEVEL:
        level = (error_info >> 22) & 0x7
        if error_type & ARM_CACHE_ERROR:
            parts.append(f" cache level: {level}")
        if error_type & ARM_TLB_ERROR:
            parts.append(f" TLB level: {level}")
        if error_type & ARM_BUS_ERROR:
            parts.append(f" affinity level at which the bus error occurred: {level}")

    if error_info & ARM_ERR_VALID_PROC_CONTEXT_CORRUPT:
        if (error_info >> 25) & 1:
            parts.append(" processor context corrupted")
        else:
            parts.append(" processor context not corrupted")

    if error_info & ARM_ERR_VALID_CORRECTED:
        if (error_info >> 26) & 1:
            parts.append(" the error has been corrected")
        else:
            parts.append(" the error has not been corrected")

    if error_info & ARM_ERR_VALID_PRECISE_PC:
        if (error_info >> 27) & 1:
            parts.append(" PC is precise")
        else:
            parts.append(" PC is imprecise")

    if error_info & ARM_ERR_VALID_RESTARTABLE_PC and (error_info >> 28) & 1:
        parts.append(" Program execution can be restartable reliably at the PC")

    # The remaining fields only apply to pure bus errors.
    if error_type != ARM_BUS_ERROR:
        return "".join(parts)

    if error_info & ARM_ERR_VALID_PARTICIPATION_TYPE:
        name = _pick(_PART_TYPES, (error_info >> 29) & 0x3)
        if name is not None:
            parts.append(f" participation type: {name}")

    if error_info & ARM_ERR_VALID_TIME_OUT and (error_info >> 31) & 1:
        parts.append(" request timed out")

    if error_info & ARM_ERR_VALID_ADDRESS_SPACE:
        name = _pick(_ADDR_SPACES, (error_info >> 32) & 0x3)
        if name is not None:
            parts.append(f" address space: {name}")

    if error_info & ARM_ERR_VALID_MEM_ATTRIBUTES:
        parts.append(f" memory access attributes:0x{(error_info >> 34) & 0x1FF:x}")

    if error_info & ARM_ERR_VALID_ACCESS_MODE:
        if (error_info >> 43) & 1:
            parts.append(" access mode: normal")
        else:
            parts.append(" access mode: secure")

    return "".join(parts)


def parse_error_infos(buf: bytes, length: int) -> List[ArmErrorInfo]:
    """Split a buffer of packed error information entries."""
    if length % ERR_INFO_SIZE != 0:
        raise ValueError(
            "The event data does not match to the ARM Processor Error Information Structure"
        )
    data = bytes(buf)
    if len(data) < length:
        raise ValueError(f"buffer holds {len(data)} bytes, expected {length}")
    return [
        ArmErrorInfo.from_bytes(data[offset : offset + ERR_INFO_SIZE])
        for offset in range(0, length, ERR_INFO_SIZE)
    ]


def _describe_info(info: ArmErrorInfo) -> str:
    parts = [f" error_types:{decode_bits(info.type, PROC_ERROR_TYPES)}"]
    if info.validation_bits & ARM_ERR_VALID_ERROR_COUNT:
        parts.append(f" error_count:{info.multiple_error + 1}")
    if info.validation_bits & ARM_INFO_VALID_FLAGS:
        parts.append(f" error_flags:{decode_bits(info.flags, PROC_ERROR_FLAGS)}")
    if info.validation_bits & ARM_INFO_VALID_ERR_INFO:
        parts.append(f" error_info: 0x{info.error_info:016x}")
        parts.append(decode_error_info(info.type, info.error_info))
    if info.validation_bits & ARM_INFO_VALID_VIRT_ADDR:
        parts.append(f" virtual fault address: 0x{info.virt_fault_addr:016x}")
    if info.validation_bits & ARM_INFO_VALID_PHYSICAL_ADDR:
        parts.append(f" physical fault address: 0x{info.physical_fault_addr:016x}")
    parts.append("\n")
    return "".join(parts)


def format_processor_error_info(infos: Sequence[ArmErrorInfo]) -> str:
    """Describe a list of error information entries, one per line."""
    return "\nARM processor error info:\n" + "".join(_describe_info(i) for i in infos)


def count_errors(infos: Sequence[ArmErrorInfo], severity: int) -> int:
    """Count the errors that count against the CPU core."""
    total = 0
    for info in infos:
        count = 1
        if info.validation_bits & ARM_ERR_VALID_ERROR_COUNT:
            count = info.multiple_error + 1
        if severity == GhesSeverity.RECOVERABLE and not info.is_core_failure():
            count = 0
        total += count
    logger.info("%d error in cpu core caught", total)
    return total


def _raw_bytes(value: FieldValue) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, int):
        raise TypeError("numeric field where a buffer was expected")
    return bytes(value)


def _buffer(event: TraceEvent, name: str) -> bytes:
    found = event.optional_raw(name)
    if found is None or isinstance(found, int):
        raise FieldError(name)
    return _raw_bytes(found)


def _apply_infos(ev: ArmEvent, infos: Sequence[ArmErrorInfo]) -> None:
    for info in infos:
        ev.error_types = decode_bits(info.type, PROC_ERROR_TYPES)
        if info.validation_bits & ARM_ERR_VALID_ERROR_COUNT:
            ev.error_count = info.multiple_error + 1
        if info.validation_bits & ARM_INFO_VALID_FLAGS:
            ev.error_flags = decode_bits(info.flags, PROC_ERROR_FLAGS)
        if info.validation_bits & ARM_INFO_VALID_ERR_INFO:
            ev.error_info = info.error_info
        if info.validation_bits & ARM_INFO_VALID_VIRT_ADDR:
            ev.virt_fault_addr = info.virt_fault_addr
        if info.validation_bits & ARM_INFO_VALID_PHYSICAL_ADDR:
            ev.phy_fault_addr = info.physical_fault_addr


def _handle_cpu_error(
    event: TraceEvent, ev: ArmEvent, now: int, isolation: CpuIsolation
) -> str:
    cpu = _to_signed(event.value("cpu"), 32)
    text = f"\n cpu: {cpu}"
    severity = event.value("sev")
    text += f"\n severity: {_SEVERITY_NAMES.get(severity, 'Fatal')}"
    if severity in (GhesSeverity.CORRECTED, GhesSeverity.RECOVERABLE):
        nums = count_errors(ev.error_infos, severity)
        if nums > 0:
            isolation.record_error(ErrorInfo(nums, now, int(severity)), cpu)
    return text


def handle_arm_event(
    event: TraceEvent,
    context: RasContext,
    isolation: Optional[CpuIsolation] = None,
) -> ArmEvent:
    """Decode an arm_event record, feeding CPU isolation when given."""
    now = context.event_time(event.ts)
    ev = ArmEvent(timestamp=format_timestamp(now))
    parts = [ev.timestamp]

    ev.affinity = _to_signed(event.value("affinity"), 32)
    parts.append(f" affinity: {ev.affinity}")
    ev.mpidr = event.value("mpidr")
    parts.append(f" MPIDR: 0x{ev.mpidr:x}")
    ev.midr = event.value("midr")
    parts.append(f" MIDR: 0x{ev.midr:x}")
    ev.running_state = _to_signed(event.value("running_state"), 32)
    parts.append(f" running_state: {ev.running_state}")
    ev.psci_state = _to_signed(event.value("psci_state"), 32)
    parts.append(f" psci_state: {ev.psci_state}")

    pei_len = event.optional_value("pei_len")
    if pei_len is not None:
        ev.pei_len = _to_signed(pei_len, 32)
        parts.append(f" ARM Processor Err Info data len: {ev.pei_len}\n")

        legacy = event.optional_raw("pei_buf") is None
        ev.pei_error = _buffer(event, "buf" if legacy else "pei_buf")
        parts.append(format_raw_data(ev.pei_error, ev.pei_len))

        try:
            ev.error_infos = parse_error_infos(ev.pei_error, ev.pei_len)
        except ValueError as exc:
            logger.error("%s", exc)
        else:
            _apply_infos(ev, ev.error_infos)
            parts.append(format_processor_error_info(ev.error_infos))

        ev.ctx_len = _to_signed(event.value("ctx_len"), 32)
        parts.append(f" ARM Processor Err Context Info data len: {ev.ctx_len}\n")
        ev.ctx_error = _buffer(event, "buf1" if legacy else "ctx_buf")
        parts.append(format_raw_data(ev.ctx_error, ev.ctx_len))

        ev.oem_len = _to_signed(event.value("oem_len"), 32)
        parts.append(f" Vendor Specific Err Info data len: {ev.oem_len}\n")
        ev.vsei_error = _buffer(event, "buf2" if legacy else "oem_buf")
        parts.append(format_raw_data(ev.vsei_error, ev.oem_len))

        if isolation is not None:
            try:
                parts.append(_handle_cpu_error(event, ev, now, isolation))
            except FieldError:
                logger.warning("Can't do CPU fault isolation!")

    ev.text = "".join(parts)
    return ev