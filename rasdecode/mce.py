"""Machine check exception CPU detection and report formatting."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .events import _to_signed, format_timestamp

logger = logging.getLogger(__name__)

MCE_EXTENDED_BANK = 128

MCI_THRESHOLD_OVER = 1 << 48

MCI_STATUS_VAL = 1 << 63
MCI_STATUS_OVER = 1 << 62
MCI_STATUS_UC = 1 << 61
MCI_STATUS_EN = 1 << 60
MCI_STATUS_MISCV = 1 << 59
MCI_STATUS_ADDRV = 1 << 58
MCI_STATUS_PCC = 1 << 57
MCI_STATUS_S = 1 << 56
MCI_STATUS_AR = 1 << 55

MCI_STATUS_TCC = 1 << 55
MCI_STATUS_SYNDV = 1 << 53
MCI_STATUS_DEFERRED = 1 << 44
MCI_STATUS_POISON = 1 << 43

MCG_STATUS_RIPV = 1 << 0
MCG_STATUS_EIPV = 1 << 1
MCG_STATUS_MCIP = 1 << 2
MCG_STATUS_LMCE = 1 << 3


class CpuType(IntEnum):
    """CPU families whose machine checks are decoded differently."""

    GENERIC = 0
    P6OLD = 1
    CORE2 = 2
    K8 = 3
    P4 = 4
    NEHALEM = 5
    DUNNINGTON = 6
    TULSA = 7
    INTEL = 8
    XEON75XX = 9
    SANDY_BRIDGE = 10
    SANDY_BRIDGE_EP = 11
    IVY_BRIDGE = 12
    IVY_BRIDGE_EPEX = 13
    HASWELL = 14
    HASWELL_EPEX = 15
    BROADWELL = 16
    BROADWELL_DE = 17
    BROADWELL_EPEX = 18
    KNIGHTS_LANDING = 19
    KNIGHTS_MILL = 20
    SKYLAKE_XEON = 21
    AMD_SMCA = 22
    DHYANA = 23
    ICELAKE_XEON = 24
    ICELAKE_DE = 25
    TREMONT_D = 26
    SAPPHIRERAPIDS = 27
    EMERALDRAPIDS = 28


_CPUTYPE_NAMES = {
    CpuType.GENERIC: "generic CPU",
    CpuType.P6OLD: "Intel PPro/P2/P3/old Xeon",
    CpuType.CORE2: "Intel Core",
    CpuType.K8: "AMD K8 and derivates",
    CpuType.P4: "Intel P4",
    CpuType.NEHALEM: 'Intel Xeon 5500 series / Core i3/5/7 ("Nehalem/Westmere")',
    CpuType.DUNNINGTON: "Intel Xeon 7400 series",
    CpuType.TULSA: "Intel Xeon 7100 series",
    CpuType.INTEL: "Intel generic architectural MCA",
    CpuType.XEON75XX: "Intel Xeon 7500 series",
    CpuType.SANDY_BRIDGE: "Sandy Bridge",
    CpuType.SANDY_BRIDGE_EP: "Sandy Bridge EP",
    CpuType.IVY_BRIDGE: "Ivy Bridge",
    CpuType.IVY_BRIDGE_EPEX: "Ivy Bridge EP/EX",
    CpuType.HASWELL: "Haswell",
    CpuType.HASWELL_EPEX: "Intel Xeon v3 (Haswell) EP/EX",
    CpuType.BROADWELL: "Broadwell",
    CpuType.BROADWELL_DE: "Broadwell DE",
    CpuType.BROADWELL_EPEX: "Broadwell EP/EX",
    CpuType.KNIGHTS_LANDING: "Knights Landing",
    CpuType.KNIGHTS_MILL: "Knights Mill",
    CpuType.SKYLAKE_XEON: "Skylake server",
    CpuType.AMD_SMCA: "AMD Scalable MCA",
    CpuType.DHYANA: "Hygon Family 18h Moksha",
    CpuType.ICELAKE_XEON: "Icelake server",
    CpuType.ICELAKE_DE: "Icelake server D Family",
    CpuType.TREMONT_D: "Tremont microserver",
    CpuType.SAPPHIRERAPIDS: "Sapphirerapids server",
    CpuType.EMERALDRAPIDS: "Emeraldrapids server",
}

# Family 6 models with a specific decoder, in the order they are checked.
_FAMILY6_MODELS = {
    0x0F: CpuType.CORE2,
    0x17: CpuType.CORE2,
    0x1D: CpuType.DUNNINGTON,
    0x1A: CpuType.NEHALEM,
    0x2C: CpuType.NEHALEM,
    0x1E: CpuType.NEHALEM,
    0x25: CpuType.NEHALEM,
    0x2E: CpuType.XEON75XX,
    0x2F: CpuType.XEON75XX,
    0x2A: CpuType.SANDY_BRIDGE,
    0x2D: CpuType.SANDY_BRIDGE_EP,
    0x3A: CpuType.IVY_BRIDGE,
    0x3E: CpuType.IVY_BRIDGE_EPEX,
    0x3C: CpuType.HASWELL,
    0x45: CpuType.HASWELL,
    0x46: CpuType.HASWELL,
    0x3F: CpuType.HASWELL_EPEX,
    0x56: CpuType.BROADWELL_DE,
    0x4F: CpuType.BROADWELL_EPEX,
    0x3D: CpuType.BROADWELL,
    0x57: CpuType.KNIGHTS_LANDING,
    0x85: CpuType.KNIGHTS_MILL,
    0x55: CpuType.SKYLAKE_XEON,
    0x6A: CpuType.ICELAKE_XEON,
    0x6C: CpuType.ICELAKE_DE,
    0x86: CpuType.TREMONT_D,
    0x8F: CpuType.SAPPHIRERAPIDS,
    0xCF: CpuType.EMERALDRAPIDS,
}


@dataclass
class CpuInfo:
    """What /proc/cpuinfo tells about the processor."""

    vendor: str = ""
    family: int = 0
    model: int = 0
    mhz: float = 0.0
    cputype: CpuType = CpuType.GENERIC
    mc_error_support: bool = False
    processor_flags: str = ""


@dataclass
class MceEvent:
    """A machine check record and the messages decoded from it."""

    mcgcap: int = 0
    mcgstatus: int = 0
    status: int = 0
    addr: int = 0
    misc: int = 0
    ip: int = 0
    tsc: int = 0
    walltime: int = 0
    cpu: int = 0
    cpuid: int = 0
    apicid: int = 0
    socketid: int = 0
    cs: int = 0
    bank: int = 0
    cpuvendor: int = 0
    synd: int = 0
    ipid: int = 0
    ppin: int = 0
    microcode: int = 0
    vdata: bytes = b""
    frutext: str = ""
    timestamp: str = ""
    bank_name: str = ""
    error_msg: str = ""
    mcgstatus_msg: str = ""
    mcistatus_msg: str = ""
    mcastatus_msg: str = ""
    user_action: str = ""
    mc_location: str = ""


def cputype_name(cputype: int) -> str:
    """Return the human-readable name of a CPU type."""
    return _CPUTYPE_NAMES[CpuType(cputype)]


def select_intel_cputype(info: CpuInfo) -> CpuType:
    """Pick the decoder for an Intel CPU; may set info.mc_error_support."""
    family, model = info.family, info.model
    if family == 15:
        return CpuType.TULSA if model == 6 else CpuType.P4
    if family == 6:
        if model >= 0x1A and model != 28:
            info.mc_error_support = True
        if model < 0xF:
            return CpuType.P6OLD
        if model in _FAMILY6_MODELS:
            return _FAMILY6_MODELS[model]
        if model > 0x1A:
            logger.info(
                "Family 6 Model %x CPU: only decoding architectural errors", model
            )
            return CpuType.INTEL
    if family > 6:
        logger.info(
            "Family %u Model %x CPU: only decoding architectural errors",
            family,
            model,
        )
        return CpuType.INTEL
    logger.info("Unknown Intel CPU type Family %x Model %x", family, model)
    return CpuType.P6OLD if family == 6 else CpuType.GENERIC


_SEEN_VENDOR = 1
_SEEN_FAMILY = 2
_SEEN_MODEL = 4
_SEEN_MHZ = 8
_SEEN_FLAGS = 16
_SEEN_ALL = 0x1F

_VENDOR_RE = re.compile(r"vendor_id\s*:\s*([^\n]{1,63})")
_FAMILY_RE = re.compile(r"cpu\s*family\s*:\s*([+-]?\d+)")
_MODEL_RE = re.compile(r"model\s*:\s*([+-]?\d+)")
_MHZ_RE = re.compile(
    r"cpu\s*MHz\s*:\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
)


def detect_cpu(cpuinfo_text: str) -> CpuInfo:
    """Identify the CPU from the text of /proc/cpuinfo.

    Raises LookupError when no x86 CPU is described and ValueError when the
    description is incomplete or the CPU is not supported.
    """
    info = CpuInfo()
    seen = 0
    for line in cpuinfo_text.splitlines(keepends=True):
        if seen == _SEEN_ALL:
            break
        if match := _VENDOR_RE.match(line):
            info.vendor = match.group(1)
            seen |= _SEEN_VENDOR
        elif match := _FAMILY_RE.match(line):
            info.family = int(match.group(1))
            seen |= _SEEN_FAMILY
        elif match := _MODEL_RE.match(line):
            info.model = int(match.group(1))
            seen |= _SEEN_MODEL
        elif match := _MHZ_RE.match(line):
            info.mhz = float(match.group(1))
            seen |= _SEEN_MHZ
        elif line.startswith("flags") and len(line) > 6 and line[6].isspace():
            info.processor_flags = line.rstrip("\n")
            seen |= _SEEN_FLAGS

    if not seen:
        logger.info(
            "Can't find a x86 CPU at /proc/cpuinfo. Disabling MCE handler."
        )
        raise LookupError("no x86 CPU found in cpuinfo")

    if seen != _SEEN_ALL:
        missing = "".join(
            label
            for bit, label in (
                (_SEEN_VENDOR, " [vendor_id]"),
                (_SEEN_FAMILY, " [cpu family]"),
                (_SEEN_MODEL, " [model]"),
                (_SEEN_MHZ, " [cpu MHz]"),
                (_SEEN_FLAGS, " [flags]"),
            )
            if not seen & bit
        )
        logger.info("Can't parse /proc/cpuinfo: missing%s", missing)
        raise ValueError(f"can't parse cpuinfo: missing{missing}")

    if info.vendor == "AuthenticAMD":
        if info.family == 15:
            info.cputype = CpuType.K8
        if "smca" in info.processor_flags:
            info.cputype = CpuType.AMD_SMCA
            return info
        if info.family > 25:
            logger.info("Can't parse MCE for this AMD CPU yet %d", info.family)
            raise ValueError(f"unsupported AMD CPU family {info.family}")
        return info
    if info.vendor == "HygonGenuine":
        if info.family == 24:
            info.cputype = CpuType.DHYANA
        return info
    if info.vendor == "GenuineIntel":
        info.cputype = select_intel_cputype(info)
        return info
    raise ValueError(f"unsupported CPU vendor {info.vendor!r}")


def _now_timestamp(timestamp: Optional[str]) -> str:
    return format_timestamp(time.time()) if timestamp is None else timestamp


def format_mce_event(
    event: MceEvent, cputype: int, timestamp: Optional[str] = None
) -> str:
    """Describe a decoded machine check on one line."""
    e = event
    parts = [f"{_now_timestamp(timestamp)} "]
    parts.append(e.bank_name if e.bank_name else f"bank={e.bank:x}")
    parts.append(f", status= {e.status:x}")
    if e.error_msg:
        parts.append(f", {e.error_msg}")
    if e.mcistatus_msg:
        parts.append(f", mci={e.mcistatus_msg}")
    if e.mcastatus_msg:
        parts.append(f", mca={e.mcastatus_msg}")
    if e.user_action:
        parts.append(f" {e.user_action}")
    if e.mc_location:
        parts.append(f", {e.mc_location}")

    parts.append(f", cpu_type= {cputype_name(cputype)}")
    parts.append(f", cpu= {_to_signed(e.cpu, 32)}")
    parts.append(f", socketid= {_to_signed(e.socketid, 32)}")

    if e.ip:
        inexact = "" if e.mcgstatus & MCG_STATUS_EIPV else " (INEXACT)"
        parts.append(f", ip= {e.ip:x}{inexact}")
    if e.cs:
        parts.append(f", cs= {e.cs:x}")
    if e.status & MCI_STATUS_MISCV:
        parts.append(f", misc= {e.misc:x}")
    if e.status & MCI_STATUS_ADDRV:
        parts.append(f", addr= {e.addr:x}")
    if e.status & MCI_STATUS_SYNDV:
        parts.append(f", synd= {e.synd:x}")
    if e.ipid:
        parts.append(f", ipid= {e.ipid:x}")

    if e.mcgstatus_msg:
        parts.append(f", {e.mcgstatus_msg}")
    else:
        parts.append(f", mcgstatus= {e.mcgstatus:x}")
    if e.mcgcap:
        parts.append(f", mcgcap= {e.mcgcap:x}")

    parts.append(f", apicid= {e.apicid:x}")
    if e.ppin:
        parts.append(f", ppin= {e.ppin:x}")
    if e.microcode:
        parts.append(f", microcode= {e.microcode:x}")

    if e.vdata and e.frutext:
        parts.append(f", FRU Text= {e.frutext}")
    return "".join(parts)


def format_offline_report(event: MceEvent, timestamp: Optional[str] = None) -> str:
    """Describe a machine check decoded from saved registers."""
    e = event
    parts = [f"{_now_timestamp(timestamp)},"]
    parts.append(f" {e.bank_name}," if e.bank_name else f" bank={e.bank:x},")
    if e.mcastatus_msg:
        parts.append(f" mca: {e.mcastatus_msg},")
    if e.mcistatus_msg:
        parts.append(f" mci: {e.mcistatus_msg},")
    if e.mc_location:
        parts.append(f" Locn: {e.mc_location},")
    if e.error_msg:
        parts.append(f" Error Msg: {e.error_msg}\n")
    return "".join(parts)