"""Isolation of CPU cores that keep reporting hardware errors."""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Callable, Deque, Mapping, Optional, Union

logger = logging.getLogger(__name__)

SECOND_OF_MON = 30 * 24 * 60 * 60
SECOND_OF_DAY = 24 * 60 * 60
SECOND_OF_HOU = 60 * 60
SECOND_OF_MIN = 60

LIMIT_OF_CPU_THRESHOLD = 10000
INIT_OF_CPU_THRESHOLD = 18

ULONG_MAX = (1 << 64) - 1

NORMAL_UNITS: Mapping[str, int] = {"": 1}
CYCLE_UNITS: Mapping[str, int] = {
    "d": SECOND_OF_DAY,
    "h": SECOND_OF_HOU,
    "m": SECOND_OF_MIN,
    "s": 1,
}

DEFAULT_SYSFS_ROOT = "/sys/devices/system/cpu"


class CpuState(IntEnum):
    """State of a CPU core as seen through sysfs."""

    OFFLINE = 0
    ONLINE = 1
    OFFLINE_FAILED = 2
    UNKNOWN = 3

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]


_STATE_LABELS = {
    CpuState.OFFLINE: "offline",
    CpuState.ONLINE: "online",
    CpuState.OFFLINE_FAILED: "offline-failed",
    CpuState.UNKNOWN: "unknown",
}


class HandleResult(IntEnum):
    """Outcome of handling an error on a CPU."""

    FAILED = -1
    SUCCEED = 0
    NOTHING = 1


class ErrorType(IntEnum):
    """Whether an error was corrected or not."""

    CE = 1
    UCE = 2


@dataclass
class ErrorInfo:
    """Errors seen on one CPU at one moment."""

    nums: int
    time: int
    err_type: int


def parse_config_value(text: Optional[str], units: Mapping[str, int]) -> int:
    """Parse an unsigned decimal with an optional one-letter unit suffix.

    Raises ValueError when the text is empty, malformed, out of range or
    carries a unit the table does not know.
    """
    if not text:
        raise ValueError("empty value")

    digits = text
    unit = ""
    last = text[-1]
    if last.isascii() and last.isalpha():
        unit = last
        digits = text[:-1]
        if not digits:
            raise ValueError(f"no digits in {text!r}")

    value = 0
    for char in digits:
        if char not in "0123456789":
            raise ValueError(f"invalid number {text!r}")
        value = value * 10 + int(char)
        if value > ULONG_MAX:
            logger.error("%s is out of range: %d", text, ULONG_MAX)
            raise ValueError(f"{text!r} is out of range")

    if not unit:
        return value

    lowered = unit.lower()
    for name, multiplier in units.items():
        if name.lower() == lowered:
            if value > ULONG_MAX // multiplier:
                logger.error("%s is out of range: %d", text, ULONG_MAX)
                raise ValueError(f"{text!r} is out of range")
            return value * multiplier

    logger.error("Invalid unit %s", unit)
    raise ValueError(f"invalid unit {unit!r}")


@dataclass
class IsolationParam:
    """A tunable limit read from the environment."""

    name: str
    units: Mapping[str, int] = field(default_factory=lambda: dict(NORMAL_UNITS))
    value: int = 0
    limit: int = 0

    def configure(self, text: Optional[str]) -> bool:
        """Set the value from text, clamped to the limit; keep it if invalid."""
        try:
            value = parse_config_value(text, self.units)
        except ValueError:
            logger.error(
                "Invalid %s: %s! Use default value %d.", self.name, text, self.value
            )
            return False
        self.value = value
        if self.value > self.limit:
            logger.warning(
                "Value: %d exceed limit: %d, set to limit", self.value, self.limit
            )
            self.value = self.limit
        return True


@dataclass
class _CpuInfo:
    state: CpuState
    ce_nums: int = 0
    uce_nums: int = 0
    ce_queue: Deque[ErrorInfo] = field(default_factory=deque)

    def reset(self) -> None:
        self.ce_queue.clear()
        self.ce_nums = 0
        self.uce_nums = 0


def _online_processors() -> int:
    try:
        return os.sysconf("SC_NPROCESSORS_ONLN")
    except (ValueError, OSError, AttributeError):
        return os.cpu_count() or 1


class CpuIsolation:
    """Counts errors per CPU and takes failing CPUs offline."""

    def __init__(
        self,
        cpus: int,
        env: Optional[Mapping[str, str]] = None,
        sysfs_root: Union[str, Path] = DEFAULT_SYSFS_ROOT,
        online_count: Optional[Callable[[], int]] = None,
    ) -> None:
        self.env = os.environ if env is None else env
        self.sysfs_root = Path(sysfs_root)
        self.online_count = online_count or _online_processors
        self.ncores = cpus

        self.threshold = IsolationParam(
            "CPU_CE_THRESHOLD",
            dict(NORMAL_UNITS),
            INIT_OF_CPU_THRESHOLD,
            LIMIT_OF_CPU_THRESHOLD,
        )
        self.cpu_limit = IsolationParam(
            "CPU_ISOLATION_LIMIT",
            dict(NORMAL_UNITS),
            0,
            cpus - 1 if cpus > 0 else 0xFFFFFFFF,
        )
        self.cycle = IsolationParam(
            "CPU_ISOLATION_CYCLE", dict(CYCLE_UNITS), SECOND_OF_DAY, SECOND_OF_MON
        )

        self.infos = [_CpuInfo(state=self.cpu_status(cpu)) for cpu in range(cpus)]

        switch = self.env.get("CPU_ISOLATION_ENABLE")
        self.enabled = switch is not None and switch.lower() == "yes"
        if not self.enabled:
            logger.warning("Cpu fault isolation is disabled")
            return

        logger.info("Cpu fault isolation is enabled")
        for param in (self.threshold, self.cpu_limit, self.cycle):
            param.configure(self.env.get(param.name))

    def _online_path(self, cpu: int) -> Path:
        return self.sysfs_root / f"cpu{cpu}" / "online"

    def cpu_status(self, cpu: int) -> CpuState:
        """Read the online state of a CPU from sysfs."""
        path = self._online_path(cpu)
        try:
            with open(path, "rb") as handle:
                first = handle.read(1)
        except OSError:
            logger.error("open file: %s failed", path)
            return CpuState.UNKNOWN
        if not first or first not in b"0123456789":
            return CpuState.UNKNOWN
        num = int(first)
        return CpuState(num) if num <= CpuState.UNKNOWN else CpuState.UNKNOWN

    def _offline(self, cpu: int) -> HandleResult:
        info = self.infos[cpu]
        info.state = CpuState.OFFLINE_FAILED
        path = self._online_path(cpu)
        try:
            fd = os.open(path, os.O_RDWR)
        except OSError:
            logger.error("open file: %s failed", path)
            return HandleResult.FAILED
        try:
            os.write(fd, b"0")
        except OSError as exc:
            logger.error("cpu%d offline failed, errno:%d", cpu, exc.errno or 0)
            return HandleResult.FAILED
        finally:
            os.close(fd)

        info.state = self.cpu_status(cpu)
        if info.state == CpuState.OFFLINE:
            return HandleResult.SUCCEED
        return HandleResult.FAILED

    def _handle_ce(self, cpu: int) -> HandleResult:
        info = self.infos[cpu]
        queue = info.ce_queue
        # Only errors within one cycle of the newest one are counted.
        while queue and queue[-1].time - queue[0].time > self.cycle.value:
            info.ce_nums -= queue.popleft().nums
        logger.info(
            "Current number of Corrected Errors in cpu%d in the cycle is %d",
            cpu,
            info.ce_nums,
        )
        if info.ce_nums >= self.threshold.value:
            logger.info(
                "Corrected Errors exceeded threshold %d, try to offline cpu%d",
                self.threshold.value,
                cpu,
            )
            return self._offline(cpu)
        return HandleResult.NOTHING

    def _handle_uce(self, cpu: int) -> HandleResult:
        if self.infos[cpu].uce_nums > 0:
            logger.info("Uncorrected Errors occurred, try to offline cpu%d", cpu)
            return self._offline(cpu)
        return HandleResult.NOTHING

    def _record(self, cpu: int, info: ErrorInfo) -> None:
        cpu_info = self.infos[cpu]
        if info.err_type == ErrorType.CE:
            cpu_info.ce_queue.append(ErrorInfo(info.nums, info.time, info.err_type))
            cpu_info.ce_nums += info.nums
        elif info.err_type == ErrorType.UCE:
            cpu_info.uce_nums += 1

    def record_error(self, info: ErrorInfo, cpu: int) -> Optional[HandleResult]:
        """Account an error on a CPU; return what was done, or None if skipped."""
        if not self.enabled:
            return None

        if cpu < 0 or cpu >= self.ncores:
            logger.error(
                "The current cpu %d has exceed the total number of cpu:%d",
                cpu,
                self.ncores,
            )
            return None

        logger.info("Handling error on cpu%d", cpu)
        cpu_info = self.infos[cpu]
        cpu_info.state = self.cpu_status(cpu)
        if cpu_info.state != CpuState.ONLINE:
            logger.info("Cpu%d is not online or unknown, ignore", cpu)
            return None

        self._record(cpu, info)

        if self.ncores - self.online_count() >= self.cpu_limit.value:
            logger.warning(
                "Offlined cpus have exceeded limit: %d, choose to do nothing",
                self.cpu_limit.value,
            )
            return None

        if info.err_type == ErrorType.CE:
            result = self._handle_ce(cpu)
        elif info.err_type == ErrorType.UCE:
            result = self._handle_uce(cpu)
        else:
            result = HandleResult.NOTHING

        if result == HandleResult.NOTHING:
            logger.warning("Doing nothing in the cpu%d", cpu)
        elif result == HandleResult.SUCCEED:
            logger.info(
                "Offline cpu%d succeed, the state is %s", cpu, cpu_info.state.label
            )
            cpu_info.reset()
        else:
            logger.warning(
                "Offline cpu%d fail, the state is %s", cpu, cpu_info.state.label
            )
        return result