"""CPU counter readers: /proc/stat, scaling frequency and lscpu topology."""

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from apptop.errors import (
    CoreIndexError,
    MalformedDataError,
    SourceUnreadableError,
    VanishedEntityError,
)

log = structlog.get_logger()

PROC_STAT = Path("/proc/stat")
SYS_CPU = Path("/sys/devices/system/cpu")

CPU_TIME_FIELDS = (
    "user",
    "nice",
    "system",
    "idle",
    "iowait",
    "irq",
    "softirq",
    "steal",
    "guest",
    "guest_nice",
)


@dataclass(slots=True, frozen=True)
class CpuTimes:
    """Cumulative tick counters of one /proc/stat cpu line."""

    user: int
    nice: int
    system: int
    idle: int
    iowait: int
    irq: int
    softirq: int
    steal: int
    guest: int
    guest_nice: int

    @property
    def idle_time(self) -> int:
        """Ticks spent idle, including time waiting on I/O."""
        return self.idle + self.iowait

    @property
    def total_time(self) -> int:
        """Sum of all ten counters."""
        return (
            self.user
            + self.nice
            + self.system
            + self.idle
            + self.iowait
            + self.irq
            + self.softirq
            + self.steal
            + self.guest
            + self.guest_nice
        )


@dataclass(slots=True, frozen=True)
class ProcStat:
    """One atomic read of the cpu lines in /proc/stat."""

    total: CpuTimes
    cores: tuple[CpuTimes, ...]
    sampled_at: float  # time.monotonic()


@dataclass(slots=True, frozen=True)
class CpuInfo:
    """Static CPU topology as reported by lscpu. Every field is optional."""

    vendor_id: str | None = None
    model_name: str | None = None
    architecture: str | None = None
    logical_cpus: int | None = None
    physical_cpus: int | None = None
    sockets: int | None = None
    virtualization: str | None = None
    max_speed: float | None = None  # Hz


def parse_proc_stat_line(line: str) -> CpuTimes:
    """
    Parse a single ``cpu``/``cpuN`` line from /proc/stat.

    Raises:
        MalformedDataError: if the label is wrong or any of the ten
            counters is missing or not an unsigned integer.
    """
    parts = line.split()
    if not parts or not parts[0].startswith("cpu"):
        raise MalformedDataError(f"not a /proc/stat cpu line: {line!r}")

    values = parts[1:]
    if len(values) < len(CPU_TIME_FIELDS):
        missing = CPU_TIME_FIELDS[len(values)]
        raise MalformedDataError(f"unable to get {missing} time from {parts[0]!r}")

    counters: dict[str, int] = {}
    for name, raw in zip(CPU_TIME_FIELDS, values):
        if not (raw.isascii() and raw.isdigit()):
            raise MalformedDataError(f"unable to parse {name} time {raw!r} in {parts[0]!r}")
        counters[name] = int(raw)

    return CpuTimes(**counters)


def _read_cpu_lines(path: Path) -> list[str]:
    """Read /proc/stat and return only the lines describing CPUs."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SourceUnreadableError(f"unable to read {path}") from exc
    return [line for line in text.splitlines() if line.startswith("cpu")]


def read_proc_stat(path: Path = PROC_STAT) -> ProcStat:
    """Read the aggregate and per-core counters from a single read of /proc/stat."""
    lines = _read_cpu_lines(path)
    if not lines:
        raise MalformedDataError(f"no cpu lines in {path}")

    parsed = [parse_proc_stat_line(line) for line in lines]
    return ProcStat(total=parsed[0], cores=tuple(parsed[1:]), sampled_at=time.monotonic())


def get_cpu_times(core: int | None = None, path: Path = PROC_STAT) -> CpuTimes:
    """
    Return the counters of all cores combined, or of ``core`` (starting at 0).

    The combined line is the first ``cpu`` line, core N is on line N + 1.
    """
    lines = _read_cpu_lines(path)
    line_number = 0 if core is None else core + 1
    if (core is not None and core < 0) or line_number >= len(lines):
        raise CoreIndexError(f"core {core} out of range, {max(len(lines) - 1, 0)} cores reported")
    return parse_proc_stat_line(lines[line_number])


def get_cpu_usage(core: int | None = None, path: Path = PROC_STAT) -> tuple[int, int]:
    """
    Return ``(idle_time, total_time)`` since boot for all cores or one core.

    These are cumulative values; rates need two samples, see ``apptop.rates``.
    """
    times = get_cpu_times(core, path)
    return times.idle_time, times.total_time


def get_cpu_freq(core: int, root: Path = SYS_CPU) -> int:
    """Return the current frequency of ``core`` in Hz."""
    path = root / f"cpu{core}" / "cpufreq" / "scaling_cur_freq"
    try:
        raw = path.read_text(encoding="utf-8", errors="replace").strip()
    except FileNotFoundError as exc:
        raise VanishedEntityError(f"no scaling_cur_freq for core {core}") from exc
    except OSError as exc:
        raise SourceUnreadableError(f"unable to read scaling_cur_freq for core {core}") from exc

    if not (raw.isascii() and raw.isdigit()):
        raise MalformedDataError(f"can't parse scaling_cur_freq {raw!r} for core {core}")
    return int(raw) * 1000


def _parse_count(value: str | None) -> int | None:
    """Parse an lscpu count, returning None for absent or odd values."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def parse_lscpu(output: str) -> CpuInfo:
    """Parse ``lscpu`` key/value output (run with ``LC_ALL=C``) into a CpuInfo."""
    fields: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        # first occurrence wins; lscpu repeats some keys in cache sections
        fields.setdefault(key.strip(), value.strip())

    sockets = _parse_count(fields.get("Socket(s)"))
    cores_per_socket = _parse_count(fields.get("Core(s) per socket"))
    physical_cpus = None
    if cores_per_socket is not None:
        physical_cpus = cores_per_socket * (sockets or 1)

    max_speed = None
    if "CPU max MHz" in fields:
        try:
            max_speed = float(fields["CPU max MHz"]) * 1_000_000.0
        except ValueError:
            max_speed = None

    return CpuInfo(
        vendor_id=fields.get("Vendor ID") or None,
        model_name=fields.get("Model name") or None,
        architecture=fields.get("Architecture") or None,
        logical_cpus=_parse_count(fields.get("CPU(s)")),
        physical_cpus=physical_cpus,
        sockets=sockets,
        virtualization=fields.get("Virtualization") or None,
        max_speed=max_speed,
    )


def cpu_info(command: str = "lscpu", timeout: float = 5.0) -> CpuInfo:
    """
    Run lscpu and return the parsed topology.

    Raises:
        SourceUnreadableError: if lscpu is not installed, times out or fails.
    """
    env = dict(os.environ, LC_ALL="C")
    try:
        result = subprocess.run(
            [command],
            capture_output=True,
            text=True,
            env=env,
            timeout=timeout,
            check=True,
        )
    except FileNotFoundError as exc:
        raise SourceUnreadableError("unable to run lscpu, is util-linux installed?") from exc
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        raise SourceUnreadableError(f"lscpu failed: {exc}") from exc

    info = parse_lscpu(result.stdout)
    log.debug("cpu_info_read", model=info.model_name, logical_cpus=info.logical_cpus)
    return info
