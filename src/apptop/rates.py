"""Turn pairs of cumulative counter snapshots into rates."""

from dataclasses import dataclass

from apptop.cpu import CpuTimes, ProcStat
from apptop.drive import DiskStats

# /sys/block/<dev>/stat counts sectors in 512-byte units regardless of hw_sector_size
SECTOR_UNIT = 512


@dataclass(slots=True, frozen=True)
class DiskThroughput:
    """I/O rates of one device between two samples."""

    device: str
    read_bytes_per_sec: float
    write_bytes_per_sec: float
    read_ios_per_sec: float
    write_ios_per_sec: float
    active_ratio: float  # fraction of wall time with I/O in flight, 0.0 - 1.0


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def busy_ratio(previous: CpuTimes, current: CpuTimes) -> float:
    """
    Fraction of the elapsed ticks a CPU spent non-idle, in [0, 1].

    Reports 0.0 when no ticks elapsed or the counters went backwards
    (reboot between samples, identical samples).
    """
    total_delta = current.total_time - previous.total_time
    if total_delta <= 0:
        return 0.0
    idle_delta = current.idle_time - previous.idle_time
    return _clamp(1.0 - idle_delta / total_delta)


def counter_rate(previous: float, current: float, elapsed: float) -> float:
    """Per-unit rate of a cumulative counter; 0.0 on a non-positive interval or a reset."""
    if elapsed <= 0:
        return 0.0
    delta = current - previous
    if delta < 0:
        return 0.0
    return delta / elapsed


def per_core_busy(previous: ProcStat, current: ProcStat) -> tuple[float, ...]:
    """Busy ratio of every core in ``current``; cores missing from ``previous`` report 0.0."""
    ratios = []
    for index, core in enumerate(current.cores):
        if index < len(previous.cores):
            ratios.append(busy_ratio(previous.cores[index], core))
        else:
            ratios.append(0.0)
    return tuple(ratios)


def disk_throughput(previous: DiskStats, current: DiskStats) -> DiskThroughput:
    """Compute read/write throughput of a device from two snapshots."""
    if previous.device != current.device:
        raise ValueError(f"cannot diff {previous.device} against {current.device}")

    elapsed = current.sampled_at - previous.sampled_at

    def rate(name: str) -> float:
        return counter_rate(previous[name], current[name], elapsed)

    # io_ticks is in milliseconds
    active = counter_rate(previous["io_ticks"], current["io_ticks"], elapsed * 1000.0)

    return DiskThroughput(
        device=current.device,
        read_bytes_per_sec=rate("read_sectors") * SECTOR_UNIT,
        write_bytes_per_sec=rate("write_sectors") * SECTOR_UNIT,
        read_ios_per_sec=rate("read_ios"),
        write_ios_per_sec=rate("write_ios"),
        active_ratio=_clamp(active),
    )
