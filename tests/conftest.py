"""Shared test fixtures for apptop."""

from pathlib import Path

import pytest

from apptop.cpu import CpuTimes
from apptop.drive import SYS_STAT_FIELDS
from apptop.models import ProcessRecord

CPU_LINE_TEMPLATE = "{label} {user} 0 {system} {idle} {iowait} 0 0 0 0 0"


def make_times(
    user: int = 0, system: int = 0, idle: int = 0, iowait: int = 0, **others: int
) -> CpuTimes:
    """Create CpuTimes with unspecified counters set to 0."""
    values = dict.fromkeys(
        ("nice", "irq", "softirq", "steal", "guest", "guest_nice"), 0
    )
    values.update(others)
    return CpuTimes(user=user, system=system, idle=idle, iowait=iowait, **values)


def make_record(
    pid: int,
    key: str | None = None,
    cpu_time: float | None = 0.0,
    memory_usage: int = 0,
    create_time: float = 1000.0,
    name: str = "proc",
) -> ProcessRecord:
    """Create a ProcessRecord for testing."""
    return ProcessRecord(
        pid=pid,
        ppid=1,
        name=name,
        cmdline=(f"/usr/bin/{name}",),
        create_time=create_time,
        cgroup=None,
        key=key,
        cpu_time=cpu_time,
        memory_usage=memory_usage,
    )


def write_proc_stat(path: Path, total: tuple[int, int], cores: list[tuple[int, int]]) -> None:
    """
    Write a minimal /proc/stat.

    ``total`` and each core are (busy user ticks, idle ticks).
    """
    lines = [CPU_LINE_TEMPLATE.format(label="cpu", user=total[0], system=0, idle=total[1], iowait=0)]
    for index, (busy, idle) in enumerate(cores):
        lines.append(
            CPU_LINE_TEMPLATE.format(label=f"cpu{index}", user=busy, system=0, idle=idle, iowait=0)
        )
    lines.append("intr 12345 0 0")
    lines.append("ctxt 6789")
    path.write_text("\n".join(lines) + "\n")


def write_disk(root: Path, device: str, values: dict[str, int], sector_size: int | None = 512) -> None:
    """Create /sys/block/<device>/stat (and queue/hw_sector_size) under ``root``."""
    dev_dir = root / device
    dev_dir.mkdir(parents=True, exist_ok=True)
    line = " ".join(f"{values.get(name, 0):>8}" for name in SYS_STAT_FIELDS)
    (dev_dir / "stat").write_text(line + "\n")
    if sector_size is not None:
        (dev_dir / "queue").mkdir(exist_ok=True)
        (dev_dir / "queue" / "hw_sector_size").write_text(f"{sector_size}\n")


@pytest.fixture
def proc_stat(tmp_path: Path) -> Path:
    """A /proc/stat with two cores."""
    path = tmp_path / "stat"
    write_proc_stat(path, total=(200, 800), cores=[(100, 400), (100, 400)])
    return path


@pytest.fixture
def sys_block(tmp_path: Path) -> Path:
    """An empty /sys/block directory."""
    root = tmp_path / "block"
    root.mkdir()
    return root
