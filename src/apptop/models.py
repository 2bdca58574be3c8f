"""Data models for apptop."""

from dataclasses import dataclass

SYSTEM_PROCESSES_NAME = "System Processes"


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable snapshot of one OS process as of the last scan."""

    pid: int
    ppid: int
    name: str
    cmdline: tuple[str, ...]
    create_time: float
    cgroup: str | None
    key: str | None  # grouping key, None for the system bucket
    cpu_time: float | None  # user + system seconds, None when unreadable
    memory_usage: int  # RSS bytes

    @property
    def identity(self) -> tuple[int, float]:
        """(pid, create_time) pair that survives pid reuse."""
        return (self.pid, self.create_time)


@dataclass(slots=True, frozen=True)
class Application:
    """A group of processes sharing a grouping key."""

    id: int
    key: str | None
    display_name: str
    icon: str
    description: str | None
    processes: tuple[ProcessRecord, ...]

    @property
    def pids(self) -> frozenset[int]:
        """Process ids owned by this application."""
        return frozenset(proc.pid for proc in self.processes)

    @property
    def is_system(self) -> bool:
        """True for the bucket of processes not attributed to any application."""
        return self.key is None

    @property
    def memory_usage(self) -> int:
        """Resident memory of all owned processes in bytes."""
        return sum(proc.memory_usage for proc in self.processes)


@dataclass(slots=True, frozen=True)
class ApplicationSummary:
    """What the presentation layer gets to see of an Application."""

    id: int
    key: str | None
    display_name: str
    icon: str
    description: str | None
    memory_usage: int  # bytes
    cpu_time_ratio: float  # 0.0 - 1.0 of the whole machine
    processes_amount: int

    @property
    def is_system(self) -> bool:
        """True for the system processes bucket."""
        return self.key is None
