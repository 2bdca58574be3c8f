"""Group OS processes into applications and track their resource usage."""

import itertools
import os
from collections.abc import Callable, Iterable
from pathlib import Path

import psutil
import structlog

from apptop.cpu import CpuTimes, get_cpu_times
from apptop.errors import SourceUnreadableError, VanishedEntityError
from apptop.models import SYSTEM_PROCESSES_NAME, Application, ApplicationSummary, ProcessRecord

log = structlog.get_logger()

PROC = Path("/proc")

SYSTEM_PROCESSES_ICON = "system-processes"

# Attributes fetched for every process in one process_iter() pass
SCAN_ATTRS = [
    "pid",
    "ppid",
    "name",
    "cmdline",
    "create_time",
    "cpu_times",
    "memory_info",
]

_UNIT_SUFFIXES = ("scope", "service", "slice")


def _unescape_unit(name: str) -> str:
    """Undo systemd's ``\\x2d`` style escaping of unit names."""
    if "\\x" not in name:
        return name
    out = []
    i = 0
    while i < len(name):
        chunk = name[i : i + 4]
        if len(chunk) == 4 and chunk.startswith("\\x"):
            try:
                out.append(chr(int(chunk[2:], 16)))
                i += 4
                continue
            except ValueError:
                pass
        out.append(name[i])
        i += 1
    return "".join(out)


def _is_hex(value: str) -> bool:
    return bool(value) and all(c in "0123456789abcdefABCDEF" for c in value)


def _unit_app_id(unit: str) -> str | None:
    """
    Extract an application id from a single cgroup path component.

    Understands the XDG naming scheme systemd uses for desktop apps:

        app[-<launcher>]-<app id>-<random>.scope
        app[-<launcher>]-<app id>[@<random>].service
        app[-<launcher>]-<app id>.slice

    and snap scopes (``snap.<name>.<app>-<uuid>.scope``).
    """
    if unit.startswith("snap.") and unit.endswith(".scope"):
        parts = unit.split(".")
        if len(parts) >= 4 and parts[1]:
            return f"snap.{parts[1]}"
        return None

    if not unit.startswith("app-"):
        return None

    body, dot, suffix = unit[len("app-") :].rpartition(".")
    if not dot or suffix not in _UNIT_SUFFIXES:
        return None

    if suffix == "service":
        body = body.partition("@")[0]
    elif suffix == "scope":
        head, dash, tail = body.rpartition("-")
        if dash and head and _is_hex(tail):
            body = head

    # a literal dash separates the launcher, dashes inside the id are escaped
    launcher, dash, app_id = body.partition("-")
    if not dash:
        app_id = launcher
    app_id = _unescape_unit(app_id)

    if app_id.startswith("dbus-:"):
        # app-dbus-:1.2-org.example.Service.slice
        app_id = app_id[len("dbus-:") :].partition("-")[2]

    return app_id or None


def app_key_from_cgroup(cgroup: str | None) -> str | None:
    """
    Derive the grouping key of a process from the contents of /proc/<pid>/cgroup.

    The innermost path component that names an application wins. Processes
    outside any application unit (kernel threads, system services) get None.
    """
    if not cgroup:
        return None

    # cgroup v2 unified line first, then the v1 systemd hierarchy
    paths: dict[str, str] = {}
    for line in cgroup.splitlines():
        hierarchy, _, rest = line.partition(":")
        controllers, _, line_path = rest.partition(":")
        if hierarchy == "0" and not controllers:
            paths.setdefault("unified", line_path)
        elif controllers == "name=systemd":
            paths.setdefault("systemd", line_path)
        else:
            paths.setdefault("other", line_path)
    path = paths.get("unified") or paths.get("systemd") or paths.get("other", "")

    for component in reversed(path.split("/")):
        app_id = _unit_app_id(component)
        if app_id:
            return app_id
    return None


def display_name_for(key: str | None) -> str:
    """Human readable name for a grouping key."""
    if key is None:
        return SYSTEM_PROCESSES_NAME
    return key.rsplit(".", 1)[-1] or key


def read_cgroup(pid: int, proc_root: Path = PROC) -> str | None:
    """
    Read /proc/<pid>/cgroup.

    Returns None when access is denied, raises VanishedEntityError when the
    process is gone.
    """
    try:
        return (proc_root / str(pid) / "cgroup").read_text(encoding="utf-8", errors="replace")
    except (FileNotFoundError, ProcessLookupError) as exc:
        raise VanishedEntityError(f"process {pid} is gone") from exc
    except PermissionError:
        return None


def scan_processes(
    proc_root: Path = PROC,
    key_func: Callable[[str | None], str | None] = app_key_from_cgroup,
) -> list[ProcessRecord]:
    """
    Take a ProcessRecord of every running process.

    Processes that exit mid-scan are dropped. Counters that cannot be read
    (access denied) degrade to None for CPU time and 0 for memory.
    """
    records: list[ProcessRecord] = []

    for proc in psutil.process_iter(attrs=SCAN_ATTRS, ad_value=None):
        try:
            info = proc.info
            cgroup = read_cgroup(info["pid"], proc_root)
        except (VanishedEntityError, psutil.NoSuchProcess):
            continue

        cpu_times = info.get("cpu_times")
        cpu_time = cpu_times.user + cpu_times.system if cpu_times else None
        mem_info = info.get("memory_info")

        records.append(
            ProcessRecord(
                pid=info["pid"],
                ppid=info.get("ppid") or 0,
                name=info.get("name") or "",
                cmdline=tuple(info.get("cmdline") or ()),
                create_time=info.get("create_time") or 0.0,
                cgroup=cgroup,
                key=key_func(cgroup),
                cpu_time=cpu_time,
                memory_usage=mem_info.rss if mem_info else 0,
            )
        )

    return records


class Apps:
    """
    Process/application aggregator.

    Every refresh replaces the application map, the summary tuple and the
    per-process CPU baseline as a whole; nothing handed out is mutated later.
    """

    def __init__(
        self,
        process_source: Callable[[], Iterable[ProcessRecord]] = scan_processes,
        cpu_source: Callable[[], CpuTimes] = get_cpu_times,
        clock_ticks: int | None = None,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            process_source: Returns the current ProcessRecords.
            cpu_source: Returns the aggregate /proc/stat counters.
            clock_ticks: Kernel ticks per second (USER_HZ). Read from sysconf by default.
        """
        self._process_source = process_source
        self._cpu_source = cpu_source
        self._clock_ticks = clock_ticks or os.sysconf("SC_CLK_TCK")
        self._id_counter = itertools.count(1)
        self._key_ids: dict[str | None, int] = {}
        self._apps: dict[int, Application] = {}
        self._summaries: tuple[ApplicationSummary, ...] = ()
        self._baseline: dict[tuple[int, float], float] = {}
        self._previous_total: CpuTimes | None = None

    @property
    def apps(self) -> dict[int, Application]:
        """Applications of the last enumeration, keyed by id."""
        return self._apps

    def simple(self) -> tuple[ApplicationSummary, ...]:
        """Summaries published by the last successful refresh."""
        return self._summaries

    def get(self, app_id: int | None) -> Application | None:
        """Look up an application of the last refresh by id."""
        if app_id is None:
            return None
        return self._apps.get(app_id)

    def find_by_key(self, key: str | None) -> Application | None:
        """Look up an application of the last refresh by grouping key."""
        app_id = self._key_ids.get(key)
        return self.get(app_id)

    def enumerate(self) -> dict[int, Application]:
        """
        Scan all running processes and group them by key.

        Ids of keys that are still present are kept; keys that disappeared
        lose their id, so a returning application gets a new one.
        """
        try:
            records = list(self._process_source())
        except (OSError, psutil.Error) as exc:
            raise SourceUnreadableError(f"unable to enumerate processes: {exc}") from exc

        groups: dict[str | None, list[ProcessRecord]] = {}
        for record in records:
            groups.setdefault(record.key, []).append(record)

        key_ids: dict[str | None, int] = {}
        apps: dict[int, Application] = {}
        for key, processes in groups.items():
            app_id = self._key_ids.get(key)
            if app_id is None:
                app_id = next(self._id_counter)
                log.debug("application_appeared", key=key, id=app_id)
            key_ids[key] = app_id
            apps[app_id] = Application(
                id=app_id,
                key=key,
                display_name=display_name_for(key),
                icon=key if key is not None else SYSTEM_PROCESSES_ICON,
                description=None,
                processes=tuple(processes),
            )

        self._key_ids = key_ids
        self._apps = apps
        return apps

    def refresh(self, total: CpuTimes | None = None) -> tuple[ApplicationSummary, ...]:
        """
        Re-enumerate and recompute per-application CPU and memory usage.

        CPU usage is the share of all CPU time that elapsed since the previous
        refresh. Processes without a baseline from that refresh contribute
        nothing for this cycle.

        Args:
            total: Aggregate CPU counters of this cycle. Read from the
                cpu source when not given.

        Raises:
            SamplingError: if /proc/stat or the process list cannot be read.
        """
        if total is None:
            total = self._cpu_source()
        apps = self.enumerate()

        elapsed = 0.0
        if self._previous_total is not None:
            elapsed = (total.total_time - self._previous_total.total_time) / self._clock_ticks

        summaries = []
        for app in apps.values():
            summaries.append(
                ApplicationSummary(
                    id=app.id,
                    key=app.key,
                    display_name=app.display_name,
                    icon=app.icon,
                    description=app.description,
                    memory_usage=app.memory_usage,
                    cpu_time_ratio=self._cpu_time_ratio(app, elapsed),
                    processes_amount=len(app.processes),
                )
            )
        summaries.sort(key=lambda item: (item.display_name.casefold(), item.id))

        self._baseline = {
            proc.identity: proc.cpu_time
            for app in apps.values()
            for proc in app.processes
            if proc.cpu_time is not None
        }
        self._previous_total = total
        self._summaries = tuple(summaries)
        return self._summaries

    def _cpu_time_ratio(self, app: Application, elapsed: float) -> float:
        """CPU seconds used by ``app`` since the baseline, over ``elapsed`` system seconds."""
        if elapsed <= 0:
            return 0.0

        used = 0.0
        for proc in app.processes:
            if proc.cpu_time is None:
                continue
            before = self._baseline.get(proc.identity)
            if before is None:
                continue
            used += max(proc.cpu_time - before, 0.0)

        return min(used / elapsed, 1.0)
