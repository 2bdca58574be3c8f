"""Refresh orchestration for apptop."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from queue import Queue

import structlog

from apptop.apps import Apps
from apptop.cpu import PROC_STAT, SYS_CPU, CpuInfo, ProcStat, cpu_info, get_cpu_freq, read_proc_stat
from apptop.drive import SYS_BLOCK, DiskStats, list_block_devices, read_disk_stats
from apptop.errors import SamplingError, VanishedEntityError
from apptop.models import Application, ApplicationSummary
from apptop.rates import DiskThroughput, busy_ratio, disk_throughput, per_core_busy
from apptop.signals import DispatchOutcome, ProcessAction, execute_action

log = structlog.get_logger()


class RefreshState(Enum):
    """Where the orchestrator is in its cycle."""

    IDLE = "idle"
    SAMPLING = "sampling"
    AGGREGATING = "aggregating"
    PUBLISHED = "published"


@dataclass(slots=True, frozen=True)
class MonitorSnapshot:
    """Everything one refresh cycle publishes."""

    sequence: int
    sampled_at: float  # time.time()
    applications: tuple[ApplicationSummary, ...]
    selected_id: int | None
    cpu_usage: float  # 0.0 - 1.0, all cores
    cpu_usage_per_core: tuple[float, ...]
    cpu_frequencies: tuple[int | None, ...]  # Hz
    disks: tuple[DiskThroughput, ...]

    @property
    def selected(self) -> ApplicationSummary | None:
        """The summary of the selected application, if any."""
        for item in self.applications:
            if item.id == self.selected_id:
                return item
        return None


class SystemMonitor:
    """
    Periodically refreshes application and counter data.

    Runs in a separate daemon thread and pushes a MonitorSnapshot to a
    thread-safe Queue after every successful cycle. A failed cycle is
    skipped and the previously published snapshot stays current.
    """

    def __init__(
        self,
        update_queue: Queue[MonitorSnapshot],
        poll_rate: float = 2.0,
        apps: Apps | None = None,
        disks: list[str] | None = None,
        include_virtual_disks: bool = False,
        proc_stat_path: Path = PROC_STAT,
        sys_block: Path = SYS_BLOCK,
        sys_cpu: Path = SYS_CPU,
        topology_source: Callable[[], CpuInfo] = cpu_info,
        on_selection_change: Callable[[int | None], None] | None = None,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue to push snapshots to.
            poll_rate: Seconds between refresh cycles. Default 2.0s.
            apps: Aggregator to use; a default one reads /proc.
            disks: Devices to sample. None or empty discovers /sys/block.
            include_virtual_disks: Also sample loop/ram/zram when discovering.
            proc_stat_path: Location of /proc/stat.
            sys_block: Location of /sys/block.
            sys_cpu: Location of /sys/devices/system/cpu.
            topology_source: Returns the CPU topology; called at most once.
            on_selection_change: Called with the new id when a refresh changes
                the selection (the selected application exited).
        """
        self._queue = update_queue
        self._poll_rate = max(0.1, poll_rate)
        self._proc_stat_path = proc_stat_path
        self._apps = apps or Apps()
        self._disks = list(disks or [])
        self._include_virtual_disks = include_virtual_disks
        self._sys_block = sys_block
        self._sys_cpu = sys_cpu
        self._topology_source = topology_source
        self._on_selection_change = on_selection_change

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._refresh_lock = threading.Lock()
        self._selection_lock = threading.Lock()

        self._state = RefreshState.IDLE
        self._selected_id: int | None = None
        self._sequence = 0
        self._latest: MonitorSnapshot | None = None
        self._last_error: SamplingError | None = None
        self._topology: CpuInfo | None = None
        self._topology_loaded = False

        # previous samples, replaced together at the end of a successful cycle
        self._previous_stat: ProcStat | None = None
        self._previous_disks: dict[str, DiskStats] = {}

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def update_queue(self) -> Queue[MonitorSnapshot]:
        """Queue the snapshots are published on."""
        return self._queue

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def apps(self) -> Apps:
        return self._apps

    @property
    def latest(self) -> MonitorSnapshot | None:
        """The last published snapshot."""
        return self._latest

    @property
    def last_error(self) -> SamplingError | None:
        """Error of the last cycle, None if it succeeded."""
        return self._last_error

    @property
    def selected_id(self) -> int | None:
        return self._selected_id

    def select(self, app_id: int | None) -> None:
        """Set the selected application id (None to clear it)."""
        with self._selection_lock:
            self._selected_id = app_id

    @property
    def topology(self) -> CpuInfo | None:
        """CPU topology, read once per session."""
        if not self._topology_loaded:
            self._topology_loaded = True
            try:
                self._topology = self._topology_source()
            except SamplingError as exc:
                log.warning("topology_lookup_failed", error=str(exc))
        return self._topology

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="SystemMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        log.info("monitor_started", poll_rate=self._poll_rate)
        while not self._stop_event.is_set():
            try:
                self.refresh()
            except Exception:
                # keep the loop alive; the next cycle retries
                log.exception("refresh_crashed")

            # Wait for poll_rate seconds or until stop is requested
            self._stop_event.wait(timeout=self._poll_rate)
        log.info("monitor_stopped")

    def refresh(self) -> MonitorSnapshot | None:
        """
        Run one sample, aggregate, publish cycle.

        Returns the published snapshot, or None if the cycle failed or
        another refresh was already in progress.
        """
        if not self._refresh_lock.acquire(blocking=False):
            log.debug("refresh_skipped_overlap")
            return None
        try:
            return self._refresh_cycle()
        finally:
            self._state = RefreshState.IDLE
            self._refresh_lock.release()

    def _refresh_cycle(self) -> MonitorSnapshot | None:
        captured_id = self._selected_id

        self._state = RefreshState.SAMPLING
        try:
            stat = read_proc_stat(self._proc_stat_path)
            disks = self._sample_disks()
            frequencies = self._sample_frequencies(len(stat.cores))

            self._state = RefreshState.AGGREGATING
            applications = self._apps.refresh(stat.total)
        except SamplingError as exc:
            self._last_error = exc
            log.warning("refresh_failed", error=str(exc), error_type=type(exc).__name__)
            return None

        previous = self._previous_stat
        if previous is None:
            cpu_usage = 0.0
            per_core = tuple(0.0 for _ in stat.cores)
        else:
            cpu_usage = busy_ratio(previous.total, stat.total)
            per_core = per_core_busy(previous, stat)

        throughput = tuple(
            disk_throughput(self._previous_disks[name], sample)
            for name, sample in disks.items()
            if name in self._previous_disks
        )

        selected_id = self._relocate_selection(captured_id, applications)

        self._sequence += 1
        snapshot = MonitorSnapshot(
            sequence=self._sequence,
            sampled_at=time.time(),
            applications=applications,
            selected_id=selected_id,
            cpu_usage=cpu_usage,
            cpu_usage_per_core=per_core,
            cpu_frequencies=frequencies,
            disks=throughput,
        )

        self._previous_stat = stat
        self._previous_disks = disks
        self._latest = snapshot
        self._last_error = None
        self._state = RefreshState.PUBLISHED
        self._queue.put(snapshot)
        return snapshot

    def _relocate_selection(
        self, captured_id: int | None, applications: tuple[ApplicationSummary, ...]
    ) -> int | None:
        """Keep the selected id if it survived the refresh, otherwise clear it."""
        ids = {item.id for item in applications}
        with self._selection_lock:
            # a select() during the cycle wins over the captured id
            current = self._selected_id
            if current is not None and current not in ids:
                log.debug("selection_cleared", app_id=current)
                self._selected_id = None
            changed = self._selected_id != captured_id
            selected_id = self._selected_id

        if changed and captured_id == current and self._on_selection_change is not None:
            self._on_selection_change(selected_id)
        return selected_id

    def _sample_disks(self) -> dict[str, DiskStats]:
        """Read every configured device; a device that fails is skipped this cycle."""
        devices = self._disks
        if not devices:
            try:
                devices = list_block_devices(self._sys_block, self._include_virtual_disks)
            except SamplingError as exc:
                log.debug("disk_discovery_failed", error=str(exc))
                return {}

        samples: dict[str, DiskStats] = {}
        for device in devices:
            try:
                samples[device] = read_disk_stats(device, self._sys_block)
            except VanishedEntityError:
                continue
            except SamplingError as exc:
                log.warning("disk_sample_failed", device=device, error=str(exc))
        return samples

    def _sample_frequencies(self, cores: int) -> tuple[int | None, ...]:
        """Current frequency of every core, None where cpufreq is unavailable."""
        frequencies: list[int | None] = []
        for core in range(cores):
            try:
                frequencies.append(get_cpu_freq(core, self._sys_cpu))
            except SamplingError:
                frequencies.append(None)
        return tuple(frequencies)

    def execute_action(
        self,
        action: ProcessAction,
        confirm: Callable[[Application, ProcessAction], bool],
        app_id: int | None = None,
    ) -> DispatchOutcome | None:
        """
        Apply ``action`` to the application ``app_id``, or to the selected one.

        Uses the applications of the last completed refresh; processes that
        exited since then show up as failures in the outcome. Returns None when
        the application is gone or is the system processes bucket.
        """
        app = self._apps.get(self._selected_id if app_id is None else app_id)
        if app is None or app.is_system:
            return None
        return execute_action(app, action, confirm)
