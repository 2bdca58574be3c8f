"""Tests for the SystemMonitor class."""

import threading
from pathlib import Path
from queue import Queue

import pytest

from apptop.apps import Apps
from apptop.cpu import CpuInfo
from apptop.errors import SourceUnreadableError
from apptop.models import ProcessRecord
from apptop.monitor import MonitorSnapshot, RefreshState, SystemMonitor
from apptop.signals import ProcessAction

from conftest import make_record, write_disk, write_proc_stat


class Environment:
    """Fake /proc and /sys trees plus a mutable process list."""

    def __init__(self, root: Path) -> None:
        self.proc_stat = root / "stat"
        self.sys_block = root / "block"
        self.sys_cpu = root / "cpu"
        self.sys_block.mkdir()
        self.sys_cpu.mkdir()
        self.records: list[ProcessRecord] = []
        self.lookups = 0
        self.set_stat(busy=0, idle=0)

    def set_stat(self, busy: int, idle: int) -> None:
        """Two identical cores, each getting half of the total."""
        core = (busy // 2, idle // 2)
        write_proc_stat(self.proc_stat, total=(busy, idle), cores=[core, core])

    def set_freq(self, core: int, khz: int) -> None:
        path = self.sys_cpu / f"cpu{core}" / "cpufreq"
        path.mkdir(parents=True, exist_ok=True)
        (path / "scaling_cur_freq").write_text(f"{khz}\n")

    def topology(self) -> CpuInfo:
        self.lookups += 1
        return CpuInfo(model_name="Test CPU", logical_cpus=2)

    def processes(self) -> list[ProcessRecord]:
        return list(self.records)

    def monitor(self, **kwargs) -> SystemMonitor:
        apps = Apps(process_source=self.processes, clock_ticks=100)
        options = dict(
            apps=apps,
            proc_stat_path=self.proc_stat,
            sys_block=self.sys_block,
            sys_cpu=self.sys_cpu,
            topology_source=self.topology,
        )
        options.update(kwargs)
        return SystemMonitor(Queue(), **options)


@pytest.fixture
def env(tmp_path: Path) -> Environment:
    return Environment(tmp_path)


class TestMonitorSnapshot:
    """Tests for MonitorSnapshot dataclass."""

    def test_snapshot_uses_slots(self):
        """Slots-based dataclasses don't have __dict__."""
        snapshot = MonitorSnapshot(
            sequence=1,
            sampled_at=0.0,
            applications=(),
            selected_id=None,
            cpu_usage=0.0,
            cpu_usage_per_core=(),
            cpu_frequencies=(),
            disks=(),
        )
        assert not hasattr(snapshot, "__dict__")
        assert snapshot.selected is None


class TestLifecycle:
    """Tests for the polling thread."""

    def test_monitor_creation(self, env: Environment):
        """Test SystemMonitor can be instantiated."""
        monitor = env.monitor()

        assert monitor.poll_rate == 2.0
        assert not monitor.is_running
        assert monitor.state is RefreshState.IDLE
        assert monitor.latest is None

    def test_poll_rate_minimum(self, env: Environment):
        """Test poll rate has a minimum value."""
        monitor = env.monitor(poll_rate=0.01)
        assert monitor.poll_rate == 0.1

        monitor.poll_rate = 0.0
        assert monitor.poll_rate == 0.1

    def test_monitor_start_stop(self, env: Environment):
        """Test SystemMonitor can be started and stopped."""
        monitor = env.monitor(poll_rate=0.1)

        monitor.start()
        assert monitor.is_running

        monitor.stop()
        assert not monitor.is_running

    def test_monitor_start_idempotent(self, env: Environment):
        """Test starting an already running monitor is safe."""
        monitor = env.monitor(poll_rate=0.1)

        monitor.start()
        thread1 = monitor._thread
        monitor.start()
        thread2 = monitor._thread

        assert thread1 is thread2
        monitor.stop()

    def test_daemon_thread(self, env: Environment):
        """Test monitor thread is a daemon thread."""
        monitor = env.monitor(poll_rate=0.1)
        monitor.start()

        try:
            assert monitor._thread is not None
            assert monitor._thread.daemon is True
            assert monitor._thread.name == "SystemMonitor"
        finally:
            monitor.stop()

    def test_monitor_publishes_snapshots(self, env: Environment):
        """The thread keeps pushing snapshots with increasing sequence numbers."""
        env.records = [make_record(10, key="a")]
        monitor = env.monitor(poll_rate=0.1)
        monitor.start()

        try:
            first = monitor.update_queue.get(timeout=2.0)
            second = monitor.update_queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert isinstance(first, MonitorSnapshot)
        assert second.sequence > first.sequence
        assert [item.key for item in second.applications] == ["a"]

    def test_loop_survives_failed_cycles(self, env: Environment):
        """A broken source does not stop the thread; it recovers when fixed."""
        env.proc_stat.unlink()
        monitor = env.monitor(poll_rate=0.1)
        monitor.start()

        try:
            threading.Event().wait(0.3)
            assert monitor.is_running
            assert isinstance(monitor.last_error, SourceUnreadableError)

            env.set_stat(busy=10, idle=10)
            snapshot = monitor.update_queue.get(timeout=2.0)
        finally:
            monitor.stop()

        assert snapshot.sequence == 1
        assert monitor.last_error is None


class TestRefresh:
    """Tests for a single refresh cycle."""

    def test_first_cycle(self, env: Environment):
        """The first cycle has no previous sample, so all rates are 0."""
        env.records = [make_record(10, key="a", memory_usage=100)]
        monitor = env.monitor()

        snapshot = monitor.refresh()

        assert snapshot.sequence == 1
        assert snapshot.cpu_usage == 0.0
        assert snapshot.cpu_usage_per_core == (0.0, 0.0)
        assert snapshot.disks == ()
        assert snapshot.applications[0].memory_usage == 100
        assert monitor.latest is snapshot
        assert monitor.state is RefreshState.IDLE
        assert monitor.update_queue.get_nowait() is snapshot

    def test_cpu_usage_between_cycles(self, env: Environment):
        """Busy ratio is computed from the previous cycle's counters."""
        monitor = env.monitor()
        env.set_stat(busy=100, idle=300)
        monitor.refresh()

        env.set_stat(busy=150, idle=350)
        snapshot = monitor.refresh()

        assert snapshot.cpu_usage == pytest.approx(0.5)
        assert snapshot.cpu_usage_per_core == pytest.approx((0.5, 0.5))

    def test_application_cpu_uses_same_counters(self, env: Environment):
        """Application ratios come from the same /proc/stat read as the busy ratio."""
        env.records = [make_record(10, key="a", cpu_time=0.0)]
        monitor = env.monitor()
        env.set_stat(busy=0, idle=0)
        monitor.refresh()

        env.set_stat(busy=100, idle=300)  # 4 seconds at 100 ticks per second
        env.records = [make_record(10, key="a", cpu_time=1.0)]
        snapshot = monitor.refresh()

        assert snapshot.applications[0].cpu_time_ratio == pytest.approx(0.25)

    def test_frequencies(self, env: Environment):
        """Cores without cpufreq report None."""
        env.set_freq(0, 2_400_000)
        snapshot = env.monitor().refresh()
        assert snapshot.cpu_frequencies == (2_400_000_000, None)

    def test_disk_throughput_on_second_cycle(self, env: Environment):
        """Disks appear once they have a previous sample to diff against."""
        write_disk(env.sys_block, "sda", {"read_sectors": 0})
        monitor = env.monitor()
        assert monitor.refresh().disks == ()

        write_disk(env.sys_block, "sda", {"read_sectors": 100})
        (throughput,) = monitor.refresh().disks
        assert throughput.device == "sda"
        assert throughput.read_bytes_per_sec >= 0.0

    def test_configured_disks_only(self, env: Environment):
        """An explicit device list limits sampling to those devices."""
        write_disk(env.sys_block, "sda", {})
        write_disk(env.sys_block, "sdb", {})
        monitor = env.monitor(disks=["sdb"])
        monitor.refresh()

        assert [d.device for d in monitor.refresh().disks] == ["sdb"]

    def test_vanished_disk_is_skipped(self, env: Environment):
        """A configured device that is missing does not fail the cycle."""
        write_disk(env.sys_block, "sda", {})
        monitor = env.monitor(disks=["sda", "sdx"])
        monitor.refresh()

        snapshot = monitor.refresh()
        assert snapshot is not None
        assert [d.device for d in snapshot.disks] == ["sda"]

    def test_failed_cycle_keeps_previous_snapshot(self, env: Environment):
        """A failed cycle publishes nothing and leaves the last snapshot current."""
        monitor = env.monitor()
        published = monitor.refresh()
        monitor.update_queue.get_nowait()

        env.proc_stat.write_text("cpu 1 2 3\n")
        assert monitor.refresh() is None

        assert monitor.latest is published
        assert monitor.update_queue.empty()
        assert monitor.last_error is not None
        assert monitor.state is RefreshState.IDLE

    def test_failed_process_scan(self, env: Environment):
        """An unreadable process list fails the cycle the same way."""

        def broken():
            raise PermissionError("denied")

        monitor = env.monitor(apps=Apps(process_source=broken, clock_ticks=100))
        assert monitor.refresh() is None
        assert isinstance(monitor.last_error, SourceUnreadableError)

    def test_overlapping_refresh_is_skipped(self, env: Environment):
        """A refresh while another is running returns None immediately."""
        inner = []
        original = env.processes

        def reentrant():
            inner.append(monitor.refresh())
            return original()

        env.processes = reentrant
        monitor = env.monitor()
        monitor.refresh()

        assert inner == [None]

    def test_topology_read_once(self, env: Environment):
        """The CPU topology is read lazily, once per session."""
        monitor = env.monitor()
        assert env.lookups == 0

        assert monitor.topology.model_name == "Test CPU"
        assert monitor.topology.logical_cpus == 2
        assert env.lookups == 1

    def test_topology_lookup_failure(self, env: Environment):
        """A failing lookup leaves the topology unknown and is not retried."""
        calls = []

        def broken():
            calls.append(1)
            raise SourceUnreadableError("no lscpu")

        monitor = env.monitor(topology_source=broken)
        assert monitor.topology is None
        assert monitor.topology is None
        assert calls == [1]


class TestSelection:
    """Tests for selection handling across refreshes."""

    def test_selection_follows_application(self, env: Environment):
        """The selected id stays put while the application's processes change."""
        env.records = [make_record(10, key="a"), make_record(20, key="b")]
        monitor = env.monitor()
        first = monitor.refresh()
        selected = next(item.id for item in first.applications if item.key == "b")
        monitor.select(selected)

        env.records = [make_record(11, key="a"), make_record(21, key="b")]
        snapshot = monitor.refresh()

        assert snapshot.selected_id == selected
        assert snapshot.selected.key == "b"

    def test_selection_cleared_when_application_exits(self, env: Environment):
        """The selection is cleared and the callback fires when the app is gone."""
        changes = []
        env.records = [make_record(10, key="a")]
        monitor = env.monitor(on_selection_change=changes.append)
        (summary,) = monitor.refresh().applications
        monitor.select(summary.id)

        env.records = [make_record(20, key="b")]
        snapshot = monitor.refresh()

        assert snapshot.selected_id is None
        assert monitor.selected_id is None
        assert changes == [None]

    def test_no_callback_without_change(self, env: Environment):
        """Refreshing with an unchanged selection does not notify."""
        changes = []
        env.records = [make_record(10, key="a")]
        monitor = env.monitor(on_selection_change=changes.append)
        monitor.refresh()
        monitor.refresh()

        assert changes == []


class TestExecuteAction:
    """Tests for acting on the selected application."""

    def test_no_selection(self, env: Environment):
        """Without a selection nothing happens."""
        monitor = env.monitor()
        monitor.refresh()
        assert monitor.execute_action(ProcessAction.KILL, lambda app, action: True) is None

    def test_system_bucket_selected(self, env: Environment):
        """The system bucket cannot be acted upon."""
        env.records = [make_record(1, key=None)]
        monitor = env.monitor()
        (summary,) = monitor.refresh().applications
        monitor.select(summary.id)

        assert monitor.execute_action(ProcessAction.KILL, lambda app, action: True) is None

    def test_dispatches_to_selected(self, env: Environment, monkeypatch):
        """The selected application's processes are signaled."""
        sent = []
        monkeypatch.setattr(
            "apptop.monitor.execute_action",
            lambda app, action, confirm: sent.append((app.key, action)),
        )
        env.records = [make_record(10, key="a")]
        monitor = env.monitor()
        (summary,) = monitor.refresh().applications
        monitor.select(summary.id)

        monitor.execute_action(ProcessAction.END, lambda app, action: True)
        assert sent == [("a", ProcessAction.END)]

    def test_dispatches_to_given_application(self, env: Environment, monkeypatch):
        """An explicit app_id wins over the current selection."""
        sent = []
        monkeypatch.setattr(
            "apptop.monitor.execute_action",
            lambda app, action, confirm: sent.append((app.key, action)),
        )
        env.records = [make_record(10, key="a"), make_record(20, key="b")]
        monitor = env.monitor()
        ids = {item.key: item.id for item in monitor.refresh().applications}
        monitor.select(ids["a"])

        monitor.execute_action(ProcessAction.KILL, lambda app, action: True, app_id=ids["b"])
        assert sent == [("b", ProcessAction.KILL)]

    def test_given_application_exited(self, env: Environment, monkeypatch):
        """An app_id that vanished is not redirected to the selection."""
        sent = []
        monkeypatch.setattr(
            "apptop.monitor.execute_action",
            lambda app, action, confirm: sent.append((app.key, action)),
        )
        env.records = [make_record(10, key="a"), make_record(20, key="b")]
        monitor = env.monitor()
        ids = {item.key: item.id for item in monitor.refresh().applications}

        env.records = [make_record(10, key="a")]
        monitor.refresh()
        monitor.select(ids["a"])

        result = monitor.execute_action(ProcessAction.KILL, lambda app, action: True, app_id=ids["b"])
        assert result is None
        assert sent == []
