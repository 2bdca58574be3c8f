"""apptop - Main Textual application."""

from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Grid, Horizontal
from textual.screen import ModalScreen
from textual.widgets import Button, DataTable, Footer, Input, Label, Static

from apptop.cpu import CpuInfo
from apptop.models import Application, ApplicationSummary
from apptop.monitor import MonitorSnapshot, SystemMonitor
from apptop.signals import DispatchOutcome, ProcessAction


class SortKey(Enum):
    """Sort keys for the application table."""

    NAME = "name"
    MEM = "mem"
    CPU = "cpu"


def format_bytes(size: float) -> str:
    """Format bytes as a human-readable string with decimal prefixes."""
    for unit in ["B", "kB", "MB", "GB", "TB"]:
        if size < 1000:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} {unit}"
        size = size / 1000
    return f"{size:.1f} PB"


def format_frequency(hz: float | None) -> str:
    """Format a clock speed in GHz, N/A when unknown."""
    if hz is None:
        return "N/A"
    return f"{hz / 1e9:.2f} GHz"


class HeaderStats(Static):
    """Header widget showing CPU and disk statistics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 3;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize HeaderStats."""
        super().__init__(*args, **kwargs)
        self._cpu_usage: float = 0.0
        self._cpu_per_core: tuple[float, ...] = ()
        self._cpu_frequencies: tuple[int | None, ...] = ()
        self._topology: CpuInfo | None = None
        self._disk_lines: list[str] = []

    def compose(self) -> ComposeResult:
        """Compose the header stats layout."""
        yield Static(self._get_topology_info(), id="topology-info")
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_disk_info(), id="disk-info"),
        )

    def set_topology(self, topology: CpuInfo | None) -> None:
        """Show the CPU model, core counts and maximum speed."""
        self._topology = topology
        self._refresh_display()

    def update_stats(self, snapshot: MonitorSnapshot) -> None:
        """Update the statistics from a monitor snapshot."""
        self._cpu_usage = snapshot.cpu_usage
        self._cpu_per_core = snapshot.cpu_usage_per_core
        self._cpu_frequencies = snapshot.cpu_frequencies
        self._disk_lines = [
            f"{disk.device:<8} R {format_bytes(disk.read_bytes_per_sec)}/s "
            f"W {format_bytes(disk.write_bytes_per_sec)}/s "
            f"{disk.active_ratio * 100:5.1f}%"
            for disk in snapshot.disks
        ]
        self._refresh_display()

    def _refresh_display(self) -> None:
        """Refresh the display with current data."""
        try:
            self.query_one("#topology-info", Static).update(self._get_topology_info())
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#disk-info", Static).update(self._get_disk_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_topology_info(self) -> str:
        """Get the one-line CPU topology summary."""
        topology = self._topology
        if topology is None:
            return "CPU topology unavailable"

        def count(value: int | None) -> str:
            return str(value) if value is not None else "N/A"

        return (
            f"{topology.model_name or 'Unknown CPU'}  "
            f"{count(topology.logical_cpus)} logical / {count(topology.physical_cpus)} physical  "
            f"max {format_frequency(topology.max_speed)}"
        )

    def _get_cpu_info(self) -> str:
        """Get CPU info display."""
        if not self._cpu_per_core:
            return "Loading CPU info..."
        lines = [f"CPU   {self._cpu_usage * 100:5.1f}%"]
        for i, usage in enumerate(self._cpu_per_core):
            bar_len = min(int(usage * 20), 20)
            bar = "[green]█[/green]" * bar_len + "[dim]░[/dim]" * (20 - bar_len)
            freq = self._cpu_frequencies[i] if i < len(self._cpu_frequencies) else None
            lines.append(
                f"CPU{i:<2} \\[{bar}] {usage * 100:5.1f}% {format_frequency(freq):>9}"
            )
        return "\n".join(lines)

    def _get_disk_info(self) -> str:
        """Get disk info display."""
        if not self._disk_lines:
            return "No disk activity yet"
        return "\n".join(self._disk_lines)


class ApplicationTable(Container):
    """Container for the application data table."""

    DEFAULT_CSS = """
    ApplicationTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ApplicationTable."""
        super().__init__(*args, **kwargs)
        self._items: tuple[ApplicationSummary, ...] = ()
        self._row_ids: list[int] = []
        self._sort_key: SortKey = SortKey.NAME
        self._sort_reverse: bool = False
        self._filter: str = ""
        self._selected_id: int | None = None

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    @property
    def row_ids(self) -> list[int]:
        """Application ids in display order."""
        return list(self._row_ids)

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        current_index = keys.index(self._sort_key)
        self._sort_key = keys[(current_index + 1) % len(keys)]
        # Usage columns sort descending, names ascending
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        self._render_rows()
        return self._sort_key

    def set_filter(self, text: str) -> None:
        """Only show applications whose name or description contains ``text``."""
        self._filter = text.lower()
        self._render_rows()

    def compose(self) -> ComposeResult:
        """Compose the application table."""
        yield DataTable(id="application-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#application-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Application", key="name")
        table.add_column("Memory", key="mem", width=10)
        table.add_column("Processor", key="cpu", width=10)
        table.add_column("Processes", key="count", width=10)

    def update_applications(
        self, items: tuple[ApplicationSummary, ...], selected_id: int | None = None
    ) -> None:
        """
        Replace the table contents with a freshly published collection.

        The row of ``selected_id`` gets the cursor back if it is still visible.
        A ``selected_id`` of None means nothing is selected; the cursor row is
        not taken as a selection.
        """
        self._items = items
        self._selected_id = selected_id
        self._render_rows()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        """Track the row the user moved to; the event keeps bubbling to the app."""
        if event.row_key is not None and event.row_key.value is not None:
            self._selected_id = int(event.row_key.value)

    def _matches(self, item: ApplicationSummary) -> bool:
        """Check the item against the search filter."""
        if not self._filter:
            return True
        return (
            self._filter in item.display_name.lower()
            or self._filter in (item.description or "").lower()
        )

    def _sort_items(self, items: list[ApplicationSummary]) -> list[ApplicationSummary]:
        """Sort items based on the current sort key."""
        key_func = {
            SortKey.NAME: lambda i: i.display_name.lower(),
            SortKey.MEM: lambda i: i.memory_usage,
            SortKey.CPU: lambda i: i.cpu_time_ratio,
        }
        return sorted(items, key=key_func[self._sort_key], reverse=self._sort_reverse)

    def _render_rows(self) -> None:
        """Rebuild all rows; the published collection is replaced, never patched."""
        try:
            table = self.query_one("#application-table", DataTable)
        except Exception:
            return  # Not mounted yet

        visible = self._sort_items([item for item in self._items if self._matches(item)])
        # only the user moving the cursor changes the selection
        with table.prevent(DataTable.RowHighlighted):
            table.clear()
            for item in visible:
                table.add_row(
                    item.display_name,
                    format_bytes(item.memory_usage),
                    f"{item.cpu_time_ratio * 100:.1f} %",
                    str(item.processes_amount),
                    key=str(item.id),
                )
            self._row_ids = [item.id for item in visible]

            if self._selected_id in self._row_ids:
                table.move_cursor(row=self._row_ids.index(self._selected_id))


class ConfirmActionScreen(ModalScreen[bool]):
    """Ask before ending, killing or halting an application."""

    DEFAULT_CSS = """
    ConfirmActionScreen {
        align: center middle;
    }

    #dialog {
        grid-size: 2;
        grid-gutter: 1 2;
        padding: 1 2;
        width: 60;
        height: auto;
        border: thick $error;
        background: $surface;
    }

    #question, #warning {
        column-span: 2;
        width: 1fr;
    }
    """

    def __init__(self, application: Application, action: ProcessAction) -> None:
        """Initialize the dialog for ``action`` on ``application``."""
        super().__init__()
        self._application = application
        self._action = action

    def compose(self) -> ComposeResult:
        """Compose the dialog."""
        yield Grid(
            Label(f"{self._action.title} {self._application.display_name}?", id="question"),
            Label(self._action.warning, id="warning"),
            Button(self._action.description, variant="error", id="yes"),
            Button("Cancel", variant="primary", id="no"),
            id="dialog",
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        """Dismiss with True only for the destructive button."""
        self.dismiss(event.button.id == "yes")


class ApptopApp(App):
    """Main apptop application."""

    TITLE = "apptop"
    SUB_TITLE = "Applications and their resource usage"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 3;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #disk-info {
        width: 1fr;
        padding-left: 2;
    }

    #search {
        display: none;
    }

    #search.visible {
        display: block;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("slash", "search", "Search"),
        ("e", "end", "End"),
        ("k", "kill", "Kill"),
        ("h", "halt", "Halt"),
        ("c", "continue", "Continue"),
    ]

    def __init__(self, monitor: SystemMonitor | None = None, poll_rate: float = 2.0) -> None:
        """Initialize the ApptopApp."""
        super().__init__()
        self._monitor = monitor or SystemMonitor(Queue(), poll_rate=poll_rate)
        self._update_queue = self._monitor.update_queue

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield HeaderStats(id="header-stats")
        yield Input(placeholder="Search applications", id="search")
        yield ApplicationTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the system monitor when the app is mounted."""
        self._monitor.start()
        self.query_one("#header-stats", HeaderStats).set_topology(self._monitor.topology)
        # Set up a timer to poll the queue for updates
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Check the queue for snapshots and refresh the UI."""
        # Drain the queue to get the most recent snapshot
        snapshot = None
        while True:
            try:
                snapshot = self._update_queue.get_nowait()
            except Empty:
                break

        if snapshot is not None:
            self._update_ui(snapshot)

    def _update_ui(self, snapshot: MonitorSnapshot) -> None:
        """Update the UI with the new snapshot."""
        self.query_one("#header-stats", HeaderStats).update_stats(snapshot)
        self.query_one(ApplicationTable).update_applications(
            snapshot.applications, self._monitor.selected_id
        )

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        """Forward the row the user moved to as the selection."""
        if event.row_key is not None and event.row_key.value is not None:
            self._monitor.select(int(event.row_key.value))

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        """Enter or a click on the cursor row selects it too."""
        if event.row_key is not None and event.row_key.value is not None:
            self._monitor.select(int(event.row_key.value))

    def on_input_changed(self, event: Input.Changed) -> None:
        """Apply the search filter."""
        self.query_one(ApplicationTable).set_filter(event.value)

    def action_sort(self) -> None:
        """Handle sort action - cycle through sort keys."""
        new_sort_key = self.query_one(ApplicationTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_search(self) -> None:
        """Toggle the search field."""
        search = self.query_one("#search", Input)
        search.toggle_class("visible")
        if search.has_class("visible"):
            search.focus()
        else:
            search.value = ""
            self.query_one("#application-table", DataTable).focus()

    def action_end(self) -> None:
        self._request_action(ProcessAction.END)

    def action_kill(self) -> None:
        self._request_action(ProcessAction.KILL)

    def action_halt(self) -> None:
        self._request_action(ProcessAction.HALT)

    def action_continue(self) -> None:
        self._request_action(ProcessAction.CONTINUE)

    def _request_action(self, action: ProcessAction) -> None:
        """Run ``action`` on the selected application, confirming where needed."""
        application = self._monitor.apps.get(self._monitor.selected_id)
        if application is None or application.is_system:
            return

        if not action.requires_confirmation:
            self._dispatch(application, action)
            return

        def on_confirm(confirmed: bool | None) -> None:
            if confirmed:
                self._dispatch(application, action)

        self.push_screen(ConfirmActionScreen(application, action), on_confirm)

    def _dispatch(self, application: Application, action: ProcessAction) -> None:
        """Send ``action`` to the application the user confirmed, never to a newer selection."""
        outcome = self._monitor.execute_action(action, lambda app, act: True, app_id=application.id)
        if outcome is None:
            self.notify(f"{application.display_name} is no longer running", severity="warning")
            return
        self._show_outcome(outcome)

    def _show_outcome(self, outcome: DispatchOutcome) -> None:
        """Show the dispatch outcome as a toast."""
        self.notify(outcome.message, severity="information" if outcome.succeeded else "warning")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()
