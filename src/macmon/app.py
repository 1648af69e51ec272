"""macmon - Textual dashboard."""

import logging
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Static
from textual.widgets.data_table import CellDoesNotExist, DuplicateKey, RowDoesNotExist, RowKey

from macmon.engine import Engine
from macmon.errors import ProcessControlError
from macmon.formatting import LEVEL_STYLES, format_bytes, format_rate, format_uptime, usage_bar
from macmon.models import HealthLevel, MetricKind, ProcessInfo, SortKey, TelemetryReading, Unit
from macmon.processes import sort_processes

logger = logging.getLogger(__name__)

# Order of the metric rows in the header
HEADER_METRICS = (
    MetricKind.CPU,
    MetricKind.MEMORY,
    MetricKind.SWAP,
    MetricKind.DISK,
    MetricKind.TEMPERATURE,
    MetricKind.NET_RX,
    MetricKind.NET_TX,
    MetricKind.DISK_READ,
    MetricKind.DISK_WRITE,
)

METRIC_LABELS = {
    MetricKind.CPU: "CPU",
    MetricKind.MEMORY: "Mem",
    MetricKind.SWAP: "Swp",
    MetricKind.DISK: "Disk",
    MetricKind.TEMPERATURE: "Temp",
    MetricKind.NET_RX: "Net↓",
    MetricKind.NET_TX: "Net↑",
    MetricKind.DISK_READ: "Rd",
    MetricKind.DISK_WRITE: "Wr",
}


class HeaderStats(Static):
    """Header widget showing per-core CPU bars and the classified metrics."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reading: TelemetryReading | None = None

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_cpu_info(), id="cpu-info"),
            Static(self._get_metric_info(), id="metric-info"),
        )

    def update_stats(self, reading: TelemetryReading) -> None:
        """Update the statistics from a telemetry reading."""
        self._reading = reading
        try:
            self.query_one("#cpu-info", Static).update(self._get_cpu_info())
            self.query_one("#metric-info", Static).update(self._get_metric_info())
        except NoMatches:
            pass  # Widget not mounted yet

    def _get_cpu_info(self) -> str:
        if self._reading is None or not self._reading.cpu_per_core:
            return "Loading CPU info..."
        lines = []
        for i, usage in enumerate(self._reading.cpu_per_core):
            lines.append(f"CPU{i:<2} \\[{usage_bar(usage, 'green')}] {usage:5.1f}%")
        return "\n".join(lines)

    def _get_metric_info(self) -> str:
        reading = self._reading
        if reading is None:
            return "Loading metrics..."

        lines = []
        for kind in HEADER_METRICS:
            metric = reading.metric(kind)
            if metric is None:
                continue
            color = LEVEL_STYLES[metric.level]
            label = METRIC_LABELS[kind]
            value = format_rate(metric.rate)
            if metric.rate.unit is Unit.PERCENT:
                lines.append(f"{label:<4}\\[{usage_bar(metric.rate.value, color)}] {value}")
            else:
                lines.append(f"{label:<4} [{color}]{value}[/{color}]")

        status_color = LEVEL_STYLES[reading.overall]
        status = f"Health: [{status_color}]{reading.overall.name.lower()}[/{status_color}]"
        if reading.stale:
            status += " [dim](stale)[/dim]"
        lines.append(status)
        if reading.snapshot is not None:
            lines.append(f"Uptime: {format_uptime(reading.snapshot.uptime_seconds)}")
        return "\n".join(lines)


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._sort_key: SortKey = SortKey.CPU

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("S", key="status", width=3)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("THR", key="threads", width=5)
        table.add_column("Command", key="command")

    def selected_pid(self) -> int | None:
        """PID of the row under the cursor."""
        key = self._cursor_key(self.query_one("#process-table", DataTable))
        return None if key is None else int(key.value)

    def _cursor_key(self, table: DataTable) -> RowKey | None:
        if table.row_count == 0:
            return None
        try:
            return table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        except CellDoesNotExist:
            return None

    def update_processes(self, processes: list[ProcessInfo]) -> None:
        """
        Update the process table with new data.

        Rows of surviving processes are updated in place; the table is
        rebuilt only when ordering changes, and the cursor then follows the
        highlighted process to its new row.
        """
        table = self.query_one("#process-table", DataTable)
        ordered = sort_processes(processes, self._sort_key)
        new_pids = [proc.pid for proc in ordered]

        current_order = [int(key.value) for key in table.rows]
        if new_pids != current_order:
            selected = self._cursor_key(table)
            table.clear()
            for proc in ordered:
                self._add_row(table, proc)
            if selected is not None:
                try:
                    table.move_cursor(row=table.get_row_index(selected))
                except RowDoesNotExist:
                    pass  # Highlighted process exited
        else:
            for proc in ordered:
                self._update_row(table, proc)

    def _cells(self, proc: ProcessInfo) -> list[str]:
        return [
            str(proc.pid),
            proc.username[:10],
            proc.status[:1],
            f"{proc.cpu_percent:5.1f}",
            f"{proc.memory_percent:5.1f}",
            format_bytes(proc.memory_rss),
            str(proc.threads),
            proc.command_line[:50],
        ]

    def _update_row(self, table: DataTable, proc: ProcessInfo) -> None:
        row_key = str(proc.pid)
        columns = ("pid", "user", "status", "cpu", "mem", "rss", "threads", "command")
        try:
            for column, value in zip(columns, self._cells(proc)):
                table.update_cell(row_key, column, value)
        except CellDoesNotExist:
            pass  # Row removed between snapshots

    def _add_row(self, table: DataTable, proc: ProcessInfo) -> None:
        try:
            table.add_row(*self._cells(proc), key=str(proc.pid))
        except DuplicateKey:
            pass  # Same pid listed twice in one snapshot


class MacmonApp(App):
    """Main macmon dashboard."""

    TITLE = "macmon"
    SUB_TITLE = "System Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #cpu-info {
        width: 1fr;
        padding-right: 2;
    }

    #metric-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
        ("k", "terminate", "Terminate"),
    ]

    def __init__(self, engine: Engine | None = None) -> None:
        super().__init__()
        self._engine = engine or Engine()
        self._update_queue: Queue[TelemetryReading] = Queue()
        self._last_level = HealthLevel.NOMINAL

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the sampling loop when the app is mounted."""
        self._engine.start_monitor(self._update_queue, include_processes=True)
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render only the most recent reading."""
        reading = None
        while True:
            try:
                reading = self._update_queue.get_nowait()
            except Empty:
                break

        if reading is not None:
            self._update_ui(reading)

    def _update_ui(self, reading: TelemetryReading) -> None:
        self.query_one("#header-stats", HeaderStats).update_stats(reading)
        if reading.processes:
            self.query_one(ProcessTable).update_processes(list(reading.processes))
        if reading.overall is HealthLevel.CRITICAL and self._last_level is not HealthLevel.CRITICAL:
            self.notify("System health is critical", severity="error")
        self._last_level = reading.overall

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_terminate(self) -> None:
        """Send SIGTERM to the selected process."""
        pid = self.query_one(ProcessTable).selected_pid()
        if pid is None:
            return
        try:
            self._engine.terminate(pid)
        except ProcessControlError as exc:
            self.notify(str(exc), severity="warning")
            return
        self.notify(f"Sent SIGTERM to {pid}")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._engine.shutdown()
        self.exit()

