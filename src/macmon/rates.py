"""Rate estimation: turns pairs of cumulative snapshots into instantaneous rates."""

from collections import deque
from collections.abc import Sequence

from macmon.models import CpuTicks, MemoryZones, MetricKind, Rate, Snapshot, Unit

# CPU-load-derived temperature estimate. There is no sensor read behind this.
IDLE_TEMPERATURE_C = 45.0
FULL_LOAD_TEMPERATURE_C = 95.0

_DELTA_KINDS = (MetricKind.NET_RX, MetricKind.NET_TX, MetricKind.DISK_READ, MetricKind.DISK_WRITE)
_SMOOTHED_KINDS = (MetricKind.CPU, *_DELTA_KINDS)


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


def counter_rate(prev: int, curr: int, elapsed: float) -> tuple[float, bool]:
    """
    Per-second rate of a cumulative counter.

    Returns (rate, reset). A counter that went backwards was reset (interface
    restart, wraparound) and yields a rate of 0 for this tick.
    """
    if elapsed <= 0:
        raise ValueError(f"elapsed must be positive, got {elapsed}")
    if curr < prev:
        return 0.0, True
    return (curr - prev) / elapsed, False


def cpu_percent(prev: Sequence[CpuTicks], curr: Sequence[CpuTicks]) -> float:
    """Busy share of all cores between two tick readings, in [0, 100]."""
    if not prev or len(prev) != len(curr):
        return 0.0
    busy = sum(c.busy - p.busy for p, c in zip(prev, curr))
    total = sum(c.total - p.total for p, c in zip(prev, curr))
    if total <= 0:
        return 0.0
    return _clamp_percent(busy / total * 100.0)


def per_core_percent(prev: Sequence[CpuTicks], curr: Sequence[CpuTicks]) -> list[float]:
    """Busy share of each core; empty when the core count changed."""
    if len(prev) != len(curr):
        return []
    return [cpu_percent((p,), (c,)) for p, c in zip(prev, curr)]


def memory_percent(memory: MemoryZones) -> float:
    """Share of physical memory that is active, wired or compressed."""
    if memory.total <= 0:
        return 0.0
    used = memory.active + memory.wired + memory.compressed
    return _clamp_percent(used / memory.total * 100.0)


def swap_percent(memory: MemoryZones) -> float:
    if memory.swap_total <= 0:
        return 0.0
    return _clamp_percent(memory.swap_used / memory.swap_total * 100.0)


def disk_percent(snapshot: Snapshot, mount_point: str = "/") -> float:
    """Used share of the volume at ``mount_point`` (or the first volume)."""
    if not snapshot.volumes:
        return 0.0
    volume = next((v for v in snapshot.volumes if v.mount_point == mount_point), snapshot.volumes[0])
    if volume.total <= 0:
        return 0.0
    return _clamp_percent(volume.used / volume.total * 100.0)


def estimate_temperature(cpu: float) -> Rate:
    """
    Estimate CPU temperature from CPU load.

    This is a deliberate approximation: reading real thermal sensors needs
    privileges this tool does not ask for. The returned Rate is flagged
    ``estimated`` so consumers never present it as a measurement.
    """
    load = _clamp_percent(cpu) / 100.0
    value = IDLE_TEMPERATURE_C + (FULL_LOAD_TEMPERATURE_C - IDLE_TEMPERATURE_C) * load
    return Rate(kind=MetricKind.TEMPERATURE, value=value, unit=Unit.CELSIUS, estimated=True)


def level_rates(snapshot: Snapshot, mount_point: str = "/") -> list[Rate]:
    """Metrics read directly from one snapshot; no delta needed."""
    return [
        Rate(kind=MetricKind.MEMORY, value=memory_percent(snapshot.memory), unit=Unit.PERCENT),
        Rate(kind=MetricKind.SWAP, value=swap_percent(snapshot.memory), unit=Unit.PERCENT),
        Rate(kind=MetricKind.DISK, value=disk_percent(snapshot, mount_point), unit=Unit.PERCENT),
    ]


def _network_rates(prev: Snapshot, curr: Snapshot, elapsed: float) -> list[Rate]:
    previous = {nic.name: nic for nic in prev.interfaces}
    rx_total = tx_total = 0.0
    rx_reset = tx_reset = False
    for nic in curr.interfaces:
        before = previous.get(nic.name)
        if before is None:
            # New interface: no baseline yet
            continue
        rx, reset = counter_rate(before.rx_bytes, nic.rx_bytes, elapsed)
        rx_total += rx
        rx_reset = rx_reset or reset
        tx, reset = counter_rate(before.tx_bytes, nic.tx_bytes, elapsed)
        tx_total += tx
        tx_reset = tx_reset or reset
    return [
        Rate(MetricKind.NET_RX, rx_total, Unit.BYTES_PER_SECOND, elapsed, reset=rx_reset),
        Rate(MetricKind.NET_TX, tx_total, Unit.BYTES_PER_SECOND, elapsed, reset=tx_reset),
    ]


def compute_rates(prev: Snapshot, curr: Snapshot, mount_point: str = "/") -> list[Rate]:
    """Raw, unsmoothed rates for one snapshot interval."""
    elapsed = curr.timestamp - prev.timestamp
    if elapsed <= 0:
        raise ValueError("current snapshot must be newer than the previous one")

    rates = [Rate(MetricKind.CPU, cpu_percent(prev.cpu, curr.cpu), Unit.PERCENT, elapsed)]
    rates.extend(level_rates(curr, mount_point))
    rates.extend(_network_rates(prev, curr, elapsed))
    rates.extend(_disk_io_rates(prev, curr, elapsed))
    return rates


def _disk_io_rates(prev: Snapshot, curr: Snapshot, elapsed: float) -> list[Rate]:
    rates = []
    pairs = (
        (MetricKind.DISK_READ, prev.disk_read_bytes, curr.disk_read_bytes),
        (MetricKind.DISK_WRITE, prev.disk_write_bytes, curr.disk_write_bytes),
    )
    for kind, before, after in pairs:
        if before is None or after is None:
            # Unreadable on either side: no baseline to measure against
            continue
        value, reset = counter_rate(before, after, elapsed)
        rates.append(Rate(kind, value, Unit.BYTES_PER_SECOND, elapsed, reset=reset))
    return rates


class MovingAverage:
    """Fixed-window mean over the most recent values."""

    def __init__(self, window: int) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self._values: deque[float] = deque(maxlen=window)

    def add(self, value: float) -> float:
        self._values.append(value)
        return sum(self._values) / len(self._values)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)


class RateEstimator:
    """
    Stateful wrapper around compute_rates that smooths and guards output.

    Ticks shorter than ``min_interval`` are skipped and the previous output
    is held over. CPU and counter-derived rates are averaged over the last
    ``window`` ticks; a counter reset clears that metric's window and emits
    0 for the tick. Temperature is estimated from the smoothed CPU value.
    """

    def __init__(self, window: int = 3, min_interval: float = 0.1, mount_point: str = "/") -> None:
        if min_interval <= 0:
            raise ValueError("min_interval must be positive")
        self._window = window
        self._min_interval = min_interval
        self._mount_point = mount_point
        self._averages = {kind: MovingAverage(window) for kind in _SMOOTHED_KINDS}
        self._last: list[Rate] = []

    @property
    def window(self) -> int:
        return self._window

    @property
    def min_interval(self) -> float:
        return self._min_interval

    @property
    def last_rates(self) -> list[Rate]:
        return list(self._last)

    def levels(self, snapshot: Snapshot) -> list[Rate]:
        """Output for the first snapshot, before any interval exists."""
        self._last = level_rates(snapshot, self._mount_point)
        return list(self._last)

    def update(self, prev: Snapshot, curr: Snapshot) -> list[Rate]:
        """Compute smoothed rates for (prev, curr), or hold the last output."""
        elapsed = curr.timestamp - prev.timestamp
        if elapsed < self._min_interval:
            return list(self._last)

        smoothed: list[Rate] = []
        cpu_value = 0.0
        for rate in compute_rates(prev, curr, self._mount_point):
            average = self._averages.get(rate.kind)
            if average is not None:
                if rate.reset:
                    average.clear()
                    value = 0.0
                else:
                    value = average.add(rate.value)
                rate = Rate(rate.kind, value, rate.unit, rate.interval, rate.estimated, rate.reset)
            if rate.kind is MetricKind.CPU:
                cpu_value = rate.value
            smoothed.append(rate)

        smoothed.append(estimate_temperature(cpu_value))
        self._last = smoothed
        return list(smoothed)

    def reset(self) -> None:
        for average in self._averages.values():
            average.clear()
        self._last = []
