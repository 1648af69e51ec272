"""Periodic sampling loop for macmon."""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from queue import Queue

from macmon.errors import TransientSampleFailure
from macmon.health import HealthClassifier, overall
from macmon.models import MetricKind, Snapshot, TelemetryReading
from macmon.processes import ProcessController
from macmon.rates import RateEstimator, per_core_percent
from macmon.sources import CounterSource

logger = logging.getLogger(__name__)

MIN_POLL_RATE = 1.0
MAX_POLL_RATE = 10.0


def _clamp_poll_rate(value: float) -> float:
    return max(MIN_POLL_RATE, min(MAX_POLL_RATE, value))


class SystemMonitor:
    """
    Sampling loop that turns counter snapshots into classified readings.

    Runs in a separate daemon thread and pushes a TelemetryReading per tick to
    a thread-safe Queue. Ticks run on a fixed cadence with at most one tick in
    flight; slots missed because a tick overran are skipped, never queued.
    The previous snapshot lives here and is handed to the estimator on every
    tick.
    """

    def __init__(
        self,
        update_queue: Queue[TelemetryReading],
        source: CounterSource | None = None,
        estimator: RateEstimator | None = None,
        classifier: HealthClassifier | None = None,
        poll_rate: float = 2.0,
        process_controller: ProcessController | None = None,
        history_capacity: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the SystemMonitor.

        Args:
            update_queue: Thread-safe queue to push readings to.
            source: Counter source; a psutil-backed one by default.
            estimator: Rate estimator holding the smoothing state.
            classifier: Health classifier; everything is nominal without one.
            poll_rate: Seconds between ticks, clamped to [1, 10].
            process_controller: When given, each reading carries a process list.
            history_capacity: Number of values kept per metric for charts.
            clock: Monotonic clock used for scheduling.
        """
        if history_capacity < 1:
            raise ValueError("history_capacity must be >= 1")
        self._queue = update_queue
        self._source = source or CounterSource()
        self._estimator = estimator or RateEstimator()
        self._classifier = classifier or HealthClassifier({})
        self._poll_rate = _clamp_poll_rate(poll_rate)
        self._processes = process_controller
        self._clock = clock

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_lock = threading.Lock()
        self._skipped_ticks = 0

        self._previous: Snapshot | None = None
        self._last_reading: TelemetryReading | None = None
        self._history_capacity = history_capacity
        self._history: dict[MetricKind, deque[float]] = {}
        self._cpu_history: deque[tuple[float, ...]] = deque(maxlen=history_capacity)

    @property
    def poll_rate(self) -> float:
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        self._poll_rate = _clamp_poll_rate(value)

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def skipped_ticks(self) -> int:
        """Ticks dropped because another tick was still in flight."""
        return self._skipped_ticks

    @property
    def latest(self) -> TelemetryReading | None:
        return self._last_reading

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
        logger.debug("monitor_started poll_rate=%.1f", self._poll_rate)

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
            logger.debug("monitor_stopped skipped_ticks=%d", self._skipped_ticks)

    def tick(self) -> TelemetryReading | None:
        """
        Run one sampling tick and publish its reading.

        Returns None without sampling if a tick is already in flight.
        """
        if not self._tick_lock.acquire(blocking=False):
            self._skipped_ticks += 1
            logger.debug("tick_skipped reason=in_flight")
            return None
        try:
            reading = self._sample_once()
            self._last_reading = reading
            self._record_history(reading)
            self._queue.put(reading)
            return reading
        finally:
            self._tick_lock.release()

    def _sample_once(self) -> TelemetryReading:
        try:
            snapshot = self._source.sample()
        except TransientSampleFailure as exc:
            logger.warning("sample_failed err=%s", exc)
            return self._stale_reading(str(exc))

        previous = self._previous
        if previous is None:
            rates = self._estimator.levels(snapshot)
            per_core: list[float] = []
            self._previous = snapshot
        else:
            rates = self._estimator.update(previous, snapshot)
            per_core = per_core_percent(previous.cpu, snapshot.cpu)
            if snapshot.timestamp - previous.timestamp >= self._estimator.min_interval:
                self._previous = snapshot

        metrics = self._classifier.classify_rates(rates)
        processes = self._processes.list_processes() if self._processes is not None else []

        return TelemetryReading(
            snapshot=snapshot,
            rates=tuple(rates),
            metrics=tuple(metrics),
            overall=overall(metrics),
            cpu_per_core=tuple(per_core),
            processes=tuple(processes),
        )

    def _stale_reading(self, error: str) -> TelemetryReading:
        last = self._last_reading
        if last is None:
            return TelemetryReading(snapshot=None, stale=True, error=error)
        return TelemetryReading(
            snapshot=last.snapshot,
            rates=last.rates,
            metrics=last.metrics,
            overall=last.overall,
            cpu_per_core=last.cpu_per_core,
            processes=last.processes,
            stale=True,
            error=error,
        )

    def _record_history(self, reading: TelemetryReading) -> None:
        if reading.stale:
            return
        for rate in reading.rates:
            series = self._history.get(rate.kind)
            if series is None:
                series = self._history[rate.kind] = deque(maxlen=self._history_capacity)
            series.append(rate.value)
        if reading.cpu_per_core:
            self._cpu_history.append(reading.cpu_per_core)

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        next_due = self._clock()
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # Keep the loop alive; the next tick retries from scratch
                logger.exception("tick_failed")

            next_due += self._poll_rate
            now = self._clock()
            if now > next_due:
                missed = int((now - next_due) // self._poll_rate) + 1
                self._skipped_ticks += missed
                next_due += missed * self._poll_rate
                logger.debug("tick_overrun missed=%d", missed)

            # Wait for the next slot or until stop is requested
            self._stop_event.wait(timeout=max(0.0, next_due - now))

    def history(self, kind: MetricKind) -> list[float]:
        """Recent values of one metric, oldest first."""
        return list(self._history.get(kind, ()))

    def get_cpu_history(self) -> list[tuple[float, ...]]:
        """Get the per-core CPU usage history for sparkline rendering."""
        return list(self._cpu_history)
