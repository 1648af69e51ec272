"""
Engine facade: the single entry point the dashboard and CLI talk to.

Sampling calls are synchronous. Scans and executions run in the background
and hand back Job handles; at most one of each kind runs at a time.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from enum import Enum
from queue import Queue

from macmon import health
from macmon.apps import AppCatalog, running_bundle_ids
from macmon.config import MonitorConfig
from macmon.errors import ConfirmationMissing
from macmon.executor import CleanupExecutor
from macmon.health import HealthClassifier
from macmon.jobs import Job, OperationKind, OperationRunner
from macmon.leftovers import LeftoverResolver
from macmon.models import (
    AppRecord,
    CleanableCategory,
    CleanablePath,
    CleanupPlan,
    CleanupResult,
    HealthLevel,
    MetricKind,
    ProcessInfo,
    Rate,
    Snapshot,
    SortKey,
    StartupItem,
    TelemetryReading,
)
from macmon.monitor import SystemMonitor
from macmon.planner import ScanPlanner
from macmon.processes import ProcessController
from macmon.rates import RateEstimator, compute_rates
from macmon.sources import CounterSource
from macmon.startup import StartupManager

logger = logging.getLogger(__name__)


class ScanTarget(Enum):
    """What a scan looks for."""

    CACHES = "caches"
    LEFTOVERS = "leftovers"


class Engine:
    """Wires the sampling and cleanup components together from one config."""

    def __init__(
        self,
        config: MonitorConfig | None = None,
        source: CounterSource | None = None,
        planner: ScanPlanner | None = None,
        catalog: AppCatalog | None = None,
        executor: CleanupExecutor | None = None,
        processes: ProcessController | None = None,
        startup: StartupManager | None = None,
        running: Callable[[], set[str]] = running_bundle_ids,
    ) -> None:
        self.config = config or MonitorConfig()
        cleanup = self.config.cleanup

        self._source = source or CounterSource()
        self._thresholds = self.config.health.as_thresholds()
        self._running = running
        self._planner = planner or ScanPlanner(
            self.config.home,
            max_depth=cleanup.max_depth,
            min_size_bytes=cleanup.min_size_bytes,
            log_min_age_days=cleanup.log_min_age_days,
        )
        self._resolver = LeftoverResolver(self._planner, max_depth=cleanup.max_depth)
        self._catalog = catalog or AppCatalog(self._resolver, running=running, max_depth=cleanup.max_depth)
        self._executor = executor or CleanupExecutor(planner=self._planner)
        self._processes = processes or ProcessController()
        self._startup = startup or StartupManager(self.config.home)
        self._runner = OperationRunner()
        self._monitor: SystemMonitor | None = None

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    @property
    def planner(self) -> ScanPlanner:
        return self._planner

    @property
    def monitor(self) -> SystemMonitor | None:
        return self._monitor

    # Telemetry

    def sample(self) -> Snapshot:
        return self._source.sample()

    def get_rates(self, prev: Snapshot, curr: Snapshot) -> list[Rate]:
        """Unsmoothed rates between two snapshots."""
        return compute_rates(prev, curr, self.config.sampling.disk_volume)

    def classify(self, kind: MetricKind, value: float) -> HealthLevel:
        """Level of ``value`` under the configured thresholds, without hysteresis."""
        thresholds = self._thresholds.get(kind)
        if thresholds is None:
            return HealthLevel.NOMINAL
        return health.classify(value, thresholds)

    def start_monitor(
        self,
        update_queue: Queue[TelemetryReading],
        include_processes: bool | None = None,
    ) -> SystemMonitor:
        """Start (or return the running) sampling loop feeding ``update_queue``."""
        if self._monitor is not None and self._monitor.is_running:
            return self._monitor

        sampling = self.config.sampling
        if include_processes is None:
            include_processes = sampling.include_processes
        self._monitor = SystemMonitor(
            update_queue,
            source=self._source,
            estimator=RateEstimator(
                window=sampling.smoothing_window,
                min_interval=sampling.min_interval_seconds,
                mount_point=sampling.disk_volume,
            ),
            classifier=HealthClassifier(self._thresholds, self.config.health.hysteresis_margin),
            poll_rate=sampling.interval_seconds,
            process_controller=self._processes if include_processes else None,
            history_capacity=sampling.history_capacity,
        )
        self._monitor.start()
        return self._monitor

    # Cleanup

    def scan(
        self,
        target: ScanTarget = ScanTarget.CACHES,
        categories: Iterable[CleanableCategory] | None = None,
    ) -> Job[CleanupPlan]:
        """Start a background scan; the job's result is a CleanupPlan."""
        if target is ScanTarget.LEFTOVERS:
            return self._runner.submit(OperationKind.SCAN, self._scan_leftovers)
        wanted = tuple(categories) if categories is not None else None
        return self._runner.submit(OperationKind.SCAN, self._scan_caches, wanted)

    def _scan_caches(
        self, categories: tuple[CleanableCategory, ...] | None, cancel: threading.Event
    ) -> CleanupPlan:
        self._planner.set_running_bundle_ids(self._running())
        return self._planner.scan(categories, cancel)

    def _scan_leftovers(self, cancel: threading.Event) -> CleanupPlan:
        self._planner.set_running_bundle_ids(self._running())
        installed = [app.bundle_identifier for app in self._catalog.list_apps(with_sizes=False)]
        return self._resolver.scan_orphans(installed, cancel)

    def execute(
        self,
        plan: CleanupPlan,
        confirmed: bool = False,
        acknowledge_warnings: bool = False,
    ) -> Job[CleanupResult]:
        """Start executing a confirmed plan; the job's result is a CleanupResult."""
        if not confirmed:
            raise ConfirmationMissing("cleanup plan was not confirmed")
        return self._runner.submit(
            OperationKind.EXECUTE,
            self._executor.execute,
            plan,
            confirmed=confirmed,
            acknowledge_warnings=acknowledge_warnings,
        )

    def list_apps(self) -> list[AppRecord]:
        return self._catalog.list_apps()

    def resolve_leftovers(self, bundle_id: str) -> list[CleanablePath]:
        """Leftovers of an installed app, or of an identifier no app claims any more."""
        try:
            app = self._catalog.find(bundle_id, with_leftovers=True)
        except KeyError:
            return self._resolver.resolve(bundle_id)
        return list(app.associated_leftovers)

    def plan_uninstall(self, bundle_id: str) -> CleanupPlan:
        return self._catalog.plan_uninstall(self._catalog.find(bundle_id))

    # Processes

    def list_processes(self, sort_key: SortKey = SortKey.CPU, include_system: bool = True) -> list[ProcessInfo]:
        return self._processes.list_processes(sort_key, include_system=include_system)

    def terminate(self, pid: int, force: bool = False) -> None:
        self._processes.terminate(pid, force)

    # Startup items

    def list_startup_items(self) -> list[StartupItem]:
        return self._startup.list_items()

    def set_startup_item_enabled(self, label: str, enabled: bool) -> StartupItem:
        return self._startup.set_enabled(label, enabled)

    def remove_startup_item(self, label: str) -> StartupItem:
        return self._startup.remove(label)

    def shutdown(self) -> None:
        """Stop the sampling loop and cancel background operations."""
        if self._monitor is not None:
            self._monitor.stop()
        self._runner.shutdown(wait=True)
        logger.debug("engine_shutdown")
