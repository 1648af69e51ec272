"""Data models for macmon."""

from dataclasses import dataclass
from enum import Enum, IntEnum


class MetricKind(Enum):
    """Metrics produced by the sampling engine."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    SWAP = "swap"
    NET_RX = "net_rx"
    NET_TX = "net_tx"
    DISK_READ = "disk_read"
    DISK_WRITE = "disk_write"
    TEMPERATURE = "temperature"


class Unit(Enum):
    """Units a Rate can be expressed in."""

    PERCENT = "%"
    BYTES_PER_SECOND = "B/s"
    CELSIUS = "C"


class HealthLevel(IntEnum):
    """Tri-state severity, ordered from best to worst."""

    NOMINAL = 0
    ELEVATED = 1
    CRITICAL = 2


class SortKey(Enum):
    """Sort keys for process listings."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    USER = "user"
    NAME = "name"


@dataclass(slots=True, frozen=True)
class CpuTicks:
    """Cumulative CPU time of one core, split into busy and idle seconds."""

    busy: float
    idle: float

    @property
    def total(self) -> float:
        return self.busy + self.idle


@dataclass(slots=True, frozen=True)
class MemoryZones:
    """Memory zone sizes in bytes. Zones a platform does not report are 0."""

    total: int
    active: int
    wired: int
    compressed: int
    free: int
    swap_total: int = 0
    swap_used: int = 0


@dataclass(slots=True, frozen=True)
class VolumeUsage:
    """Space usage of one mounted volume."""

    mount_point: str
    used: int
    free: int
    total: int


@dataclass(slots=True, frozen=True)
class InterfaceCounters:
    """Cumulative byte counters of one network interface."""

    name: str
    rx_bytes: int
    tx_bytes: int


@dataclass(slots=True, frozen=True)
class Snapshot:
    """One consistent read of all raw OS counters at an instant.

    ``timestamp`` is a monotonic clock reading and is only meaningful
    relative to other snapshots; ``wall_time`` is for display.
    """

    timestamp: float
    wall_time: float
    cpu: tuple[CpuTicks, ...]
    memory: MemoryZones
    volumes: tuple[VolumeUsage, ...] = ()
    interfaces: tuple[InterfaceCounters, ...] = ()
    disk_read_bytes: int | None = 0  # None when the counters could not be read
    disk_write_bytes: int | None = 0
    uptime_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class Rate:
    """A derived metric value, valid for the interval it was computed from."""

    kind: MetricKind
    value: float
    unit: Unit
    interval: float = 0.0  # 0.0 for level metrics read from one snapshot
    estimated: bool = False
    reset: bool = False


@dataclass(slots=True, frozen=True)
class Thresholds:
    """Value at which a metric turns elevated and critical."""

    elevated_at: float
    critical_at: float

    def __post_init__(self) -> None:
        if self.elevated_at > self.critical_at:
            raise ValueError(
                f"elevated_at ({self.elevated_at}) must not exceed critical_at ({self.critical_at})"
            )


@dataclass(slots=True, frozen=True)
class ClassifiedMetric:
    """A rate together with its health level and the thresholds behind it."""

    rate: Rate
    level: HealthLevel
    thresholds: Thresholds | None = None


class CleanableCategory(Enum):
    """Kinds of filesystem artifacts the cleanup engine handles."""

    BROWSER_CACHE = "browserCache"
    APP_CACHE = "appCache"
    SYSTEM_LOG = "systemLog"
    TMP = "tmp"
    APP_LEFTOVER = "appLeftover"
    DOWNLOADS = "downloads"
    APPLICATION = "application"


class ProtectionState(Enum):
    """Whether a scanned path may be removed."""

    DELETABLE = "deletable"
    PROTECTED = "protected"
    IN_USE = "inUse"


@dataclass(slots=True, frozen=True)
class CleanablePath:
    """A filesystem entry considered for removal."""

    path: str
    size_bytes: int
    category: CleanableCategory
    protection: ProtectionState = ProtectionState.DELETABLE
    reason: str = ""
    is_dir: bool = False
    inode: int | None = None
    device: int | None = None

    @property
    def deletable(self) -> bool:
        return self.protection is ProtectionState.DELETABLE


@dataclass(slots=True, frozen=True)
class ScanError:
    """An enumerated path the scanner could not inspect."""

    path: str
    reason: str


@dataclass(slots=True, frozen=True)
class AppRecord:
    """An installed application bundle."""

    bundle_identifier: str
    display_name: str
    install_path: str
    is_running: bool = False
    size_bytes: int = 0
    associated_leftovers: tuple[CleanablePath, ...] = ()


@dataclass(slots=True, frozen=True)
class CleanupPlan:
    """The reviewable, immutable output of a scan.

    ``paths`` holds only deletable entries; everything else the scan saw is
    kept in ``excluded`` (protected, in use, or under the size floor) or
    ``scan_errors`` so the report accounts for every enumerated path.
    """

    target: str
    paths: tuple[CleanablePath, ...] = ()
    excluded: tuple[CleanablePath, ...] = ()
    scan_errors: tuple[ScanError, ...] = ()
    warnings: tuple[str, ...] = ()
    created_at: float = 0.0

    def __post_init__(self) -> None:
        for entry in self.paths:
            if not entry.deletable:
                raise ValueError(
                    f"{entry.path} is {entry.protection.value} and cannot be part of a cleanup plan"
                )

    @property
    def total_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self.paths)


class PathOutcome(Enum):
    """What happened to one plan entry during execution."""

    REMOVED = "removed"
    SKIPPED_PROTECTED = "skipped-protected"
    SKIPPED_ERROR = "skipped-error"


@dataclass(slots=True, frozen=True)
class PathResult:
    """Outcome for one path."""

    path: str
    outcome: PathOutcome
    size_bytes: int = 0
    reason: str = ""


@dataclass(slots=True, frozen=True)
class CleanupResult:
    """Per-path outcomes of an executed plan, plus totals."""

    outcomes: tuple[PathResult, ...] = ()
    scan_errors: tuple[PathResult, ...] = ()
    cancelled: bool = False

    @property
    def removed_count(self) -> int:
        return sum(1 for r in self.outcomes if r.outcome is PathOutcome.REMOVED)

    @property
    def skipped_count(self) -> int:
        return len(self.outcomes) - self.removed_count

    @property
    def bytes_freed(self) -> int:
        return sum(r.size_bytes for r in self.outcomes if r.outcome is PathOutcome.REMOVED)


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable snapshot of a process state."""

    pid: int
    name: str
    username: str
    status: str
    cpu_percent: float  # 0.0 - 100.0 * core_count
    memory_percent: float
    memory_rss: int  # Bytes
    threads: int
    command_line: str
    is_system: bool = False


@dataclass(slots=True, frozen=True)
class TelemetryReading:
    """One delivered sampling tick."""

    snapshot: Snapshot | None
    rates: tuple[Rate, ...] = ()
    metrics: tuple[ClassifiedMetric, ...] = ()
    overall: HealthLevel = HealthLevel.NOMINAL
    cpu_per_core: tuple[float, ...] = ()
    processes: tuple[ProcessInfo, ...] = ()
    stale: bool = False
    error: str | None = None

    def metric(self, kind: MetricKind) -> ClassifiedMetric | None:
        """Return the classified metric for ``kind`` if this tick produced one."""
        for item in self.metrics:
            if item.rate.kind is kind:
                return item
        return None


class StartupKind(Enum):
    """launchd job types."""

    LAUNCH_AGENT = "launchAgent"
    LAUNCH_DAEMON = "launchDaemon"


@dataclass(slots=True, frozen=True)
class StartupItem:
    """A launchd job definition found in a LaunchAgents or LaunchDaemons folder."""

    label: str
    name: str
    path: str
    kind: StartupKind
    scope: str  # "user" or "system"
    program: str = ""
    disabled: bool = False
    loaded: bool = False
    protected: bool = False
    reason: str = ""

    @property
    def enabled(self) -> bool:
        return self.loaded and not self.disabled
