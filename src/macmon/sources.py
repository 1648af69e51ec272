"""Counter source: reads raw OS counters into immutable snapshots via psutil."""

import logging
import time

import psutil

from macmon.errors import TransientSampleFailure
from macmon.models import CpuTicks, InterfaceCounters, MemoryZones, Snapshot, VolumeUsage

logger = logging.getLogger(__name__)

# psutil cpu_times fields counted as busy / idle. Fields missing on a
# platform read as 0; guest time is already included in user time.
_BUSY_FIELDS = ("user", "system", "nice", "irq", "softirq", "steal")
_IDLE_FIELDS = ("idle", "iowait")


def _ticks(times) -> CpuTicks:
    busy = sum(getattr(times, name, 0.0) for name in _BUSY_FIELDS)
    idle = sum(getattr(times, name, 0.0) for name in _IDLE_FIELDS)
    return CpuTicks(busy=busy, idle=idle)


class CounterSource:
    """
    Thin adapter over OS-provided cumulative counters.

    Stateless: every call to sample() returns a complete, fresh Snapshot.
    Volume and interface reads degrade per item; CPU and memory reads are
    essential and raise TransientSampleFailure when they fail.
    """

    def __init__(self, include_loopback: bool = False) -> None:
        self._include_loopback = include_loopback

    def sample(self) -> Snapshot:
        """Read all counters at once."""
        timestamp = time.monotonic()
        wall_time = time.time()

        try:
            cpu = tuple(_ticks(t) for t in psutil.cpu_times(percpu=True))
            memory = self._read_memory()
        except (OSError, RuntimeError, psutil.Error) as exc:
            raise TransientSampleFailure(f"counter read failed: {exc}") from exc

        read_bytes, write_bytes = self._read_disk_io()

        try:
            uptime = wall_time - psutil.boot_time()
        except (OSError, psutil.Error):
            uptime = 0.0

        return Snapshot(
            timestamp=timestamp,
            wall_time=wall_time,
            cpu=cpu,
            memory=memory,
            volumes=self._read_volumes(),
            interfaces=self._read_interfaces(),
            disk_read_bytes=read_bytes,
            disk_write_bytes=write_bytes,
            uptime_seconds=uptime,
        )

    def _read_memory(self) -> MemoryZones:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryZones(
            total=mem.total,
            active=getattr(mem, "active", mem.used),
            wired=getattr(mem, "wired", 0),
            compressed=getattr(mem, "compressed", 0),
            free=mem.free,
            swap_total=swap.total,
            swap_used=swap.used,
        )

    def _read_volumes(self) -> tuple[VolumeUsage, ...]:
        volumes: list[VolumeUsage] = []
        try:
            partitions = psutil.disk_partitions(all=False)
        except OSError as exc:
            logger.debug("disk_partitions_failed err=%s", exc)
            return ()

        for partition in partitions:
            if "rw" not in partition.opts.split(","):
                continue
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except OSError:
                # Unmounted mid-read or not permitted: skip this volume only
                continue
            volumes.append(
                VolumeUsage(
                    mount_point=partition.mountpoint,
                    used=usage.used,
                    free=usage.free,
                    total=usage.total,
                )
            )
        return tuple(volumes)

    def _read_interfaces(self) -> tuple[InterfaceCounters, ...]:
        try:
            counters = psutil.net_io_counters(pernic=True)
        except OSError as exc:
            logger.debug("net_io_counters_failed err=%s", exc)
            return ()

        interfaces = []
        for name, nic in sorted(counters.items()):
            if not self._include_loopback and name.startswith("lo"):
                continue
            interfaces.append(InterfaceCounters(name=name, rx_bytes=nic.bytes_recv, tx_bytes=nic.bytes_sent))
        return tuple(interfaces)

    def _read_disk_io(self) -> tuple[int | None, int | None]:
        """Cumulative disk bytes read and written, or (None, None) when unavailable."""
        try:
            counters = psutil.disk_io_counters()
        except (OSError, RuntimeError) as exc:
            logger.debug("disk_io_counters_failed err=%s", exc)
            return None, None
        if counters is None:
            return None, None
        return counters.read_bytes, counters.write_bytes
