"""Shared fixtures for macmon tests."""

import shutil
from pathlib import Path

import pytest

from macmon.models import CpuTicks, InterfaceCounters, MemoryZones, Snapshot, VolumeUsage


class FakeTrash:
    """Stands in for send2trash: records calls and removes the path."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, OSError] = {}

    def __call__(self, path: str) -> None:
        self.calls.append(path)
        if path in self.failures:
            raise self.failures[path]
        target = Path(path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        else:
            target.unlink()


def build_snapshot(
    t: float,
    rx: int = 0,
    tx: int = 0,
    busy: float = 0.0,
    idle: float = 0.0,
    read: int | None = 0,
    write: int | None = 0,
    memory: MemoryZones | None = None,
    cores: int = 1,
) -> Snapshot:
    return Snapshot(
        timestamp=t,
        wall_time=1_700_000_000.0 + t,
        cpu=tuple(CpuTicks(busy=busy, idle=idle) for _ in range(cores)),
        memory=memory or MemoryZones(total=1000, active=300, wired=100, compressed=100, free=500, swap_total=100, swap_used=25),
        volumes=(VolumeUsage(mount_point="/", used=600, free=400, total=1000),),
        interfaces=(InterfaceCounters(name="en0", rx_bytes=rx, tx_bytes=tx),),
        disk_read_bytes=read,
        disk_write_bytes=write,
        uptime_seconds=3600.0 + t,
    )


@pytest.fixture
def make_snapshot():
    """Factory for synthetic snapshots."""
    return build_snapshot


@pytest.fixture
def trash() -> FakeTrash:
    return FakeTrash()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """An empty fake home directory."""
    path = tmp_path / "home"
    path.mkdir()
    return path


def write_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


@pytest.fixture
def make_file():
    """Factory writing a file of a given size, creating parents."""
    return write_file
