"""Process listing and termination."""

import logging
import os
from collections.abc import Iterable

import psutil

from macmon.errors import ProcessControlError
from macmon.models import ProcessInfo, SortKey

logger = logging.getLogger(__name__)

SYSTEM_USERS = frozenset({
    "root", "_windowserver", "_coreaudiod", "_mdnsresponder",
    "_spotlight", "_hidd", "_distnoted", "_networkd",
})

SYSTEM_PATH_PREFIXES = ("/System/", "/usr/", "/sbin/")

SYSTEM_PROCESS_NAMES = frozenset({
    "kernel_task", "launchd", "WindowServer", "loginwindow", "Finder",
    "Dock", "SystemUIServer", "cfprefsd", "trustd", "securityd",
    "distnoted", "UserEventAgent", "secinitd", "coreservicesd",
    "mds", "mds_stores", "mdworker", "notifyd", "logd", "powerd",
})

# Descending by default for the usage keys, ascending for identity keys
_DESCENDING = (SortKey.CPU, SortKey.MEM)

_SORT_FUNCS = {
    SortKey.CPU: lambda p: p.cpu_percent,
    SortKey.MEM: lambda p: p.memory_percent,
    SortKey.PID: lambda p: p.pid,
    SortKey.USER: lambda p: p.username.lower(),
    SortKey.NAME: lambda p: p.name.lower(),
}

_ATTRS = [
    "pid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "num_threads",
    "cmdline",
    "exe",
]


def is_system_process(name: str, username: str, exe: str = "") -> bool:
    """Heuristic for processes owned by the OS rather than the user."""
    if username in SYSTEM_USERS:
        return True
    if exe.startswith(SYSTEM_PATH_PREFIXES):
        return True
    return name in SYSTEM_PROCESS_NAMES


def sort_processes(
    processes: Iterable[ProcessInfo],
    key: SortKey = SortKey.CPU,
    reverse: bool | None = None,
) -> list[ProcessInfo]:
    """Sort processes by ``key``; direction defaults per key."""
    if reverse is None:
        reverse = key in _DESCENDING
    return sorted(processes, key=_SORT_FUNCS[key], reverse=reverse)


class ProcessController:
    """
    Lists live processes and sends termination signals.

    The caller confirms intent. The only targets refused here are pid 0,
    pid 1 and the host process itself.
    """

    def __init__(self) -> None:
        self._own_pid = os.getpid()

    @property
    def protected_pids(self) -> frozenset[int]:
        return frozenset({0, 1, self._own_pid})

    def list_processes(
        self,
        sort_key: SortKey = SortKey.CPU,
        reverse: bool | None = None,
        include_system: bool = True,
    ) -> list[ProcessInfo]:
        """Snapshot all running processes, sorted by ``sort_key``."""
        processes = self._collect()
        if not include_system:
            processes = [p for p in processes if not p.is_system]
        return sort_processes(processes, sort_key, reverse)

    def _collect(self) -> list[ProcessInfo]:
        processes: list[ProcessInfo] = []
        for proc in psutil.process_iter(attrs=_ATTRS):
            try:
                with proc.oneshot():
                    info = proc.info

                    cmdline = info.get("cmdline") or []
                    name = info.get("name") or ""
                    command_line = " ".join(cmdline) if cmdline else name

                    mem_info = info.get("memory_info")
                    username = info.get("username") or ""

                    processes.append(
                        ProcessInfo(
                            pid=info.get("pid", 0),
                            name=name,
                            username=username,
                            status=info.get("status") or "?",
                            cpu_percent=info.get("cpu_percent") or 0.0,
                            memory_percent=info.get("memory_percent") or 0.0,
                            memory_rss=mem_info.rss if mem_info else 0,
                            threads=info.get("num_threads") or 0,
                            command_line=command_line,
                            is_system=is_system_process(name, username, info.get("exe") or ""),
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                # Died mid-poll or not visible to us
                continue
        return processes

    def terminate(self, pid: int, force: bool = False) -> None:
        """Send SIGTERM (or SIGKILL when ``force``) to ``pid``."""
        if pid in self.protected_pids:
            raise ProcessControlError(pid, "refusing to signal a protected process")
        try:
            proc = psutil.Process(pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess as exc:
            raise ProcessControlError(pid, "no such process") from exc
        except psutil.AccessDenied as exc:
            raise ProcessControlError(pid, "access denied") from exc
        logger.info("process_signalled pid=%s signal=%s", pid, "SIGKILL" if force else "SIGTERM")
