"""Tests for process listing and termination."""

import os
import subprocess
import sys

import psutil
import pytest

from macmon.errors import ProcessControlError
from macmon.models import ProcessInfo, SortKey
from macmon.processes import ProcessController, is_system_process, sort_processes


def _proc(pid, name="proc", user="alice", cpu=0.0, mem=0.0):
    return ProcessInfo(
        pid=pid,
        name=name,
        username=user,
        status="running",
        cpu_percent=cpu,
        memory_percent=mem,
        memory_rss=0,
        threads=1,
        command_line=name,
    )


class TestIsSystemProcess:
    @pytest.mark.parametrize(
        "name, user, exe, expected",
        [
            ("WindowServer", "_windowserver", "", True),
            ("launchd", "alice", "", True),
            ("helper", "alice", "/System/Library/helper", True),
            ("python3", "alice", "/opt/homebrew/bin/python3", False),
            ("sshd", "root", "", True),
        ],
    )
    def test_heuristic(self, name, user, exe, expected):
        assert is_system_process(name, user, exe) is expected


class TestSortProcesses:
    def test_cpu_descending_by_default(self):
        procs = [_proc(1, cpu=5.0), _proc(2, cpu=50.0), _proc(3, cpu=20.0)]
        assert [p.pid for p in sort_processes(procs, SortKey.CPU)] == [2, 3, 1]

    def test_memory_descending(self):
        procs = [_proc(1, mem=1.0), _proc(2, mem=3.0)]
        assert [p.pid for p in sort_processes(procs, SortKey.MEM)] == [2, 1]

    def test_identity_keys_ascending(self):
        procs = [_proc(3, name="zsh"), _proc(1, name="Bash"), _proc(2, name="cat")]
        assert [p.pid for p in sort_processes(procs, SortKey.PID)] == [1, 2, 3]
        assert [p.name for p in sort_processes(procs, SortKey.NAME)] == ["Bash", "cat", "zsh"]

    def test_explicit_direction(self):
        procs = [_proc(1, cpu=5.0), _proc(2, cpu=50.0)]
        assert [p.pid for p in sort_processes(procs, SortKey.CPU, reverse=False)] == [1, 2]


class TestProcessController:
    """Tests for ProcessController against live processes."""

    def test_lists_own_process(self):
        processes = ProcessController().list_processes(SortKey.PID)
        assert any(p.pid == os.getpid() for p in processes)
        assert [p.pid for p in processes] == sorted(p.pid for p in processes)

    def test_user_only_listing(self):
        processes = ProcessController().list_processes(include_system=False)
        assert all(not p.is_system for p in processes)

    @pytest.mark.parametrize("pid", [0, 1])
    def test_refuses_protected_pids(self, pid):
        with pytest.raises(ProcessControlError, match="protected"):
            ProcessController().terminate(pid)

    def test_refuses_own_pid(self):
        with pytest.raises(ProcessControlError):
            ProcessController().terminate(os.getpid())

    def test_missing_process(self, monkeypatch):
        def vanished(pid):
            raise psutil.NoSuchProcess(pid)

        monkeypatch.setattr(psutil, "Process", vanished)
        with pytest.raises(ProcessControlError, match="no such process"):
            ProcessController().terminate(999_999)

    def test_access_denied(self, monkeypatch):
        def denied(pid):
            raise psutil.AccessDenied(pid)

        monkeypatch.setattr(psutil, "Process", denied)
        with pytest.raises(ProcessControlError, match="access denied"):
            ProcessController().terminate(999_999)

    @pytest.mark.parametrize("force", [False, True])
    def test_terminates_child(self, force):
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            ProcessController().terminate(child.pid, force=force)
            assert child.wait(timeout=10) != 0
        finally:
            if child.poll() is None:
                child.kill()
                child.wait()
