"""Tests for the cleanup executor."""

import errno
import os
import threading

import pytest

from macmon.errors import ConfirmationMissing
from macmon.executor import CANCELLED, CHANGED, VANISHED, CleanupExecutor
from macmon.models import CleanableCategory, CleanablePath, CleanupPlan, PathOutcome, ScanError
from macmon.planner import CacheRoot, OpenFileIndex, ScanPlanner

APP = CleanableCategory.APP_CACHE


@pytest.fixture
def cache(home, make_file):
    make_file(home / "cache" / "one.bin", 100)
    make_file(home / "cache" / "two.bin", 200)
    make_file(home / "cache" / "three" / "nested.bin", 300)
    return home / "cache"


def _planner(home, open_files=None):
    return ScanPlanner(home, roots=(CacheRoot("~/cache", APP, "Test"),), open_files=open_files or OpenFileIndex())


def _outcomes(result):
    return {os.path.basename(r.path): (r.outcome, r.reason) for r in result.outcomes}


class TestConfirmation:
    def test_unconfirmed_plan_is_refused(self, home, cache, trash):
        plan = _planner(home).scan()
        with pytest.raises(ConfirmationMissing):
            CleanupExecutor(trash=trash).execute(plan)
        assert trash.calls == []
        assert (cache / "one.bin").exists()

    def test_warnings_need_acknowledgement(self, home, cache, trash):
        plan = CleanupPlan(target="caches", paths=_planner(home).scan().paths, warnings=("heads up",))
        with pytest.raises(ConfirmationMissing, match="heads up"):
            CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert trash.calls == []

        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True, acknowledge_warnings=True)
        assert result.removed_count == 3


class TestExecute:
    """Tests for CleanupExecutor.execute on a real temp directory."""

    def test_removes_all_deletable_paths(self, home, cache, trash):
        plan = _planner(home).scan()
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert result.removed_count == 3
        assert result.bytes_freed == 600
        assert [r.path for r in result.outcomes] == [e.path for e in plan.paths]
        assert list(cache.iterdir()) == []

    def test_vanished_path_is_skipped(self, home, cache, trash):
        plan = _planner(home).scan()
        (cache / "one.bin").unlink()
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert _outcomes(result)["one.bin"] == (PathOutcome.SKIPPED_ERROR, VANISHED)
        assert result.removed_count == 2
        assert result.bytes_freed == 500

    def test_replaced_path_is_skipped(self, home, cache, trash):
        """A file swapped for a directory after the scan is left alone."""
        plan = _planner(home).scan()
        (cache / "two.bin").unlink()
        (cache / "two.bin").mkdir()
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert _outcomes(result)["two.bin"] == (PathOutcome.SKIPPED_ERROR, CHANGED)
        assert (cache / "two.bin").is_dir()

    def test_permission_error_does_not_stop_batch(self, home, cache, trash):
        plan = _planner(home).scan()
        trash.failures[str(cache / "one.bin")] = PermissionError(errno.EACCES, "Permission denied")
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        outcome, reason = _outcomes(result)["one.bin"]
        assert outcome is PathOutcome.SKIPPED_ERROR
        assert reason.startswith("access denied")
        assert result.removed_count == 2
        assert len(trash.calls) == 3

    def test_other_os_error_is_recorded(self, home, cache, trash):
        plan = _planner(home).scan()
        trash.failures[str(cache / "two.bin")] = OSError(errno.EBUSY, "Resource busy")
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert _outcomes(result)["two.bin"] == (PathOutcome.SKIPPED_ERROR, "Resource busy")

    def test_cancel_skips_remaining_paths(self, home, cache, trash):
        plan = _planner(home).scan()
        cancel = threading.Event()
        cancel.set()
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True, cancel=cancel)
        assert result.cancelled
        assert result.removed_count == 0
        assert {r.reason for r in result.outcomes} == {CANCELLED}
        assert len(result.outcomes) == len(plan.paths)

    def test_scan_errors_are_carried(self, home, cache, trash):
        scanned = _planner(home).scan()
        plan = CleanupPlan(
            target="caches",
            paths=scanned.paths,
            scan_errors=(ScanError(str(home / "cache" / "locked"), "access denied"),),
        )
        result = CleanupExecutor(trash=trash).execute(plan, confirmed=True)
        assert [(r.outcome, r.reason) for r in result.scan_errors] == [
            (PathOutcome.SKIPPED_ERROR, "access denied")
        ]
        assert len(result.outcomes) == 3

    def test_empty_plan(self, trash):
        result = CleanupExecutor(trash=trash).execute(CleanupPlan(target="caches"), confirmed=True)
        assert result.outcomes == ()
        assert result.bytes_freed == 0


class TestReclassification:
    """Paths are re-checked against the planner right before removal."""

    def test_file_opened_after_scan_is_skipped(self, home, cache, trash):
        plan = _planner(home).scan()
        busy = OpenFileIndex([str(cache / "one.bin")])
        result = CleanupExecutor(trash=trash, planner=_planner(home, busy)).execute(plan, confirmed=True)
        assert _outcomes(result)["one.bin"] == (PathOutcome.SKIPPED_ERROR, "open by a running process")
        assert (cache / "one.bin").exists()
        assert result.removed_count == 2

    def test_app_launched_after_scan_is_skipped(self, home, make_file, trash):
        make_file(home / "cache" / "com.foo.app" / "blob", 10)
        planner = _planner(home)
        plan = planner.scan()
        planner.set_running_bundle_ids({"com.foo.app"})
        result = CleanupExecutor(trash=trash, planner=planner).execute(plan, confirmed=True)
        assert _outcomes(result)["com.foo.app"] == (PathOutcome.SKIPPED_ERROR, "com.foo.app is running")

    def test_protected_path_is_skipped_protected(self, home, make_file, trash):
        target = make_file(home / "cache" / "com.apple.Music", 10)
        st = target.lstat()
        entry = CleanablePath(str(target), 10, APP, inode=st.st_ino, device=st.st_dev)
        plan = CleanupPlan(target="caches", paths=(entry,))
        result = CleanupExecutor(trash=trash, planner=_planner(home)).execute(plan, confirmed=True)
        assert _outcomes(result)["com.apple.Music"] == (PathOutcome.SKIPPED_PROTECTED, "system-owned cache")
        assert trash.calls == []

    def test_open_files_indexed_once_per_batch(self, home, cache, trash, monkeypatch):
        walks = []

        def from_processes(cls):
            walks.append(1)
            return OpenFileIndex()

        monkeypatch.setattr(OpenFileIndex, "from_processes", classmethod(from_processes))
        planner = ScanPlanner(home, roots=(CacheRoot("~/cache", APP, "Test"),))
        plan = _planner(home).scan()
        result = CleanupExecutor(trash=trash, planner=planner).execute(plan, confirmed=True)
        assert result.removed_count == 3
        assert len(walks) == 1
