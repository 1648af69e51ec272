"""Tests for the scan planner."""

import os
import threading
import time

import pytest

from macmon.executor import CleanupExecutor
from macmon.models import CleanableCategory, ProtectionState
from macmon.planner import (
    BELOW_MIN_SIZE,
    CACHE_ROOTS,
    CACHE_ROOTS_VERSION,
    CacheRoot,
    OpenFileIndex,
    ScanPlanner,
    entry_size,
    expand_root,
)

APP = CleanableCategory.APP_CACHE
BROWSER = CleanableCategory.BROWSER_CACHE
LOGS = CleanableCategory.SYSTEM_LOG


def _names(entries):
    return sorted(os.path.basename(e.path) for e in entries)


class TestCacheRootTable:
    def test_table_is_versioned(self):
        assert isinstance(CACHE_ROOTS_VERSION, int)

    def test_roots_are_unique(self):
        paths = [root.path for root in CACHE_ROOTS]
        assert len(paths) == len(set(paths))

    def test_only_tmp_roots_leave_home(self):
        for root in CACHE_ROOTS:
            if root.allow_outside_home:
                assert root.category is CleanableCategory.TMP
                assert root.owner_only

    def test_logs_are_age_gated(self):
        logs = [root for root in CACHE_ROOTS if root.category is LOGS]
        assert logs and all(root.min_age_days >= 7 for root in logs)

    def test_expand_root(self, home):
        assert expand_root("~/Library/Caches", home) == home / "Library" / "Caches"
        assert expand_root("/tmp", home).as_posix() == "/tmp"


class TestOpenFileIndex:
    def test_holds_file_and_ancestors(self, tmp_path):
        held = tmp_path / "dir" / "file.lock"
        index = OpenFileIndex([str(held)])
        assert index.holds(held)
        assert index.holds(tmp_path / "dir")
        assert not index.holds(tmp_path / "di")
        assert not index.holds(tmp_path / "other")

    def test_from_processes(self):
        index = OpenFileIndex.from_processes()
        assert len(index) >= 0


class TestScan:
    """Tests for scanning a fake home directory."""

    def _planner(self, home, roots, **kwargs) -> ScanPlanner:
        kwargs.setdefault("open_files", OpenFileIndex())
        return ScanPlanner(home, roots=roots, **kwargs)

    def test_in_use_file_stays_out_of_plan(self, home, make_file, trash):
        """a.tmp (2KB) is deletable, b.lock is held open; only a.tmp is planned and removed."""
        cache = home / "cache"
        a_tmp = make_file(cache / "a.tmp", 2048)
        b_lock = make_file(cache / "b.lock", 10)
        planner = self._planner(
            home, (CacheRoot("~/cache", APP, "Test cache"),), open_files=OpenFileIndex([str(b_lock)])
        )

        plan = planner.scan()
        assert _names(plan.paths) == ["a.tmp"]
        assert plan.total_bytes == 2048
        assert [(e.path, e.protection) for e in plan.excluded] == [(str(b_lock), ProtectionState.IN_USE)]

        result = CleanupExecutor(trash=trash, planner=planner).execute(plan, confirmed=True)
        assert result.removed_count == 1
        assert result.skipped_count == 0
        assert result.bytes_freed == 2048
        assert not a_tmp.exists()
        assert b_lock.exists()

        rescan = planner.scan()
        assert str(a_tmp) not in {e.path for e in rescan.paths}

    def test_directory_sizes_are_recursive(self, home, make_file):
        make_file(home / "cache" / "app" / "one.bin", 100)
        make_file(home / "cache" / "app" / "nested" / "two.bin", 50)
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan()
        (entry,) = plan.paths
        assert entry.is_dir
        assert entry.size_bytes == 150

    def test_max_depth_limits_size_walk(self, home, make_file):
        make_file(home / "cache" / "app" / "one.bin", 100)
        make_file(home / "cache" / "app" / "nested" / "two.bin", 50)
        assert entry_size(home / "cache" / "app", max_depth=1) == 100

    def test_system_caches_are_protected(self, home, make_file):
        make_file(home / "cache" / "CloudKit" / "db", 10)
        make_file(home / "cache" / "com.apple.Music" / "x", 10)
        make_file(home / "cache" / "com.vendor.tool" / "x", 10)
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan()
        assert _names(plan.paths) == ["com.vendor.tool"]
        assert {e.protection for e in plan.excluded} == {ProtectionState.PROTECTED}
        assert _names(plan.excluded) == ["CloudKit", "com.apple.Music"]

    def test_hidden_entries_and_bundles_are_protected(self, home, make_file):
        make_file(home / "cache" / ".DS_Store", 10)
        make_file(home / "cache" / "Tool.app" / "Contents" / "Info.plist", 10)
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan()
        assert plan.paths == ()
        reasons = {os.path.basename(e.path): e.reason for e in plan.excluded}
        assert reasons == {".DS_Store": "hidden entry", "Tool.app": "application bundle"}

    def test_running_app_cache_is_in_use(self, home, make_file):
        make_file(home / "cache" / "com.foo.app" / "x", 10)
        make_file(home / "cache" / "com.foo.application" / "x", 10)
        planner = self._planner(home, (CacheRoot("~/cache", APP, "Test"),), running_bundle_ids={"com.foo.app"})
        plan = planner.scan()
        assert _names(plan.paths) == ["com.foo.application"]
        assert plan.excluded[0].protection is ProtectionState.IN_USE

    def test_symlink_escaping_root_is_protected(self, home, tmp_path, make_file):
        outside = make_file(tmp_path / "outside" / "precious.txt", 10)
        (home / "cache").mkdir()
        os.symlink(outside.parent, home / "cache" / "link")
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan()
        assert plan.paths == ()
        assert plan.excluded[0].reason == "symlink escapes scanned root"

    def test_root_outside_home_is_protected(self, home, tmp_path, make_file):
        make_file(tmp_path / "elsewhere" / "x.tmp", 10)
        root = CacheRoot(str(tmp_path / "elsewhere"), APP, "Outside")
        plan = self._planner(home, (root,)).scan()
        assert plan.paths == ()
        assert plan.excluded[0].reason == "outside home directory"

    def test_owner_only_root_accepts_own_files(self, home, tmp_path, make_file):
        make_file(tmp_path / "scratch" / "mine.tmp", 10)
        root = CacheRoot(str(tmp_path / "scratch"), CleanableCategory.TMP, "Tmp", allow_outside_home=True, owner_only=True)
        plan = self._planner(home, (root,)).scan()
        assert _names(plan.paths) == ["mine.tmp"]

    def test_recent_logs_are_protected(self, home, make_file):
        fresh = make_file(home / "Library" / "Logs" / "fresh.log", 10)
        old = make_file(home / "Library" / "Logs" / "old.log", 10)
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))
        plan = self._planner(home, (CacheRoot("~/Library/Logs", LOGS, "Logs", min_age_days=7),)).scan()
        assert _names(plan.paths) == ["old.log"]
        assert plan.excluded[0].path == str(fresh)
        assert "7 days" in plan.excluded[0].reason

    def test_configured_log_age_overrides_table(self, home, make_file):
        make_file(home / "Library" / "Logs" / "fresh.log", 10)
        planner = self._planner(
            home, (CacheRoot("~/Library/Logs", LOGS, "Logs", min_age_days=7),), log_min_age_days=0
        )
        assert _names(planner.scan().paths) == ["fresh.log"]

    def test_nested_roots_are_not_listed_twice(self, home, make_file):
        make_file(home / "Library" / "Caches" / "Google" / "Chrome" / "Default" / "x", 10)
        make_file(home / "Library" / "Caches" / "com.vendor.tool" / "x", 10)
        roots = (
            CacheRoot("~/Library/Caches/Google/Chrome", BROWSER, "Chrome"),
            CacheRoot("~/Library/Caches", APP, "Apps"),
        )
        plan = self._planner(home, roots).scan()
        by_category = {e.category: os.path.basename(e.path) for e in plan.paths}
        assert by_category == {BROWSER: "Default", APP: "com.vendor.tool"}

    def test_category_filter(self, home, make_file):
        make_file(home / "browser" / "a", 10)
        make_file(home / "apps" / "b", 10)
        roots = (CacheRoot("~/browser", BROWSER, "B"), CacheRoot("~/apps", APP, "A"))
        plan = self._planner(home, roots).scan(categories=[BROWSER])
        assert _names(plan.paths) == ["a"]

    def test_missing_roots_are_ignored(self, home):
        plan = self._planner(home, (CacheRoot("~/nope", APP, "Missing"),)).scan()
        assert plan.paths == () and plan.scan_errors == ()

    def test_min_size_filter(self, home, make_file):
        make_file(home / "cache" / "big", 500)
        make_file(home / "cache" / "small", 5)
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),), min_size_bytes=100).scan()
        assert _names(plan.paths) == ["big"]
        assert [(os.path.basename(e.path), e.reason) for e in plan.excluded] == [("small", BELOW_MIN_SIZE)]

    def test_unreadable_entry_becomes_scan_error(self, home, make_file, monkeypatch):
        make_file(home / "cache" / "ok", 10)
        locked = make_file(home / "cache" / "locked", 10)
        planner = self._planner(home, (CacheRoot("~/cache", APP, "Test"),))
        original = planner.classify_entry

        def classify(path, *args, **kwargs):
            if str(path) == str(locked):
                raise PermissionError(13, "Permission denied")
            return original(path, *args, **kwargs)

        monkeypatch.setattr(planner, "classify_entry", classify)
        plan = planner.scan()
        assert _names(plan.paths) == ["ok"]
        assert [(e.path, e.reason) for e in plan.scan_errors] == [(str(locked), "access denied")]

    def test_cancelled_scan(self, home, make_file):
        make_file(home / "cache" / "a", 10)
        cancel = threading.Event()
        cancel.set()
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan(cancel=cancel)
        assert plan.paths == ()
        assert plan.warnings == ("scan cancelled",)

    def test_cancel_inside_last_root_is_reported(self, home, make_file):
        """Test a cancel arriving mid-root marks the partial plan."""
        for name in ("a", "b", "c"):
            make_file(home / "cache" / name, 10)
        planner = self._planner(home, (CacheRoot("~/cache", APP, "Test"),))
        cancel = threading.Event()
        original = planner._inspect

        def inspect(*args):
            cancel.set()
            return original(*args)

        planner._inspect = inspect
        plan = planner.scan(cancel=cancel)
        assert _names(plan.paths) == ["a"]
        assert plan.warnings == ("scan cancelled",)

    def test_old_installers_in_downloads(self, home, make_file):
        old = make_file(home / "Downloads" / "Tool-1.2.DMG", 40)
        make_file(home / "Downloads" / "fresh.pkg", 40)
        make_file(home / "Downloads" / "thesis.pdf", 40)
        month_ago = time.time() - 31 * 86400
        os.utime(old, (month_ago, month_ago))
        root = next(r for r in CACHE_ROOTS if r.category is CleanableCategory.DOWNLOADS)

        plan = self._planner(home, (root,)).scan()
        assert _names(plan.paths) == ["Tool-1.2.DMG"]
        assert [(os.path.basename(e.path), e.reason) for e in plan.excluded] == [
            ("fresh.pkg", "modified within 30 days")
        ]

    def test_every_plan_entry_is_deletable(self, home, make_file):
        for name in ("a", "b", ".hidden", "CloudKit", "com.apple.x"):
            make_file(home / "cache" / name, 10)
        plan = self._planner(home, (CacheRoot("~/cache", APP, "Test"),)).scan()
        assert all(e.protection is ProtectionState.DELETABLE for e in plan.paths)
        assert len(plan.paths) + len(plan.excluded) == 5

    def test_invalid_depth(self, home):
        with pytest.raises(ValueError):
            ScanPlanner(home, max_depth=0)
