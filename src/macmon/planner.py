"""
Scan planner: enumerates cache roots and classifies what may be removed.

The roots and the protected-name lists are plain data so they can be read,
versioned and tested without touching the filesystem.
"""

import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path

import psutil

from macmon.models import CleanableCategory, CleanablePath, CleanupPlan, ProtectionState, ScanError

logger = logging.getLogger(__name__)

CACHE_ROOTS_VERSION = 5

TMPDIR_TOKEN = "{tmpdir}"

BELOW_MIN_SIZE = "below minimum size"


@dataclass(slots=True, frozen=True)
class CacheRoot:
    """A directory whose direct children are cleanup candidates."""

    path: str  # "~/" is the home directory, "{tmpdir}" the per-user temp dir
    category: CleanableCategory
    description: str
    allow_outside_home: bool = False
    min_age_days: int = 0
    owner_only: bool = False
    suffixes: tuple[str, ...] = ()  # when set, only children with these lowercase suffixes are candidates


_BROWSER = CleanableCategory.BROWSER_CACHE
_APP = CleanableCategory.APP_CACHE

CACHE_ROOTS: tuple[CacheRoot, ...] = (
    CacheRoot("~/Library/Caches/com.apple.Safari", _BROWSER, "Safari Cache"),
    CacheRoot("~/Library/Caches/Google/Chrome", _BROWSER, "Chrome Cache"),
    CacheRoot("~/Library/Caches/com.google.Chrome", _BROWSER, "Chrome Cache"),
    CacheRoot("~/Library/Application Support/Google/Chrome/Default/Code Cache", _BROWSER, "Chrome Code Cache"),
    CacheRoot("~/Library/Application Support/Google/Chrome/Default/GPUCache", _BROWSER, "Chrome GPU Cache"),
    CacheRoot("~/Library/Caches/Firefox", _BROWSER, "Firefox Cache"),
    CacheRoot("~/Library/Caches/org.mozilla.firefox", _BROWSER, "Firefox Cache"),
    CacheRoot("~/Library/Caches/BraveSoftware", _BROWSER, "Brave Cache"),
    CacheRoot("~/Library/Caches/com.microsoft.edgemac", _BROWSER, "Edge Cache"),
    CacheRoot("~/Library/Caches/com.operasoftware.Opera", _BROWSER, "Opera Cache"),
    CacheRoot("~/Library/Caches", _APP, "Application Caches"),
    CacheRoot("~/Library/Developer/Xcode/DerivedData", _APP, "Xcode DerivedData"),
    CacheRoot("~/Library/Developer/CoreSimulator/Caches", _APP, "Simulator Caches"),
    CacheRoot("~/Library/Caches/pip", _APP, "pip Cache"),
    CacheRoot("~/Library/Caches/Homebrew", _APP, "Homebrew Cache"),
    CacheRoot("~/Library/Caches/Yarn", _APP, "Yarn Cache"),
    CacheRoot("~/.npm/_cacache", _APP, "npm Cache"),
    CacheRoot("~/.gradle/caches", _APP, "Gradle Caches"),
    CacheRoot("~/.cache", _APP, "User Cache Directory"),
    CacheRoot("~/Library/Logs", CleanableCategory.SYSTEM_LOG, "User Logs", min_age_days=7),
    CacheRoot(
        "~/Downloads",
        CleanableCategory.DOWNLOADS,
        "Old Installers",
        min_age_days=30,
        suffixes=(".dmg", ".pkg", ".iso"),
    ),
    CacheRoot("/tmp", CleanableCategory.TMP, "Temporary Files", allow_outside_home=True, owner_only=True),
    CacheRoot(TMPDIR_TOKEN, CleanableCategory.TMP, "Per-user Temporary Files", allow_outside_home=True, owner_only=True),
)

# Cache entries owned by the OS; removing them breaks sync or sign-in state
EXCLUDED_CACHE_NAMES = frozenset({
    "CloudKit",
    "com.apple.nsurlsessiond",
    "com.apple.HomeKit",
    "com.apple.bird",
    "com.apple.iCloudHelper",
    "com.apple.ap.adprivacyd",
    "com.apple.parsecd",
    "familycircled",
    "FamilyCircle",
})

EXCLUDED_CACHE_PREFIXES = ("com.apple.",)

ALLOWED_HIDDEN_NAMES = frozenset({".cache"})


def expand_root(path: str, home: Path) -> Path:
    """Resolve a table path against ``home`` and the per-user temp dir."""
    if path == TMPDIR_TOKEN:
        return Path(tempfile.gettempdir())
    if path == "~":
        return home
    if path.startswith("~/"):
        return home / path[2:]
    return Path(path)


def _is_within(path: str, parent: str) -> bool:
    return path == parent or path.startswith(parent.rstrip(os.sep) + os.sep)


def _named_after(name: str, bundle_id: str) -> bool:
    return name == bundle_id or name.startswith(bundle_id + ".")


class OpenFileIndex:
    """Set of files currently held open by live processes."""

    def __init__(self, paths: Iterable[str] = ()) -> None:
        self._paths = frozenset(os.path.abspath(p) for p in paths)

    @classmethod
    def from_processes(cls) -> "OpenFileIndex":
        paths: list[str] = []
        for proc in psutil.process_iter(attrs=["open_files"]):
            try:
                files = proc.info.get("open_files") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            paths.extend(f.path for f in files)
        logger.debug("open_files_indexed count=%d", len(paths))
        return cls(paths)

    def holds(self, path: str | Path) -> bool:
        """True when an open file is ``path`` itself or lies below it."""
        candidates = {os.path.abspath(path), os.path.realpath(path)}
        for open_path in self._paths:
            if any(_is_within(open_path, candidate) for candidate in candidates):
                return True
        return False

    def __len__(self) -> int:
        return len(self._paths)


def entry_size(path: Path, max_depth: int) -> int:
    """Apparent size in bytes, summed to ``max_depth`` levels without following links."""
    try:
        st = path.lstat()
    except OSError:
        return 0
    if not path.is_dir() or path.is_symlink():
        return st.st_size

    total = 0
    stack = [(path, 0)]
    while stack:
        current, depth = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            if depth + 1 < max_depth:
                                stack.append((Path(entry.path), depth + 1))
                        else:
                            total += entry.stat(follow_symlinks=False).st_size
                    except OSError:
                        continue
        except OSError as exc:
            logger.debug("size_walk_failed path=%s err=%s", current, exc)
    return total


class ScanPlanner:
    """
    Builds CleanupPlans from the cache-root table.

    Every direct child of an existing root is a candidate and ends up in
    exactly one of plan.paths (deletable), plan.excluded (protected or in
    use) or plan.scan_errors.
    """

    def __init__(
        self,
        home: str | Path,
        roots: Iterable[CacheRoot] = CACHE_ROOTS,
        max_depth: int = 16,
        open_files: OpenFileIndex | None = None,
        running_bundle_ids: Iterable[str] = (),
        min_size_bytes: int = 0,
        log_min_age_days: int | None = None,
    ) -> None:
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self._home = Path(os.path.abspath(Path(home).expanduser()))
        self._roots = tuple(roots)
        self._max_depth = max_depth
        self._open_files = open_files
        self._running = frozenset(running_bundle_ids)
        self._min_size = min_size_bytes
        self._log_min_age_days = log_min_age_days
        self._lock = threading.Lock()

    @property
    def home(self) -> Path:
        return self._home

    @property
    def roots(self) -> tuple[CacheRoot, ...]:
        return self._roots

    def set_running_bundle_ids(self, bundle_ids: Iterable[str]) -> None:
        self._running = frozenset(bundle_ids)

    def root_path(self, root: CacheRoot) -> Path:
        return expand_root(root.path, self._home)

    def open_file_index(self) -> OpenFileIndex:
        if self._open_files is None:
            return OpenFileIndex.from_processes()
        return self._open_files

    def _min_age_days(self, root: CacheRoot) -> int:
        if root.category is CleanableCategory.SYSTEM_LOG and self._log_min_age_days is not None:
            return self._log_min_age_days
        return root.min_age_days

    def classify_entry(
        self,
        path: str | Path,
        root: CacheRoot | None = None,
        category: CleanableCategory | None = None,
        open_files: OpenFileIndex | None = None,
        st: os.stat_result | None = None,
    ) -> tuple[ProtectionState, str]:
        """
        Decide whether ``path`` may be removed.

        Returns the protection state and, for anything not deletable, the
        reason. ``root`` enables the root-specific rules (home containment,
        ownership, age gate, symlink escape). Raises OSError when the entry
        cannot be stat'd.
        """
        path = Path(os.path.abspath(path))
        name = path.name
        if st is None:
            st = path.lstat()

        if name in EXCLUDED_CACHE_NAMES or name.startswith(EXCLUDED_CACHE_PREFIXES):
            return ProtectionState.PROTECTED, "system-owned cache"
        if name.endswith(".app") and category is not CleanableCategory.APPLICATION:
            return ProtectionState.PROTECTED, "application bundle"
        if name.startswith(".") and name not in ALLOWED_HIDDEN_NAMES:
            return ProtectionState.PROTECTED, "hidden entry"

        if root is not None:
            root_dir = self.root_path(root)
            if not root.allow_outside_home and not _is_within(str(path), str(self._home)):
                return ProtectionState.PROTECTED, "outside home directory"
            if path.is_symlink():
                target = os.path.realpath(path)
                if not _is_within(target, os.path.realpath(root_dir)):
                    return ProtectionState.PROTECTED, "symlink escapes scanned root"
            if root.owner_only and hasattr(os, "getuid") and st.st_uid != os.getuid():
                return ProtectionState.PROTECTED, "not owned by current user"
            min_age = self._min_age_days(root)
            if min_age and time.time() - st.st_mtime < min_age * 86400:
                return ProtectionState.PROTECTED, f"modified within {min_age} days"

        index = open_files if open_files is not None else self._open_files
        if index is not None and index.holds(path):
            return ProtectionState.IN_USE, "open by a running process"
        for bundle_id in self._running:
            if _named_after(name, bundle_id):
                return ProtectionState.IN_USE, f"{bundle_id} is running"

        return ProtectionState.DELETABLE, ""

    def find_root(self, path: str | Path) -> CacheRoot | None:
        """The table root that lists ``path`` as a direct child, if any."""
        parent = os.path.abspath(Path(path).parent)
        for root in self._roots:
            if os.path.abspath(self.root_path(root)) == parent:
                return root
        return None

    def classify_path(
        self,
        path: str | Path,
        category: CleanableCategory | None = None,
        open_files: OpenFileIndex | None = None,
    ) -> tuple[ProtectionState, str]:
        """Classify a path against its root; builds a fresh open-file index unless one is given."""
        root = self.find_root(path)
        if root is not None and category is not None and root.category is not category:
            # Listed by another component (leftovers, uninstall); only the shared rules apply
            root = None
        return self.classify_entry(
            path,
            root=root,
            category=category,
            open_files=open_files if open_files is not None else self.open_file_index(),
        )

    def _nested_roots(self) -> set[str]:
        return {os.path.abspath(self.root_path(root)) for root in self._roots}

    def scan(
        self,
        categories: Iterable[CleanableCategory] | None = None,
        cancel: threading.Event | None = None,
        target: str = "caches",
    ) -> CleanupPlan:
        """Enumerate the roots of ``categories`` (all by default) into a plan."""
        wanted = set(categories) if categories is not None else None
        open_files = self.open_file_index()
        nested = self._nested_roots()

        paths: list[CleanablePath] = []
        excluded: list[CleanablePath] = []
        errors: list[ScanError] = []
        warnings: list[str] = []
        seen: set[str] = set()
        cancelled = False

        with self._lock:
            for root in self._roots:
                if wanted is not None and root.category not in wanted:
                    continue
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                root_dir = self.root_path(root)
                if not root_dir.is_dir():
                    continue
                try:
                    children = sorted(os.listdir(root_dir))
                except OSError as exc:
                    errors.append(ScanError(str(root_dir), exc.strerror or str(exc)))
                    continue

                for name in children:
                    if cancel is not None and cancel.is_set():
                        cancelled = True
                        break
                    if root.suffixes and not name.lower().endswith(root.suffixes):
                        continue
                    child = Path(os.path.abspath(root_dir / name))
                    key = str(child)
                    if key in seen:
                        continue
                    # A child that is or contains another root belongs to that root
                    if any(_is_within(other, key) for other in nested):
                        continue
                    seen.add(key)

                    entry = self._inspect(child, root, open_files)
                    if isinstance(entry, ScanError):
                        errors.append(entry)
                    elif not entry.deletable:
                        excluded.append(entry)
                    elif entry.size_bytes < self._min_size:
                        excluded.append(replace(entry, reason=BELOW_MIN_SIZE))
                    else:
                        paths.append(entry)
                if cancelled:
                    break

        if cancelled:
            warnings.append("scan cancelled")

        plan = CleanupPlan(
            target=target,
            paths=tuple(paths),
            excluded=tuple(excluded),
            scan_errors=tuple(errors),
            warnings=tuple(warnings),
            created_at=time.time(),
        )
        logger.info(
            "scan_complete target=%s paths=%d excluded=%d errors=%d bytes=%d",
            target, len(plan.paths), len(plan.excluded), len(plan.scan_errors), plan.total_bytes,
        )
        return plan

    def _inspect(self, path: Path, root: CacheRoot, open_files: OpenFileIndex) -> CleanablePath | ScanError:
        try:
            st = path.lstat()
            state, reason = self.classify_entry(path, root, root.category, open_files, st)
        except PermissionError:
            return ScanError(str(path), "access denied")
        except OSError as exc:
            return ScanError(str(path), exc.strerror or str(exc))

        is_dir = path.is_dir() and not path.is_symlink()
        return CleanablePath(
            path=str(path),
            size_bytes=entry_size(path, self._max_depth),
            category=root.category,
            protection=state,
            reason=reason,
            is_dir=is_dir,
            inode=st.st_ino,
            device=st.st_dev,
        )
