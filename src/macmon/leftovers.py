"""Leftover resolution: files an application leaves behind in ~/Library."""

import logging
import os
import re
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from macmon.models import CleanableCategory, CleanablePath, CleanupPlan, ProtectionState, ScanError
from macmon.planner import OpenFileIndex, ScanPlanner, entry_size

logger = logging.getLogger(__name__)

USER_SCOPE = "user"
SYSTEM_SCOPE = "system"


@dataclass(slots=True, frozen=True)
class LibraryLocation:
    """A Library subdirectory where apps keep per-app files."""

    relative: str
    label: str
    scope: str


LIBRARY_LOCATIONS: tuple[LibraryLocation, ...] = (
    LibraryLocation("Preferences", "Preferences", USER_SCOPE),
    LibraryLocation("Application Support", "Application Support", USER_SCOPE),
    LibraryLocation("Caches", "Caches", USER_SCOPE),
    LibraryLocation("Saved Application State", "Saved Application State", USER_SCOPE),
    LibraryLocation("LaunchAgents", "Launch Agents", USER_SCOPE),
    LibraryLocation("Containers", "Containers", USER_SCOPE),
    LibraryLocation("Group Containers", "Group Containers", USER_SCOPE),
    LibraryLocation("Logs", "Logs", USER_SCOPE),
    LibraryLocation("WebKit", "WebKit", USER_SCOPE),
    LibraryLocation("HTTPStorages", "HTTP Storages", USER_SCOPE),
    LibraryLocation("Cookies", "Cookies", USER_SCOPE),
    LibraryLocation("Preferences", "Preferences", SYSTEM_SCOPE),
    LibraryLocation("Application Support", "Application Support", SYSTEM_SCOPE),
    LibraryLocation("Caches", "Caches", SYSTEM_SCOPE),
    LibraryLocation("LaunchAgents", "Launch Agents", SYSTEM_SCOPE),
    LibraryLocation("LaunchDaemons", "Launch Daemons", SYSTEM_SCOPE),
)

# Locations where apps also use a folder named after their display name
DISPLAY_NAME_LOCATIONS = frozenset({"Application Support", "Caches", "Logs"})

# Locations searched when looking for files of uninstalled apps; shared
# group containers and sandbox containers are never offered as orphans
ORPHAN_LOCATIONS = frozenset({"Preferences", "Application Support"})

_TEAM_ID_PREFIX = re.compile(r"^[A-Z0-9]{10}\.")
_GROUP_PREFIX = "group."
_REVERSE_DNS = re.compile(r"^[a-z][a-z0-9-]*(\.[A-Za-z0-9_-]+){2,}$")
_STRIPPED_SUFFIXES = (".plist", ".savedState", ".binarycookies")


def matches_bundle_id(name: str, bundle_id: str) -> bool:
    """
    True when a Library entry called ``name`` belongs to ``bundle_id``.

    Matches the identifier itself, the identifier followed by a dotted
    suffix (``com.foo.app.plist``, ``com.foo.app.helper``) and either form
    behind a 10-character team id (``ABCDE12345.com.foo.app``). Names that
    merely contain the identifier, or share only the vendor prefix, do not
    match.
    """
    if not bundle_id:
        return False
    if name == bundle_id or name.startswith(bundle_id + "."):
        return True
    if _TEAM_ID_PREFIX.match(name):
        rest = name[11:]
        return rest == bundle_id or rest.startswith(bundle_id + ".")
    return False


def _identifier_of(name: str) -> str | None:
    """Reverse-DNS identifier an orphan candidate is named after, if any."""
    if _TEAM_ID_PREFIX.match(name):
        name = name[11:]
    if name.startswith(_GROUP_PREFIX):
        name = name[len(_GROUP_PREFIX):]
    for suffix in _STRIPPED_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if _REVERSE_DNS.match(name):
        return name
    return None


def vendor_of(identifier: str) -> str:
    """The first two reverse-DNS components, lowercased (``com.foo``)."""
    return ".".join(identifier.lower().split(".")[:2])


class InstalledApps:
    """Identifiers, vendors and product names of the installed apps."""

    def __init__(self, bundle_ids: Iterable[str]) -> None:
        self.bundle_ids = frozenset(b for b in bundle_ids if b)
        self.vendors = frozenset(vendor_of(b) for b in self.bundle_ids if "." in b)
        self.products = frozenset(b.lower().rsplit(".", 1)[-1] for b in self.bundle_ids)

    def may_own(self, name: str, identifier: str) -> bool:
        """True when any installed app could be the owner of entry ``name``."""
        if any(matches_bundle_id(name, bundle_id) for bundle_id in self.bundle_ids):
            return True
        if vendor_of(identifier) in self.vendors:
            return True
        return any(part in self.products for part in identifier.lower().split(".")[2:])


class LeftoverResolver:
    """Finds Library entries associated with a bundle identifier."""

    def __init__(
        self,
        planner: ScanPlanner,
        system_root: str | Path = "/",
        locations: Iterable[LibraryLocation] = LIBRARY_LOCATIONS,
        max_depth: int = 16,
    ) -> None:
        self._planner = planner
        self._system_root = Path(system_root)
        self._locations = tuple(locations)
        self._max_depth = max_depth

    def location_dir(self, location: LibraryLocation) -> Path:
        base = self._planner.home if location.scope == USER_SCOPE else self._system_root
        return base / "Library" / location.relative

    def resolve(
        self,
        bundle_id: str,
        display_name: str | None = None,
        running: bool = False,
    ) -> list[CleanablePath]:
        """All leftovers of ``bundle_id``, user entries classified, system ones protected."""
        leftovers, _ = self.collect(bundle_id, display_name, running)
        return leftovers

    def collect(
        self,
        bundle_id: str,
        display_name: str | None = None,
        running: bool = False,
    ) -> tuple[list[CleanablePath], list[ScanError]]:
        """Like resolve, but also returns the matching entries that could not be inspected."""
        if not bundle_id:
            raise ValueError("bundle_id must not be empty")

        open_files = self._planner.open_file_index()
        leftovers: list[CleanablePath] = []
        errors: list[ScanError] = []
        for location in self._locations:
            directory = self.location_dir(location)
            for name in self._list(directory):
                by_name = (
                    display_name is not None
                    and location.relative in DISPLAY_NAME_LOCATIONS
                    and name == display_name
                )
                if not (by_name or matches_bundle_id(name, bundle_id)):
                    continue
                entry = self._entry(directory / name, location, running, display_name or bundle_id, open_files)
                (errors if isinstance(entry, ScanError) else leftovers).append(entry)

        logger.debug("leftovers_resolved bundle_id=%s count=%d errors=%d", bundle_id, len(leftovers), len(errors))
        return leftovers, errors

    def find_orphans(
        self, installed_bundle_ids: Iterable[str], cancel: threading.Event | None = None
    ) -> list[CleanablePath]:
        """Reverse-DNS named user entries that no installed app can own."""
        orphans, _ = self._orphans(InstalledApps(installed_bundle_ids), cancel)
        return orphans

    def _orphans(
        self, installed: InstalledApps, cancel: threading.Event | None
    ) -> tuple[list[CleanablePath], list[ScanError]]:
        open_files = self._planner.open_file_index()
        orphans: list[CleanablePath] = []
        errors: list[ScanError] = []
        for location in self._locations:
            if location.scope != USER_SCOPE or location.relative not in ORPHAN_LOCATIONS:
                continue
            directory = self.location_dir(location)
            for name in self._list(directory):
                if cancel is not None and cancel.is_set():
                    return orphans, errors
                if name.startswith(".") or name.startswith("com.apple."):
                    continue
                identifier = _identifier_of(name)
                if identifier is None or identifier.startswith("com.apple."):
                    continue
                if installed.may_own(name, identifier):
                    continue
                entry = self._entry(directory / name, location, False, "", open_files)
                (errors if isinstance(entry, ScanError) else orphans).append(entry)
        return orphans, errors

    def scan_orphans(
        self, installed_bundle_ids: Iterable[str], cancel: threading.Event | None = None
    ) -> CleanupPlan:
        """Orphaned leftovers as a reviewable plan."""
        found, errors = self._orphans(InstalledApps(installed_bundle_ids), cancel)
        paths: list[CleanablePath] = []
        excluded: list[CleanablePath] = []
        for entry in found:
            (paths if entry.deletable else excluded).append(entry)
        warnings = ["scan cancelled"] if cancel is not None and cancel.is_set() else []
        plan = CleanupPlan(
            target="leftovers",
            paths=tuple(paths),
            excluded=tuple(excluded),
            scan_errors=tuple(errors),
            warnings=tuple(warnings),
            created_at=time.time(),
        )
        logger.info(
            "scan_complete target=leftovers paths=%d excluded=%d errors=%d bytes=%d",
            len(plan.paths), len(plan.excluded), len(plan.scan_errors), plan.total_bytes,
        )
        return plan

    def _list(self, directory: Path) -> list[str]:
        if not directory.is_dir():
            return []
        try:
            return sorted(os.listdir(directory))
        except OSError as exc:
            logger.debug("library_list_failed path=%s err=%s", directory, exc)
            return []

    def _entry(
        self,
        path: Path,
        location: LibraryLocation,
        running: bool,
        app_name: str,
        open_files: OpenFileIndex,
    ) -> CleanablePath | ScanError:
        try:
            st = path.lstat()
        except PermissionError:
            logger.info("leftover_stat_failed path=%s err=access_denied", path)
            return ScanError(str(path), "access denied")
        except OSError as exc:
            logger.info("leftover_stat_failed path=%s err=%s", path, exc)
            return ScanError(str(path), exc.strerror or str(exc))

        if location.scope == SYSTEM_SCOPE:
            state, reason = ProtectionState.PROTECTED, "system-wide location needs administrator rights"
        elif running:
            state, reason = ProtectionState.IN_USE, f"{app_name} is running"
        else:
            state, reason = self._planner.classify_entry(
                path, category=CleanableCategory.APP_LEFTOVER, open_files=open_files, st=st
            )

        return CleanablePath(
            path=str(path),
            size_bytes=entry_size(path, self._max_depth),
            category=CleanableCategory.APP_LEFTOVER,
            protection=state,
            reason=reason,
            is_dir=path.is_dir() and not path.is_symlink(),
            inode=st.st_ino,
            device=st.st_dev,
        )
