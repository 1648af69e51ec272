"""Installed application discovery and uninstall planning."""

import logging
import os
import plistlib
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path

import psutil

from macmon.leftovers import LeftoverResolver
from macmon.models import AppRecord, CleanableCategory, CleanablePath, CleanupPlan, ProtectionState
from macmon.planner import entry_size

logger = logging.getLogger(__name__)

APPLICATION_ROOTS = ("/Applications", "~/Applications")

SYSTEM_BUNDLE_PREFIXES = ("com.apple.",)

# Apps that ship with macOS and must never be offered for removal
SYSTEM_APP_NAMES = frozenset({
    "Safari", "Mail", "App Store", "System Preferences", "System Settings",
    "Finder", "Terminal", "Utilities", "Activity Monitor", "Console",
    "Disk Utility", "Font Book", "Keychain Access", "Migration Assistant",
    "Screenshot", "Preview", "TextEdit", "Time Machine", "Siri",
    "FaceTime", "Messages", "Calendar", "Contacts", "Reminders", "Notes",
    "Books", "News", "Stocks", "Home", "Voice Memos", "Photos",
    "Music", "Podcasts", "TV", "Maps", "Weather", "Clock",
    "Calculator", "Dictionary", "Archive Utility", "Bluetooth File Exchange",
    "Boot Camp Assistant", "ColorSync Utility", "Digital Color Meter",
    "Directory Utility", "Grapher", "MIDI Audio Setup", "Script Editor",
    "System Information", "VoiceOver Utility", "Automator", "Image Capture",
    "Launchpad", "Mission Control", "Stickies", "Chess", "DVD Player",
    "Photo Booth", "QuickTime Player", "AirPort Utility", "Audio MIDI Setup",
})

SELF_APP_NAMES = frozenset({"macmon"})

_BUNDLE_MARKER = ".app" + os.sep


def read_info_plist(bundle: Path) -> dict | None:
    """Parsed Contents/Info.plist of an app bundle, or None if unreadable."""
    info_path = bundle / "Contents" / "Info.plist"
    try:
        with open(info_path, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as exc:
        logger.debug("info_plist_unreadable path=%s err=%s", info_path, exc)
        return None
    return info if isinstance(info, dict) else None


def bundle_path_of(executable: str) -> str | None:
    """The outermost .app bundle containing ``executable``."""
    index = executable.find(_BUNDLE_MARKER)
    if index < 0:
        return None
    return executable[: index + len(".app")]


def running_bundle_ids() -> set[str]:
    """Bundle identifiers of running processes launched from an app bundle."""
    bundle_ids: set[str] = set()
    seen: set[str] = set()
    for proc in psutil.process_iter(attrs=["exe"]):
        try:
            exe = proc.info.get("exe") or ""
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        bundle = bundle_path_of(exe)
        if bundle is None or bundle in seen:
            continue
        seen.add(bundle)
        info = read_info_plist(Path(bundle))
        if info and info.get("CFBundleIdentifier"):
            bundle_ids.add(info["CFBundleIdentifier"])
    return bundle_ids


def is_system_app(bundle_id: str, name: str) -> bool:
    return bundle_id.startswith(SYSTEM_BUNDLE_PREFIXES) or name in SYSTEM_APP_NAMES


class AppCatalog:
    """Lists removable applications and plans their uninstall."""

    def __init__(
        self,
        resolver: LeftoverResolver,
        roots: Iterable[str] = APPLICATION_ROOTS,
        running: Callable[[], set[str]] = running_bundle_ids,
        max_depth: int = 16,
    ) -> None:
        self._resolver = resolver
        self._roots = tuple(Path(os.path.abspath(Path(root).expanduser())) for root in roots)
        self._running = running
        self._max_depth = max_depth

    @property
    def roots(self) -> tuple[Path, ...]:
        return self._roots

    def list_apps(self, with_sizes: bool = True) -> list[AppRecord]:
        """Installed non-system apps, sorted by name case-insensitively."""
        running = self._running()
        apps: list[AppRecord] = []
        seen: set[str] = set()
        for root in self._roots:
            if not root.is_dir():
                continue
            try:
                names = sorted(os.listdir(root))
            except OSError as exc:
                logger.debug("app_root_unreadable path=%s err=%s", root, exc)
                continue
            for name in names:
                if not name.endswith(".app"):
                    continue
                record = self._record(root / name, running, with_sizes)
                if record is None or record.bundle_identifier in seen:
                    continue
                seen.add(record.bundle_identifier)
                apps.append(record)

        apps.sort(key=lambda app: app.display_name.lower())
        logger.debug("apps_listed count=%d", len(apps))
        return apps

    def _record(self, bundle: Path, running: set[str], with_sizes: bool) -> AppRecord | None:
        info = read_info_plist(bundle)
        if info is None:
            return None
        bundle_id = info.get("CFBundleIdentifier")
        if not bundle_id:
            return None
        stem = bundle.name[: -len(".app")]
        display_name = info.get("CFBundleDisplayName") or info.get("CFBundleName") or stem
        if is_system_app(bundle_id, stem) or is_system_app(bundle_id, display_name):
            return None
        if stem.lower() in SELF_APP_NAMES:
            return None
        return AppRecord(
            bundle_identifier=bundle_id,
            display_name=display_name,
            install_path=str(bundle),
            is_running=bundle_id in running,
            size_bytes=entry_size(bundle, self._max_depth) if with_sizes else 0,
        )

    def find(self, bundle_id: str, with_leftovers: bool = False) -> AppRecord:
        """Look up one removable app, optionally with its leftovers attached."""
        for app in self.list_apps(with_sizes=False):
            if app.bundle_identifier == bundle_id:
                if with_leftovers:
                    leftovers = self._resolver.resolve(bundle_id, app.display_name, app.is_running)
                    app = replace(app, associated_leftovers=tuple(leftovers))
                return app
        raise KeyError(f"no removable application with bundle id {bundle_id}")

    def _check_install_path(self, install_path: str) -> Path:
        path = Path(os.path.abspath(install_path))
        if path.suffix != ".app" or path.parent not in self._roots:
            raise ValueError(f"{install_path} is not an application in {', '.join(map(str, self._roots))}")
        return path

    def plan_uninstall(self, app: AppRecord) -> CleanupPlan:
        """
        Plan removal of ``app`` and its leftovers.

        A running app puts a warning on the plan and every one of its files
        is classified in use, so nothing of it is executable until it quits.
        """
        bundle = self._check_install_path(app.install_path)
        running = app.is_running or app.bundle_identifier in self._running()
        st = bundle.lstat()

        entries = [
            CleanablePath(
                path=str(bundle),
                size_bytes=app.size_bytes or entry_size(bundle, self._max_depth),
                category=CleanableCategory.APPLICATION,
                protection=ProtectionState.IN_USE if running else ProtectionState.DELETABLE,
                reason=f"{app.display_name} is running" if running else "",
                is_dir=True,
                inode=st.st_ino,
                device=st.st_dev,
            )
        ]
        leftovers, errors = self._resolver.collect(app.bundle_identifier, app.display_name, running)
        entries.extend(leftovers)

        warnings = []
        if running:
            warnings.append(f"{app.display_name} is running; quit it before uninstalling")

        plan = CleanupPlan(
            target=f"uninstall:{app.bundle_identifier}",
            paths=tuple(e for e in entries if e.deletable),
            excluded=tuple(e for e in entries if not e.deletable),
            scan_errors=tuple(errors),
            warnings=tuple(warnings),
            created_at=time.time(),
        )
        logger.info(
            "uninstall_planned bundle_id=%s paths=%d excluded=%d errors=%d bytes=%d",
            app.bundle_identifier, len(plan.paths), len(plan.excluded), len(plan.scan_errors), plan.total_bytes,
        )
        return plan
