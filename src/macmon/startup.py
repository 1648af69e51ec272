"""
Startup items: launchd agents and daemons that start at login or boot.

Only user launch agents can be changed. Everything under the system
Library is listed read-only, and Apple's own jobs are never touched.
Removal moves the job definition to the trash after unloading it.
"""

import logging
import os
import plistlib
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from send2trash import send2trash

from macmon.errors import StartupItemError
from macmon.leftovers import SYSTEM_SCOPE, USER_SCOPE
from macmon.models import StartupItem, StartupKind

logger = logging.getLogger(__name__)

LAUNCHCTL_TIMEOUT = 10.0


@dataclass(slots=True, frozen=True)
class StartupLocation:
    """A Library folder holding launchd job definitions."""

    relative: str
    kind: StartupKind
    scope: str


STARTUP_LOCATIONS: tuple[StartupLocation, ...] = (
    StartupLocation("LaunchAgents", StartupKind.LAUNCH_AGENT, USER_SCOPE),
    StartupLocation("LaunchAgents", StartupKind.LAUNCH_AGENT, SYSTEM_SCOPE),
    StartupLocation("LaunchDaemons", StartupKind.LAUNCH_DAEMON, SYSTEM_SCOPE),
)

# Label parts that say nothing about what a job is
_GENERIC_LABEL_PARTS = frozenset({"com", "local", "user", "io", "org", "net", "app"})


def run_launchctl(args: list[str]) -> int:
    """Run launchctl and return its exit status; non-zero when it cannot run."""
    try:
        completed = subprocess.run(
            ["launchctl", *args],
            capture_output=True,
            timeout=LAUNCHCTL_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("launchctl_failed args=%s err=%s", args, exc)
        return -1
    return completed.returncode


def friendly_name(label: str, program: str = "") -> str:
    """A readable name for a job: ``com.foo.sync-helper`` becomes ``Sync Helper``."""
    parts = [part for part in label.split(".") if part]
    meaningful = [part for part in parts if part.lower() not in _GENERIC_LABEL_PARTS]
    if meaningful:
        return meaningful[-1].replace("-", " ").replace("_", " ").title()
    if parts:
        return parts[-1].title()
    return os.path.basename(program)


class StartupManager:
    """Lists, enables, disables and removes launchd startup items."""

    def __init__(
        self,
        home: str | Path,
        system_root: str | Path = "/",
        locations: Iterable[StartupLocation] = STARTUP_LOCATIONS,
        launchctl: Callable[[list[str]], int] = run_launchctl,
        trash: Callable[[str], None] = send2trash,
    ) -> None:
        self._home = Path(os.path.abspath(Path(home).expanduser()))
        self._system_root = Path(system_root)
        self._locations = tuple(locations)
        self._launchctl = launchctl
        self._trash = trash

    def location_dir(self, location: StartupLocation) -> Path:
        base = self._home if location.scope == USER_SCOPE else self._system_root
        return base / "Library" / location.relative

    def list_items(self) -> list[StartupItem]:
        """Every readable job definition, user agents first."""
        items: list[StartupItem] = []
        for location in self._locations:
            directory = self.location_dir(location)
            if not directory.is_dir():
                continue
            try:
                names = sorted(os.listdir(directory))
            except OSError as exc:
                logger.debug("startup_dir_unreadable path=%s err=%s", directory, exc)
                continue
            for name in names:
                if not name.endswith(".plist"):
                    continue
                item = self._read_item(directory / name, location)
                if item is not None:
                    items.append(item)
        logger.debug("startup_items_listed count=%d", len(items))
        return items

    def find(self, label: str) -> StartupItem:
        for item in self.list_items():
            if item.label == label:
                return item
        raise KeyError(f"no startup item with label {label}")

    def _read_item(self, path: Path, location: StartupLocation) -> StartupItem | None:
        try:
            with open(path, "rb") as f:
                job = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            logger.debug("startup_plist_unreadable path=%s err=%s", path, exc)
            return None
        if not isinstance(job, dict):
            return None

        label = job.get("Label") or path.name[: -len(".plist")]
        arguments = job.get("ProgramArguments") or []
        program = job.get("Program") or (arguments[0] if arguments else "")
        protected, reason = self._protection(label, location)
        return StartupItem(
            label=label,
            name=friendly_name(label, program),
            path=str(path),
            kind=location.kind,
            scope=location.scope,
            program=program,
            disabled=bool(job.get("Disabled", False)),
            loaded=self._launchctl(["list", label]) == 0,
            protected=protected,
            reason=reason,
        )

    def _protection(self, label: str, location: StartupLocation) -> tuple[bool, str]:
        if location.scope != USER_SCOPE or location.kind is not StartupKind.LAUNCH_AGENT:
            return True, "system-wide job needs administrator rights"
        if label.startswith("com.apple."):
            return True, "part of macOS"
        return False, ""

    def _modifiable(self, label: str) -> StartupItem:
        item = self.find(label)
        if item.protected:
            raise StartupItemError(label, item.reason)
        return item

    def set_enabled(self, label: str, enabled: bool) -> StartupItem:
        """Flip the Disabled key of a user agent and load or unload it to match."""
        item = self._modifiable(label)
        try:
            with open(item.path, "rb") as f:
                job = plistlib.load(f)
            job["Disabled"] = not enabled
            with open(item.path, "wb") as f:
                plistlib.dump(job, f, fmt=plistlib.FMT_XML)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            raise StartupItemError(label, str(exc)) from exc

        self._launchctl(["load" if enabled else "unload", item.path])
        logger.info("startup_item_changed label=%s enabled=%s", label, enabled)
        return self.find(label)

    def remove(self, label: str) -> StartupItem:
        """Unload a user agent and move its definition to the trash."""
        item = self._modifiable(label)
        self._launchctl(["unload", item.path])
        try:
            self._trash(item.path)
        except OSError as exc:
            raise StartupItemError(label, exc.strerror or str(exc)) from exc
        logger.info("startup_item_removed label=%s path=%s", label, item.path)
        return item
