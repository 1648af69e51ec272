"""Destructive executor: moves the paths of a confirmed plan to the trash."""

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from send2trash import send2trash

from macmon.errors import ConfirmationMissing, PathAccessDenied, PathVanished
from macmon.models import CleanablePath, CleanupPlan, CleanupResult, PathOutcome, PathResult, ProtectionState
from macmon.planner import OpenFileIndex, ScanPlanner

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
VANISHED = "vanished"
CHANGED = "changed since scan"


class CleanupExecutor:
    """
    Executes CleanupPlans one path at a time.

    Nothing is unlinked: every removal goes through ``trash``. Each path is
    re-verified against its scan fingerprint right before removal, and a
    failure on one path is recorded and never stops the rest of the batch.
    """

    def __init__(
        self,
        trash: Callable[[str], None] = send2trash,
        planner: ScanPlanner | None = None,
    ) -> None:
        self._trash = trash
        self._planner = planner

    def execute(
        self,
        plan: CleanupPlan,
        confirmed: bool = False,
        acknowledge_warnings: bool = False,
        cancel: threading.Event | None = None,
    ) -> CleanupResult:
        """Remove every path of ``plan``; one PathResult per path, in plan order."""
        if not confirmed:
            raise ConfirmationMissing("cleanup plan was not confirmed")
        if plan.warnings and not acknowledge_warnings:
            raise ConfirmationMissing("cleanup plan has warnings that were not acknowledged: " + "; ".join(plan.warnings))

        # One process-table walk per batch
        open_files = self._planner.open_file_index() if self._planner is not None and plan.paths else None
        outcomes: list[PathResult] = []
        cancelled = False
        for entry in plan.paths:
            if not cancelled and cancel is not None and cancel.is_set():
                cancelled = True
                logger.info("cleanup_cancelled remaining=%d", len(plan.paths) - len(outcomes))
            if cancelled:
                outcomes.append(PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=CANCELLED))
                continue
            outcomes.append(self._remove(entry, open_files))

        result = CleanupResult(
            outcomes=tuple(outcomes),
            scan_errors=tuple(
                PathResult(error.path, PathOutcome.SKIPPED_ERROR, reason=error.reason)
                for error in plan.scan_errors
            ),
            cancelled=cancelled,
        )
        logger.info(
            "cleanup_complete target=%s removed=%d skipped=%d bytes=%d",
            plan.target, result.removed_count, result.skipped_count, result.bytes_freed,
        )
        return result

    def _remove(self, entry: CleanablePath, open_files: OpenFileIndex | None = None) -> PathResult:
        if not entry.deletable:
            logger.warning("cleanup_skipped path=%s outcome=skipped-protected", entry.path)
            return PathResult(entry.path, PathOutcome.SKIPPED_PROTECTED, reason=entry.reason)

        try:
            changed = self._verify(entry)
            state, reason = self._reclassify(entry, open_files)
        except PathVanished:
            logger.info("cleanup_skipped path=%s reason=%s", entry.path, VANISHED)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=VANISHED)
        except PathAccessDenied as exc:
            logger.warning("cleanup_skipped path=%s reason=access_denied", entry.path)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=str(exc))
        except OSError as exc:
            logger.warning("cleanup_skipped path=%s err=%s", entry.path, exc)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=exc.strerror or str(exc))

        if changed:
            logger.warning("cleanup_skipped path=%s reason=%s", entry.path, changed)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=changed)
        if state is ProtectionState.PROTECTED:
            logger.warning("cleanup_skipped path=%s outcome=skipped-protected reason=%s", entry.path, reason)
            return PathResult(entry.path, PathOutcome.SKIPPED_PROTECTED, reason=reason)
        if state is not ProtectionState.DELETABLE:
            logger.info("cleanup_skipped path=%s reason=%s", entry.path, reason)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=reason)

        try:
            self._trash(entry.path)
        except PermissionError as exc:
            denied = PathAccessDenied(entry.path, exc.strerror or "")
            logger.warning("cleanup_failed path=%s err=%s", entry.path, denied)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=str(denied))
        except FileNotFoundError:
            logger.info("cleanup_skipped path=%s reason=%s", entry.path, VANISHED)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=VANISHED)
        except OSError as exc:
            logger.warning("cleanup_failed path=%s err=%s", entry.path, exc)
            return PathResult(entry.path, PathOutcome.SKIPPED_ERROR, reason=exc.strerror or str(exc))

        logger.info("cleanup_removed path=%s bytes=%d", entry.path, entry.size_bytes)
        return PathResult(entry.path, PathOutcome.REMOVED, size_bytes=entry.size_bytes)

    def _verify(self, entry: CleanablePath) -> str:
        """
        Check the path is still the entry that was scanned.

        Raises PathVanished when it is gone and PathAccessDenied when it can
        no longer be inspected. Returns a skip reason when something else now
        lives at the path, or an empty string.
        """
        path = Path(entry.path)
        try:
            st = path.lstat()
        except FileNotFoundError as exc:
            raise PathVanished(entry.path) from exc
        except PermissionError as exc:
            raise PathAccessDenied(entry.path, exc.strerror or "") from exc

        if entry.inode is not None and st.st_ino != entry.inode:
            return CHANGED
        if entry.device is not None and st.st_dev != entry.device:
            return CHANGED
        if (path.is_dir() and not path.is_symlink()) != entry.is_dir:
            return CHANGED
        return ""

    def _reclassify(self, entry: CleanablePath, open_files: OpenFileIndex | None) -> tuple[ProtectionState, str]:
        if self._planner is None:
            return ProtectionState.DELETABLE, ""
        return self._planner.classify_path(entry.path, entry.category, open_files)
