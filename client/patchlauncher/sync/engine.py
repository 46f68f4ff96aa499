"""Check/apply orchestration over a Manifest.

Check answers "does the local tree diverge from the manifest?" and stops at the
first divergent entry. Apply walks every entry, re-checks it and downloads only
what still diverges. Both process entries strictly in manifest order, one at a
time, and poll cancellation once per entry; a file transfer in flight always
finishes (or fails atomically) before cancellation is honored.

Progress during apply is measured in manifest bytes scanned so far, not bytes
transferred: every entry contributes its full remote size whether or not it was
downloaded, so percentages advance per file.

UpdateEngine adds worker-thread forms with one slot per operation kind. Each slot
is single-flight: starting a second check (or apply) while one runs raises
AlreadyRunning. Results come back exactly once, as a tagged CheckResult /
ApplyResult, through the caller's on_complete and the returned Future.
"""

import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from patchlauncher.api.client import PatchServerAPI
from patchlauncher.errors import AlreadyRunning
from patchlauncher.sync.hash_cache import HashCache
from patchlauncher.sync.manifest import Manifest

log = logging.getLogger(__name__)

# Apply progress: integer percent, only called when it increases
ProgressCallback = Callable[[int], None]
FatalHandler = Callable[[BaseException], None]

# Process exit status when the apply completion path fails
EXIT_FATAL = 4


def exit_process(error: BaseException) -> None:
    """Default fatal handler: end the process at once, without running cleanup."""
    os._exit(EXIT_FATAL)


class WorkflowState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class CheckResult:
    """Outcome of one async check. manifest is None unless status is COMPLETED."""

    status: WorkflowState
    manifest: Optional[Manifest] = None
    error: Optional[BaseException] = None

    @property
    def needs_update(self) -> bool:
        return self.manifest is not None and self.manifest.needs_update


@dataclass
class ApplyResult:
    status: WorkflowState
    error: Optional[BaseException] = None


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def update_check(
    local_root: Union[str, Path],
    manifest_source: Union[str, Path],
    api: PatchServerAPI,
    cache: HashCache,
    cancel_event: Optional[threading.Event] = None,
) -> Optional[Manifest]:
    """
    Load the manifest, bind it to local_root and look for the first divergent entry.
    Returns the manifest with needs_update set, or None if cancelled (a cancelled
    check means "unknown", never "no update"). Raises FetchError / ManifestParseError
    / OSError on failure.
    """
    log.debug("Update check: local_root=%s manifest=%s", local_root, manifest_source)
    manifest = Manifest.load(manifest_source, api=api)
    manifest.bind(Path(local_root))

    cache.load()
    needs_update = False
    cancel_requested = False
    checked = 0
    try:
        for entry in manifest:
            if _cancelled(cancel_event):
                cancel_requested = True
                break
            checked += 1
            if entry.check_update(cache):
                log.info("Found a file that needs updating: %s", entry.local_file_path)
                needs_update = True
                break
    finally:
        # Hashes computed so far stay valid even on short-circuit, cancel or error
        cache.save()

    if cancel_requested:
        log.info("Update check cancelled after %d of %d files", checked, len(manifest))
        return None
    manifest.needs_update = needs_update
    log.info(
        "Update check done: needs_update=%s (%d of %d files checked, cache hits=%d misses=%d)",
        needs_update, checked, len(manifest), cache.hits, cache.misses,
    )
    return manifest


def apply_patch(
    manifest: Manifest,
    api: PatchServerAPI,
    cache: HashCache,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
) -> bool:
    """
    Bring every entry of a bound manifest up to date. Returns True when all entries
    were processed, False if cancelled. The first error aborts the pass and propagates;
    entries already replaced stay replaced.
    """
    total_bytes = Decimal(manifest.total_size())
    progress_bytes = Decimal(0)
    last_progress = 0
    downloaded = 0

    log.info("Applying patch: %d files, %s bytes", len(manifest), total_bytes)
    if not cache.loaded:
        cache.load()
    try:
        for entry in manifest:
            if _cancelled(cancel_event):
                log.info("Apply cancelled (%d files downloaded)", downloaded)
                return False
            # State may have shifted since the check that produced this manifest
            if entry.check_update(cache):
                entry.apply_update(api, cache)
                downloaded += 1
            progress_bytes += entry.remote_size

            if total_bytes > 0:
                percent = int(progress_bytes * 100 // total_bytes)
            else:
                percent = 100
            if percent > last_progress:
                last_progress = percent
                log.debug("Apply progress: %d%%", percent)
                if on_progress:
                    on_progress(percent)
    finally:
        cache.save()
    log.info("Apply completed (%d of %d files downloaded)", downloaded, len(manifest))
    return True


class _Slot:
    """Run state of one operation kind (check or apply)."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.state = WorkflowState.IDLE
        self.cancel_event = threading.Event()
        self.thread: Optional[threading.Thread] = None


class UpdateEngine:
    """
    Owns the hash cache and API client used by check/apply and runs them either
    synchronously or on a worker thread per operation kind.
    """

    def __init__(
        self,
        api: Optional[PatchServerAPI] = None,
        cache: Optional[HashCache] = None,
        on_fatal: Optional[FatalHandler] = None,
    ) -> None:
        self._api = api or PatchServerAPI()
        self._cache = cache or HashCache()
        self._on_fatal = on_fatal or exit_process
        self._lock = threading.Lock()
        self._check_slot = _Slot("check")
        self._apply_slot = _Slot("apply")

    @property
    def cache(self) -> HashCache:
        return self._cache

    @property
    def check_state(self) -> WorkflowState:
        return self._check_slot.state

    @property
    def apply_state(self) -> WorkflowState:
        return self._apply_slot.state

    # --- Synchronous forms ---

    def check(
        self,
        local_root: Union[str, Path],
        manifest_source: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[Manifest]:
        return update_check(local_root, manifest_source, self._api, self._cache, cancel_event)

    def apply(
        self,
        manifest: Manifest,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        return apply_patch(manifest, self._api, self._cache, on_progress, cancel_event)

    # --- Asynchronous forms ---

    def _start(self, slot: _Slot, target: Callable[[], None]) -> None:
        with self._lock:
            if slot.state == WorkflowState.RUNNING:
                log.error("%s already running", slot.kind)
                raise AlreadyRunning(slot.kind)
            slot.state = WorkflowState.RUNNING
            slot.cancel_event = threading.Event()
        slot.thread = threading.Thread(target=target, name=f"patch-{slot.kind}", daemon=True)
        slot.thread.start()

    def _finish(self, slot: _Slot, state: WorkflowState) -> None:
        with self._lock:
            slot.state = state

    def check_async(
        self,
        local_root: Union[str, Path],
        manifest_source: Union[str, Path],
        on_complete: Optional[Callable[[CheckResult], None]] = None,
    ) -> "Future[CheckResult]":
        """Start a check on a worker thread. Raises AlreadyRunning if one is in flight."""
        slot = self._check_slot
        future: "Future[CheckResult]" = Future()

        def work() -> None:
            try:
                manifest = self.check(local_root, manifest_source, slot.cancel_event)
                if manifest is None:
                    result = CheckResult(WorkflowState.CANCELLED)
                else:
                    result = CheckResult(WorkflowState.COMPLETED, manifest=manifest)
            except Exception as e:
                log.exception("Update check failed: %s", e)
                result = CheckResult(WorkflowState.FAILED, error=e)
            self._finish(slot, result.status)
            future.set_result(result)
            if on_complete:
                try:
                    on_complete(result)
                except Exception:
                    log.exception("Error in check completion handler")

        self._start(slot, work)
        return future

    def apply_async(
        self,
        manifest: Manifest,
        on_complete: Optional[Callable[[ApplyResult], None]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "Future[ApplyResult]":
        """
        Start an apply on a worker thread. Raises AlreadyRunning if one is in flight.
        An exception from on_complete is fatal: it is handed to on_fatal, which by
        default ends the process.
        """
        slot = self._apply_slot
        future: "Future[ApplyResult]" = Future()

        def work() -> None:
            try:
                finished = self.apply(manifest, on_progress, slot.cancel_event)
                result = ApplyResult(WorkflowState.COMPLETED if finished else WorkflowState.CANCELLED)
            except Exception as e:
                log.exception("Apply failed: %s", e)
                result = ApplyResult(WorkflowState.FAILED, error=e)
            self._finish(slot, result.status)
            future.set_result(result)
            if on_complete:
                try:
                    on_complete(result)
                except Exception as e:
                    log.critical("Apply completion handler failed; install may be partially updated", exc_info=True)
                    self._on_fatal(e)

        self._start(slot, work)
        return future

    def cancel_check(self) -> None:
        """Request cancellation of the running check (no-op when idle)."""
        if self._check_slot.state == WorkflowState.RUNNING:
            log.info("Update check cancel requested")
            self._check_slot.cancel_event.set()

    def cancel_apply(self) -> None:
        if self._apply_slot.state == WorkflowState.RUNNING:
            log.info("Apply cancel requested")
            self._apply_slot.cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Join any worker threads (used by the CLI and tests)."""
        for slot in (self._check_slot, self._apply_slot):
            if slot.thread is not None:
                slot.thread.join(timeout)
