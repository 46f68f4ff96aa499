"""Self-update through a shadow copy of the launcher executable.

A running executable cannot be replaced on platforms that lock in-use binaries,
so the update is done by a copy of it:

1. The real executable (``Launcher.exe``) checks its own install dir against the
   self-update manifest. On divergence it copies itself to ``_Launcher.exe``,
   starts that copy and exits with EXIT_HANDED_OFF.
2. The shadow (``_Launcher.exe``) applies the manifest onto the install dir,
   replacing the real executable, starts it and exits with EXIT_RELAUNCHED.
3. The relaunched real executable removes the stale shadow on its next start.

The instance lock is held until the process exits, so each successor only gets
past its instance-lock wait once its predecessor is gone and its binary is free.

Failures while running as the real executable are logged and ignored (the user
keeps the unpatched version). Failures in the shadow propagate: by then the
hand-off has committed to replacing the binary.
"""

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from patchlauncher.config import executable_path
from patchlauncher.errors import PatchError
from patchlauncher.instance_lock import (
    INSTANCE_LOCK_TIMEOUT,
    UPDATE_LOCK_TIMEOUT,
    NamedLock,
    instance_lock,
    update_lock,
)
from patchlauncher.sync.engine import UpdateEngine
from patchlauncher.sync.manifest import Manifest

log = logging.getLogger(__name__)

SHADOW_PREFIX = "_"

EXIT_OK = 0
EXIT_ALREADY_RUNNING = 1
EXIT_HANDED_OFF = 2
EXIT_RELAUNCHED = 3

Launcher = Callable[[List[str]], object]


def is_debug_build() -> bool:
    """Development runs (PATCHLAUNCHER_DEBUG=1 or python -X dev) never self-update."""
    flag = os.environ.get("PATCHLAUNCHER_DEBUG", "").strip().lower()
    return flag in ("1", "true", "yes") or bool(sys.flags.dev_mode)


def launch_command(path: Path) -> List[str]:
    """Command that starts the launcher at path (frozen binary, or script under this interpreter)."""
    if getattr(sys, "frozen", False):
        return [str(path)]
    return [sys.executable, str(path)]


def launch_detached(args: List[str]) -> subprocess.Popen:
    """Start args as an independent process that outlives this one."""
    log.info("Launching %s", args)
    if os.name == "nt":
        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(subprocess, "DETACHED_PROCESS", 0)
        return subprocess.Popen(args, close_fds=True, creationflags=flags)
    return subprocess.Popen(args, close_fds=True, start_new_session=True)


class SelfUpdateBootstrap:
    """
    Runs the shadow-executable protocol for one process. Whether this process is the
    shadow is decided once, from the executable's file name, and never changes.
    """

    def __init__(
        self,
        engine: UpdateEngine,
        manifest_url: str,
        executable: Optional[Path] = None,
        app_lock: Optional[NamedLock] = None,
        workflow_lock: Optional[NamedLock] = None,
        launcher: Optional[Launcher] = None,
        debug: Optional[bool] = None,
        argv: Sequence[str] = (),
    ) -> None:
        self._engine = engine
        self._manifest_url = manifest_url
        self._exe = Path(executable) if executable is not None else executable_path()
        self._app_lock = app_lock or instance_lock()
        self._workflow_lock = workflow_lock or update_lock()
        self._launch = launcher or launch_detached
        self._debug = is_debug_build() if debug is None else debug
        self._argv = list(argv)
        self.is_shadow = self._exe.name.startswith(SHADOW_PREFIX)
        log.info("Bootstrap mode: %s", "SHADOW" if self.is_shadow else "REAL")

    @property
    def shadow_path(self) -> Path:
        if self.is_shadow:
            return self._exe
        return self._exe.with_name(f"{SHADOW_PREFIX}{self._exe.name}")

    @property
    def real_path(self) -> Path:
        if self.is_shadow:
            return self._exe.with_name(self._exe.name[len(SHADOW_PREFIX):])
        return self._exe

    @property
    def install_dir(self) -> Path:
        return self.real_path.parent

    def acquire_instance_lock(self) -> bool:
        """Take the "one launcher runs" lock for this process's lifetime."""
        return self._app_lock.acquire(INSTANCE_LOCK_TIMEOUT)

    def release_locks(self) -> None:
        """Release both locks (at process exit)."""
        self._workflow_lock.release()
        self._app_lock.release()

    def remove_stale_shadow(self) -> None:
        """Delete a shadow copy left over from an earlier (possibly incomplete) update."""
        if self.is_shadow:
            return
        shadow = self.shadow_path
        if shadow.exists():
            log.info("Removing stale shadow executable %s", shadow)
            shadow.unlink()

    def check_self_update(self) -> Manifest:
        """Check the install dir against the self-update manifest."""
        manifest = self._engine.check(self.install_dir, self._manifest_url)
        log.debug("Self update needed: %s", manifest.needs_update)
        if self._debug and manifest.needs_update:
            log.warning("Self-update needed, but it will not run in a debug build")
            manifest.needs_update = False
        return manifest

    def run(self) -> int:
        """
        Run the protocol. Returns the process exit code: EXIT_OK to continue starting
        the launcher (instance lock stays held), otherwise the code to exit with.
        """
        if not self.acquire_instance_lock():
            log.warning("Another launcher instance is already running")
            return EXIT_ALREADY_RUNNING
        if not self._workflow_lock.acquire(UPDATE_LOCK_TIMEOUT):
            log.warning("Unable to secure the self-update lock; another update is running")
            self._app_lock.release()
            return EXIT_ALREADY_RUNNING
        try:
            if self.is_shadow:
                return self._run_shadow()
            return self._run_real()
        finally:
            self._workflow_lock.release()

    def _run_real(self) -> int:
        try:
            self.remove_stale_shadow()
            manifest = self.check_self_update()
            if not manifest.needs_update:
                return EXIT_OK
            log.info("Copying self (%s) to shadow path %s", self._exe, self.shadow_path)
            shutil.copy2(self._exe, self.shadow_path)
        except (PatchError, OSError) as e:
            log.error("Self-update check failed, continuing with the current version: %s", e)
            return EXIT_OK
        self._hand_off(self.shadow_path)
        return EXIT_HANDED_OFF

    def _run_shadow(self) -> int:
        log.info("SHADOW: applying update to %s and relaunching", self.real_path)
        manifest = self._engine.check(self.install_dir, self._manifest_url)
        if manifest.needs_update:
            self._engine.apply(manifest)
        else:
            log.info("SHADOW: install dir already current")
        self._hand_off(self.real_path)
        return EXIT_RELAUNCHED

    def _hand_off(self, target: Path) -> None:
        # The successor needs the self-update lock at once. The instance lock goes with
        # this process, so the successor waits until we have exited.
        self._workflow_lock.release()
        self._launch(launch_command(target) + self._argv)
