"""Entry point: self-update bootstrap, then check/apply of the configured install."""

import argparse
import atexit
import logging
import sys
from concurrent.futures import Future, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, List, Optional

from patchlauncher import config
from patchlauncher.bootstrap import EXIT_ALREADY_RUNNING, EXIT_OK, SelfUpdateBootstrap
from patchlauncher.errors import PatchError
from patchlauncher.sync.engine import CheckResult, UpdateEngine, WorkflowState
from patchlauncher.sync.manifest import create_patch

log = logging.getLogger("patchlauncher.main")

EXIT_FAILED = 4
EXIT_UPDATE_AVAILABLE = 10

# Text progress bar width (ASCII-safe for any console)
_PROGRESS_BAR_WIDTH = 20


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging to a file in the config dir (DEBUG) and to stderr (INFO, DEBUG when verbose)."""
    log_file = config.get_log_path()
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("patchlauncher")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    root.addHandler(fh)
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(fmt)
    root.addHandler(ch)
    root.debug("Logging to %s", log_file)


def _progress_text(percent: int) -> str:
    filled = (_PROGRESS_BAR_WIDTH * percent) // 100
    bar = "=" * filled + " " * (_PROGRESS_BAR_WIDTH - filled)
    return f"Applying [{bar}] {percent}%"


def _print_progress(percent: int) -> None:
    end = "\n" if percent >= 100 else ""
    print(f"\r{_progress_text(percent)}", end=end, file=sys.stderr, flush=True)


def _wait(future: Future, cancel: Callable[[], None]):
    """Block until the worker finishes; Ctrl+C requests cooperative cancellation."""
    while True:
        try:
            return future.result(timeout=0.2)
        except FutureTimeout:
            continue
        except KeyboardInterrupt:
            log.warning("Cancel requested; finishing the current file...")
            cancel()


def _check(engine: UpdateEngine, root: Path, source: str) -> CheckResult:
    future = engine.check_async(root, source)
    return _wait(future, engine.cancel_check)


def _report_failure(what: str, error: Optional[BaseException]) -> int:
    print(f"{what} failed: {error}", file=sys.stderr)
    return EXIT_FAILED


def cmd_check(engine: UpdateEngine, root: Path, source: str) -> int:
    result = _check(engine, root, source)
    if result.status == WorkflowState.FAILED:
        return _report_failure("Update check", result.error)
    if result.status == WorkflowState.CANCELLED:
        print("Update check cancelled.")
        return EXIT_OK
    if result.needs_update:
        print(f"Update available for {root}")
        return EXIT_UPDATE_AVAILABLE
    print(f"{root} is up to date.")
    return EXIT_OK


def cmd_apply(engine: UpdateEngine, root: Path, source: str) -> int:
    result = _check(engine, root, source)
    if result.status == WorkflowState.FAILED:
        return _report_failure("Update check", result.error)
    if result.status == WorkflowState.CANCELLED or not result.needs_update:
        print("Nothing to apply." if result.manifest else "Update check cancelled.")
        return EXIT_OK
    future = engine.apply_async(result.manifest, on_progress=_print_progress)
    applied = _wait(future, engine.cancel_apply)
    if applied.status == WorkflowState.FAILED:
        print(file=sys.stderr)
        return _report_failure("Update", applied.error)
    if applied.status == WorkflowState.CANCELLED:
        print("\nUpdate cancelled.", file=sys.stderr)
        return EXIT_OK
    print("Patch complete.")
    return EXIT_OK


def cmd_publish(args: argparse.Namespace) -> int:
    try:
        manifest = create_patch(Path(args.source), Path(args.patch_dir), args.channel, args.distribution_url)
    except (PatchError, OSError) as e:
        log.exception("Publish failed")
        return _report_failure("Publish", e)
    print(f"Published {len(manifest)} files to {args.patch_dir} (channel {args.channel}).")
    return EXIT_OK


def _bootstrap(engine: UpdateEngine, url: Optional[str], argv: List[str]) -> SelfUpdateBootstrap:
    return SelfUpdateBootstrap(engine, url or config.get_self_update_url(), argv=argv)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="patchlauncher", description="Manifest-driven patch launcher")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug output on the console")
    sub = parser.add_subparsers(dest="command")

    for name, help_text in (("check", "Check whether an update is needed"), ("apply", "Check and apply updates")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--root", "-r", help="Install root (default: configured root)")
        p.add_argument("--manifest", "-m", help="Manifest URL or path (default: configured URL)")

    p = sub.add_parser("publish", help="Stage a folder and write its manifest")
    p.add_argument("source", help="Folder that serves as the image to patch")
    p.add_argument("patch_dir", help="Folder where files and manifest are staged for upload")
    p.add_argument("channel", help="Channel (manifest) name")
    p.add_argument("distribution_url", help="Base URL the staged files will be served from")

    p = sub.add_parser("self-update", help="Run the launcher self-update")
    p.add_argument("--url", help="Self-update manifest URL (default: edition URL)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the launcher. Returns the process exit code."""
    argv = list(sys.argv[1:] if argv is None else argv)
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    log.info("Patch Launcher starting (command=%s)", args.command or "launch")

    if args.command == "publish":
        return cmd_publish(args)

    engine = UpdateEngine()
    root = Path(getattr(args, "root", None) or config.get_install_root()).resolve()
    source = getattr(args, "manifest", None) or config.get_manifest_url()
    if args.command == "check":
        return cmd_check(engine, root, source)
    if args.command == "apply":
        return cmd_apply(engine, root, source)

    bootstrap = _bootstrap(engine, getattr(args, "url", None), argv)
    atexit.register(bootstrap.release_locks)
    code = bootstrap.run()
    if code == EXIT_ALREADY_RUNNING:
        print("Patch Launcher is already running.", file=sys.stderr)
    if code != EXIT_OK or args.command == "self-update":
        return code

    # Single instance held by the bootstrap: keep the configured install current
    return cmd_apply(engine, root, source)


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
