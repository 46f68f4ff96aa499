"""Exceptions raised by the patch engine. Local filesystem failures stay plain OSError."""

from typing import Optional


class PatchError(Exception):
    """Base class for all patch engine errors."""


class FetchError(PatchError):
    """A manifest or file could not be retrieved (network, URL, unreadable source)."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class TransferError(FetchError):
    """Downloading a single file failed, or the downloaded bytes did not match the manifest."""


class ManifestParseError(PatchError):
    """The manifest document is malformed."""


class DuplicateEntryError(ManifestParseError):
    """Two manifest entries share the same remote file name."""

    def __init__(self, remote_file_name: str) -> None:
        super().__init__(f"Duplicate manifest entry: {remote_file_name}")
        self.remote_file_name = remote_file_name


class LockUnavailable(PatchError):
    """A named lock is held by another live process."""

    def __init__(self, name: str, holder_pid: Optional[int] = None) -> None:
        detail = f" (held by pid {holder_pid})" if holder_pid else ""
        super().__init__(f"Lock {name!r} is unavailable{detail}")
        self.name = name
        self.holder_pid = holder_pid


class AlreadyRunning(PatchError):
    """An async check or apply was started while the previous one of the same kind is still running."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"{kind} is already running")
        self.kind = kind
