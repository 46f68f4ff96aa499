"""Manifest model: expected remote state of every file in a tree, and the per-file diff.

Consumer side: Manifest.load() parses a manifest document, bind() points every
entry at a local install root, and FileEntry.check_update() / apply_update()
detect and fix divergence one file at a time.

Producer side: Manifest.build_from_directory() records the current state of a
tree, and create_patch() stages the files plus the manifest for upload.
"""

import logging
import os
import re
import shutil
import stat
import tempfile
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union
from urllib.parse import quote

from patchlauncher.api.client import PatchServerAPI
from patchlauncher.errors import DuplicateEntryError, FetchError, ManifestParseError, TransferError
from patchlauncher.sync.hash_cache import HashCache, compute_hash

log = logging.getLogger(__name__)

# File-manager metadata: never published (often read-only or platform specific)
PUBLISH_IGNORE_BASENAMES: frozenset = frozenset({
    ".directory",   # KDE Dolphin view settings
    "Thumbs.db",    # Windows thumbnail cache
    "Desktop.ini",  # Windows folder customisation
    ".DS_Store",    # macOS Finder metadata
})

MANIFEST_BACKUP_DIR = "ManifestBackup"
BACKUP_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
NEW_FILE_MODE = 0o644

_MD5_HEX = re.compile(r"^[0-9a-fA-F]{32}$")
_DRIVE = re.compile(r"^[a-zA-Z]:")


def _split_remote_name(name: str) -> List[str]:
    """Split a manifest-relative name into path parts. Rejects names that leave the tree root."""
    normalized = name.replace("\\", "/")
    if not normalized or normalized.startswith("/") or _DRIVE.match(normalized):
        raise ManifestParseError(f"Remote file name must be relative: {name!r}")
    parts = [p for p in normalized.split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise ManifestParseError(f"Unsafe remote file name: {name!r}")
    return parts


def _is_ignored(rel_path: str) -> bool:
    """True if the path should be left out of a published manifest."""
    return rel_path.rsplit("/", 1)[-1] in PUBLISH_IGNORE_BASENAMES


class FileEntry:
    """
    One file's expected (remote) state and its local counterpart. Remote fields are
    read-only once the entry exists; local size and hash always reflect the file on disk.
    """

    def __init__(
        self,
        remote_file_name: str,
        remote_url: str,
        remote_size: int,
        remote_hash: str,
        local_file_path: Optional[Path] = None,
    ) -> None:
        self._parts = _split_remote_name(remote_file_name)
        self._remote_file_name = "/".join(self._parts)
        self._remote_url = remote_url
        self._remote_size = int(remote_size)
        self._remote_hash = remote_hash.lower()
        self._distribution_base: Optional[str] = None
        self.local_file_path = local_file_path

    @property
    def remote_file_name(self) -> str:
        return self._remote_file_name

    @property
    def remote_url(self) -> str:
        return self._remote_url

    @property
    def remote_size(self) -> int:
        return self._remote_size

    @property
    def remote_hash(self) -> str:
        return self._remote_hash

    def __repr__(self) -> str:
        return f"FileEntry({self._remote_file_name!r}, size={self._remote_size}, hash={self._remote_hash})"

    def bind(self, local_root: Path) -> None:
        """Set local_file_path to local_root (made absolute) joined with the remote name."""
        self.local_file_path = Path(local_root).absolute().joinpath(*self._parts)

    def _require_local_path(self) -> Path:
        if self.local_file_path is None:
            raise ValueError(f"{self._remote_file_name}: local_file_path is not bound")
        return self.local_file_path

    @property
    def local_exists(self) -> bool:
        return self._require_local_path().is_file()

    @property
    def local_size(self) -> int:
        return self._require_local_path().stat().st_size

    def local_hash(self, cache: Optional[HashCache] = None) -> str:
        """Content hash of the local file, through cache when given."""
        path = self._require_local_path()
        if cache is not None:
            return cache.get_hash(path)
        return compute_hash(path)

    def check_update(self, cache: Optional[HashCache] = None) -> bool:
        """
        True if the local file must be replaced: missing, different size (no hashing
        needed), or same size but different content hash.
        """
        path = self._require_local_path()
        if not path.is_file():
            log.debug("%s: missing locally", self._remote_file_name)
            return True
        local_size = path.stat().st_size
        if local_size != self._remote_size:
            log.debug("%s: size %d != %d", self._remote_file_name, local_size, self._remote_size)
            return True
        local_hash = self.local_hash(cache)
        if local_hash != self._remote_hash:
            log.debug("%s: hash %s != %s", self._remote_file_name, local_hash, self._remote_hash)
            return True
        return False

    def apply_update(self, api: PatchServerAPI, cache: Optional[HashCache] = None) -> None:
        """
        Download remote_url over the local file. The body goes to a temporary sibling,
        is verified against remote size and hash, then replaces the destination in one
        rename, so a failure never leaves a partial file in place.
        Raises TransferError on network failure or verification mismatch, OSError on
        filesystem failure.
        """
        target = self._require_local_path()
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=target.parent)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            api.download_file(self._remote_url, tmp)
            size = tmp.stat().st_size
            if size != self._remote_size:
                raise TransferError(self._remote_url, f"size mismatch: expected {self._remote_size}, got {size}")
            digest = compute_hash(tmp)
            if digest != self._remote_hash:
                raise TransferError(self._remote_url, f"hash mismatch: expected {self._remote_hash}, got {digest}")
            if target.exists():
                shutil.copymode(target, tmp)
            else:
                os.chmod(tmp, NEW_FILE_MODE)
            self._replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        log.info("Updated %s (%d bytes)", self._remote_file_name, self._remote_size)
        if cache is not None:
            cache.record(target, digest)

    def _replace(self, tmp: Path, target: Path) -> None:
        try:
            os.replace(tmp, target)
        except PermissionError:
            # Read-only destination (Windows refuses to replace those): make writable once and retry
            if not target.is_file():
                raise
            os.chmod(target, stat.S_IMODE(target.stat().st_mode) | stat.S_IWUSR)
            os.replace(tmp, target)

    def stage_to(self, folder: Path, distribution_url: Optional[str] = None) -> Path:
        """
        Copy the local file to folder/<remote name> and point remote_url at
        distribution_url/<remote name>. Without distribution_url the base used by the
        previous staging is reused, or the current remote_url on the first call.
        Returns the staged path.
        """
        source = self._require_local_path()
        dest = Path(folder).joinpath(*self._parts)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
        if distribution_url is not None:
            base = distribution_url
        elif self._distribution_base is not None:
            base = self._distribution_base
        else:
            base = self._remote_url
        self._distribution_base = base
        self._remote_url = f"{base.rstrip('/')}/{quote(self._remote_file_name)}"
        log.debug("Staged %s -> %s", self._remote_file_name, dest)
        return dest


class Manifest:
    """Ordered FileEntry list plus the needs_update flag computed by a check (never persisted)."""

    def __init__(self, entries: Optional[List[FileEntry]] = None) -> None:
        self._entries: List[FileEntry] = []
        self._names: set = set()
        self.needs_update = False
        for entry in entries or []:
            self.add(entry)

    @property
    def entries(self) -> List[FileEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: FileEntry) -> None:
        """Append entry. Remote file names are unique; a second one raises DuplicateEntryError."""
        key = entry.remote_file_name
        if key in self._names:
            raise DuplicateEntryError(key)
        self._names.add(key)
        self._entries.append(entry)

    def bind(self, local_root: Path) -> None:
        for entry in self._entries:
            entry.bind(local_root)

    def total_size(self) -> int:
        return sum(entry.remote_size for entry in self._entries)

    # --- Loading ---

    @classmethod
    def load(cls, source: Union[str, Path], api: Optional[PatchServerAPI] = None) -> "Manifest":
        """
        Load from an http(s) URL (through api) or a local path.
        Raises FetchError if the source cannot be read, ManifestParseError if it is malformed.
        """
        source_str = str(source)
        if source_str.lower().startswith(("http://", "https://")):
            body = (api or PatchServerAPI()).fetch_manifest(source_str)
        else:
            try:
                body = Path(source).read_bytes()
            except OSError as e:
                raise FetchError(source_str, str(e)) from e
        manifest = cls.from_xml(body)
        log.debug("Loaded manifest %s (%d entries)", source_str, len(manifest))
        return manifest

    @classmethod
    def from_xml(cls, body: Union[bytes, str]) -> "Manifest":
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise ManifestParseError(f"Manifest is not valid XML: {e}") from e
        if root.tag != "Manifest":
            raise ManifestParseError(f"Unexpected root element <{root.tag}>")
        file_list = root.find("FileList")
        if file_list is None:
            raise ManifestParseError("Manifest has no <FileList>")
        manifest = cls()
        for index, node in enumerate(file_list.findall("FileNode")):
            manifest.add(_entry_from_node(node, index))
        return manifest

    # --- Saving ---

    def to_xml(self) -> ET.ElementTree:
        root = ET.Element("Manifest")
        file_list = ET.SubElement(root, "FileList")
        for entry in self._entries:
            node = ET.SubElement(file_list, "FileNode")
            ET.SubElement(node, "RemoteFileName").text = entry.remote_file_name
            ET.SubElement(node, "RemoteURL").text = entry.remote_url
            ET.SubElement(node, "RemoteSize").text = str(entry.remote_size)
            ET.SubElement(node, "RemoteMD5Hash").text = entry.remote_hash
        tree = ET.ElementTree(root)
        ET.indent(tree)
        return tree

    def save(self, path: Path) -> None:
        """Write the manifest document to path (temp file + replace). needs_update is not written."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        self.to_xml().write(tmp, encoding="utf-8", xml_declaration=True)
        os.replace(tmp, path)
        log.debug("Saved manifest (%d entries) to %s", len(self), path)

    # --- Building (producer side) ---

    @classmethod
    def build_from_directory(
        cls,
        root: Path,
        distribution_url: str,
        exclude: Optional[Path] = None,
    ) -> "Manifest":
        """
        One entry per file under root (sorted, recursive). Remote size and hash are the
        file's current state; remote_url is seeded with distribution_url until staging.
        Files under exclude (e.g. a patch folder inside root) are skipped.
        """
        root = Path(root).resolve()
        if not root.is_dir():
            raise NotADirectoryError(f"Not a folder: {root}")
        exclude = Path(exclude).resolve() if exclude is not None else None
        manifest = cls()
        for f in sorted(root.rglob("*")):
            if not f.is_file():
                continue
            if exclude is not None and (f == exclude or exclude in f.parents):
                continue
            rel = f.relative_to(root).as_posix()
            if _is_ignored(rel):
                continue
            manifest.add(FileEntry(
                remote_file_name=rel,
                remote_url=distribution_url,
                remote_size=f.stat().st_size,
                remote_hash=compute_hash(f),
                local_file_path=f,
            ))
        log.info("Built manifest from %s: %d files, %d bytes", root, len(manifest), manifest.total_size())
        return manifest


def _entry_from_node(node: ET.Element, index: int) -> FileEntry:
    def text(tag: str) -> str:
        child = node.find(tag)
        if child is None or child.text is None or not child.text.strip():
            raise ManifestParseError(f"FileNode #{index}: missing <{tag}>")
        return child.text.strip()

    name = text("RemoteFileName")
    url = text("RemoteURL")
    try:
        size = int(text("RemoteSize"))
    except ValueError as e:
        raise ManifestParseError(f"FileNode #{index} ({name}): invalid <RemoteSize>") from e
    if size < 0:
        raise ManifestParseError(f"FileNode #{index} ({name}): negative <RemoteSize>")
    digest = text("RemoteMD5Hash")
    if not _MD5_HEX.match(digest):
        raise ManifestParseError(f"FileNode #{index} ({name}): invalid <RemoteMD5Hash>")
    return FileEntry(name, url, size, digest)


def _backup_path(backup_dir: Path, channel_name: str, when: datetime) -> Path:
    """Timestamped backup file name; never reuses an existing file."""
    stem = f"{channel_name}-{when.strftime(BACKUP_TIMESTAMP_FORMAT)}"
    candidate = backup_dir / f"{stem}.xml"
    n = 1
    while candidate.exists():
        candidate = backup_dir / f"{stem}-{n}.xml"
        n += 1
    return candidate


def create_patch(
    local_folder: Path,
    patch_folder: Path,
    channel_name: str,
    distribution_url: str,
) -> Manifest:
    """
    Publish local_folder: stage every file under patch_folder (same relative paths),
    write patch_folder/<channel>.xml and a timestamped copy under
    patch_folder/ManifestBackup/. Returns the published manifest.
    """
    local_folder = Path(local_folder)
    patch_folder = Path(patch_folder)
    manifest = Manifest.build_from_directory(local_folder, distribution_url, exclude=patch_folder)
    patch_folder.mkdir(parents=True, exist_ok=True)
    for entry in manifest:
        entry.stage_to(patch_folder, distribution_url)

    manifest_file = patch_folder / f"{channel_name}.xml"
    backup_dir = patch_folder / MANIFEST_BACKUP_DIR
    backup_dir.mkdir(parents=True, exist_ok=True)
    backup_file = _backup_path(backup_dir, channel_name, datetime.now())

    manifest.save(manifest_file)
    manifest.save(backup_file)
    log.info("Published channel %s: %s (backup %s)", channel_name, manifest_file, backup_file.name)
    return manifest
