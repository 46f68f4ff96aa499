"""Persistent memo of file content hashes keyed by (path, size, mtime).

A cached digest is trusted only while the file's size and modification time are
unchanged. Rewriting a file with different content but the same size and the
same mtime is therefore not noticed here; that is an accepted limitation of
keying on metadata instead of re-reading every file.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

from patchlauncher.config import get_hash_cache_path

log = logging.getLogger(__name__)

CACHE_VERSION = 1
HASH_CHUNK_SIZE = 1024 * 1024


def compute_hash(path: Path) -> str:
    """MD5 hex digest of a file's content, read in chunks."""
    md5 = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


def _key(path: Union[str, Path]) -> str:
    # Records are keyed by absolute path, independent of the working directory
    return os.path.abspath(path)


class HashCache:
    """
    Maps absolute local paths to {size, mtime_ns, hash}. Load once before a check
    pass and save once after it; individual lookups never touch the cache file.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._records: Dict[str, dict] = {}
        self._dirty = False
        self.loaded = False
        self.hits = 0
        self.misses = 0

    @property
    def path(self) -> Path:
        return self._path or get_hash_cache_path()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and _key(path) in self._records

    def load(self) -> None:
        """Replace in-memory records with the persisted ones. Missing or corrupt file = empty cache."""
        self._records = {}
        self._dirty = False
        self.loaded = True
        path = self.path
        if not path.exists():
            log.debug("No hash cache at %s", path)
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Ignoring unreadable hash cache %s: %s", path, e)
            return
        if not isinstance(data, dict) or data.get("version") != CACHE_VERSION:
            log.info("Hash cache %s has an unknown format; starting empty", path)
            return
        files = data.get("files")
        if isinstance(files, dict):
            self._records = {
                k: v for k, v in files.items()
                if isinstance(v, dict) and {"size", "mtime_ns", "hash"} <= set(v)
            }
        log.debug("Loaded %d hash cache records from %s", len(self._records), path)

    def save(self) -> None:
        """Persist records (temp file + replace). No-op when nothing changed since load."""
        if not self._dirty:
            return
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(
            json.dumps({"version": CACHE_VERSION, "files": self._records}, indent=1),
            encoding="utf-8",
        )
        os.replace(tmp, path)
        self._dirty = False
        log.debug("Saved %d hash cache records to %s", len(self._records), path)

    def get_hash(self, path: Path) -> str:
        """Return the content hash of path, from the cache when size and mtime still match."""
        st = path.stat()
        key = _key(path)
        rec = self._records.get(key)
        if rec and rec["size"] == st.st_size and rec["mtime_ns"] == st.st_mtime_ns:
            self.hits += 1
            return rec["hash"]
        self.misses += 1
        digest = compute_hash(path)
        self._store(key, st, digest)
        return digest

    def record(self, path: Path, digest: str) -> None:
        """Remember digest for the file's current metadata (e.g. right after writing it)."""
        self._store(_key(path), path.stat(), digest)

    def forget(self, path: Path) -> None:
        if self._records.pop(_key(path), None) is not None:
            self._dirty = True

    def _store(self, key: str, st: os.stat_result, digest: str) -> None:
        self._records[key] = {"size": st.st_size, "mtime_ns": st.st_mtime_ns, "hash": digest}
        self._dirty = True
