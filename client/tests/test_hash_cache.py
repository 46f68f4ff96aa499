"""Tests for HashCache: hits, invalidation on size/mtime, persistence."""

import hashlib
import json
import os
from pathlib import Path

from patchlauncher.sync.hash_cache import HashCache, compute_hash


def md5(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


def test_compute_hash_is_md5_hex(tmp_path: Path) -> None:
    """compute_hash returns the lowercase MD5 hex digest of the content."""
    f = tmp_path / "a.bin"
    f.write_bytes(b"x" * 3_000_000)
    assert compute_hash(f) == md5(b"x" * 3_000_000)


def test_second_lookup_is_a_hit(tmp_path: Path) -> None:
    """Unchanged file: first lookup hashes, second comes from the cache."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")
    cache = HashCache(tmp_path / "cache.json")
    assert cache.get_hash(f) == md5(b"hello")
    assert cache.get_hash(f) == md5(b"hello")
    assert (cache.hits, cache.misses) == (1, 1)
    assert f in cache


def test_mtime_change_invalidates(tmp_path: Path) -> None:
    """A different modification time forces a re-hash."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")
    cache = HashCache(tmp_path / "cache.json")
    cache.get_hash(f)
    st = f.stat()
    os.utime(f, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))
    cache.get_hash(f)
    assert cache.misses == 2
    assert cache.hits == 0


def test_size_change_invalidates(tmp_path: Path) -> None:
    """A different size forces a re-hash even if the mtime is restored."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")
    cache = HashCache(tmp_path / "cache.json")
    cache.get_hash(f)
    st = f.stat()
    f.write_bytes(b"hello world")
    os.utime(f, ns=(st.st_atime_ns, st.st_mtime_ns))
    assert cache.get_hash(f) == md5(b"hello world")
    assert cache.misses == 2


def test_same_size_same_mtime_content_change_is_not_detected(tmp_path: Path) -> None:
    """Accepted limitation: rewriting content with identical size and mtime returns the stale hash."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"aaaa")
    cache = HashCache(tmp_path / "cache.json")
    old = cache.get_hash(f)
    st = f.stat()
    f.write_bytes(b"bbbb")
    os.utime(f, ns=(st.st_atime_ns, st.st_mtime_ns))
    assert cache.get_hash(f) == old
    assert cache.hits == 1


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    """Records survive save/load, so a new process gets cache hits."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")
    cache_path = tmp_path / "cache.json"
    cache = HashCache(cache_path)
    cache.load()
    cache.get_hash(f)
    cache.save()
    assert cache_path.exists()

    fresh = HashCache(cache_path)
    fresh.load()
    assert len(fresh) == 1
    assert fresh.get_hash(f) == md5(b"hello")
    assert (fresh.hits, fresh.misses) == (1, 0)


def test_load_missing_or_corrupt_file_is_empty(tmp_path: Path) -> None:
    """No cache file, garbage, or an unknown version all load as an empty cache."""
    cache_path = tmp_path / "cache.json"
    cache = HashCache(cache_path)
    cache.load()
    assert len(cache) == 0 and cache.loaded

    cache_path.write_text("{garbage", encoding="utf-8")
    cache.load()
    assert len(cache) == 0

    cache_path.write_text(json.dumps({"version": 99, "files": {"x": {}}}), encoding="utf-8")
    cache.load()
    assert len(cache) == 0


def test_save_without_changes_does_not_write(tmp_path: Path) -> None:
    """save() after a load with no new records leaves the disk alone."""
    cache_path = tmp_path / "cache.json"
    cache = HashCache(cache_path)
    cache.load()
    cache.save()
    assert not cache_path.exists()


def test_record_and_forget(tmp_path: Path) -> None:
    """record() stores a digest for current metadata; forget() drops it."""
    f = tmp_path / "a.txt"
    f.write_bytes(b"hello")
    cache = HashCache(tmp_path / "cache.json")
    cache.record(f, md5(b"hello"))
    assert cache.get_hash(f) == md5(b"hello")
    assert cache.misses == 0
    cache.forget(f)
    assert f not in cache


def test_default_path_is_in_config_dir(config_dir: Path) -> None:
    """Without an explicit path the cache lives in the config dir."""
    assert HashCache().path == config_dir / "hash_cache.json"
