"""Pytest configuration: isolated config dir per test and an in-memory patch server."""

import hashlib
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from patchlauncher.errors import FetchError, TransferError
from patchlauncher.sync.manifest import FileEntry, Manifest

BASE_URL = "http://patch.test/live"


def md5(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


class FakePatchServer:
    """Stands in for PatchServerAPI: serves manifests and files from dicts, records downloads."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.manifests: Dict[str, bytes] = {}
        self.downloads: List[str] = []
        self.fail_urls: set = set()
        # When set, download_file / fetch_manifest wait on it before returning
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def _wait_gate(self) -> None:
        self.entered.set()
        if self.gate is not None:
            assert self.gate.wait(timeout=10), "test gate never opened"

    def fetch_manifest(self, url: str) -> bytes:
        self._wait_gate()
        if url not in self.manifests:
            raise FetchError(url, "404 Not Found")
        return self.manifests[url]

    def download_file(self, url: str, dest: Path) -> int:
        self._wait_gate()
        self.downloads.append(url)
        if url in self.fail_urls or url not in self.files:
            raise TransferError(url, "connection reset")
        body = self.files[url]
        Path(dest).write_bytes(body)
        return len(body)


@pytest.fixture(autouse=True)
def config_dir(monkeypatch, tmp_path: Path) -> Path:
    """Every test gets its own config dir (hash cache, locks, config.json, log)."""
    d = tmp_path / "config"
    monkeypatch.setenv("PATCHLAUNCHER_CONFIG_DIR", str(d))
    monkeypatch.delenv("PATCHLAUNCHER_SELF_UPDATE_URL", raising=False)
    monkeypatch.delenv("PATCHLAUNCHER_DEBUG", raising=False)
    return d


@pytest.fixture
def server() -> FakePatchServer:
    return FakePatchServer()


@pytest.fixture
def make_manifest(server: FakePatchServer, tmp_path: Path):
    """
    Factory: make_manifest({"a.txt": b"..."}) publishes the files on the fake server,
    writes the manifest document and returns its path.
    """
    def _make(files: Dict[str, bytes], name: str = "manifest.xml") -> Path:
        manifest = Manifest()
        for rel, body in files.items():
            url = f"{BASE_URL}/{rel}"
            server.files[url] = body
            manifest.add(FileEntry(rel, url, len(body), md5(body)))
        path = tmp_path / "published" / name
        manifest.save(path)
        server.manifests[f"{BASE_URL}/{name}"] = path.read_bytes()
        return path

    return _make


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    root = tmp_path / "install"
    root.mkdir()
    return root
