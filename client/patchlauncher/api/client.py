"""HTTP client for the patch server: manifest documents and distributed files."""

import logging
from pathlib import Path
from typing import Dict

import httpx

from patchlauncher.errors import FetchError, TransferError

log = logging.getLogger(__name__)

MANIFEST_TIMEOUT = 30.0
# Per-read timeout; large files stream for as long as data keeps arriving
DOWNLOAD_TIMEOUT = httpx.Timeout(60.0, connect=15.0)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class PatchServerAPI:
    """
    Fetches manifests and files over HTTP(S). Failures are raised as FetchError /
    TransferError and never retried here; the caller decides whether to try again.
    """

    def __init__(self, user_agent: str = "PatchLauncher") -> None:
        self._user_agent = user_agent

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self._user_agent}

    def fetch_manifest(self, url: str) -> bytes:
        """GET a manifest document. Returns the raw body."""
        log.debug("GET manifest %s", url)
        try:
            with httpx.Client(timeout=MANIFEST_TIMEOUT, follow_redirects=True) as client:
                r = client.get(url, headers=self._headers())
                r.raise_for_status()
                log.debug("fetch_manifest returned %d bytes", len(r.content))
                return r.content
        except httpx.HTTPError as e:
            raise FetchError(url, str(e)) from e

    def download_file(self, url: str, dest: Path) -> int:
        """Stream url into dest (overwritten). Returns the number of bytes written."""
        log.debug("download_file url=%s dest=%s", url, dest)
        written = 0
        try:
            with httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
                with client.stream("GET", url, headers=self._headers()) as r:
                    r.raise_for_status()
                    with open(dest, "wb") as fh:
                        for chunk in r.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                            fh.write(chunk)
                            written += len(chunk)
        except httpx.HTTPError as e:
            raise TransferError(url, str(e)) from e
        log.debug("download_file url=%s: %d bytes", url, written)
        return written
