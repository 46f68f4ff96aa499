#!/usr/bin/env python3
"""Compare an install folder with a manifest, file by file. Uses Patch Launcher config.
Run from repo root: python scripts/compare_install.py [MANIFEST_URL_OR_PATH]
Optional: COMPARE_INSTALL_ROOT=C:\\path\\to\\folder to override the install root."""

import os
import sys

# Run from repo root so patchlauncher can be found
repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.join(repo_root, "client"))

from pathlib import Path

from patchlauncher.config import get_install_root, get_manifest_url
from patchlauncher.sync.hash_cache import HashCache
from patchlauncher.sync.manifest import Manifest


def main() -> None:
    root_override = os.environ.get("COMPARE_INSTALL_ROOT")
    local_root = Path(root_override).resolve() if root_override else get_install_root()
    source = sys.argv[1] if len(sys.argv) > 1 else get_manifest_url()
    print(f"Install root: {local_root}")
    print(f"Manifest:     {source}")
    if not local_root.is_dir():
        print("Error: folder does not exist.")
        sys.exit(1)

    manifest = Manifest.load(source)
    manifest.bind(local_root)
    cache = HashCache()
    cache.load()

    missing, wrong_size, wrong_hash = [], [], []
    for entry in manifest:
        if not entry.local_exists:
            missing.append(entry.remote_file_name)
        elif entry.local_size != entry.remote_size:
            wrong_size.append(entry.remote_file_name)
        elif entry.local_hash(cache) != entry.remote_hash:
            wrong_hash.append(entry.remote_file_name)
    cache.save()

    print()
    print(f"Manifest files: {len(manifest)}")
    print(f"Missing:        {len(missing)}")
    print(f"Size differs:   {len(wrong_size)}")
    print(f"Hash differs:   {len(wrong_hash)}")
    for title, names in (("Missing", missing), ("Size differs", wrong_size), ("Hash differs", wrong_hash)):
        if names:
            print()
            print(f"{title} (first 50):")
            for name in names[:50]:
                print(f"  {name}")
            if len(names) > 50:
                print(f"  ... and {len(names) - 50} more")

    print()
    if missing or wrong_size or wrong_hash:
        print("Difference: run `patchlauncher apply` to bring the install up to date.")
    else:
        print("Match: install folder matches the manifest.")


if __name__ == "__main__":
    main()
