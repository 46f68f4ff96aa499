"""Launcher configuration: config dir, manifest URL, install root, launcher edition."""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

EDITION_LIVE = "live"
EDITION_DEVELOPMENT = "development"

# Self-update manifest per launcher edition
SELF_UPDATE_URLS = {
    EDITION_LIVE: "http://gamedev.fom.nexeontech.com/launcher-alpha.xml",
    EDITION_DEVELOPMENT: "http://patch.patrickshafer.com/launcher-alpha-debug.xml",
}
DEFAULT_MANIFEST_URL = "http://patch.patrickshafer.com/fom.xml"


def _config_dir() -> Path:
    """Platform-specific config directory (no admin). PATCHLAUNCHER_CONFIG_DIR overrides it."""
    override = os.environ.get("PATCHLAUNCHER_CONFIG_DIR", "").strip()
    if override:
        return Path(override)
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
        return Path(base) / "PatchLauncher"
    if os.environ.get("XDG_CONFIG_HOME"):
        return Path(os.environ["XDG_CONFIG_HOME"]) / "patchlauncher"
    return Path.home() / ".config" / "patchlauncher"


def get_config_path() -> Path:
    """Path to config.json."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"


def get_hash_cache_path() -> Path:
    """Path to the persisted hash cache."""
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "hash_cache.json"


def get_instance_lock_path() -> Path:
    """Lock file guarding "only one launcher runs" (per user)."""
    return _config_dir() / "instance.lock"


def get_update_lock_path() -> Path:
    """Lock file guarding "only one self-update workflow runs" (per user)."""
    return _config_dir() / "self_update.lock"


def get_log_path() -> Path:
    d = _config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "patchlauncher.log"


def _read_config() -> Dict[str, Any]:
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _write_config_value(key: str, value: Any) -> None:
    """Persist one key, preserving the others."""
    data = _read_config()
    data[key] = value
    get_config_path().write_text(json.dumps(data, indent=2), encoding="utf-8")


def executable_path() -> Path:
    """Path of the running launcher: the frozen binary, or the script that started it."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    return Path(sys.argv[0]).resolve()


def get_default_install_root() -> Path:
    """Default install root: the directory holding the launcher executable."""
    return executable_path().parent


def get_install_root() -> Path:
    """Return configured install root, or the launcher's own directory if none set."""
    raw = _read_config().get("install_root")
    return Path(raw).resolve() if raw else get_default_install_root()


def set_install_root(folder: Path) -> None:
    _write_config_value("install_root", str(folder.resolve()))


def get_manifest_url() -> str:
    """Manifest URL (or path) of the tree the launcher keeps up to date."""
    return (_read_config().get("manifest_url") or "").strip() or DEFAULT_MANIFEST_URL


def set_manifest_url(url: str) -> None:
    _write_config_value("manifest_url", (url or "").strip())


def get_edition() -> str:
    """Return 'live' or 'development'. Default is 'live'; unknown values fall back to it."""
    edition = _read_config().get("edition") or EDITION_LIVE
    return edition if edition in SELF_UPDATE_URLS else EDITION_LIVE


def set_edition(edition: str) -> None:
    """Persist launcher edition: 'live' or 'development'."""
    if edition not in SELF_UPDATE_URLS:
        raise ValueError(f"Unknown launcher edition: {edition!r}")
    _write_config_value("edition", edition)


def get_self_update_url(edition: Optional[str] = None) -> str:
    """
    Manifest URL for the launcher's own files. PATCHLAUNCHER_SELF_UPDATE_URL wins;
    otherwise the URL of the given (or configured) edition.
    """
    override = os.environ.get("PATCHLAUNCHER_SELF_UPDATE_URL", "").strip()
    if override:
        return override
    return SELF_UPDATE_URLS[edition or get_edition()]
