import copy
import json
import logging
import os
from typing import Dict, List, Optional

from .errors import ConfigError

LOG = logging.getLogger("toolinstall-config")

CONFIG_ENV = "TOOLINSTALL_CONFIG"

TOOL_DEFAULTS = {
    "mode": 0o755,
    "sha256": None,
    "signature": None,
    "update_only": False,
    # hex-encoded allowed file headers; None means ELF only
    "magic": None,
}

# Basic configuration - override with a JSON file for the device at hand
CONFIG = {
    # Native library dirs the manager app ships the helpers in, tried in order
    "source_roots": [
        "/data/app/com.sukisu.ultra/lib/arm64",
        "/data/app/com.sukisu.ultra/lib/arm",
    ],
    "tools": {
        "kpmmgr": {
            "sources": ["{source_root}/libkpmmgr.so"],
            "destination": "/data/adb/ksu/bin/kpmmgr",
            "mode": 0o755,
            # Pin with the sha256 of the shipped build once known
            "sha256": None,
            "signature": None,
            # Only refresh a helper the root framework already placed
            "update_only": True,
        },
        "susfsd": {
            "sources": ["{source_root}/libsusfsd.so"],
            "destination": "/data/adb/ksu/bin/susfsd",
            "mode": 0o755,
            "sha256": None,
            "signature": None,
            "update_only": True,
        },
    },
    "toolsets": {
        "default": ["kpmmgr", "susfsd"],
        "kpm": ["kpmmgr"],
        "susfs": ["susfsd"],
    },
    "ledger_path": "/data/adb/ksu/toolinstall.ledger",
    # Seconds allowed for reading and verifying one candidate
    "verify_timeout": 30.0,
    # Headroom required on the destination filesystem beyond the file size
    "min_free_bytes": 1 << 20,
    # Public key imported before checking detached signatures
    "pubkey_path": None,
    "max_workers": 1,
    "notifications": {
        "auto_send": False,
        "webhook_url": None,
    },
}


def parse_mode(value) -> int:
    """Accept 0o755, 493 or "0755"/"755"/"0o755"."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid mode: {value!r}")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError:
            raise ConfigError(f"invalid mode: {value!r}")
    else:
        raise ConfigError(f"invalid mode: {value!r}")
    if mode < 0 or mode > 0o7777:
        raise ConfigError(f"mode out of range: {oct(mode)}")
    return mode


def _merge(base: Dict, override: Dict) -> Dict:
    cfg = copy.deepcopy(base)
    for key, value in override.items():
        if key == "tools" and isinstance(value, dict):
            for name, entry in value.items():
                if entry is None:
                    cfg["tools"].pop(name, None)
                    continue
                cfg["tools"].setdefault(name, {}).update(entry)
        elif key in ("toolsets", "notifications") and isinstance(value, dict):
            cfg[key].update(value)
        else:
            cfg[key] = value
    return cfg


def validate_config(cfg: Dict) -> Dict:
    tools = cfg.get("tools") or {}
    if not tools:
        raise ConfigError("no tools configured")
    seen: Dict[str, str] = {}
    for name, entry in tools.items():
        for k, v in TOOL_DEFAULTS.items():
            entry.setdefault(k, v)
        dest = entry.get("destination")
        if not isinstance(dest, str) or not os.path.isabs(dest):
            raise ConfigError(f"destination must be an absolute path: {dest!r}", tool=name)
        if any(c in dest for c in "\t\r\n"):
            raise ConfigError(f"destination contains control characters: {dest!r}", tool=name)
        magic = entry.get("magic")
        if isinstance(magic, str):
            entry["magic"] = magic = [magic]
        for m in magic or []:
            try:
                if not bytes.fromhex(m):
                    raise ValueError("empty header")
            except (TypeError, ValueError):
                raise ConfigError(f"magic must be non-empty hex strings: {m!r}", tool=name)
        sources = entry.get("sources")
        if isinstance(sources, str):
            entry["sources"] = sources = [sources]
        if not sources:
            raise ConfigError("no source candidates configured", tool=name)
        entry["mode"] = parse_mode(entry["mode"])
        real = os.path.normpath(dest)
        if real in seen:
            raise ConfigError(f"destination {dest} shared with {seen[real]}", tool=name)
        seen[real] = name
    for set_name, members in (cfg.get("toolsets") or {}).items():
        for member in members:
            if member not in tools:
                raise ConfigError(f"toolset {set_name!r} names unknown tool {member!r}")
    return cfg


def load_config(path: Optional[str] = None) -> Dict:
    """
    Build the effective configuration: defaults from CONFIG, overridden by the
    JSON file at `path` (or $TOOLINSTALL_CONFIG when `path` is None).
    Tool entries are merged field by field; a tool set to null is removed.
    """
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        return validate_config(copy.deepcopy(CONFIG))
    try:
        with open(path, "r", encoding="utf-8") as f:
            override = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read config {path}: {e}")
    if not isinstance(override, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    LOG.info("Loaded configuration overrides from %s", path)
    return validate_config(_merge(CONFIG, override))


def toolset_members(cfg: Dict, toolset: str) -> List[str]:
    sets = cfg.get("toolsets") or {}
    if toolset not in sets:
        raise ConfigError(f"unknown toolset: {toolset}")
    return list(sets[toolset])
