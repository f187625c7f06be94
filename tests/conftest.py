import json
import struct
from types import SimpleNamespace

import pytest

from toolinstall.config import validate_config


def elf_bytes(payload: bytes = b"", ei_class: int = 2, big_endian: bool = False) -> bytes:
    """Smallest ELF executable image the verifier accepts: header + one program header."""
    e = ">" if big_endian else "<"
    ident = b"\x7fELF" + bytes([ei_class, 2 if big_endian else 1, 1, 0]) + b"\x00" * 8
    if ei_class == 2:
        header = ident + struct.pack(e + "HHIQQQIHHHHHH", 2, 0xB7, 1, 0, 64, 0, 0, 64, 56, 1, 64, 0, 0)
        phdr = b"\x00" * 56
    else:
        header = ident + struct.pack(e + "HHIIIIIHHHHHH", 2, 0x28, 1, 0, 52, 0, 0, 52, 32, 1, 40, 0, 0)
        phdr = b"\x00" * 32
    return header + phdr + payload


@pytest.fixture
def make_elf():
    return elf_bytes


@pytest.fixture
def tool_env(tmp_path):
    src_dir = tmp_path / "app" / "lib" / "arm64"
    src_dir.mkdir(parents=True)
    bin_dir = tmp_path / "adb" / "ksu" / "bin"
    bin_dir.mkdir(parents=True)
    cfg = {
        "source_roots": [str(src_dir), str(tmp_path / "app" / "lib" / "arm")],
        "tools": {
            "kpmmgr": {
                "sources": ["{source_root}/libkpmmgr.so"],
                "destination": str(bin_dir / "kpmmgr"),
                "mode": "0755",
                "sha256": None,
                "signature": None,
                "update_only": False,
            },
            "susfsd": {
                "sources": ["{source_root}/libsusfsd.so"],
                "destination": str(bin_dir / "susfsd"),
                "mode": 0o750,
                "sha256": None,
                "signature": None,
                "update_only": False,
            },
        },
        "toolsets": {"default": ["kpmmgr", "susfsd"], "kpm": ["kpmmgr"], "susfs": ["susfsd"]},
        "ledger_path": str(tmp_path / "adb" / "ksu" / "toolinstall.ledger"),
        "verify_timeout": 30.0,
        "min_free_bytes": 0,
        "pubkey_path": None,
        "max_workers": 1,
        "notifications": {"auto_send": False, "webhook_url": None},
    }
    cfg = validate_config(cfg)

    def write_config():
        path = tmp_path / "toolinstall.json"
        path.write_text(json.dumps(cfg))
        return str(path)

    return SimpleNamespace(
        cfg=cfg,
        src_dir=src_dir,
        bin_dir=bin_dir,
        ledger_path=cfg["ledger_path"],
        write_config=write_config,
    )
