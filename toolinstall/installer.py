import hashlib
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from typing import Optional

import psutil

from .errors import InstallFailed
from .resolver import ToolSpec
from .verifier import CHUNK_SIZE, sha256_of

LOG = logging.getLogger("toolinstall-installer")


@dataclass(frozen=True)
class InstallOutcome:
    tool: str
    destination: str
    digest: str
    mode: int


def fsync_dir(path: str):
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _check_free_space(dest_dir: str, needed: int, min_free_bytes: int):
    usage = psutil.disk_usage(dest_dir)
    if usage.free < needed + min_free_bytes:
        raise OSError(f"insufficient space in {dest_dir}: {usage.free} bytes free, need {needed + min_free_bytes}")


def _copy_hashing(src_path: str, fd: int) -> str:
    h = hashlib.sha256()
    with open(src_path, "rb") as src, os.fdopen(fd, "wb", closefd=False) as out:
        for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
            h.update(chunk)
            out.write(chunk)
        out.flush()
        os.fsync(out.fileno())
    return h.hexdigest()


def install(spec: ToolSpec, expected_digest: Optional[str] = None, min_free_bytes: int = 0) -> InstallOutcome:
    """
    Atomically install `spec.source_path` at `spec.destination_path`.
    - The destination directory must already exist.
    - Content goes to a temp file in the destination directory (same
      filesystem) and is fsynced; the mode is set on the temp file.
    - If `expected_digest` is given the copied bytes must hash to it.
    - The temp file is renamed over the destination and the directory fsynced.
    On failure the temp file is removed, the destination keeps its prior
    content (or stays absent) and InstallFailed is raised.
    """
    dest = os.path.abspath(spec.destination_path)
    d = os.path.dirname(dest)
    if not os.path.isdir(d):
        raise InstallFailed(f"destination directory does not exist: {d}", tool=spec.name)

    tmp = None
    try:
        _check_free_space(d, os.path.getsize(spec.source_path), min_free_bytes)
        fd, tmp = tempfile.mkstemp(dir=d, prefix=f".{os.path.basename(dest)}.")
        try:
            digest = _copy_hashing(spec.source_path, fd)
        finally:
            os.close(fd)
        if expected_digest and digest != expected_digest:
            raise OSError(f"source changed since verification (sha256 {digest})")
        # mode must be final before the file is reachable at its real name
        os.chmod(tmp, spec.expected_mode)
        os.replace(tmp, dest)
        tmp = None
        fsync_dir(d)
    except OSError as e:
        raise InstallFailed(f"{spec.source_path} -> {dest}: {e}", tool=spec.name) from e
    finally:
        if tmp is not None:
            remove_if_exists(tmp)

    LOG.info("Installed %s -> %s (mode %s, sha256 %s)", spec.source_path, dest, oct(spec.expected_mode), digest)
    return InstallOutcome(tool=spec.name, destination=dest, digest=digest, mode=spec.expected_mode)


def remove_if_exists(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        LOG.warning("Could not remove %s: %s", path, e)


def validate_installed(path: str, expected_mode: int = 0o755) -> bool:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False
    mode = stat.S_IMODE(st.st_mode)
    return mode == expected_mode and stat.S_ISREG(st.st_mode)


def is_current(spec: ToolSpec, digest: str) -> bool:
    """True when the destination already holds `digest` with the expected mode."""
    if not validate_installed(spec.destination_path, spec.expected_mode):
        return False
    try:
        return sha256_of(spec.destination_path) == digest
    except OSError:
        return False
