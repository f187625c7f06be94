import hashlib
import logging
import struct
import subprocess
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import CorruptOrUntrusted
from .resolver import ELF_MAGIC

LOG = logging.getLogger("toolinstall-verifier")

CHUNK_SIZE = 1 << 20
ELF_HEADER_SIZE = {1: 52, 2: 64}


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    digest: str
    reason: Optional[str] = None
    pinned: bool = False


def sha256_of(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def normalize_digest(digest: str) -> str:
    d = digest.strip().lower()
    if d.startswith("sha256:"):
        d = d[len("sha256:"):]
    if len(d) != 64 or any(c not in "0123456789abcdef" for c in d):
        raise CorruptOrUntrusted(f"malformed expected digest: {digest!r}")
    return d


def check_elf(header: bytes, size: int) -> Optional[str]:
    """
    Returns a description of what is wrong with an ELF image of `size` bytes
    whose leading bytes are `header`, or None when the program and section
    header tables both fit inside the file.
    """
    if len(header) < 16:
        return "truncated ELF identification"
    ei_class, ei_data = header[4], header[5]
    if ei_class not in ELF_HEADER_SIZE:
        return f"unsupported ELF class {ei_class}"
    if ei_data not in (1, 2):
        return f"unsupported ELF data encoding {ei_data}"
    if len(header) < ELF_HEADER_SIZE[ei_class]:
        return "truncated ELF header"
    endian = "<" if ei_data == 1 else ">"
    if ei_class == 2:
        phoff, shoff = struct.unpack_from(endian + "QQ", header, 32)
        phentsize, phnum, shentsize, shnum = struct.unpack_from(endian + "HHHH", header, 54)
    else:
        phoff, shoff = struct.unpack_from(endian + "II", header, 28)
        phentsize, phnum, shentsize, shnum = struct.unpack_from(endian + "HHHH", header, 42)
    if phnum == 0:
        return "no program headers"
    if phoff + phentsize * phnum > size:
        return "program header table past end of file"
    if shnum and shoff + shentsize * shnum > size:
        return "section header table past end of file"
    return None


def gpg_verify(sig_path: str, data_path: str, pubkey_path: Optional[str] = None,
               timeout: Optional[float] = None) -> bool:
    try:
        if pubkey_path:
            subprocess.run(["gpg", "--batch", "--import", pubkey_path], check=True,
                           stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=timeout)
        res = subprocess.run(["gpg", "--batch", "--verify", sig_path, data_path], check=False,
                             stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=timeout)
        return res.returncode == 0
    except (OSError, subprocess.SubprocessError) as e:
        LOG.warning("gpg verification of %s could not run: %s", data_path, e)
        return False


def verify(source_path: str,
           expected_digest: Optional[str] = None,
           magic: Sequence[bytes] = (ELF_MAGIC,),
           signature_path: Optional[str] = None,
           pubkey_path: Optional[str] = None,
           timeout: Optional[float] = None,
           tool: Optional[str] = None) -> VerificationResult:
    """
    Read `source_path` fully, hash it and check it is a plausible executable.
    - rejects empty files and files not starting with one of `magic`
    - ELF images must contain their program/section header tables
    - if `expected_digest` is set the sha256 must match, otherwise the result
      is returned unpinned
    - if `signature_path` is set the detached gpg signature must verify
    Raises CorruptOrUntrusted on any failed check.
    """
    deadline = time.monotonic() + timeout if timeout else None

    def fail(reason: str):
        raise CorruptOrUntrusted(f"{source_path}: {reason}", tool=tool)

    h = hashlib.sha256()
    header = b""
    size = 0
    try:
        with open(source_path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                if not header:
                    header = chunk[:64]
                h.update(chunk)
                size += len(chunk)
                if deadline is not None and time.monotonic() > deadline:
                    fail("verification timed out")
    except OSError as e:
        fail(f"cannot read candidate: {e}")

    if size == 0:
        fail("empty file")
    if not any(header.startswith(m) for m in magic):
        fail(f"unexpected file header {header[:4].hex()}")
    if header.startswith(ELF_MAGIC):
        problem = check_elf(header, size)
        if problem:
            fail(problem)

    digest = h.hexdigest()
    pinned = bool(expected_digest)
    if pinned and normalize_digest(expected_digest) != digest:
        fail(f"digest mismatch (expected {normalize_digest(expected_digest)}, got {digest})")

    if signature_path:
        remaining = None
        if deadline is not None:
            remaining = max(deadline - time.monotonic(), 0.1)
        if not gpg_verify(signature_path, source_path, pubkey_path, timeout=remaining):
            fail("signature verification failed")

    if not pinned:
        LOG.info("%s has no pinned digest; accepting sha256 %s", source_path, digest)
    return VerificationResult(ok=True, digest=digest, reason=None if pinned else "unpinned", pinned=pinned)
