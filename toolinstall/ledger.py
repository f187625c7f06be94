import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import LedgerWriteFailed
from .installer import fsync_dir, remove_if_exists

LOG = logging.getLogger("toolinstall-ledger")

HEADER = "# toolinstall ledger v1: tool\tsha256\tinstalled_at\tdestination\tpinned"


@dataclass(frozen=True)
class LedgerEntry:
    tool_name: str
    digest: str
    installed_at: str
    destination_path: str
    pinned: bool = False

    def to_line(self) -> str:
        return "\t".join([
            self.tool_name,
            self.digest,
            self.installed_at,
            self.destination_path,
            "pinned" if self.pinned else "unpinned",
        ])

    @classmethod
    def from_line(cls, line: str) -> "LedgerEntry":
        parts = line.rstrip("\n").split("\t")
        if len(parts) != 5 or parts[4] not in ("pinned", "unpinned"):
            raise ValueError(f"malformed ledger line: {line!r}")
        return cls(parts[0], parts[1], parts[2], parts[3], parts[4] == "pinned")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class InstallLedger:
    """
    Durable record of the last successful install of each tool.

    The file is rewritten whole on every `record`: temp file in the same
    directory, fsync, rename, fsync of the directory. Writers in this
    process are serialized by a lock.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, LedgerEntry]:
        """Raises OSError when the ledger exists but cannot be read."""
        entries: Dict[str, LedgerEntry] = {}
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                for lineno, line in enumerate(f, 1):
                    if not line.strip() or line.startswith("#"):
                        continue
                    try:
                        if "\ufffd" in line:
                            raise ValueError("undecodable bytes")
                        entry = LedgerEntry.from_line(line)
                    except ValueError:
                        LOG.warning("Skipping malformed ledger line %d in %s", lineno, self.path)
                        continue
                    entries[entry.tool_name] = entry
        except FileNotFoundError:
            pass
        return entries

    def _read_or_fail(self, tool_name: Optional[str] = None) -> Dict[str, LedgerEntry]:
        try:
            return self._read()
        except OSError as e:
            raise LedgerWriteFailed(f"cannot read ledger {self.path}: {e}", tool=tool_name) from e

    def entries(self) -> List[LedgerEntry]:
        return sorted(self._read_or_fail().values(), key=lambda e: e.tool_name)

    def last_recorded(self, tool_name: str) -> Optional[LedgerEntry]:
        return self._read_or_fail(tool_name).get(tool_name)

    def writable(self) -> bool:
        d = os.path.dirname(self.path)
        try:
            os.makedirs(d, exist_ok=True)
        except OSError as e:
            LOG.error("Ledger directory %s unavailable: %s", d, e)
            return False
        if os.path.exists(self.path) and not os.access(self.path, os.W_OK):
            return False
        return os.access(d, os.W_OK | os.X_OK)

    def record(self, entry: LedgerEntry):
        """Upsert `entry` by tool name; returns only once it is on stable storage."""
        fields = (entry.tool_name, entry.digest, entry.installed_at, entry.destination_path)
        if any(not f or "\t" in f or "\n" in f or "\r" in f for f in fields):
            raise LedgerWriteFailed(f"unrecordable entry: {entry!r}", tool=entry.tool_name)
        with self._lock:
            d = os.path.dirname(self.path)
            tmp = None
            try:
                entries = self._read()
                entries[entry.tool_name] = entry
                os.makedirs(d, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=d, prefix=".ledger.")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(HEADER + "\n")
                    for name in sorted(entries):
                        f.write(entries[name].to_line() + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, 0o644)
                os.replace(tmp, self.path)
                tmp = None
                fsync_dir(d)
            except OSError as e:
                raise LedgerWriteFailed(f"cannot write ledger {self.path}: {e}", tool=entry.tool_name) from e
            finally:
                if tmp is not None:
                    remove_if_exists(tmp)
        LOG.debug("Recorded %s in %s", entry.tool_name, self.path)
