import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from . import installer, verifier
from .config import toolset_members
from .errors import LedgerWriteFailed, ToolInstallError
from .ledger import InstallLedger, LedgerEntry, utc_now
from .resolver import PathResolver

LOG = logging.getLogger("toolinstall-orchestrator")


class ToolState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    VERIFIED = "verified"
    INSTALLED = "installed"
    RECORDED = "recorded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ToolOutcome:
    tool: str
    state: ToolState = ToolState.PENDING
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    digest: Optional[str] = None
    changed: bool = False
    pinned: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state in (ToolState.RECORDED, ToolState.SKIPPED)

    def fail(self, err: ToolInstallError):
        self.state = ToolState.FAILED
        self.error_kind = err.kind
        self.reason = err.reason

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["state"] = self.state.value
        return d


@dataclass
class RunReport:
    toolset: str
    outcomes: Dict[str, ToolOutcome] = field(default_factory=dict)
    ledger_failed: bool = False

    @property
    def failed(self) -> List[ToolOutcome]:
        return [o for o in self.outcomes.values() if not o.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return not self.ledger_failed and not self.failed

    @property
    def exit_code(self) -> int:
        if self.ledger_failed:
            return 2
        return 1 if self.failed else 0

    def summary(self) -> str:
        lines = []
        for name, o in self.outcomes.items():
            if o.state == ToolState.FAILED:
                lines.append(f"{name}: failed [{o.error_kind}] {o.reason}")
            elif o.state == ToolState.SKIPPED:
                lines.append(f"{name}: skipped ({o.reason})")
            else:
                action = "installed" if o.changed else "unchanged"
                pin = "" if o.pinned else ", unpinned"
                lines.append(f"{name}: {o.state.value} ({action}, sha256 {o.digest}{pin})")
        total = len(self.outcomes)
        if self.ledger_failed:
            lines.append(f"ledger write failed; {len(self.failed)} of {total} tools not recorded")
        elif self.failed:
            lines.append(f"{len(self.failed)} of {total} tools failed")
        else:
            lines.append(f"all {total} tools succeeded")
        return "\n".join(lines)

    def to_dict(self) -> Dict:
        return {
            "toolset": self.toolset,
            "ok": self.all_succeeded,
            "exit_code": self.exit_code,
            "ledger_failed": self.ledger_failed,
            "outcomes": {name: o.to_dict() for name, o in self.outcomes.items()},
        }


class InstallOrchestrator:
    """Runs resolve -> verify -> install -> record for every tool of a tool set."""

    def __init__(self, cfg: Dict, ledger: Optional[InstallLedger] = None,
                 resolver: Optional[PathResolver] = None, max_workers: Optional[int] = None):
        self.cfg = cfg
        self.ledger = ledger or InstallLedger(cfg["ledger_path"])
        self.resolver = resolver or PathResolver(cfg)
        self.max_workers = max_workers or int(cfg.get("max_workers", 1) or 1)

    def install_tool(self, name: str) -> ToolOutcome:
        outcome = ToolOutcome(tool=name)
        try:
            source = self.resolver.resolve(name)
            outcome.state = ToolState.RESOLVED
            spec = self.resolver.tool_spec(name, source)

            if spec.update_only and not os.path.lexists(spec.destination_path):
                outcome.state = ToolState.SKIPPED
                outcome.reason = f"{spec.destination_path} not present and tool is update-only"
                LOG.info("Skipping %s: %s", name, outcome.reason)
                return outcome

            result = verifier.verify(
                source,
                expected_digest=spec.expected_digest,
                magic=spec.magic,
                signature_path=spec.signature_path,
                pubkey_path=self.cfg.get("pubkey_path"),
                timeout=self.cfg.get("verify_timeout"),
                tool=name,
            )
            outcome.state = ToolState.VERIFIED
            outcome.digest = result.digest
            outcome.pinned = result.pinned

            last = self.ledger.last_recorded(name)
            recorded_match = (
                last is not None
                and last.digest == result.digest
                and last.destination_path == os.path.abspath(spec.destination_path)
            )
            if recorded_match and installer.is_current(spec, result.digest):
                LOG.info("%s already current at %s", name, spec.destination_path)
            else:
                if recorded_match:
                    LOG.warning("%s drifted from its ledger entry; reinstalling", spec.destination_path)
                installer.install(
                    spec,
                    expected_digest=result.digest,
                    min_free_bytes=int(self.cfg.get("min_free_bytes", 0) or 0),
                )
                outcome.changed = True
            outcome.state = ToolState.INSTALLED

            self.ledger.record(LedgerEntry(
                tool_name=name,
                digest=result.digest,
                installed_at=utc_now(),
                destination_path=os.path.abspath(spec.destination_path),
                pinned=result.pinned,
            ))
            outcome.state = ToolState.RECORDED
        except ToolInstallError as e:
            LOG.error("%s failed in state %s: %s", name, outcome.state.value, e.reason)
            outcome.fail(e)
        return outcome

    def run(self, toolset: str = "default") -> RunReport:
        names = toolset_members(self.cfg, toolset)
        report = RunReport(toolset=toolset)

        if not self.ledger.writable():
            err = LedgerWriteFailed(f"ledger {self.ledger.path} is not writable; nothing installed")
            LOG.error(err.reason)
            report.ledger_failed = True
            for name in names:
                outcome = ToolOutcome(tool=name)
                outcome.fail(err)
                report.outcomes[name] = outcome
            return report

        if self.max_workers > 1 and len(names) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(self.install_tool, names))
        else:
            results = [self.install_tool(name) for name in names]

        for outcome in results:
            report.outcomes[outcome.tool] = outcome
            if outcome.error_kind == LedgerWriteFailed.kind:
                report.ledger_failed = True

        if report.all_succeeded:
            LOG.info("Toolset %s: all %d tools succeeded", toolset, len(names))
        else:
            LOG.warning("Toolset %s: %d of %d tools failed", toolset, len(report.failed), len(names))
        return report

    def status(self, toolset: str = "default") -> Dict[str, Dict]:
        """Compare each tool's destination with its ledger entry."""
        out = {}
        for name in toolset_members(self.cfg, toolset):
            tool_cfg = self.cfg["tools"][name]
            dest = os.path.abspath(tool_cfg["destination"])
            entry = self.ledger.last_recorded(name)
            info = {"tool": name, "destination": dest, "digest": None, "installed_at": None, "pinned": False}
            if entry is None:
                info["state"] = "untracked"
            else:
                info.update(digest=entry.digest, installed_at=entry.installed_at, pinned=entry.pinned)
                if not os.path.lexists(dest):
                    info["state"] = "missing"
                elif _digest_or_none(dest) != entry.digest:
                    info["state"] = "modified"
                elif not installer.validate_installed(dest, tool_cfg["mode"]):
                    info["state"] = "mode"
                else:
                    info["state"] = "ok"
            out[name] = info
        return out


def _digest_or_none(path: str) -> Optional[str]:
    try:
        return verifier.sha256_of(path)
    except OSError:
        return None
