#!/usr/bin/env python3
"""
CLI for the privileged helper installer:
- install    : resolve, verify, atomically install and record a tool set
- status     : compare installed helpers with the ledger
- run-agent  : start the FastAPI agent (uvicorn)
"""
import argparse
import logging
import sys

from .config import load_config
from .errors import ConfigError, ToolInstallError
from .orchestrator import InstallOrchestrator


def do_install(cfg, toolset: str, workers: int = None) -> int:
    report = InstallOrchestrator(cfg, max_workers=workers).run(toolset)
    print(report.summary())
    ncfg = cfg.get("notifications", {})
    if ncfg.get("auto_send"):
        from .notifications import notify_run
        notify_run(report.to_dict(), ncfg)
    return report.exit_code


def do_status(cfg, toolset: str) -> int:
    status = InstallOrchestrator(cfg).status(toolset)
    drifted = 0
    for name, info in status.items():
        line = f"{name}: {info['state']} {info['destination']}"
        if info["digest"]:
            line += f" sha256 {info['digest']} at {info['installed_at']}"
            if not info["pinned"]:
                line += " (unpinned)"
        print(line)
        if info["state"] != "ok":
            drifted += 1
    return 1 if drifted else 0


def main(argv=None) -> int:
    p = argparse.ArgumentParser(prog="toolinstall")
    p.add_argument("--config", help="JSON file overriding the built-in tool table", default=None)
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    cinst = sub.add_parser("install", help="Install all tools of a tool set (idempotent)")
    cinst.add_argument("--toolset", default="default")
    cinst.add_argument("--workers", type=int, default=None, help="parallel tool pipelines")

    cstat = sub.add_parser("status", help="Report drift between installed tools and the ledger")
    cstat.add_argument("--toolset", default="default")

    cagent = sub.add_parser("run-agent", help="Run the FastAPI agent (foreground)")
    cagent.add_argument("--host", default="127.0.0.1")
    cagent.add_argument("--port", type=int, default=8000)

    args = p.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.cmd == "run-agent":
        from .agent import run_api
        run_api(args.host, args.port)
        return 0

    try:
        cfg = load_config(args.config)
        if args.cmd == "install":
            return do_install(cfg, args.toolset, args.workers)
        return do_status(cfg, args.toolset)
    except ToolInstallError as e:
        print(f"{e.kind}: {e.reason}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
