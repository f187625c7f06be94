import asyncio
import logging
import os
from typing import Optional

import psutil
from fastapi import FastAPI, HTTPException

from . import notifications
from .config import load_config
from .errors import ConfigError, ToolInstallError
from .orchestrator import InstallOrchestrator

LOG = logging.getLogger("toolinstall-agent")
logging.basicConfig(level=logging.INFO)

APP = FastAPI()
# one install run at a time
RUN_LOCK = asyncio.Lock()


def _config():
    try:
        return load_config()
    except ConfigError as e:
        LOG.exception("Configuration error: %s", e)
        raise HTTPException(status_code=500, detail=f"configuration error: {e.reason}")


def disk_report(cfg) -> dict:
    out = {}
    for name, tool in cfg["tools"].items():
        d = os.path.dirname(tool["destination"])
        try:
            usage = psutil.disk_usage(d)
            out[name] = {"dir": d, "free_bytes": usage.free}
        except OSError:
            out[name] = {"dir": d, "free_bytes": None}
    return out


@APP.get("/tools")
async def api_tools():
    cfg = _config()
    tools = {
        name: {
            "destination": t["destination"],
            "mode": oct(t["mode"]),
            "pinned": bool(t.get("sha256")),
            "update_only": t.get("update_only", False),
        }
        for name, t in cfg["tools"].items()
    }
    return {"tools": tools, "toolsets": cfg.get("toolsets", {})}


@APP.get("/status")
async def api_status(toolset: str = "default"):
    cfg = _config()
    try:
        status = InstallOrchestrator(cfg).status(toolset)
    except ToolInstallError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    return {"toolset": toolset, "tools": status, "disk": disk_report(cfg)}


@APP.post("/install")
async def api_install(toolset: str = "default", notify: Optional[bool] = None):
    cfg = _config()
    if toolset not in (cfg.get("toolsets") or {}):
        raise HTTPException(status_code=400, detail=f"unknown toolset: {toolset}")
    orch = InstallOrchestrator(cfg)
    async with RUN_LOCK:
        try:
            report = await asyncio.get_running_loop().run_in_executor(None, orch.run, toolset)
        except Exception as e:
            LOG.exception("install run failed: %s", e)
            raise HTTPException(status_code=500, detail=f"install run failed: {e}")
    body = report.to_dict()
    ncfg = cfg.get("notifications", {})
    send = ncfg.get("auto_send") if notify is None else notify
    if send:
        body["notified"] = notifications.notify_run(body, ncfg)
    return body


def run_api(host: str = "127.0.0.1", port: int = 8000):
    import uvicorn
    uvicorn.run("toolinstall.agent:APP", host=host, port=port, reload=False)


if __name__ == "__main__":
    run_api()
