import json
import logging
import urllib.request
from typing import Dict

LOG = logging.getLogger("toolinstall-notifications")


def send_webhook(url: str, payload: Dict) -> bool:
    try:
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"})
        with urllib.request.urlopen(req, timeout=10) as resp:
            return resp.getcode() in (200, 201, 202, 204)
    except (OSError, ValueError) as e:
        LOG.exception("Webhook send failed: %s", e)
        return False


def notify_run(report: Dict, cfg: Dict) -> Dict:
    """Post an install run summary (RunReport.to_dict()) to the configured webhook."""
    results = {"webhook": None}
    if not cfg:
        return results
    webhook = cfg.get("webhook_url")
    if webhook:
        payload = {"type": "toolinstall_run", "report": report}
        results["webhook"] = send_webhook(webhook, payload)
    return results
