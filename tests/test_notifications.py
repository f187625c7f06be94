from toolinstall import notifications


def test_notify_run_without_webhook():
    assert notifications.notify_run({"ok": True}, {}) == {"webhook": None}
    assert notifications.notify_run({"ok": True}, {"webhook_url": None}) == {"webhook": None}


def test_notify_run_posts_payload(monkeypatch):
    calls = []
    monkeypatch.setattr(notifications, "send_webhook", lambda url, payload: calls.append((url, payload)) or True)
    res = notifications.notify_run({"ok": False}, {"webhook_url": "http://hooks.local/x"})
    assert res == {"webhook": True}
    assert calls == [("http://hooks.local/x", {"type": "toolinstall_run", "report": {"ok": False}})]


def test_send_webhook_failure_returns_false():
    assert notifications.send_webhook("http://127.0.0.1:9/unreachable", {"a": 1}) is False
