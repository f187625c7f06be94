import os
import stat
from types import SimpleNamespace

import pytest

from toolinstall import installer
from toolinstall.errors import InstallFailed
from toolinstall.installer import install, is_current, validate_installed
from toolinstall.resolver import ToolSpec
from toolinstall.verifier import sha256_of


def _spec(tmp_path, content=b"binary", mode=0o755):
    src = tmp_path / "srcbin"
    src.write_bytes(content)
    dest_dir = tmp_path / "dest"
    dest_dir.mkdir(exist_ok=True)
    return ToolSpec(name="binprog", source_path=str(src), destination_path=str(dest_dir / "binprog"),
                    expected_mode=mode)


def _leftovers(spec):
    d = os.path.dirname(spec.destination_path)
    return [n for n in os.listdir(d) if n != os.path.basename(spec.destination_path)]


def test_atomic_install_and_validate(tmp_path):
    spec = _spec(tmp_path)
    outcome = install(spec)
    assert os.path.exists(outcome.destination)
    assert validate_installed(outcome.destination)
    st = os.stat(outcome.destination)
    assert stat.S_IMODE(st.st_mode) == 0o755
    assert outcome.digest == sha256_of(spec.source_path)
    assert _leftovers(spec) == []


def test_install_applies_configured_mode(tmp_path):
    spec = _spec(tmp_path, mode=0o750)
    install(spec)
    assert stat.S_IMODE(os.stat(spec.destination_path).st_mode) == 0o750
    assert not validate_installed(spec.destination_path, 0o755)


def test_install_replaces_existing_content(tmp_path):
    spec = _spec(tmp_path, content=b"new")
    with open(spec.destination_path, "wb") as f:
        f.write(b"old")
    install(spec)
    with open(spec.destination_path, "rb") as f:
        assert f.read() == b"new"


def test_install_requires_existing_destination_dir(tmp_path):
    src = tmp_path / "srcbin"
    src.write_bytes(b"binary")
    spec = ToolSpec(name="binprog", source_path=str(src), destination_path=str(tmp_path / "missing" / "binprog"))
    with pytest.raises(InstallFailed):
        install(spec)
    assert not (tmp_path / "missing").exists()


def test_mode_is_set_before_rename(tmp_path, monkeypatch):
    spec = _spec(tmp_path, mode=0o755)
    real_replace = os.replace
    seen = {}

    def checking_replace(src, dst):
        seen["mode"] = stat.S_IMODE(os.stat(src).st_mode)
        return real_replace(src, dst)

    monkeypatch.setattr(installer.os, "replace", checking_replace)
    install(spec)
    assert seen["mode"] == 0o755


def test_crash_before_rename_keeps_prior_content(tmp_path, monkeypatch):
    spec = _spec(tmp_path, content=b"new")
    with open(spec.destination_path, "wb") as f:
        f.write(b"old")
    os.chmod(spec.destination_path, 0o700)

    def boom(src, dst):
        raise OSError("simulated crash")

    monkeypatch.setattr(installer.os, "replace", boom)
    with pytest.raises(InstallFailed) as exc:
        install(spec)
    assert "simulated crash" in exc.value.reason
    with open(spec.destination_path, "rb") as f:
        assert f.read() == b"old"
    assert stat.S_IMODE(os.stat(spec.destination_path).st_mode) == 0o700
    assert _leftovers(spec) == []


def test_chmod_failure_leaves_destination_absent(tmp_path, monkeypatch):
    spec = _spec(tmp_path)

    def boom(path, mode):
        raise PermissionError("chmod denied")

    monkeypatch.setattr(installer.os, "chmod", boom)
    with pytest.raises(InstallFailed):
        install(spec)
    assert not os.path.exists(spec.destination_path)
    assert _leftovers(spec) == []


def test_source_changed_since_verification(tmp_path):
    spec = _spec(tmp_path, content=b"swapped")
    with pytest.raises(InstallFailed) as exc:
        install(spec, expected_digest="0" * 64)
    assert "changed since verification" in exc.value.reason
    assert not os.path.exists(spec.destination_path)
    assert _leftovers(spec) == []


def test_insufficient_space(tmp_path, monkeypatch):
    spec = _spec(tmp_path)
    monkeypatch.setattr(installer.psutil, "disk_usage", lambda p: SimpleNamespace(free=10))
    with pytest.raises(InstallFailed) as exc:
        install(spec, min_free_bytes=4096)
    assert "insufficient space" in exc.value.reason
    assert not os.path.exists(spec.destination_path)


def test_is_current(tmp_path):
    spec = _spec(tmp_path)
    digest = sha256_of(spec.source_path)
    assert not is_current(spec, digest)
    install(spec)
    assert is_current(spec, digest)
    os.chmod(spec.destination_path, 0o644)
    assert not is_current(spec, digest)
