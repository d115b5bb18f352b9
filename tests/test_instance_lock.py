"""Tests for the single-instance lock."""

import json
import os

import pytest

from codexgate.exceptions import LockConflict
from codexgate.instance_lock import InstanceLock, default_lock_path

JID = "15551234567@s.whatsapp.net"


def test_default_path_includes_number():
    path = default_lock_path("15551234567")
    assert path.name == "codexgate-15551234567.lock"


def test_acquire_writes_marker(tmp_path):
    lock = InstanceLock(tmp_path / "gate.lock", JID)
    lock.acquire()
    try:
        payload = json.loads((tmp_path / "gate.lock").read_text())
        assert payload["pid"] == os.getpid()
        assert payload["allowed_jid"] == JID
        assert payload["started_at"]
        assert lock.read() == payload
        assert lock.held is True
    finally:
        lock.release()
    assert not (tmp_path / "gate.lock").exists()


def test_second_instance_conflicts(tmp_path):
    path = tmp_path / "gate.lock"
    first = InstanceLock(path, JID)
    first.acquire()
    second = InstanceLock(path, JID)
    with pytest.raises(LockConflict) as exc_info:
        second.acquire()
    assert exc_info.value.lock_path == str(path)
    assert "Another instance" in str(exc_info.value)

    # A failed acquire must not remove the other instance's lock
    second.release()
    assert path.exists()
    first.release()


def test_release_tolerates_missing_file(tmp_path):
    lock = InstanceLock(tmp_path / "gate.lock", JID)
    lock.acquire()
    (tmp_path / "gate.lock").unlink()
    lock.release()
    lock.release()


def test_context_manager(tmp_path):
    path = tmp_path / "gate.lock"
    with InstanceLock(path, JID):
        assert path.exists()
    assert not path.exists()
