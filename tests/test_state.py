import json
import stat

import pytest

from regionproxy.errors import LocalIOError
from regionproxy.state import SessionStore


def test_missing_state_means_not_running(store):
    assert store.load() is None
    assert store.is_running() is False


def test_round_trip(store, make_session):
    session = make_session()
    store.save(session)

    assert store.load() == session
    assert store.is_running() is True


def test_round_trip_without_tunnel_pid(store, make_session):
    session = make_session(tunnel_pid=None)
    store.save(session)

    loaded = store.load()
    assert loaded == session
    assert loaded["tunnel_pid"] is None


def test_json_format(store, make_session):
    store.save(make_session())
    data = json.loads(store.state_file.read_text())
    assert data["instance_id"] == "i-1234567890abcdef0"
    assert data["region"] == "ap-northeast-1"
    assert data["local_port"] == 1080


def test_state_file_is_owner_only(store, make_session):
    store.save(make_session())
    assert stat.S_IMODE(store.state_file.stat().st_mode) == 0o600


def test_save_replaces_whole_file(store, make_session):
    store.save(make_session(public_ip="54.0.0.1"))
    store.save(make_session(public_ip="54.0.0.2"))

    assert store.load()["public_ip"] == "54.0.0.2"
    leftovers = [p.name for p in store.home.iterdir() if p.name.startswith(".state.json")]
    assert leftovers == []


def test_delete_is_idempotent(store, make_session):
    store.save(make_session())
    store.delete()
    store.delete()
    assert store.load() is None


def test_corrupt_state_is_an_error(store):
    store.home.mkdir(parents=True)
    store.state_file.write_text("{not json")
    with pytest.raises(LocalIOError, match="Could not read state file"):
        store.load()


def test_incomplete_state_is_an_error(store):
    store.home.mkdir(parents=True)
    store.state_file.write_text(json.dumps({"instance_id": "i-1"}))
    with pytest.raises(LocalIOError, match="missing fields"):
        store.load()


def test_key_file_write_and_remove(store):
    path = store.write_key("region-proxy-abc", "secret")

    assert path == store.keys_dir / "region-proxy-abc.pem"
    assert path.read_text() == "secret"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600

    store.remove_key(path)
    store.remove_key(path)
    assert not path.exists()


def test_default_home_honours_env(monkeypatch, tmp_path):
    monkeypatch.setenv("REGION_PROXY_HOME", str(tmp_path / "custom"))
    store = SessionStore()
    assert store.state_file == tmp_path / "custom" / "state.json"
    assert store.keys_dir == tmp_path / "custom" / "keys"


def test_lock_is_exclusive(store):
    with store.lock():
        with pytest.raises(LocalIOError, match="in progress"):
            with store.lock():
                pass
    with store.lock():
        pass
