"""
test_state.py

State Store backends and sessions.
"""

import json
import os

import pytest

from reconciler import Identity, JsonStateStore, MemoryStateStore, StateRecord, StateStoreIOError

WEB = Identity("Instance", "web")
WEB_IP = Identity("Address", "web-ip")


def _records():
    return {
        WEB: StateRecord(WEB, "i-1", {"ami": "ami-0abc", "tags": {"env": "lab"}}),
        WEB_IP: StateRecord(WEB_IP, "eipalloc-1", {"instance": "i-1"}, [WEB]),
    }


def test_json_store_round_trip(tmp_path):
    store = JsonStateStore(str(tmp_path / "state.json"))
    store.save(_records())

    loaded = JsonStateStore(store.path).load()
    assert loaded == _records()
    assert loaded[WEB_IP].dependencies == [WEB]


def test_json_store_file_format(tmp_path):
    store = JsonStateStore(str(tmp_path / "state.json"))
    store.save(_records())
    store.save(_records())

    with open(store.path, encoding="utf-8") as f:
        data = json.load(f)
    assert data["version"] == 1
    assert data["serial"] == 2
    # Sorted by identity: Address before Instance.
    assert [r["kind"] for r in data["resources"]] == ["Address", "Instance"]
    assert data["resources"][0]["dependencies"] == ["Instance.web"]


def test_missing_file_is_empty_state(tmp_path):
    store = JsonStateStore(str(tmp_path / "nope.json"))
    assert not store.exists()
    assert store.load() == {}


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StateStoreIOError):
        JsonStateStore(str(path)).load()


@pytest.mark.parametrize("content", ["[]", '"x"', "3", "null"])
def test_non_object_file_raises(tmp_path, content):
    path = tmp_path / "state.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(StateStoreIOError, match="expected a JSON object"):
        JsonStateStore(str(path)).load()


def test_unsupported_version_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"version": 99, "resources": []}), encoding="utf-8")
    with pytest.raises(StateStoreIOError):
        JsonStateStore(str(path)).load()


def test_unwritable_location_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    store = JsonStateStore(str(blocker / "state.json"))
    with pytest.raises(StateStoreIOError):
        store.save(_records())


def test_save_leaves_no_temp_files(tmp_path):
    store = JsonStateStore(str(tmp_path / "state.json"))
    store.save(_records())
    assert os.listdir(tmp_path) == ["state.json"]


def test_remove(tmp_path):
    store = JsonStateStore(str(tmp_path / "state.json"))
    store.save(_records())
    store.remove()
    assert not store.exists()


def test_memory_store_copies_records():
    records = _records()
    store = MemoryStateStore(records)
    records[WEB].attributes["ami"] = "changed"

    loaded = store.load()
    assert loaded[WEB].attributes["ami"] == "ami-0abc"
    loaded[WEB].attributes["ami"] = "changed again"
    assert store.load()[WEB].attributes["ami"] == "ami-0abc"


def test_session_put_and_remove_flush_immediately():
    store = MemoryStateStore()
    with store.session() as session:
        session.put(_records()[WEB])
        assert set(store.load()) == {WEB}
        session.remove(WEB)
        assert store.load() == {}
    assert store.saves == 2


def test_session_flushes_pending_writes_on_error():
    store = MemoryStateStore()
    with pytest.raises(RuntimeError):
        with store.session() as session:
            session.put(_records()[WEB], flush=False)
            raise RuntimeError("boom")
    assert set(store.load()) == {WEB}


def test_session_flushes_pending_writes_on_exit():
    store = MemoryStateStore()
    with store.session() as session:
        session.put(_records()[WEB], flush=False)
        session.put(_records()[WEB_IP], flush=False)
        assert store.saves == 0
    assert store.saves == 1
    assert set(store.load()) == {WEB, WEB_IP}


def test_record_from_dict_rejects_bad_identity():
    with pytest.raises(ValueError):
        StateRecord.from_dict({"kind": "Instance", "name": "web", "provider_id": "i-1",
                               "dependencies": ["no-dot"]})
