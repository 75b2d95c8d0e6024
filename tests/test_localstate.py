import json

import pytest

from buildxkit.localstate import LocalState, State


@pytest.fixture
def store(tmp_path):
    return LocalState(tmp_path)


def test_root_required():
    with pytest.raises(ValueError):
        LocalState("")


def test_creates_refs_dir(tmp_path):
    LocalState(tmp_path / "x")
    assert (tmp_path / "x" / "refs").is_dir()


def test_round_trip(store):
    st = State(local_path="/ctx", dockerfile_path="/ctx/Dockerfile")
    store.save_ref("b", "n", "id1", st)
    assert store.read_ref("b", "n", "id1") == st


def test_json_field_names(store, tmp_path):
    store.save_ref("b", "n", "id1", State("/a", "/b"))
    raw = json.loads((tmp_path / "refs" / "b" / "n" / "id1").read_text())
    assert raw == {"LocalPath": "/a", "DockerfilePath": "/b"}
    assert store.read_ref("b", "n", "id1") == State("/a", "/b")


def test_overwrite(store):
    store.save_ref("b", "n", "id", State("/a", "/b"))
    store.save_ref("b", "n", "id", State("/c", "/d"))
    assert store.read_ref("b", "n", "id").local_path == "/c"


def test_missing_ref(store):
    with pytest.raises(FileNotFoundError):
        store.read_ref("b", "n", "nope")


@pytest.mark.parametrize("args", [("", "n", "i"), ("b", "", "i"), ("b", "n", "")])
def test_validation(store, args):
    with pytest.raises(ValueError):
        store.read_ref(*args)
    with pytest.raises(ValueError):
        store.save_ref(*args, State())


def test_remove_builder(store):
    store.save_ref("b", "n", "id", State())
    store.remove_builder("b")
    with pytest.raises(FileNotFoundError):
        store.read_ref("b", "n", "id")


def test_remove_builder_node_keeps_others(store):
    store.save_ref("b", "n1", "id", State("/1"))
    store.save_ref("b", "n2", "id", State("/2"))
    store.remove_builder_node("b", "n1")
    assert store.read_ref("b", "n2", "id").local_path == "/2"
    with pytest.raises(FileNotFoundError):
        store.read_ref("b", "n1", "id")


def test_remove_requires_names(store):
    with pytest.raises(ValueError):
        store.remove_builder("")
    with pytest.raises(ValueError):
        store.remove_builder_node("b", "")