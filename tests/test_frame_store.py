"""
Tests for frame_store

Test Coverage:
- put/get/delete/clear contract for MemoryStore and DirectoryStore
- DirectoryStore key validation
- save_exports(): failed puts are collected, not raised
"""
import pytest

from avatar import ExportedFile, ExportResult, StoreFailure
from frame_store import DirectoryStore, FrameStore, MemoryStore, save_exports


@pytest.fixture(params=["memory", "directory"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return DirectoryStore(tmp_path / "frames")


def test_put_get_roundtrip(store):
    store.put("avatar-1.png", b"abc")

    assert store.get("avatar-1.png") == b"abc"


def test_get_missing_returns_none(store):
    assert store.get("nothing.png") is None


def test_put_overwrites(store):
    store.put("a.png", b"old")
    store.put("a.png", b"new")

    assert store.get("a.png") == b"new"


def test_delete(store):
    store.put("a.png", b"1")
    store.delete("a.png")
    store.delete("a.png")

    assert store.get("a.png") is None


def test_clear(store):
    store.put("a.png", b"1")
    store.put("b.png", b"2")

    store.clear()

    assert store.get("a.png") is None
    assert store.get("b.png") is None


@pytest.mark.parametrize("key", ["", "..", "../escape.png", "sub/dir.png"])
def test_directory_store_rejects_paths(tmp_path, key):
    store = DirectoryStore(tmp_path)

    with pytest.raises(StoreFailure):
        store.put(key, b"x")


class FlakyStore(MemoryStore):
    def put(self, key, blob):
        if key.startswith("avatar-2"):
            raise StoreFailure(key, "disk full")
        super().put(key, blob)


def test_save_exports_is_non_fatal():
    # Arrange
    result = ExportResult(files=[
        ExportedFile(i, f"avatar-{i + 1}-0.png", bytes([i])) for i in range(4)
    ])
    store = FlakyStore()

    # Act
    failures = save_exports(result, store)

    # Assert
    assert [f.key for f in failures] == ["avatar-2-0.png"]
    assert len(store) == 3
    assert store.get("avatar-4-0.png") == bytes([3])


def test_frame_store_is_abstract():
    with pytest.raises(TypeError):
        FrameStore()
