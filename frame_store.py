"""
Key/value stores for exported avatar frames.

Every store offers the same four operations: put(key, blob), get(key),
delete(key) and clear(). Backend errors surface as StoreFailure; a missing
key is not an error for get() (returns None) or delete().
"""
import abc
import logging
from pathlib import Path

from avatar import StoreFailure

logger = logging.getLogger(__name__)


class FrameStore(abc.ABC):
    @abc.abstractmethod
    def put(self, key: str, blob: bytes) -> None:
        ...

    @abc.abstractmethod
    def get(self, key: str):
        ...

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abc.abstractmethod
    def clear(self) -> None:
        ...


class MemoryStore(FrameStore):
    def __init__(self):
        self._items = {}

    def put(self, key, blob):
        self._items[key] = bytes(blob)
        logger.debug("stored %s (%.2f KB)", key, len(blob) / 1024)

    def get(self, key):
        return self._items.get(key)

    def delete(self, key):
        self._items.pop(key, None)

    def clear(self):
        self._items.clear()

    def __len__(self):
        return len(self._items)

    def __contains__(self, key):
        return key in self._items


class DirectoryStore(FrameStore):
    """One file per key under 'root'. Keys must be plain file names."""

    def __init__(self, root):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreFailure(str(self.root), f"cannot create store directory: {e}") from e

    def _path(self, key: str) -> Path:
        if not key or key in (".", "..") or Path(key).name != key:
            raise StoreFailure(key, "key must be a plain file name")
        return self.root / key

    def put(self, key, blob):
        path = self._path(key)
        try:
            path.write_bytes(blob)
        except OSError as e:
            raise StoreFailure(key, f"write failed: {e}") from e
        logger.debug("stored %s (%.2f KB)", path, len(blob) / 1024)

    def get(self, key):
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreFailure(key, f"read failed: {e}") from e

    def delete(self, key):
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StoreFailure(key, f"delete failed: {e}") from e

    def clear(self):
        for path in self.root.iterdir():
            if path.is_file():
                try:
                    path.unlink()
                except OSError as e:
                    raise StoreFailure(path.name, f"delete failed: {e}") from e


def save_exports(result, store: FrameStore):
    """
    Puts every exported file into 'store' under its filename.
    A failed put is logged and returned; the remaining files are still saved.
    """
    failures = []
    for exported in result.files:
        try:
            store.put(exported.filename, exported.data)
        except StoreFailure as e:
            logger.warning("could not store frame %d: %s", exported.index + 1, e)
            failures.append(e)
    return failures
