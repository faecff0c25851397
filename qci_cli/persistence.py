import json
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

HOME_DIR = os.path.expanduser("~")
QCI_DIR = os.path.join(HOME_DIR, ".qci")
DEFAULT_FILE = os.path.join(QCI_DIR, "cache.json")


class FileLockTimeout(Exception):
    pass


class DictStore:
    """
    A small persistent key/value store backed by a JSON file (default ~/.qci/cache.json).

    - Writes go to a temporary file and are moved into place with os.replace
    - Mutations hold an exclusive lock file next to the store
    - A corrupt store file is moved aside to <path>.bak and treated as empty
    """

    def __init__(self, path: Optional[str] = None, lock_path: Optional[str] = None):
        self.path = path or DEFAULT_FILE
        self.lock_path = lock_path or self.path + ".lock"
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        if not os.path.exists(self.path):
            self._atomic_write({})

    @contextmanager
    def lock(self, timeout: float = 1.0, poll_interval: float = 0.05):
        """Hold the lock file for the duration of the block."""
        start = time.time()
        while True:
            try:
                lock_fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o600)
                break
            except FileExistsError:
                if time.time() - start > timeout:
                    raise FileLockTimeout(f"Timeout acquiring lock {self.lock_path}")
                time.sleep(poll_interval)
        try:
            yield
        finally:
            os.close(lock_fd)
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                pass

    def _atomic_write(self, data: Dict[str, Any]):
        dir_name = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(prefix=".store.", suffix=".json.tmp", dir=dir_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            os.replace(self.path, self.path + ".bak")
            return {}

    def get_all(self) -> Dict[str, Any]:
        return self._read()

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._read()

    def set(self, key: str, value: Any) -> None:
        with self.lock():
            data = self._read()
            data[key] = value
            self._atomic_write(data)

    def delete(self, key: str) -> None:
        with self.lock():
            data = self._read()
            if key in data:
                del data[key]
                self._atomic_write(data)

    def clear(self) -> None:
        with self.lock():
            self._atomic_write({})

    @contextmanager
    def transaction(self):
        """
        Lock, load, let the caller mutate the dict, then write it back.

            with store.transaction() as data:
                data["ipfs:bafy..."] = "..."
        """
        with self.lock():
            data = self._read()
            yield data
            self._atomic_write(data)
