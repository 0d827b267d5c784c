import os
from pathlib import Path
from typing import List

from .errors import InvalidRequest, ObjectStoreError
from .utils import is_safe_path


class LocalObjectStore:
    """Blob store addressed by slash-separated keys, kept under root/bucket/."""

    def __init__(self, root: str, bucket: str):
        self.bucket = bucket
        self.base = Path(root) / bucket

    def _path(self, key: str) -> Path:
        if not is_safe_path(key):
            raise InvalidRequest(f"Invalid or unsafe object path: {key!r}")
        return self.base / key

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str = "") -> List[str]:
        if prefix and not is_safe_path(prefix):
            raise InvalidRequest(f"Invalid or unsafe object prefix: {prefix!r}")
        # walk only the directory the prefix names; the tail is matched per key
        root = self.base / prefix.rpartition("/")[0]
        if not root.is_dir():
            return []
        keys = []
        for p in root.rglob("*"):
            if p.is_file() and not (p.name.startswith(".") and p.name.endswith(".tmp")):
                key = p.relative_to(self.base).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def read_bytes(self, key: str) -> bytes:
        p = self._path(key)
        if not p.is_file():
            raise FileNotFoundError(key)
        try:
            return p.read_bytes()
        except OSError as e:
            raise ObjectStoreError(f"Read {key} failed: {e}") from e

    def read_text(self, key: str) -> str:
        return self.read_bytes(key).decode("utf-8")

    def write_bytes(self, key: str, data: bytes):
        p = self._path(key)
        tmp = p.with_name(f".{p.name}.tmp")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, p)
        except OSError as e:
            raise ObjectStoreError(f"Write {key} failed: {e}") from e

    def write_text(self, key: str, content: str):
        self.write_bytes(key, content.encode("utf-8"))

    def uri(self, key: str) -> str:
        return self._path(key).resolve().as_uri()
