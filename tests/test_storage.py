from pathlib import Path
from unittest.mock import patch

import pytest

from forgeworks_common.errors import InvalidRequest


class TestLocalObjectStore:

    def test_write_read_list(self, storage):
        storage.write_text("functions/a/main.py", "x = 1\n")
        storage.write_bytes("functions/a/data.bin", b"\x00\x01")
        storage.write_text("runs/b/main.py", "y = 2\n")

        assert storage.list("functions/a/") == ["functions/a/data.bin", "functions/a/main.py"]
        assert storage.read_text("functions/a/main.py") == "x = 1\n"
        assert storage.exists("runs/b/main.py")
        assert not storage.exists("runs/b/other.py")

    def test_prefix_is_not_a_sibling(self, storage):
        storage.write_text("functions/alpha2/main.py", "")
        assert storage.list("functions/alpha/") == []

    def test_list_walks_only_the_prefix_directory(self, storage):
        storage.write_text("functions/alpha/main.py", "")
        storage.write_text("functions/beta/main.py", "")
        storage.write_text("runs/alpha/main.py", "")
        real_rglob = Path.rglob
        walked = []

        def rglob(path, pattern):
            walked.append(path.relative_to(storage.base).as_posix())
            return real_rglob(path, pattern)

        with patch.object(Path, "rglob", rglob):
            assert storage.list("functions/alpha/") == ["functions/alpha/main.py"]
            assert storage.list("functions/al") == ["functions/alpha/main.py"]
            assert storage.list("runs/missing/") == []

        assert walked == ["functions/alpha", "functions"]

    def test_list_on_empty_bucket(self, storage):
        assert storage.list("functions/") == []

    def test_missing_object(self, storage):
        with pytest.raises(FileNotFoundError):
            storage.read_bytes("functions/none/main.py")

    @pytest.mark.parametrize("key", ["/etc/passwd", "../outside", "functions/../../x", ""])
    def test_unsafe_keys(self, storage, key):
        with pytest.raises(InvalidRequest):
            storage.write_text(key, "nope")

    def test_uri(self, storage):
        storage.write_text("functions/a/main.py", "")
        uri = storage.uri("functions/a/main.py")
        assert uri.startswith("file://")
        assert uri.endswith("/test-bucket/functions/a/main.py")
