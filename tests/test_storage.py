"""
Unit tests for the key-value store.

Tests cover:
- Encode/decode round trips and absent keys
- Retry logic with linear backoff
- Corruption detection (purge, no retry)
- Lenient multi-get
- Availability probe and storage info
- File-backed medium
"""

import json
from unittest.mock import patch

import pytest

from nextup.errors import (
    DataCorruptionError,
    ErrorCode,
    MaxRetriesExceededError,
    StorageError,
)
from nextup.metrics import storage_corruptions_total, storage_retries_total
from nextup.schemas import CollectionStatus
from nextup.storage import FileBackend, MemoryBackend, StorageManager


class TestStorageManagerConfig:
    """Constructor defaults and environment fallbacks."""

    def test_initialization_defaults(self, monkeypatch):
        """Test default retry settings and medium."""
        monkeypatch.delenv("NEXTUP_STORAGE_MAX_RETRIES", raising=False)
        monkeypatch.delenv("NEXTUP_STORAGE_RETRY_DELAY", raising=False)
        storage = StorageManager()
        assert storage.max_retries == 3
        assert storage.retry_delay == 1.0
        assert isinstance(storage.backend, MemoryBackend)

    def test_initialization_from_env(self, monkeypatch):
        """Test retry settings from environment variables."""
        monkeypatch.setenv("NEXTUP_STORAGE_MAX_RETRIES", "5")
        monkeypatch.setenv("NEXTUP_STORAGE_RETRY_DELAY", "0.25")
        storage = StorageManager()
        assert storage.max_retries == 5
        assert storage.retry_delay == 0.25

    def test_zero_values_are_not_replaced_by_defaults(self):
        """Test explicit zeros are kept."""
        storage = StorageManager(max_retries=0, retry_delay=0)
        assert storage.max_retries == 0
        assert storage.retry_delay == 0


class TestBasicOperations:
    """Test get, set, remove and clear."""

    @pytest.mark.parametrize("value", [
        "text",
        42,
        3.5,
        False,
        None,
        [1, "two", {"three": 3}],
        {"nested": {"list": [1, 2], "flag": True}},
        "unicode: Amélie 千と千尋",
    ])
    def test_round_trip(self, storage, value):
        """Test JSON values read back unchanged."""
        storage.set("key", value)
        assert storage.get("key") == value

    def test_missing_key_returns_none(self, storage):
        """Test an absent key reads as None."""
        assert storage.get("never-written") is None

    def test_values_are_stored_as_json_text(self, storage, backend):
        """Test the medium holds JSON text."""
        storage.set("k", {"a": 1})
        assert json.loads(backend.get_item("k")) == {"a": 1}

    def test_pydantic_models_are_stored_with_camel_case_keys(self, storage, backend, make_media):
        """Test models are dumped by alias."""
        storage.set("media", make_media(7, poster_path="/p.jpg"))
        stored = json.loads(backend.get_item("media"))
        assert stored["posterPath"] == "/p.jpg"
        assert stored["mediaType"] == "movie"

    def test_unserializable_value_raises_invalid_data_without_retry(self, backend):
        """Test unencodable values raise INVALID_DATA and write nothing."""
        storage = StorageManager(backend, max_retries=3, retry_delay=0)
        with pytest.raises(StorageError) as exc_info:
            storage.set("k", {"bad": object()})
        assert exc_info.value.code == ErrorCode.INVALID_DATA
        assert backend.get_item("k") is None

    def test_nan_is_rejected(self, storage):
        """Test NaN is not valid JSON."""
        with pytest.raises(StorageError) as exc_info:
            storage.set("k", float("nan"))
        assert exc_info.value.code == ErrorCode.INVALID_DATA

    def test_remove(self, storage):
        """Test removing a key, twice."""
        storage.set("k", 1)
        storage.remove("k")
        assert storage.get("k") is None
        storage.remove("k")

    def test_clear(self, storage):
        """Test clearing every key."""
        storage.set_multiple({"a": 1, "b": 2})
        storage.clear()
        assert storage.get_all_keys() == []

    def test_get_all_keys(self, storage):
        """Test listing keys."""
        storage.set_multiple({"a": 1, "b": 2})
        assert sorted(storage.get_all_keys()) == ["a", "b"]

    def test_str_enum_values_store_their_value(self, storage):
        """Test str enums are stored as their value."""
        storage.set("status", CollectionStatus.WILL_WATCH)
        assert storage.get("status") == "will_watch"


class TestRetries:
    """Linear backoff retry loop."""

    def test_transient_failures_are_retried(self, flaky_backend_cls):
        """Test a medium that recovers is retried until success."""
        backend = flaky_backend_cls(failures=2)
        storage = StorageManager(backend, max_retries=3, retry_delay=0)
        storage.set("k", "v")
        assert backend.calls["set_item"] == 3
        assert storage.get("k") == "v"

    def test_backoff_is_linear_in_attempt_number(self, flaky_backend_cls):
        """Test the delay grows with the attempt number."""
        backend = flaky_backend_cls(failures=100)
        storage = StorageManager(backend, max_retries=3, retry_delay=1.0)

        with patch("nextup.storage.time.sleep") as mock_sleep:
            with pytest.raises(MaxRetriesExceededError):
                storage.set("k", "v")

        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 3.0]

    def test_exhausted_retries_raise_max_retries_exceeded(self, flaky_backend_cls):
        """Test exhaustion raises with the last error attached."""
        backend = flaky_backend_cls(failures=100)
        storage = StorageManager(backend, max_retries=3, retry_delay=0)

        with pytest.raises(MaxRetriesExceededError) as exc_info:
            storage.get("k")

        error = exc_info.value
        assert error.code == ErrorCode.MAX_RETRIES_EXCEEDED
        assert error.attempts == 4
        assert "after 4 attempts" in error.message
        assert error.original_error.code == ErrorCode.READ_ERROR
        assert backend.calls["get_item"] == 4

    def test_no_retries_when_max_retries_is_zero(self, flaky_backend_cls):
        """Test a single attempt when retries are off."""
        backend = flaky_backend_cls(failures=1)
        storage = StorageManager(backend, max_retries=0, retry_delay=0)
        with pytest.raises(MaxRetriesExceededError) as exc_info:
            storage.remove("k")
        assert exc_info.value.attempts == 1
        assert backend.calls["remove_item"] == 1

    def test_retries_are_counted(self, flaky_backend_cls):
        """Test each retry increments the counter."""
        before = storage_retries_total.labels(operation="clear")._value.get()
        storage = StorageManager(flaky_backend_cls(failures=2), max_retries=3, retry_delay=0)
        storage.clear()
        assert storage_retries_total.labels(operation="clear")._value.get() == before + 2


class TestCorruption:
    """Test handling of values that fail to decode."""

    def test_corrupted_value_is_purged_and_raises(self):
        """Test corrupted JSON is removed and reported."""
        backend = MemoryBackend({"collections": "{not json"})
        storage = StorageManager(backend, max_retries=3, retry_delay=0)

        with pytest.raises(DataCorruptionError) as exc_info:
            storage.get("collections")

        assert exc_info.value.code == ErrorCode.DATA_CORRUPTION
        assert exc_info.value.key == "collections"
        assert backend.get_item("collections") is None
        assert storage.get("collections") is None

    def test_corruption_is_not_retried(self, flaky_backend_cls):
        """Test corruption fails on the first attempt."""
        backend = flaky_backend_cls(failures=0)
        backend.set_item("k", "<<<")
        storage = StorageManager(backend, max_retries=3, retry_delay=0)

        with patch("nextup.storage.time.sleep") as mock_sleep:
            with pytest.raises(DataCorruptionError):
                storage.get("k")

        assert backend.calls["get_item"] == 1
        mock_sleep.assert_not_called()

    def test_corruption_is_counted(self):
        """Test purges increment the corruption counter."""
        before = storage_corruptions_total._value.get()
        storage = StorageManager(MemoryBackend({"k": "]"}), retry_delay=0)
        with pytest.raises(DataCorruptionError):
            storage.get("k")
        assert storage_corruptions_total._value.get() == before + 1

    def test_failed_purge_still_raises_corruption(self, flaky_backend_cls):
        """Test corruption is reported even if removal fails."""
        backend = flaky_backend_cls(failures=0, fail_on=("remove_item",))
        backend.set_item("k", "{")
        backend.failures = 100
        storage = StorageManager(backend, max_retries=1, retry_delay=0)

        with pytest.raises(DataCorruptionError):
            storage.get("k")


class TestMultiOperations:
    """Test bulk reads and writes."""

    def test_set_and_get_multiple(self, storage):
        """Test bulk writes read back in bulk."""
        storage.set_multiple({"a": 1, "b": [2]})
        assert storage.get_multiple(["a", "b", "missing"]) == {"a": 1, "b": [2], "missing": None}

    def test_get_multiple_maps_unparseable_values_to_none(self):
        """Test bulk reads map bad JSON to None."""
        storage = StorageManager(MemoryBackend({"good": "1", "bad": "{"}), retry_delay=0)
        assert storage.get_multiple(["good", "bad"]) == {"good": 1, "bad": None}

    def test_set_multiple_rejects_unserializable_before_writing(self, storage, backend):
        """Test one bad value stops the whole batch."""
        with pytest.raises(StorageError) as exc_info:
            storage.set_multiple({"ok": 1, "bad": {1, 2}})
        assert exc_info.value.code == ErrorCode.INVALID_DATA
        assert backend.get_item("ok") is None


class TestIntrospection:
    """Test availability and storage info."""

    def test_is_available(self, storage, backend):
        """Test the probe leaves no key behind."""
        assert storage.is_available() is True
        assert backend.get_all_keys() == []

    def test_is_available_false_when_medium_fails(self, flaky_backend_cls):
        """Test a failing medium is reported unavailable."""
        storage = StorageManager(flaky_backend_cls(failures=1, fail_on=("set_item",)), retry_delay=0)
        assert storage.is_available() is False

    def test_storage_info(self, storage):
        """Test key count and size estimate."""
        storage.set("ab", "x")
        info = storage.get_storage_info()
        assert info.total_keys == 1
        assert info.keys == ["ab"]
        assert info.estimated_size == len("ab") + len('"x"')


class TestFileBackend:
    """Test the file-per-key medium."""

    def test_round_trip_through_files(self, tmp_path):
        """Test values survive reopening the directory."""
        storage = StorageManager(FileBackend(str(tmp_path)), retry_delay=0)
        storage.set("user_profile", {"name": "Ada"})

        reopened = StorageManager(FileBackend(str(tmp_path)), retry_delay=0)
        assert reopened.get("user_profile") == {"name": "Ada"}

    def test_keys_with_path_characters_are_encoded(self, tmp_path):
        """Test keys cannot escape the data directory."""
        backend = FileBackend(str(tmp_path))
        backend.set_item("a/b:c", "1")
        assert backend.get_all_keys() == ["a/b:c"]
        assert all(path.parent == tmp_path for path in tmp_path.iterdir())

    def test_no_temporary_files_left_behind(self, tmp_path):
        """Test atomic writes clean up temporary files."""
        backend = FileBackend(str(tmp_path))
        backend.set_item("k", "1")
        backend.set_item("k", "2")
        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]

    def test_clear_and_remove(self, tmp_path):
        """Test removal and clearing of files."""
        backend = FileBackend(str(tmp_path))
        backend.multi_set([("a", "1"), ("b", "2")])
        backend.remove_item("a")
        backend.remove_item("a")
        assert backend.get_all_keys() == ["b"]
        backend.clear()
        assert backend.get_all_keys() == []

    def test_data_dir_from_env(self, tmp_path, monkeypatch):
        """Test the data directory from NEXTUP_DATA_DIR."""
        monkeypatch.setenv("NEXTUP_DATA_DIR", str(tmp_path / "data"))
        backend = FileBackend()
        assert backend.data_dir == tmp_path / "data"
        assert backend.data_dir.is_dir()

    def test_undecodable_file_is_purged_as_corruption(self, tmp_path):
        """Bytes that are not UTF-8 count as corruption: purged, never retried."""
        (tmp_path / "k.json").write_bytes(b"\xff\xfe")
        storage = StorageManager(FileBackend(str(tmp_path)), max_retries=3, retry_delay=0)

        with patch("nextup.storage.time.sleep") as mock_sleep:
            with pytest.raises(DataCorruptionError) as exc_info:
                storage.get("k")

        assert exc_info.value.code == ErrorCode.DATA_CORRUPTION
        mock_sleep.assert_not_called()
        assert not (tmp_path / "k.json").exists()

    def test_undecodable_file_reads_as_none_in_get_multiple(self, tmp_path):
        """A bulk read maps an undecodable file to None and keeps the rest."""
        backend = FileBackend(str(tmp_path))
        backend.set_item("good", "1")
        (tmp_path / "bad.json").write_bytes(b"\xff\xfe{garbage")
        storage = StorageManager(backend, retry_delay=0)

        assert storage.get_multiple(["good", "bad", "missing"]) == {"good": 1, "bad": None, "missing": None}

    def test_undecodable_collections_read_as_empty(self, tmp_path):
        """The manager sees undecodable collections as empty and the file is removed."""
        from nextup.data_manager import DataManager

        (tmp_path / "collections.json").write_bytes(b"\xff\xfe{garbage")
        manager = DataManager(StorageManager(FileBackend(str(tmp_path)), retry_delay=0))

        collections = manager.get_all_collections()

        assert collections.watched == [] and collections.watching == [] and collections.will_watch == []
        assert not (tmp_path / "collections.json").exists()
