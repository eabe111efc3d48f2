import pytest

from nextup.data_manager import DataManager
from nextup.schemas import MediaItem, MediaType
from nextup.storage import MemoryBackend, StorageManager


class FlakyBackend(MemoryBackend):
    """MemoryBackend whose operations fail a set number of times before working."""

    def __init__(self, failures=0, fail_on=("get_item", "set_item", "remove_item", "clear")):
        super().__init__()
        self.failures = failures
        self.fail_on = set(fail_on)
        self.calls = {}

    def _maybe_fail(self, name):
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.fail_on and self.failures > 0:
            self.failures -= 1
            raise OSError(f"simulated {name} failure")

    def get_item(self, key):
        self._maybe_fail("get_item")
        return super().get_item(key)

    def set_item(self, key, value):
        self._maybe_fail("set_item")
        super().set_item(key, value)

    def remove_item(self, key):
        self._maybe_fail("remove_item")
        super().remove_item(key)

    def clear(self):
        self._maybe_fail("clear")
        super().clear()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def storage(backend):
    """Storage manager without retry delays."""
    return StorageManager(backend, max_retries=3, retry_delay=0)


@pytest.fixture
def manager(storage):
    return DataManager(storage)


@pytest.fixture
def make_media():
    """Factory for catalog media items."""
    def _make(media_id=1, title=None, media_type=MediaType.MOVIE, **overrides):
        fields = {
            "id": media_id,
            "title": title or f"Title {media_id}",
            "overview": "",
            "release_date": "2020-01-01",
            "vote_average": 7.0,
            "genre_ids": [28],
            "media_type": media_type,
        }
        fields.update(overrides)
        return MediaItem(**fields)
    return _make


@pytest.fixture
def flaky_backend_cls():
    return FlakyBackend
