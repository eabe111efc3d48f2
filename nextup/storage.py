"""
Durable key-value store for NextUp.

Maps string keys to JSON-serializable values on top of a pluggable storage
medium, adding retry logic, corruption detection, schema migrations and
backup/restore.

Key Features:
- Values are JSON-encoded before write and decoded on read
- Every read/write/delete/clear is retried with linear backoff
- A value that fails to decode is treated as corruption: the key is purged
  and DataCorruptionError is raised (never retried)
- Versioned migrations applied in ascending order, halting on first failure
- Self-describing backups: {timestamp, schemaVersion, data}

Configuration (via environment variables):
    NEXTUP_STORAGE_MAX_RETRIES: Retries after the first attempt (default: 3)
    NEXTUP_STORAGE_RETRY_DELAY: Base backoff delay in seconds (default: 1.0)
    NEXTUP_DATA_DIR: Directory used by FileBackend (default: ~/.nextup)

Usage Example:
    >>> from nextup.storage import StorageManager, FileBackend
    >>> storage = StorageManager(FileBackend("/tmp/nextup"))
    >>> storage.set("is_first_launch", False)
    >>> storage.get("is_first_launch")
    False
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar
from urllib.parse import quote, unquote

from pydantic import BaseModel

from nextup.errors import (
    DataCorruptionError,
    ErrorCode,
    MaxRetriesExceededError,
    MigrationError,
    StorageError,
)
from nextup.metrics import track_corruption, track_storage_operation, track_storage_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATA_VERSION_KEY = "__data_version__"
PROBE_KEY = "__storage_test__"

NON_RETRIABLE_CODES = frozenset({ErrorCode.DATA_CORRUPTION, ErrorCode.INVALID_DATA})


class StorageBackend(Protocol):
    """The underlying medium: raw string values keyed by string."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def get_all_keys(self) -> List[str]: ...

    def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]: ...

    def multi_set(self, pairs: Sequence[Tuple[str, str]]) -> None: ...


class MemoryBackend:
    """Process-local medium backed by a dict."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def get_all_keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        with self._lock:
            return [(key, self._items.get(key)) for key in keys]

    def multi_set(self, pairs: Sequence[Tuple[str, str]]) -> None:
        with self._lock:
            self._items.update(pairs)


class FileBackend:
    """
    Medium that stores one file per key under ``data_dir``.

    Keys are percent-encoded into file names. Writes go to a temporary file
    that is atomically renamed over the target, so a crash mid-write never
    leaves a half-written value behind.
    """

    SUFFIX = ".json"

    def __init__(self, data_dir: Optional[str] = None):
        if data_dir is None:
            data_dir = os.getenv("NEXTUP_DATA_DIR", os.path.join(os.path.expanduser("~"), ".nextup"))
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{quote(key, safe='')}{self.SUFFIX}"

    def get_item(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set_item(self, key: str, value: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def clear(self) -> None:
        for path in self.data_dir.glob(f"*{self.SUFFIX}"):
            path.unlink(missing_ok=True)

    def get_all_keys(self) -> List[str]:
        return sorted(
            unquote(path.name[:-len(self.SUFFIX)])
            for path in self.data_dir.glob(f"*{self.SUFFIX}")
        )

    def multi_get(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        return [(key, self.get_item(key)) for key in keys]

    def multi_set(self, pairs: Sequence[Tuple[str, str]]) -> None:
        for key, value in pairs:
            self.set_item(key, value)


@dataclass
class StorageInfo:
    """
    Storage usage summary.

    Attributes:
        total_keys: Number of stored keys
        estimated_size: Sum of key lengths and raw value lengths (characters)
        keys: The stored keys
    """
    total_keys: int
    estimated_size: int
    keys: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Migration:
    """
    One schema migration step.

    ``migrate`` receives every stored key/value (the version marker excluded)
    and returns the full transformed mapping. Keys missing from the result
    are deleted.
    """
    version: int
    migrate: Callable[[Dict[str, Any]], Dict[str, Any]]
    description: str = ""


class StorageManager:
    """
    Key-value store with retries, corruption handling, migrations and backups.

    Every operation runs up to ``max_retries + 1`` times. Between attempts the
    caller sleeps ``retry_delay * attempt_number`` seconds. Corruption and
    invalid-input errors are raised immediately.
    """

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ):
        """
        Initialize the storage manager.

        Args:
            backend: Storage medium (default: a fresh MemoryBackend)
            max_retries: Retries after the first attempt (default: 3 or from env)
            retry_delay: Base backoff delay in seconds (default: 1.0 or from env)
        """
        self.backend = backend if backend is not None else MemoryBackend()
        self.max_retries = max_retries if max_retries is not None else int(os.getenv("NEXTUP_STORAGE_MAX_RETRIES", "3"))
        self.retry_delay = retry_delay if retry_delay is not None else float(os.getenv("NEXTUP_STORAGE_RETRY_DELAY", "1.0"))

        logger.info(
            f"StorageManager initialized: backend={type(self.backend).__name__}, "
            f"max_retries={self.max_retries}, retry_delay={self.retry_delay}s"
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _encode(self, key: str, value: Any) -> str:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", by_alias=True)
        try:
            return json.dumps(value, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise StorageError(
                f'Value for key "{key}" is not serializable: {e}',
                ErrorCode.INVALID_DATA,
                e
            ) from e

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _execute_with_retry(self, operation: Callable[[], T], operation_type: str,
                            key: Optional[str] = None) -> T:
        """
        Run ``operation`` with retries.

        Args:
            operation: Zero-argument callable raising StorageError on failure
            operation_type: read, write, delete or clear (for logs and metrics)
            key: Key involved, if any (for logs)

        Raises:
            StorageError: Non-retriable failure, raised as-is
            MaxRetriesExceededError: Every attempt failed
        """
        attempts = self.max_retries + 1
        log_context = f"[{operation_type}{' ' + key if key else ''}]"
        last_error: Optional[StorageError] = None

        for attempt in range(attempts):
            try:
                result = operation()
                if attempt > 0:
                    logger.info(f"{log_context} Storage operation succeeded on attempt {attempt + 1}")
                track_storage_operation(operation_type, success=True)
                return result
            except StorageError as e:
                last_error = e

                if e.code in NON_RETRIABLE_CODES:
                    track_storage_operation(operation_type, success=False)
                    raise

                if attempt == attempts - 1:
                    break

                delay = self.retry_delay * (attempt + 1)
                logger.warning(
                    f"{log_context} Attempt {attempt + 1}/{attempts} failed: {e.message}. "
                    f"Retrying after {delay}s"
                )
                track_storage_retry(operation_type)
                time.sleep(delay)

        track_storage_operation(operation_type, success=False)
        message = f"Storage operation failed after {attempts} attempts: {last_error.message}"
        logger.error(f"{log_context} {message}")
        raise MaxRetriesExceededError(message, attempts, last_error) from last_error

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """
        Read and decode the value stored under ``key``.

        Returns:
            The decoded value, or None if the key is absent

        Raises:
            DataCorruptionError: The stored value is not valid UTF-8 JSON (key purged)
            MaxRetriesExceededError: The medium kept failing
        """
        def operation():
            try:
                raw = self.backend.get_item(key)
            except UnicodeDecodeError as e:
                self._purge_corrupted(key)
                raise DataCorruptionError(
                    f'Corrupted data found for key "{key}". Data has been cleared.', key, e
                ) from e
            except Exception as e:
                raise StorageError(f'Failed to retrieve data for key "{key}": {e}', ErrorCode.READ_ERROR, e) from e

            if raw is None:
                return None

            try:
                return json.loads(raw)
            except ValueError as e:
                self._purge_corrupted(key)
                raise DataCorruptionError(
                    f'Corrupted data found for key "{key}". Data has been cleared.', key, e
                ) from e

        return self._execute_with_retry(operation, "read", key)

    def _purge_corrupted(self, key: str) -> None:
        track_corruption()
        logger.warning(f"Corrupted value under key '{key}', removing it")
        try:
            self.remove(key)
        except StorageError as e:
            logger.error(f"Failed to remove corrupted key '{key}': {e.message}")

    def set(self, key: str, value: Any) -> None:
        """
        Encode and store ``value`` under ``key``.

        Raises:
            StorageError: INVALID_DATA if the value is not JSON-serializable
            MaxRetriesExceededError: The medium kept failing
        """
        encoded = self._encode(key, value)

        def operation():
            try:
                self.backend.set_item(key, encoded)
            except Exception as e:
                raise StorageError(f'Failed to store data for key "{key}": {e}', ErrorCode.WRITE_ERROR, e) from e

        self._execute_with_retry(operation, "write", key)

    def remove(self, key: str) -> None:
        """Delete ``key``. Removing a missing key is not an error."""
        def operation():
            try:
                self.backend.remove_item(key)
            except Exception as e:
                raise StorageError(f'Failed to remove data for key "{key}": {e}', ErrorCode.DELETE_ERROR, e) from e

        self._execute_with_retry(operation, "delete", key)

    def clear(self) -> None:
        """Delete every key."""
        def operation():
            try:
                self.backend.clear()
            except Exception as e:
                raise StorageError(f"Failed to clear storage: {e}", ErrorCode.CLEAR_ERROR, e) from e

        self._execute_with_retry(operation, "clear")

    def get_all_keys(self) -> List[str]:
        def operation():
            try:
                return list(self.backend.get_all_keys())
            except Exception as e:
                raise StorageError(f"Failed to get storage keys: {e}", ErrorCode.READ_ERROR, e) from e

        return self._execute_with_retry(operation, "read")

    def _multi_get_raw(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        def operation():
            try:
                try:
                    return list(self.backend.multi_get(list(keys)))
                except UnicodeDecodeError:
                    return self._read_each(keys)
            except Exception as e:
                raise StorageError(f"Failed to get multiple items: {e}", ErrorCode.READ_ERROR, e) from e

        return self._execute_with_retry(operation, "read")

    def _read_each(self, keys: Sequence[str]) -> List[Tuple[str, Optional[str]]]:
        pairs: List[Tuple[str, Optional[str]]] = []
        for key in keys:
            try:
                pairs.append((key, self.backend.get_item(key)))
            except UnicodeDecodeError as e:
                logger.warning(f"Failed to decode data for key '{key}': {e}")
                pairs.append((key, None))
        return pairs

    def get_multiple(self, keys: Iterable[str]) -> Dict[str, Any]:
        """
        Read several keys at once.

        Unlike ``get``, a value that fails to decode maps to None (with a
        warning) instead of failing the whole batch.
        """
        result: Dict[str, Any] = {}
        for key, raw in self._multi_get_raw(list(keys)):
            if raw is None:
                result[key] = None
                continue
            try:
                result[key] = json.loads(raw)
            except ValueError as e:
                logger.warning(f"Failed to parse data for key '{key}': {e}")
                result[key] = None
        return result

    def set_multiple(self, items: Mapping[str, Any]) -> None:
        """Encode and store several values at once."""
        pairs = [(key, self._encode(key, value)) for key, value in items.items()]

        def operation():
            try:
                self.backend.multi_set(pairs)
            except Exception as e:
                raise StorageError(f"Failed to set multiple items: {e}", ErrorCode.WRITE_ERROR, e) from e

        self._execute_with_retry(operation, "write")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        """Probe the medium with a write/read/delete round trip."""
        probe = "test"
        try:
            self.backend.set_item(PROBE_KEY, probe)
            retrieved = self.backend.get_item(PROBE_KEY)
            self.backend.remove_item(PROBE_KEY)
            return retrieved == probe
        except Exception as e:
            logger.warning(f"Storage unavailable: {type(e).__name__}: {e}")
            return False

    def get_storage_info(self) -> StorageInfo:
        keys = self.get_all_keys()
        estimated_size = sum(len(key) + len(raw or "") for key, raw in self._multi_get_raw(keys))
        return StorageInfo(total_keys=len(keys), estimated_size=estimated_size, keys=keys)

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    def get_schema_version(self) -> int:
        """Stored schema version, 0 when never migrated."""
        version = self.get(DATA_VERSION_KEY)
        if isinstance(version, int) and not isinstance(version, bool):
            return version
        return 0

    def _data_keys(self) -> List[str]:
        return [key for key in self.get_all_keys() if key not in (DATA_VERSION_KEY, PROBE_KEY)]

    def migrate_data(self, migrations: Iterable[Migration]) -> int:
        """
        Apply every migration newer than the stored schema version.

        Migrations run in ascending version order. After each step the
        transformed data and the step's version are persisted, so a failure
        leaves earlier steps applied and the version at the last success.

        Returns:
            The schema version after migration

        Raises:
            MigrationError: A step failed; later steps were not run
        """
        try:
            current = self.get_schema_version()
        except StorageError as e:
            raise MigrationError(f"Data migration failed: {e.message}", 0, 0, e) from e

        pending = sorted((m for m in migrations if m.version > current), key=lambda m: m.version)
        versions = [m.version for m in pending]
        duplicates = sorted({v for v in versions if versions.count(v) > 1})
        if duplicates:
            raise MigrationError(
                f"Data migration failed: duplicate migration versions {duplicates}",
                duplicates[0],
                current
            )

        applied = current
        for migration in pending:
            logger.info(
                f"Running migration to version {migration.version}"
                f"{': ' + migration.description if migration.description else ''}"
            )
            try:
                data = self.get_multiple(self._data_keys())
                migrated = migration.migrate(dict(data))
                if not isinstance(migrated, Mapping):
                    raise TypeError(f"migration returned {type(migrated).__name__}, expected a mapping")

                migrated = {k: v for k, v in migrated.items() if k != DATA_VERSION_KEY}
                if migrated:
                    self.set_multiple(migrated)
                for key in set(data) - set(migrated):
                    self.remove(key)

                self.set(DATA_VERSION_KEY, migration.version)
            except Exception as e:
                logger.error(f"Migration to version {migration.version} failed: {e}")
                raise MigrationError(
                    f"Data migration to version {migration.version} failed: {e}",
                    migration.version,
                    applied,
                    e
                ) from e
            applied = migration.version

        return applied

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def create_backup(self) -> str:
        """
        Serialize every stored key into a self-describing backup.

        Returns:
            JSON text: {"timestamp", "schemaVersion", "data"}
        """
        try:
            version = self.get_schema_version()
            data = self.get_multiple(self._data_keys())
        except StorageError as e:
            raise StorageError(f"Failed to create backup: {e.message}", ErrorCode.BACKUP_ERROR, e) from e

        backup = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "schemaVersion": version,
            "data": data,
        }
        return json.dumps(backup, ensure_ascii=False)

    def restore_from_backup(self, backup_data: str) -> None:
        """
        Replace all stored data with the contents of a backup.

        The backup is validated before anything is cleared; an invalid
        backup leaves storage untouched.
        """
        try:
            backup = json.loads(backup_data)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to restore from backup: invalid JSON: {e}", ErrorCode.RESTORE_ERROR, e) from e

        if not isinstance(backup, dict) or not isinstance(backup.get("data"), dict):
            raise StorageError("Failed to restore from backup: invalid backup format", ErrorCode.RESTORE_ERROR)

        version = backup.get("schemaVersion", 0)
        if version is None:
            version = 0
        if not isinstance(version, int) or isinstance(version, bool) or version < 0:
            raise StorageError(
                f"Failed to restore from backup: invalid schemaVersion {version!r}",
                ErrorCode.RESTORE_ERROR
            )

        data = {k: v for k, v in backup["data"].items() if k != DATA_VERSION_KEY}

        try:
            self.clear()
            if data:
                self.set_multiple(data)
            if version:
                self.set(DATA_VERSION_KEY, version)
        except StorageError as e:
            raise StorageError(f"Failed to restore from backup: {e.message}", ErrorCode.RESTORE_ERROR, e) from e

        logger.info(f"Restored {len(data)} keys from backup (schemaVersion={version})")
