"""
Local durable key-value store.

Each key is a JSON blob in the data directory. Writes are atomic (temp file,
fsync, rename) and corrupted blobs are backed up before the key falls back to
its default value.
"""

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any

from body_tracker.utils.exceptions import LocalStoreError

logger = logging.getLogger(__name__)

ENTRIES_KEY = "entries"
PHASES_KEY = "phases"
SYNC_META_KEY = "sync_meta"
CREDENTIALS_KEY = "credentials"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


class LocalStore:
    """
    Directory-backed key-value store of JSON documents.

    Reads never raise for missing or corrupted blobs: a missing key returns the
    default, a corrupted one is moved aside and reported through
    ``corrupted_keys`` so the caller can surface it.
    """

    def __init__(self, data_dir: str | Path) -> None:
        """
        Initialize local store.

        Args:
            data_dir: Directory holding the JSON blobs.

        Raises:
            LocalStoreError: If the directory cannot be created.
        """
        self.data_dir = Path(data_dir).expanduser()
        self.corrupted_keys: list[str] = []

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalStoreError(f"Cannot create data directory {self.data_dir}: {e}") from e

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise LocalStoreError(f"Invalid store key: {key!r}")
        return self.data_dir / f"{key}.json"

    def read(self, key: str, default: Any = None) -> Any:
        """
        Read a JSON blob.

        Args:
            key: Blob key.
            default: Value returned when the blob is missing, empty or corrupted.

        Returns:
            Decoded JSON value.

        Raises:
            LocalStoreError: If the blob exists but cannot be read.
        """
        path = self._path(key)
        if not path.exists():
            return default

        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise LocalStoreError(f"Failed to read {path}: {e}") from e

        if not text.strip():
            return default

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            backup = path.with_name(f"{key}.corrupt-{int(time.time())}.json")
            try:
                backup.write_text(text, encoding="utf-8")
            except OSError as backup_error:
                logger.error(f"Failed to back up corrupted blob {path}: {backup_error}")
            logger.error(f"Corrupted local blob '{key}' ({e}); backed up to {backup.name}")
            self.corrupted_keys.append(key)
            return default

    def write(self, key: str, data: Any) -> None:
        """
        Atomically write a JSON blob.

        Args:
            key: Blob key.
            data: JSON-serializable value.

        Raises:
            LocalStoreError: If the blob cannot be written.
        """
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")

        try:
            payload = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        except (TypeError, ValueError) as e:
            raise LocalStoreError(f"Value for '{key}' is not JSON-serializable: {e}") from e

        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise LocalStoreError(f"Failed to write {path}: {e}") from e

        try:
            os.chmod(path, 0o600)
        except OSError:
            logger.debug(f"Could not restrict permissions on {path}")

        logger.debug(f"Saved local blob '{key}'")

    def delete(self, key: str) -> None:
        """Remove a blob if present."""
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise LocalStoreError(f"Failed to delete {path}: {e}") from e
