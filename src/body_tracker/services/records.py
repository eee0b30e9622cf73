"""
Metric record store.

In-memory mapping from date key to metric entry, persisted to the local store
on every write.
"""

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from body_tracker.domain.metrics import MetricEntry
from body_tracker.infrastructure.local_store.store import ENTRIES_KEY, LocalStore
from body_tracker.utils.dates import is_date_key
from body_tracker.utils.exceptions import LocalStoreError, ValidationError

logger = logging.getLogger(__name__)


class MetricRecordStore:
    """
    Store of daily metric entries.

    Mutations are synchronous: the entry is replaced in memory, written to the
    local store and the change listener is notified. A failing local write is
    logged and kept in ``last_persist_error``; the in-memory state stays valid
    for the session.
    """

    def __init__(
        self,
        store: LocalStore,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        """
        Initialize record store and load persisted entries.

        Args:
            store: Local durable store.
            on_change: Called after every user mutation.
        """
        self.store = store
        self.on_change = on_change
        self.last_persist_error: LocalStoreError | None = None
        self._entries: dict[str, MetricEntry] = {}
        self._load()

    def _load(self) -> None:
        raw = self.store.read(ENTRIES_KEY, default={})
        if not isinstance(raw, dict):
            logger.error(f"Stored entries are not a mapping ({type(raw).__name__}); ignoring")
            self.store.corrupted_keys.append(ENTRIES_KEY)
            return

        for key, data in raw.items():
            if not is_date_key(key) or not isinstance(data, dict):
                logger.warning(f"Skipping malformed stored entry {key!r}")
                continue
            try:
                self._entries[key] = MetricEntry(**data)
            except PydanticValidationError as e:
                logger.warning(f"Skipping invalid stored entry {key}: {e}")

        logger.info(f"Loaded {len(self._entries)} entries")

    def _persist(self) -> None:
        try:
            self.store.write(ENTRIES_KEY, self.to_dict())
            self.last_persist_error = None
        except LocalStoreError as e:
            logger.error(f"Failed to persist entries: {e}")
            self.last_persist_error = e

    def _changed(self) -> None:
        self._persist()
        if self.on_change is not None:
            self.on_change()

    def get(self, date_key: str) -> MetricEntry | None:
        return self._entries.get(date_key)

    def put(self, date_key: str, entry: MetricEntry) -> None:
        """
        Replace the entry for a date.

        An empty entry for a date that was never set is ignored, so default
        entries are never persisted.

        Args:
            date_key: ISO date.
            entry: New entry.

        Raises:
            ValidationError: If date_key is not ``YYYY-MM-DD`` or the entry holds
                a value that cannot be stored as JSON.
        """
        if not is_date_key(date_key):
            raise ValidationError(f"Invalid date key: {date_key!r}")
        try:
            json.dumps(entry.to_dict())
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Entry for {date_key} cannot be stored: {e}") from e

        if date_key not in self._entries and entry.is_empty():
            return

        self._entries[date_key] = entry
        self._changed()

    def set_field(self, date_key: str, field: str, value: Any) -> MetricEntry:
        """
        Update one field of a day's entry.

        Args:
            date_key: ISO date.
            field: Metric, flag or extra key.
            value: New value; None or "" clears a metric.

        Returns:
            The entry now stored for the date (possibly unchanged).
        """
        current = self._entries.get(date_key) or MetricEntry()
        updated = current.with_field(field, value)
        self.put(date_key, updated)
        return self._entries.get(date_key, updated)

    def delete(self, date_key: str) -> None:
        """Remove a day; no-op if absent."""
        if self._entries.pop(date_key, None) is not None:
            self._changed()

    def all_dates(self) -> list[str]:
        """All date keys, ascending."""
        return sorted(self._entries)

    def snapshot(self) -> dict[str, MetricEntry]:
        """Copy of the current mapping. Entries are immutable, so a shallow copy suffices."""
        return dict(self._entries)

    def replace_all(self, entries: Mapping[str, MetricEntry]) -> None:
        """
        Replace every entry without notifying the change listener.

        Used when the state is taken from the remote replica.
        """
        self._entries = dict(entries)
        self._persist()

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {key: self._entries[key].to_dict() for key in sorted(self._entries)}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, date_key: object) -> bool:
        return date_key in self._entries
