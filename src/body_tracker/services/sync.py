"""
Sync coordinator.

Replicates the local entries and phases to a single remote document. Local
mutations mark the state dirty and (re)start a debounce timer; when the timer
fires, or the host application goes to the background, the local snapshot is
compared with the remote one and written back with the remote version token.
At startup the two replicas are reconciled.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from body_tracker.domain.metrics import MetricEntry, Phase, RemoteSnapshot, SyncState, SyncStatus
from body_tracker.domain.snapshot import encode_document
from body_tracker.infrastructure.local_store.store import SYNC_META_KEY, LocalStore
from body_tracker.infrastructure.remote_client.client import RemoteClient
from body_tracker.services.phases import PhaseTracker
from body_tracker.services.records import MetricRecordStore
from body_tracker.utils.exceptions import BodyTrackerError, LocalStoreError
from body_tracker.utils.parameters import SyncConfig

logger = logging.getLogger(__name__)


class TimerScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


def merge_entries(
    local: Mapping[str, MetricEntry], remote: Mapping[str, MetricEntry]
) -> tuple[dict[str, MetricEntry], bool]:
    """
    Merge local entries into the remote ones.

    Args:
        local: Entries held locally.
        remote: Entries held by the remote document.

    Returns:
        (merged entries, diverged). When some local date is missing remotely
        or differs from it, the result is the union with local values winning;
        otherwise the remote entries are returned unchanged.
    """
    diverged = any(
        key not in remote or remote[key].to_dict() != entry.to_dict()
        for key, entry in local.items()
    )
    if not diverged:
        return dict(remote), False

    merged = dict(remote)
    merged.update(local)
    return merged, True


def choose_phases(local: Sequence[Phase], remote: Sequence[Phase]) -> list[Phase]:
    """Pick the longer phase list; ties go to the remote list."""
    return list(local) if len(local) > len(remote) else list(remote)


class SyncCoordinator:
    """
    State machine driving replication to the remote document.

    States: idle, dirty (local mutation pending), syncing and failed. Failures
    never propagate to callers; they leave the coordinator in the failed state
    with a transient status message, and the next mutation makes it dirty
    again.
    """

    def __init__(
        self,
        records: MetricRecordStore,
        phases: PhaseTracker,
        store: LocalStore,
        config: SyncConfig,
        remote: RemoteClient | None = None,
        scheduler: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize sync coordinator.

        Args:
            records: Metric record store to replicate.
            phases: Phase tracker to replicate.
            store: Local store holding sync metadata.
            config: Sync configuration.
            remote: Remote client, or None while no remote is connected.
            scheduler: Object with ``schedule(delay, callback)`` returning a
                cancellable handle. Defaults to ``TimerScheduler``.
            clock: Seconds since the epoch.
        """
        self.records = records
        self.phases = phases
        self.store = store
        self.config = config
        self.remote = remote
        self.scheduler = scheduler or TimerScheduler()
        self.clock = clock
        self.state = SyncState(last_sync=self._load_last_sync())
        self._lock = threading.RLock()

    def _load_last_sync(self) -> int | None:
        meta = self.store.read(SYNC_META_KEY, default={})
        value = meta.get("last_sync") if isinstance(meta, dict) else None
        return value if isinstance(value, int) else None

    def _save_last_sync(self) -> None:
        try:
            self.store.write(SYNC_META_KEY, {"last_sync": self.state.last_sync})
        except LocalStoreError as e:
            logger.error(f"Failed to persist sync metadata: {e}")

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    @property
    def last_sync(self) -> int | None:
        return self.state.last_sync

    @property
    def status_message(self) -> str | None:
        """Latest status message, or None once it has expired."""
        if self.state.message is None or self.clock() >= self.state.message_expires_at:
            return None
        return self.state.message

    def _set_message(self, message: str) -> None:
        self.state.message = message
        self.state.message_expires_at = self.clock() + self.config.status_clear_seconds

    def attach_remote(self, remote: RemoteClient | None) -> None:
        """Connect (or disconnect, with None) the remote store."""
        with self._lock:
            self.remote = remote
            if remote is None:
                self._cancel_timer()
            elif self.state.dirty:
                self._schedule()

    def _cancel_timer(self) -> None:
        if self.state.pending_timer is not None:
            self.state.pending_timer.cancel()
            self.state.pending_timer = None

    def _schedule(self) -> None:
        self._cancel_timer()
        if self.remote is None:
            return
        self.state.pending_timer = self.scheduler.schedule(
            self.config.debounce_seconds, self._on_timer
        )

    def _on_timer(self) -> None:
        with self._lock:
            self.state.pending_timer = None
        self.flush()

    def mark_dirty(self) -> None:
        """
        Record a local mutation.

        Restarts the debounce timer, except while a sync is in flight: that
        sync notices the mutation when it completes and reschedules itself.
        """
        with self._lock:
            self.state.dirty = True
            self.state.generation += 1
            if self.state.status == SyncStatus.SYNCING:
                return
            self.state.status = SyncStatus.DIRTY
            self._schedule()

    def flush(self) -> bool:
        """Sync immediately if local changes are pending."""
        with self._lock:
            if not self.state.dirty or self.state.status == SyncStatus.SYNCING:
                return False
        return self.sync()

    def on_hidden(self) -> bool:
        """Host application went to the background: flush without waiting for the timer."""
        with self._lock:
            self._cancel_timer()
        return self.flush()

    def _begin(self) -> bool:
        with self._lock:
            if self.remote is None or self.state.status == SyncStatus.SYNCING:
                return False
            self._cancel_timer()
            self.state.status = SyncStatus.SYNCING
            return True

    def _succeed(self, generation: int, wrote: bool) -> None:
        with self._lock:
            if wrote:
                self.state.last_sync = int(self.clock() * 1000)
                self._save_last_sync()
                self._set_message("Synced")

            if self.state.generation == generation:
                self.state.dirty = False
                self.state.status = SyncStatus.IDLE
            else:
                logger.debug("Local state changed during sync; rescheduling")
                self.state.status = SyncStatus.DIRTY
                self._schedule()

    def _fail(self, generation: int, error: Exception) -> None:
        with self._lock:
            self._set_message(f"Sync failed: {error}")
            if self.state.generation != generation:
                self.state.status = SyncStatus.DIRTY
                self._schedule()
            else:
                self.state.status = SyncStatus.FAILED

    def sync(self, force: bool = False) -> bool:
        """
        Push the local snapshot to the remote document.

        The remote document is read first; if it already encodes to the same
        text as the local state nothing is written. The local state is
        snapshotted after the read, right before the write is issued.

        Args:
            force: Write even when both replicas are identical.

        Returns:
            True if the replicas are known to match afterwards.
        """
        if not self._begin():
            return False

        with self._lock:
            generation = self.state.generation

        try:
            remote_snapshot = self.remote.fetch_snapshot() or RemoteSnapshot()
            remote_text = encode_document(remote_snapshot.entries, remote_snapshot.phases)

            with self._lock:
                generation = self.state.generation
                local_text = encode_document(self.records.snapshot(), self.phases.phases())

            wrote = False
            if force or local_text != remote_text:
                self.remote.store_document(local_text, remote_snapshot.version)
                wrote = True
            else:
                logger.debug("Remote document already up to date")

        except BodyTrackerError as e:
            logger.warning(f"Sync failed: {e}")
            self._fail(generation, e)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error during sync: {e}")
            self._fail(generation, e)
            return False

        self._succeed(generation, wrote)
        return True

    def reconcile(self) -> bool:
        """
        Reconcile local state with the remote document at startup.

        If some local entry is missing remotely or differs from it, the
        replicas are merged (local wins) and the result is pushed
        immediately. Otherwise the remote entries replace the local ones. The
        longer phase list wins.

        Returns:
            True if reconciliation completed.
        """
        if not self._begin():
            return False

        with self._lock:
            generation = self.state.generation

        try:
            remote_snapshot = self.remote.fetch_snapshot() or RemoteSnapshot()

            with self._lock:
                generation = self.state.generation
                entries, diverged = merge_entries(self.records.snapshot(), remote_snapshot.entries)
                phases = choose_phases(self.phases.phases(), remote_snapshot.phases)
                self.records.replace_all(entries)
                self.phases.replace_all(phases)
                local_text = encode_document(entries, phases)

            phases_changed = [p.to_dict() for p in phases] != [
                p.to_dict() for p in remote_snapshot.phases
            ]
            logger.info(
                f"Reconciled {len(entries)} entries and {len(phases)} phases "
                f"(entries diverged: {diverged}, phases changed: {phases_changed})"
            )

            wrote = False
            if diverged or phases_changed:
                with self._lock:
                    self.state.dirty = True
                self.remote.store_document(local_text, remote_snapshot.version)
                wrote = True

        except BodyTrackerError as e:
            logger.warning(f"Sync failed: {e}")
            self._fail(generation, e)
            return False
        except Exception as e:
            logger.exception(f"Unexpected error during sync: {e}")
            self._fail(generation, e)
            return False

        self._succeed(generation, wrote)
        return True

    def close(self) -> None:
        """Cancel the pending timer. A write already issued is not interrupted."""
        with self._lock:
            self._cancel_timer()
