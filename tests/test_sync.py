"""Unit tests for the sync coordinator."""

import json
import threading
from collections.abc import Callable

from conftest import FakeRemote, ManualScheduler

from body_tracker.domain.metrics import MetricEntry, Phase, SyncStatus
from body_tracker.domain.snapshot import decode_document, encode_document
from body_tracker.infrastructure.local_store.store import LocalStore
from body_tracker.services.phases import PhaseTracker
from body_tracker.services.records import MetricRecordStore
from body_tracker.services.sync import (
    SyncCoordinator,
    TimerScheduler,
    choose_phases,
    merge_entries,
)
from body_tracker.utils.exceptions import RemoteConflictError, RemoteStoreError
from body_tracker.utils.parameters import SyncConfig


class Clock:
    def __init__(self) -> None:
        self.value = 1_700_000_000.0

    def __call__(self) -> float:
        return self.value


def _coordinator(
    store: LocalStore,
    remote: FakeRemote | None,
    scheduler: ManualScheduler,
    clock: Clock | None = None,
) -> SyncCoordinator:
    records = MetricRecordStore(store)
    phases = PhaseTracker(store)
    coordinator = SyncCoordinator(
        records,
        phases,
        store,
        SyncConfig(debounce_seconds=5, status_clear_seconds=3),
        remote=remote,  # type: ignore[arg-type]
        scheduler=scheduler,
        clock=clock or Clock(),
    )
    records.on_change = coordinator.mark_dirty
    phases.on_change = coordinator.mark_dirty
    return coordinator


def test_mutation_marks_dirty_and_debounces(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that each mutation replaces the pending timer."""
    coordinator = _coordinator(store, remote, scheduler)

    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))
    coordinator.records.put("2024-01-02", MetricEntry(weight="79"))

    if coordinator.status != SyncStatus.DIRTY:
        raise AssertionError(f"Expected dirty, got {coordinator.status}")
    if len(scheduler.handles) != 2 or len(scheduler.pending) != 1:
        raise AssertionError("Second mutation must cancel the first timer")
    if scheduler.pending[0].delay != 5:
        raise AssertionError("Debounce delay not applied")
    if remote.writes:
        raise AssertionError("Nothing may be written before the timer fires")


def test_timer_pushes_local_snapshot(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that the debounce timer writes the local state."""
    clock = Clock()
    coordinator = _coordinator(store, remote, scheduler, clock)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    scheduler.fire()

    if coordinator.status != SyncStatus.IDLE or coordinator.state.dirty:
        raise AssertionError(f"Expected idle and clean, got {coordinator.state.to_dict()}")
    if len(remote.writes) != 1:
        raise AssertionError(f"Expected one write, got {len(remote.writes)}")
    if coordinator.last_sync != 1_700_000_000_000:
        raise AssertionError(f"Unexpected last sync {coordinator.last_sync}")
    if json.loads(remote.writes[0][0])["entries"] != {"2024-01-01": {"weight": "80"}}:
        raise AssertionError("Remote document does not hold the local entry")


def test_sync_twice_writes_once(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that an unchanged state is not written again."""
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    first = coordinator.sync()
    second = coordinator.sync()

    if not (first and second):
        raise AssertionError("Both syncs should succeed")
    if len(remote.writes) != 1:
        raise AssertionError(f"Expected exactly one write, got {len(remote.writes)}")


def test_write_uses_version_token(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    """Test that the token from the read is passed to the write."""
    remote = FakeRemote(encode_document({}, []))
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    coordinator.sync()

    if remote.writes[0][1] != "v1":
        raise AssertionError(f"Expected version v1, got {remote.writes[0][1]}")


def test_conflict_fails_without_overwriting(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    """Test that a rejected write leaves the remote untouched."""
    remote = FakeRemote(encode_document({}, []))
    remote.fail_store = RemoteConflictError("sha mismatch")
    clock = Clock()
    coordinator = _coordinator(store, remote, scheduler, clock)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    result = coordinator.sync()

    if result or coordinator.status != SyncStatus.FAILED:
        raise AssertionError(f"Expected failure, got {coordinator.status}")
    if not coordinator.state.dirty:
        raise AssertionError("Failed sync must keep the dirty flag")
    if remote.writes:
        raise AssertionError("Remote must not be overwritten")
    if coordinator.status_message is None or "sha mismatch" not in coordinator.status_message:
        raise AssertionError(f"Unexpected status message {coordinator.status_message}")

    clock.value += 5
    if coordinator.status_message is not None:
        raise AssertionError("Status message should clear after a few seconds")


def test_failure_recovers_on_next_mutation(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test failed -> dirty -> idle."""
    remote.fail_fetch = RemoteStoreError("offline")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))
    scheduler.fire()

    if coordinator.status != SyncStatus.FAILED:
        raise AssertionError(f"Expected failed, got {coordinator.status}")
    if coordinator.records.get("2024-01-01") is None:
        raise AssertionError("Local data must be unaffected by remote failures")

    remote.fail_fetch = None
    coordinator.records.put("2024-01-02", MetricEntry(weight="79"))
    if coordinator.status != SyncStatus.DIRTY:
        raise AssertionError(f"Expected dirty, got {coordinator.status}")

    scheduler.fire()
    if coordinator.status != SyncStatus.IDLE or len(remote.writes) != 1:
        raise AssertionError("Retry should have written the document")


def test_corrupted_remote_fails_sync(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    remote = FakeRemote("{not json")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    if coordinator.sync():
        raise AssertionError("Sync against a corrupted document must fail")
    if coordinator.status != SyncStatus.FAILED:
        raise AssertionError(f"Expected failed, got {coordinator.status}")


def test_mutation_during_fetch_is_written(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that an edit made while a sync is in flight is not lost."""
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    def edit_during_fetch() -> None:
        remote.on_fetch = None
        coordinator.records.put("2024-01-02", MetricEntry(weight="79"))

    remote.on_fetch = edit_during_fetch
    coordinator.sync()

    written = decode_document(remote.writes[0][0])
    if "2024-01-02" not in written.entries:
        raise AssertionError("Local state must be read when the write is issued")
    if coordinator.status != SyncStatus.IDLE:
        raise AssertionError(f"Expected idle, got {coordinator.status}")


def test_on_hidden_flushes_immediately(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    coordinator.on_hidden()

    if len(remote.writes) != 1 or scheduler.pending:
        raise AssertionError("Backgrounding must flush and cancel the timer")


def test_on_hidden_when_clean_does_nothing(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    coordinator = _coordinator(store, remote, scheduler)

    if coordinator.on_hidden() or remote.writes:
        raise AssertionError("Nothing to flush")


def test_without_remote_nothing_is_scheduled(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    coordinator = _coordinator(store, None, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    if scheduler.handles or coordinator.sync():
        raise AssertionError("No sync may run without a remote")
    if coordinator.status != SyncStatus.DIRTY:
        raise AssertionError("Mutation must still mark the state dirty")


def test_last_sync_is_persisted(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))
    coordinator.sync()

    reloaded = _coordinator(store, remote, ManualScheduler())
    if reloaded.last_sync != coordinator.last_sync:
        raise AssertionError("last_sync must survive a restart")


def test_reconcile_local_wins_and_pushes(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    """Test union with local values winning on collision."""
    a = MetricEntry(weight="80")
    a_remote = MetricEntry(weight="81")
    b = MetricEntry(weight="79")
    remote = FakeRemote(encode_document({"2024-01-01": a_remote}, []))
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": a, "2024-01-02": b})

    coordinator.reconcile()

    if coordinator.records.snapshot() != {"2024-01-01": a, "2024-01-02": b}:
        raise AssertionError(f"Unexpected merge {coordinator.records.to_dict()}")
    if len(remote.writes) != 1:
        raise AssertionError("Merged state must be pushed")
    pushed = decode_document(remote.writes[0][0])
    if pushed.entries["2024-01-01"].weight != "80":
        raise AssertionError("Local value must win on collision")


def test_reconcile_remote_catch_up(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    """Test that remote replaces local when local holds nothing new."""
    remote_entries = {
        "2024-01-01": MetricEntry(weight="80"),
        "2024-01-02": MetricEntry(weight="79"),
    }
    remote_phases = [Phase(id=1, name="Cut", start="2024-01-01", end="", goals={})]
    remote = FakeRemote(encode_document(remote_entries, remote_phases))
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": MetricEntry(weight="80")})

    coordinator.reconcile()

    if coordinator.records.snapshot() != remote_entries:
        raise AssertionError("Remote entries must replace local ones")
    if [p.id for p in coordinator.phases.phases()] != [1]:
        raise AssertionError("Longer remote phase list must win")
    if coordinator.phases.current_phase_id != 1:
        raise AssertionError("Current phase must follow the reconciled list")
    if remote.writes:
        raise AssertionError("No push expected for a pure catch-up")
    if coordinator.status != SyncStatus.IDLE:
        raise AssertionError(f"Expected idle, got {coordinator.status}")


def test_reconcile_missing_remote_pushes_local(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": MetricEntry(weight="80")})

    coordinator.reconcile()

    if len(remote.writes) != 1 or remote.writes[0][1] is not None:
        raise AssertionError("Expected an unconditional first write")


def test_reconcile_push_failure_keeps_dirty(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    remote.fail_store = RemoteStoreError("offline")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": MetricEntry(weight="80")})

    coordinator.reconcile()

    if coordinator.status != SyncStatus.FAILED or not coordinator.state.dirty:
        raise AssertionError("Unpushed merge must stay dirty")
    if coordinator.records.get("2024-01-01") is None:
        raise AssertionError("Local data must be kept")


def test_reconcile_corrupted_remote_keeps_local(
    store: LocalStore, scheduler: ManualScheduler
) -> None:
    remote = FakeRemote("{broken")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": MetricEntry(weight="80")})

    if coordinator.reconcile():
        raise AssertionError("Reconcile against a corrupted document must fail")
    if coordinator.records.get("2024-01-01") is None or remote.writes:
        raise AssertionError("Neither replica may be touched")


def test_merge_entries_helper() -> None:
    local = {"2024-01-01": MetricEntry(weight="80")}
    remote = {"2024-01-01": MetricEntry(weight="80"), "2024-01-05": MetricEntry(weight="78")}

    merged, diverged = merge_entries(local, remote)

    if diverged or merged != remote:
        raise AssertionError("Identical local entries must not count as divergence")


def test_choose_phases_prefers_longer_list() -> None:
    one = [Phase(id=1, name="A", start="2024-01-01")]
    two = one + [Phase(id=2, name="B", start="2024-02-01")]

    if choose_phases(two, one) != two or choose_phases(one, two) != two:
        raise AssertionError("Longer list must win")
    if choose_phases(one, list(one)) is one:
        raise AssertionError("Result must be a new list")


def test_mutation_during_write_stays_dirty(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that an edit made after the snapshot was taken is synced later."""
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    def edit_during_write() -> None:
        remote.on_store = None
        coordinator.records.put("2024-01-02", MetricEntry(weight="79"))

    remote.on_store = edit_during_write
    coordinator.sync()

    if coordinator.status != SyncStatus.DIRTY or not coordinator.state.dirty:
        raise AssertionError(f"Expected dirty, got {coordinator.state.to_dict()}")
    if len(scheduler.pending) != 1:
        raise AssertionError("A follow-up sync must be scheduled")

    scheduler.fire()
    if len(remote.writes) != 2 or coordinator.status != SyncStatus.IDLE:
        raise AssertionError("Follow-up sync should write the late edit")


def test_unexpected_error_fails_sync_and_recovers(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    """Test that an error outside the library hierarchy does not wedge the coordinator."""
    remote.fail_fetch = ValueError("header cannot be encoded")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.put("2024-01-01", MetricEntry(weight="80"))

    if coordinator.sync():
        raise AssertionError("Sync must report the failure")
    if coordinator.status != SyncStatus.FAILED or not coordinator.state.dirty:
        raise AssertionError(f"Expected failed and dirty, got {coordinator.state.to_dict()}")
    if coordinator.status_message is None or "header" not in coordinator.status_message:
        raise AssertionError(f"Unexpected status message {coordinator.status_message}")

    remote.fail_fetch = None
    coordinator.records.put("2024-01-02", MetricEntry(weight="79"))
    if coordinator.status != SyncStatus.DIRTY or len(scheduler.pending) != 1:
        raise AssertionError("Next mutation must schedule a retry")

    scheduler.fire()
    if coordinator.status != SyncStatus.IDLE or len(remote.writes) != 1:
        raise AssertionError("Retry should have written the document")


def test_unexpected_error_during_reconcile(
    store: LocalStore, remote: FakeRemote, scheduler: ManualScheduler
) -> None:
    remote.fail_store = ValueError("boom")
    coordinator = _coordinator(store, remote, scheduler)
    coordinator.records.replace_all({"2024-01-01": MetricEntry(weight="80")})

    if coordinator.reconcile():
        raise AssertionError("Reconcile must report the failure")
    if coordinator.status != SyncStatus.FAILED or not coordinator.state.dirty:
        raise AssertionError(f"Expected failed and dirty, got {coordinator.state.to_dict()}")

    remote.fail_store = None
    if not coordinator.sync() or len(remote.writes) != 1:
        raise AssertionError("A later sync must still run")


class RecordingTimerScheduler(TimerScheduler):
    def __init__(self) -> None:
        self.timers: list[threading.Timer] = []

    def schedule(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = super().schedule(delay, callback)
        self.timers.append(timer)
        return timer


def test_timer_scheduler_runs_sync_on_thread(store: LocalStore, remote: FakeRemote) -> None:
    """Test the default scheduler with real timer threads."""
    written = threading.Event()
    remote.on_store = written.set
    timers = RecordingTimerScheduler()
    records = MetricRecordStore(store)
    phases = PhaseTracker(store)
    coordinator = SyncCoordinator(
        records,
        phases,
        store,
        SyncConfig(debounce_seconds=0),
        remote=remote,  # type: ignore[arg-type]
        scheduler=timers,
    )
    records.on_change = coordinator.mark_dirty

    records.put("2024-01-01", MetricEntry(weight="80"))

    if not written.wait(timeout=5):
        raise AssertionError("Timer thread never wrote the document")
    for timer in timers.timers:
        timer.join(timeout=5)
    if coordinator.status != SyncStatus.IDLE or len(remote.writes) != 1:
        raise AssertionError(f"Unexpected state {coordinator.state.to_dict()}")
