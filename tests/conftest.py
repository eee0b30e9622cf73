"""Shared fixtures and fakes for the body tracker tests."""

from collections.abc import Callable
from pathlib import Path

import pytest

from body_tracker.domain.metrics import RemoteSnapshot
from body_tracker.domain.snapshot import decode_document
from body_tracker.infrastructure.local_store.store import LocalStore
from body_tracker.utils.exceptions import RemoteConflictError, RemoteStoreError


class ManualHandle:
    """Timer handle that only runs when the test fires it."""

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler double recording every scheduled callback."""

    def __init__(self) -> None:
        self.handles: list[ManualHandle] = []

    def schedule(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]

    def fire(self) -> None:
        pending = self.pending
        if not pending:
            raise AssertionError("No pending timer to fire")
        handle = pending[-1]
        handle.cancelled = True
        handle.callback()


class FakeRemote:
    """In-memory stand-in for RemoteClient."""

    def __init__(self, text: str | None = None) -> None:
        self.text = text
        self.version = 1 if text is not None else 0
        self.writes: list[tuple[str, str | None]] = []
        self.fail_fetch: Exception | None = None
        self.fail_store: Exception | None = None
        self.on_fetch: Callable[[], None] | None = None
        self.on_store: Callable[[], None] | None = None
        self.commits = 0

    def fetch_snapshot(self) -> RemoteSnapshot | None:
        if self.fail_fetch is not None:
            raise self.fail_fetch
        if self.on_fetch is not None:
            self.on_fetch()
        if self.text is None:
            return None
        return decode_document(self.text, version=f"v{self.version}")

    def store_document(self, text: str, version: str | None = None) -> str:
        if self.fail_store is not None:
            raise self.fail_store
        if self.text is not None and version != f"v{self.version}":
            raise RemoteConflictError(f"stale version {version}")
        if self.on_store is not None:
            self.on_store()
        self.writes.append((text, version))
        self.text = text
        self.version += 1
        return f"v{self.version}"

    def count_commits_today(self, day, timezone_str: str = "UTC") -> int:
        if self.fail_fetch is not None:
            raise RemoteStoreError("commit listing failed")
        return self.commits


@pytest.fixture()
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "data")


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def remote() -> FakeRemote:
    return FakeRemote()
