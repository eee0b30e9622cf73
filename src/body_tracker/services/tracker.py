"""
Body tracker session.

Application-state object owned by the host view layer. It wires the local
store, record store, phase tracker and sync coordinator together and exposes
the read/write API the view calls.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import date
from typing import Any

import requests

from body_tracker.domain.metrics import METRIC_FIELDS, MetricEntry, Phase, SyncStatus
from body_tracker.infrastructure.local_store.store import CREDENTIALS_KEY, LocalStore
from body_tracker.infrastructure.remote_client.client import RemoteClient, RemoteCredentials
from body_tracker.services import analytics
from body_tracker.services.analytics import PhaseStats, RollingPoint
from body_tracker.services.phases import PhaseTracker
from body_tracker.services.records import MetricRecordStore
from body_tracker.services.sync import SyncCoordinator
from body_tracker.utils.dates import today as today_in
from body_tracker.utils.exceptions import BodyTrackerError, LocalStoreError
from body_tracker.utils.logging_config import setup_logging
from body_tracker.utils.parameters import AppConfig, ParameterLoader

logger = logging.getLogger(__name__)


class BodyTracker:
    """
    Session object for one process.

    Holds every piece of mutable state (no module-level singletons). Local
    reads and writes always succeed regardless of the remote; replication
    problems only show up in ``sync_status`` and ``status_message``.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        store: LocalStore | None = None,
        session: requests.Session | None = None,
        scheduler: Any = None,
    ) -> None:
        """
        Initialize the session and load local state.

        Args:
            config: Application configuration. Defaults are used if omitted.
            store: Local store. Created from ``config.storage`` if omitted.
            session: HTTP session handed to the remote client.
            scheduler: Debounce scheduler handed to the sync coordinator.
        """
        self.config = config or AppConfig()
        self.store = store or LocalStore(self.config.storage.data_dir)
        self.session = session

        self.records = MetricRecordStore(self.store, on_change=self._on_change)
        self.phases = PhaseTracker(self.store, on_change=self._on_change)
        self.credentials = self._load_credentials()
        self.sync = SyncCoordinator(
            self.records,
            self.phases,
            self.store,
            self.config.sync,
            remote=self._build_remote(),
            scheduler=scheduler,
        )

        if self.store.corrupted_keys:
            logger.error(f"Local data was corrupted and reset: {self.store.corrupted_keys}")

    @classmethod
    def from_config_file(cls, config_path: str = "config/config.yaml", **kwargs: Any) -> "BodyTracker":
        """
        Load configuration, set up logging and open a session.

        Args:
            config_path: Path to the YAML configuration file.
            **kwargs: Passed to the constructor.

        Returns:
            New session.
        """
        param_loader = ParameterLoader(config_path)
        setup_logging(param_loader.get_logging_config(), "body_tracker")
        return cls(param_loader.config, **kwargs)

    def _on_change(self) -> None:
        self.sync.mark_dirty()

    def _load_credentials(self) -> RemoteCredentials:
        raw = self.store.read(CREDENTIALS_KEY, default={})
        try:
            return RemoteCredentials(**raw) if isinstance(raw, dict) else RemoteCredentials()
        except ValueError as e:
            logger.warning(f"Ignoring invalid stored credentials: {e}")
            return RemoteCredentials()

    def _build_remote(self) -> RemoteClient | None:
        if not self.credentials.usable:
            return None
        return RemoteClient(self.config.remote, self.credentials, session=self.session)

    @property
    def corrupted_keys(self) -> list[str]:
        """Local blobs that were unreadable at load time and reset to empty."""
        return list(self.store.corrupted_keys)

    # -- entries ---------------------------------------------------------

    def get_entry(self, date_key: str) -> MetricEntry | None:
        return self.records.get(date_key)

    def put_entry(self, date_key: str, entry: MetricEntry | Mapping[str, Any]) -> None:
        if not isinstance(entry, MetricEntry):
            entry = MetricEntry(**entry)
        self.records.put(date_key, entry)

    def set_field(self, date_key: str, field: str, value: Any) -> MetricEntry:
        return self.records.set_field(date_key, field, value)

    def delete_entry(self, date_key: str) -> None:
        self.records.delete(date_key)

    def all_dates(self) -> list[str]:
        return self.records.all_dates()

    # -- phases ----------------------------------------------------------

    def add_phase(self, name: str, start: str, goals: Mapping[str, Any] | None = None) -> Phase:
        return self.phases.add_phase(name, start, goals)

    def end_phase(self, phase_id: int, end: str) -> None:
        self.phases.end_phase(phase_id, end)

    def delete_phase(self, phase_id: int) -> None:
        self.phases.delete_phase(phase_id)

    def current_phase(self) -> Phase | None:
        return self.phases.current_phase()

    def list_phases(self) -> list[Phase]:
        return self.phases.phases()

    # -- analytics -------------------------------------------------------

    def today(self) -> date:
        return today_in(self.config.analytics.timezone)

    def rolling_average(
        self, field: str, dates: Sequence[str] | None = None
    ) -> list[RollingPoint]:
        return analytics.rolling_average(
            self.records.snapshot(), field, self.config.analytics.rolling_window, dates
        )

    def phase_stats(
        self,
        phase: Phase | None = None,
        today: date | None = None,
        fields: Sequence[str] = METRIC_FIELDS,
    ) -> PhaseStats | None:
        """
        Progress over a phase (the current one by default).

        Returns:
            Statistics, or None if there is no phase to evaluate.
        """
        phase = phase or self.current_phase()
        if phase is None:
            return None
        return analytics.phase_statistics(
            phase, self.records.snapshot(), today or self.today(), fields
        )

    def streak(self, field: str) -> int:
        return analytics.streak(
            self.records.snapshot(), field, self.config.analytics.streak_max_misses
        )

    def latest_value(self, field: str) -> tuple[str, float] | None:
        return analytics.latest_value(self.records.snapshot(), field)

    # -- remote ----------------------------------------------------------

    def connect(self, token: str, owner: str, repo: str) -> None:
        """
        Store remote credentials and start replicating.

        Runs the startup reconciliation right away so both replicas agree.
        The round trip runs on the calling thread; the coordinator lock is
        not held during network I/O, so edits from other threads proceed.
        """
        self.credentials = RemoteCredentials(token=token, owner=owner, repo=repo, connected=True)
        self._save_credentials()
        self.sync.attach_remote(self._build_remote())
        logger.info(f"Connected remote {owner}/{repo}")
        self.sync.reconcile()

    def disconnect(self) -> None:
        """Forget the remote credentials. Local data is kept."""
        self.credentials = RemoteCredentials()
        self._save_credentials()
        self.sync.attach_remote(None)
        logger.info("Disconnected remote")

    def _save_credentials(self) -> None:
        try:
            self.store.write(CREDENTIALS_KEY, self.credentials.model_dump())
        except LocalStoreError as e:
            logger.error(f"Failed to persist credentials: {e}")

    @property
    def connected(self) -> bool:
        return self.sync.remote is not None

    def start(self) -> bool:
        """Run startup reconciliation if a remote is configured."""
        if not self.connected:
            return False
        return self.sync.reconcile()

    def on_hidden(self) -> bool:
        """Flush pending changes now. Blocks the caller for one round trip."""
        return self.sync.on_hidden()

    def sync_now(self) -> bool:
        """Sync on the calling thread. Debounced syncs run on the scheduler instead."""
        return self.sync.sync()

    @property
    def sync_status(self) -> SyncStatus:
        return self.sync.status

    @property
    def status_message(self) -> str | None:
        return self.sync.status_message

    def commits_today(self) -> int | None:
        """
        Commits made to the remote repository today.

        Returns:
            The count, or None when not connected or the request failed.
        """
        remote = self.sync.remote
        if remote is None:
            return None
        try:
            return remote.count_commits_today(self.today(), self.config.analytics.timezone)
        except BodyTrackerError as e:
            logger.warning(f"Commit count request failed: {e}")
            return None

    def close(self) -> None:
        self.sync.close()
