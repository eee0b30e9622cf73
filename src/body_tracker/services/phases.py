"""
Phase tracker.

Ordered collection of training phases, kept in creation order, with an
explicit reference to the single open (current) phase.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from body_tracker.domain.metrics import Phase
from body_tracker.infrastructure.local_store.store import PHASES_KEY, LocalStore
from body_tracker.utils.exceptions import LocalStoreError, ValidationError

logger = logging.getLogger(__name__)


class PhaseTracker:
    """
    Tracker for training phases.

    At most one phase is open at a time. The open phase is referenced by
    ``current_phase_id``, which is updated together with the phase list on
    every add, end and delete.
    """

    def __init__(
        self,
        store: LocalStore,
        on_change: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize phase tracker and load persisted phases.

        Args:
            store: Local durable store.
            on_change: Called after every user mutation.
            clock: Seconds since the epoch, used for new phase ids.
        """
        self.store = store
        self.on_change = on_change
        self.clock = clock
        self.last_persist_error: LocalStoreError | None = None
        self._phases: list[Phase] = []
        self.current_phase_id: int | None = None
        self._load()

    def _load(self) -> None:
        raw = self.store.read(PHASES_KEY, default=[])
        if not isinstance(raw, list):
            logger.error(f"Stored phases are not a list ({type(raw).__name__}); ignoring")
            self.store.corrupted_keys.append(PHASES_KEY)
            raw = []

        phases: list[Phase] = []
        for item in raw:
            try:
                phases.append(Phase(**item))
            except (PydanticValidationError, TypeError) as e:
                logger.warning(f"Skipping invalid stored phase {item!r}: {e}")

        self._set_phases(phases)
        logger.info(f"Loaded {len(self._phases)} phases")

    def _set_phases(self, phases: Iterable[Phase]) -> None:
        self._phases = list(phases)
        open_ids = [p.id for p in self._phases if p.is_open]
        if len(open_ids) > 1:
            logger.warning(
                f"{len(open_ids)} open phases found ({open_ids}); using {open_ids[0]} as current"
            )
        self.current_phase_id = open_ids[0] if open_ids else None

    def _persist(self) -> None:
        try:
            self.store.write(PHASES_KEY, self.to_list())
            self.last_persist_error = None
        except LocalStoreError as e:
            logger.error(f"Failed to persist phases: {e}")
            self.last_persist_error = e

    def _changed(self) -> None:
        self._persist()
        if self.on_change is not None:
            self.on_change()

    def _next_id(self) -> int:
        candidate = int(self.clock() * 1000)
        highest = max((p.id for p in self._phases), default=0)
        return max(candidate, highest + 1)

    def _index(self, phase_id: int) -> int | None:
        for i, phase in enumerate(self._phases):
            if phase.id == phase_id:
                return i
        return None

    def add_phase(
        self, name: str, start: str, goals: Mapping[str, Any] | None = None
    ) -> Phase:
        """
        Create a phase and append it.

        An already open phase is closed first, ending on the new start date
        (or on its own start date if the new phase starts earlier).

        Args:
            name: Display name, must not be blank.
            start: First day (YYYY-MM-DD).
            goals: Metric key to goal value.

        Returns:
            The new phase.

        Raises:
            ValidationError: If the name or start date is invalid.
        """
        try:
            phase = Phase(
                id=self._next_id(),
                name=name.strip(),
                start=start,
                end="",
                goals=dict(goals or {}),
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid phase: {e}") from e

        current = self.current_phase()
        if current is not None:
            close_on = max(phase.start, current.start)
            logger.info(f"Closing open phase {current.id} on {close_on}")
            self._replace(current.model_copy(update={"end": close_on}))

        self._phases.append(phase)
        self.current_phase_id = phase.id
        self._changed()
        return phase

    def _replace(self, phase: Phase) -> None:
        index = self._index(phase.id)
        if index is not None:
            self._phases[index] = phase

    def end_phase(self, phase_id: int, end: str) -> None:
        """
        Set the end date of a phase.

        No-op if the id is unknown. The end date is not checked against the
        start date. A phase cannot be reopened by passing an empty end.

        Raises:
            ValidationError: If end is empty or not a date.
        """
        if not end:
            raise ValidationError(f"End date required to end phase {phase_id}")

        index = self._index(phase_id)
        if index is None:
            return

        try:
            ended = Phase(**{**self._phases[index].to_dict(), "end": end})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid end date {end!r}: {e}") from e

        self._phases[index] = ended
        if self.current_phase_id == phase_id:
            self.current_phase_id = None
        self._changed()

    def update_goals(self, phase_id: int, goals: Mapping[str, Any]) -> None:
        """Replace the goals of a phase; no-op if the id is unknown."""
        index = self._index(phase_id)
        if index is None:
            return
        try:
            updated = Phase(**{**self._phases[index].to_dict(), "goals": dict(goals)})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid goals: {e}") from e
        self._phases[index] = updated
        self._changed()

    def delete_phase(self, phase_id: int) -> None:
        """Remove a phase; no-op if absent."""
        index = self._index(phase_id)
        if index is None:
            return
        del self._phases[index]
        if self.current_phase_id == phase_id:
            self.current_phase_id = None
        self._changed()

    def get(self, phase_id: int) -> Phase | None:
        index = self._index(phase_id)
        return None if index is None else self._phases[index]

    def current_phase(self) -> Phase | None:
        if self.current_phase_id is None:
            return None
        return self.get(self.current_phase_id)

    def phases(self) -> list[Phase]:
        """All phases in creation order."""
        return list(self._phases)

    def replace_all(self, phases: Iterable[Phase]) -> None:
        """Replace the phase list without notifying the change listener."""
        self._set_phases(phases)
        self._persist()

    def to_list(self) -> list[dict[str, Any]]:
        return [phase.to_dict() for phase in self._phases]

    def __len__(self) -> int:
        return len(self._phases)
