"""
Randomly addressable event sources and per-universe event views.

An event source holds columnar arrays (one per field) and exposes a cursor:
``reposition(i)`` then ``current``. Views wrap the current event for one
universe: RecoView reads reconstructed fields (with the universe's lateral
shifts applied), TruthView reads truth fields. Keeping the two apart means a
truth quantity can never be filled into a reco histogram by accident.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterator

import awkward as ak
import numpy as np

from .exceptions import BranchMissingError, DataLoadError, TruthAccessError

TRUTH_PREFIX = "mc_"


def is_truth_field(name: str) -> bool:
    return name.startswith(TRUTH_PREFIX)


def _to_column(values: Any) -> Any:
    """Flat numeric fields become numpy arrays, jagged fields become lists."""
    if isinstance(values, ak.Array):
        if values.ndim == 1:
            return ak.to_numpy(values)
        return ak.to_list(values)
    if isinstance(values, np.ndarray):
        return values
    return list(values)


class _Row(Mapping):
    """Read-only mapping view of one entry across all columns."""

    __slots__ = ("_columns", "_entry")

    def __init__(self, columns: dict[str, Any], entry: int) -> None:
        self._columns = columns
        self._entry = entry

    def __getitem__(self, name: str) -> Any:
        return self._columns[name][self._entry]

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __contains__(self, name: object) -> bool:
        return name in self._columns


class Event:
    """One entry of an event source. Never mutated."""

    __slots__ = ("index", "_fields", "is_mc", "source_name")

    def __init__(self, index: int, fields: Mapping[str, Any], is_mc: bool, source_name: str = "") -> None:
        self.index = index
        self._fields = fields
        self.is_mc = is_mc
        self.source_name = source_name

    def has(self, name: str) -> bool:
        return name in self._fields

    def get(self, name: str) -> Any:
        """
        Value of a field for this entry.

        Raises:
            BranchMissingError: If the source has no such field
        """
        if name not in self._fields:
            raise BranchMissingError(name, self.source_name or None)
        return self._fields[name]

    def __repr__(self) -> str:
        kind = "MC" if self.is_mc else "data"
        return f"Event(index={self.index}, {kind}, source={self.source_name!r})"


@dataclass
class EventContext:
    """
    Scratch space for one (event, universe) iteration.

    Created fresh inside the universe loop and shared by the cuts and the
    variables evaluated in that same iteration.
    """

    candidate_index: int = -1
    values: dict[str, Any] = field(default_factory=dict)


class RecoView:
    """Reconstructed fields of an event as seen from one universe."""

    __slots__ = ("event", "universe", "context")

    def __init__(self, event: Event, universe: Any, context: EventContext | None = None) -> None:
        self.event = event
        self.universe = universe
        self.context = context if context is not None else EventContext()

    @property
    def is_cv(self) -> bool:
        return self.universe.is_cv

    def __getitem__(self, name: str) -> Any:
        if is_truth_field(name):
            raise TruthAccessError(f"Truth field '{name}' requested through a reco view")
        value = self.event.get(name)
        shift = self.universe.shift_for(name)
        if shift != 1.0:
            return value * shift
        return value

    def truth(self) -> TruthView:
        """Truth view of the same event, universe and context."""
        return TruthView(self.event, self.universe, self.context)


class TruthView:
    """Truth fields of a simulated event as seen from one universe."""

    __slots__ = ("event", "universe", "context")

    def __init__(self, event: Event, universe: Any, context: EventContext | None = None) -> None:
        if not event.is_mc:
            raise TruthAccessError(
                f"Truth information requested for data event {event.index} "
                f"from {event.source_name or 'data source'}"
            )
        self.event = event
        self.universe = universe
        self.context = context if context is not None else EventContext()

    @property
    def is_cv(self) -> bool:
        return self.universe.is_cv

    def __getitem__(self, name: str) -> Any:
        if not is_truth_field(name):
            raise TruthAccessError(
                f"Reco field '{name}' requested through a truth view "
                f"(truth fields start with '{TRUTH_PREFIX}')"
            )
        return self.event.get(name)


class ArrayEventSource:
    """
    Event source backed by in-memory columns.

    Attributes:
        name: Source name used in diagnostics
        is_mc: Whether entries carry truth information
        pot_used: Accumulated exposure (protons on target) of the source
    """

    def __init__(
        self,
        columns: Mapping[str, Any] | ak.Array,
        is_mc: bool,
        pot_used: float = 0.0,
        name: str = "memory",
    ) -> None:
        if isinstance(columns, ak.Array):
            columns = {field_name: columns[field_name] for field_name in columns.fields}

        self.name: str = name
        self.is_mc: bool = is_mc
        self.pot_used: float = float(pot_used)
        self._columns: dict[str, Any] = {key: _to_column(values) for key, values in columns.items()}

        lengths = {key: len(values) for key, values in self._columns.items()}
        if len(set(lengths.values())) > 1:
            raise DataLoadError(f"Columns of '{name}' have different lengths: {lengths}")
        self._n_entries: int = next(iter(lengths.values())) if lengths else 0

        self._entry: int = -1
        self._current: Event | None = None

    def __len__(self) -> int:
        return self._n_entries

    @property
    def fields(self) -> list[str]:
        return list(self._columns)

    def reposition(self, entry: int) -> Event:
        """Move the cursor to entry and return the event there."""
        if not 0 <= entry < self._n_entries:
            raise IndexError(f"Entry {entry} outside [0, {self._n_entries}) of '{self.name}'")
        if entry != self._entry:
            self._entry = entry
            self._current = Event(entry, _Row(self._columns, entry), self.is_mc, self.name)
        return self._current

    @property
    def current(self) -> Event:
        if self._current is None:
            raise DataLoadError(f"Source '{self.name}' has not been positioned yet")
        return self._current

    def __repr__(self) -> str:
        kind = "MC" if self.is_mc else "data"
        return f"ArrayEventSource({self.name!r}, {kind}, entries={self._n_entries}, pot={self.pot_used:g})"
