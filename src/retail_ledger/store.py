"""Indexed record store.

Every record collection is addressed by a ``(RecordKind, LifecycleState)``
pair, so the six active collections and their six trash counterparts share
one implementation. The store only guarantees id uniqueness inside a
collection; ordering is insertion order unless a caller re-sorts.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import LifecycleState, RecordKind
from .models import Record


CollectionKey = Tuple[RecordKind, LifecycleState]


class DuplicateRecordError(ValueError):
    """Raised when a record id already exists in the target collection."""


def storage_key(kind: RecordKind, state: LifecycleState = LifecycleState.ACTIVE) -> str:
    """Return the persisted key for a collection, e.g. ``deletedInvoices``."""

    return kind.value if state is LifecycleState.ACTIVE else kind.trash_key


def collection_for_key(key: str) -> Optional[CollectionKey]:
    """Resolve a persisted key back into its collection address."""

    for kind in RecordKind:
        if key == kind.value:
            return kind, LifecycleState.ACTIVE
        if key == kind.trash_key:
            return kind, LifecycleState.TRASHED
    return None


class RecordStore:
    """Twelve insertion-ordered record collections behind one interface."""

    def __init__(self, collections: Optional[Mapping[CollectionKey, Iterable[Record]]] = None) -> None:
        self._collections: Dict[CollectionKey, List[Record]] = {
            (kind, state): [] for kind in RecordKind for state in LifecycleState
        }
        for (kind, state), records in (collections or {}).items():
            self.replace(kind, records, state=state)

    def collection(self, kind: RecordKind, state: LifecycleState = LifecycleState.ACTIVE) -> List[Record]:
        """Return a shallow copy of one collection in stored order."""

        return list(self._collections[(kind, state)])

    def append(self, kind: RecordKind, record: Record, *, state: LifecycleState = LifecycleState.ACTIVE) -> None:
        self._insert(kind, record, state=state, at_front=False)

    def prepend(self, kind: RecordKind, record: Record, *, state: LifecycleState = LifecycleState.ACTIVE) -> None:
        self._insert(kind, record, state=state, at_front=True)

    def find(
        self,
        kind: RecordKind,
        record_id: str,
        *,
        state: LifecycleState = LifecycleState.ACTIVE,
    ) -> Optional[Record]:
        """Return the record with ``record_id`` or ``None`` when absent."""

        for record in self._collections[(kind, state)]:
            if record.id == record_id:
                return record
        return None

    def remove(
        self,
        kind: RecordKind,
        record_id: str,
        *,
        state: LifecycleState = LifecycleState.ACTIVE,
    ) -> Optional[Record]:
        """Detach and return the record with ``record_id``, or ``None``."""

        records = self._collections[(kind, state)]
        for index, record in enumerate(records):
            if record.id == record_id:
                return records.pop(index)
        log.debug("Record '%s' not present in %s", record_id, storage_key(kind, state))
        return None

    def replace(
        self,
        kind: RecordKind,
        records: Iterable[Record],
        *,
        state: LifecycleState = LifecycleState.ACTIVE,
    ) -> None:
        """Swap a whole collection, rejecting duplicate ids."""

        incoming = list(records)
        seen: set[str] = set()
        for record in incoming:
            if record.id in seen:
                raise DuplicateRecordError(
                    f"Duplicate record id '{record.id}' in {storage_key(kind, state)}"
                )
            seen.add(record.id)
        self._collections[(kind, state)] = incoming

    def sort_by_record_number(self, kind: RecordKind, *, state: LifecycleState = LifecycleState.ACTIVE) -> None:
        """Order a collection by record number, newest first."""

        self._collections[(kind, state)].sort(key=lambda record: record.record_number, reverse=True)

    def iter_records(
        self,
        *,
        state: LifecycleState = LifecycleState.ACTIVE,
        kinds: Optional[Sequence[RecordKind]] = None,
    ) -> Iterator[Tuple[RecordKind, Record]]:
        """Yield ``(kind, record)`` pairs, collection by collection."""

        for kind in kinds if kinds is not None else tuple(RecordKind):
            for record in self._collections[(kind, state)]:
                yield kind, record

    def count(self, *, state: LifecycleState = LifecycleState.ACTIVE) -> int:
        return sum(len(self._collections[(kind, state)]) for kind in RecordKind)

    def _insert(self, kind: RecordKind, record: Record, *, state: LifecycleState, at_front: bool) -> None:
        records = self._collections[(kind, state)]
        if any(existing.id == record.id for existing in records):
            raise DuplicateRecordError(
                f"Duplicate record id '{record.id}' in {storage_key(kind, state)}"
            )
        if at_front:
            records.insert(0, record)
        else:
            records.append(record)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecordStore):
            return NotImplemented
        return self._collections == other._collections

    def __repr__(self) -> str:
        sizes = ", ".join(
            f"{storage_key(kind, state)}={len(records)}"
            for (kind, state), records in self._collections.items()
            if records
        )
        return f"RecordStore({sizes})"


__all__ = [
    "CollectionKey",
    "DuplicateRecordError",
    "RecordStore",
    "collection_for_key",
    "storage_key",
]
