"""Unit tests for the keyed record store."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from retail_ledger.constants import LifecycleState, PaymentStatus, RecordKind
from retail_ledger.models import Record
from retail_ledger.store import DuplicateRecordError, RecordStore, collection_for_key, storage_key


def make_record(record_id: str, number: int) -> Record:
    return Record(
        id=record_id,
        record_number=number,
        customer_name="Walk-in",
        customer_id=None,
        customer_phone=None,
        customer_address=None,
        items=(),
        total=Decimal("0"),
        total_cost=Decimal("0"),
        discount=Decimal("0"),
        final_total=Decimal("0"),
        profit=Decimal("0"),
        date=datetime(2025, 1, 1, tzinfo=UTC),
        created_by="Manager",
        payment_status=PaymentStatus.PAID,
        amount_paid=Decimal("0"),
        amount_remaining=Decimal("0"),
    )


@pytest.mark.parametrize(
    ("kind", "state", "key"),
    [
        (RecordKind.SALES, LifecycleState.ACTIVE, "sales"),
        (RecordKind.SALES, LifecycleState.TRASHED, "deletedSales"),
        (RecordKind.ARCHIVED_INVOICES, LifecycleState.TRASHED, "deletedArchivedInvoices"),
        (RecordKind.FAWRY_SALES, LifecycleState.TRASHED, "deletedFawrySales"),
    ],
)
def test_storage_key_round_trips(kind, state, key):
    """Every collection address maps to one persisted key and back."""

    assert storage_key(kind, state) == key
    assert collection_for_key(key) == (kind, state)


def test_collection_for_key_ignores_other_keys():
    assert collection_for_key("products") is None


def test_append_and_find():
    store = RecordStore()
    record = make_record("R-1", 1)

    store.append(RecordKind.SALES, record)

    assert store.find(RecordKind.SALES, "R-1") is record
    assert store.find(RecordKind.SALES, "R-1", state=LifecycleState.TRASHED) is None
    assert store.find(RecordKind.INVOICES, "R-1") is None


def test_append_rejects_duplicate_ids():
    store = RecordStore()
    store.append(RecordKind.SALES, make_record("R-1", 1))

    with pytest.raises(DuplicateRecordError):
        store.append(RecordKind.SALES, make_record("R-1", 2))


def test_same_id_may_exist_in_different_collections():
    store = RecordStore()
    store.append(RecordKind.SALES, make_record("R-1", 1))
    store.append(RecordKind.INVOICES, make_record("R-1", 2))

    assert store.count() == 2


def test_remove_missing_returns_none():
    store = RecordStore()
    assert store.remove(RecordKind.SALES, "R-missing") is None


def test_prepend_puts_record_first():
    store = RecordStore()
    store.append(RecordKind.SALES, make_record("R-1", 1), state=LifecycleState.TRASHED)
    store.prepend(RecordKind.SALES, make_record("R-2", 2), state=LifecycleState.TRASHED)

    ids = [record.id for record in store.collection(RecordKind.SALES, LifecycleState.TRASHED)]
    assert ids == ["R-2", "R-1"]


def test_collection_returns_a_copy():
    store = RecordStore()
    store.collection(RecordKind.SALES).append(make_record("R-1", 1))

    assert store.collection(RecordKind.SALES) == []


def test_sort_by_record_number_is_descending():
    store = RecordStore()
    for number in (2, 5, 1):
        store.append(RecordKind.INVOICES, make_record(f"R-{number}", number))

    store.sort_by_record_number(RecordKind.INVOICES)

    assert [record.record_number for record in store.collection(RecordKind.INVOICES)] == [5, 2, 1]


def test_replace_rejects_duplicates():
    store = RecordStore()
    with pytest.raises(DuplicateRecordError):
        store.replace(RecordKind.SALES, [make_record("R-1", 1), make_record("R-1", 2)])


def test_iter_records_follows_kind_order():
    store = RecordStore()
    store.append(RecordKind.FAWRY_SALES, make_record("R-3", 3))
    store.append(RecordKind.SALES, make_record("R-1", 1))
    store.append(RecordKind.INVOICES, make_record("R-2", 2))

    kinds = [kind for kind, _ in store.iter_records(kinds=(RecordKind.SALES, RecordKind.INVOICES, RecordKind.FAWRY_SALES))]

    assert kinds == [RecordKind.SALES, RecordKind.INVOICES, RecordKind.FAWRY_SALES]


def test_stores_with_same_contents_are_equal():
    first = RecordStore({(RecordKind.SALES, LifecycleState.ACTIVE): [make_record("R-1", 1)]})
    second = RecordStore()
    second.append(RecordKind.SALES, make_record("R-1", 1))

    assert first == second
