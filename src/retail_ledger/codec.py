"""Snapshot codec for the retail ledger.

Converts :class:`~retail_ledger.state.EngineState` to and from the
JSON-compatible document used both for backup files and for the per-key
documents the storage layer persists. Documents use camelCase keys; money is
written as decimal strings and timestamps as ISO-8601 text. Decoding accepts
plain JSON numbers for money so older backups load unchanged.

The public API is split in three layers:

1. Entity helpers: ``encode_*``/``decode_*`` for each dataclass.
2. Key helpers: :func:`encode_key` renders one persisted key and
   :func:`decode_state` rebuilds a full state from a key mapping.
3. Payload helpers: :func:`serialize` and :func:`deserialize` handle the
   single JSON payload used by backup and restore.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from . import log
from .constants import (
    REQUIRED_BACKUP_KEYS,
    STORAGE_KEYS,
    FawryPaymentType,
    LifecycleState,
    PaymentStatus,
    RecordKind,
    Role,
)
from .models import CompanyInfo, Customer, LogEntry, Payment, PrintSettings, Product, Record, SaleItem, User
from .state import DEFAULT_COMPANY_INFO, DEFAULT_PRINT_SETTINGS, DEFAULT_USERS, EngineState
from .store import RecordStore, collection_for_key


Document = Dict[str, Any]


class InvalidFormatError(ValueError):
    """Raised when a snapshot document cannot be accepted."""


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def encode_money(value: Decimal) -> str:
    return str(value)


def decode_money(raw: Any) -> Decimal:
    """Convert a stored money value (string or number) into a ``Decimal``."""

    if raw is None or isinstance(raw, bool):
        raise InvalidFormatError(f"Invalid monetary value: {raw!r}")
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise InvalidFormatError(f"Invalid monetary value: {raw!r}") from exc


def encode_timestamp(value: datetime) -> str:
    return value.isoformat()


def decode_timestamp(raw: Any) -> datetime:
    """Parse ISO-8601 text; naive values are taken to be UTC."""

    if not isinstance(raw, str):
        raise InvalidFormatError(f"Invalid timestamp: {raw!r}")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidFormatError(f"Invalid timestamp: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_text(raw: Any) -> Optional[str]:
    return None if raw is None else str(raw)


def _required(document: Mapping[str, Any], key: str) -> Any:
    try:
        value = document[key]
    except (KeyError, TypeError) as exc:
        raise InvalidFormatError(f"Missing field '{key}'") from exc
    if value is None:
        raise InvalidFormatError(f"Missing field '{key}'")
    return value


def _drop_none(document: Document) -> Document:
    return {key: value for key, value in document.items() if value is not None}


# ---------------------------------------------------------------------------
# Entity helpers
# ---------------------------------------------------------------------------


def encode_product(product: Product) -> Document:
    return _drop_none(
        {
            "id": product.id,
            "name": product.name,
            "quantity": product.quantity,
            "price": encode_money(product.price),
            "cost": encode_money(product.cost),
            "minStock": product.min_stock,
            "imageUrl": product.image_url,
        }
    )


def decode_product(document: Mapping[str, Any]) -> Product:
    return Product(
        id=str(_required(document, "id")),
        name=str(_required(document, "name")),
        quantity=int(document.get("quantity") or 0),
        price=decode_money(document.get("price", 0)),
        cost=decode_money(document.get("cost", 0)),
        min_stock=int(document.get("minStock") or 0),
        image_url=_optional_text(document.get("imageUrl")),
    )


def encode_customer(customer: Customer) -> Document:
    return _drop_none(
        {
            "id": customer.id,
            "name": customer.name,
            "phone": customer.phone,
            "address": customer.address,
        }
    )


def decode_customer(document: Mapping[str, Any]) -> Customer:
    return Customer(
        id=str(_required(document, "id")),
        name=str(_required(document, "name")),
        phone=_optional_text(document.get("phone")),
        address=_optional_text(document.get("address")),
    )


def encode_sale_item(item: SaleItem) -> Document:
    return {
        "productId": item.product_id,
        "productName": item.product_name,
        "quantity": item.quantity,
        "price": encode_money(item.price),
        "cost": encode_money(item.cost),
    }


def decode_sale_item(document: Mapping[str, Any]) -> SaleItem:
    return SaleItem(
        product_id=str(_required(document, "productId")),
        product_name=str(document.get("productName") or ""),
        quantity=int(_required(document, "quantity")),
        price=decode_money(_required(document, "price")),
        cost=decode_money(document.get("cost", 0)),
    )


def encode_payment(payment: Payment) -> Document:
    return {
        "amount": encode_money(payment.amount),
        "date": encode_timestamp(payment.date),
        "createdBy": payment.created_by,
    }


def decode_payment(document: Mapping[str, Any]) -> Payment:
    return Payment(
        amount=decode_money(_required(document, "amount")),
        date=decode_timestamp(_required(document, "date")),
        created_by=str(document.get("createdBy") or ""),
    )


def encode_record(record: Record) -> Document:
    """Render a record; absent optional fields are omitted, not nulled."""

    return _drop_none(
        {
            "id": record.id,
            "recordNumber": record.record_number,
            "customerName": record.customer_name,
            "customerId": record.customer_id,
            "customerPhone": record.customer_phone,
            "customerAddress": record.customer_address,
            "items": [encode_sale_item(item) for item in record.items],
            "total": encode_money(record.total),
            "totalCost": encode_money(record.total_cost),
            "profit": encode_money(record.profit),
            "discount": encode_money(record.discount),
            "finalTotal": encode_money(record.final_total),
            "date": encode_timestamp(record.date),
            "createdBy": record.created_by,
            "paymentStatus": record.payment_status.value,
            "amountPaid": encode_money(record.amount_paid),
            "amountRemaining": encode_money(record.amount_remaining),
            "payments": [encode_payment(payment) for payment in record.payments],
            "paymentType": record.payment_type.value if record.payment_type is not None else None,
        }
    )


def decode_record(document: Mapping[str, Any]) -> Record:
    """Rebuild a :class:`Record`, translating bad members into format errors."""

    try:
        payment_type_raw = document.get("paymentType")
        return Record(
            id=str(_required(document, "id")),
            record_number=int(_required(document, "recordNumber")),
            customer_name=str(document.get("customerName") or ""),
            customer_id=_optional_text(document.get("customerId")),
            customer_phone=_optional_text(document.get("customerPhone")),
            customer_address=_optional_text(document.get("customerAddress")),
            items=tuple(decode_sale_item(item) for item in _required(document, "items")),
            total=decode_money(_required(document, "total")),
            total_cost=decode_money(document.get("totalCost", 0)),
            discount=decode_money(document.get("discount", 0)),
            final_total=decode_money(_required(document, "finalTotal")),
            profit=decode_money(document.get("profit", 0)),
            date=decode_timestamp(_required(document, "date")),
            created_by=str(document.get("createdBy") or ""),
            payment_status=PaymentStatus.parse(_required(document, "paymentStatus")),
            amount_paid=decode_money(document.get("amountPaid", 0)),
            amount_remaining=decode_money(document.get("amountRemaining", 0)),
            payments=[decode_payment(payment) for payment in document.get("payments") or []],
            payment_type=FawryPaymentType.parse(payment_type_raw) if payment_type_raw is not None else None,
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, InvalidFormatError):
            raise
        raise InvalidFormatError(f"Invalid record document: {exc}") from exc


def encode_log_entry(entry: LogEntry) -> Document:
    return {
        "id": entry.id,
        "user": entry.user,
        "action": entry.action,
        "timestamp": encode_timestamp(entry.timestamp),
    }


def decode_log_entry(document: Mapping[str, Any]) -> LogEntry:
    return LogEntry(
        id=str(_required(document, "id")),
        user=str(document.get("user") or ""),
        action=str(document.get("action") or ""),
        timestamp=decode_timestamp(_required(document, "timestamp")),
    )


def encode_user(user: User) -> Document:
    return _drop_none(
        {
            "id": user.id,
            "name": user.name,
            "username": user.username,
            "password": user.password,
            "role": user.role.value,
        }
    )


def decode_user(document: Mapping[str, Any]) -> User:
    return User(
        id=str(_required(document, "id")),
        name=str(_required(document, "name")),
        username=str(_required(document, "username")),
        role=Role(_required(document, "role")),
        password=_optional_text(document.get("password")),
    )


def encode_company_info(info: CompanyInfo) -> Document:
    return {
        "name": info.name,
        "address": info.address,
        "phone": info.phone,
        "logo": info.logo,
        "logoOpacity": info.logo_opacity,
    }


def decode_company_info(document: Mapping[str, Any]) -> CompanyInfo:
    name = document.get("name")
    return CompanyInfo(
        name=DEFAULT_COMPANY_INFO.name if name is None else str(name),
        address=str(document.get("address") or ""),
        phone=str(document.get("phone") or ""),
        logo=str(document.get("logo") or ""),
        logo_opacity=float(document.get("logoOpacity", 1.0)),
    )


def encode_print_settings(settings: PrintSettings) -> Document:
    return {
        "showCostOnPrint": settings.show_cost_on_print,
        "footerText": settings.footer_text,
        "fontSize": settings.font_size,
    }


def decode_print_settings(document: Mapping[str, Any]) -> PrintSettings:
    return PrintSettings(
        show_cost_on_print=bool(document.get("showCostOnPrint", DEFAULT_PRINT_SETTINGS.show_cost_on_print)),
        footer_text=str(document.get("footerText", DEFAULT_PRINT_SETTINGS.footer_text)),
        font_size=int(document.get("fontSize", DEFAULT_PRINT_SETTINGS.font_size)),
    )


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def encode_key(state: EngineState, key: str) -> Any:
    """Render the document stored under one persisted ``key``.

    Raises:
        KeyError: If ``key`` is not one of :data:`STORAGE_KEYS`.
    """

    address = collection_for_key(key)
    if address is not None:
        kind, lifecycle = address
        return [encode_record(record) for record in state.records.collection(kind, lifecycle)]

    encoders: Mapping[str, Callable[[EngineState], Any]] = {
        "products": lambda s: [encode_product(product) for product in s.products],
        "customers": lambda s: [encode_customer(customer) for customer in s.customers],
        "lastRecordNumber": lambda s: s.last_record_number,
        "logs": lambda s: [encode_log_entry(entry) for entry in s.logs],
        "users": lambda s: [encode_user(user) for user in s.users],
        "companyInfo": lambda s: encode_company_info(s.company_info),
        "printSettings": lambda s: encode_print_settings(s.print_settings),
    }
    try:
        encoder = encoders[key]
    except KeyError as exc:
        raise KeyError(f"Unknown storage key: {key}") from exc
    return encoder(state)


def encode_state(state: EngineState) -> Document:
    """Render the complete state as one document keyed by storage key."""

    return {key: encode_key(state, key) for key in STORAGE_KEYS}


def _decode_list(documents: Mapping[str, Any], key: str, decoder: Callable[[Mapping[str, Any]], Any]) -> List[Any]:
    raw = documents.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidFormatError(f"Field '{key}' must be a list")
    return [decoder(item) for item in raw]


def _reject_shared_ids(records: RecordStore) -> None:
    """A record lives either in its collection or in that collection's trash."""

    for kind in RecordKind:
        active = {record.id for record in records.collection(kind, LifecycleState.ACTIVE)}
        shared = [
            record.id
            for record in records.collection(kind, LifecycleState.TRASHED)
            if record.id in active
        ]
        if shared:
            raise InvalidFormatError(f"Records in both {kind.value} and {kind.trash_key}: {', '.join(shared)}")


def decode_state(documents: Mapping[str, Any], *, required: Sequence[str] = ()) -> EngineState:
    """Build an :class:`EngineState` from a mapping of storage keys.

    Keys listed in ``required`` must be present and non-null; every other
    key falls back to its default when absent.

    Raises:
        InvalidFormatError: If a required key is missing or any member
            cannot be decoded.
    """

    if not isinstance(documents, Mapping):
        raise InvalidFormatError("Snapshot document must be a JSON object")
    missing = [key for key in required if documents.get(key) is None]
    if missing:
        raise InvalidFormatError(f"Snapshot is missing required fields: {', '.join(missing)}")

    try:
        collections = {}
        for key in STORAGE_KEYS:
            address = collection_for_key(key)
            if address is not None:
                collections[address] = _decode_list(documents, key, decode_record)
        records = RecordStore(collections)
        _reject_shared_ids(records)

        users = _decode_list(documents, "users", decode_user) if documents.get("users") is not None else list(DEFAULT_USERS)
        company_raw = documents.get("companyInfo")
        print_raw = documents.get("printSettings")
        return EngineState(
            products=_decode_list(documents, "products", decode_product),
            customers=_decode_list(documents, "customers", decode_customer),
            records=records,
            last_record_number=int(documents.get("lastRecordNumber") or 0),
            logs=_decode_list(documents, "logs", decode_log_entry),
            users=users,
            company_info=decode_company_info(company_raw) if company_raw is not None else DEFAULT_COMPANY_INFO,
            print_settings=decode_print_settings(print_raw) if print_raw is not None else DEFAULT_PRINT_SETTINGS,
        )
    except InvalidFormatError:
        raise
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidFormatError(f"Invalid snapshot document: {exc}") from exc


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def serialize(state: EngineState) -> str:
    """Render the whole state as a single JSON payload."""

    return json.dumps(encode_state(state), indent=2, ensure_ascii=False)


def deserialize(payload: Union[str, bytes, Mapping[str, Any]]) -> EngineState:
    """Parse a backup payload into a fresh :class:`EngineState`.

    The payload must contain non-null ``products``, ``sales`` and ``users``
    members. The returned state is independent of any live state, so a
    rejected payload never leaves partial changes behind.

    Raises:
        InvalidFormatError: If the payload is not valid JSON, misses a
            required member, or contains malformed entries.
    """

    if isinstance(payload, (str, bytes)):
        try:
            documents = json.loads(payload)
        except json.JSONDecodeError as exc:
            log.error("Backup payload is not valid JSON: %s", exc)
            raise InvalidFormatError(f"Invalid backup file format: {exc}") from exc
    else:
        documents = payload

    state = decode_state(documents, required=REQUIRED_BACKUP_KEYS)
    log.debug(
        "Decoded snapshot with %d products and %d active records",
        len(state.products),
        state.records.count(state=LifecycleState.ACTIVE),
    )
    return state


__all__ = [
    "InvalidFormatError",
    "decode_money",
    "decode_record",
    "decode_state",
    "decode_timestamp",
    "deserialize",
    "encode_key",
    "encode_money",
    "encode_record",
    "encode_state",
    "encode_timestamp",
    "serialize",
]
