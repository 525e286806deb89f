"""Business logic layer for the retail ledger.

This module is the ledger engine: it builds financial records, keeps product
stock consistent with the set of active records, allocates customer payments
oldest debt first, and runs the trash lifecycle (soft delete, restore,
permanent delete, unarchive). It consumes the Data Access Layer (DAL) for all
I/O; every mutating call ends by writing the storage keys it touched back to
the workbook.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import codec, data_manager, log
from .constants import (
    AMOUNT_TOLERANCE,
    DEBT_KINDS,
    EXPECTED_SCHEMA_VERSION,
    STORAGE_KEYS,
    FawryPaymentType,
    LifecycleState,
    PaymentStatus,
    RecordKind,
    StockDirection,
)
from .models import CompanyInfo, Customer, LogEntry, Payment, PrintSettings, Product, Record, SaleItem, User
from .state import DEFAULT_USERS, EngineState
from .store import DuplicateRecordError, storage_key


ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, or user is unknown."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when operation input fails a validation rule."""


@dataclass
class RuntimeContext:
    """Container for configuration, the workbook, and the live engine state.

    A context without a workbook runs purely in memory and skips persistence,
    which is how tests and scripted imports drive the engine.
    """

    settings: Optional[data_manager.ConfigSettings]
    workbook: Optional[Workbook]
    state: EngineState = field(default_factory=EngineState)
    acting_user: User = DEFAULT_USERS[0]


@dataclass(frozen=True)
class RecordCommand:
    """User intent for creating any ledger record."""

    customer_name: str
    items: Sequence[SaleItem]
    customer_id: Optional[str] = None
    discount: Decimal = ZERO
    payment_status: PaymentStatus = PaymentStatus.PAID
    amount_paid: Optional[Decimal] = None
    payment_type: Optional[FawryPaymentType] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AppliedPayment:
    """One leg of an allocated customer payment."""

    record_id: str
    record_number: int
    kind: RecordKind
    amount: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of :func:`allocate_payment`; ``unallocated`` is discarded."""

    customer_id: str
    requested: Decimal
    applied: tuple[AppliedPayment, ...]
    unallocated: Decimal

    @property
    def allocated(self) -> Decimal:
        return sum((leg.amount for leg in self.applied), ZERO)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``.

    Naive values are taken to be UTC.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def generate_id(*, prefix: str) -> str:
    """Generate an opaque unique identifier such as ``R-3f2c...``."""

    return f"{prefix}-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def in_memory_context(*, state: Optional[EngineState] = None, acting_user: Optional[User] = None) -> RuntimeContext:
    """Build a context that never touches disk."""

    state = state if state is not None else EngineState()
    return RuntimeContext(
        settings=None,
        workbook=None,
        state=state,
        acting_user=acting_user if acting_user is not None else state.users[0],
    )


def load_runtime_context(config_path: Optional[Path] = None, *, username: Optional[str] = None) -> RuntimeContext:
    """Load configuration, the workbook, and the persisted engine state.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the
            current working directory.
        username (str | None): Acting user; defaults to ``DefaultUser`` from
            the configuration.

    Returns:
        RuntimeContext: Context whose state mirrors the workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        codec.InvalidFormatError: If stored documents cannot be decoded.
        MissingReferenceError: If the acting user does not exist.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    state = codec.decode_state(data_manager.load_documents(workbook))
    acting_user = find_user(state, username or settings.default_user)
    log.info(
        "Loaded runtime context for workbook '%s' as user '%s'",
        settings.data_file,
        acting_user.username,
    )
    return RuntimeContext(settings=settings, workbook=workbook, state=state, acting_user=acting_user)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings is None:
        return
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def find_user(state: EngineState, username: str) -> User:
    """Resolve a user by login name.

    Raises:
        MissingReferenceError: If no user has ``username``.
    """
    for user in state.users:
        if user.username == username:
            return user
    log.warning("User lookup failed for username '%s'", username)
    raise MissingReferenceError(f"Unknown user: {username}")


def persist_context(context: RuntimeContext) -> None:
    """Write every storage key and save the workbook."""

    _commit(context, *STORAGE_KEYS)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook and state from disk, dropping in-memory edits.

    Raises:
        RuntimeError: If the context has no backing workbook.
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    if context.settings is None:
        raise RuntimeError("In-memory contexts cannot be refreshed")
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    state = codec.decode_state(data_manager.load_documents(workbook))
    acting_user = find_user(state, context.acting_user.username)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, state=state, acting_user=acting_user)


def _commit(context: RuntimeContext, *keys: str) -> None:
    """Replace the stored documents for ``keys`` and save the workbook."""

    if context.workbook is None or context.settings is None:
        log.debug("In-memory context; skipping persistence of %s", ", ".join(keys))
        return
    now = datetime.now(UTC)
    for key in dict.fromkeys(keys):
        data_manager.save_document(context.workbook, key, codec.encode_key(context.state, key), when=now)
    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.debug("Persisted keys %s to '%s'", ", ".join(keys), context.settings.data_file)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is zero, negative, or not integral.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is a nonnegative ``Decimal``.

    Raises:
        ValidationError: If ``amount`` is negative or not a ``Decimal``.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary value is strictly positive.

    Raises:
        ValidationError: If ``amount`` is zero, negative, or not a ``Decimal``.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= ZERO:
        log.error("Positive amount validation failed: %s", amount)
        raise ValidationError("Amount must be greater than zero")


def _require_text(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        log.error("%s validation failed: empty value", label)
        raise ValidationError(f"{label} must not be empty")
    return text


def _clamp_remaining(amount: Decimal) -> Decimal:
    return ZERO if amount <= AMOUNT_TOLERANCE else amount


def _derive_status(requested: PaymentStatus, amount_paid: Decimal, amount_remaining: Decimal) -> PaymentStatus:
    if amount_remaining == ZERO:
        return PaymentStatus.PAID
    if requested is PaymentStatus.DEFERRED and amount_paid == ZERO:
        return PaymentStatus.DEFERRED
    return PaymentStatus.PARTIAL


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


def record_activity(context: RuntimeContext, action: str, *, timestamp: Optional[datetime] = None) -> LogEntry:
    """Prepend an entry to the activity log (newest first)."""

    entry = LogEntry(
        id=generate_id(prefix="L"),
        user=context.acting_user.name,
        action=action,
        timestamp=_resolve_timestamp(timestamp),
    )
    context.state.logs.insert(0, entry)
    log.info("[%s] %s", entry.user, action)
    return entry


def list_activity(context: RuntimeContext) -> List[LogEntry]:
    """Return the activity log, newest entry first."""

    return list(context.state.logs)


# ---------------------------------------------------------------------------
# Products and customers
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[Product]:
    return list(context.state.products)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    for product in context.state.products:
        if product.id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def _validate_product(product: Product) -> None:
    _require_text(product.name, "Product name")
    if isinstance(product.quantity, bool) or not isinstance(product.quantity, int):
        raise ValidationError("Product quantity must be a whole number")
    if isinstance(product.min_stock, bool) or not isinstance(product.min_stock, int) or product.min_stock < 0:
        raise ValidationError("Minimum stock must be a whole number of zero or more")
    require_nonnegative_money(product.price)
    require_nonnegative_money(product.cost)


def add_product(
    context: RuntimeContext,
    *,
    name: str,
    quantity: int,
    price: Decimal,
    cost: Decimal,
    min_stock: int = 0,
    image_url: Optional[str] = None,
) -> Product:
    """Register a new product and log the action.

    Raises:
        ValidationError: If the name is empty, counts are not whole numbers,
            or money values are negative.
    """
    product = Product(
        id=generate_id(prefix="P"),
        name=(name or "").strip(),
        quantity=quantity,
        price=price,
        cost=cost,
        min_stock=min_stock,
        image_url=image_url or None,
    )
    _validate_product(product)
    context.state.products.append(product)
    record_activity(context, f"Added product: {product.name}")
    _commit(context, "products", "logs")
    return product


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> Product:
    """Apply a partial edit to a product.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        KeyError: If ``changes`` names a field a product does not have.
        ValidationError: If the edited product fails validation.
    """
    current = get_product(context, product_id)
    unknown = set(changes) - {"name", "quantity", "price", "cost", "min_stock", "image_url"}
    if unknown:
        raise KeyError(f"Unknown product field: {', '.join(sorted(unknown))}")
    updated = replace(current, **changes)
    _validate_product(updated)
    products = context.state.products
    products[products.index(current)] = updated
    record_activity(context, f"Updated product: {updated.name}")
    _commit(context, "products", "logs")
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> Product:
    """Remove a product; historical records keep their own item copies.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """
    product = get_product(context, product_id)
    context.state.products.remove(product)
    record_activity(context, f"Deleted product: {product.name}")
    _commit(context, "products", "logs")
    return product


def list_customers(context: RuntimeContext) -> List[Customer]:
    return list(context.state.customers)


def find_customer(context: RuntimeContext, customer_id: Optional[str]) -> Optional[Customer]:
    """Return the customer with ``customer_id`` or ``None`` when unknown."""

    if customer_id is None:
        return None
    for customer in context.state.customers:
        if customer.id == customer_id:
            return customer
    return None


def get_customer(context: RuntimeContext, customer_id: str) -> Customer:
    """Resolve a customer by id.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    customer = find_customer(context, customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def add_customer(
    context: RuntimeContext,
    *,
    name: str,
    phone: Optional[str] = None,
    address: Optional[str] = None,
) -> Customer:
    """Register a new customer and log the action."""

    customer = Customer(
        id=generate_id(prefix="C"),
        name=_require_text(name, "Customer name"),
        phone=phone,
        address=address,
    )
    context.state.customers.append(customer)
    record_activity(context, f"Added customer: {customer.name}")
    _commit(context, "customers", "logs")
    return customer


def update_customer(context: RuntimeContext, customer_id: str, **changes: Any) -> Customer:
    """Apply a partial edit to a customer; past records keep their snapshot.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
        KeyError: If ``changes`` names an unknown field.
    """
    current = get_customer(context, customer_id)
    unknown = set(changes) - {"name", "phone", "address"}
    if unknown:
        raise KeyError(f"Unknown customer field: {', '.join(sorted(unknown))}")
    updated = replace(current, **changes)
    _require_text(updated.name, "Customer name")
    customers = context.state.customers
    customers[customers.index(current)] = updated
    record_activity(context, f"Updated customer: {updated.name}")
    _commit(context, "customers", "logs")
    return updated


def delete_customer(context: RuntimeContext, customer_id: str) -> Customer:
    """Remove a customer without touching the records that reference it.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    customer = get_customer(context, customer_id)
    context.state.customers.remove(customer)
    record_activity(context, f"Deleted customer: {customer.name}")
    _commit(context, "customers", "logs")
    return customer


# ---------------------------------------------------------------------------
# Users and settings
# ---------------------------------------------------------------------------


def update_user(context: RuntimeContext, user_id: str, **changes: Any) -> User:
    """Apply a partial edit to a user. An empty password clears it.

    Raises:
        MissingReferenceError: If ``user_id`` is unknown.
        KeyError: If ``changes`` names an unknown field.
    """
    users = context.state.users
    current = next((user for user in users if user.id == user_id), None)
    if current is None:
        log.warning("User lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"Unknown user id: {user_id}")
    unknown = set(changes) - {"name", "username", "password", "role"}
    if unknown:
        raise KeyError(f"Unknown user field: {', '.join(sorted(unknown))}")
    if changes.get("password") == "":
        changes["password"] = None
    updated = replace(current, **changes)
    users[users.index(current)] = updated
    if context.acting_user.id == updated.id:
        context.acting_user = updated
    record_activity(context, f"Updated user: {current.name}")
    _commit(context, "users", "logs")
    return updated


def update_company_info(context: RuntimeContext, **changes: Any) -> CompanyInfo:
    """Merge ``changes`` into the company details.

    Raises:
        KeyError: If ``changes`` names an unknown field.
    """
    try:
        context.state.company_info = replace(context.state.company_info, **changes)
    except TypeError as exc:
        raise KeyError(f"Unknown company field: {exc}") from exc
    record_activity(context, "Updated company information")
    _commit(context, "companyInfo", "logs")
    return context.state.company_info


def update_print_settings(context: RuntimeContext, **changes: Any) -> PrintSettings:
    """Merge ``changes`` into the print settings.

    Raises:
        KeyError: If ``changes`` names an unknown field.
    """
    try:
        context.state.print_settings = replace(context.state.print_settings, **changes)
    except TypeError as exc:
        raise KeyError(f"Unknown print setting: {exc}") from exc
    record_activity(context, "Updated print settings")
    _commit(context, "printSettings", "logs")
    return context.state.print_settings


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------


def apply_stock_delta(context: RuntimeContext, items: Sequence[SaleItem], direction: StockDirection) -> None:
    """Move product quantities by each item's quantity.

    Items whose product no longer exists are skipped; a record may outlive
    the products it references.
    """
    products = context.state.products
    positions = {product.id: index for index, product in enumerate(products)}
    sign = -1 if direction is StockDirection.SUBTRACT else 1
    for item in items:
        index = positions.get(item.product_id)
        if index is None:
            log.debug("Skipping stock %s for unknown product '%s'", direction.value, item.product_id)
            continue
        product = products[index]
        products[index] = replace(product, quantity=product.quantity + sign * item.quantity)


# ---------------------------------------------------------------------------
# Record factory
# ---------------------------------------------------------------------------


def next_record_number(context: RuntimeContext) -> int:
    """Consume and return the next value of the global record counter."""

    context.state.last_record_number += 1
    return context.state.last_record_number


def item_from_product(
    context: RuntimeContext,
    product_id: str,
    quantity: int,
    *,
    price: Optional[Decimal] = None,
) -> SaleItem:
    """Capture a line item from the product's current name, price, and cost.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValidationError: If ``quantity`` is not positive.
    """
    require_positive_quantity(quantity)
    product = get_product(context, product_id)
    return SaleItem(
        product_id=product.id,
        product_name=product.name,
        quantity=quantity,
        price=product.price if price is None else price,
        cost=product.cost,
    )


def build_record(context: RuntimeContext, command: RecordCommand) -> Record:
    """Materialize a :class:`RecordCommand` into a new :class:`Record`.

    Totals follow ``final_total = total - discount`` and
    ``profit = final_total - total_cost``. When ``amount_paid`` is omitted it
    defaults to the final total for paid records and zero otherwise; a
    positive initial amount seeds the payment history. Customer phone and
    address are copied from the customer as it is now. One record number is
    consumed per call.

    Raises:
        ValidationError: If the item list is empty, an item is invalid, the
            customer is missing, or the discount or paid amount is out of
            range.
    """
    items = tuple(command.items)
    if not items:
        log.error("Record validation failed: no items")
        raise ValidationError("A record needs at least one item")
    for item in items:
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.price)
        require_nonnegative_money(item.cost)

    customer = find_customer(context, command.customer_id)
    customer_name = (command.customer_name or "").strip() or (customer.name if customer else "")
    _require_text(customer_name, "Customer")

    total = sum((item.price * item.quantity for item in items), ZERO)
    total_cost = sum((item.cost * item.quantity for item in items), ZERO)
    discount = command.discount
    require_nonnegative_money(discount)
    if discount > total:
        log.error("Discount %s exceeds total %s", discount, total)
        raise ValidationError("Discount cannot exceed the record total")
    final_total = total - discount
    profit = final_total - total_cost

    amount_paid = command.amount_paid
    if amount_paid is None:
        amount_paid = final_total if command.payment_status is PaymentStatus.PAID else ZERO
    require_nonnegative_money(amount_paid)
    if amount_paid - final_total > AMOUNT_TOLERANCE:
        log.error("Paid amount %s exceeds final total %s", amount_paid, final_total)
        raise ValidationError("Amount paid cannot exceed the final total")
    amount_remaining = _clamp_remaining(final_total - amount_paid)

    timestamp = _resolve_timestamp(command.timestamp)
    payments: List[Payment] = []
    if amount_paid > ZERO:
        payments.append(Payment(amount=amount_paid, date=timestamp, created_by=context.acting_user.name))

    return Record(
        id=generate_id(prefix="R"),
        record_number=next_record_number(context),
        customer_name=customer_name,
        customer_id=command.customer_id,
        customer_phone=customer.phone if customer else None,
        customer_address=customer.address if customer else None,
        items=items,
        total=total,
        total_cost=total_cost,
        discount=discount,
        final_total=final_total,
        profit=profit,
        date=timestamp,
        created_by=context.acting_user.name,
        payment_status=_derive_status(command.payment_status, amount_paid, amount_remaining),
        amount_paid=amount_paid,
        amount_remaining=amount_remaining,
        payments=payments,
        payment_type=command.payment_type,
    )


def _create_record(context: RuntimeContext, kind: RecordKind, command: RecordCommand, action: str) -> Record:
    record = build_record(context, command)
    effect = kind.stock_effect
    if effect is not None:
        apply_stock_delta(context, record.items, effect)
    context.state.records.append(kind, record)
    record_activity(context, action.format(number=record.record_number, customer=record.customer_name))
    keys = [storage_key(kind), "lastRecordNumber", "logs"]
    if effect is not None:
        keys.append("products")
    _commit(context, *keys)
    log.info(
        "Recorded %s #%d (final_total=%s, status=%s)",
        kind.value,
        record.record_number,
        record.final_total,
        record.payment_status.value,
    )
    return record


def add_sale(context: RuntimeContext, command: RecordCommand) -> Record:
    """Record a sale and subtract its items from stock."""

    return _create_record(context, RecordKind.SALES, command, "Created sale #{number} for customer: {customer}")


def add_invoice(context: RuntimeContext, command: RecordCommand, *, archive: bool = False) -> Record:
    """Record an invoice.

    Archived invoices are drafts: they leave stock untouched until
    :func:`unarchive_invoice` moves them into the invoice collection.
    """
    if archive:
        return _create_record(
            context,
            RecordKind.ARCHIVED_INVOICES,
            command,
            "Archived invoice #{number} for customer: {customer}",
        )
    return _create_record(context, RecordKind.INVOICES, command, "Created invoice #{number} for customer: {customer}")


def add_fawry_sale(context: RuntimeContext, command: RecordCommand) -> Record:
    """Record an instant (Fawry) sale; these never move stock."""

    if command.payment_type is None:
        command = replace(command, payment_type=FawryPaymentType.CASH)
    return _create_record(
        context,
        RecordKind.FAWRY_SALES,
        command,
        "Created instant sale #{number} for customer: {customer}",
    )


def add_sales_return(context: RuntimeContext, command: RecordCommand) -> Record:
    """Record a sales return and add its items back to stock."""

    return _create_record(context, RecordKind.SALES_RETURNS, command, "Created sales return #{number}")


def add_invoice_return(context: RuntimeContext, command: RecordCommand) -> Record:
    """Record an invoice return and add its items back to stock."""

    return _create_record(context, RecordKind.INVOICE_RETURNS, command, "Created invoice return #{number}")


def find_record(
    context: RuntimeContext,
    kind: RecordKind,
    record_id: str,
    *,
    state: LifecycleState = LifecycleState.ACTIVE,
) -> Optional[Record]:
    return context.state.records.find(kind, record_id, state=state)


def list_records(
    context: RuntimeContext,
    kind: RecordKind,
    *,
    state: LifecycleState = LifecycleState.ACTIVE,
) -> List[Record]:
    return context.state.records.collection(kind, state)


# ---------------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------------


def _require_vacant(context: RuntimeContext, kind: RecordKind, record_id: str, state: LifecycleState) -> None:
    if context.state.records.find(kind, record_id, state=state) is not None:
        log.error("Record '%s' already exists in %s", record_id, storage_key(kind, state))
        raise DuplicateRecordError(f"Record '{record_id}' already exists in {storage_key(kind, state)}")


def soft_delete_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> Optional[Record]:
    """Move an active (or archived) record into its trash collection.

    The stock effect applied at creation is reversed first. Unknown ids are
    a no-op and return ``None``.

    Raises:
        DuplicateRecordError: If the trash already holds a record with the
            same id. Nothing is changed.
    """
    records = context.state.records
    if records.find(kind, record_id) is None:
        log.warning("Soft delete skipped: record '%s' not found in %s", record_id, kind.value)
        return None
    _require_vacant(context, kind, record_id, LifecycleState.TRASHED)
    record = records.remove(kind, record_id)

    effect = kind.stock_effect
    if effect is not None:
        apply_stock_delta(context, record.items, effect.reversed())
    records.prepend(kind, record, state=LifecycleState.TRASHED)
    record_activity(context, f"Moved record #{record.record_number} to trash")

    keys = [kind.value, kind.trash_key, "logs"]
    if effect is not None:
        keys.append("products")
    _commit(context, *keys)
    return record


def restore_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> Optional[Record]:
    """Move a trashed record back to the collection it was deleted from.

    The creation stock effect is applied again. Unknown ids are a no-op and
    return ``None``.

    Raises:
        DuplicateRecordError: If the active collection already holds a record
            with the same id. Nothing is changed.
    """
    records = context.state.records
    if records.find(kind, record_id, state=LifecycleState.TRASHED) is None:
        log.warning("Restore skipped: record '%s' not found in %s", record_id, kind.trash_key)
        return None
    _require_vacant(context, kind, record_id, LifecycleState.ACTIVE)
    record = records.remove(kind, record_id, state=LifecycleState.TRASHED)

    effect = kind.stock_effect
    if effect is not None:
        apply_stock_delta(context, record.items, effect)
    records.append(kind, record)
    records.sort_by_record_number(kind)
    record_activity(context, f"Restored record #{record.record_number} from trash")

    keys = [kind.value, kind.trash_key, "logs"]
    if effect is not None:
        keys.append("products")
    _commit(context, *keys)
    return record


def permanent_delete_record(context: RuntimeContext, kind: RecordKind, record_id: str) -> Optional[Record]:
    """Purge a trashed record. Stock was already settled when it was trashed.

    Returns the purged record, or ``None`` when it is not in the trash.
    """
    record = context.state.records.remove(kind, record_id, state=LifecycleState.TRASHED)
    if record is None:
        log.warning("Permanent delete skipped: record '%s' not found in %s", record_id, kind.trash_key)
        return None

    record_activity(context, f"Permanently deleted record #{record.record_number}")
    _commit(context, kind.trash_key, "logs")
    return record


def unarchive_invoice(context: RuntimeContext, record_id: str) -> Optional[Record]:
    """Promote an archived invoice, applying the stock it deferred.

    Raises:
        DuplicateRecordError: If the invoices collection already holds the
            same id. Nothing is changed.
    """

    records = context.state.records
    if records.find(RecordKind.ARCHIVED_INVOICES, record_id) is None:
        log.warning("Unarchive skipped: invoice '%s' not found", record_id)
        return None
    _require_vacant(context, RecordKind.INVOICES, record_id, LifecycleState.ACTIVE)
    invoice = records.remove(RecordKind.ARCHIVED_INVOICES, record_id)

    apply_stock_delta(context, invoice.items, StockDirection.SUBTRACT)
    records.append(RecordKind.INVOICES, invoice)
    records.sort_by_record_number(RecordKind.INVOICES)
    record_activity(context, f"Moved invoice #{invoice.record_number} from archive to invoices")
    _commit(context, RecordKind.INVOICES.value, RecordKind.ARCHIVED_INVOICES.value, "products", "logs")
    return invoice


# ---------------------------------------------------------------------------
# Payment allocator
# ---------------------------------------------------------------------------


def _apply_payment(record: Record, amount: Decimal, *, when: datetime, created_by: str) -> None:
    record.payments.append(Payment(amount=amount, date=when, created_by=created_by))
    record.amount_paid += amount
    remaining = record.amount_remaining - amount
    if remaining <= AMOUNT_TOLERANCE:
        record.amount_remaining = ZERO
        record.payment_status = PaymentStatus.PAID
    else:
        record.amount_remaining = remaining
        record.payment_status = PaymentStatus.PARTIAL


def allocate_payment(
    context: RuntimeContext,
    customer_id: str,
    amount: Decimal,
    *,
    timestamp: Optional[datetime] = None,
) -> AllocationResult:
    """Spread a customer payment over their open debts, oldest first.

    Open debts are active sales, invoices, and instant sales with a positive
    remaining balance. They are settled in creation-date order; equal dates
    keep collection order (sales, invoices, instant sales) and insertion
    order. Any amount left after every debt is settled is not credited to
    the customer and is reported as ``unallocated``.

    Raises:
        ValidationError: If ``amount`` is not strictly positive.
    """
    require_positive_money(amount)
    when = _resolve_timestamp(timestamp)

    debts = [
        (kind, record)
        for kind, record in context.state.records.iter_records(kinds=DEBT_KINDS)
        if record.customer_id == customer_id and record.amount_remaining > ZERO
    ]
    debts.sort(key=lambda pair: pair[1].date)

    remaining = amount
    applied: List[AppliedPayment] = []
    for kind, debt in debts:
        if remaining <= ZERO:
            break
        portion = min(remaining, debt.amount_remaining)
        _apply_payment(debt, portion, when=when, created_by=context.acting_user.name)
        applied.append(
            AppliedPayment(
                record_id=debt.id,
                record_number=debt.record_number,
                kind=kind,
                amount=portion,
                remaining=debt.amount_remaining,
            )
        )
        remaining -= portion

    unallocated = max(remaining, ZERO)
    if unallocated > ZERO:
        log.warning("Payment for customer '%s' exceeded open debts by %s", customer_id, unallocated)

    customer = find_customer(context, customer_id)
    customer_name = customer.name if customer else "N/A"
    record_activity(context, f"Added payment of {amount:.2f} for customer {customer_name}", timestamp=when)
    _commit(context, *(kind.value for kind in DEBT_KINDS), "logs")
    return AllocationResult(
        customer_id=customer_id,
        requested=amount,
        applied=tuple(applied),
        unallocated=unallocated,
    )


add_customer_payment = allocate_payment


# ---------------------------------------------------------------------------
# Backup and restore
# ---------------------------------------------------------------------------


def backup_data(context: RuntimeContext, destination: Path) -> Path:
    """Write the full snapshot to ``destination`` and log the backup.

    When ``destination`` is a directory the file is named
    ``backup_YYYY-MM-DD.json``.
    """
    destination = Path(destination).expanduser()
    if destination.is_dir():
        destination = destination / f"backup_{_resolve_timestamp(None).date().isoformat()}.json"
    payload = codec.serialize(context.state)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(payload, encoding="utf-8")
    record_activity(context, "Created data backup")
    _commit(context, "logs")
    log.info("Backup written to '%s'", destination)
    return destination


def restore_data(context: RuntimeContext, payload: Union[str, bytes, Mapping[str, Any]]) -> EngineState:
    """Replace the whole engine state with a backup payload.

    Raises:
        codec.InvalidFormatError: If the payload is rejected. The current
            state is left exactly as it was.
    """
    try:
        restored = codec.deserialize(payload)
    except codec.InvalidFormatError:
        log.error("Restore rejected; current state left untouched")
        raise

    context.state = restored
    match = next((user for user in restored.users if user.id == context.acting_user.id), None)
    if match is not None:
        context.acting_user = match
    record_activity(context, "Restored data from backup")
    persist_context(context)
    return restored


__all__ = [
    "AllocationResult",
    "AppliedPayment",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "RecordCommand",
    "RuntimeContext",
    "ValidationError",
    "add_customer",
    "add_customer_payment",
    "add_fawry_sale",
    "add_invoice",
    "add_invoice_return",
    "add_product",
    "add_sale",
    "add_sales_return",
    "allocate_payment",
    "apply_stock_delta",
    "backup_data",
    "build_record",
    "delete_customer",
    "delete_product",
    "permanent_delete_record",
    "restore_data",
    "restore_record",
    "soft_delete_record",
    "unarchive_invoice",
    "update_company_info",
    "update_customer",
    "update_print_settings",
    "update_product",
    "update_user",
]
