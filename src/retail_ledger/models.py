"""Domain dataclasses for the retail ledger.

Catalogue entities (products, customers, users) and the line items and
payments embedded in records are immutable; edits go through
:func:`dataclasses.replace`. :class:`Record` is mutable because payment
allocation settles balances in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .constants import FawryPaymentType, PaymentStatus, Role


@dataclass(frozen=True)
class Product:
    """A stocked product; ``quantity`` moves with the records that use it."""

    id: str
    name: str
    quantity: int
    price: Decimal
    cost: Decimal
    min_stock: int = 0
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Customer:
    """A customer that records reference by id."""

    id: str
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class SaleItem:
    """Line item captured at transaction time."""

    product_id: str
    product_name: str
    quantity: int
    price: Decimal
    cost: Decimal


@dataclass(frozen=True)
class Payment:
    """One entry in a record's append-only payment history."""

    amount: Decimal
    date: datetime
    created_by: str


@dataclass
class Record:
    """A priced transaction stored in one of the record collections.

    The collection holding the record decides whether it is a sale, an
    invoice, a return, or an instant sale. ``payment_type`` is only set on
    instant (Fawry) sales.
    """

    id: str
    record_number: int
    customer_name: str
    customer_id: Optional[str]
    customer_phone: Optional[str]
    customer_address: Optional[str]
    items: tuple[SaleItem, ...]
    total: Decimal
    total_cost: Decimal
    discount: Decimal
    final_total: Decimal
    profit: Decimal
    date: datetime
    created_by: str
    payment_status: PaymentStatus
    amount_paid: Decimal
    amount_remaining: Decimal
    payments: List[Payment] = field(default_factory=list)
    payment_type: Optional[FawryPaymentType] = None


@dataclass(frozen=True)
class LogEntry:
    """A single activity log line."""

    id: str
    user: str
    action: str
    timestamp: datetime


@dataclass(frozen=True)
class User:
    id: str
    name: str
    username: str
    role: Role
    password: Optional[str] = None


@dataclass(frozen=True)
class CompanyInfo:
    name: str
    address: str = ""
    phone: str = ""
    logo: str = ""
    logo_opacity: float = 1.0


@dataclass(frozen=True)
class PrintSettings:
    show_cost_on_print: bool = False
    footer_text: str = "Thank you for your business!"
    font_size: int = 10


__all__ = [
    "Product",
    "Customer",
    "SaleItem",
    "Payment",
    "Record",
    "LogEntry",
    "User",
    "CompanyInfo",
    "PrintSettings",
]
