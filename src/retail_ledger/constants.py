"""Enumerations and lookup tables shared across the retail ledger modules.

Centralises domain constants so that the storage layer, the ledger engine,
the snapshot codec, and the CLI rely on a single source of truth for record
kinds, lifecycle states, stock directions, and role permissions.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Remaining balances within this distance of zero are treated as settled.
AMOUNT_TOLERANCE = Decimal("0.001")


class PaymentStatus(str, Enum):
    """Enumerate the settlement states of a ledger record."""

    PAID = "Paid"
    PARTIAL = "Partial"
    DEFERRED = "Deferred"

    @classmethod
    def parse(cls, raw: str) -> "PaymentStatus":
        """Resolve a stored label, accepting labels from legacy backups."""

        legacy = _LEGACY_PAYMENT_STATUS.get(raw)
        if legacy is not None:
            return cls(legacy)
        return cls(raw)


class FawryPaymentType(str, Enum):
    """Enumerate how an instant (Fawry) sale was settled."""

    CARD = "Card"
    TRANSFER = "Transfer"
    CASH = "Cash"
    OTHER = "Other"

    @classmethod
    def parse(cls, raw: str) -> "FawryPaymentType":
        """Resolve a stored label, accepting labels from legacy backups."""

        legacy = _LEGACY_FAWRY_PAYMENT_TYPE.get(raw)
        if legacy is not None:
            return cls(legacy)
        return cls(raw)


# Labels written by the original browser application's backup files.
_LEGACY_PAYMENT_STATUS: Mapping[str, str] = {
    "تم الدفع": "Paid",
    "جزئي": "Partial",
    "مؤجل": "Deferred",
}

_LEGACY_FAWRY_PAYMENT_TYPE: Mapping[str, str] = {
    "كارت": "Card",
    "تحويل": "Transfer",
    "نقدي": "Cash",
    "أخرى": "Other",
}


class StockDirection(str, Enum):
    """Enumerate the two directions a stock delta can move quantities."""

    SUBTRACT = "subtract"
    ADD = "add"

    def reversed(self) -> "StockDirection":
        """Return the direction that undoes this one."""

        return StockDirection.ADD if self is StockDirection.SUBTRACT else StockDirection.SUBTRACT


class RecordKind(str, Enum):
    """Enumerate the record collections; values double as storage keys."""

    SALES = "sales"
    INVOICES = "invoices"
    ARCHIVED_INVOICES = "archivedInvoices"
    SALES_RETURNS = "salesReturns"
    INVOICE_RETURNS = "invoiceReturns"
    FAWRY_SALES = "fawrySales"

    @property
    def trash_key(self) -> str:
        """Storage key of the paired trash collection, e.g. ``deletedSales``."""

        return "deleted" + self.value[0].upper() + self.value[1:]

    @property
    def stock_effect(self) -> Optional[StockDirection]:
        """Stock direction applied when a record of this kind becomes active."""

        return STOCK_EFFECT[self]


class LifecycleState(str, Enum):
    """Enumerate where a stored record currently sits."""

    ACTIVE = "active"
    TRASHED = "trashed"


STOCK_EFFECT: Mapping[RecordKind, Optional[StockDirection]] = {
    RecordKind.SALES: StockDirection.SUBTRACT,
    RecordKind.INVOICES: StockDirection.SUBTRACT,
    RecordKind.ARCHIVED_INVOICES: None,
    RecordKind.SALES_RETURNS: StockDirection.ADD,
    RecordKind.INVOICE_RETURNS: StockDirection.ADD,
    RecordKind.FAWRY_SALES: None,
}

# Kinds whose open balances count as customer debt for payment allocation.
DEBT_KINDS: tuple[RecordKind, ...] = (
    RecordKind.SALES,
    RecordKind.INVOICES,
    RecordKind.FAWRY_SALES,
)

RETURN_KINDS: tuple[RecordKind, ...] = (
    RecordKind.SALES_RETURNS,
    RecordKind.INVOICE_RETURNS,
)


class Role(str, Enum):
    """Enumerate the user roles known to the permission table."""

    MANAGER = "manager"
    EMPLOYEE = "employee"
    ACCOUNTANT = "accountant"


class Permission(str, Enum):
    """Enumerate the capabilities a caller may check before acting."""

    VIEW_DASHBOARD = "view_dashboard"
    MANAGE_INVENTORY = "manage_inventory"
    MANAGE_CUSTOMERS = "manage_customers"
    CREATE_SALES = "create_sales"
    MANAGE_RETURNS = "manage_returns"
    VIEW_RECORDS = "view_records"
    DELETE_RECORDS = "delete_records"
    VIEW_REPORTS = "view_reports"
    MANAGE_USERS = "manage_users"
    VIEW_LOGS = "view_logs"
    BACKUP_DATA = "backup_data"
    MANAGE_SETTINGS = "manage_settings"


ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = {
    Role.MANAGER: frozenset(Permission),
    Role.EMPLOYEE: frozenset(
        {
            Permission.VIEW_DASHBOARD,
            Permission.MANAGE_INVENTORY,
            Permission.MANAGE_CUSTOMERS,
            Permission.CREATE_SALES,
            Permission.MANAGE_RETURNS,
            Permission.VIEW_RECORDS,
        }
    ),
    Role.ACCOUNTANT: frozenset(
        {
            Permission.VIEW_DASHBOARD,
            Permission.VIEW_RECORDS,
            Permission.VIEW_REPORTS,
        }
    ),
}


def has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` when ``role`` grants ``permission``."""

    return permission in ROLE_PERMISSIONS.get(role, frozenset())


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    DOCUMENTS = "Documents"


# Top-level keys of the persisted state, in snapshot order.
STORAGE_KEYS: tuple[str, ...] = (
    "products",
    "sales",
    "invoices",
    "archivedInvoices",
    "salesReturns",
    "invoiceReturns",
    "fawrySales",
    "customers",
    "lastRecordNumber",
    "logs",
    "deletedSales",
    "deletedInvoices",
    "deletedArchivedInvoices",
    "deletedSalesReturns",
    "deletedInvoiceReturns",
    "deletedFawrySales",
    "users",
    "companyInfo",
    "printSettings",
)

# A backup document is rejected unless these keys are present.
REQUIRED_BACKUP_KEYS: tuple[str, ...] = ("products", "sales", "users")


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "AMOUNT_TOLERANCE",
    "PaymentStatus",
    "FawryPaymentType",
    "StockDirection",
    "RecordKind",
    "LifecycleState",
    "STOCK_EFFECT",
    "DEBT_KINDS",
    "RETURN_KINDS",
    "Role",
    "Permission",
    "ROLE_PERMISSIONS",
    "has_permission",
    "SheetName",
    "STORAGE_KEYS",
    "REQUIRED_BACKUP_KEYS",
]
