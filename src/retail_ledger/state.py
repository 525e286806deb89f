"""In-memory engine state owned by a single session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .constants import Role
from .models import CompanyInfo, Customer, LogEntry, PrintSettings, Product, User
from .store import RecordStore


DEFAULT_USERS: tuple[User, ...] = (
    User(id="1", name="Manager", username="manager", role=Role.MANAGER),
    User(id="2", name="Sales Clerk", username="clerk", role=Role.EMPLOYEE),
    User(id="3", name="Accountant", username="accountant", role=Role.ACCOUNTANT),
)

DEFAULT_COMPANY_INFO = CompanyInfo(name="My Store")
DEFAULT_PRINT_SETTINGS = PrintSettings()


@dataclass
class EngineState:
    """Every collection, counter, and setting the ledger persists."""

    products: List[Product] = field(default_factory=list)
    customers: List[Customer] = field(default_factory=list)
    records: RecordStore = field(default_factory=RecordStore)
    last_record_number: int = 0
    logs: List[LogEntry] = field(default_factory=list)
    users: List[User] = field(default_factory=lambda: list(DEFAULT_USERS))
    company_info: CompanyInfo = DEFAULT_COMPANY_INFO
    print_settings: PrintSettings = DEFAULT_PRINT_SETTINGS


__all__ = [
    "DEFAULT_USERS",
    "DEFAULT_COMPANY_INFO",
    "DEFAULT_PRINT_SETTINGS",
    "EngineState",
]
