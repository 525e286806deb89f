"""Read-only summaries computed from the engine state.

Nothing here mutates state or touches the workbook; callers pass the state
they already hold and render the returned dataclasses however they like.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import log
from .constants import DEBT_KINDS, RETURN_KINDS, PaymentStatus, RecordKind
from .models import Payment, Product, Record
from .state import EngineState


ZERO = Decimal("0")
TOP_ENTRIES = 10


@dataclass(frozen=True)
class DashboardSummary:
    product_count: int
    customer_count: int
    stock_value: Decimal
    sales_value: Decimal
    total_profit: Decimal
    today_profit: Decimal
    low_stock: Tuple[Product, ...]


@dataclass(frozen=True)
class DailyTotals:
    day: date
    sales: Decimal
    profit: Decimal


@dataclass(frozen=True)
class RankedEntry:
    """A name with the figure it was ranked by (quantity or value)."""

    name: str
    value: Decimal


@dataclass(frozen=True)
class PeriodReport:
    start: date
    end: date
    revenue: Decimal
    profit: Decimal
    returns_total: Decimal
    transaction_count: int
    daily: Tuple[DailyTotals, ...]
    top_products: Tuple[RankedEntry, ...]
    top_customers: Tuple[RankedEntry, ...]
    status_counts: Dict[PaymentStatus, int]


@dataclass(frozen=True)
class StatementPayment:
    record_number: int
    payment: Payment


@dataclass(frozen=True)
class CustomerStatement:
    customer_id: str
    records: Tuple[Tuple[RecordKind, Record], ...]
    payments: Tuple[StatementPayment, ...]
    total_purchases: Decimal
    outstanding: Decimal


def _active_records(state: EngineState, kinds: Optional[Iterable[RecordKind]] = None) -> List[Tuple[RecordKind, Record]]:
    return list(state.records.iter_records(kinds=tuple(kinds) if kinds is not None else None))


def stock_levels(state: EngineState) -> Dict[str, int]:
    """Map each product id to its on-hand quantity."""

    return {product.id: product.quantity for product in state.products}


def low_stock_products(state: EngineState) -> List[Product]:
    """Return products at or below their minimum stock level."""

    return [product for product in state.products if product.quantity <= product.min_stock]


def dashboard_summary(state: EngineState, today: date) -> DashboardSummary:
    """Produce the headline figures shown on the dashboard.

    Sales value and profit cover active sales, invoices, and instant sales;
    archived invoices and returns are excluded. ``today`` is compared with the
    calendar date of each record timestamp.
    """
    sales = [record for _, record in _active_records(state, DEBT_KINDS)]
    summary = DashboardSummary(
        product_count=len(state.products),
        customer_count=len(state.customers),
        stock_value=sum((product.price * product.quantity for product in state.products), ZERO),
        sales_value=sum((record.final_total for record in sales), ZERO),
        total_profit=sum((record.profit for record in sales), ZERO),
        today_profit=sum((record.profit for record in sales if record.date.date() == today), ZERO),
        low_stock=tuple(low_stock_products(state)),
    )
    log.debug(
        "Dashboard summary: sales=%s profit=%s low_stock=%d",
        summary.sales_value,
        summary.total_profit,
        len(summary.low_stock),
    )
    return summary


def _rank(totals: Dict[str, Decimal]) -> Tuple[RankedEntry, ...]:
    ordered = sorted(totals.items(), key=lambda pair: pair[1], reverse=True)
    return tuple(RankedEntry(name=name, value=value) for name, value in ordered[:TOP_ENTRIES])


def period_report(state: EngineState, start: date, end: date) -> PeriodReport:
    """Summarize activity for records dated between ``start`` and ``end``.

    Both bounds are inclusive calendar days. Revenue, profit, the daily
    breakdown, the rankings, and the status counts use sales, invoices, and
    instant sales; ``returns_total`` sums both return kinds.

    Args:
        state (EngineState): State to summarize.
        start (date): First day of the period.
        end (date): Last day of the period.

    Returns:
        PeriodReport: Aggregates with the top ten products by quantity and
            the top ten customers by purchase value.

    Raises:
        ValueError: If ``end`` is before ``start``.
    """
    if end < start:
        raise ValueError("Report end date is before its start date")

    def in_period(record: Record) -> bool:
        return start <= record.date.date() <= end

    sales = sorted(
        (record for _, record in _active_records(state, DEBT_KINDS) if in_period(record)),
        key=lambda record: record.date,
    )
    returns = [record for _, record in _active_records(state, RETURN_KINDS) if in_period(record)]

    daily_sales: Dict[date, Decimal] = defaultdict(lambda: ZERO)
    daily_profit: Dict[date, Decimal] = defaultdict(lambda: ZERO)
    product_quantities: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    customer_totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    status_counts: Counter[PaymentStatus] = Counter()
    for record in sales:
        day = record.date.date()
        daily_sales[day] += record.final_total
        daily_profit[day] += record.profit
        customer_totals[record.customer_name] += record.final_total
        status_counts[record.payment_status] += 1
        for item in record.items:
            product_quantities[item.product_name] += item.quantity

    report = PeriodReport(
        start=start,
        end=end,
        revenue=sum((record.final_total for record in sales), ZERO),
        profit=sum((record.profit for record in sales), ZERO),
        returns_total=sum((record.final_total for record in returns), ZERO),
        transaction_count=len(sales),
        daily=tuple(
            DailyTotals(day=day, sales=daily_sales[day], profit=daily_profit[day]) for day in sorted(daily_sales)
        ),
        top_products=_rank(product_quantities),
        top_customers=_rank(customer_totals),
        status_counts=dict(status_counts),
    )
    log.debug("Period report %s..%s covers %d transactions", start, end, report.transaction_count)
    return report


def customer_statement(state: EngineState, customer_id: str) -> CustomerStatement:
    """Collect a customer's records, payments, and balances.

    Records from every active collection are listed newest first, archived
    invoices and returns included. ``total_purchases`` excludes returns;
    ``outstanding`` is the open balance that payment allocation can settle.
    """
    records = sorted(
        ((kind, record) for kind, record in _active_records(state) if record.customer_id == customer_id),
        key=lambda pair: pair[1].date,
        reverse=True,
    )
    payments = sorted(
        (
            StatementPayment(record_number=record.record_number, payment=payment)
            for _, record in records
            for payment in record.payments
        ),
        key=lambda entry: entry.payment.date,
        reverse=True,
    )
    return CustomerStatement(
        customer_id=customer_id,
        records=tuple(records),
        payments=tuple(payments),
        total_purchases=sum(
            (record.final_total for kind, record in records if kind not in RETURN_KINDS),
            ZERO,
        ),
        outstanding=sum(
            (record.amount_remaining for kind, record in records if kind in DEBT_KINDS),
            ZERO,
        ),
    )


__all__ = [
    "CustomerStatement",
    "DailyTotals",
    "DashboardSummary",
    "PeriodReport",
    "RankedEntry",
    "StatementPayment",
    "customer_statement",
    "dashboard_summary",
    "low_stock_products",
    "period_report",
    "stock_levels",
]
