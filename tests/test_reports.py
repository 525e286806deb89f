"""Tests for the read-only dashboard, period, and statement reports."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest

from retail_ledger import core_logic, reports
from retail_ledger.constants import PaymentStatus, RecordKind


DAY = datetime(2025, 6, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def customer(context):
    return core_logic.add_customer(context, name="Mona")


@pytest.fixture
def gadget(context):
    return core_logic.add_product(context, name="Gadget", quantity=1, price=Decimal("40"), cost=Decimal("25"), min_stock=3)


def test_stock_levels_and_low_stock(context, product, gadget):
    assert reports.stock_levels(context.state) == {product.id: 10, gadget.id: 1}
    assert reports.low_stock_products(context.state) == [gadget]


def test_dashboard_summary_totals(context, product, gadget, make_command):
    """Only sales, invoices, and instant sales count toward sales value."""

    core_logic.add_sale(context, make_command((product.id, 2), timestamp=DAY))
    core_logic.add_fawry_sale(context, make_command((gadget.id, 1), timestamp=DAY - timedelta(days=1)))
    core_logic.add_invoice(context, make_command((product.id, 1), timestamp=DAY), archive=True)
    core_logic.add_sales_return(context, make_command((product.id, 1), timestamp=DAY))

    summary = reports.dashboard_summary(context.state, DAY.date())

    assert summary.product_count == 2
    assert summary.sales_value == Decimal("240")
    assert summary.total_profit == Decimal("95")
    assert summary.today_profit == Decimal("80")
    assert summary.stock_value == Decimal("9") * Decimal("100") + Decimal("1") * Decimal("40")
    assert summary.low_stock == (gadget,)


def test_period_report_filters_by_inclusive_days(context, product, customer, make_command):
    """Records on the start and end days are included; others are not."""

    core_logic.add_sale(context, make_command((product.id, 1), timestamp=DAY - timedelta(days=2)))
    core_logic.add_sale(
        context,
        make_command(
            (product.id, 2),
            customer_name="Mona",
            customer_id=customer.id,
            payment_status=PaymentStatus.DEFERRED,
            timestamp=DAY.replace(hour=0, minute=0),
        ),
    )
    core_logic.add_invoice(context, make_command((product.id, 1), timestamp=DAY.replace(hour=23, minute=59)))
    core_logic.add_sales_return(context, make_command((product.id, 1), timestamp=DAY))

    report = reports.period_report(context.state, DAY.date(), DAY.date())

    assert report.transaction_count == 2
    assert report.revenue == Decimal("300")
    assert report.profit == Decimal("120")
    assert report.returns_total == Decimal("100")
    assert [(day.day, day.sales) for day in report.daily] == [(DAY.date(), Decimal("300"))]
    assert report.top_products[0].name == "Widget"
    assert report.top_products[0].value == 3
    assert report.top_customers[0].name == "Mona"
    assert report.status_counts == {PaymentStatus.DEFERRED: 1, PaymentStatus.PAID: 1}


def test_period_report_limits_rankings_to_ten(context, make_command):
    for index in range(12):
        item = core_logic.add_product(
            context, name=f"Item {index}", quantity=50, price=Decimal("1"), cost=Decimal("0")
        )
        core_logic.add_sale(context, make_command((item.id, index + 1), customer_name=f"C{index}", timestamp=DAY))

    report = reports.period_report(context.state, DAY.date(), DAY.date())

    assert len(report.top_products) == 10
    assert report.top_products[0].name == "Item 11"
    assert len(report.top_customers) == 10


def test_period_report_rejects_reversed_range(context):
    with pytest.raises(ValueError):
        reports.period_report(context.state, date(2025, 2, 1), date(2025, 1, 1))


def test_customer_statement(context, product, customer, make_command):
    """Statement lists the customer's records newest first with balances."""

    older = core_logic.add_sale(
        context,
        make_command(
            (product.id, 1),
            customer_id=customer.id,
            payment_status=PaymentStatus.DEFERRED,
            timestamp=DAY - timedelta(days=1),
        ),
    )
    newer = core_logic.add_invoice(
        context,
        make_command((product.id, 2), customer_id=customer.id, amount_paid=Decimal("150"), timestamp=DAY),
    )
    core_logic.add_sales_return(context, make_command((product.id, 1), customer_id=customer.id, timestamp=DAY))
    core_logic.add_sale(context, make_command((product.id, 1), timestamp=DAY))
    core_logic.allocate_payment(context, customer.id, Decimal("30"), timestamp=DAY + timedelta(hours=1))

    statement = reports.customer_statement(context.state, customer.id)

    assert [record.id for kind, record in statement.records if kind is not RecordKind.SALES_RETURNS] == [
        newer.id,
        older.id,
    ]
    assert statement.total_purchases == Decimal("300")
    assert statement.outstanding == Decimal("120")
    assert statement.payments[0].payment.amount == Decimal("30")
    assert statement.payments[0].record_number == older.record_number
