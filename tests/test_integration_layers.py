"""Integration tests describing end-to-end ledger workflows.

These scenarios exercise the business layer against a real workbook on disk
and drive the CLI the way a shop operator would.
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from retail_ledger import cli, core_logic, data_manager
from retail_ledger.constants import LifecycleState, PaymentStatus, RecordKind
from setup_excel import create_master_workbook, run_from_config


def _stock_widget(context: core_logic.RuntimeContext):
    return core_logic.add_product(
        context,
        name="Widget",
        quantity=10,
        price=Decimal("100"),
        cost=Decimal("60"),
        min_stock=2,
    )


def test_sale_survives_reload(runtime_context):
    """A sale written to the workbook is visible to a fresh context."""

    context = runtime_context
    widget = _stock_widget(context)
    command = core_logic.RecordCommand(
        customer_name="Walk-in",
        items=[core_logic.item_from_product(context, widget.id, 3)],
    )
    sale = core_logic.add_sale(context, command)

    reloaded = core_logic.refresh_context(context)

    assert reloaded.state.records == context.state.records
    assert reloaded.state.last_record_number == 1
    assert reloaded.state.products[0].quantity == 7
    assert reloaded.state.logs[0].action == "Created sale #1 for customer: Walk-in"
    assert reloaded.state.records.find(RecordKind.SALES, sale.id).final_total == Decimal("300")


def test_credit_sale_payment_and_trash_flow(runtime_context):
    """Deferred debts are settled oldest first and trash moves stock back."""

    context = runtime_context
    widget = _stock_widget(context)
    customer = core_logic.add_customer(context, name="Mona", phone="0100")

    def deferred(quantity: int) -> core_logic.RecordCommand:
        return core_logic.RecordCommand(
            customer_name=customer.name,
            customer_id=customer.id,
            items=[core_logic.item_from_product(context, widget.id, quantity)],
            payment_status=PaymentStatus.DEFERRED,
        )

    first = core_logic.add_sale(context, deferred(1))
    second = core_logic.add_invoice(context, deferred(2))

    result = core_logic.allocate_payment(context, customer.id, Decimal("150"))
    assert [leg.record_id for leg in result.applied] == [first.id, second.id]
    assert result.unallocated == Decimal("0")

    context = core_logic.refresh_context(context)
    settled = context.state.records.find(RecordKind.SALES, first.id)
    partial = context.state.records.find(RecordKind.INVOICES, second.id)
    assert settled.payment_status is PaymentStatus.PAID
    assert partial.payment_status is PaymentStatus.PARTIAL
    assert partial.amount_remaining == Decimal("150")

    core_logic.soft_delete_record(context, RecordKind.INVOICES, second.id)
    context = core_logic.refresh_context(context)
    assert context.state.products[0].quantity == 9
    assert context.state.records.find(RecordKind.INVOICES, second.id, state=LifecycleState.TRASHED) is not None

    core_logic.permanent_delete_record(context, RecordKind.INVOICES, second.id)
    context = core_logic.refresh_context(context)
    assert context.state.records.count(state=LifecycleState.TRASHED) == 0
    assert context.state.products[0].quantity == 9


def test_create_master_workbook_refuses_overwrite(master_workbook_path):
    with pytest.raises(FileExistsError):
        create_master_workbook(master_workbook_path)


def test_run_from_config_uses_store_name(config_factory):
    bundle = config_factory(store_name="Corner Shop")

    path = run_from_config(bundle.config_path, overwrite=True)

    workbook = data_manager.open_workbook(path)
    assert data_manager.load_document(workbook, "companyInfo")["name"] == "Corner Shop"


def test_cli_backup_and_restore_flow(config_factory, tmp_path, capsys):
    """A backup taken through the CLI restores the catalogue it captured."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]

    assert cli.main([*config, "add-product", "--name", "Tea", "--quantity", "5", "--price", "12.5", "--cost", "7"]) == 0
    capsys.readouterr()
    assert cli.main([*config, "backup", "--destination", str(tmp_path)]) == 0
    backup_path = capsys.readouterr().out.strip()
    assert json.loads(Path(backup_path).read_text(encoding="utf-8"))["products"][0]["name"] == "Tea"

    assert cli.main([*config, "add-product", "--name", "Coffee", "--quantity", "3", "--price", "20", "--cost", "9"]) == 0
    assert cli.main([*config, "restore", "--source", backup_path]) == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    assert [product.name for product in context.state.products] == ["Tea"]
    assert context.state.logs[0].action == "Restored data from backup"


def test_cli_archive_and_unarchive_flow(config_factory, capsys):
    """Archived invoices leave stock alone until promoted."""

    bundle = config_factory()
    config = ["--config", str(bundle.config_path)]

    cli.main([*config, "add-product", "--name", "Tea", "--quantity", "5", "--price", "12.5", "--cost", "7"])
    product_id = capsys.readouterr().out.strip()

    assert cli.main([*config, "invoice", "--archive", "--customer-name", "Mona", "--item", f"{product_id}:2"]) == 0
    record_id = capsys.readouterr().out.split()[0]
    assert core_logic.load_runtime_context(bundle.config_path).state.products[0].quantity == 5

    assert cli.main([*config, "unarchive", "--record-id", record_id]) == 0
    assert capsys.readouterr().out.strip() == "Unarchived record #1"

    context = core_logic.load_runtime_context(bundle.config_path)
    assert context.state.products[0].quantity == 3
    assert context.state.records.find(RecordKind.INVOICES, record_id) is not None
