"""Integration tests describing the end-to-end spa ledger workflows.

These scenarios exercise the data service, the ledger service, the store and
the CLI together against real temporary workbooks.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from spa_ledger import cli, constants, ledger_service, metrics
from spa_ledger.store import CheckoutLine, LedgerStore


def test_sale_lifecycle_flow(runtime_context, actor):
    """Walk through catalog, restock, sale and reporting with a reload in between."""

    context = runtime_context
    product = ledger_service.add_product(
        context,
        ledger_service.NewProductCommand(
            name="Lavender Oil",
            cost_price=Decimal("8"),
            sell_price=Decimal("20"),
            stock_quantity=0,
            category="Oils",
        ),
    )

    # Persist and reload so writes go through the workbook file like in production.
    ledger_service.persist_context(context)
    context = ledger_service.refresh_context(context)

    store = LedgerStore(context, actor=actor, notifier=lambda _: None)
    assert store.load() == []
    assert store.record_restock(product.id, 10) is not None
    assert store.record_sale(product.id, 3, payment_method="cash") is not None

    ledger_service.persist_context(context)
    reloaded = LedgerStore(ledger_service.refresh_context(context), actor=actor, notifier=lambda _: None)
    assert reloaded.load() == []

    assert reloaded.get_product(product.id).stock_quantity == 7
    assert [txn.type for txn in reloaded.transactions] == [
        constants.TransactionType.SALE,
        constants.TransactionType.RESTOCK,
    ]
    assert reloaded.sales[0].items[0].quantity == 3
    assert reloaded.last_restock_date is not None

    sales = metrics.sellable_sales_transactions(reloaded.transactions, reloaded.products)
    performance = metrics.calculate_product_performance(sales, reloaded.list_products())
    assert [(row.total_sold, row.total_revenue, row.profit) for row in performance] == [
        (3, Decimal("60"), Decimal("36"))
    ]


def test_bulk_sale_and_monthly_restock_flow(store, add_product):
    """A discounted checkout followed by an aggregate restock should reconcile."""

    oil = add_product("Oil", stock=5, sell_price="20", cost_price="8")
    balm = add_product("Balm", stock=5, sell_price="15", cost_price="5")
    store.load()

    sale = store.record_bulk_sale([CheckoutLine(oil.id, 2, Decimal("5")), CheckoutLine(balm.id, 1)])
    restock = store.record_monthly_restock({oil.id: 10, balm.id: 2})

    assert sale.sale.total_amount == Decimal("50")
    assert restock.total_cost == Decimal("56")
    assert [child.product_id for child in restock.children] == [oil.id]
    assert store.get_product(oil.id).stock_quantity == 10
    assert store.get_product(balm.id).stock_quantity == 4

    fresh = LedgerStore(store.context, notifier=lambda _: None)
    fresh.load()
    assert fresh.get_restock_summaries() == [restock.parent]
    assert [txn.kind for txn in fresh.get_restock_details(restock.parent.id)] == [
        constants.LedgerEntryKind.RESTOCK_LINE
    ]
    assert fresh.get_product(constants.BULK_RESTOCK_PRODUCT_ID).stock_quantity == 0


def test_service_income_metrics_flow(store, fixed_now):
    """Single and bundled incomes should roll up per service."""

    store.load()
    facial = store.add_service(name="Facial", price=Decimal("60"))
    wrap = store.add_service(name="Wrap", price=Decimal("40"))
    store.record_service_income(facial.id, customer_name="Dana", timestamp=fixed_now)
    store.record_bundled_service_income(
        [facial.id, wrap.id],
        discount=Decimal("10"),
        customer_name="Eli",
        timestamp=fixed_now - timedelta(days=1),
    )

    fresh = LedgerStore(store.context, notifier=lambda _: None)
    fresh.load()
    ranges = metrics.get_date_ranges(fixed_now)
    data = metrics.calculate_services_data(fresh.service_incomes, constants.TimeRange.LAST_7_DAYS, ranges)

    by_name = {row.name: row for row in data}
    assert by_name["Facial"].total_sold == 2
    assert by_name["Facial"].total_revenue == Decimal("114")
    assert by_name["Wrap"].total_revenue == Decimal("36")
    summary = metrics.summarize_service_metrics(fresh.service_incomes, ranges)
    assert summary.today.revenue == Decimal("60")
    assert summary.yesterday.services_provided == 2


def test_cli_round_trip_persists_between_invocations(config_file, capsys):
    """Each CLI invocation reloads the workbook written by the previous one."""

    config = str(config_file)
    assert (
        cli.main(["--config", config, "add-product", "--name", "Rose Balm", "--cost-price", "4", "--sell-price", "12", "--stock", "5"])
        == 0
    )
    product_id = capsys.readouterr().out.strip().splitlines()[-1]

    assert cli.main(["--config", config, "sale", "--product-id", product_id, "--quantity", "2"]) == 0
    assert cli.main(["--config", config, "sale", "--product-id", product_id, "--quantity", "9"]) == 2
    capsys.readouterr()

    assert cli.main(["--config", config, "stock"]) == 0
    output = capsys.readouterr().out
    assert "Rose Balm" in output
    assert "Inventory value: $12.00" in output

    context = ledger_service.load_runtime_context(config_file)
    assert ledger_service.get_product(context, product_id).stock_quantity == 3
    assert len(ledger_service.fetch_transactions(context)) == 1


def test_cli_failed_command_leaves_workbook_untouched(config_file, capsys):
    """Only successful invocations should be written back to the workbook."""

    config = str(config_file)
    cli.main(["--config", config, "add-service", "--name", "Facial", "--price", "60"])
    service_id = capsys.readouterr().out.strip().splitlines()[-1]

    assert cli.main(["--config", config, "service-income", "--service-id", service_id, "--discount", "5"]) == 1
    assert cli.main(["--config", config, "service-income", "--service-id", service_id, "--tip", "10"]) == 0

    context = ledger_service.load_runtime_context(config_file)
    incomes = ledger_service.fetch_finance_records(context, constants.FinanceType.INCOME)
    assert [(record.amount, record.tip_amount) for record in incomes] == [(Decimal("60"), Decimal("10"))]
