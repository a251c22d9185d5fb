"""Tests for the ledger cache, notifications and the undo slot."""

from __future__ import annotations

from decimal import Decimal

import pytest

from spa_ledger import ledger_service
from spa_ledger.constants import BULK_RESTOCK_PRODUCT_ID, LedgerEntryKind, NotificationLevel
from spa_ledger.store import CheckoutLine, LedgerStore, Notification, OtherAction, StockChangeAction, log_notifier


def _titles(notifications):
    return [notification.title for notification in notifications]


@pytest.fixture
def loaded_store(store, add_product):
    """Store over a workbook holding one product, loaded into the cache."""

    add_product("Lavender Oil", stock=10, sell_price="20", cost_price="8", low_stock_threshold=3)
    assert store.load() == []
    return store


@pytest.fixture
def oil(loaded_store):
    return loaded_store.list_products()[0]


# ---------------------------------------------------------------------------
# Loading and queries
# ---------------------------------------------------------------------------


def test_load_populates_every_category(loaded_store):
    assert [product.name for product in loaded_store.list_products()] == ["Lavender Oil"]
    assert loaded_store.transactions == []
    assert loaded_store.sales == []
    assert loaded_store.last_restock_date is None


def test_list_products_hides_system_product(loaded_store):
    ids = [product.id for product in loaded_store.list_products(include_system=True)]
    assert BULK_RESTOCK_PRODUCT_ID in ids
    assert BULK_RESTOCK_PRODUCT_ID not in [product.id for product in loaded_store.list_products()]


def test_load_continues_after_partial_failure(store, add_product, notifications, monkeypatch):
    """One failing category should not prevent the others from loading."""

    add_product()

    def _broken(context):
        raise ledger_service.RemoteWriteError("Fetch transactions failed: boom")

    monkeypatch.setattr(ledger_service, "fetch_transactions", _broken)

    failed = store.load()

    assert failed == ["transactions"]
    assert len(store.list_products()) == 1
    assert store.transactions == []
    assert notifications[-1].level is NotificationLevel.ERROR
    assert notifications[-1].title == "Failed to load transactions"


def test_inventory_value_and_low_stock(loaded_store, oil):
    assert loaded_store.get_total_inventory_value() == Decimal("80")
    assert loaded_store.low_stock_products() == []

    loaded_store.adjust_inventory(oil.id, 2)

    assert loaded_store.get_total_inventory_value() == Decimal("16")
    assert [product.id for product in loaded_store.low_stock_products()] == [oil.id]


def test_log_notifier_routes_levels(caplog):
    with caplog.at_level("WARNING", logger="spa_ledger"):
        log_notifier(Notification(NotificationLevel.WARNING, "Partial error", "check inventory"))
    assert "Partial error: check inventory" in caplog.text


# ---------------------------------------------------------------------------
# Sales and stock
# ---------------------------------------------------------------------------


def test_record_sale_updates_cache_and_notifies(loaded_store, oil, notifications):
    outcome = loaded_store.record_sale(oil.id, 3, payment_method="cash")

    assert outcome is not None
    assert loaded_store.get_product(oil.id).stock_quantity == 7
    assert loaded_store.transactions[0] == outcome.transaction
    assert loaded_store.sales[0].id == outcome.sale.id
    assert loaded_store.last_action == StockChangeAction(LedgerEntryKind.SALE, oil.id, 10, outcome.transaction.id)
    assert notifications[-1] == Notification(NotificationLevel.SUCCESS, "Sale Recorded", "Sold 3 Lavender Oil.")


def test_record_sale_insufficient_stock_notifies_error(loaded_store, oil, notifications):
    result = loaded_store.record_sale(oil.id, 11)

    assert result is None
    assert isinstance(loaded_store.last_error, ledger_service.InsufficientStockError)
    assert notifications[-1].level is NotificationLevel.ERROR
    assert notifications[-1].message == "Not enough Lavender Oil in stock."
    assert loaded_store.get_product(oil.id).stock_quantity == 10
    assert loaded_store.last_action is None


def test_add_product_with_control_characters_notifies_and_writes_nothing(loaded_store, notifications):
    command = ledger_service.NewProductCommand(name="Bad\x01Name", cost_price=Decimal("4"), sell_price=Decimal("9"))

    assert loaded_store.add_product(command) is None

    assert notifications[-1].title == "Failed to add product"
    assert isinstance(loaded_store.last_error, ledger_service.RemoteWriteError)
    names = sorted(product.name for product in ledger_service.fetch_products(loaded_store.context))
    assert names == sorted(product.name for product in loaded_store.products)
    assert "" not in names


def test_record_sale_unknown_product(loaded_store, notifications):
    assert loaded_store.record_sale("missing", 1) is None
    assert isinstance(loaded_store.last_error, ledger_service.MissingReferenceError)


def test_bulk_sale_updates_cache(loaded_store, oil, add_product, notifications):
    balm = add_product("Balm", stock=4, sell_price="15")
    loaded_store.load()

    outcome = loaded_store.record_bulk_sale(
        [CheckoutLine(oil.id, 2, Decimal("5")), CheckoutLine(balm.id, 1)],
        payment_method="card",
    )

    assert outcome.sale.total_amount == Decimal("50")
    assert loaded_store.get_product(oil.id).stock_quantity == 8
    assert loaded_store.get_product(balm.id).stock_quantity == 3
    assert loaded_store.sales[0].id == outcome.sale.id
    assert isinstance(loaded_store.last_action, OtherAction)
    assert notifications[-1].message == "Sold 2 item(s) for $50.00."


def test_bulk_sale_reraises_business_errors(loaded_store, oil, notifications):
    with pytest.raises(ledger_service.InsufficientStockError):
        loaded_store.record_bulk_sale([CheckoutLine(oil.id, 20)])

    assert notifications[-1].level is NotificationLevel.ERROR
    assert loaded_store.sales == []


def test_bulk_sale_partial_failure_keeps_successful_subset(loaded_store, oil, add_product, notifications, monkeypatch):
    """A partially failed checkout should be cached as far as it got."""

    balm = add_product("Balm", stock=4)
    loaded_store.load()
    real_update = ledger_service.update_product_stock

    def _flaky(context, product_id, new_quantity):
        if product_id == balm.id:
            raise ledger_service.RemoteWriteError("timeout")
        real_update(context, product_id, new_quantity)

    monkeypatch.setattr(ledger_service, "update_product_stock", _flaky)

    with pytest.raises(ledger_service.PartialWriteError):
        loaded_store.record_bulk_sale([CheckoutLine(oil.id, 1), CheckoutLine(balm.id, 1)])

    assert notifications[-1].level is NotificationLevel.WARNING
    assert notifications[-1].title == "Partial error"
    assert loaded_store.get_product(oil.id).stock_quantity == 9
    assert loaded_store.get_product(balm.id).stock_quantity == 4
    assert len(loaded_store.sales) == 1
    assert len(loaded_store.transactions) == 2


def test_record_restock_sets_last_restock_date(loaded_store, oil):
    outcome = loaded_store.record_restock(oil.id, 5)

    assert loaded_store.get_product(oil.id).stock_quantity == 15
    assert loaded_store.last_restock_date == outcome.transaction.date


def test_update_last_restock_date_is_not_undoable(loaded_store, fixed_now, notifications):
    assert loaded_store.update_last_restock_date(fixed_now) == fixed_now
    assert loaded_store.last_restock_date == fixed_now

    assert loaded_store.undo_last_transaction() is False
    assert notifications[-1].title == "Cannot Undo"


def test_monthly_restock_no_changes(loaded_store, oil, notifications):
    assert loaded_store.record_monthly_restock({oil.id: 5}) is None
    assert notifications[-1] == Notification(NotificationLevel.INFO, "No Changes", "No products need restocking.")
    assert loaded_store.transactions == []


def test_monthly_restock_updates_cache(loaded_store, oil, notifications):
    outcome = loaded_store.record_monthly_restock({oil.id: 12})

    assert outcome.total_cost == Decimal("16")
    assert loaded_store.get_product(oil.id).stock_quantity == 12
    assert loaded_store.transactions[:2] == [outcome.parent, *outcome.children]
    assert loaded_store.get_restock_summaries() == [outcome.parent]
    assert loaded_store.get_restock_details(outcome.parent.id) == list(outcome.children)
    assert notifications[-1].message == "Restocked 1 product(s) for $16.00."


def test_monthly_restock_refuses_system_product(loaded_store, notifications):
    assert loaded_store.record_monthly_restock({BULK_RESTOCK_PRODUCT_ID: 5}) is None

    assert notifications[-1].level is NotificationLevel.ERROR
    assert notifications[-1].title == "Failed to record monthly restock"
    assert loaded_store.get_product(BULK_RESTOCK_PRODUCT_ID).stock_quantity == 0
    assert loaded_store.transactions == []
    assert ledger_service.get_product(loaded_store.context, BULK_RESTOCK_PRODUCT_ID).stock_quantity == 0


def test_restock_details_failure_returns_empty(loaded_store, notifications, monkeypatch):
    def _broken(context, parent_id):
        raise ledger_service.RemoteWriteError("nope")

    monkeypatch.setattr(ledger_service, "get_restock_details", _broken)

    assert loaded_store.get_restock_details("T1") == []
    assert notifications[-1].title == "Failed to load restock details"


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


def test_undo_with_nothing_recorded(store, notifications):
    assert store.undo_last_transaction() is False
    assert notifications[-1].title == "No Action to Undo"


def test_undo_sale_restores_stock_and_removes_transaction(loaded_store, oil, notifications):
    """Undoing twice should only reverse the sale once."""

    outcome = loaded_store.record_sale(oil.id, 3)

    assert loaded_store.undo_last_transaction() is True
    assert loaded_store.get_product(oil.id).stock_quantity == 10
    assert ledger_service.get_product(loaded_store.context, oil.id).stock_quantity == 10
    assert loaded_store.transactions == []
    assert ledger_service.fetch_transactions(loaded_store.context) == []
    assert loaded_store.sales[0].id == outcome.sale.id
    assert loaded_store.sales[0].items == ()
    assert loaded_store.sales[0].total_amount == outcome.sale.total_amount
    assert notifications[-1].title == "Action Undone"

    assert loaded_store.undo_last_transaction() is False
    assert notifications[-1].title == "No Action to Undo"
    assert loaded_store.get_product(oil.id).stock_quantity == 10


def test_undo_adjustment(loaded_store, oil):
    loaded_store.adjust_inventory(oil.id, 4)
    assert loaded_store.undo_last_transaction() is True
    assert ledger_service.get_product(loaded_store.context, oil.id).stock_quantity == 10


def test_undo_product_update_restores_snapshot(loaded_store, oil):
    loaded_store.update_product(oil.id, {"sell_price": Decimal("30"), "name": "Rose Oil"})
    assert loaded_store.get_product(oil.id).name == "Rose Oil"

    assert loaded_store.undo_last_transaction() is True

    stored = ledger_service.get_product(loaded_store.context, oil.id)
    assert (stored.name, stored.sell_price) == ("Lavender Oil", Decimal("20"))
    assert loaded_store.get_product(oil.id) == oil


def test_undo_product_delete_restores_product(loaded_store, oil):
    loaded_store.delete_product(oil.id)
    assert loaded_store.get_product(oil.id) is None

    assert loaded_store.undo_last_transaction() is True

    assert loaded_store.get_product(oil.id) == oil
    assert ledger_service.get_product(loaded_store.context, oil.id) == oil


def test_undo_bulk_sale_is_refused(loaded_store, oil, notifications):
    loaded_store.record_bulk_sale([CheckoutLine(oil.id, 1)])

    assert loaded_store.undo_last_transaction() is False
    assert notifications[-1].title == "Cannot Undo"
    assert loaded_store.get_product(oil.id).stock_quantity == 9


def test_undo_failure_keeps_action(loaded_store, oil, notifications, monkeypatch):
    loaded_store.record_sale(oil.id, 1)
    action = loaded_store.last_action

    def _broken(context, transaction_id):
        raise ledger_service.RemoteWriteError("Delete transaction failed: locked")

    monkeypatch.setattr(ledger_service, "delete_transaction", _broken)

    assert loaded_store.undo_last_transaction() is False
    assert loaded_store.last_action == action
    assert notifications[-1].title == "Failed to undo action"


# ---------------------------------------------------------------------------
# Services and finances
# ---------------------------------------------------------------------------


def test_service_lifecycle_and_income(store, notifications):
    store.load()
    facial = store.add_service(name="Facial", price=Decimal("60"))
    wrap = store.add_service(name="Wrap", price=Decimal("40"))

    single = store.record_service_income(facial.id, customer_name="Dana")
    bundle = store.record_bundled_service_income([facial.id, wrap.id], discount=Decimal("10"))

    assert single.amount == Decimal("60")
    assert bundle.amount == Decimal("90")
    assert [income.id for income in store.service_incomes] == [bundle.id, single.id]
    assert store.service_incomes[1].service_name == "Facial"

    store.deactivate_service(wrap.id)
    assert store.active_services() == [facial]
    assert store.record_service_income(wrap.id) is None
    assert isinstance(store.last_error, ledger_service.BusinessRuleViolation)


def test_update_service_unknown_field_reports_error(store, notifications):
    store.load()
    service = store.add_service(name="Facial", price=Decimal("60"))

    assert store.update_service(service.id, {"duration": 30}) is None
    assert isinstance(store.last_error, KeyError)


def test_record_expense(store, notifications):
    record = store.record_expense(Decimal("45.50"), vendor="Linen Co")

    assert record.amount == Decimal("45.50")
    assert notifications[-1] == Notification(NotificationLevel.SUCCESS, "Expense Recorded", "$45.50.")


def test_store_defaults_to_context_actor(runtime_context):
    store = LedgerStore(runtime_context)
    assert store.actor == runtime_context.default_actor
