"""In-process ledger cache and the single entry point for mutations.

:class:`LedgerStore` owns the snapshot of products, transactions, sales,
services and service incomes. Every mutation calls the ledger service and,
on success, mirrors the write into the snapshot. Failures are logged and
turned into :class:`Notification` objects handed to the configured notifier;
the method then returns ``None``. Bulk sales are the exception and re-raise
after notifying so the calling flow can stop.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

from . import ledger_service, log, mappers, metrics
from .constants import LedgerEntryKind, NotificationLevel
from .ledger_service import (
    BulkSaleItem,
    BulkSaleOutcome,
    BusinessRuleViolation,
    MissingReferenceError,
    MonthlyRestockOutcome,
    NewProductCommand,
    PartialWriteError,
    RemoteWriteError,
    RestockUpdate,
    RuntimeContext,
    SaleOutcome,
    StockOutcome,
)
from .models import Actor, FinanceRecord, Product, Sale, Service, ServiceIncome, Transaction

T = TypeVar("T")

OPERATION_ERRORS = (BusinessRuleViolation, RemoteWriteError, ValueError, KeyError, ArithmeticError)


@dataclass(frozen=True)
class Notification:
    """User-facing message produced by a store operation."""

    level: NotificationLevel
    title: str
    message: str


Notifier = Callable[[Notification], None]

_LOG_LEVELS = {
    NotificationLevel.SUCCESS: log.info,
    NotificationLevel.INFO: log.info,
    NotificationLevel.WARNING: log.warning,
    NotificationLevel.ERROR: log.error,
}


def log_notifier(notification: Notification) -> None:
    """Default sink: write notifications to the package log."""
    _LOG_LEVELS[notification.level]("%s: %s", notification.title, notification.message)


@dataclass(frozen=True)
class CheckoutLine:
    """One cart line of a bulk sale, referencing a cached product."""

    product_id: str
    quantity: int
    discount: Decimal = Decimal("0")


# ---------------------------------------------------------------------------
# Undo slot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockChangeAction:
    """Reversible sale, restock or adjustment."""

    kind: LedgerEntryKind
    product_id: str
    old_quantity: int
    transaction_id: str


@dataclass(frozen=True)
class ProductUpdateAction:
    previous: Product


@dataclass(frozen=True)
class ProductDeleteAction:
    product: Product


@dataclass(frozen=True)
class OtherAction:
    """Marker for operations that cannot be undone."""

    kind: str


LastAction = Union[StockChangeAction, ProductUpdateAction, ProductDeleteAction, OtherAction]


class LedgerStore:
    """Owned cache of ledger state, constructed once and passed to callers."""

    def __init__(
        self,
        context: RuntimeContext,
        *,
        actor: Optional[Actor] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.context = context
        self.actor = actor if actor is not None else context.default_actor
        self._notify = notifier if notifier is not None else log_notifier
        self.products: List[Product] = []
        self.transactions: List[Transaction] = []
        self.sales: List[Sale] = []
        self.services: List[Service] = []
        self.service_incomes: List[ServiceIncome] = []
        self.last_restock_date: Optional[datetime] = None
        self.last_action: Optional[LastAction] = None
        self.last_error: Optional[Exception] = None

    # -----------------------------------------------------------------------
    # Notification plumbing
    # -----------------------------------------------------------------------

    def notify(self, level: NotificationLevel, title: str, message: str) -> None:
        self._notify(Notification(level=level, title=title, message=message))

    def _report_failure(self, title: str, error: Exception) -> None:
        self.last_error = error
        if isinstance(error, PartialWriteError):
            log.warning("%s: %s (failed: %s)", title, error, ", ".join(sorted(error.failures)))
            self.notify(NotificationLevel.WARNING, "Partial error", str(error))
            return
        if isinstance(error, (BusinessRuleViolation, ValueError)):
            log.warning("%s: %s", title, error)
        else:
            log.error("%s: %s", title, error)
        self.notify(NotificationLevel.ERROR, title, str(error))

    def _guard(self, title: str, operation: Callable[[], T]) -> Optional[T]:
        self.last_error = None
        try:
            return operation()
        except OPERATION_ERRORS as error:
            self._report_failure(title, error)
            return None

    # -----------------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------------

    def load(self) -> List[str]:
        """Populate the cache from the data service.

        Each category loads independently so one failure does not block the
        rest.

        Returns:
            list[str]: Names of the categories that failed to load.
        """
        loaders: Sequence[tuple[str, Callable[[], None]]] = (
            ("products", self._load_products),
            ("transactions", self._load_transactions),
            ("sales", self._load_sales),
            ("services", self._load_services),
            ("service_incomes", self._load_service_incomes),
            ("last_restock_date", self._load_last_restock_date),
        )
        failed: List[str] = []
        for name, loader in loaders:
            try:
                loader()
            except OPERATION_ERRORS as error:
                failed.append(name)
                self._report_failure(f"Failed to load {name.replace('_', ' ')}", error)
        log.info(
            "Ledger cache loaded: %d products, %d transactions, %d sales, %d services, %d service incomes",
            len(self.products),
            len(self.transactions),
            len(self.sales),
            len(self.services),
            len(self.service_incomes),
        )
        return failed

    def _load_products(self) -> None:
        self.products = ledger_service.fetch_products(self.context)

    def _load_transactions(self) -> None:
        self.transactions = ledger_service.fetch_transactions(self.context)

    def _load_sales(self) -> None:
        self.sales = ledger_service.fetch_sales(self.context, transactions=self.transactions)

    def _load_services(self) -> None:
        self.services = ledger_service.fetch_services(self.context)

    def _load_service_incomes(self) -> None:
        self.service_incomes = ledger_service.fetch_service_incomes(self.context)

    def _load_last_restock_date(self) -> None:
        self.last_restock_date = ledger_service.get_last_restock_date(self.context)

    # -----------------------------------------------------------------------
    # Cache helpers
    # -----------------------------------------------------------------------

    def _require_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {product_id}")
        return product

    def _require_service(self, service_id: str) -> Service:
        for service in self.services:
            if service.id == service_id:
                return service
        raise MissingReferenceError(f"Unknown service id: {service_id}")

    def _put_product(self, product: Product) -> None:
        for index, cached in enumerate(self.products):
            if cached.id == product.id:
                self.products[index] = product
                return
        self.products.append(product)

    def _put_service(self, service: Service) -> None:
        for index, cached in enumerate(self.services):
            if cached.id == service.id:
                self.services[index] = service
                return
        self.services.append(service)

    def _prepend_transactions(self, transactions: Sequence[Transaction]) -> None:
        self.transactions[:0] = list(transactions)

    def _drop_transaction(self, transaction_id: str) -> None:
        self.transactions = [txn for txn in self.transactions if txn.id != transaction_id]
        self.sales = [
            replace(sale, items=tuple(item for item in sale.items if item.id != transaction_id))
            for sale in self.sales
        ]

    def _service_income_from(self, record: FinanceRecord, service_name: str) -> ServiceIncome:
        return ServiceIncome(
            id=record.id,
            service_id=record.service_id or mappers.UNCATEGORIZED_ID,
            service_name=service_name,
            amount=record.amount,
            date=record.date,
            customer_name=record.customer_name,
            category=record.category,
        )

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_product(self, product_id: str) -> Optional[Product]:
        for product in self.products:
            if product.id == product_id:
                return product
        return None

    def list_products(self, *, include_system: bool = False) -> List[Product]:
        """Return cached products, hiding the bulk restock product by default."""
        if include_system:
            return list(self.products)
        return [product for product in self.products if not product.is_system_product]

    def get_total_inventory_value(self) -> Decimal:
        """Sum ``cost_price * stock_quantity`` over the sellable catalog."""
        return sum((product.inventory_value for product in self.list_products()), Decimal("0"))

    def low_stock_products(self) -> List[Product]:
        return [product for product in self.list_products() if product.is_low_stock]

    def active_services(self) -> List[Service]:
        return [service for service in self.services if service.active]

    def get_restock_details(self, parent_transaction_id: str) -> List[Transaction]:
        """Fetch the child lines of an aggregate restock, newest first.

        Failures are notified and yield an empty list.
        """
        details = self._guard(
            "Failed to load restock details",
            lambda: ledger_service.get_restock_details(self.context, parent_transaction_id),
        )
        return details if details is not None else []

    def get_restock_summaries(self, limit: int = 10) -> List[Transaction]:
        summaries = self._guard(
            "Failed to load restock summaries",
            lambda: ledger_service.get_restock_summaries(self.context, limit),
        )
        return summaries if summaries is not None else []

    def get_finance_summary(self, now: Optional[datetime] = None) -> Optional[metrics.FinanceSummary]:
        """Summarize this month's finances from the finances table."""

        def _run() -> metrics.FinanceSummary:
            records = ledger_service.fetch_finance_records(self.context)
            service_names = {service.id: service.name for service in self.services}
            return metrics.summarize_finances(records, metrics.get_date_ranges(now), service_names)

        return self._guard("Failed to load finance summary", _run)

    # -----------------------------------------------------------------------
    # Products
    # -----------------------------------------------------------------------

    def add_product(self, command: NewProductCommand) -> Optional[Product]:
        def _run() -> Product:
            product = ledger_service.add_product(self.context, command)
            self.products.append(product)
            self.last_action = OtherAction("add_product")
            self.notify(NotificationLevel.SUCCESS, "Product Added", f"{product.name} has been added.")
            return product

        return self._guard("Failed to add product", _run)

    def update_product(self, product_id: str, updates: Mapping[str, Any]) -> Optional[Product]:
        """Apply a partial update; the previous snapshot becomes undoable."""

        def _run() -> Product:
            previous = self._require_product(product_id)
            ledger_service.update_product(self.context, product_id, updates)
            updated = replace(previous, **dict(updates))
            self._put_product(updated)
            self.last_action = ProductUpdateAction(previous=previous)
            self.notify(NotificationLevel.SUCCESS, "Product Updated", f"{updated.name} has been updated.")
            return updated

        return self._guard("Failed to update product", _run)

    def delete_product(self, product_id: str) -> Optional[Product]:
        def _run() -> Product:
            product = self._require_product(product_id)
            ledger_service.delete_product(self.context, product_id)
            self.products = [cached for cached in self.products if cached.id != product_id]
            self.last_action = ProductDeleteAction(product=product)
            self.notify(NotificationLevel.SUCCESS, "Product Deleted", f"{product.name} has been removed.")
            return product

        return self._guard("Failed to delete product", _run)

    # -----------------------------------------------------------------------
    # Ledger mutations
    # -----------------------------------------------------------------------

    def record_sale(
        self,
        product_id: str,
        quantity: int,
        *,
        payment_method: Optional[str] = None,
    ) -> Optional[SaleOutcome]:
        def _run() -> SaleOutcome:
            product = self._require_product(product_id)
            outcome = ledger_service.record_sale(
                self.context,
                product,
                quantity,
                actor=self.actor,
                payment_method=payment_method,
            )
            self._put_product(outcome.product)
            self._prepend_transactions([outcome.transaction])
            self.sales.insert(0, outcome.sale)
            self.last_action = StockChangeAction(
                kind=LedgerEntryKind.SALE,
                product_id=product.id,
                old_quantity=product.stock_quantity,
                transaction_id=outcome.transaction.id,
            )
            self.notify(
                NotificationLevel.SUCCESS,
                "Sale Recorded",
                f"Sold {quantity} {product.name}.",
            )
            return outcome

        return self._guard("Failed to record sale", _run)

    def record_bulk_sale(
        self,
        lines: Sequence[CheckoutLine],
        *,
        payment_method: Optional[str] = None,
    ) -> BulkSaleOutcome:
        """Record a multi-product checkout.

        Unlike the other mutations this re-raises after notifying. On a
        partial failure the cache keeps the sale, its transactions and the
        stock decrements that did go through.
        """
        self.last_error = None
        try:
            items = [
                BulkSaleItem(
                    product=self._require_product(line.product_id),
                    quantity=line.quantity,
                    discount=line.discount,
                )
                for line in lines
            ]
            outcome = ledger_service.record_bulk_sale(
                self.context,
                items,
                actor=self.actor,
                payment_method=payment_method,
            )
        except PartialWriteError as error:
            self._apply_partial_sale(items, error)
            self.last_action = OtherAction("bulk_sale")
            self._report_failure("Failed to record bulk sale", error)
            raise
        except OPERATION_ERRORS as error:
            self._report_failure("Failed to record bulk sale", error)
            raise

        for product in outcome.products:
            self._put_product(product)
        self._prepend_transactions(outcome.transactions)
        self.sales.insert(0, outcome.sale)
        self.last_action = OtherAction("bulk_sale")
        self.notify(
            NotificationLevel.SUCCESS,
            "Sale Completed",
            f"Sold {len(outcome.transactions)} item(s) for ${outcome.sale.total_amount:.2f}.",
        )
        return outcome

    def _apply_partial_sale(self, items: Sequence[BulkSaleItem], error: PartialWriteError) -> None:
        if error.sale is not None:
            self.sales.insert(0, error.sale)
        self._prepend_transactions(error.transactions)
        sold: Dict[str, int] = {}
        for item in items:
            sold[item.product.id] = sold.get(item.product.id, 0) + item.quantity
        for product_id in error.completed:
            product = self.get_product(product_id)
            if product is not None:
                self._put_product(replace(product, stock_quantity=product.stock_quantity - sold[product_id]))

    def record_restock(self, product_id: str, quantity: int) -> Optional[StockOutcome]:
        def _run() -> StockOutcome:
            product = self._require_product(product_id)
            outcome = ledger_service.record_restock(self.context, product, quantity, actor=self.actor)
            self._put_product(outcome.product)
            self._prepend_transactions([outcome.transaction])
            self.last_restock_date = outcome.transaction.date
            self.last_action = StockChangeAction(
                kind=LedgerEntryKind.RESTOCK,
                product_id=product.id,
                old_quantity=product.stock_quantity,
                transaction_id=outcome.transaction.id,
            )
            self.notify(
                NotificationLevel.SUCCESS,
                "Restock Recorded",
                f"Added {quantity} {product.name} to inventory.",
            )
            return outcome

        return self._guard("Failed to record restock", _run)

    def adjust_inventory(self, product_id: str, new_quantity: int) -> Optional[StockOutcome]:
        def _run() -> StockOutcome:
            product = self._require_product(product_id)
            outcome = ledger_service.adjust_inventory(self.context, product, new_quantity, actor=self.actor)
            self._put_product(outcome.product)
            self._prepend_transactions([outcome.transaction])
            self.last_action = StockChangeAction(
                kind=LedgerEntryKind.ADJUSTMENT,
                product_id=product.id,
                old_quantity=product.stock_quantity,
                transaction_id=outcome.transaction.id,
            )
            self.notify(
                NotificationLevel.SUCCESS,
                "Inventory Adjusted",
                f"{product.name} stock set to {new_quantity}.",
            )
            return outcome

        return self._guard("Failed to adjust inventory", _run)

    def update_last_restock_date(self, when: Optional[datetime] = None) -> datetime:
        """Stamp the cached last restock date; nothing is written remotely."""
        self.last_restock_date = when if when is not None else datetime.now(UTC)
        self.last_action = OtherAction("update_last_restock_date")
        self.notify(
            NotificationLevel.SUCCESS,
            "Restock Date Updated",
            f"Last restock date set to {self.last_restock_date.date().isoformat()}.",
        )
        return self.last_restock_date

    def record_monthly_restock(self, targets: Mapping[str, int]) -> Optional[MonthlyRestockOutcome]:
        """Restock several products to the given target levels at once.

        ``targets`` maps product ids to the desired stock. Products whose
        target does not exceed their current stock are left alone; when none
        qualify, nothing is written and ``None`` is returned.
        """

        def _run() -> Optional[MonthlyRestockOutcome]:
            updates = [
                RestockUpdate(product=self._require_product(product_id), new_quantity=quantity)
                for product_id, quantity in targets.items()
            ]
            try:
                outcome = ledger_service.record_monthly_restock(self.context, updates, actor=self.actor)
            except PartialWriteError as error:
                self._prepend_transactions(error.transactions)
                targets_by_id = {update.product.id: update for update in updates}
                for product_id in error.completed:
                    update = targets_by_id[product_id]
                    self._put_product(replace(update.product, stock_quantity=update.new_quantity))
                self.last_action = OtherAction("monthly_restock")
                raise

            if outcome is None:
                self.notify(NotificationLevel.INFO, "No Changes", "No products need restocking.")
                return None

            for product in outcome.products:
                self._put_product(product)
            self._prepend_transactions([outcome.parent, *outcome.children])
            self.last_restock_date = outcome.parent.date
            self.last_action = OtherAction("monthly_restock")
            self.notify(
                NotificationLevel.SUCCESS,
                "Monthly Restock Complete",
                f"Restocked {len(outcome.children)} product(s) for ${outcome.total_cost:.2f}.",
            )
            return outcome

        return self._guard("Failed to record monthly restock", _run)

    def undo_last_transaction(self) -> bool:
        """Reverse the single recorded last action.

        Undoing a sale restores stock and deletes its transaction only. The
        sale header keeps its ``total_amount``, so daily sales series built
        from :attr:`sales` still include the undone revenue.

        Returns:
            bool: ``True`` when an action was reversed.
        """
        action = self.last_action
        if action is None:
            self.notify(NotificationLevel.INFO, "No Action to Undo", "There is no recent action to undo.")
            return False
        if isinstance(action, OtherAction):
            self.notify(NotificationLevel.INFO, "Cannot Undo", "This action cannot be undone.")
            return False

        def _run() -> bool:
            if isinstance(action, StockChangeAction):
                self._undo_stock_change(action)
            elif isinstance(action, ProductUpdateAction):
                self._undo_product_update(action)
            else:
                self._undo_product_delete(action)
            self.last_action = None
            self.notify(NotificationLevel.SUCCESS, "Action Undone", "The last action has been reversed.")
            return True

        return bool(self._guard("Failed to undo action", _run))

    def _undo_stock_change(self, action: StockChangeAction) -> None:
        ledger_service.update_product_stock(self.context, action.product_id, action.old_quantity)
        product = self.get_product(action.product_id)
        if product is not None:
            self._put_product(replace(product, stock_quantity=action.old_quantity))
        ledger_service.delete_transaction(self.context, action.transaction_id)
        self._drop_transaction(action.transaction_id)
        log.info("Undid %s on product '%s'", action.kind.value, action.product_id)

    def _undo_product_update(self, action: ProductUpdateAction) -> None:
        previous = action.previous
        ledger_service.update_product(self.context, previous.id, mappers.product_to_row(previous, include_id=False))
        self._put_product(previous)
        log.info("Restored previous snapshot of product '%s'", previous.id)

    def _undo_product_delete(self, action: ProductDeleteAction) -> None:
        restored = ledger_service.restore_product(self.context, action.product)
        self._put_product(restored)

    # -----------------------------------------------------------------------
    # Services and finances
    # -----------------------------------------------------------------------

    def add_service(self, *, name: str, price: Decimal, description: str = "") -> Optional[Service]:
        def _run() -> Service:
            service = ledger_service.add_service(self.context, name=name, price=price, description=description)
            self.services.append(service)
            self.last_action = OtherAction("add_service")
            self.notify(NotificationLevel.SUCCESS, "Service Added", f"{service.name} has been added.")
            return service

        return self._guard("Failed to add service", _run)

    def update_service(self, service_id: str, updates: Mapping[str, Any]) -> Optional[Service]:
        def _run() -> Service:
            service = self._require_service(service_id)
            ledger_service.update_service(self.context, service_id, updates)
            updated = replace(service, **dict(updates))
            self._put_service(updated)
            self.last_action = OtherAction("update_service")
            return updated

        return self._guard("Failed to update service", _run)

    def deactivate_service(self, service_id: str) -> Optional[Service]:
        def _run() -> Service:
            service = self._require_service(service_id)
            ledger_service.deactivate_service(self.context, service_id)
            updated = replace(service, active=False)
            self._put_service(updated)
            self.last_action = OtherAction("deactivate_service")
            self.notify(NotificationLevel.SUCCESS, "Service Deactivated", f"{service.name} is hidden from sale.")
            return updated

        return self._guard("Failed to deactivate service", _run)

    def record_service_income(self, service_id: str, **details: Any) -> Optional[FinanceRecord]:
        """Record income for one service; ``details`` go to the ledger service."""

        def _run() -> FinanceRecord:
            service = self._require_service(service_id)
            record = ledger_service.record_service_income(self.context, service, **details)
            self.service_incomes.insert(0, self._service_income_from(record, service.name))
            self.last_action = OtherAction("service_income")
            self.notify(NotificationLevel.SUCCESS, "Income Recorded", f"{service.name}: ${record.amount:.2f}.")
            return record

        return self._guard("Failed to record income", _run)

    def record_bundled_service_income(self, service_ids: Sequence[str], **details: Any) -> Optional[FinanceRecord]:
        def _run() -> FinanceRecord:
            services = [self._require_service(service_id) for service_id in service_ids]
            record = ledger_service.record_bundled_service_income(self.context, services, **details)
            self.service_incomes.insert(0, self._service_income_from(record, services[0].name))
            self.last_action = OtherAction("bundled_service_income")
            self.notify(
                NotificationLevel.SUCCESS,
                "Income Recorded",
                f"{len(services)} service(s): ${record.amount:.2f}.",
            )
            return record

        return self._guard("Failed to record income", _run)

    def record_expense(self, amount: Decimal, **details: Any) -> Optional[FinanceRecord]:
        def _run() -> FinanceRecord:
            record = ledger_service.record_expense(self.context, amount, **details)
            self.last_action = OtherAction("expense")
            self.notify(NotificationLevel.SUCCESS, "Expense Recorded", f"${record.amount:.2f}.")
            return record

        return self._guard("Failed to record expense", _run)
