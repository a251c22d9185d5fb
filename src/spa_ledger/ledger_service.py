"""Transaction/ledger service for the spa ledger.

Every write path that has to keep ``products.stock_quantity`` and the
append-only transaction ledger consistent goes through this module. It talks
to the data service (:mod:`spa_ledger.data_manager`) for all I/O and returns
typed entities built by :mod:`spa_ledger.mappers`.

Multi-step operations are not atomic: a sale header can be written before a
stock update fails, and fan-out stock updates are independent. Failures after
the first write surface as :class:`RemoteWriteError` or, when only part of a
fan-out failed, :class:`PartialWriteError` carrying what did succeed.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook

from . import data_manager, log, mappers
from .constants import (
    BULK_RESTOCK_PRODUCT_ID,
    BULK_RESTOCK_PRODUCT_NAME,
    EXPECTED_SCHEMA_VERSION,
    FinanceType,
    TransactionType,
)
from .models import (
    Actor,
    BundledServices,
    FinanceRecord,
    Product,
    RegularCategory,
    Sale,
    Service,
    ServiceIncome,
    Transaction,
)

MAX_FAN_OUT_WORKERS = 8
ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, service, or transaction is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale asks for more units than are in stock."""


class RemoteWriteError(Exception):
    """Raised when the data service rejects a read or write."""


class PartialWriteError(RemoteWriteError):
    """Raised when some writes of a multi-step operation failed.

    Attributes:
        failures: Mapping of the failed target id to the raised exception.
        completed: Ids whose writes went through.
        sale: Sale header written before the failure, when there was one.
        transactions: Ledger rows written before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        failures: Mapping[str, Exception],
        completed: Sequence[str] = (),
        sale: Optional[Sale] = None,
        transactions: Sequence[Transaction] = (),
    ) -> None:
        super().__init__(message)
        self.failures = dict(failures)
        self.completed = tuple(completed)
        self.sale = sale
        self.transactions = tuple(transactions)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the data service handle."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    write_lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def default_actor(self) -> Actor:
        return Actor(
            user_id=self.settings.default_user_id,
            user_name=self.settings.default_user_name,
        )


@dataclass(frozen=True)
class NewProductCommand:
    """User intent for adding a catalog product."""

    name: str
    cost_price: Decimal
    sell_price: Decimal
    stock_quantity: int = 0
    category: str = ""
    description: str = ""
    low_stock_threshold: int = 5
    last_restocked: Optional[datetime] = None
    image_url: Optional[str] = None
    size: Optional[str] = None
    ingredients: Optional[str] = None
    skin_concerns: Optional[str] = None


@dataclass(frozen=True)
class BulkSaleItem:
    """One line of a multi-product checkout."""

    product: Product
    quantity: int
    discount: Decimal = ZERO


@dataclass(frozen=True)
class RestockUpdate:
    """Target stock level for one product during a monthly restock."""

    product: Product
    new_quantity: int


@dataclass(frozen=True)
class SaleOutcome:
    sale: Sale
    transaction: Transaction
    product: Product


@dataclass(frozen=True)
class BulkSaleOutcome:
    sale: Sale
    transactions: Tuple[Transaction, ...]
    products: Tuple[Product, ...]


@dataclass(frozen=True)
class StockOutcome:
    transaction: Transaction
    product: Product


@dataclass(frozen=True)
class MonthlyRestockOutcome:
    parent: Transaction
    children: Tuple[Transaction, ...]
    products: Tuple[Product, ...]
    total_cost: Decimal


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the backing workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work against a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
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


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""
    with context.write_lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_quantity(quantity: int) -> None:
    """Validate that a stock level is zero or more.

    Raises:
        ValueError: If ``quantity`` is negative.
    """
    if quantity < 0:
        log.error("Stock level validation failed: %s", quantity)
        raise ValueError("Stock quantity cannot be negative")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_stock(product: Product, quantity: int) -> None:
    """Reject a sale of ``quantity`` units when the product holds fewer.

    Raises:
        InsufficientStockError: If ``quantity`` exceeds the current stock.
    """
    if product.stock_quantity < quantity:
        log.warning(
            "Insufficient stock for '%s': requested %s, available %s",
            product.id,
            quantity,
            product.stock_quantity,
        )
        raise InsufficientStockError(f"Not enough {product.name} in stock.")


def _require_sellable(product: Product) -> None:
    if product.is_system_product:
        raise BusinessRuleViolation(f"Product '{product.id}' is a system product")


def allocate_discount(prices: Sequence[Decimal], discount: Decimal) -> List[Decimal]:
    """Spread ``discount`` over ``prices`` proportionally to each price.

    Each price nets ``price - (price / subtotal) * discount``, floored at
    zero. A zero subtotal allocates nothing.
    """
    subtotal = sum(prices, ZERO)
    net: List[Decimal] = []
    for price in prices:
        allocation = (price / subtotal) * discount if subtotal else ZERO
        net.append(max(ZERO, price - allocation))
    return net


# ---------------------------------------------------------------------------
# Data service plumbing
# ---------------------------------------------------------------------------


def _remote(context: RuntimeContext, description: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run one data service call under the write lock.

    Backend failures are logged and re-raised as :class:`RemoteWriteError`.
    """
    with context.write_lock:
        try:
            return func(context.workbook, *args, **kwargs)
        except (KeyError, ValueError, TypeError, OSError, IllegalCharacterError) as exc:
            log.error("%s failed: %s", description, exc)
            raise RemoteWriteError(f"{description} failed: {exc}") from exc


def _first(rows: Sequence[Mapping[str, Any]], description: str) -> Mapping[str, Any]:
    if not rows:
        log.error("%s returned no rows", description)
        raise RemoteWriteError(f"Failed to create {description} record")
    return rows[0]


def fan_out(calls: Mapping[str, Callable[[], Any]]) -> Tuple[Dict[str, Any], Dict[str, Exception]]:
    """Start every call concurrently and wait for all of them.

    Returns:
        tuple[dict, dict]: Results keyed like ``calls`` for the calls that
            returned, and the exceptions keyed the same way for those that
            raised. No call is skipped because another failed.
    """
    results: Dict[str, Any] = {}
    failures: Dict[str, Exception] = {}
    if not calls:
        return results, failures

    with ThreadPoolExecutor(max_workers=min(MAX_FAN_OUT_WORKERS, len(calls))) as executor:
        futures = OrderedDict((key, executor.submit(call)) for key, call in calls.items())
        for key, future in futures.items():
            try:
                results[key] = future.result()
            except Exception as exc:  # noqa: BLE001 - collected and reported by the caller
                failures[key] = exc
    return results, failures


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def fetch_products(context: RuntimeContext) -> List[Product]:
    rows = _remote(context, "Fetch products", data_manager.select_rows, data_manager.PRODUCTS_TABLE)
    return [mappers.row_to_product(row) for row in rows]


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve one product by id.

    Raises:
        MissingReferenceError: If no product has ``product_id``.
    """
    rows = _remote(
        context,
        "Fetch product",
        data_manager.select_rows,
        data_manager.PRODUCTS_TABLE,
        filters={"id": product_id},
    )
    if not rows:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return mappers.row_to_product(rows[0])


def fetch_transactions(context: RuntimeContext) -> List[Transaction]:
    """Return the whole ledger, newest first."""
    rows = _remote(
        context,
        "Fetch transactions",
        data_manager.select_rows,
        data_manager.TRANSACTIONS_TABLE,
        order_by="date",
        descending=True,
    )
    return [mappers.row_to_transaction(row) for row in rows]


def attach_sale_items(sales: Sequence[Sale], transactions: Sequence[Transaction]) -> List[Sale]:
    """Return ``sales`` with ``items`` filled from transactions sharing the sale id."""
    by_sale: Dict[str, List[Transaction]] = {}
    for transaction in transactions:
        if transaction.sale_id:
            by_sale.setdefault(transaction.sale_id, []).append(transaction)
    return [replace(sale, items=tuple(by_sale.get(sale.id, ()))) for sale in sales]


def fetch_sales(context: RuntimeContext, transactions: Optional[Sequence[Transaction]] = None) -> List[Sale]:
    """Return every sale header, newest first, with its line items attached."""
    rows = _remote(context, "Fetch sales", data_manager.get_sales)
    sales = sorted((mappers.row_to_sale(row) for row in rows), key=lambda sale: sale.date, reverse=True)
    if transactions is None:
        transactions = fetch_transactions(context)
    return attach_sale_items(sales, transactions)


def fetch_services(context: RuntimeContext, *, include_inactive: bool = True) -> List[Service]:
    rows = _remote(
        context,
        "Fetch services",
        data_manager.select_rows,
        data_manager.SERVICES_TABLE,
        order_by="name",
    )
    services = [mappers.row_to_service(row) for row in rows]
    if include_inactive:
        return services
    return [service for service in services if service.active]


def fetch_service_incomes(context: RuntimeContext) -> List[ServiceIncome]:
    """Return income finance rows newest first, resolved to service names."""
    service_rows = _remote(context, "Fetch services", data_manager.select_rows, data_manager.SERVICES_TABLE)
    names = {str(row["id"]): str(row.get("name") or "") for row in service_rows}
    rows = _remote(
        context,
        "Fetch service incomes",
        data_manager.select_rows,
        data_manager.FINANCES_TABLE,
        filters={"type": FinanceType.INCOME.value},
        order_by="date",
        descending=True,
    )
    return [mappers.row_to_service_income(row, names) for row in rows]


def fetch_finance_records(context: RuntimeContext, finance_type: Optional[FinanceType] = None) -> List[FinanceRecord]:
    filters = {"type": finance_type.value} if finance_type is not None else None
    rows = _remote(
        context,
        "Fetch finances",
        data_manager.select_rows,
        data_manager.FINANCES_TABLE,
        filters=filters,
        order_by="date",
        descending=True,
    )
    return [mappers.row_to_finance_record(row) for row in rows]


def get_last_restock_date(context: RuntimeContext) -> Optional[datetime]:
    rows = _remote(
        context,
        "Fetch last restock",
        data_manager.select_rows,
        data_manager.TRANSACTIONS_TABLE,
        filters={"type": TransactionType.RESTOCK.value},
        order_by="date",
        descending=True,
        limit=1,
    )
    if not rows:
        return None
    return mappers.parse_timestamp(rows[0].get("date"))


def get_restock_details(context: RuntimeContext, parent_transaction_id: str) -> List[Transaction]:
    """Return the child restock lines of an aggregate restock, newest first."""
    rows = _remote(
        context,
        "Fetch restock details",
        data_manager.select_rows,
        data_manager.TRANSACTIONS_TABLE,
        filters={"parent_transaction_id": parent_transaction_id},
        order_by="date",
        descending=True,
    )
    return [mappers.row_to_transaction(row) for row in rows]


def get_restock_summaries(context: RuntimeContext, limit: int = 10) -> List[Transaction]:
    """Return the newest aggregate restock transactions."""
    rows = _remote(
        context,
        "Fetch restock summaries",
        data_manager.select_rows,
        data_manager.TRANSACTIONS_TABLE,
        filters={"product_id": BULK_RESTOCK_PRODUCT_ID, "type": TransactionType.RESTOCK.value},
        order_by="date",
        descending=True,
        limit=limit,
    )
    return [mappers.row_to_transaction(row) for row in rows]


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, command: NewProductCommand) -> Product:
    """Insert a catalog product and return it with its generated id.

    Raises:
        ValueError: If a price or the opening stock is negative.
    """
    require_nonnegative_money(command.cost_price)
    require_nonnegative_money(command.sell_price)
    require_nonnegative_quantity(command.stock_quantity)

    now_iso = data_manager.utc_now_iso()
    record = {
        "name": command.name,
        "description": command.description,
        "category": command.category,
        "cost_price": command.cost_price,
        "sell_price": command.sell_price,
        "stock_quantity": command.stock_quantity,
        "low_stock_threshold": command.low_stock_threshold,
        "last_restocked": command.last_restocked,
        "image_url": command.image_url,
        "size": command.size,
        "ingredients": command.ingredients,
        "skin_concerns": command.skin_concerns,
        "updated_at": now_iso,
    }
    rows = _remote(context, "Insert product", data_manager.insert_rows, data_manager.PRODUCTS_TABLE, [record])
    product = mappers.row_to_product(_first(rows, "product"))
    log.info("Added product '%s' (%s)", product.name, product.id)
    return product


def update_product(context: RuntimeContext, product_id: str, updates: Mapping[str, Any]) -> None:
    """Apply a partial update to one product row.

    Raises:
        KeyError: If ``updates`` names an unknown field.
        MissingReferenceError: If no product has ``product_id``.
    """
    values = mappers.product_updates_to_row(updates)
    values["updated_at"] = data_manager.utc_now_iso()
    updated = _remote(
        context,
        "Update product",
        data_manager.update_rows,
        data_manager.PRODUCTS_TABLE,
        filters={"id": product_id},
        values=values,
    )
    if not updated:
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(updates)))


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Delete a catalog product.

    Raises:
        BusinessRuleViolation: If ``product_id`` is the bulk restock system
            product.
        MissingReferenceError: If no product has ``product_id``.
    """
    if product_id == BULK_RESTOCK_PRODUCT_ID:
        raise BusinessRuleViolation("The bulk restock system product cannot be deleted")
    deleted = _remote(
        context,
        "Delete product",
        data_manager.delete_rows,
        data_manager.PRODUCTS_TABLE,
        filters={"id": product_id},
    )
    if not deleted:
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    log.info("Deleted product '%s'", product_id)


def restore_product(context: RuntimeContext, product: Product) -> Product:
    """Re-insert a previously deleted product under its original id."""
    record = mappers.product_to_row(product)
    record["updated_at"] = data_manager.utc_now_iso()
    rows = _remote(context, "Restore product", data_manager.insert_rows, data_manager.PRODUCTS_TABLE, [record])
    restored = mappers.row_to_product(_first(rows, "product"))
    log.info("Restored product '%s' (%s)", restored.name, restored.id)
    return restored


def update_product_stock(context: RuntimeContext, product_id: str, new_quantity: int) -> None:
    """Set a product's stock level.

    Raises:
        ValueError: If ``new_quantity`` is negative.
        MissingReferenceError: If no product has ``product_id``.
    """
    require_nonnegative_quantity(new_quantity)
    updated = _remote(
        context,
        "Update product stock",
        data_manager.update_rows,
        data_manager.PRODUCTS_TABLE,
        filters={"id": product_id},
        values={"stock_quantity": new_quantity, "updated_at": data_manager.utc_now_iso()},
    )
    if not updated:
        raise MissingReferenceError(f"Unknown product id: {product_id}")


def update_product_restock_date(context: RuntimeContext, product_id: str, when: datetime) -> None:
    updated = _remote(
        context,
        "Update product restock date",
        data_manager.update_rows,
        data_manager.PRODUCTS_TABLE,
        filters={"id": product_id},
        values={"last_restocked": when, "updated_at": data_manager.utc_now_iso()},
    )
    if not updated:
        raise MissingReferenceError(f"Unknown product id: {product_id}")


def update_multiple_product_stocks(
    context: RuntimeContext,
    updates: Sequence[Tuple[str, int]],
    *,
    restocked_at: Optional[datetime] = None,
) -> List[str]:
    """Fan out stock updates for several products.

    When ``restocked_at`` is given every product's ``last_restocked`` is
    stamped as well.

    Returns:
        list[str]: Product ids updated, in request order.

    Raises:
        PartialWriteError: If any update failed; the others are still applied.
    """

    def _make_call(product_id: str, new_quantity: int) -> Callable[[], None]:
        def _call() -> None:
            if restocked_at is None:
                update_product_stock(context, product_id, new_quantity)
                return
            require_nonnegative_quantity(new_quantity)
            updated = _remote(
                context,
                "Update product stock",
                data_manager.update_rows,
                data_manager.PRODUCTS_TABLE,
                filters={"id": product_id},
                values={
                    "stock_quantity": new_quantity,
                    "last_restocked": restocked_at,
                    "updated_at": data_manager.utc_now_iso(),
                },
            )
            if not updated:
                raise MissingReferenceError(f"Unknown product id: {product_id}")

        return _call

    calls = OrderedDict((product_id, _make_call(product_id, quantity)) for product_id, quantity in updates)
    results, failures = fan_out(calls)
    completed = [product_id for product_id in calls if product_id in results]
    if failures:
        log.warning(
            "Stock update failed for %d of %d product(s): %s",
            len(failures),
            len(calls),
            ", ".join(sorted(failures)),
        )
        raise PartialWriteError(
            "Some product stock levels could not be updated. Please check inventory.",
            failures=failures,
            completed=completed,
        )
    return completed


def delete_transaction(context: RuntimeContext, transaction_id: str) -> None:
    """Remove one ledger row. Only the undo path deletes transactions.

    Raises:
        MissingReferenceError: If no transaction has ``transaction_id``.
    """
    deleted = _remote(
        context,
        "Delete transaction",
        data_manager.delete_rows,
        data_manager.TRANSACTIONS_TABLE,
        filters={"id": transaction_id},
    )
    if not deleted:
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
    log.info("Deleted transaction '%s'", transaction_id)


# ---------------------------------------------------------------------------
# Ledger writes
# ---------------------------------------------------------------------------


def _transaction_payload(
    product: Product,
    *,
    quantity: int,
    price: Decimal,
    type_: TransactionType,
    when: datetime,
    actor: Actor,
    **extra: Any,
) -> Dict[str, Any]:
    payload = {
        "product_id": product.id,
        "product_name": product.name,
        "quantity": quantity,
        "price": price,
        "type": type_.value,
        "date": when,
        "user_id": actor.user_id,
        "user_name": actor.user_name,
    }
    payload.update(extra)
    return payload


def record_sale(
    context: RuntimeContext,
    product: Product,
    quantity: int,
    *,
    actor: Actor,
    payment_method: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> SaleOutcome:
    """Sell ``quantity`` units of one product.

    Writes a sale header priced ``sell_price * quantity``, decrements stock,
    and appends one ``sale`` transaction linked to the header.

    Raises:
        ValueError: If ``quantity`` is not positive.
        InsufficientStockError: If stock is short; nothing is written.
        RemoteWriteError: If the data service rejects one of the writes.
    """
    _require_sellable(product)
    require_positive_quantity(quantity)
    require_stock(product, quantity)

    when = _resolve_timestamp(timestamp)
    total = product.sell_price * quantity
    sale_rows = _remote(
        context,
        "Insert sale",
        data_manager.insert_sale,
        {
            "date": when,
            "total_amount": total,
            "user_id": actor.user_id,
            "user_name": actor.user_name,
            "payment_method": payment_method,
        },
    )
    sale = mappers.row_to_sale(_first(sale_rows, "sale"))

    new_quantity = product.stock_quantity - quantity
    update_product_stock(context, product.id, new_quantity)

    transaction_rows = _remote(
        context,
        "Insert sale transaction",
        data_manager.insert_transaction_with_sale,
        _transaction_payload(
            product,
            quantity=quantity,
            price=total,
            type_=TransactionType.SALE,
            when=when,
            actor=actor,
            sale_id=sale.id,
        ),
    )
    transaction = mappers.row_to_transaction(_first(transaction_rows, "transaction"))
    log.info(
        "Recorded sale '%s' for product '%s' (quantity=%s, total=%s)",
        sale.id,
        product.id,
        quantity,
        total,
    )
    return SaleOutcome(
        sale=replace(sale, items=(transaction,)),
        transaction=transaction,
        product=replace(product, stock_quantity=new_quantity),
    )


def record_bulk_sale(
    context: RuntimeContext,
    items: Sequence[BulkSaleItem],
    *,
    actor: Actor,
    payment_method: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> BulkSaleOutcome:
    """Record one checkout covering several products.

    Stock is checked for every item before anything is written. The sale
    header totals ``max(0, subtotal - sum(discounts))``; each item gets its own
    ``sale`` transaction carrying its discount. Stock decrements are fanned
    out after the transactions are inserted.

    Raises:
        ValueError: If ``items`` is empty or an item is malformed.
        InsufficientStockError: If any product is short; nothing is written.
        RemoteWriteError: If the header or transactions cannot be written.
        PartialWriteError: If transactions were written but some stock
            decrements failed.
    """
    if not items:
        raise ValueError("A bulk sale needs at least one item")

    requested: Dict[str, int] = OrderedDict()
    products: Dict[str, Product] = {}
    for item in items:
        _require_sellable(item.product)
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.discount)
        requested[item.product.id] = requested.get(item.product.id, 0) + item.quantity
        products[item.product.id] = item.product
    for product_id, quantity in requested.items():
        require_stock(products[product_id], quantity)

    when = _resolve_timestamp(timestamp)
    subtotal = sum((item.product.sell_price * item.quantity for item in items), ZERO)
    total_discount = sum((item.discount for item in items), ZERO)
    final_total = max(ZERO, subtotal - total_discount)
    discounted = total_discount > ZERO

    sale_rows = _remote(
        context,
        "Insert sale",
        data_manager.insert_sale,
        {
            "date": when,
            "total_amount": final_total,
            "user_id": actor.user_id,
            "user_name": actor.user_name,
            "payment_method": payment_method,
            "discount": total_discount if discounted else None,
            "original_total": subtotal if discounted else None,
            "notes": f"Discount: ${total_discount:.2f}" if discounted else None,
        },
    )
    sale = mappers.row_to_sale(_first(sale_rows, "sale"))

    payloads = []
    for item in items:
        line_total = item.product.sell_price * item.quantity
        item_discounted = item.discount > ZERO
        payloads.append(
            _transaction_payload(
                item.product,
                quantity=item.quantity,
                price=max(ZERO, line_total - item.discount),
                type_=TransactionType.SALE,
                when=when,
                actor=actor,
                sale_id=sale.id,
                discount=item.discount if item_discounted else None,
                original_price=line_total if item_discounted else None,
            )
        )
    transaction_rows = _remote(context, "Insert sale transactions", data_manager.insert_bulk_transactions, payloads)
    if not transaction_rows:
        raise RemoteWriteError("Failed to create transaction records")
    transactions = tuple(mappers.row_to_transaction(row) for row in transaction_rows)
    sale = replace(sale, items=transactions)

    new_levels = [(product_id, products[product_id].stock_quantity - quantity) for product_id, quantity in requested.items()]
    try:
        update_multiple_product_stocks(context, new_levels)
    except PartialWriteError as exc:
        raise PartialWriteError(
            "Sale was created but some stock levels were not updated. Please check inventory.",
            failures=exc.failures,
            completed=exc.completed,
            sale=sale,
            transactions=transactions,
        ) from exc

    log.info(
        "Recorded bulk sale '%s' with %d item(s) (subtotal=%s, discount=%s, total=%s)",
        sale.id,
        len(items),
        subtotal,
        total_discount,
        final_total,
    )
    updated_products = tuple(
        replace(products[product_id], stock_quantity=quantity) for product_id, quantity in new_levels
    )
    return BulkSaleOutcome(sale=sale, transactions=transactions, products=updated_products)


def record_restock(
    context: RuntimeContext,
    product: Product,
    quantity: int,
    *,
    actor: Actor,
    timestamp: Optional[datetime] = None,
) -> StockOutcome:
    """Add ``quantity`` units to stock and append a ``restock`` transaction.

    The transaction is priced ``cost_price * quantity`` and the product's
    ``last_restocked`` is stamped.

    Raises:
        ValueError: If ``quantity`` is not positive.
        RemoteWriteError: If the data service rejects one of the writes.
    """
    _require_sellable(product)
    require_positive_quantity(quantity)

    when = _resolve_timestamp(timestamp)
    new_quantity = product.stock_quantity + quantity
    update_product_stock(context, product.id, new_quantity)
    update_product_restock_date(context, product.id, when)

    cost = product.cost_price * quantity
    rows = _remote(
        context,
        "Insert restock transaction",
        data_manager.insert_rows,
        data_manager.TRANSACTIONS_TABLE,
        [
            _transaction_payload(
                product,
                quantity=quantity,
                price=cost,
                type_=TransactionType.RESTOCK,
                when=when,
                actor=actor,
            )
        ],
    )
    transaction = mappers.row_to_transaction(_first(rows, "transaction"))
    log.info(
        "Recorded restock '%s' for product '%s' (quantity=%s, cost=%s)",
        transaction.id,
        product.id,
        quantity,
        cost,
    )
    return StockOutcome(
        transaction=transaction,
        product=replace(product, stock_quantity=new_quantity, last_restocked=when),
    )


def adjust_inventory(
    context: RuntimeContext,
    product: Product,
    new_quantity: int,
    *,
    actor: Actor,
    timestamp: Optional[datetime] = None,
) -> StockOutcome:
    """Set stock to ``new_quantity`` and append an ``adjustment`` transaction.

    Adjustments are corrections rather than trade: the transaction records
    the absolute difference as its quantity and always carries a zero price.

    Raises:
        ValueError: If ``new_quantity`` is negative.
        RemoteWriteError: If the data service rejects one of the writes.
    """
    _require_sellable(product)
    require_nonnegative_quantity(new_quantity)

    when = _resolve_timestamp(timestamp)
    difference = abs(new_quantity - product.stock_quantity)
    update_product_stock(context, product.id, new_quantity)

    rows = _remote(
        context,
        "Insert adjustment transaction",
        data_manager.insert_rows,
        data_manager.TRANSACTIONS_TABLE,
        [
            _transaction_payload(
                product,
                quantity=difference,
                price=ZERO,
                type_=TransactionType.ADJUSTMENT,
                when=when,
                actor=actor,
            )
        ],
    )
    transaction = mappers.row_to_transaction(_first(rows, "transaction"))
    log.info(
        "Adjusted product '%s' stock from %s to %s",
        product.id,
        product.stock_quantity,
        new_quantity,
    )
    return StockOutcome(transaction=transaction, product=replace(product, stock_quantity=new_quantity))


def record_monthly_restock(
    context: RuntimeContext,
    updates: Sequence[RestockUpdate],
    *,
    actor: Actor,
    timestamp: Optional[datetime] = None,
) -> Optional[MonthlyRestockOutcome]:
    """Restock many products as one aggregate event.

    Only updates raising a product above its current stock are applied; the
    rest are skipped silently. The aggregate is one parent transaction against
    the bulk restock system product priced at the total cost, plus one child
    ``restock`` transaction per product linked through
    ``parent_transaction_id``.

    Returns:
        MonthlyRestockOutcome | None: ``None`` when no update applies, in which
            case nothing is written.

    Raises:
        BusinessRuleViolation: If any update targets the bulk restock system
            product.
        RemoteWriteError: If the parent or child transactions cannot be
            written.
        PartialWriteError: If transactions were written but some product
            updates failed.
    """
    for update in updates:
        _require_sellable(update.product)
    valid = [update for update in updates if update.new_quantity > update.product.stock_quantity]
    if not valid:
        log.info("Monthly restock skipped: no product needs more stock")
        return None

    when = _resolve_timestamp(timestamp)
    total_cost = sum(
        ((update.new_quantity - update.product.stock_quantity) * update.product.cost_price for update in valid),
        ZERO,
    )

    parent_rows = _remote(
        context,
        "Insert monthly restock",
        data_manager.insert_transaction_with_sale,
        {
            "product_id": BULK_RESTOCK_PRODUCT_ID,
            "product_name": BULK_RESTOCK_PRODUCT_NAME,
            "quantity": 0,
            "price": total_cost,
            "type": TransactionType.RESTOCK.value,
            "date": when,
            "user_id": actor.user_id,
            "user_name": actor.user_name,
        },
    )
    parent = mappers.row_to_transaction(_first(parent_rows, "transaction"))

    child_payloads = []
    for update in valid:
        added = update.new_quantity - update.product.stock_quantity
        child_payloads.append(
            _transaction_payload(
                update.product,
                quantity=added,
                price=added * update.product.cost_price,
                type_=TransactionType.RESTOCK,
                when=when,
                actor=actor,
                parent_transaction_id=parent.id,
            )
        )
    child_rows = _remote(context, "Insert restock lines", data_manager.insert_bulk_transactions, child_payloads)
    children = tuple(mappers.row_to_transaction(row) for row in child_rows)

    try:
        update_multiple_product_stocks(
            context,
            [(update.product.id, update.new_quantity) for update in valid],
            restocked_at=when,
        )
    except PartialWriteError as exc:
        raise PartialWriteError(
            "Restock was logged but some stock levels were not updated. Please check inventory.",
            failures=exc.failures,
            completed=exc.completed,
            transactions=(parent, *children),
        ) from exc

    log.info(
        "Recorded monthly restock '%s' for %d product(s) (total cost=%s)",
        parent.id,
        len(valid),
        total_cost,
    )
    products = tuple(
        replace(update.product, stock_quantity=update.new_quantity, last_restocked=when) for update in valid
    )
    return MonthlyRestockOutcome(parent=parent, children=children, products=products, total_cost=total_cost)


# ---------------------------------------------------------------------------
# Services and finances
# ---------------------------------------------------------------------------


def add_service(
    context: RuntimeContext,
    *,
    name: str,
    price: Decimal,
    description: str = "",
    active: bool = True,
) -> Service:
    require_nonnegative_money(price)
    rows = _remote(
        context,
        "Insert service",
        data_manager.insert_rows,
        data_manager.SERVICES_TABLE,
        [{"name": name, "description": description, "price": price, "active": active}],
    )
    service = mappers.row_to_service(_first(rows, "service"))
    log.info("Added service '%s' (%s)", service.name, service.id)
    return service


SERVICE_FIELDS = ("name", "description", "price", "active")


def update_service(context: RuntimeContext, service_id: str, updates: Mapping[str, Any]) -> None:
    """Apply a partial update to one service.

    Raises:
        KeyError: If ``updates`` names an unknown field.
        MissingReferenceError: If no service has ``service_id``.
    """
    for name in updates:
        if name not in SERVICE_FIELDS:
            raise KeyError(f"Unknown service field: {name}")
    updated = _remote(
        context,
        "Update service",
        data_manager.update_rows,
        data_manager.SERVICES_TABLE,
        filters={"id": service_id},
        values=dict(updates),
    )
    if not updated:
        raise MissingReferenceError(f"Unknown service id: {service_id}")
    log.info("Updated service '%s' fields: %s", service_id, ", ".join(sorted(updates)))


def deactivate_service(context: RuntimeContext, service_id: str) -> None:
    """Soft-delete a service so past income rows keep their reference."""
    update_service(context, service_id, {"active": False})


def _require_active_service(service: Service) -> None:
    if not service.active:
        log.warning("Attempted to sell inactive service '%s'", service.id)
        raise BusinessRuleViolation(f"Service '{service.name}' is inactive")


def _insert_finance(context: RuntimeContext, record: Mapping[str, Any]) -> FinanceRecord:
    payload = dict(record)
    payload["updated_at"] = data_manager.utc_now_iso()
    rows = _remote(context, "Insert finance record", data_manager.insert_rows, data_manager.FINANCES_TABLE, [payload])
    return mappers.row_to_finance_record(_first(rows, "finance"))


def record_service_income(
    context: RuntimeContext,
    service: Service,
    *,
    amount: Optional[Decimal] = None,
    customer_name: Optional[str] = None,
    payment_method: Optional[str] = None,
    tip_amount: Optional[Decimal] = None,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> FinanceRecord:
    """Record income for one service, priced at the service price by default."""
    _require_active_service(service)
    amount = service.price if amount is None else amount
    require_nonnegative_money(amount)
    if tip_amount is not None:
        require_nonnegative_money(tip_amount)

    record = _insert_finance(
        context,
        {
            "type": FinanceType.INCOME.value,
            "date": _resolve_timestamp(timestamp),
            "amount": amount,
            "customer_name": customer_name,
            "service_id": service.id,
            "payment_method": payment_method,
            "tip_amount": tip_amount,
            "category": service.name,
            "description": description,
        },
    )
    log.info("Recorded income '%s' for service '%s' (amount=%s)", record.id, service.id, amount)
    return record


def record_bundled_service_income(
    context: RuntimeContext,
    services: Sequence[Service],
    *,
    discount: Decimal = ZERO,
    customer_name: Optional[str] = None,
    payment_method: Optional[str] = None,
    tip_amount: Optional[Decimal] = None,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> FinanceRecord:
    """Record one income row covering several services sold together.

    The finance table holds a single ``service_id``, so the first service is
    stored there and the full bundle goes into ``category``. The amount is
    ``max(0, sum(prices) - discount)``.

    Raises:
        ValueError: If ``services`` is empty or a money value is negative.
        BusinessRuleViolation: If any service is inactive.
    """
    if not services:
        raise ValueError("A bundled income needs at least one service")
    for service in services:
        _require_active_service(service)
    require_nonnegative_money(discount)
    if tip_amount is not None:
        require_nonnegative_money(tip_amount)

    bundle = BundledServices(
        service_ids=tuple(service.id for service in services),
        service_names=tuple(service.name for service in services),
        service_prices=tuple(service.price for service in services),
        discount=discount,
    )
    amount = max(ZERO, bundle.subtotal - discount)
    names = ", ".join(bundle.service_names)
    record = _insert_finance(
        context,
        {
            "type": FinanceType.INCOME.value,
            "date": _resolve_timestamp(timestamp),
            "amount": amount,
            "customer_name": customer_name,
            "service_id": bundle.service_ids[0],
            "payment_method": payment_method,
            "tip_amount": tip_amount,
            "category": mappers.encode_service_category(bundle),
            "description": f"Services: {names}" + (f"\n\nNote: {description}" if description else ""),
        },
    )
    log.info(
        "Recorded bundled income '%s' for %d service(s) (amount=%s, discount=%s)",
        record.id,
        len(services),
        amount,
        discount,
    )
    return record


def record_expense(
    context: RuntimeContext,
    amount: Decimal,
    *,
    vendor: Optional[str] = None,
    category: Optional[str] = None,
    payment_method: Optional[str] = None,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> FinanceRecord:
    require_nonnegative_money(amount)
    record = _insert_finance(
        context,
        {
            "type": FinanceType.EXPENSE.value,
            "date": _resolve_timestamp(timestamp),
            "amount": amount,
            "vendor": vendor,
            "payment_method": payment_method,
            "category": mappers.encode_service_category(RegularCategory(category)),
            "description": description,
        },
    )
    log.info("Recorded expense '%s' (amount=%s, vendor=%s)", record.id, amount, vendor)
    return record
