"""Row mappers between the data service and the domain entities.

The data service speaks in loosely typed rows: ISO date strings, numeric
cells that may come back as ``int`` or ``float``, blanks stored as ``None`` or
``""``. These helpers are the single point where those rows become typed
:mod:`spa_ledger.models` instances and where entities are flattened back into
rows for writes.
"""

from __future__ import annotations

import json
from dataclasses import fields
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

from . import log
from .constants import (
    BULK_RESTOCK_PRODUCT_ID,
    FinanceType,
    LedgerEntryKind,
    TransactionType,
)
from .models import (
    BundledServices,
    FinanceRecord,
    Product,
    RegularCategory,
    Sale,
    Service,
    ServiceCategory,
    ServiceIncome,
    Transaction,
)

UNCATEGORIZED_ID = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"

PRODUCT_COLUMNS = tuple(item.name for item in fields(Product))


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _optional_text(value: Any) -> Optional[str]:
    return None if _blank(value) else str(value)


def _text(value: Any) -> str:
    return "" if _blank(value) else str(value)


def _decimal(value: Any) -> Decimal:
    return Decimal("0") if _blank(value) else Decimal(str(value))


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return None if _blank(value) else Decimal(str(value))


def _int(value: Any) -> int:
    return 0 if _blank(value) else int(Decimal(str(value)))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a ``datetime`` through) as aware UTC."""

    if _blank(value):
        return None
    moment = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def classify_transaction(product_id: str, type_: TransactionType, parent_transaction_id: Optional[str]) -> LedgerEntryKind:
    """Decide which ledger role a row plays.

    Restocks split three ways: the aggregate row written against the bulk
    restock system product, the per-product lines pointing at such a parent,
    and plain single-product restocks.
    """

    if type_ is TransactionType.RESTOCK:
        if product_id == BULK_RESTOCK_PRODUCT_ID:
            return LedgerEntryKind.RESTOCK_AGGREGATE
        if parent_transaction_id:
            return LedgerEntryKind.RESTOCK_LINE
        return LedgerEntryKind.RESTOCK
    return LedgerEntryKind(type_.value)


def row_to_product(row: Mapping[str, Any]) -> Product:
    return Product(
        id=str(row["id"]),
        name=_text(row.get("name")),
        description=_text(row.get("description")),
        category=_text(row.get("category")),
        cost_price=_decimal(row.get("cost_price")),
        sell_price=_decimal(row.get("sell_price")),
        stock_quantity=_int(row.get("stock_quantity")),
        low_stock_threshold=_int(row.get("low_stock_threshold")),
        last_restocked=parse_timestamp(row.get("last_restocked")),
        image_url=_optional_text(row.get("image_url")),
        size=_optional_text(row.get("size")),
        ingredients=_optional_text(row.get("ingredients")),
        skin_concerns=_optional_text(row.get("skin_concerns")),
    )


def product_to_row(product: Product, *, include_id: bool = True) -> Dict[str, Any]:
    """Flatten a product into a products-table row."""

    row = {name: getattr(product, name) for name in PRODUCT_COLUMNS}
    if not include_id:
        row.pop("id")
    return row


def product_updates_to_row(updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a partial product update and return the matching row values.

    Raises:
        KeyError: If ``updates`` names an attribute products do not have, or
            tries to change the identifier.
    """

    row: Dict[str, Any] = {}
    for name, value in updates.items():
        if name not in PRODUCT_COLUMNS or name == "id":
            raise KeyError(f"Unknown product field: {name}")
        row[name] = value
    return row


def row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    product_id = _text(row.get("product_id"))
    type_ = TransactionType(str(row["type"]))
    parent_id = _optional_text(row.get("parent_transaction_id"))
    return Transaction(
        id=str(row["id"]),
        product_id=product_id,
        product_name=_text(row.get("product_name")),
        quantity=_int(row.get("quantity")),
        price=_decimal(row.get("price")),
        type=type_,
        date=parse_timestamp(row.get("date")),
        user_id=_text(row.get("user_id")),
        user_name=_text(row.get("user_name")),
        sale_id=_optional_text(row.get("sale_id")),
        discount=_optional_decimal(row.get("discount")),
        original_price=_optional_decimal(row.get("original_price")),
        parent_transaction_id=parent_id,
        kind=classify_transaction(product_id, type_, parent_id),
    )


def row_to_sale(row: Mapping[str, Any], items: Iterable[Transaction] = ()) -> Sale:
    return Sale(
        id=str(row["id"]),
        date=parse_timestamp(row.get("date")),
        total_amount=_decimal(row.get("total_amount")),
        user_id=_text(row.get("user_id")),
        user_name=_text(row.get("user_name")),
        payment_method=_optional_text(row.get("payment_method")),
        notes=_optional_text(row.get("notes")),
        discount=_optional_decimal(row.get("discount")),
        original_total=_optional_decimal(row.get("original_total")),
        items=tuple(items),
    )


def row_to_service(row: Mapping[str, Any]) -> Service:
    active = row.get("active")
    return Service(
        id=str(row["id"]),
        name=_text(row.get("name")),
        description=_text(row.get("description")),
        price=_decimal(row.get("price")),
        active=True if active is None else bool(active),
    )


def _reject_constant(token: str) -> Any:
    raise ValueError(f"Unsupported JSON constant: {token}")


def decode_service_category(raw: Any) -> ServiceCategory:
    """Decode the finance ``category`` column into a tagged variant.

    A JSON object carrying ``serviceIds``, ``serviceNames`` and
    ``servicePrices`` lists becomes :class:`BundledServices`. Anything else,
    including unparseable JSON, is treated as a plain category name.
    """

    if _blank(raw):
        return RegularCategory()
    text = str(raw)
    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
    except ValueError:
        return RegularCategory(text)

    if not isinstance(parsed, dict):
        return RegularCategory(text)
    ids = parsed.get("serviceIds")
    names = parsed.get("serviceNames")
    prices = parsed.get("servicePrices")
    if not (isinstance(ids, list) and isinstance(names, list) and isinstance(prices, list)):
        return RegularCategory(text)

    try:
        decoded_prices = tuple(_decimal(prices[idx]) if idx < len(prices) else Decimal("0") for idx in range(len(ids)))
        discount = _decimal(parsed.get("discount"))
    except ArithmeticError:
        log.warning("Discarding malformed bundle prices in finance category: %s", text)
        return RegularCategory(text)
    if not all(value.is_finite() for value in (*decoded_prices, discount)):
        log.warning("Discarding non-finite bundle amounts in finance category: %s", text)
        return RegularCategory(text)

    return BundledServices(
        service_ids=tuple(str(item) for item in ids),
        service_names=tuple(
            str(names[idx]) if idx < len(names) and not _blank(names[idx]) else "Unknown Service"
            for idx in range(len(ids))
        ),
        service_prices=decoded_prices,
        discount=discount,
    )


def encode_service_category(category: ServiceCategory) -> Optional[str]:
    """Inverse of :func:`decode_service_category` for writes."""

    if isinstance(category, RegularCategory):
        return category.name
    return json.dumps(
        {
            "serviceIds": list(category.service_ids),
            "serviceNames": list(category.service_names),
            "servicePrices": [float(price) for price in category.service_prices],
            "discount": float(category.discount),
        }
    )


def row_to_finance_record(row: Mapping[str, Any]) -> FinanceRecord:
    return FinanceRecord(
        id=str(row["id"]),
        type=FinanceType(str(row["type"])),
        date=parse_timestamp(row.get("date")),
        amount=_decimal(row.get("amount")),
        category=decode_service_category(row.get("category")),
        customer_name=_optional_text(row.get("customer_name")),
        service_id=_optional_text(row.get("service_id")),
        payment_method=_optional_text(row.get("payment_method")),
        tip_amount=_optional_decimal(row.get("tip_amount")),
        vendor=_optional_text(row.get("vendor")),
        description=_optional_text(row.get("description")),
    )


def row_to_service_income(row: Mapping[str, Any], service_names: Mapping[str, str]) -> ServiceIncome:
    """Project an income finance row onto the service it paid for.

    The service name comes from ``service_names`` (the services table join),
    falling back to the category text and finally to ``"Uncategorized"``.
    """

    record = row_to_finance_record(row)
    category_text = _optional_text(row.get("category"))
    service_id = record.service_id or category_text or UNCATEGORIZED_ID
    service_name = (
        (service_names.get(record.service_id) if record.service_id else None)
        or category_text
        or UNCATEGORIZED_NAME
    )
    return ServiceIncome(
        id=record.id,
        service_id=service_id,
        service_name=service_name,
        amount=record.amount,
        date=record.date,
        customer_name=record.customer_name,
        category=record.category,
    )
