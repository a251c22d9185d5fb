"""Domain entities shared by the ledger service, the store, and metrics.

Rows coming from the data service are converted into these dataclasses by
:mod:`spa_ledger.mappers`; nothing downstream of the mappers touches raw
snake_case rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union

from .constants import (
    BULK_RESTOCK_PRODUCT_ID,
    UNKNOWN_USER_ID,
    UNKNOWN_USER_NAME,
    FinanceType,
    LedgerEntryKind,
    TransactionType,
)


@dataclass(frozen=True)
class Actor:
    """User stamped onto every row the ledger writes."""

    user_id: str = UNKNOWN_USER_ID
    user_name: str = UNKNOWN_USER_NAME


@dataclass(frozen=True)
class Product:
    """Catalog entry with its current stock level."""

    id: str
    name: str
    description: str
    category: str
    cost_price: Decimal
    sell_price: Decimal
    stock_quantity: int
    low_stock_threshold: int
    last_restocked: Optional[datetime] = None
    image_url: Optional[str] = None
    size: Optional[str] = None
    ingredients: Optional[str] = None
    skin_concerns: Optional[str] = None

    @property
    def is_system_product(self) -> bool:
        return self.id == BULK_RESTOCK_PRODUCT_ID

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.low_stock_threshold

    @property
    def inventory_value(self) -> Decimal:
        return self.cost_price * self.stock_quantity


@dataclass(frozen=True)
class Service:
    """Sellable service; inactive services are hidden rather than deleted."""

    id: str
    name: str
    description: str
    price: Decimal
    active: bool = True


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger row recording one stock-affecting event."""

    id: str
    product_id: str
    product_name: str
    quantity: int
    price: Decimal
    type: TransactionType
    date: datetime
    user_id: str
    user_name: str
    sale_id: Optional[str] = None
    discount: Optional[Decimal] = None
    original_price: Optional[Decimal] = None
    parent_transaction_id: Optional[str] = None
    kind: LedgerEntryKind = LedgerEntryKind.SALE


@dataclass(frozen=True)
class Sale:
    """Checkout header grouping the line transactions that share its id."""

    id: str
    date: datetime
    total_amount: Decimal
    user_id: str
    user_name: str
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    discount: Optional[Decimal] = None
    original_total: Optional[Decimal] = None
    items: Tuple[Transaction, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RegularCategory:
    """Plain finance category (or none at all)."""

    name: Optional[str] = None


@dataclass(frozen=True)
class BundledServices:
    """Several services sold together under one finance row."""

    service_ids: Tuple[str, ...]
    service_names: Tuple[str, ...]
    service_prices: Tuple[Decimal, ...]
    discount: Decimal = Decimal("0")

    @property
    def subtotal(self) -> Decimal:
        return sum(self.service_prices, Decimal("0"))


ServiceCategory = Union[RegularCategory, BundledServices]


@dataclass(frozen=True)
class FinanceRecord:
    """Income or expense row from the finances table."""

    id: str
    type: FinanceType
    date: datetime
    amount: Decimal
    category: ServiceCategory = field(default_factory=RegularCategory)
    customer_name: Optional[str] = None
    service_id: Optional[str] = None
    payment_method: Optional[str] = None
    tip_amount: Optional[Decimal] = None
    vendor: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class ServiceIncome:
    """Income row resolved to the service it paid for."""

    id: str
    service_id: str
    service_name: str
    amount: Decimal
    date: datetime
    customer_name: Optional[str] = None
    category: ServiceCategory = field(default_factory=RegularCategory)
