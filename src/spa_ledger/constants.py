"""Enumerations and identifiers shared across the spa ledger modules.

Keeps table names, ledger entry types, and the reserved system product id in
one place so the data service, the ledger service, the store, and the metrics
layer agree on the same literal values.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Reserved product row standing in for an aggregate monthly restock. Child
# restock lines point at a transaction written against this product.
BULK_RESTOCK_PRODUCT_ID = "11111111-1111-1111-1111-111111111111"
BULK_RESTOCK_PRODUCT_NAME = "Monthly Inventory Restock"

UNKNOWN_USER_ID = "unknown"
UNKNOWN_USER_NAME = "Unknown User"


class TransactionType(str, Enum):
    """Enumerate the transaction types stored in the ledger."""

    SALE = "sale"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RETURN = "return"


class LedgerEntryKind(str, Enum):
    """Discriminate ledger rows, including the two restock roles."""

    SALE = "sale"
    RESTOCK = "restock"
    RESTOCK_AGGREGATE = "restock_aggregate"
    RESTOCK_LINE = "restock_line"
    ADJUSTMENT = "adjustment"
    RETURN = "return"


class FinanceType(str, Enum):
    """Enumerate finance record types."""

    INCOME = "income"
    EXPENSE = "expense"


class PaymentMethod(str, Enum):
    """Enumerate accepted payment methods."""

    CASH = "cash"
    CARD = "card"
    VENMO = "venmo"
    ZELLE = "zelle"
    CASHAPP = "cashapp"
    PAYPAL = "paypal"
    APPLEPAY = "applepay"
    GOOGLEPAY = "googlepay"
    OTHER = "other"


class TableName(str, Enum):
    """Enumerate the tables (workbook sheets) managed by the data service."""

    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    SALES = "sales"
    SERVICES = "services"
    FINANCES = "finances"


class TimeRange(str, Enum):
    """Enumerate the metrics dashboard windows."""

    LAST_7_DAYS = "7days"
    LAST_30_DAYS = "30days"
    MONTHLY = "monthly"


class NotificationLevel(str, Enum):
    """Enumerate the severities of user-facing notifications."""

    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "BULK_RESTOCK_PRODUCT_ID",
    "BULK_RESTOCK_PRODUCT_NAME",
    "UNKNOWN_USER_ID",
    "UNKNOWN_USER_NAME",
    "TransactionType",
    "LedgerEntryKind",
    "FinanceType",
    "PaymentMethod",
    "TableName",
    "TimeRange",
    "NotificationLevel",
]
