"""Metrics derived from the cached ledger.

Everything here is a pure function over lists already held by
:class:`spa_ledger.store.LedgerStore`: no I/O except :func:`export_to_csv`.
Windows are evaluated against an explicit ``now`` captured by
:func:`get_date_ranges` so results are reproducible in tests.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set

from . import log
from .constants import FinanceType, TimeRange, TransactionType
from .ledger_service import allocate_discount
from .models import BundledServices, FinanceRecord, Product, Sale, ServiceIncome, Transaction

ZERO = Decimal("0")
CENTS = Decimal("0.01")
UNKNOWN_SERVICE_ID = "unknown"
UNKNOWN_SERVICE_NAME = "Unknown Service"
UNCATEGORIZED = "Uncategorized"
NO_SERVICES = "No services"
NO_VENDORS = "No vendors"

PRODUCT_CSV_HEADER = ("Product Name", "Total Sold", "Total Revenue", "Cost Price", "Profit")
SERVICE_CSV_HEADER = ("Service Name", "Total Sold", "Total Revenue", "Unique Customers")


@dataclass(frozen=True)
class DateRanges:
    """Window boundaries computed once from a reference instant."""

    today: datetime
    seven_days_ago: datetime
    thirty_days_ago: datetime
    start_of_month: datetime
    start_of_today: datetime
    start_of_yesterday: datetime
    end_of_yesterday: datetime


@dataclass(frozen=True)
class ProductMetric:
    id: str
    name: str
    total_sold: int
    total_revenue: Decimal
    cost_price: Decimal
    profit: Decimal


@dataclass(frozen=True)
class SalesDataPoint:
    date: str
    revenue: Decimal


@dataclass(frozen=True)
class CategoryDataPoint:
    name: str
    value: Decimal


@dataclass(frozen=True)
class ServiceMetric:
    id: str
    name: str
    total_sold: int
    total_revenue: Decimal
    customers: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def unique_customers(self) -> int:
        return len(self.customers)


@dataclass(frozen=True)
class TotalMetrics:
    total_revenue: Decimal
    total_items_sold: int
    total_profit: Decimal


@dataclass(frozen=True)
class ProductSummary:
    today: TotalMetrics
    yesterday: TotalMetrics


@dataclass(frozen=True)
class ServiceTotals:
    revenue: Decimal
    services_provided: int
    unique_customers: int


@dataclass(frozen=True)
class ServiceSummary:
    today: ServiceTotals
    yesterday: ServiceTotals


@dataclass(frozen=True)
class FinanceSummary:
    total_income: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    top_service_name: str
    top_service_amount: Decimal
    top_vendor: str
    top_vendor_amount: Decimal


# ---------------------------------------------------------------------------
# Windows and filters
# ---------------------------------------------------------------------------


def get_date_ranges(now: Optional[datetime] = None) -> DateRanges:
    """Compute the dashboard windows relative to ``now`` (default: current UTC time)."""
    today = now if now is not None else datetime.now(UTC)
    start_of_today = today.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_yesterday = start_of_today - timedelta(days=1)
    return DateRanges(
        today=today,
        seven_days_ago=today - timedelta(days=7),
        thirty_days_ago=today - timedelta(days=30),
        start_of_month=start_of_today.replace(day=1),
        start_of_today=start_of_today,
        start_of_yesterday=start_of_yesterday,
        end_of_yesterday=start_of_today - timedelta(microseconds=1),
    )


def in_time_range(moment: datetime, time_range: TimeRange, ranges: DateRanges) -> bool:
    """Return whether ``moment`` falls inside the dashboard window.

    The monthly view covers all time.
    """
    if time_range is TimeRange.LAST_7_DAYS:
        return moment >= ranges.seven_days_ago
    if time_range is TimeRange.LAST_30_DAYS:
        return moment >= ranges.thirty_days_ago
    return True


def filter_transactions_by_type(transactions: Iterable[Transaction], type_: TransactionType) -> List[Transaction]:
    return [transaction for transaction in transactions if transaction.type is type_]


def filter_transactions_by_date_range(
    transactions: Iterable[Transaction],
    start: datetime,
    end: Optional[datetime] = None,
) -> List[Transaction]:
    """Keep transactions dated at or after ``start`` and, if given, at or before ``end``."""
    return [
        transaction
        for transaction in transactions
        if transaction.date >= start and (end is None or transaction.date <= end)
    ]


def filter_service_incomes_by_day_range(
    incomes: Iterable[ServiceIncome],
    start: datetime,
    end: datetime,
) -> List[ServiceIncome]:
    return [income for income in incomes if start <= income.date <= end]


def sellable_products(products: Iterable[Product]) -> List[Product]:
    return [product for product in products if not product.is_system_product]


def sellable_sales_transactions(transactions: Iterable[Transaction], products: Iterable[Product]) -> List[Transaction]:
    """Sale transactions for catalog products, excluding system rows and unknown products."""
    known = {product.id for product in sellable_products(products)}
    return [
        transaction
        for transaction in filter_transactions_by_type(transactions, TransactionType.SALE)
        if transaction.product_id in known
    ]


# ---------------------------------------------------------------------------
# Product metrics
# ---------------------------------------------------------------------------


def calculate_product_performance(
    sales_transactions: Iterable[Transaction],
    products: Iterable[Product],
) -> List[ProductMetric]:
    """Group sale transactions by product, most profitable first.

    Profit is ``revenue - cost_price * quantity`` per transaction; transactions
    for products missing from ``products`` are ignored.
    """
    catalog = {product.id: product for product in products}
    sold: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    profit: Dict[str, Decimal] = {}
    for transaction in sales_transactions:
        product = catalog.get(transaction.product_id)
        if product is None:
            continue
        sold[product.id] = sold.get(product.id, 0) + transaction.quantity
        revenue[product.id] = revenue.get(product.id, ZERO) + transaction.price
        profit[product.id] = profit.get(product.id, ZERO) + (
            transaction.price - product.cost_price * transaction.quantity
        )

    metrics = [
        ProductMetric(
            id=product_id,
            name=catalog[product_id].name,
            total_sold=sold[product_id],
            total_revenue=revenue[product_id],
            cost_price=catalog[product_id].cost_price,
            profit=profit[product_id],
        )
        for product_id in sold
    ]
    return sorted(metrics, key=lambda metric: metric.profit, reverse=True)


def calculate_sales_data(sales: Iterable[Sale], time_range: TimeRange, ranges: DateRanges) -> List[SalesDataPoint]:
    """Sum sale header totals per UTC calendar day, oldest day first."""
    by_day: Dict[str, Decimal] = {}
    for sale in sales:
        if not in_time_range(sale.date, time_range, ranges):
            continue
        day = sale.date.astimezone(UTC).date().isoformat()
        by_day[day] = by_day.get(day, ZERO) + sale.total_amount
    return [SalesDataPoint(date=day, revenue=by_day[day]) for day in sorted(by_day)]


def calculate_product_categories(
    sales_transactions: Iterable[Transaction],
    products: Iterable[Product],
) -> List[CategoryDataPoint]:
    catalog = {product.id: product for product in products}
    by_category: Dict[str, Decimal] = {}
    for transaction in sales_transactions:
        product = catalog.get(transaction.product_id)
        if product is None:
            continue
        category = product.category or UNCATEGORIZED
        by_category[category] = by_category.get(category, ZERO) + transaction.price
    return [CategoryDataPoint(name=name, value=value) for name, value in by_category.items()]


def calculate_total_metrics(transactions: Iterable[Transaction], products: Iterable[Product]) -> TotalMetrics:
    catalog = {product.id: product for product in products}
    revenue = ZERO
    items_sold = 0
    profit = ZERO
    for transaction in transactions:
        revenue += transaction.price
        items_sold += transaction.quantity
        product = catalog.get(transaction.product_id)
        if product is not None:
            profit += transaction.price - product.cost_price * transaction.quantity
    return TotalMetrics(total_revenue=revenue, total_items_sold=items_sold, total_profit=profit)


def summarize_product_metrics(
    products: Sequence[Product],
    transactions: Sequence[Transaction],
    ranges: DateRanges,
) -> ProductSummary:
    """Today's and yesterday's product totals over sellable sale transactions."""
    catalog = sellable_products(products)
    sales = sellable_sales_transactions(transactions, catalog)
    today = filter_transactions_by_date_range(sales, ranges.start_of_today)
    yesterday = filter_transactions_by_date_range(sales, ranges.start_of_yesterday, ranges.end_of_yesterday)
    return ProductSummary(
        today=calculate_total_metrics(today, catalog),
        yesterday=calculate_total_metrics(yesterday, catalog),
    )


# ---------------------------------------------------------------------------
# Service metrics
# ---------------------------------------------------------------------------


class _ServiceAccumulator:
    __slots__ = ("id", "name", "total_sold", "total_revenue", "customers")

    def __init__(self, service_id: str, name: str) -> None:
        self.id = service_id
        self.name = name
        self.total_sold = 0
        self.total_revenue = ZERO
        self.customers: Set[str] = set()

    def add(self, amount: Decimal, customer_name: Optional[str]) -> None:
        self.total_sold += 1
        self.total_revenue += amount
        if customer_name:
            self.customers.add(customer_name)

    def freeze(self) -> ServiceMetric:
        return ServiceMetric(
            id=self.id,
            name=self.name,
            total_sold=self.total_sold,
            total_revenue=self.total_revenue,
            customers=frozenset(self.customers),
        )


def _accumulate_income(income: ServiceIncome, accumulators: Dict[str, _ServiceAccumulator]) -> None:
    category = income.category
    if isinstance(category, BundledServices):
        net_prices = allocate_discount(category.service_prices, category.discount)
        for service_id, name, net in zip(category.service_ids, category.service_names, net_prices):
            entry = accumulators.setdefault(service_id, _ServiceAccumulator(service_id, name))
            entry.add(net, income.customer_name)
        return

    service_id = income.service_id or UNKNOWN_SERVICE_ID
    entry = accumulators.setdefault(
        service_id,
        _ServiceAccumulator(service_id, income.service_name or UNKNOWN_SERVICE_NAME),
    )
    entry.add(income.amount, income.customer_name)


def calculate_services_data(
    service_incomes: Iterable[ServiceIncome],
    time_range: Optional[TimeRange],
    ranges: DateRanges,
) -> List[ServiceMetric]:
    """Group service incomes by service, highest revenue first.

    Bundled rows expand into one occurrence per component service with the
    discount allocated proportionally. ``time_range=None`` skips window
    filtering for callers that pre-filtered the incomes.
    """
    accumulators: Dict[str, _ServiceAccumulator] = {}
    for income in service_incomes:
        if time_range is not None and not in_time_range(income.date, time_range, ranges):
            continue
        _accumulate_income(income, accumulators)
    metrics = [entry.freeze() for entry in accumulators.values()]
    return sorted(metrics, key=lambda metric: metric.total_revenue, reverse=True)


def calculate_service_type_data(services_data: Iterable[ServiceMetric]) -> List[CategoryDataPoint]:
    return [CategoryDataPoint(name=metric.name, value=metric.total_revenue) for metric in services_data]


def calculate_unique_customers(
    service_incomes: Iterable[ServiceIncome],
    time_range: TimeRange,
    ranges: DateRanges,
) -> int:
    return len(
        {
            income.customer_name
            for income in service_incomes
            if income.customer_name and in_time_range(income.date, time_range, ranges)
        }
    )


def _service_totals(metrics: Sequence[ServiceMetric]) -> ServiceTotals:
    customers: Set[str] = set()
    for metric in metrics:
        customers.update(metric.customers)
    return ServiceTotals(
        revenue=sum((metric.total_revenue for metric in metrics), ZERO),
        services_provided=sum(metric.total_sold for metric in metrics),
        unique_customers=len(customers),
    )


def summarize_service_metrics(service_incomes: Sequence[ServiceIncome], ranges: DateRanges) -> ServiceSummary:
    today = filter_service_incomes_by_day_range(service_incomes, ranges.start_of_today, ranges.today)
    yesterday = filter_service_incomes_by_day_range(
        service_incomes,
        ranges.start_of_yesterday,
        ranges.end_of_yesterday,
    )
    return ServiceSummary(
        today=_service_totals(calculate_services_data(today, None, ranges)),
        yesterday=_service_totals(calculate_services_data(yesterday, None, ranges)),
    )


# ---------------------------------------------------------------------------
# Finances
# ---------------------------------------------------------------------------


def summarize_finances(
    records: Iterable[FinanceRecord],
    ranges: DateRanges,
    service_names: Mapping[str, str],
) -> FinanceSummary:
    """Income, expenses and net profit since the start of the current month.

    Tips are not income. The top service and top vendor are the largest single
    income or expense on record regardless of the month.
    """
    records = list(records)
    month = [record for record in records if record.date >= ranges.start_of_month]
    total_income = sum((record.amount for record in month if record.type is FinanceType.INCOME), ZERO)
    total_expenses = sum((record.amount for record in month if record.type is FinanceType.EXPENSE), ZERO)

    incomes = [record for record in records if record.type is FinanceType.INCOME and record.service_id]
    expenses = [record for record in records if record.type is FinanceType.EXPENSE and record.vendor]
    top_income = max(incomes, key=lambda record: record.amount, default=None)
    top_expense = max(expenses, key=lambda record: record.amount, default=None)

    return FinanceSummary(
        total_income=total_income,
        total_expenses=total_expenses,
        net_profit=total_income - total_expenses,
        top_service_name=(
            service_names.get(top_income.service_id, UNKNOWN_SERVICE_NAME) if top_income else NO_SERVICES
        ),
        top_service_amount=top_income.amount if top_income else ZERO,
        top_vendor=top_expense.vendor if top_expense else NO_VENDORS,
        top_vendor_amount=top_expense.amount if top_expense else ZERO,
    )


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_csv_data(rows: Sequence[Any], is_products: bool) -> str:
    """Render product or service metrics as CSV text.

    Names are quoted and money columns carry exactly two decimals. The output
    holds one header line plus one line per row.
    """
    buffer = io.StringIO()
    header = PRODUCT_CSV_HEADER if is_products else SERVICE_CSV_HEADER
    buffer.write(",".join(header) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    for row in rows:
        if is_products:
            writer.writerow(
                [
                    row.name,
                    row.total_sold,
                    _money(row.total_revenue),
                    _money(row.cost_price),
                    _money(row.profit),
                ]
            )
        else:
            writer.writerow(
                [
                    row.name,
                    row.total_sold,
                    _money(row.total_revenue),
                    row.unique_customers,
                ]
            )
    return buffer.getvalue()


def export_filename(is_products: bool, on: Optional[date] = None) -> str:
    kind = "product" if is_products else "service"
    stamp = (on if on is not None else datetime.now(UTC).date()).isoformat()
    return f"spa-{kind}-performance-{stamp}.csv"


def export_to_csv(
    rows: Sequence[Any],
    is_products: bool,
    directory: Path,
    *,
    on: Optional[date] = None,
) -> Path:
    """Write :func:`generate_csv_data` output to a dated file in ``directory``."""
    directory = Path(directory).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / export_filename(is_products, on)
    with target.open("w", encoding="utf-8", newline="") as handle:
        handle.write(generate_csv_data(rows, is_products))
    log.info("Exported %d %s metric row(s) to '%s'", len(rows), "product" if is_products else "service", target)
    return target
