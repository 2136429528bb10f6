"""Business logic layer for the sales bonus report.

This module contains the aggregation engine that turns an immutable
:class:`~sales_bonus.data_manager.Dataset` into per-seller statistics and the
orchestrator that runs a bonus strategy over them. It consumes the data layer
only for loading; every computation below works on in-memory rows and never
rounds money until a report row is assembled.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC, Sequence as SequenceABC
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, DivisionByZero, InvalidOperation, localcontext
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar, Union

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MONEY_QUANTUM,
    TOP_PRODUCTS_LIMIT,
    TREND_TOLERANCE,
    BonusCategory,
    BonusMode,
    OrderingMode,
)
from .data_manager import Customer, Dataset, LineItem, Product, PurchaseRecord, Seller


T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

RevenueFunction = Callable[[LineItem, Product], Decimal]


class SalesReportError(Exception):
    """Base class for every error raised while building a sales report."""


class ConfigurationError(SalesReportError, ValueError):
    """Raised when the dataset shape or report options are unusable."""


class MissingReferenceError(SalesReportError, LookupError):
    """Raised when a line item references a SKU missing from the catalogue."""


class BonusRuleError(SalesReportError):
    """Raised when a bonus rule cannot be evaluated against the statistics."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the dataset loaded for a report run."""

    settings: data_manager.ConfigSettings
    dataset: Dataset


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the configured dataset.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Settings plus the fully resident dataset.

    Raises:
        FileNotFoundError: If the configuration file or dataset cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    dataset = data_manager.load_dataset(settings.data_file)
    log.info("Loaded runtime context for dataset '%s'", settings.data_file)
    return RuntimeContext(settings=settings, dataset=dataset)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that the configured dataset schema matches this release.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        raise RuntimeError(
            "Dataset schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def round_money(value: Decimal) -> Decimal:
    """Quantize a monetary value to cents using half-up rounding."""
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def _require_sequence(value: Any, name: str) -> Sequence[Any]:
    if isinstance(value, (str, bytes, MappingABC)) or not isinstance(value, SequenceABC):
        raise TypeError(f"'{name}' must be a sequence, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Grouping and trends
# ---------------------------------------------------------------------------


def group_by(items: Iterable[T], key_fn: Callable[[T], K]) -> Dict[K, List[T]]:
    """Partition ``items`` by the key derived through ``key_fn``.

    Groups appear in first-seen key order and each group keeps the input order
    of its members. Every item lands in exactly one group.

    Raises:
        TypeError: If ``items`` is a string, a mapping, or not iterable.
    """
    if isinstance(items, (str, bytes, MappingABC)) or not isinstance(items, Iterable):
        raise TypeError(f"'items' must be an iterable of rows, got {type(items).__name__}")

    groups: Dict[K, List[T]] = {}
    for item in items:
        groups.setdefault(key_fn(item), []).append(item)
    return groups


@dataclass(frozen=True)
class TrendResult:
    """Stability and direction of a numeric series."""

    is_stable: bool
    is_increasing: bool
    is_decreasing: bool


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def analyze_sequence(samples: Sequence[Any], tolerance: Any = TREND_TOLERANCE) -> TrendResult:
    """Classify a time-ordered series as stable, increasing, or decreasing.

    Direction compares only the last sample with the first. Stability requires
    every step's relative change ``|cur - prev| / |prev|`` to stay within
    ``tolerance``; the scan stops at the first step that exceeds it. The two
    verdicts are independent, so a series can be increasing and unstable.

    A zero previous sample gives an infinite relative change and therefore an
    unstable series, unless the next sample is zero as well (``0 / 0`` is NaN
    and never exceeds the tolerance).

    Args:
        samples (Sequence): Numeric samples in chronological order.
        tolerance: Allowed relative change between neighbours, ``0.05`` by
            default.

    Returns:
        TrendResult: The three flags. Fewer than two samples are trivially
            stable with no direction.

    Raises:
        TypeError: If ``samples`` is not a sequence.
    """
    values = [_as_decimal(sample) for sample in _require_sequence(samples, "samples")]
    if len(values) < 2:
        return TrendResult(is_stable=True, is_increasing=False, is_decreasing=False)

    limit = _as_decimal(tolerance)
    total_change = values[-1] - values[0]
    is_stable = True
    with localcontext() as ctx:
        ctx.traps[DivisionByZero] = False
        ctx.traps[InvalidOperation] = False
        for previous, current in zip(values, values[1:]):
            relative_change = abs(current - previous) / abs(previous)
            if relative_change > limit:
                is_stable = False
                break

    return TrendResult(
        is_stable=is_stable,
        is_increasing=total_change > 0,
        is_decreasing=total_change < 0,
    )


def calculate_average(values: Sequence[Decimal]) -> Decimal:
    """Arithmetic mean of ``values``; an empty sequence averages to zero."""
    if not values:
        return Decimal("0")
    return sum(values, Decimal("0")) / len(values)


# ---------------------------------------------------------------------------
# Revenue functions
# ---------------------------------------------------------------------------


def calculate_simple_revenue(item: LineItem, product: Product) -> Decimal:
    """Discounted revenue of a line item: ``price * qty * (1 - discount/100)``."""
    return item.sale_price * item.quantity * (1 - item.discount / Decimal(100))


def calculate_item_profit(item: LineItem, product: Product) -> Decimal:
    """Discounted revenue of a line item minus its purchase cost."""
    return calculate_simple_revenue(item, product) - product.purchase_price * item.quantity


REVENUE_FUNCTIONS: Dict[str, RevenueFunction] = {
    "revenue": calculate_simple_revenue,
    "profit": calculate_item_profit,
}


def resolve_revenue_function(name: str) -> RevenueFunction:
    """Look up a revenue function by its configuration name.

    Raises:
        ConfigurationError: If ``name`` is not registered.
    """
    try:
        return REVENUE_FUNCTIONS[name]
    except KeyError as exc:
        known = ", ".join(REVENUE_FUNCTIONS)
        raise ConfigurationError(f"Unknown revenue function '{name}' (expected one of: {known})") from exc


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TopProduct:
    """A SKU and the quantity a seller sold of it."""

    sku: str
    quantity: int

    def to_dict(self) -> Dict[str, Any]:
        return {"sku": self.sku, "quantity": self.quantity}


@dataclass
class SellerStats:
    """Running totals for one seller."""

    revenue: Decimal = Decimal("0")
    profit: Decimal = Decimal("0")
    sale_count: int = 0
    items: List[LineItem] = field(default_factory=list)
    products_sold: Dict[str, int] = field(default_factory=dict)
    customer_ids: Set[str] = field(default_factory=set)

    def top_products(self, limit: int = TOP_PRODUCTS_LIMIT) -> Tuple[TopProduct, ...]:
        """Best-selling SKUs by quantity, descending; ties keep first-seen order."""
        ranked = sorted(self.products_sold.items(), key=lambda entry: entry[1], reverse=True)
        return tuple(TopProduct(sku=sku, quantity=quantity) for sku, quantity in ranked[:limit])

    def absorb(self, other: "SellerStats") -> None:
        self.revenue += other.revenue
        self.profit += other.profit
        self.sale_count += other.sale_count
        self.items.extend(other.items)
        for sku, quantity in other.products_sold.items():
            self.products_sold[sku] = self.products_sold.get(sku, 0) + quantity
        self.customer_ids |= other.customer_ids


@dataclass
class CustomerStats:
    """Running totals for one customer."""

    revenue: Decimal = Decimal("0")
    profit: Decimal = Decimal("0")
    # insertion-ordered set: sellers in the order they first served this customer
    seller_ids: Dict[str, None] = field(default_factory=dict)

    def absorb(self, other: "CustomerStats") -> None:
        self.revenue += other.revenue
        self.profit += other.profit
        self.seller_ids.update(other.seller_ids)


@dataclass
class ProductStats:
    """Running totals for one SKU across all sellers."""

    quantity: int = 0
    revenue: Decimal = Decimal("0")

    def absorb(self, other: "ProductStats") -> None:
        self.quantity += other.quantity
        self.revenue += other.revenue


@dataclass(frozen=True)
class SalesStatistics:
    """Per-seller, per-customer, and per-product totals of one pass."""

    sellers: Dict[str, SellerStats]
    customers: Dict[str, CustomerStats]
    products: Dict[str, ProductStats]


def index_products(products: Sequence[Product]) -> Dict[str, Product]:
    """Map SKU to product.

    Raises:
        TypeError: If ``products`` is not a sequence.
        ConfigurationError: If two products share a SKU.
    """
    by_sku: Dict[str, Product] = {}
    for product in _require_sequence(products, "products"):
        if product.sku in by_sku:
            raise ConfigurationError(f"Duplicate product SKU '{product.sku}'")
        by_sku[product.sku] = product
    return by_sku


class _StatisticsBuilder:
    """Owns the accumulators while records are folded in."""

    def __init__(self, revenue_function: RevenueFunction, products_by_sku: Dict[str, Product]) -> None:
        self._revenue_function = revenue_function
        self._products_by_sku = products_by_sku
        self._sellers: Optional[Dict[str, SellerStats]] = {}
        self._customers: Optional[Dict[str, CustomerStats]] = {}
        self._products: Optional[Dict[str, ProductStats]] = {}

    def add_record(self, record: PurchaseRecord) -> None:
        if self._sellers is None:
            raise RuntimeError("Statistics were already built")

        seller = self._sellers.setdefault(record.seller_id, SellerStats())
        customer = self._customers.setdefault(record.customer_id, CustomerStats())
        seller.sale_count += 1

        for item in record.items:
            try:
                product = self._products_by_sku[item.sku]
            except KeyError as exc:
                raise MissingReferenceError(
                    f"Receipt '{record.receipt_id}' references unknown SKU '{item.sku}'"
                ) from exc

            revenue = calculate_simple_revenue(item, product)
            profit = self._revenue_function(item, product)

            seller.revenue += revenue
            seller.profit += profit
            seller.items.append(item)
            seller.products_sold[item.sku] = seller.products_sold.get(item.sku, 0) + item.quantity
            seller.customer_ids.add(record.customer_id)

            customer.revenue += revenue
            customer.profit += profit
            customer.seller_ids.setdefault(record.seller_id)

            product_stats = self._products.setdefault(item.sku, ProductStats())
            product_stats.quantity += item.quantity
            product_stats.revenue += revenue

    def build(self) -> SalesStatistics:
        if self._sellers is None:
            raise RuntimeError("Statistics were already built")
        stats = SalesStatistics(sellers=self._sellers, customers=self._customers, products=self._products)
        self._sellers = self._customers = self._products = None
        return stats


def aggregate_statistics(
    records: Sequence[PurchaseRecord],
    revenue_function: RevenueFunction,
    products: Sequence[Product],
) -> SalesStatistics:
    """Fold every purchase record into seller, customer, and product totals.

    One linear pass over all line items. Item revenue always uses
    :func:`calculate_simple_revenue`; item profit uses ``revenue_function`` so
    callers decide which figure drives profit-based rankings.

    Args:
        records (Sequence[PurchaseRecord]): Purchase records in input order.
        revenue_function (RevenueFunction): ``(item, product) -> Decimal``.
        products (Sequence[Product]): Catalogue used to resolve SKUs.

    Returns:
        SalesStatistics: Fully built totals. Entries appear in first-seen
            order.

    Raises:
        TypeError: If ``records`` or ``products`` is not a sequence.
        MissingReferenceError: If a line item's SKU is not in ``products``.
    """
    records = _require_sequence(records, "records")
    builder = _StatisticsBuilder(revenue_function, index_products(products))
    for record in records:
        builder.add_record(record)
    stats = builder.build()
    log.debug(
        "Aggregated %d records into %d sellers, %d customers, %d products",
        len(records),
        len(stats.sellers),
        len(stats.customers),
        len(stats.products),
    )
    return stats


def merge_statistics(parts: Iterable[SalesStatistics]) -> SalesStatistics:
    """Combine statistics built over disjoint shards of the same dataset.

    Totals are summed and id sets are unioned. Merge before ranking or
    top-product selection; the first-seen order of the merged mappings follows
    the order of ``parts``.
    """
    merged = SalesStatistics(sellers={}, customers={}, products={})
    for part in parts:
        for seller_id, seller in part.sellers.items():
            merged.sellers.setdefault(seller_id, SellerStats()).absorb(seller)
        for customer_id, customer in part.customers.items():
            merged.customers.setdefault(customer_id, CustomerStats()).absorb(customer)
        for sku, product in part.products.items():
            merged.products.setdefault(sku, ProductStats()).absorb(product)
    return merged


# ---------------------------------------------------------------------------
# Bonus strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BonusAward:
    """A bonus granted to one seller."""

    seller_id: str
    category: BonusCategory
    bonus: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category.value, "seller_id": self.seller_id, "bonus": float(self.bonus)}


@dataclass(frozen=True)
class NoWinner:
    """Outcome of a rule for which no seller qualified."""

    category: BonusCategory
    bonus: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category.value, "seller_id": None, "bonus": float(self.bonus)}


BonusOutcome = Union[BonusAward, NoWinner]


@dataclass(frozen=True)
class BonusContext:
    """Everything an aggregate bonus rule may look at."""

    stats: SalesStatistics
    records_by_seller: Dict[str, List[PurchaseRecord]]
    records_by_customer: Dict[str, List[PurchaseRecord]]
    items_by_product: Dict[str, List[LineItem]]
    sellers: Sequence[Seller]
    customers: Sequence[Customer]
    products: Sequence[Product]
    products_by_sku: Dict[str, Product]
    revenue_function: RevenueFunction


AggregateBonusRule = Callable[[BonusContext], BonusOutcome]
RankBonusFunction = Callable[[int, int, SellerStats], Decimal]


@dataclass(frozen=True)
class AggregateBonusStrategy:
    """Run one or more aggregate rules; report rows keep input order."""

    rules: Tuple[AggregateBonusRule, ...]

    mode: ClassVar[BonusMode] = BonusMode.AGGREGATE
    ordering: ClassVar[OrderingMode] = OrderingMode.INPUT

    def __post_init__(self) -> None:
        rules = tuple(self.rules or ())
        if not rules:
            raise ConfigurationError("Aggregate bonus strategy requires at least one rule")
        for rule in rules:
            if not callable(rule):
                raise ConfigurationError(f"Bonus rule {rule!r} is not callable")
        object.__setattr__(self, "rules", rules)

    def evaluate(self, context: BonusContext) -> Tuple[BonusOutcome, ...]:
        return tuple(rule(context) for rule in self.rules)


@dataclass(frozen=True)
class RankBonusStrategy:
    """Pay each seller by profit rank; report rows follow that rank."""

    bonus_function: RankBonusFunction

    mode: ClassVar[BonusMode] = BonusMode.RANK
    ordering: ClassVar[OrderingMode] = OrderingMode.PROFIT_RANK

    def __post_init__(self) -> None:
        if not callable(self.bonus_function):
            raise ConfigurationError("Rank bonus strategy requires a callable bonus function")


BonusStrategy = Union[AggregateBonusStrategy, RankBonusStrategy]


# ---------------------------------------------------------------------------
# Report orchestration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReportOptions:
    """Strategies selected for a report run."""

    revenue_function: Optional[RevenueFunction]
    bonus_strategy: Optional[BonusStrategy]
    top_products: int = TOP_PRODUCTS_LIMIT

    def __post_init__(self) -> None:
        if self.revenue_function is None:
            raise ConfigurationError("Report options are missing 'revenue_function'")
        if not callable(self.revenue_function):
            raise ConfigurationError("Report option 'revenue_function' must be callable")
        if self.bonus_strategy is None:
            raise ConfigurationError("Report options are missing 'bonus_strategy'")
        if not isinstance(self.bonus_strategy, (AggregateBonusStrategy, RankBonusStrategy)):
            raise ConfigurationError(
                "Report option 'bonus_strategy' must be an AggregateBonusStrategy or RankBonusStrategy"
            )
        if self.top_products < 0:
            raise ConfigurationError("Report option 'top_products' must not be negative")

    @property
    def ordering(self) -> OrderingMode:
        return self.bonus_strategy.ordering


@dataclass(frozen=True)
class ReportRow:
    """One seller's line in the final report; money already rounded."""

    seller_id: str
    name: str
    revenue: Decimal
    profit: Decimal
    bonus: Decimal
    sale_count: int
    top_products: Tuple[TopProduct, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seller_id": self.seller_id,
            "name": self.name,
            "revenue": float(self.revenue),
            "profit": float(self.profit),
            "bonus": float(self.bonus),
            "sale_count": self.sale_count,
            "top_products": [product.to_dict() for product in self.top_products],
        }


@dataclass(frozen=True)
class SalesReport:
    """Report rows plus the ordering they follow and the bonus outcomes."""

    rows: Tuple[ReportRow, ...]
    ordering: OrderingMode
    outcomes: Tuple[BonusOutcome, ...]

    @property
    def awards(self) -> Tuple[BonusAward, ...]:
        return tuple(outcome for outcome in self.outcomes if isinstance(outcome, BonusAward))


def validate_dataset(dataset: Optional[Dataset]) -> None:
    """Check the dataset shape before any work starts.

    Raises:
        ConfigurationError: If the dataset or one of its required collections
            is missing or empty; the message names the field.
        TypeError: If a collection is not a sequence.
    """
    if dataset is None:
        raise ConfigurationError("A dataset is required")
    for name in ("sellers", "products", "purchase_records"):
        value = getattr(dataset, name, None)
        if value is None:
            raise ConfigurationError(f"Dataset is missing required field '{name}'")
        if not _require_sequence(value, name):
            raise ConfigurationError(f"Dataset field '{name}' must not be empty")
    customers = getattr(dataset, "customers", None)
    if customers is not None:
        _require_sequence(customers, "customers")


def build_bonus_context(dataset: Dataset, stats: SalesStatistics, revenue_function: RevenueFunction) -> BonusContext:
    """Group the raw records the way the aggregate rules need them."""
    records = dataset.purchase_records
    return BonusContext(
        stats=stats,
        records_by_seller=group_by(records, lambda record: record.seller_id),
        records_by_customer=group_by(records, lambda record: record.customer_id),
        items_by_product=group_by([item for record in records for item in record.items], lambda item: item.sku),
        sellers=dataset.sellers,
        customers=dataset.customers or (),
        products=dataset.products,
        products_by_sku=index_products(dataset.products),
        revenue_function=revenue_function,
    )


def rank_sellers_by_profit(sellers: Sequence[Seller], stats: SalesStatistics) -> List[Seller]:
    """Sellers by descending profit; equal profits keep input order."""
    return sorted(
        sellers,
        key=lambda seller: stats.sellers.get(seller.seller_id, SellerStats()).profit,
        reverse=True,
    )


def _apply_rank_strategy(
    strategy: RankBonusStrategy, sellers: Sequence[Seller], stats: SalesStatistics
) -> Tuple[List[Seller], Tuple[BonusOutcome, ...]]:
    ranked = rank_sellers_by_profit(sellers, stats)
    total = len(ranked)
    outcomes = tuple(
        BonusAward(
            seller_id=seller.seller_id,
            category=BonusCategory.PROFIT_RANK,
            bonus=round_money(
                strategy.bonus_function(index, total, stats.sellers.get(seller.seller_id, SellerStats()))
            ),
        )
        for index, seller in enumerate(ranked)
    )
    return ranked, outcomes


def _build_row(seller: Seller, seller_stats: SellerStats, bonus: Decimal, top_limit: int) -> ReportRow:
    return ReportRow(
        seller_id=seller.seller_id,
        name=seller.name,
        revenue=round_money(seller_stats.revenue),
        profit=round_money(seller_stats.profit),
        bonus=round_money(bonus),
        sale_count=seller_stats.sale_count,
        top_products=seller_stats.top_products(top_limit),
    )


def analyze_sales_data(dataset: Dataset, options: ReportOptions) -> SalesReport:
    """Build the per-seller report for ``dataset``.

    The dataset and options are validated before any grouping or aggregation
    begins. Statistics are computed once, the configured bonus strategy runs
    over them, and one row per seller is assembled. Money is rounded to cents
    only here.

    Aggregate strategies keep sellers in input order and may award several
    categories; a seller's row bonus is the sum of every award naming it.
    Rank strategies order rows by descending profit. The chosen order is
    exposed as :attr:`SalesReport.ordering`.

    Args:
        dataset (Dataset): Sellers, products, purchase records, and optional
            customers.
        options (ReportOptions): Revenue function, bonus strategy, and top
            product limit.

    Returns:
        SalesReport: Rows, ordering mode, and bonus outcomes.

    Raises:
        ConfigurationError: If the dataset or options are incomplete.
        TypeError: If a dataset collection is not a sequence.
        MissingReferenceError: If a line item references an unknown SKU.
        BonusRuleError: If a selected rule cannot be evaluated.
    """
    validate_dataset(dataset)
    if not isinstance(options, ReportOptions):
        raise ConfigurationError("Report options are required")

    stats = aggregate_statistics(dataset.purchase_records, options.revenue_function, dataset.products)
    strategy = options.bonus_strategy

    if isinstance(strategy, RankBonusStrategy):
        ordered_sellers, outcomes = _apply_rank_strategy(strategy, dataset.sellers, stats)
    else:
        context = build_bonus_context(dataset, stats, options.revenue_function)
        outcomes = strategy.evaluate(context)
        ordered_sellers = list(dataset.sellers)

    bonus_by_seller: Dict[str, Decimal] = {}
    for outcome in outcomes:
        if isinstance(outcome, BonusAward):
            bonus_by_seller[outcome.seller_id] = bonus_by_seller.get(outcome.seller_id, Decimal("0")) + outcome.bonus

    rows = tuple(
        _build_row(
            seller,
            stats.sellers.get(seller.seller_id, SellerStats()),
            bonus_by_seller.get(seller.seller_id, Decimal("0")),
            options.top_products,
        )
        for seller in ordered_sellers
    )
    log.info(
        "Built report for %d sellers using %s ordering (%d bonus outcomes)",
        len(rows),
        strategy.ordering.value,
        len(outcomes),
    )
    return SalesReport(rows=rows, ordering=strategy.ordering, outcomes=outcomes)
