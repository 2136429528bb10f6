"""Bonus rules evaluated over aggregated sales statistics.

Two families exist. Aggregate rules each pick a single winning seller from the
whole :class:`~sales_bonus.core_logic.BonusContext` and return one outcome.
The rank rule pays every seller a share of their own profit depending on
where they land when sellers are sorted by profit. Both are wrapped in the
strategy variants from :mod:`sales_bonus.core_logic`; the registries below
let configuration files select them by name.

Ties in every aggregate rule go to the first seller (or record) encountered in
input order.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import (
    AVERAGE_PROFIT_RATE,
    BEST_CUSTOMER_RATE,
    LARGEST_SALE_RATE,
    RANK_DEFAULT_RATE,
    RANK_LAST_RATE,
    RANK_RUNNER_UP_RATE,
    RANK_TOP_RATE,
    RETENTION_FIXED_BONUS,
    STABLE_GROWTH_RATE,
    TREND_TOLERANCE,
    BonusCategory,
    BonusMode,
)
from .core_logic import (
    AggregateBonusRule,
    AggregateBonusStrategy,
    BonusAward,
    BonusContext,
    BonusOutcome,
    BonusRuleError,
    BonusStrategy,
    ConfigurationError,
    MissingReferenceError,
    NoWinner,
    RankBonusFunction,
    RankBonusStrategy,
    ReportOptions,
    SellerStats,
    analyze_sequence,
    calculate_average,
    group_by,
    resolve_revenue_function,
    round_money,
)
from .data_manager import PurchaseRecord


def bonus_best_customer(context: BonusContext) -> BonusOutcome:
    """Reward the seller who served the best customer.

    The best customer is the one with the highest total revenue; among the
    sellers that served them, the one with the highest own revenue wins 5% of
    that customer's revenue.

    Raises:
        BonusRuleError: If the statistics contain no customers.
    """
    customers = context.stats.customers
    if not customers:
        raise BonusRuleError("Best Customer Seller needs at least one customer in the statistics")

    best_customer = max(customers.values(), key=lambda customer: customer.revenue)
    candidates = [seller_id for seller_id in best_customer.seller_ids if seller_id in context.stats.sellers]
    if not candidates:
        raise BonusRuleError("Best Customer Seller found a customer without any seller")

    seller_id = max(candidates, key=lambda candidate: context.stats.sellers[candidate].revenue)
    return BonusAward(
        seller_id=seller_id,
        category=BonusCategory.BEST_CUSTOMER_SELLER,
        bonus=round_money(best_customer.revenue * BEST_CUSTOMER_RATE),
    )


def bonus_customer_retention(context: BonusContext) -> BonusOutcome:
    """Fixed bonus for the seller whose single best customer is the largest."""
    sellers = context.stats.sellers
    customers = context.stats.customers
    if not sellers:
        return NoWinner(category=BonusCategory.CUSTOMER_RETENTION)

    def best_customer_revenue(seller: SellerStats) -> Decimal:
        return max(
            (customers[customer_id].revenue for customer_id in seller.customer_ids if customer_id in customers),
            default=Decimal("0"),
        )

    seller_id = max(sellers, key=lambda candidate: best_customer_revenue(sellers[candidate]))
    return BonusAward(
        seller_id=seller_id,
        category=BonusCategory.CUSTOMER_RETENTION,
        bonus=round_money(RETENTION_FIXED_BONUS),
    )


def bonus_largest_single_sale(context: BonusContext) -> BonusOutcome:
    """10% of the largest receipt total, paid to the seller who issued it.

    Receipts are scanned seller by seller, in the order sellers first appear,
    so a tie goes to the earliest receipt of the first seller reaching it.
    """
    records = [record for group in context.records_by_seller.values() for record in group]
    if not records:
        return NoWinner(category=BonusCategory.LARGEST_SINGLE_SALE)

    largest = max(records, key=lambda record: record.total_amount)
    return BonusAward(
        seller_id=largest.seller_id,
        category=BonusCategory.LARGEST_SINGLE_SALE,
        bonus=round_money(largest.total_amount * LARGEST_SALE_RATE),
    )


def bonus_highest_average_profit(context: BonusContext) -> BonusOutcome:
    """10% of the best profit per line item across sellers.

    Only a positive average can win; otherwise the rule has no winner.
    """
    averages = {
        seller_id: seller.profit / max(len(seller.items), 1)
        for seller_id, seller in context.stats.sellers.items()
    }
    averages = {seller_id: average for seller_id, average in averages.items() if average > 0}
    if not averages:
        return NoWinner(category=BonusCategory.HIGHEST_AVERAGE_PROFIT)

    seller_id = max(averages, key=lambda candidate: averages[candidate])
    return BonusAward(
        seller_id=seller_id,
        category=BonusCategory.HIGHEST_AVERAGE_PROFIT,
        bonus=round_money(averages[seller_id] * AVERAGE_PROFIT_RATE),
    )


def monthly_profit_averages(records: Sequence[PurchaseRecord], context: BonusContext) -> List[Decimal]:
    """Average per-line-item profit for each calendar month, oldest first.

    Months come from the ``YYYY-MM`` prefix of each record date, so plain
    string ordering is chronological.
    """
    by_month = group_by(records, lambda record: record.month)
    averages: List[Decimal] = []
    for month in sorted(by_month):
        profits = [
            context.revenue_function(item, _resolve_product(context, item.sku))
            for record in by_month[month]
            for item in record.items
        ]
        averages.append(calculate_average(profits))
    return averages


def bonus_stable_growth(context: BonusContext) -> BonusOutcome:
    """15% of the monthly average profit of the best steadily growing seller.

    A seller qualifies when their monthly averages are both stable (every
    month within 5% of the previous one) and increasing overall, and their
    overall average is positive. Having no qualifying seller is a regular
    outcome, reported as :class:`NoWinner`.
    """
    best: Optional[Tuple[str, Decimal]] = None
    for seller_id, records in context.records_by_seller.items():
        averages = monthly_profit_averages(records, context)
        trend = analyze_sequence(averages, TREND_TOLERANCE)
        if not (trend.is_stable and trend.is_increasing):
            continue
        overall = calculate_average(averages)
        if overall > (best[1] if best else 0):
            best = (seller_id, overall)

    if best is None:
        log.debug("No seller qualified for the stable growth bonus")
        return NoWinner(category=BonusCategory.STABLE_GROWTH)

    seller_id, overall = best
    return BonusAward(
        seller_id=seller_id,
        category=BonusCategory.STABLE_GROWTH,
        bonus=round_money(overall * STABLE_GROWTH_RATE),
    )


def calculate_bonus_by_profit(index: int, total: int, seller: SellerStats) -> Decimal:
    """Share of ``seller.profit`` paid for finishing at ``index`` of ``total``.

    First place earns 15%, second and third 10%, last place nothing, and
    everyone else 5%. The checks run in that order, so with only two sellers
    the runner-up still earns 10%.
    """
    if index == 0:
        rate = RANK_TOP_RATE
    elif index in (1, 2):
        rate = RANK_RUNNER_UP_RATE
    elif index == total - 1:
        rate = RANK_LAST_RATE
    else:
        rate = RANK_DEFAULT_RATE
    return seller.profit * rate


def _resolve_product(context: BonusContext, sku: str) -> data_manager.Product:
    try:
        return context.products_by_sku[sku]
    except KeyError as exc:
        raise MissingReferenceError(f"Unknown SKU '{sku}'") from exc


BONUS_RULES: Dict[str, AggregateBonusRule] = {
    "best_customer": bonus_best_customer,
    "customer_retention": bonus_customer_retention,
    "largest_single_sale": bonus_largest_single_sale,
    "highest_average_profit": bonus_highest_average_profit,
    "stable_growth": bonus_stable_growth,
}

RANK_BONUS_FUNCTIONS: Dict[str, RankBonusFunction] = {
    "profit_rank": calculate_bonus_by_profit,
}

DEFAULT_RULE_NAMES: Tuple[str, ...] = tuple(BONUS_RULES)
DEFAULT_RANK_FUNCTION = "profit_rank"


def resolve_bonus_strategy(mode: BonusMode, rule_names: Sequence[str] = ()) -> BonusStrategy:
    """Turn a bonus mode and rule names into a strategy variant.

    Aggregate mode runs the named rules (every registered rule when none are
    named). Rank mode accepts at most one name from
    :data:`RANK_BONUS_FUNCTIONS`.

    Raises:
        ConfigurationError: On unknown names or several rank functions.
    """
    mode = BonusMode(mode)
    if mode is BonusMode.RANK:
        if len(rule_names) > 1:
            raise ConfigurationError("Rank bonus mode accepts a single bonus function")
        name = rule_names[0] if rule_names else DEFAULT_RANK_FUNCTION
        try:
            return RankBonusStrategy(bonus_function=RANK_BONUS_FUNCTIONS[name])
        except KeyError as exc:
            known = ", ".join(RANK_BONUS_FUNCTIONS)
            raise ConfigurationError(f"Unknown rank bonus function '{name}' (expected one of: {known})") from exc

    names = tuple(rule_names) or DEFAULT_RULE_NAMES
    unknown = [name for name in names if name not in BONUS_RULES]
    if unknown:
        known = ", ".join(BONUS_RULES)
        raise ConfigurationError(f"Unknown bonus rule(s) {', '.join(unknown)} (expected any of: {known})")
    return AggregateBonusStrategy(rules=tuple(BONUS_RULES[name] for name in names))


def build_report_options(settings: data_manager.ConfigSettings) -> ReportOptions:
    """Assemble :class:`ReportOptions` from parsed configuration settings."""
    options = ReportOptions(
        revenue_function=resolve_revenue_function(settings.revenue_function),
        bonus_strategy=resolve_bonus_strategy(settings.bonus_mode, settings.bonus_rules),
        top_products=settings.top_products,
    )
    log.debug(
        "Report options: revenue=%s mode=%s rules=%s top=%d",
        settings.revenue_function,
        settings.bonus_mode.value,
        ",".join(settings.bonus_rules) or "<default>",
        settings.top_products,
    )
    return options
